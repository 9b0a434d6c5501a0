import json
import logging
from pathlib import Path


def _merge(section: dict, defaults: dict) -> dict:
    for k, v in defaults.items():
        if isinstance(v, dict):
            _merge(section.setdefault(k, {}), v)
        else:
            section.setdefault(k, v)
    return section


def load_settings(filename: str | Path) -> dict:
    """
    Load the dock's JSON configuration *and* guarantee that every section the
    code relies on is present with safe defaults.

    Return an always-valid settings dict, never None.
    """
    filename = Path(filename)
    try:
        with filename.open("r", encoding="utf-8") as fp:
            settings = json.load(fp)
    except FileNotFoundError:
        logging.warning("Settings file %s not found, using built-in defaults", filename)
        settings = {}
    except (OSError, ValueError) as e:
        logging.error("Failed to load settings %s: %s, using built-in defaults", filename, e)
        settings = {}
    if not isinstance(settings, dict):
        logging.error("Settings file %s is not a JSON object, using built-in defaults", filename)
        settings = {}

    # ── the wearable on the bus ──────────────────────────────────────────
    _merge(settings.setdefault("device", {}), {
        "vendor_id":  "0001",
        "product_id": "0001",
    })

    # ── DFU ──────────────────────────────────────────────────────────────
    _merge(settings.setdefault("firmware", {}), {
        "dir":              "/var/lib/wearable-dock/firmware",
        "extension":        ".bin",
        "done_suffix":      ".bin.done",
        "dfu_util":         "dfu-util",
        "protocol":         "detach",       # detach | download
        "alt":              "1",
        "transfer_size":    1024,
        "lookup_serial":    True,
        "settle":           2.0,
        "timeout":          120,
        "abort_on_failure": False,
    })

    # ── flash storage ────────────────────────────────────────────────────
    _merge(settings.setdefault("storage", {}), {
        "strategy":    "littlefs",          # littlefs | kernel
        "mount_point": "/mnt/wearable",
        "marker":      "imu_log.bin",
        "umount":      "umount",
        "littlefs": {
            "binary":  "lfs",
            "options": "",
            "geometry": {
                "block_count":    1760,
                "block_size":     4096,
                "read_size":      16,
                "prog_size":      16,
                "cache_size":     64,
                "lookahead_size": 32,
            },
        },
        "kernel": {
            "fstype":  "vfat",
            "options": "",
            "command": "mount",
        },
        "locate":  {"interval": 0.25, "timeout": 15.0},
        "mount":   {"interval": 0.1,  "timeout": 5.0},
        "marker_wait": {"interval": 0.2, "timeout": 5.0},
        "release": {"interval": 0.1,  "timeout": 5.0},
    })

    # ── sessions ─────────────────────────────────────────────────────────
    _merge(settings.setdefault("sessions", {}), {
        "root":       "/var/lib/wearable-dock/sessions",
        "archive":    "archive",
        "extraction": "per_file",           # per_file | whole_tree
        "extension":  ".bin",
        "delete_source": True,
    })

    settings.setdefault("telemetry", {}).setdefault("layout", "short")

    _merge(settings.setdefault("mqtt", {}), {
        "host":      "localhost",
        "port":      1883,
        "topic":     "BORUS/extf",
        "keepalive": 60,
        "throttle":  0.001,
        "connect":   {"interval": 0.05, "timeout": 3.0},
    })

    _merge(settings.setdefault("monitor", {}), {
        "subsystem":    "block",
        "device_type":  "disk",
        "quiescence":   0.5,
        "poll_timeout": 1.0,
        "reap_interval": 0.5,
    })

    _merge(settings.setdefault("status", {}), {
        "enabled": False,
        "host":    "localhost",
        "port":    6379,
        "db":      0,
    })

    _merge(settings.setdefault("logging", {}), {
        "dir":  None,
        "file": "dock.log",
    })

    return settings
