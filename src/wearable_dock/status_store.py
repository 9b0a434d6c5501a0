"""Mirror of the dock's state into Redis for dashboards and shell scripts."""

from __future__ import annotations

import logging
import threading
from enum import Enum

import redis


class StatusKey(Enum):
    STATE        = "dock_state"
    LAST_SESSION = "dock_last_session"
    LAST_VISIT   = "dock_last_visit"
    FIRMWARE     = "dock_firmware"


class StatusStore:
    """
    Write-only Redis mirror. A broken Redis never affects a visit: errors are
    logged at debug level and the value is dropped.
    """

    def __init__(self, host="localhost", port=6379, db=0, channel="dock_status", client=None):
        self.r = client if client is not None else redis.StrictRedis(host=host, port=port, db=db)
        self.channel = channel
        self.lock = threading.Lock()
        self.cache: dict[str, str] = {}

    @classmethod
    def from_settings(cls, cfg: dict) -> "StatusStore":
        return cls(host=cfg["host"], port=int(cfg["port"]), db=int(cfg["db"]))

    def get_value(self, key, default=None):
        key_name = key.value if isinstance(key, StatusKey) else str(key)
        with self.lock:
            return self.cache.get(key_name, default)

    def set_value(self, key, value) -> None:
        if value is None:
            logging.warning(f"Attempted to set Redis key '{key}' to None. Ignoring.")
            return

        key_name = key.value if isinstance(key, StatusKey) else str(key)
        value = value.value if isinstance(value, Enum) else str(value)

        with self.lock:
            if self.cache.get(key_name) == value:
                return                             # unchanged, nothing to do
            try:
                self.r.set(key_name, value)
                self.r.publish(self.channel, key_name)
            except redis.RedisError as e:
                logging.debug(f"Redis unavailable, {key_name} not mirrored: {e}")
                return
            self.cache[key_name] = value

        logging.debug(f"Changed value: {key_name} = {value}")

    # listener for HotplugMonitor.state_changed
    def on_state(self, state) -> None:
        self.set_value(StatusKey.STATE, state)

    # listener for DockController.visit_finished
    def on_visit(self, report) -> None:
        self.set_value(StatusKey.LAST_VISIT, report.finished_at)
        if report.firmware is not None:
            self.set_value(StatusKey.FIRMWARE, report.firmware)
        if report.archived is not None:
            self.set_value(StatusKey.LAST_SESSION, report.archived)
        elif report.session is not None:
            self.set_value(StatusKey.LAST_SESSION, report.session)
