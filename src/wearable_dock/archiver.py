import logging
import os
from pathlib import Path
from typing import Optional

from wearable_dock.errors import DockError, IOFailure
from wearable_dock.paths import join


def archive_session(session_dir: str | os.PathLike, archive_root: str | os.PathLike) -> Optional[Path]:
    """
    Move *session_dir* into *archive_root* under the same name with one
    rename. Returns the new path, or None when the session stayed in place.
    """
    session_dir = Path(session_dir)
    try:
        Path(archive_root).mkdir(parents=True, exist_ok=True)
        target = join(archive_root, session_dir.name)
        # rename(2) would silently replace an empty directory of the same name
        if os.path.lexists(target):
            raise IOFailure(f"{target} already exists")
        os.rename(session_dir, target)
    except (OSError, DockError) as exc:
        logging.error("Archiving %s failed: %s", session_dir.name, exc)
        return None

    logging.info("Session archived to %s", target)
    return target
