"""Error taxonomy for a device visit.

Each stage raises one of these; the dock controller catches ``DockError``
at the visit boundary, logs it and goes back to waiting for the next plug-in.
"""


class DockError(Exception):
    """Base class for every failure that aborts (part of) a device visit."""


class ResourceUnavailable(DockError):
    """No matching device or storage showed up within its timeout."""


class ExternalToolFailure(DockError):
    """dfu-util, mount, umount or the FUSE helper exited non-zero."""

    def __init__(self, tool: str, returncode=None, detail: str = ""):
        self.tool = tool
        self.returncode = returncode
        msg = f"{tool} failed"
        if returncode is not None:
            msg += f" (exit={returncode})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class IOFailure(DockError):
    """open/read/write/rename on the host side failed."""


class ProtocolViolation(DockError):
    """Input that breaks an assumption: malformed marker, oversized path …"""


class PathTooLongError(ProtocolViolation):
    def __init__(self, path: str, limit: int):
        self.path = path
        self.limit = limit
        super().__init__(f"path too long ({len(path)} >= {limit}): {path[:80]}…")


class StageTimeout(DockError):
    """A bounded wait (marker, helper exit, unmount) ran out."""


class VisitInterrupted(DockError):
    """Shutdown was requested between two stages of a visit."""
