"""
Hot-plug state machine for the wearable.

    IDLE --(matching add)--> PROCESSING --(visit returns)--> DEBOUNCING
    DEBOUNCING --(remove of same bus path, then 500 ms without a new add)--> IDLE

Only IDLE accepts a new device. A visit runs synchronously inside the loop,
so two visits can never overlap. The udev wait is bounded (1 s) so the
debounce tick is never starved.
"""

from __future__ import annotations

import logging
import re
import time
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import pyudev

# usb port component of a sysfs path, e.g. ".../usb1/1-1.3/1-1.3:1.0/host0/..."
_USB_PORT = re.compile(r"^\d+-[\d.]+$")


class Event:
    def __init__(self):
        self._listeners = []

    def subscribe(self, listener):
        self._listeners.append(listener)

    def emit(self, *args):
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception as e:
                logging.error(f"Error while invoking listener: {e}")
                traceback.print_exc()


def sysattr(device, name: str) -> Optional[str]:
    """Decoded sysfs attribute of a pyudev device, None if absent."""
    try:
        value = device.attributes.get(name)
    except (KeyError, OSError):
        return None
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode(errors="replace")
    return value.strip()


def usb_port_path(sys_path: str) -> str:
    """
    Cut a sysfs path down to its USB port (``.../usb1/1-1``).

    The port stays the same when the wearable re-enumerates after a flash,
    unlike the block device below it.
    """
    parts = sys_path.split("/")
    port = None
    for i, part in enumerate(parts):
        if _USB_PORT.match(part):
            port = i
    if port is None:
        return sys_path
    return "/".join(parts[: port + 1])


@dataclass(frozen=True)
class HotplugEvent:
    action: str
    subsystem: str
    device_type: Optional[str]
    device_node: Optional[str]
    bus_path: str
    vendor_id: Optional[str]
    product_id: Optional[str]

    @classmethod
    def from_udev(cls, device) -> "HotplugEvent":
        vendor = device.properties.get("ID_VENDOR_ID") or sysattr(device, "idVendor")
        product = device.properties.get("ID_MODEL_ID") or sysattr(device, "idProduct")
        if not (vendor and product):
            usb = device.find_parent("usb", "usb_device")
            if usb is not None:
                vendor = vendor or sysattr(usb, "idVendor")
                product = product or sysattr(usb, "idProduct")
        return cls(
            action=device.action or "",
            subsystem=device.subsystem or "",
            device_type=device.device_type,
            device_node=device.device_node,
            bus_path=usb_port_path(device.sys_path),
            vendor_id=vendor,
            product_id=product,
        )


@dataclass(frozen=True)
class DeviceIdentity:
    vendor_id: str
    product_id: str

    def matches_ids(self, vendor_id: Optional[str], product_id: Optional[str]) -> bool:
        if not vendor_id or not product_id:
            return False
        return (vendor_id.lower() == self.vendor_id.lower()
                and product_id.lower() == self.product_id.lower())

    def matches(self, event: HotplugEvent) -> bool:
        return self.matches_ids(event.vendor_id, event.product_id)

    def __str__(self) -> str:
        return f"{self.vendor_id}:{self.product_id}"


# ----------------------------------------------------------------------
# state machine
# ----------------------------------------------------------------------
class DockState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    DEBOUNCING = "debouncing"


@dataclass
class DockContext:
    state: DockState = DockState.IDLE
    bus_path: Optional[str] = None
    removed_at: Optional[float] = None


def on_event(ctx: DockContext, event: HotplugEvent, identity: DeviceIdentity, now: float) -> bool:
    """Apply *event* to *ctx*. Returns True when a device visit must start."""
    if ctx.state is DockState.IDLE:
        if event.action == "add" and identity.matches(event):
            ctx.state = DockState.PROCESSING
            ctx.bus_path = event.bus_path
            ctx.removed_at = None
            return True
        return False

    if ctx.state is DockState.DEBOUNCING and event.bus_path == ctx.bus_path:
        if event.action == "remove":
            ctx.removed_at = now
        elif event.action == "add" and identity.matches(event):
            # bus churn: the device came straight back
            ctx.removed_at = None
    return False


def finish_visit(ctx: DockContext) -> None:
    ctx.state = DockState.DEBOUNCING
    ctx.removed_at = None


def on_tick(ctx: DockContext, now: float, quiescence: float) -> bool:
    """Returns True when the removal has been quiet long enough to go IDLE."""
    if (ctx.state is DockState.DEBOUNCING
            and ctx.removed_at is not None
            and now - ctx.removed_at > quiescence):
        ctx.state = DockState.IDLE
        ctx.bus_path = None
        ctx.removed_at = None
        return True
    return False


# ----------------------------------------------------------------------
# udev source + loop
# ----------------------------------------------------------------------
class UdevEventSource:
    def __init__(self, subsystem: str = "block", device_type: Optional[str] = "disk",
                 context: Optional[pyudev.Context] = None):
        self.subsystem = subsystem
        self.device_type = device_type
        self._context = context
        self._monitor: Optional[pyudev.Monitor] = None

    def start(self) -> None:
        """Open the netlink subscription. Errors propagate: this is fatal at startup."""
        context = self._context or pyudev.Context()
        monitor = pyudev.Monitor.from_netlink(context)
        monitor.filter_by(subsystem=self.subsystem, device_type=self.device_type)
        monitor.start()
        self._monitor = monitor
        logging.info("udev monitor listening on %s/%s", self.subsystem, self.device_type or "*")

    def poll(self, timeout: float) -> Optional[HotplugEvent]:
        device = self._monitor.poll(timeout=timeout)
        if device is None:
            return None
        return HotplugEvent.from_udev(device)


class HotplugMonitor:
    def __init__(self,
                 identity: DeviceIdentity,
                 handler: Callable[[HotplugEvent], object],
                 source,
                 should_stop: Callable[[], bool] = lambda: False,
                 quiescence: float = 0.5,
                 poll_timeout: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.identity = identity
        self.handler = handler
        self.source = source
        self.should_stop = should_stop
        self.quiescence = quiescence
        self.poll_timeout = poll_timeout
        self.clock = clock
        self.context = DockContext()
        self.state_changed = Event()

    @property
    def state(self) -> DockState:
        return self.context.state

    def tick(self) -> None:
        if on_tick(self.context, self.clock(), self.quiescence):
            logging.info("Device removed, back to idle")
            self.state_changed.emit(self.context.state)

    def dispatch(self, event: HotplugEvent) -> None:
        logging.debug("udev %s %s %s (%s:%s)", event.action, event.subsystem,
                      event.bus_path, event.vendor_id, event.product_id)
        if not on_event(self.context, event, self.identity, self.clock()):
            return

        logging.info("Wearable %s detected at %s, processing", self.identity, event.bus_path)
        self.state_changed.emit(self.context.state)
        try:
            self.handler(event)
        except Exception:
            logging.exception("Device visit crashed")
        finish_visit(self.context)
        logging.info("Waiting for stable removal")
        self.state_changed.emit(self.context.state)

    def step(self) -> None:
        self.tick()
        event = self.source.poll(self.poll_timeout)
        if event is not None:
            self.dispatch(event)

    def run(self) -> None:
        logging.info("Waiting for USB %s", self.identity)
        while not self.should_stop():
            self.step()
        logging.info("Shutdown requested")
