"""
Decoder for the wearable's binary IMU log.

Two fixed-size little-endian layouts exist in the field:

    SHORT     <I hhh hhh       16 bytes  timestamp, accel xyz, gyro xyz
    EXTENDED  <I I hhh hhh     20 bytes  timestamp, pressure, accel, gyro

Every channel (and the pressure) is a raw integer scaled by 1/100.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

SCALE = 100.0


class RecordLayout(Enum):
    SHORT = "short"
    EXTENDED = "extended"

    @property
    def struct(self) -> struct.Struct:
        return _STRUCTS[self]

    @property
    def size(self) -> int:
        return _STRUCTS[self].size


_STRUCTS = {
    RecordLayout.SHORT: struct.Struct("<Ihhhhhh"),
    RecordLayout.EXTENDED: struct.Struct("<IIhhhhhh"),
}


def _fmt(value: float) -> str:
    return f"{value:.2f}"


@dataclass(frozen=True)
class TelemetryRecord:
    timestamp_ms: int
    acceleration: tuple[float, float, float]
    gyroscope: tuple[float, float, float]
    pressure_pa: Optional[float] = None

    @classmethod
    def unpack(cls, layout: RecordLayout, raw: bytes) -> "TelemetryRecord":
        fields = layout.struct.unpack(raw)
        pressure = None
        if layout is RecordLayout.EXTENDED:
            ts, p, *channels = fields
            pressure = p / SCALE
        else:
            ts, *channels = fields
        scaled = [v / SCALE for v in channels]
        return cls(
            timestamp_ms=ts,
            acceleration=tuple(scaled[0:3]),
            gyroscope=tuple(scaled[3:6]),
            pressure_pa=pressure,
        )

    def to_json(self) -> str:
        # Key order and two-decimal formatting are part of the wire contract,
        # which json.dumps cannot express for floats.
        parts = [f'"timestamp_ms":{self.timestamp_ms}']
        if self.pressure_pa is not None:
            parts.append(f'"pressure_pa":{_fmt(self.pressure_pa)}')
        parts.append('"acceleration":[' + ",".join(map(_fmt, self.acceleration)) + "]")
        parts.append('"gyroscope":[' + ",".join(map(_fmt, self.gyroscope)) + "]")
        return "{" + ",".join(parts) + "}"


def iter_records(path: str | os.PathLike, layout: RecordLayout = RecordLayout.SHORT) -> Iterator[TelemetryRecord]:
    """
    Yield records from *path* in file order.

    A trailing chunk shorter than one record is what the device leaves behind
    when logging stopped mid-write; it ends the stream silently.
    """
    size = layout.size
    with open(path, "rb") as fp:
        while True:
            chunk = fp.read(size)
            if len(chunk) < size:
                return
            yield TelemetryRecord.unpack(layout, chunk)


def payload_files(root: str | os.PathLike, extension: str) -> list[Path]:
    """Files below *root* with *extension* (case-insensitive), sorted by relative path."""
    root = Path(root)
    ext = extension.lower()
    found = [p for p in root.rglob("*") if p.is_file() and p.name.lower().endswith(ext)]
    return sorted(found, key=lambda p: p.relative_to(root).as_posix())


def iter_session(session_dir: str | os.PathLike,
                 layout: RecordLayout = RecordLayout.SHORT,
                 extension: str = ".bin") -> Iterator[TelemetryRecord]:
    for path in payload_files(session_dir, extension):
        yield from iter_records(path, layout)
