"""
Drain the mounted flash into a session directory.

PerFileExtractor (default) copies one log at a time and deletes each source
only after its copy is confirmed, so a failure half way loses nothing.
WholeTreeExtractor copies everything, then wipes the flash; a failure during
the wipe can leave stale data on the device.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from wearable_dock.errors import DockError
from wearable_dock.paths import join

CHUNK_SIZE = 256 * 1024


@dataclass
class ExtractionReport:
    copied: list[Path] = field(default_factory=list)
    failed: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def copy_file(src: Path, dst: Path, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Stream *src* into *dst*; raises OSError on any open/read/write problem.
    A failed copy never leaves *dst* behind.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    copied = 0
    with open(src, "rb") as fin:
        expected = os.fstat(fin.fileno()).st_size
        try:
            with open(dst, "wb") as fout:
                while True:
                    buf = fin.read(chunk_size)
                    if not buf:
                        break
                    written = fout.write(buf)
                    if written != len(buf):
                        raise OSError(f"short write to {dst} ({written}/{len(buf)})")
                    copied += written
                fout.flush()
                os.fsync(fout.fileno())
            if copied != expected:
                raise OSError(f"copied {copied} of {expected} bytes from {src}")
        except OSError:
            dst.unlink(missing_ok=True)
            raise
    return copied


class PerFileExtractor:
    name = "per_file"

    def __init__(self, extension: str = ".bin", delete_source: bool = True,
                 chunk_size: int = CHUNK_SIZE):
        self.extension = extension.lower()
        self.delete_source = delete_source
        self.chunk_size = chunk_size

    def _sources(self, root: Path) -> list[Path]:
        found = []
        for dirpath, _dirs, files in os.walk(root):
            for name in sorted(files):
                if name.lower().endswith(self.extension):
                    found.append(Path(dirpath) / name)
        return found

    def extract(self, source: str | os.PathLike, session: str | os.PathLike) -> ExtractionReport:
        source, session = Path(source), Path(session)
        report = ExtractionReport()
        for src in self._sources(source):
            try:
                dst = join(session, src.relative_to(source))
                size = copy_file(src, dst, self.chunk_size)
            except (OSError, DockError) as exc:
                logging.error("Copy of %s failed: %s", src.name, exc)
                report.failed.append(src)
                continue
            logging.info("Copied %s (%d bytes)", src.relative_to(source), size)
            report.copied.append(dst)

            if not self.delete_source:
                continue
            try:
                src.unlink()
                report.deleted.append(src)
            except OSError as exc:
                logging.warning("Could not delete %s from flash: %s", src.name, exc)
        return report


class WholeTreeExtractor:
    name = "whole_tree"

    def __init__(self, wipe_source: bool = True):
        self.wipe_source = wipe_source

    @staticmethod
    def _wipe(root: Path, report: ExtractionReport) -> bool:
        """Delete everything under *root* but not *root* itself."""
        clean = True
        for entry in sorted(root.iterdir()):
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                report.deleted.append(entry)
            except OSError as exc:
                logging.error("Could not wipe %s: %s", entry, exc)
                clean = False
        return clean

    def extract(self, source: str | os.PathLike, session: str | os.PathLike) -> ExtractionReport:
        source, session = Path(source), Path(session)
        report = ExtractionReport()
        try:
            shutil.copytree(source, session, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            logging.error("Copy error, leaving flash untouched: %s", exc)
            report.failed.append(source)
            return report

        report.copied.extend(p for p in sorted(session.rglob("*")) if p.is_file())
        logging.info("Extraction complete (%d files)", len(report.copied))
        if self.wipe_source:
            if self._wipe(source, report):
                logging.info("Source flash wiped")
            else:
                logging.warning("Couldn't wipe flash completely, continuing")
        return report
