"""Cleanup when a build is interrupted by SIGINT or SIGTERM.

The handler makes no assumption about how far the build got. Every cleanup
action is attempted on its own and reported on its own line; a failure is
reported and never stops the remaining actions.
"""

from __future__ import annotations

import logging
import shutil
import signal
from pathlib import Path
from types import FrameType
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import ResourceCleanupFailure
from .lib.command import Runner, run_cmd
from .lib.md import md_destroy
from .lib.mounts import is_nested, list_transient_mounts, umount

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)
TRANSIENT_DIRS = ("boot", "efi")
TRANSIENT_SUFFIXES = (".img",)


class TransientDevices:
    """Memory disks allocated during a build that must not outlive it."""

    def __init__(self) -> None:
        self._devices: List[str] = []

    def add(self, dev: str) -> None:
        if dev not in self._devices:
            self._devices.append(dev)

    def discard(self, dev: str) -> None:
        if dev in self._devices:
            self._devices.remove(dev)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._devices))

    def __len__(self) -> int:
        return len(self._devices)


class InterruptHandler:
    def __init__(
        self,
        wrk: str | Path,
        *,
        devices: Optional[TransientDevices] = None,
        run: Runner = run_cmd,
        report: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.wrk = Path(wrk)
        self.devices = devices if devices is not None else TransientDevices()
        self._run = run
        self._report = report if report is not None else logger.warning
        self._previous: Dict[int, Any] = {}
        self.failures: List[ResourceCleanupFailure] = []

    def install(self) -> None:
        for sig in HANDLED_SIGNALS:
            self._previous[sig] = signal.signal(sig, self.handle_signal)

    def uninstall(self) -> None:
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()

    def handle_signal(self, signum: int, frame: Optional[FrameType]) -> None:
        self._emit(f"received {signal.Signals(signum).name} signal, cleaning things up...")
        self.cleanup()
        raise SystemExit(128 + signum)

    def cleanup(self) -> List[str]:
        """Undo transient state under the working dir. Safe to call repeatedly."""

        lines: List[str] = []
        self.failures = []

        def emit(line: str) -> None:
            lines.append(line)
            self._emit(line)

        self._unmount_all(emit)
        self._remove_artifacts(emit)
        self._release_devices(emit)
        return lines

    def _unmount_all(self, emit: Callable[[str], None]) -> None:
        try:
            mounts = list_transient_mounts(run=self._run)
        except Exception as e:
            self._fail(emit, f"failed to list temporary mounts: {e}", resource="mount table")
            return

        matched = [m for m in mounts if is_nested(m, self.wrk)]
        if not matched:
            emit("no temporary mounts")
            return

        # Nested mounts go first.
        for mnt in sorted(matched, key=len, reverse=True):
            try:
                umount(mnt, force=True, run=self._run)
            except Exception:
                self._fail(emit, f"failed to umount {mnt}", resource=mnt)
            else:
                emit(f"umounted {mnt}")

    def _remove_artifacts(self, emit: Callable[[str], None]) -> None:
        if not self.wrk.is_dir():
            return
        for p in sorted(self.wrk.iterdir()):
            if not (p.name in TRANSIENT_DIRS or p.name.endswith(TRANSIENT_SUFFIXES)):
                continue
            try:
                if p.is_dir() and not p.is_symlink():
                    shutil.rmtree(p)
                else:
                    p.unlink()
            except OSError:
                self._fail(emit, f"failed to remove {p}", resource=str(p))
        emit("rm'd temporary files")

    def _release_devices(self, emit: Callable[[str], None]) -> None:
        for dev in self.devices:
            try:
                md_destroy(dev, run=self._run)
            except Exception:
                self._fail(emit, f"failed to release {dev}", resource=dev)
            else:
                self.devices.discard(dev)
                emit(f"released {dev}")

    def _fail(self, emit: Callable[[str], None], line: str, *, resource: str) -> None:
        self.failures.append(ResourceCleanupFailure(line, resource=resource))
        emit(line)

    def _emit(self, line: str) -> None:
        self._report(line)
