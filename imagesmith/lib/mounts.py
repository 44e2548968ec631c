from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

TRANSIENT_FS_TYPES = ("tmpfs", "nullfs", "msdosfs")


@dataclass(frozen=True)
class MountSpec:
    target: str
    fstype: str  # nullfs|tmpfs
    source: Optional[str] = None
    options: str = "rw"


def nullfs(source: str | Path, target: str | Path) -> MountSpec:
    return MountSpec(target=str(target), fstype="nullfs", source=str(source))


def tmpfs(target: str | Path) -> MountSpec:
    return MountSpec(target=str(target), fstype="tmpfs", source="tmpfs")


def mount(spec: MountSpec, *, run: Runner = run_cmd) -> None:
    Path(spec.target).mkdir(parents=True, exist_ok=True)
    if spec.fstype == "nullfs":
        run(["mount_nullfs", "-o", spec.options, str(spec.source), spec.target])
    elif spec.fstype == "tmpfs":
        run(["mount", "-t", "tmpfs", "tmpfs", spec.target])
    else:
        raise ValueError(f"Unsupported transient filesystem: {spec.fstype}")


def umount(target: str, *, force: bool = True, run: Runner = run_cmd) -> None:
    argv = ["umount"]
    if force:
        argv.append("-f")
    run([*argv, target])


@contextmanager
def mounted(specs: Sequence[MountSpec], *, run: Runner = run_cmd) -> Iterator[None]:
    """Mount ``specs`` for the duration of the block.

    Unmounting happens in reverse order on every exit path. If the block
    raised, an unmount failure is logged and the original error propagates
    unchanged.
    """

    done: List[MountSpec] = []
    try:
        for spec in specs:
            mount(spec, run=run)
            done.append(spec)
        yield
    except BaseException:
        for spec in reversed(done):
            try:
                umount(spec.target, run=run)
            except Exception:
                logger.exception("Failed to unmount %s after error", spec.target)
        raise
    else:
        for spec in reversed(done):
            umount(spec.target, run=run)


def list_transient_mounts(*, run: Runner = run_cmd) -> List[str]:
    """Mount points of active tmpfs, nullfs and msdosfs filesystems."""

    r = run(["df", "-t", ",".join(TRANSIENT_FS_TYPES), "--libxo=json"])
    data = json.loads(r.stdout or "{}")
    filesystems = ((data.get("storage-system-information") or {}).get("filesystem")) or []
    return [str(fs["mounted-on"]) for fs in filesystems if fs.get("mounted-on")]


def is_nested(path: str, root: str | Path) -> bool:
    root_s = str(root).rstrip("/")
    return path == root_s or path.startswith(root_s + "/")
