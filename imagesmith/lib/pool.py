"""Working pool: copy-on-write storage behind a project's ``wrk`` directory.

Two implementations share the :class:`CheckpointStore` surface:

- :class:`ZfsCheckpointStore` puts a ZFS pool on memory disks and uses
  snapshots for checkpoints. This is what real builds use.
- :class:`DirectoryCheckpointStore` keeps full directory copies. It needs no
  special host support and is slow and space hungry, which is acceptable for
  small roots and tests.

Checkpoints are taken of the ``root`` branch. The ``cache`` branch holds
package downloads that must survive a rollback.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..errors import CapacityError
from .command import Runner, run_cmd
from .md import md_create, md_destroy

logger = logging.getLogger(__name__)

POOL_PREFIX = "imagesmith_"
DEVICE_PROPERTY = "imagesmith:md"

# Growth without an explicit requirement.
LOW_WATER_MB = 768
GROW_STEP_MB = 512
# Slack added to an explicit shortfall before the 1.5 factor.
SHORTFALL_SLACK_MB = 32

BRANCHES = ("root", "cache")
CHECKPOINT_BRANCHES = ("root",)


def pool_id(project_dir: str | Path) -> str:
    """Deterministic pool name for a project directory."""

    wrk = os.path.realpath(str(project_dir)) + "/wrk"
    return POOL_PREFIX + hashlib.md5(wrk.encode("utf-8")).hexdigest()[:8]


def growth_for(available_mb: int, required_mb: Optional[int]) -> int:
    """How many MB to add to a pool, 0 when nothing is needed."""

    if required_mb is None:
        return GROW_STEP_MB if available_mb < LOW_WATER_MB else 0
    if required_mb <= 0:
        raise CapacityError(
            "Required capacity must be greater than zero.",
            context={"required_mb": str(required_mb)},
        )
    shortfall = required_mb - available_mb
    if shortfall <= 0:
        return 0
    return int(math.ceil((shortfall + SHORTFALL_SLACK_MB) * 1.5))


class CheckpointStore(Protocol):
    """Checkpoint/rollback/capacity primitives of a working pool."""

    id: str
    mountpoint: Path

    @property
    def root(self) -> Path:
        ...

    @property
    def cache(self) -> Path:
        ...

    @property
    def devices(self) -> List[str]:
        ...

    def checkpoint(self, name: str) -> None:
        ...

    def rollback(self, name: str) -> None:
        ...

    def destroy_checkpoint(self, name: str) -> None:
        ...

    def has_checkpoint(self, name: str) -> bool:
        ...

    def available_mb(self) -> int:
        ...

    def ensure_capacity(self, required_mb: Optional[int] = None) -> None:
        ...

    def set_compression_profile(self, tight: bool) -> None:
        ...

    def destroy(self) -> None:
        ...


class ZfsCheckpointStore:
    def __init__(
        self,
        id: str,
        devices: Sequence[str],
        mountpoint: str | Path,
        *,
        run: Runner = run_cmd,
    ) -> None:
        self.id = id
        self._devices = [d for d in devices if d]
        self.mountpoint = Path(mountpoint)
        self._run = run

    def __str__(self) -> str:
        return self.id

    @property
    def root(self) -> Path:
        return self.mountpoint / "root"

    @property
    def cache(self) -> Path:
        return self.mountpoint / "cache"

    @property
    def devices(self) -> List[str]:
        return list(self._devices)

    @classmethod
    def initialize(cls, project_dir: str | Path, size_mb: int = 1024, *, run: Runner = run_cmd) -> bool:
        """Create the pool for ``project_dir`` unless it exists. True if created."""

        if size_mb <= 0:
            raise CapacityError(
                "Pool size must be greater than zero.",
                context={"size_mb": str(size_mb)},
            )

        if cls.lookup(project_dir, run=run) is not None:
            return False

        fs_id = pool_id(project_dir)
        mnt = Path(os.path.realpath(str(project_dir))) / "wrk"
        mnt.mkdir(parents=True, exist_ok=True)

        md = md_create(size_mb, run=run)
        run(
            [
                "zpool", "create",
                "-o", "ashift=12",
                "-O", f"{DEVICE_PROPERTY}={md}",
                "-O", "compression=lz4",
                "-m", str(mnt),
                fs_id,
                f"/dev/{md}",
            ]
        )
        run(["zfs", "create", "-o", "compression=zstd", "-o", "recordsize=4m", f"{fs_id}/root"])
        run(["zfs", "create", "-o", "compression=lz4", "-o", "recordsize=4m", f"{fs_id}/cache"])
        run(["zfs", "snapshot", "-r", f"{fs_id}/root@empty"])
        logger.info("Created working pool %s at %s", fs_id, mnt)
        return True

    @classmethod
    def lookup(cls, project_dir: str | Path, *, run: Runner = run_cmd) -> Optional["ZfsCheckpointStore"]:
        fs_id = pool_id(project_dir)
        r = run(["zfs", "list", "-Hp", "-d", "0", "-o", f"name,{DEVICE_PROPERTY},mountpoint"])
        for line in (r.stdout or "").splitlines():
            if not line:
                continue
            parts = line.split("\t")
            if len(parts) != 3:
                continue
            name, md, mnt = parts
            if name == fs_id:
                return cls(name, md.split(","), mnt, run=run)
        return None

    def _snap(self, name: str, branch: str = "root") -> str:
        return f"{self.id}/{branch}@{name}"

    def checkpoint(self, name: str) -> None:
        for branch in CHECKPOINT_BRANCHES:
            self._run(["zfs", "snapshot", "-r", self._snap(name, branch)])

    def rollback(self, name: str) -> None:
        for branch in CHECKPOINT_BRANCHES:
            self._run(["zfs", "rollback", "-r", self._snap(name, branch)])

    def destroy_checkpoint(self, name: str) -> None:
        for branch in CHECKPOINT_BRANCHES:
            self._run(["zfs", "destroy", "-r", self._snap(name, branch)], check=False)

    def has_checkpoint(self, name: str) -> bool:
        for branch in CHECKPOINT_BRANCHES:
            r = self._run(
                ["zfs", "list", "-H", "-t", "snapshot", "-o", "name", self._snap(name, branch)],
                check=False,
            )
            if r.returncode != 0:
                return False
        return True

    def available_mb(self) -> int:
        r = self._run(["zfs", "list", "-Hp", "-o", "available", "-d", "0", self.id])
        return int(round(int((r.stdout or "0").strip()) / 1048576))

    def ensure_capacity(self, required_mb: Optional[int] = None) -> None:
        grow = growth_for(self.available_mb(), required_mb)
        if grow > 0:
            self._grow(grow)

    def set_compression_profile(self, tight: bool) -> None:
        self._run(
            [
                "zfs", "set",
                "compression=%s" % ("zstd" if tight else "lz4"),
                "recordsize=%s" % ("4m" if tight else "128k"),
                f"{self.id}/root",
            ]
        )

    def destroy(self) -> None:
        self._run(["zpool", "destroy", "-f", self.id])
        for dev in self._devices:
            md_destroy(dev, run=self._run)
        logger.info("Destroyed working pool %s", self.id)

    def _grow(self, size_mb: int) -> None:
        md = md_create(size_mb, run=self._run)
        self._devices.append(md)
        self._run(["zpool", "add", self.id, md])
        self._run(["zfs", "set", f"{DEVICE_PROPERTY}={','.join(self._devices)}", self.id])
        logger.info("Grew pool %s by %sm (%s)", self.id, size_mb, md)


class DirectoryCheckpointStore:
    def __init__(self, mountpoint: str | Path) -> None:
        self.mountpoint = Path(mountpoint)
        self._meta_dir = self.mountpoint / ".checkpoints"
        self._meta_path = self._meta_dir / "pool.json"
        meta = self._load()
        self.id = str(meta["id"])

    @property
    def root(self) -> Path:
        return self.mountpoint / "root"

    @property
    def cache(self) -> Path:
        return self.mountpoint / "cache"

    @property
    def devices(self) -> List[str]:
        return [f"{int(mb)}m" for mb in self._load()["devices"]]

    @classmethod
    def initialize(cls, project_dir: str | Path, size_mb: int = 1024) -> bool:
        if size_mb <= 0:
            raise CapacityError(
                "Pool size must be greater than zero.",
                context={"size_mb": str(size_mb)},
            )
        if cls.lookup(project_dir) is not None:
            return False

        mnt = Path(os.path.realpath(str(project_dir))) / "wrk"
        for branch in BRANCHES:
            (mnt / branch).mkdir(parents=True, exist_ok=True)
        meta_dir = mnt / ".checkpoints"
        meta_dir.mkdir(parents=True, exist_ok=True)
        meta = {
            "id": pool_id(project_dir),
            "devices": [int(size_mb)],
            "checkpoints": [],
            "profile": "tight",
        }
        (meta_dir / "pool.json").write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n", encoding="utf-8")

        cls(mnt).checkpoint("empty")
        logger.info("Created directory pool %s at %s", meta["id"], mnt)
        return True

    @classmethod
    def lookup(cls, project_dir: str | Path) -> Optional["DirectoryCheckpointStore"]:
        mnt = Path(os.path.realpath(str(project_dir))) / "wrk"
        meta_path = mnt / ".checkpoints" / "pool.json"
        if not meta_path.exists():
            return None
        store = cls(mnt)
        if store.id != pool_id(project_dir):
            return None
        return store

    def _load(self) -> Dict[str, Any]:
        data = json.loads(self._meta_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self._meta_path} must contain an object")
        return data

    def _save(self, meta: Dict[str, Any]) -> None:
        tmp = self._meta_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, self._meta_path)

    def _snap_dir(self, name: str) -> Path:
        return self._meta_dir / name

    def checkpoint(self, name: str) -> None:
        meta = self._load()
        if name in meta["checkpoints"]:
            raise ValueError(f"checkpoint {name} already exists")

        staging = self._meta_dir / f".{name}.partial"
        if staging.exists():
            shutil.rmtree(staging)
        for branch in CHECKPOINT_BRANCHES:
            shutil.copytree(self.mountpoint / branch, staging / branch, symlinks=True)
        # Rename last so a half-written copy is never taken for a checkpoint.
        os.replace(staging, self._snap_dir(name))

        meta["checkpoints"].append(name)
        self._save(meta)

    def rollback(self, name: str) -> None:
        meta = self._load()
        if name not in meta["checkpoints"]:
            raise ValueError(f"no such checkpoint: {name}")

        for branch in CHECKPOINT_BRANCHES:
            live = self.mountpoint / branch
            if live.exists() or live.is_symlink():
                shutil.rmtree(live)
            shutil.copytree(self._snap_dir(name) / branch, live, symlinks=True)

        later = meta["checkpoints"][meta["checkpoints"].index(name) + 1 :]
        for newer in later:
            shutil.rmtree(self._snap_dir(newer), ignore_errors=True)
        meta["checkpoints"] = meta["checkpoints"][: len(meta["checkpoints"]) - len(later)]
        self._save(meta)

    def destroy_checkpoint(self, name: str) -> None:
        meta = self._load()
        if name not in meta["checkpoints"]:
            return
        shutil.rmtree(self._snap_dir(name), ignore_errors=True)
        meta["checkpoints"].remove(name)
        self._save(meta)

    def has_checkpoint(self, name: str) -> bool:
        return name in self._load()["checkpoints"] and self._snap_dir(name).is_dir()

    def checkpoints(self) -> List[str]:
        return list(self._load()["checkpoints"])

    def used_bytes(self) -> int:
        total = 0
        for branch in BRANCHES:
            for dirpath, _dirnames, filenames in os.walk(self.mountpoint / branch):
                for f in filenames:
                    total += os.lstat(os.path.join(dirpath, f)).st_size
        return total

    def available_mb(self) -> int:
        capacity = sum(int(mb) for mb in self._load()["devices"])
        return capacity - int(math.ceil(self.used_bytes() / 1048576))

    def ensure_capacity(self, required_mb: Optional[int] = None) -> None:
        grow = growth_for(self.available_mb(), required_mb)
        if grow > 0:
            meta = self._load()
            meta["devices"].append(grow)
            self._save(meta)
            logger.info("Grew pool %s by %sm", self.id, grow)

    def set_compression_profile(self, tight: bool) -> None:
        meta = self._load()
        meta["profile"] = "tight" if tight else "loose"
        self._save(meta)

    def compression_profile(self) -> str:
        return str(self._load().get("profile", "tight"))

    def destroy(self) -> None:
        for branch in BRANCHES:
            shutil.rmtree(self.mountpoint / branch, ignore_errors=True)
        shutil.rmtree(self._meta_dir, ignore_errors=True)
        logger.info("Destroyed directory pool %s", self.id)
