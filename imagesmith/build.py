from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional

from .build_config import load_build_config
from .context import BuildContext
from .errors import ConfigurationError, ImagesmithError
from .installer import BaseSource, DistFilesSource, PkgBaseSource, find_distribution_files
from .lib.pool import CheckpointStore, DirectoryCheckpointStore, ZfsCheckpointStore
from .logging_utils import DEFAULT_LOG_KEEP, configure_logging
from .pipeline import BuildPipeline, BuildResult
from .release import ReleaseDescriptor

logger = logging.getLogger(__name__)

STORES = ("zfs", "directory")
DEFAULT_POOL_MB = 1024


def resolve_source(*, release: str | None, distfiles: str | None) -> BaseSource:
    if release:
        return PkgBaseSource(ReleaseDescriptor.parse(release))
    found = find_distribution_files(distfiles or ".")
    if found is None:
        raise ConfigurationError(
            f"Cannot find kernel.txz and base.txz in {distfiles}",
            hint="Also looked in usr/freebsd-dist below that directory.",
        )
    return DistFilesSource(found)


def open_store(project_dir: str, kind: str = "zfs") -> CheckpointStore:
    if kind == "zfs":
        if ZfsCheckpointStore.initialize(project_dir, DEFAULT_POOL_MB):
            logger.info("created working pool")
        store = ZfsCheckpointStore.lookup(project_dir)
    else:
        DirectoryCheckpointStore.initialize(project_dir, DEFAULT_POOL_MB)
        store = DirectoryCheckpointStore.lookup(project_dir)
    if store is None:
        raise ConfigurationError(f"Cannot find the working pool of {project_dir}")
    return store


def run_build(
    *,
    project_dir: str,
    release: str | None,
    distfiles: str | None,
    quick: bool,
    store_kind: str = "zfs",
    ctx: Optional[BuildContext] = None,
) -> BuildResult:
    ctx = ctx or BuildContext.detect()
    if not ctx.is_root:
        raise ConfigurationError("imagesmith-build must be run as root")

    cfg = load_build_config(project_dir)
    source = resolve_source(release=release, distfiles=distfiles)
    store = open_store(cfg.project_dir, store_kind)
    return BuildPipeline(cfg, store, source, ctx=ctx).build(quick=quick)


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="imagesmith-build")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--release", default=None, help="Install the base system from pkgbase (e.g. 14.2)")
    src.add_argument("--distfiles", default=None, help="Directory with kernel.txz and base.txz")
    p.add_argument("--project", default=os.getcwd(), help="Project directory holding imagesmith.yml")
    p.add_argument("--quick", action="store_true", help="Prefer speed over image size")
    p.add_argument("--store", choices=STORES, default="zfs")
    p.add_argument("--log-keep", type=int, default=DEFAULT_LOG_KEEP)
    p.add_argument("-v", "--verbose", action="store_true")

    args = p.parse_args(argv)

    project_dir = os.path.realpath(args.project)
    configure_logging(
        Path(project_dir) / "log",
        level=logging.DEBUG if args.verbose else logging.INFO,
        keep=args.log_keep,
    )

    try:
        result = run_build(
            project_dir=project_dir,
            release=args.release,
            distfiles=args.distfiles,
            quick=bool(args.quick),
            store_kind=args.store,
        )
    except ImagesmithError as e:
        logger.error("%s", e)
        return 1

    print(result.image)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
