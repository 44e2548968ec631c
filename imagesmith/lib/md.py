from __future__ import annotations

import logging

from .command import Runner, run_cmd

logger = logging.getLogger(__name__)


def md_create(size_mb: int, *, run: Runner = run_cmd) -> str:
    """Allocate a swap-backed memory disk and return its unit name (e.g. md3)."""

    r = run(["mdconfig", "-a", "-t", "swap", "-s", f"{int(size_mb)}m", "-S", "4096"])
    dev = (r.stdout or "").strip()
    logger.info("Allocated memory disk %s (%sm)", dev, size_mb)
    return dev


def md_attach_file(path: str, *, run: Runner = run_cmd) -> str:
    r = run(["mdconfig", "-a", "-t", "vnode", "-f", path])
    return (r.stdout or "").strip()


def md_destroy(dev: str, *, run: Runner = run_cmd) -> None:
    run(["mdconfig", "-d", "-u", dev])
    logger.info("Released memory disk %s", dev)
