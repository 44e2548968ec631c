from __future__ import annotations

import math
import os
import shlex
import shutil
from pathlib import Path
from typing import Optional

from .command import LineSink, Runner, run_cmd

TAR_STREAM_TIMEOUT_S = 600


def copy_tree(src: str, dst: str, *, overwrite: bool = True) -> int:
    """Copy ``src`` into ``dst``; with ``overwrite=False`` existing files are kept.

    Returns the number of files written.
    """

    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(src)

    written = 0
    d.mkdir(parents=True, exist_ok=True)
    for item in sorted(s.rglob("*")):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir() and not item.is_symlink():
            out.mkdir(parents=True, exist_ok=True)
            continue
        if not overwrite and (out.exists() or out.is_symlink()):
            continue
        out.parent.mkdir(parents=True, exist_ok=True)
        if out.is_symlink() or out.exists():
            out.unlink()
        if item.is_symlink():
            os.symlink(os.readlink(item), out)
        else:
            shutil.copy2(item, out)
        written += 1
    return written


def tar_stream(
    src: str | Path,
    dst: str | Path,
    *,
    run: Runner = run_cmd,
    on_line: Optional[LineSink] = None,
) -> None:
    """Copy a directory's contents with tar, preserving owners, modes and links."""

    Path(dst).mkdir(parents=True, exist_ok=True)
    run(
        ["sh", "-c", f"tar cf - . | (cd {shlex.quote(str(dst))} && tar xvf -)"],
        cwd=str(src),
        timeout=TAR_STREAM_TIMEOUT_S,
        on_line=on_line or _discard,
    )


def size_mb(path: str | Path) -> int:
    """Size of a file or directory tree in MB, rounded up."""

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(str(path))
    if p.is_dir():
        total = 0
        for dirpath, _dirnames, filenames in os.walk(p):
            for f in filenames:
                fp = os.path.join(dirpath, f)
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
    else:
        total = p.stat().st_size
    return int(math.ceil(total / 1048576))


def _discard(_line: str) -> None:
    pass
