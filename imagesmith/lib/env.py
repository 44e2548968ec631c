from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_PKG_DIR = Path(__file__).resolve().parents[1]


def _default_cache_dir() -> str:
    return os.environ.get("IMAGESMITH_CACHE_DIR") or "/var/cache/imagesmith"


@dataclass(frozen=True)
class Paths:
    stubs_dir: Path = _PKG_DIR / "stubs"
    cache_dir: Path = field(default_factory=lambda: Path(_default_cache_dir()))
    host_keys_dir: Path = Path("/usr/share/keys")


PATHS = Paths()
