from __future__ import annotations

import datetime
import hashlib
import json
import os
from pathlib import Path
from typing import Any, Iterable, Optional

CHUNK = 1024 * 1024


def utc_today() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d")


def fingerprint_values(*values: Any) -> str:
    """Hash of JSON-serializable inputs; order matters."""

    payload = json.dumps(list(values), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fingerprint_files(paths: Iterable[str | Path], *extra: str) -> str:
    """Hash of file contents followed by ``extra`` strings (empty ones skipped)."""

    h = hashlib.sha256()
    for p in paths:
        with open(p, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK), b""):
                h.update(chunk)
    for e in extra:
        if e:
            h.update(e.encode("utf-8"))
    return h.hexdigest()


def load_fingerprint(path: str | Path) -> Optional[str]:
    p = Path(path)
    if not p.exists():
        return None
    return p.read_text(encoding="utf-8").strip()


def save_fingerprint(path: str | Path, value: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(value + "\n", encoding="utf-8")
    os.replace(tmp, p)
