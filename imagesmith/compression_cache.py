"""Content-addressed cache of gzip output.

Compressing a large image at maximum ratio is slow and usually produces the
same bytes as last time. Entries are keyed by an HMAC of the uncompressed
content with the scheme name, so output of the multi-threaded compressor and
of the in-process fallback never mix.
"""

from __future__ import annotations

import datetime
import gzip
import hashlib
import hmac
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Optional

from .lib.command import Runner, run_cmd

logger = logging.getLogger(__name__)

SCHEME_PIGZ = "pigz"
SCHEME_ZLIB = "zlib"

PIGZ_LEVEL = 11
ZLIB_LEVEL = 9

EXPIRY = datetime.timedelta(days=92)
PIGZ_TIMEOUT_S = 1800

CHUNK = 1024 * 1024

Clock = Callable[[], datetime.datetime]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def content_key(path: str | Path, scheme: str) -> str:
    mac = hmac.new(scheme.encode("utf-8"), digestmod=hashlib.sha1)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK), b""):
            mac.update(chunk)
    return mac.hexdigest()


class CacheStore:
    """Directory-backed byte store with per-entry expiry and digest check."""

    def __init__(self, root: str | Path, *, clock: Clock = _utcnow) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def get(self, key: str) -> Optional[bytes]:
        entry = self.root / key
        data_path = entry / "data.bin"
        manifest_path = entry / "manifest.json"
        if not data_path.exists() or not manifest_path.exists():
            return None

        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            expires_at = datetime.datetime.fromisoformat(manifest["expires_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping unreadable cache entry %s", key)
            shutil.rmtree(entry, ignore_errors=True)
            return None

        if expires_at <= self._clock():
            shutil.rmtree(entry, ignore_errors=True)
            return None

        data = data_path.read_bytes()
        if hashlib.sha256(data).hexdigest() != manifest.get("sha256"):
            logger.warning("Dropping corrupt cache entry %s", key)
            shutil.rmtree(entry, ignore_errors=True)
            return None
        return data

    def set(self, key: str, data: bytes, *, scheme: str, ttl: datetime.timedelta = EXPIRY) -> None:
        entry = self.root / key
        entry.mkdir(parents=True, exist_ok=True)
        tmp = entry / "data.bin.tmp"
        tmp.write_bytes(data)
        os.replace(tmp, entry / "data.bin")
        manifest = {
            "key": key,
            "scheme": scheme,
            "sha256": hashlib.sha256(data).hexdigest(),
            "expires_at": (self._clock() + ttl).isoformat(),
        }
        (entry / "manifest.json").write_text(json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    def prune(self) -> int:
        """Remove expired or unreadable entries; returns how many went."""

        removed = 0
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir() and self.get(entry.name) is None:
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        return removed


def zlib_compress(path: str | Path, level: int = ZLIB_LEVEL) -> Path:
    src = Path(path)
    if not src.exists():
        raise FileNotFoundError(str(src))
    out = src.with_name(src.name + ".gz")
    with open(src, "rb") as fin, gzip.open(out, "wb", compresslevel=level) as fout:
        for chunk in iter(lambda: fin.read(CHUNK), b""):
            fout.write(chunk)
    src.unlink()
    return out


def pigz_compress(path: str | Path, level: int = PIGZ_LEVEL, *, run: Runner = run_cmd) -> Path:
    src = Path(path)
    if not src.exists():
        raise FileNotFoundError(str(src))
    run(["pigz", f"-{level}", "-f", str(src)], timeout=PIGZ_TIMEOUT_S)
    if src.exists():
        src.unlink()
    return src.with_name(src.name + ".gz")


class CompressionCache:
    def __init__(
        self,
        store: CacheStore,
        *,
        has_pigz: Optional[bool] = None,
        run: Runner = run_cmd,
    ) -> None:
        self.store = store
        self.has_pigz = shutil.which("pigz") is not None if has_pigz is None else has_pigz
        self._run = run

    def compress(self, path: str | Path, quick: bool = False) -> Path:
        """Replace ``path`` with ``path.gz``, reusing cached output when possible."""

        src = Path(path)
        out = src.with_name(src.name + ".gz")
        pigz_key = content_key(src, SCHEME_PIGZ)

        cached = self.store.get(pigz_key)
        if cached is not None:
            logger.info("%s (compressed using pigz) cached", out.name)
            return self._restore(src, out, cached)

        if self.has_pigz and not quick:
            logger.info("compressing %s using pigz-%d, might take a while", src.name, PIGZ_LEVEL)
            pigz_compress(src, PIGZ_LEVEL, run=self._run)
            self.store.set(pigz_key, out.read_bytes(), scheme=SCHEME_PIGZ)
            logger.info("%s compressed", src.name)
            return out

        zlib_key = content_key(src, SCHEME_ZLIB)
        cached = self.store.get(zlib_key)
        if cached is not None:
            logger.info("%s cached", out.name)
            return self._restore(src, out, cached)

        logger.info("compressing %s", src.name)
        zlib_compress(src, ZLIB_LEVEL)
        self.store.set(zlib_key, out.read_bytes(), scheme=SCHEME_ZLIB)
        logger.info("%s compressed", src.name)
        return out

    @staticmethod
    def _restore(src: Path, out: Path, data: bytes) -> Path:
        out.write_bytes(data)
        src.unlink()
        return out
