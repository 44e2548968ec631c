from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from imagesmith.logging_utils import LATEST_LINK, configure_logging, rotate_logs

from .conftest import write_file


@pytest.fixture
def clean_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    for attr in ("_imagesmith_configured", "_imagesmith_log_path"):
        if hasattr(root, attr):
            delattr(root, attr)
    root.setLevel(level)


def test_rotate_keeps_newest(tmp_path: Path) -> None:
    for name in ("2026-01-01T00-00-00", "2026-02-01T00-00-00", "2026-03-01T00-00-00"):
        write_file(tmp_path / f"{name}.log", name)

    assert rotate_logs(tmp_path, keep=2) == 1
    assert sorted(p.name for p in tmp_path.glob("*.log")) == [
        "2026-02-01T00-00-00.log",
        "2026-03-01T00-00-00.log",
    ]


def test_configure_logging_writes_latest(tmp_path: Path, clean_root_logger: None) -> None:
    path = configure_logging(tmp_path / "log", also_console=False)

    logging.getLogger("imagesmith.test").info("hello from the build")
    for h in logging.getLogger().handlers:
        h.flush()

    latest = tmp_path / "log" / LATEST_LINK
    assert latest.is_symlink()
    assert latest.resolve() == Path(path).resolve()
    assert "hello from the build" in Path(path).read_text()
    # Second call does not add handlers.
    assert configure_logging(tmp_path / "other", also_console=False) == path
