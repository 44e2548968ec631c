from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Any, List

import pytest

from imagesmith.errors import ResourceCleanupFailure
from imagesmith.interrupt import InterruptHandler, TransientDevices

from .conftest import FakeRunner, write_file


def _df(mounts: List[str]):
    payload = {"storage-system-information": {"filesystem": [{"mounted-on": m} for m in mounts]}}

    def handler(argv: List[str], **_kw: Any) -> str:
        return json.dumps(payload)

    return handler


def test_only_mounts_under_wrk_are_unmounted(tmp_path: Path) -> None:
    wrk = tmp_path / "wrk"
    wrk.mkdir()
    runner = FakeRunner().on(
        "df",
        _df([f"{wrk}/root/var/cache/pkg", f"{wrk}/root/var/db/pkg", "/usr/ports"]),
    )
    lines: List[str] = []

    InterruptHandler(wrk, run=runner, report=lines.append).cleanup()

    assert runner.commands("umount") == [
        ["umount", "-f", f"{wrk}/root/var/cache/pkg"],
        ["umount", "-f", f"{wrk}/root/var/db/pkg"],
    ]
    assert lines[:2] == [f"umounted {wrk}/root/var/cache/pkg", f"umounted {wrk}/root/var/db/pkg"]
    assert "rm'd temporary files" in lines


def test_sibling_directory_with_common_prefix_is_left_alone(tmp_path: Path) -> None:
    wrk = tmp_path / "wrk"
    wrk.mkdir()
    runner = FakeRunner().on("df", _df([f"{wrk}2/var/cache"]))
    lines: List[str] = []

    InterruptHandler(wrk, run=runner, report=lines.append).cleanup()

    assert runner.commands("umount") == []
    assert lines[0] == "no temporary mounts"


def test_unmount_failure_does_not_stop_cleanup(tmp_path: Path) -> None:
    wrk = tmp_path / "wrk"
    write_file(wrk / "imagesmith.img", "img")
    (wrk / "boot").mkdir()
    write_file(wrk / "efi/EFI/BOOT/BOOTX64.efi", "efi")
    write_file(wrk / "root/keep.img", "not top level")
    devices = TransientDevices()
    devices.add("md7")

    runner = FakeRunner().on("df", _df([f"{wrk}/root/a", f"{wrk}/root/b"]))
    runner.fail(f"umount -f {wrk}/root/a", output="device busy")
    lines: List[str] = []

    handler = InterruptHandler(wrk, devices=devices, run=runner, report=lines.append)
    handler.cleanup()

    assert f"failed to umount {wrk}/root/a" in lines
    assert f"umounted {wrk}/root/b" in lines
    assert "released md7" in lines
    assert not (wrk / "imagesmith.img").exists()
    assert not (wrk / "boot").exists()
    assert not (wrk / "efi").exists()
    assert (wrk / "root/keep.img").exists()
    assert len(devices) == 0
    assert [f.resource for f in handler.failures] == [f"{wrk}/root/a"]
    assert all(isinstance(f, ResourceCleanupFailure) for f in handler.failures)


def test_cleanup_is_idempotent(tmp_path: Path) -> None:
    wrk = tmp_path / "wrk"
    write_file(wrk / "imagesmith.img", "img")
    devices = TransientDevices()
    devices.add("md7")
    runner = FakeRunner().on("df", _df([]))
    handler = InterruptHandler(wrk, devices=devices, run=runner, report=lambda _l: None)

    handler.cleanup()
    second = handler.cleanup()

    assert second == ["no temporary mounts", "rm'd temporary files"]
    assert len(runner.commands("mdconfig")) == 1
    assert handler.failures == []


def test_handler_exits_with_signal_status(tmp_path: Path) -> None:
    wrk = tmp_path / "wrk"
    wrk.mkdir()
    runner = FakeRunner().on("df", _df([]))
    lines: List[str] = []
    handler = InterruptHandler(wrk, run=runner, report=lines.append)

    with pytest.raises(SystemExit) as exc:
        handler.handle_signal(signal.SIGINT, None)

    assert exc.value.code == 128 + signal.SIGINT
    assert lines[0] == "received SIGINT signal, cleaning things up..."


def test_install_restores_previous_handlers(tmp_path: Path) -> None:
    previous = signal.getsignal(signal.SIGTERM)
    handler = InterruptHandler(tmp_path, run=FakeRunner())

    handler.install()
    assert signal.getsignal(signal.SIGTERM) == handler.handle_signal
    handler.uninstall()

    assert signal.getsignal(signal.SIGTERM) == previous


def test_mounted_esp_is_released_before_its_device(tmp_path: Path) -> None:
    wrk = tmp_path / "wrk"
    write_file(wrk / "efi/EFI/BOOT/BOOTX64.efi", "efi")
    write_file(wrk / "esp.img", "esp")
    devices = TransientDevices()
    devices.add("md7")
    runner = FakeRunner().on("df", _df([f"{wrk}/efi"]))
    lines: List[str] = []

    handler = InterruptHandler(wrk, devices=devices, run=runner, report=lines.append)
    handler.cleanup()

    assert "msdosfs" in runner.commands("df")[0][2]
    assert runner.calls[1:] == [
        ["umount", "-f", f"{wrk}/efi"],
        ["mdconfig", "-d", "-u", "md7"],
    ]
    assert lines == [f"umounted {wrk}/efi", "rm'd temporary files", "released md7"]
    assert not (wrk / "efi").exists()
    assert not (wrk / "esp.img").exists()
    assert handler.failures == []
