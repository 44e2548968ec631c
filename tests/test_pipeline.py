from __future__ import annotations

import os
import signal
import tarfile
from pathlib import Path
from typing import Any, List

import pytest

from imagesmith.build_config import load_build_config
from imagesmith.compression_cache import CacheStore, CompressionCache
from imagesmith.errors import ExternalToolFailure
from imagesmith.installer import DistFilesSource
from imagesmith.lib.fstab import AUTOGEN_MARKER
from imagesmith.lib.pool import DirectoryCheckpointStore
from imagesmith.pipeline import BuildPipeline, encode_tar_options, ZSTD_OPTIONS

from .conftest import FakeRunner, fake_makefs, make_project, write_file


def _no_updates(argv: List[str], **_kw: Any) -> str:
    if argv[-1] == "install":
        raise ExternalToolFailure("install", argv=argv, returncode=1, output="No updates are available")
    return ""


def _fake_pkg(argv: List[str], **_kw: Any) -> str:
    # pkg -c <root> install -U -y ...
    if "install" in argv and "-F" not in argv:
        write_file(Path(argv[2]) / "usr/local/bin/busybox", "busybox", mode=0o755)
    return ""


def _pipeline(project: Path, distfiles: Path, runner: FakeRunner, ctx, tmp_path: Path) -> BuildPipeline:
    runner.on("freebsd-update", _no_updates)
    runner.on("pkg", _fake_pkg)
    DirectoryCheckpointStore.initialize(project, 4096)
    store = DirectoryCheckpointStore.lookup(project)
    assert store is not None
    return BuildPipeline(
        load_build_config(project),
        store,
        DistFilesSource(str(distfiles)),
        ctx=ctx,
        run=runner,
        compression=CompressionCache(CacheStore(tmp_path / "compressed"), has_pigz=False, run=runner),
        cache_dir=tmp_path / "cache",
        host_keys_dir=tmp_path / "no-keys",
    )


def test_encode_tar_options() -> None:
    assert encode_tar_options(ZSTD_OPTIONS) == (
        "zstd:compression-level=19,zstd:min-frame-in=1M,zstd:max-frame-in=8M,"
        "zstd:frame-per-file,zstd:threads=0"
    )


def test_default_build_end_to_end(tmp_path, project, distfiles, runner, ctx) -> None:
    write_file(project / "wrk/stale.img", "old")
    previous = signal.getsignal(signal.SIGINT)
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)

    result = pipeline.build()

    wrk = project / "wrk"
    root = wrk / "root"
    assert result.image == wrk / "imagesmith.img"
    assert sorted(wrk.glob("*.img")) == [result.image]
    assert result.size_mb == 3
    assert signal.getsignal(signal.SIGINT) == previous

    with tarfile.open(root / "root/imagesmithBackup.tar") as tf:
        names = tf.getnames()
    assert "imagesmith.yml" in names
    assert "overlay/etc/rc.conf" in names

    fstab = (root / "etc/fstab").read_text()
    assert fstab.startswith("/dev/md0 / ufs rw\n")
    assert "/.usr.tar /usr tarfs ro,as=tarfs" in fstab
    assert f"# {AUTOGEN_MARKER}" in fstab
    for pseudo in ("fdescfs", "procfs", "linprocfs", "linsysfs"):
        assert pseudo not in fstab

    assert not (root / "bin/busybox").exists()
    assert not (root / "usr/bin/grep").is_symlink()

    # Pruning
    assert (root / "usr/include/sys/param.h").read_text().startswith("#define __FreeBSD_version")
    assert (root / "usr/include/sys/mount.h").exists()
    assert not (root / "usr/include/stdio.h").exists()
    assert not (root / "usr/share/man").exists()
    assert not (root / "usr/share/locale/fi_FI.UTF-8").exists()
    assert (root / "usr/share/locale/en_US.UTF-8").exists()
    assert not (root / "usr/sbin/sshd").exists()
    assert not (root / "boot/kernel/if_em.ko").exists()

    # Overlay, host keys and root finalization
    assert (root / "etc/rc.conf").read_text().startswith('hostname="smith"')
    assert (project / "overlay/etc/ssh/ssh_host_ed25519_key").exists()
    assert (root / "etc/ssh/ssh_host_rsa_key").exists()
    assert (root / "etc/rc.d/imagesmithinit").exists()
    assert (root / "etc/motd.template").exists()
    assert "imagesmith and files associated with it" in (root / "COPYRIGHT").read_text()
    assert runner.commands("pw") == []

    # Image assembly
    assert (wrk / "boot/mfsroot.gz").exists()
    assert not (wrk / "boot/mfsroot").exists()
    assert ["mdconfig", "-d", "-u", "md7"] in runner.calls
    assert len(pipeline.devices) == 0
    assert runner.commands("mkimg")[0][-2:] == ["-o", str(result.image)]


def test_second_build_reuses_checkpoints(tmp_path, project, distfiles, runner, ctx) -> None:
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)
    pipeline.build()
    extractions = [c for c in runner.commands("tar") if "-xvf" in c]

    pipeline.build()

    assert [c for c in runner.commands("tar") if "-xvf" in c] == extractions
    assert len(runner.commands("freebsd-update")) == 2


def test_minimized_dropbear_build(tmp_path, distfiles, runner, ctx) -> None:
    project = make_project(
        tmp_path,
        {
            "busybox": True,
            "ssh": "dropbear",
            "backup": False,
            "modules": {"early": ["fdescfs"]},
            "root_pwhash": "$6$salt$hash",
            "root_sshkey": "ssh-ed25519 AAAA user@host",
        },
    )
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)

    pipeline.build()

    root = project / "wrk/root"
    assert (root / "bin/busybox").is_file()
    assert os.readlink(root / "usr/bin/grep") == "../../bin/busybox"
    assert not (root / "usr/bin/ssh").is_symlink()
    assert os.readlink(root / "bin/cat") == "busybox"
    assert not (root / "bin/sh").is_symlink()
    assert not (root / "sbin/ifconfig").is_symlink()
    assert not (root / "root/imagesmithBackup.tar").exists()

    fstab = (root / "etc/fstab").read_text()
    assert "fdescfs /dev/fd fdescfs rw" in fstab
    assert "procfs" not in fstab

    pw = runner.commands("pw")
    assert pw == [["pw", "-V", str(root / "etc"), "usermod", "root", "-H", "0"]]
    keys = root / "root/.ssh/authorized_keys"
    assert keys.read_text() == "ssh-ed25519 AAAA user@host\n"
    assert keys.stat().st_mode & 0o777 == 0o700

    dropbear = root / "usr/local/etc/dropbear"
    assert os.readlink(dropbear / "dropbear_rsa_host_key") == "../../../../var/run/dropbear/dropbear_rsa_host_key"
    assert os.readlink(dropbear / "dropbear_ed25519_host_key.pub") == "../../../../etc/ssh/ssh_host_ed25519_key.pub"
    rc = (root / "etc/defaults/rc.conf").read_text()
    assert 'dropbear_enable="YES"' in rc
    assert "sshd_enable" not in rc
    assert 'fdescfs_load="YES"' in (root / "boot/loader.conf").read_text()


def test_kernel_module_check_requires_pruned_boot(tmp_path, project, distfiles, runner, ctx) -> None:
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)

    with pytest.raises(RuntimeError):
        pipeline.has_kernel_module("fdescfs")


def test_stage_failure_propagates_and_restores_signals(tmp_path, project, distfiles, runner, ctx) -> None:
    previous = signal.getsignal(signal.SIGTERM)
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)
    runner.fail("mkimg", output="mkimg: out of space")

    with pytest.raises(ExternalToolFailure):
        pipeline.build()

    assert signal.getsignal(signal.SIGTERM) == previous
    assert not (project / "wrk/imagesmith.img").exists()


def test_root_credential_messages(tmp_path, distfiles, runner, ctx) -> None:
    project = make_project(tmp_path, {"root_sshkey": "ssh-ed25519 AAAA"})
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)
    pipeline.root.mkdir(parents=True, exist_ok=True)

    assert pipeline.set_root_credentials() == "root ssh key set"
    assert runner.commands("pw") == []


def test_mfsroot_is_built_with_empty_usr(tmp_path, project, distfiles, runner, ctx) -> None:
    pipeline = _pipeline(project, distfiles, runner, ctx, tmp_path)
    root = project / "wrk/root"
    usr = root / "usr"
    hidden = tmp_path / "usr.hidden"
    seen = {}

    # Stand-ins for a tmpfs covering usr while it is mounted.
    def mount(argv: List[str], **_kw: Any) -> str:
        if argv[-1] == str(usr):
            usr.rename(hidden)
            usr.mkdir()
        return ""

    def umount(argv: List[str], **_kw: Any) -> str:
        if argv[-1] == str(usr):
            usr.rmdir()
            hidden.rename(usr)
        return ""

    def makefs(argv: List[str], **kw: Any) -> str:
        if argv[-1] == str(root):
            seen["usr"] = sorted(p.name for p in usr.iterdir())
            seen["tarball"] = (root / ".usr.tar").exists()
        return fake_makefs(argv, **kw)

    runner.on("mount", mount).on("umount", umount).on("makefs", makefs)

    pipeline.build()

    assert seen == {"usr": [], "tarball": True}
    assert (usr / "bin").is_dir()
    assert ["mount", "-t", "tmpfs", "tmpfs", str(usr)] in runner.calls
    assert ["umount", "-f", str(usr)] in runner.calls
