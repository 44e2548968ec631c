"""Shared test fixtures: a scripted command runner, fake HTTP, project dirs."""

from __future__ import annotations

import json
import tarfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import yaml

from imagesmith.context import BuildContext
from imagesmith.errors import ExternalToolFailure
from imagesmith.lib.command import CmdResult
from imagesmith.lib.pool import DirectoryCheckpointStore

FIXED_DAY = "2026-10-18"

Handler = Callable[..., Any]


class FakeRunner:
    """Records every argv and answers from per-command handlers.

    A handler gets ``(argv, **kwargs)`` and returns stdout text, a
    ``CmdResult`` or None. It may raise ``ExternalToolFailure`` to simulate a
    failing command.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.kwargs: List[Dict[str, Any]] = []
        self.handlers: Dict[str, Handler] = {}
        self.failures: List[Tuple[str, str, int]] = []

    def on(self, name: str, handler: Handler) -> "FakeRunner":
        self.handlers[name] = handler
        return self

    def fail(self, needle: str, output: str = "", returncode: int = 1) -> "FakeRunner":
        self.failures.append((needle, output, returncode))
        return self

    def __call__(self, argv: Any, *, check: bool = True, on_line: Optional[Callable[[str], None]] = None, **kwargs: Any) -> CmdResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.kwargs.append(dict(kwargs, check=check))

        joined = " ".join(argv)
        for needle, output, rc in self.failures:
            if needle in joined:
                if check:
                    raise ExternalToolFailure(f"failed: {joined}", argv=argv, returncode=rc, output=output)
                return CmdResult(argv=argv, returncode=rc, stdout=output, stderr="")

        stdout = ""
        handler = self.handlers.get(Path(argv[0]).name)
        if handler is not None:
            res = handler(argv, **kwargs)
            if isinstance(res, CmdResult):
                return res
            stdout = res or ""
        if on_line is not None:
            for line in stdout.splitlines():
                on_line(line)
        return CmdResult(argv=argv, returncode=0, stdout=stdout, stderr="")

    def commands(self, name: str) -> List[List[str]]:
        return [c for c in self.calls if Path(c[0]).name == name]

    def joined(self) -> List[str]:
        return [" ".join(c) for c in self.calls]


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeHttp:
    def __init__(self, status_code: int = 200, exc: Optional[Exception] = None) -> None:
        self.status_code = status_code
        self.exc = exc
        self.requests: List[Tuple[str, Dict[str, Any]]] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((url, kwargs))
        if self.exc is not None:
            raise self.exc
        return FakeResponse(self.status_code)


def write_file(path: Path, text: str = "", mode: Optional[int] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if mode is not None:
        path.chmod(mode)
    return path


def populate_kernel(root: Path, modules: Tuple[str, ...] = ("if_em.ko", "fdescfs.ko")) -> None:
    write_file(root / "boot/kernel/kernel", "kernel")
    for m in modules:
        write_file(root / "boot/kernel" / m, m)
        write_file(root / "boot/kernel" / (m + ".symbols"), "debug")
    write_file(root / "boot/loader.efi", "efi")


def populate_base(root: Path) -> None:
    write_file(root / "bin/freebsd-version", "#!/bin/sh\n", mode=0o755)
    write_file(root / "bin/sh", "sh", mode=0o755)
    write_file(root / "bin/cat", "cat", mode=0o755)
    write_file(root / "sbin/ifconfig", "ifconfig", mode=0o755)
    write_file(root / "usr/bin/grep", "grep", mode=0o755)
    write_file(root / "usr/bin/ssh", "ssh", mode=0o755)
    write_file(root / "usr/bin/cc", "cc", mode=0o755)
    write_file(root / "usr/include/sys/param.h", "#define __FreeBSD_version 1402000\n")
    write_file(root / "usr/include/sys/mount.h", "/* mount */\n")
    write_file(root / "usr/include/stdio.h", "/* stdio */\n")
    write_file(root / "usr/share/man/man1/ls.1", "ls")
    write_file(root / "usr/share/locale/en_US.UTF-8/LC_CTYPE", "en")
    write_file(root / "usr/share/locale/fi_FI.UTF-8/LC_CTYPE", "fi")
    write_file(root / "usr/sbin/sshd", "sshd", mode=0o755)
    write_file(root / "etc/ssh/sshd_config", "# sshd\n")
    write_file(root / "etc/defaults/rc.conf", "# defaults\n")
    write_file(root / "etc/fstab", "# Device Mountpoint FStype Options Dump Pass#\n")
    write_file(root / "COPYRIGHT", "base copyright\n")


def fake_tar(argv: List[str], cwd: Optional[str] = None, **_kwargs: Any) -> str:
    """Enough of tar(1) for extraction of dist archives and creation of archives."""

    if "-xvf" in argv:
        archive = Path(argv[argv.index("-xvf") + 1])
        root = Path(argv[argv.index("-C") + 1])
        if archive.name == "kernel.txz":
            populate_kernel(root)
        else:
            populate_base(root)
        return f"x {archive.name}\n"

    if "-cf" in argv:
        out = Path(argv[argv.index("-cf") + 1])
        out.parent.mkdir(parents=True, exist_ok=True)
        if "-C" in argv:
            out.write_bytes(b"usr tarball")
            return ""
        names = [a for a in argv[argv.index("-cf") + 2 :]]
        with tarfile.open(out, "w") as tf:
            for n in names:
                tf.add(str(Path(cwd or ".") / n), arcname=n)
        return "\n".join(names) + "\n"
    return ""


def fake_makefs(argv: List[str], **_kwargs: Any) -> str:
    out = Path(argv[-2])
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(b"\0" * 4096)
    return ""


def fake_mkimg(argv: List[str], **_kwargs: Any) -> str:
    out = Path(argv[argv.index("-o") + 1])
    out.write_bytes(b"\1" * (3 * 1024 * 1024))
    return ""


def fake_ssh_keygen(argv: List[str], **_kwargs: Any) -> str:
    key = Path(argv[argv.index("-f") + 1])
    write_file(key, "private")
    write_file(key.with_name(key.name + ".pub"), "public")
    return ""


def fake_mdconfig(argv: List[str], **_kwargs: Any) -> str:
    return "md7\n" if "-a" in argv else ""


def fake_df(argv: List[str], **_kwargs: Any) -> str:
    return json.dumps({"storage-system-information": {"filesystem": []}})


@pytest.fixture
def runner() -> FakeRunner:
    r = FakeRunner()
    r.on("freebsd-version", lambda argv, **kw: "14.2-RELEASE-p1\n")
    r.on("tar", fake_tar)
    r.on("makefs", fake_makefs)
    r.on("mkimg", fake_mkimg)
    r.on("ssh-keygen", fake_ssh_keygen)
    r.on("mdconfig", fake_mdconfig)
    r.on("df", fake_df)
    return r


@pytest.fixture
def ctx() -> BuildContext:
    return BuildContext(is_root=True, build_id="build-1")


@pytest.fixture
def clock() -> Callable[[], str]:
    return lambda: FIXED_DAY


def make_project(base: Path, config: Optional[Dict[str, Any]] = None) -> Path:
    project = base / "project"
    (project / "overlay/etc").mkdir(parents=True, exist_ok=True)
    write_file(project / "overlay/etc/rc.conf", 'hostname="smith"\n')
    raw = {"platform": "amd64", "packages": [], "backup": True, "busybox": False}
    raw.update(config or {})
    write_file(project / "imagesmith.yml", yaml.safe_dump(raw))
    return project


@pytest.fixture
def project(tmp_path: Path) -> Path:
    return make_project(tmp_path)


@pytest.fixture
def store(project: Path) -> DirectoryCheckpointStore:
    DirectoryCheckpointStore.initialize(project, 4096)
    s = DirectoryCheckpointStore.lookup(project)
    assert s is not None
    return s


@pytest.fixture
def distfiles(tmp_path: Path) -> Path:
    d = tmp_path / "dist"
    write_file(d / "kernel.txz", "kernel archive v1")
    write_file(d / "base.txz", "base archive v1")
    return d
