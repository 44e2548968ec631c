"""Base system and package installation, cached behind pool checkpoints.

Each installer fingerprints its inputs and compares the result with the
fingerprint stored next to the pool. A mismatch destroys the stage's
checkpoint; a surviving checkpoint means the expensive work is skipped.
The checkpoint is always committed before the new fingerprint is written.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from .build_config import BuildConfig
from .context import BuildContext
from .errors import ConfigurationError, ExternalToolFailure
from .fingerprint import (
    fingerprint_files,
    fingerprint_values,
    load_fingerprint,
    save_fingerprint,
    utc_today,
)
from .lib.assets import copy_tree, tar_stream
from .lib.command import LineSink, Runner, run_cmd
from .lib.env import PATHS
from .lib.mounts import mounted, nullfs, tmpfs
from .lib.pkg import filter_base_packages, pkg_chroot_argv, pkgbase_argv
from .lib.net import probe_repository
from .lib.pool import CheckpointStore
from .release import BASE_PACKAGE_PREFIX, BASE_REPO_NAME, ReleaseDescriptor

logger = logging.getLogger(__name__)

EMPTY = "empty"
INSTALLED = "installed"
PKGS_INSTALLED = "pkgsInstalled"

BASE_FINGERPRINT_FILE = "distFileHash"
BASE_VERSION_FILE = "baseVersion"
PACKAGES_FINGERPRINT_FILE = "packagesHash"

DIST_FILES = ("kernel.txz", "base.txz")

BASE_TIMEOUT_S = 1800
PKG_TIMEOUT_S = 7200

NO_UPDATES = "No updates are available"

SSHD_HARDENING = (
    "PasswordAuthentication no\n"
    "KbdInteractiveAuthentication no\n"
    "PermitRootLogin yes\n"
    "\n"
)

RC_DEFAULTS = (
    'entropy_boot_file="NO"\n'
    'entropy_file="NO"\n'
    'clear_tmp_X="NO"\n'
    'varmfs="NO"\n'
    'imagesmithinit_enable="YES"\n'
    "\n"
)


@dataclass(frozen=True)
class PkgBaseSource:
    """Install the base system from the release's package repository."""

    release: ReleaseDescriptor


@dataclass(frozen=True)
class DistFilesSource:
    """Install the base system from kernel.txz and base.txz in ``directory``."""

    directory: str

    def files(self) -> List[Path]:
        return [Path(self.directory) / f for f in DIST_FILES]


BaseSource = Union[PkgBaseSource, DistFilesSource]


def find_distribution_files(directory: str | Path) -> Optional[str]:
    """Directory holding both distribution archives, looking in the usual spots."""

    base = Path(os.path.realpath(str(directory)))
    for candidate in (base, base / "usr/freebsd-dist"):
        if all((candidate / f).is_file() for f in DIST_FILES):
            return str(candidate)
    return None


def installed_version(root: str | Path, *, patch: bool = True, run: Runner = run_cmd) -> str:
    r = run([str(Path(root) / "bin/freebsd-version")], cwd=str(root))
    out = (r.stdout or "").strip()
    if not patch:
        out = re.sub(r"-p[0-9]{1,2}$", "", out)
    return out


def _progress_sink(on_line: Optional[LineSink]) -> LineSink:
    return on_line if on_line is not None else (lambda _line: None)


class BaseInstaller:
    def __init__(
        self,
        store: CheckpointStore,
        source: BaseSource,
        *,
        arch: str,
        ctx: BuildContext,
        run: Runner = run_cmd,
        http: Optional[Any] = None,
        clock: Callable[[], str] = utc_today,
        on_line: Optional[LineSink] = None,
        cache_dir: str | Path | None = None,
        stubs_dir: str | Path | None = None,
        host_keys_dir: str | Path | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.arch = arch
        self.ctx = ctx
        self._run = run
        self._http = http
        self._clock = clock
        self._sink = _progress_sink(on_line)
        self.cache_dir = Path(cache_dir) if cache_dir is not None else PATHS.cache_dir
        self.stubs_dir = Path(stubs_dir) if stubs_dir is not None else PATHS.stubs_dir
        self.host_keys_dir = Path(host_keys_dir) if host_keys_dir is not None else PATHS.host_keys_dir

    @property
    def root(self) -> Path:
        return self.store.root

    @property
    def fingerprint_path(self) -> Path:
        return self.store.mountpoint / BASE_FINGERPRINT_FILE

    @property
    def version_path(self) -> Path:
        return self.store.mountpoint / BASE_VERSION_FILE

    def fingerprint(self) -> str:
        if isinstance(self.source, PkgBaseSource):
            return fingerprint_values(
                self.source.release.base_repo(self.arch), self._clock(), self.ctx.build_id
            )
        files = self.source.files()
        missing = [str(f) for f in files if not f.is_file()]
        if missing:
            raise ConfigurationError(
                "Cannot find distribution files: " + ", ".join(missing),
                hint="Point --distfiles at a directory with kernel.txz and base.txz.",
            )
        return fingerprint_files(files, self.ctx.build_id)

    def install(self) -> bool:
        """Materialize the base system. Returns True on a checkpoint hit."""

        fp = self.fingerprint()
        if load_fingerprint(self.fingerprint_path) != fp:
            self.store.destroy_checkpoint(INSTALLED)

        if self.store.has_checkpoint(INSTALLED):
            version = load_fingerprint(self.version_path)
            if version:
                logger.info("base system (%s) unchanged, using snapshot", version)
            else:
                logger.info("base system unchanged, using snapshot")
            return True

        self.store.rollback(EMPTY)

        if isinstance(self.source, PkgBaseSource):
            self._install_pkgbase(self.source.release)
        else:
            self._install_dist_files(self.source)

        version = installed_version(self.root, run=self._run)
        self.finalize_install()
        self.store.checkpoint(INSTALLED)
        save_fingerprint(self.version_path, version)
        save_fingerprint(self.fingerprint_path, fp)
        return False

    def _install_pkgbase(self, release: ReleaseDescriptor) -> None:
        root = self.root
        probe_repository(release.base_repo(self.arch), session=self._http)

        pkg_conf = root / "usr/local/etc/pkg/repos" / f"{BASE_REPO_NAME}.conf"
        pkg_conf.parent.mkdir(parents=True, exist_ok=True)
        pkg_conf.write_text(release.base_conf(self.arch), encoding="utf-8")

        self._install_trust_material()
        self._install_resolv_conf()

        pkg_cache = self.cache_dir / f"pkgbase_{self.arch}"
        pkg_cache.mkdir(parents=True, exist_ok=True)

        pkg = pkgbase_argv(
            root=str(root),
            repo_conf_dir=str(pkg_conf.parent),
            abi=release.abi(self.arch),
            os_version=release.os_version(),
        )
        with mounted([nullfs(pkg_cache, root / "var/cache/pkg")], run=self._run):
            logger.info("downloading base packages")
            self._run([*pkg, "update"], timeout=BASE_TIMEOUT_S, on_line=self._sink)
            available = self._run([*pkg, "search", BASE_PACKAGE_PREFIX], timeout=BASE_TIMEOUT_S)
            pkgs = filter_base_packages(
                available.stdout, self._base_package_patterns(), prefix=BASE_PACKAGE_PREFIX
            )
            self._run([*pkg, "install", "-U", "-F", "-y", *pkgs], timeout=BASE_TIMEOUT_S, on_line=self._sink)
            logger.info("base packages downloaded")

            logger.info("installing base packages")
            self._run([*pkg, "install", "-U", "-y", *pkgs], timeout=BASE_TIMEOUT_S, on_line=self._sink)

        pkg_conf.unlink()
        logger.info("base packages installed")

    def _install_dist_files(self, source: DistFilesSource) -> None:
        for archive in source.files():
            logger.info("extracting %s", archive.name)
            self._run(
                ["tar", "-xvf", str(archive), "-C", str(self.root)],
                timeout=BASE_TIMEOUT_S,
                on_line=self._sink,
            )
            logger.info("%s extracted", archive.name)
        self._install_resolv_conf()
        self._run_os_update()

    def _run_os_update(self) -> None:
        version = installed_version(self.root, run=self._run)
        update_dir = self.store.cache / "freebsd-update"
        update_dir.mkdir(parents=True, exist_ok=True)

        base = [
            "freebsd-update",
            "-b", str(self.root),
            "-d", str(update_dir),
            "--currently-running", version,
            "--not-running-from-cron",
        ]

        logger.info("running freebsd-update")
        self._run([*base, "fetch"], timeout=BASE_TIMEOUT_S, on_line=self._sink)

        def run_install() -> bool:
            try:
                self._run([*base, "install"], timeout=BASE_TIMEOUT_S, on_line=self._sink)
            except ExternalToolFailure as e:
                if NO_UPDATES in e.output:
                    return False
                raise
            return True

        # A kernel update needs a second install pass for userland.
        if run_install():
            run_install()
            logger.info("updated to %s", installed_version(self.root, run=self._run))
        else:
            logger.info("no updates to install")

        shutil.rmtree(update_dir, ignore_errors=True)

    def _base_package_patterns(self) -> List[str]:
        lines = (self.stubs_dir / "basepkgs").read_text(encoding="utf-8").splitlines()
        return [l.strip() for l in lines if l.strip() and not l.startswith("#")]

    def _install_trust_material(self) -> None:
        keys = self.root / "usr/share/keys"
        if self.host_keys_dir.is_dir():
            copy_tree(str(self.host_keys_dir), str(keys))
        # Key sets the host lacks, e.g. for a newer major release.
        shipped = self.stubs_dir / "keys"
        if shipped.is_dir():
            for d in sorted(shipped.iterdir()):
                if d.is_dir() and not (keys / d.name).exists():
                    copy_tree(str(d), str(keys / d.name))
                    logger.info("installed shipped %s keys", d.name)
        if keys.is_dir():
            for d in keys.iterdir():
                if d.is_dir():
                    (d / "revoked").mkdir(exist_ok=True)

    def _install_resolv_conf(self) -> None:
        dst = self.root / "etc/resolv.conf"
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.stubs_dir / "resolv.conf", dst)

    def finalize_install(self) -> None:
        root = self.root
        (root / "boot/modules").mkdir(parents=True, exist_ok=True)
        (root / "usr/local/etc/pkg").mkdir(parents=True, exist_ok=True)

        var_tmp = root / "var/tmp"
        if var_tmp.is_symlink() or var_tmp.is_file():
            var_tmp.unlink()
        elif var_tmp.is_dir():
            shutil.rmtree(var_tmp)
        var_tmp.parent.mkdir(parents=True, exist_ok=True)
        os.symlink("../tmp", var_tmp)

        _append(root / "etc/ssh/sshd_config", SSHD_HARDENING)
        _append(root / "etc/defaults/rc.conf", RC_DEFAULTS)


class PackageInstaller:
    def __init__(
        self,
        store: CheckpointStore,
        config: BuildConfig,
        *,
        arch: str,
        run: Runner = run_cmd,
        on_line: Optional[LineSink] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.arch = arch
        self._run = run
        self._sink = _progress_sink(on_line)

    @property
    def root(self) -> Path:
        return self.store.root

    @property
    def fingerprint_path(self) -> Path:
        return self.store.mountpoint / PACKAGES_FINGERPRINT_FILE

    @property
    def pkg_config_overlay(self) -> Path:
        return self.config.overlay_dir / "usr/local/etc/pkg"

    def fingerprint(self, packages: List[str]) -> str:
        mtime = None
        if self.pkg_config_overlay.exists():
            mtime = str(int(self.pkg_config_overlay.stat().st_mtime))
        return fingerprint_values(packages, mtime)

    def install(self) -> bool:
        """Install the configured package set. Returns True on a checkpoint hit."""

        packages = self.config.required_packages()
        fp = self.fingerprint(packages)

        if load_fingerprint(self.fingerprint_path) != fp:
            self.store.destroy_checkpoint(PKGS_INSTALLED)

        if self.store.has_checkpoint(PKGS_INSTALLED):
            logger.info("package list unchanged, using snapshot")
            self.store.rollback(PKGS_INSTALLED)
            return True

        self.store.rollback(INSTALLED)
        self.store.cache.mkdir(parents=True, exist_ok=True)

        if packages:
            self._install(packages)
        else:
            logger.info("no packages configured")

        self.store.checkpoint(PKGS_INSTALLED)
        save_fingerprint(self.fingerprint_path, fp)
        return False

    def _install(self, packages: List[str]) -> None:
        root = self.root
        if self.pkg_config_overlay.exists():
            tar_stream(self.pkg_config_overlay, root / "usr/local/etc/pkg", run=self._run, on_line=self._sink)

        version = installed_version(root, patch=False, run=self._run)
        cache = self.store.cache / f"pkg-{version}-{self.arch}"
        cache.mkdir(parents=True, exist_ok=True)

        pkg = pkg_chroot_argv(str(root))
        specs = [nullfs(cache, root / "var/cache/pkg"), tmpfs(root / "var/db/pkg")]
        with mounted(specs, run=self._run):
            logger.info("updating package database")
            self._run([*pkg, "update"], timeout=PKG_TIMEOUT_S, on_line=self._sink)
            logger.info("downloading packages")
            self._run([*pkg, "install", "-F", "-y", "-U", *packages], timeout=PKG_TIMEOUT_S, on_line=self._sink)
            logger.info("installing packages")
            self._run([*pkg, "install", "-U", "-y", *packages], timeout=PKG_TIMEOUT_S, on_line=self._sink)
        logger.info("packages installed")


def _append(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)
