"""The image build, stage by stage.

Stages run strictly in order and are never retried. A failing stage raises
and leaves the working pool as it is; the next build starts by rolling back
to a checkpoint anyway.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from .build_config import CONFIG_FILENAME, OVERLAY_DIRNAME, BuildConfig
from .compression_cache import CacheStore, CompressionCache
from .context import BuildContext
from .errors import ConfigurationError
from .fingerprint import utc_today
from .installer import BaseInstaller, BaseSource, PackageInstaller
from .interrupt import InterruptHandler, TransientDevices
from .lib.assets import copy_tree, size_mb
from .lib.command import LineSink, Runner, run_cmd
from .lib.env import PATHS
from .lib.fstab import Fstab
from .lib.pool import BRANCHES, CheckpointStore
from .lib.sshkeys import ensure_host_keys
from .platforms import MfsPlatform, PlatformHooks, module_names

logger = logging.getLogger(__name__)

BACKUP_FILE = "root/imagesmithBackup.tar"
BACKUP_TIMEOUT_S = 600

ZSTD_OPTIONS = {
    "compression-level": 19,
    "min-frame-in": "1M",
    "max-frame-in": "8M",
    "frame-per-file": True,
    "threads": 0,
}

STALE_PATTERNS = ("*.img", "imagesmith.*")

# Headers some ports read to learn the OS version; keep them through pruning.
PRESERVED_HEADERS = ("usr/include/sys/param.h", "usr/include/sys/mount.h")

LOCALE_DIRS = ("usr/share/locale", "usr/local/share/locale")
LOCALE_KEEP = ("en_", "C.UTF")

# usr/bin and usr/sbin tools busybox cannot stand in for.
BUSYBOX_KEEP = re.compile(
    r"^("
    r"ssh|syslo|newsys|cron|jail|jex|jls|bhyve|peri"
    r"|ifcon|dhcli|find|install|du|wall|service"
    r"|env|utx|limits|automount|ldd|tar|bsdtar|pw"
    r"|ip6add|fetch|drill|wpa_|mtree|ntpd|uname|passwd"
    r"|login|su|certctl|openssl|makefs|truncate"
    r"|(?:[a-z]+(pass|user))"
    r")"
)
BUSYBOX_KEEP_BIN = re.compile(r"^(sh|expr|ln|dd)")

DROPBEAR_ALGORITHMS = ("ed25519", "rsa", "ecdsa")

LICENSE_PREAMBLE = (
    "\n\n\nimagesmith and files associated with it are distributed under\n"
    "following terms:\n\n"
)


@dataclass(frozen=True)
class BuildResult:
    image: Path
    size_mb: int
    elapsed_s: int


def encode_tar_options(options: dict, module: str = "zstd") -> str:
    """Render ``{"threads": 0, "frame-per-file": True}`` as tar --options text."""

    out = []
    for k, v in options.items():
        if v is True:
            out.append(f"{module}:{k}")
        else:
            out.append(f"{module}:{k}={v}")
    return ",".join(out)


def read_list(path: Path) -> List[str]:
    """Non-empty, non-comment lines of a stub list file."""

    lines = path.read_text(encoding="utf-8").splitlines()
    return [l.strip() for l in lines if l.strip() and not l.startswith("#")]


def remove_path(p: Path) -> None:
    if p.is_dir() and not p.is_symlink():
        shutil.rmtree(p)
    elif p.exists() or p.is_symlink():
        p.unlink()


class BuildPipeline:
    def __init__(
        self,
        config: BuildConfig,
        store: CheckpointStore,
        source: BaseSource,
        *,
        ctx: BuildContext,
        run: Runner = run_cmd,
        http: Optional[Any] = None,
        clock: Callable[[], str] = utc_today,
        compression: Optional[CompressionCache] = None,
        platform_factory: Callable[["BuildPipeline"], PlatformHooks] = MfsPlatform,
        on_line: Optional[LineSink] = None,
        monotonic: Callable[[], float] = time.monotonic,
        cache_dir: str | Path | None = None,
        stubs_dir: str | Path | None = None,
        host_keys_dir: str | Path | None = None,
        handle_signals: bool = True,
    ) -> None:
        self.config = config
        self.store = store
        self.source = source
        self.ctx = ctx
        self.run = run
        self.http = http
        self.clock = clock
        self.on_line = on_line
        self.monotonic = monotonic
        self.cache_dir = Path(cache_dir) if cache_dir is not None else PATHS.cache_dir
        self.stubs_dir = Path(stubs_dir) if stubs_dir is not None else PATHS.stubs_dir
        self.host_keys_dir = Path(host_keys_dir) if host_keys_dir is not None else PATHS.host_keys_dir
        self.handle_signals = handle_signals

        self.devices = TransientDevices()
        if compression is None:
            compression = CompressionCache(CacheStore(self.cache_dir / "compressed"), run=run)
        self.compression = compression
        self.platform = platform_factory(self)

        self._boot_pruned = False
        self._modules: Optional[set] = None

    @property
    def root(self) -> Path:
        return self.store.root

    @property
    def wrk(self) -> Path:
        return self.store.mountpoint

    def verbose(self, line: str) -> None:
        logger.debug("%s", line)
        if self.on_line is not None:
            self.on_line(line)

    def kernel_module_dirs(self) -> List[Path]:
        return [self.root / "boot/kernel", self.root / "boot/modules"]

    def has_kernel_module(self, name: str) -> bool:
        if not self._boot_pruned:
            raise RuntimeError("kernel modules can be checked only after boot has been pruned")
        if self._modules is None:
            self._modules = module_names(self.kernel_module_dirs())
        return name in self._modules

    def build(self, quick: bool = False) -> BuildResult:
        cfg = self.config
        start = self.monotonic()
        self._boot_pruned = False
        self._modules = None

        handler = InterruptHandler(self.wrk, devices=self.devices, run=self.run)
        if self.handle_signals:
            handler.install()
        try:
            self.remove_stale_artifacts()
            self.store.set_compression_profile(tight=True)
            logger.info("building image for %s", cfg.platform)

            self.ensure_ssh_keys()

            self.store.ensure_capacity()
            BaseInstaller(
                self.store,
                self.source,
                arch=cfg.arch,
                ctx=self.ctx,
                run=self.run,
                http=self.http,
                clock=self.clock,
                on_line=self.verbose,
                cache_dir=self.cache_dir,
                stubs_dir=self.stubs_dir,
                host_keys_dir=self.host_keys_dir,
            ).install()

            self.store.ensure_capacity()
            PackageInstaller(
                self.store, cfg, arch=cfg.arch, run=self.run, on_line=self.verbose
            ).install()

            self.prune()

            copy_tree(str(cfg.overlay_dir), str(self.root))
            logger.info("copied overlay directory to the image")

            self.platform.prepare(quick, cfg.platform)
            self.platform.prune_boot()
            self._boot_pruned = True

            if cfg.backup:
                self.backup()
            if cfg.busybox:
                self.minimize()

            self.finalize_root()

            image = self.platform.build_image(quick, cfg.platform)
        finally:
            if self.handle_signals:
                handler.uninstall()

        result = BuildResult(
            image=image,
            size_mb=size_mb(image),
            elapsed_s=int(self.monotonic() - start),
        )
        logger.info(
            "%s size %sm, generated in %d seconds", result.image, result.size_mb, result.elapsed_s
        )
        return result

    def remove_stale_artifacts(self) -> None:
        skip = {self.wrk / b for b in BRANCHES} | {self.wrk / ".checkpoints"}
        for dirpath, dirnames, filenames in os.walk(self.wrk):
            dirnames[:] = [d for d in dirnames if Path(dirpath) / d not in skip]
            for f in filenames:
                if any(Path(f).match(p) for p in STALE_PATTERNS):
                    os.unlink(os.path.join(dirpath, f))

    def ensure_ssh_keys(self) -> None:
        generated = ensure_host_keys(self.config.overlay_dir / "etc/ssh", run=self.run)
        if generated:
            logger.info("generated SSH host keys: %s", ", ".join(generated))

    def prune_list(self) -> List[str]:
        paths = read_list(self.stubs_dir / "prunelist")
        paths.extend(self.config.disabled_prune_list())
        ssh = self.config.ssh
        if ssh in ("dropbear", None):
            paths.extend(read_list(self.stubs_dir / "prunelist.openssh"))
        elif ssh != "openssh":
            raise ConfigurationError(
                f"unknown SSH server {ssh}, valid values are dropbear, openssh and null"
            )
        return paths

    def prune(self) -> None:
        root = self.root
        paths = self.prune_list()

        preserved = {}
        for rel in PRESERVED_HEADERS:
            p = root / rel
            if p.is_file():
                preserved[rel] = p.read_bytes()

        for pattern in paths:
            pattern = pattern.lstrip("/")
            if ".." in Path(pattern).parts:
                raise ConfigurationError(f"prune path escapes the root: {pattern}")
            for p in sorted(root.glob(pattern), reverse=True):
                remove_path(p)

        for rel in LOCALE_DIRS:
            d = root / rel
            if not d.is_dir():
                continue
            for sub in d.iterdir():
                if sub.is_dir() and not sub.name.startswith(LOCALE_KEEP):
                    shutil.rmtree(sub)

        for rel, data in preserved.items():
            p = root / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        logger.info("pruned dev tools, manpages and disabled features")

    def backup(self) -> Path:
        target = self.root / BACKUP_FILE
        target.parent.mkdir(parents=True, exist_ok=True)
        self.run(
            [
                "tar", "-v", "--zstd",
                "--options", encode_tar_options(ZSTD_OPTIONS),
                "-cf", str(target),
                CONFIG_FILENAME, OVERLAY_DIRNAME,
            ],
            cwd=self.config.project_dir,
            timeout=BACKUP_TIMEOUT_S,
            on_line=self.verbose,
        )
        logger.info("backed up %s and the overlay directory to the image", CONFIG_FILENAME)
        return target

    def minimize(self) -> int:
        """Replace base system tools with links to busybox. Returns links made."""

        root = self.root
        commands = set(read_list(self.stubs_dir / "busybox"))
        (root / "bin").mkdir(parents=True, exist_ok=True)
        os.replace(root / "usr/local/bin/busybox", root / "bin/busybox")

        linked = 0
        for sub in ("usr/bin", "usr/sbin"):
            d = root / sub
            if not d.is_dir():
                continue
            for f in sorted(d.iterdir()):
                if f.is_symlink() or not f.is_file() or BUSYBOX_KEEP.match(f.name):
                    continue
                f.unlink()
                if f.name in commands:
                    os.symlink("../../bin/busybox", f)
                    linked += 1

        for sub, link, exclude in (
            ("bin", "busybox", BUSYBOX_KEEP_BIN),
            ("sbin", "../bin/busybox", None),
        ):
            d = root / sub
            if not d.is_dir():
                continue
            for f in sorted(d.iterdir()):
                if f.is_symlink() or not f.is_file() or f.name == "busybox":
                    continue
                if exclude is not None and exclude.match(f.name):
                    continue
                if f.name in commands:
                    f.unlink()
                    os.symlink(link, f)
                    linked += 1

        logger.info("linked %d commands to busybox", linked)
        return linked

    def generate_fstab(self) -> Fstab:
        fstab = self.platform.base_fstab()
        fstab.add_line("/.usr.tar", "/usr", "tarfs", "ro,as=tarfs")

        for pseudo, mnt in (("fdescfs", "/dev/fd"), ("procfs", "/proc")):
            if self.has_kernel_module(pseudo):
                fstab.add_line(pseudo, mnt, pseudo, "rw")

        if self.has_kernel_module("linux_common"):
            for lin in ("linprocfs", "linsysfs"):
                if self.has_kernel_module(lin):
                    base = lin[: -len("fs")]
                    mnt = "/compat/linux/" + base[len("lin"):]
                    fstab.add_line(base, mnt, lin, "rw")
                    (self.root / mnt.lstrip("/")).mkdir(parents=True, exist_ok=True)

        return fstab.merge_existing(self.root / "etc/fstab")

    def finalize_root(self) -> None:
        root = self.root

        fstab_file = root / "etc/fstab"
        fstab = self.generate_fstab()
        fstab_file.parent.mkdir(parents=True, exist_ok=True)
        fstab_file.write_text(fstab.render(), encoding="utf-8")
        logger.info("fstab generated")

        if (root / "compat/linux").is_dir():
            shm = root / "compat/linux/dev/shm"
            shm.parent.mkdir(parents=True, exist_ok=True)
            if not shm.is_symlink():
                os.symlink("../../../../tmp", shm)

        license_text = (self.stubs_dir / "LICENSE").read_text(encoding="utf-8")
        with open(root / "COPYRIGHT", "a", encoding="utf-8") as f:
            f.write(LICENSE_PREAMBLE + license_text + "\n")

        copy_tree(str(self.stubs_dir / "rc.d"), str(root / "etc/rc.d"), overwrite=False)
        shutil.copyfile(self.stubs_dir / "motd", root / "etc/motd.template")

        self.set_root_credentials()
        self.enable_ssh()

    def set_root_credentials(self) -> Optional[str]:
        cfg = self.config
        pw_hash = cfg.root_pwhash
        key = cfg.root_sshkey

        if pw_hash:
            self.run(
                ["pw", "-V", str(self.root / "etc"), "usermod", "root", "-H", "0"],
                input_text=pw_hash,
            )
        if key:
            ssh_dir = self.root / "root/.ssh"
            ssh_dir.mkdir(parents=True, exist_ok=True)
            keys = ssh_dir / "authorized_keys"
            with open(keys, "a", encoding="utf-8") as f:
                f.write(key if key.endswith("\n") else key + "\n")
            os.chmod(keys, 0o700)

        if pw_hash and key:
            msg = "root password and ssh key set"
        elif pw_hash:
            msg = "root password set"
        elif key:
            msg = "root ssh key set"
        else:
            return None
        logger.info(msg)
        return msg

    def enable_ssh(self) -> None:
        rc_conf = self.root / "etc/defaults/rc.conf"
        ssh = self.config.ssh
        if ssh == "dropbear":
            d = self.root / "usr/local/etc/dropbear"
            d.mkdir(parents=True, exist_ok=True)
            for alg in DROPBEAR_ALGORITHMS:
                links = {
                    f"dropbear_{alg}_host_key": f"../../../../var/run/dropbear/dropbear_{alg}_host_key",
                    f"dropbear_{alg}_host_key.pub": f"../../../../etc/ssh/ssh_host_{alg}_key.pub",
                }
                for name, target in links.items():
                    remove_path(d / name)
                    os.symlink(target, d / name)
            with open(rc_conf, "a", encoding="utf-8") as f:
                f.write('dropbear_enable="YES"\ndropbear_args="-s"\n')
            logger.info("dropbear enabled")
        elif ssh == "openssh":
            with open(rc_conf, "a", encoding="utf-8") as f:
                f.write('sshd_enable="YES"\n')
            logger.info("openssh enabled")
