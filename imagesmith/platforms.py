"""Platform hooks: how a finished root becomes a bootable disk image.

The pipeline calls the hooks in a fixed order: ``prepare``, ``prune_boot``,
``base_fstab`` (while finalizing the root) and ``build_image``. The shipped
:class:`MfsPlatform` boots a kernel whose root filesystem is a compressed
memory-disk image loaded by the boot loader.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, List, Protocol

from .lib.fstab import Fstab
from .lib.md import md_attach_file, md_destroy
from .lib.mounts import mounted, tmpfs

if TYPE_CHECKING:
    from .pipeline import BuildPipeline

logger = logging.getLogger(__name__)

IMAGE_NAME = "imagesmith.img"
ESP_SIZE_MB = 33
MAKEFS_TIMEOUT_S = 1800

# Files under boot/kernel that are not modules but must stay.
KERNEL_KEEP = ("kernel", "linker.hints")

EFI_LOADERS = {
    "amd64": "BOOTX64.efi",
    "aarch64": "BOOTAA64.efi",
}


class PlatformHooks(Protocol):
    def prepare(self, quick: bool, platform: str) -> None:
        ...

    def prune_boot(self) -> None:
        ...

    def base_fstab(self) -> Fstab:
        ...

    def build_image(self, quick: bool, platform: str) -> Path:
        ...


class MfsPlatform:
    def __init__(self, pipeline: "BuildPipeline") -> None:
        self.p = pipeline

    @property
    def root(self) -> Path:
        return self.p.root

    @property
    def wrk(self) -> Path:
        return self.p.wrk

    @property
    def image_path(self) -> Path:
        return self.wrk / IMAGE_NAME

    def prepare(self, quick: bool, platform: str) -> None:
        cfg = self.p.config
        loader_conf = self.root / "boot/loader.conf"
        loader_conf.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            'autoboot_delay="2"',
            'mfsroot_load="YES"',
            'mfsroot_type="mfs_root"',
            'mfsroot_name="/boot/mfsroot"',
            'vfs.root.mountfrom="ufs:/dev/md0"',
        ]
        for mod in cfg.early_modules():
            lines.append(f'{mod[: -len(".ko")]}_load="YES"')
        loader_conf.write_text("\n".join(lines) + "\n", encoding="utf-8")

        late = [m[: -len(".ko")] for m in cfg.late_modules()]
        if late:
            (self.root / "etc").mkdir(parents=True, exist_ok=True)
            with open(self.root / "etc/rc.conf", "a", encoding="utf-8") as f:
                f.write(f'kld_list="{" ".join(late)}"\n')
        logger.info("prepared %s root (quick=%s)", platform, quick)

    def prune_boot(self) -> None:
        """Drop kernel modules the image does not load, and debug symbols."""

        cfg = self.p.config
        keep = set(cfg.early_modules()) | set(cfg.late_modules())
        removed = 0
        for d in self.p.kernel_module_dirs():
            if not d.is_dir():
                continue
            for f in sorted(d.iterdir()):
                if f.name in KERNEL_KEEP or not f.is_file():
                    continue
                if f.name.endswith(".symbols") or (f.name.endswith(".ko") and f.name not in keep):
                    f.unlink()
                    removed += 1
        logger.info("pruned %d files from boot", removed)

    def base_fstab(self) -> Fstab:
        return (
            Fstab()
            .add_line("/dev/md0", "/", "ufs", "rw")
            .add_line("tmpfs", "/tmp", "tmpfs", "rw,mode=1777")
        )

    def build_image(self, quick: bool, platform: str) -> Path:
        run = self.p.run
        arch = platform.split("-")[0]
        boot = self.wrk / "boot"
        if boot.exists():
            shutil.rmtree(boot)
        shutil.copytree(self.root / "boot", boot, symlinks=True)

        # /usr is shipped as a tarball mounted with tarfs, see fstab.
        run(["tar", "-cf", str(self.root / ".usr.tar"), "-C", str(self.root), "usr"], timeout=MAKEFS_TIMEOUT_S)

        self.p.store.ensure_capacity()
        mfsroot = boot / "mfsroot"
        # An empty tmpfs hides usr from makefs; only the mountpoint goes in.
        with mounted([tmpfs(self.root / "usr")], run=run):
            run(
                [
                    "makefs", "-t", "ffs", "-o", "label=mfsroot",
                    "-o", "minfree=0,optimization=space",
                    str(mfsroot), str(self.root),
                ],
                timeout=MAKEFS_TIMEOUT_S,
                on_line=self.p.verbose,
            )
        self.p.compression.compress(mfsroot, quick)

        esp = self._build_esp(arch)

        bootfs = self.wrk / "bootfs.img"
        run(["makefs", "-t", "ffs", "-o", "label=boot", str(bootfs), str(boot)], timeout=MAKEFS_TIMEOUT_S)

        run(
            [
                "mkimg", "-s", "gpt",
                "-p", f"efi:={esp}",
                "-p", f"freebsd-ufs:={bootfs}",
                "-o", str(self.image_path),
            ],
            timeout=MAKEFS_TIMEOUT_S,
        )
        for tmp in (esp, bootfs):
            if tmp.exists():
                tmp.unlink()
        return self.image_path

    def _build_esp(self, arch: str) -> Path:
        run = self.p.run
        esp = self.wrk / "esp.img"
        efi = self.wrk / "efi"
        with open(esp, "wb") as f:
            f.truncate(ESP_SIZE_MB * 1024 * 1024)

        md = md_attach_file(str(esp), run=run)
        self.p.devices.add(md)
        try:
            run(["newfs_msdos", "-F", "32", "-c", "1", f"/dev/{md}"])
            efi.mkdir(parents=True, exist_ok=True)
            run(["mount_msdosfs", f"/dev/{md}", str(efi)])
            try:
                target = efi / "EFI/BOOT" / EFI_LOADERS.get(arch, "BOOTX64.efi")
                target.parent.mkdir(parents=True, exist_ok=True)
                loader = self.root / "boot/loader.efi"
                if loader.exists():
                    shutil.copyfile(loader, target)
            finally:
                run(["umount", str(efi)])
        finally:
            md_destroy(md, run=run)
            self.p.devices.discard(md)
        shutil.rmtree(efi, ignore_errors=True)
        return esp


def module_names(dirs: List[Path]) -> set:
    """Base names of kernel modules (``*.ko`` and ``*.ko.gz``) in ``dirs``."""

    names = set()
    for d in dirs:
        if not d.is_dir():
            continue
        for f in d.rglob("*"):
            if f.is_file() and (f.name.endswith(".ko") or f.name.endswith(".ko.gz")):
                names.add(f.name.split(".")[0])
    return names
