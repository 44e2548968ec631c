from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .features import Feature, build_features

CONFIG_FILENAME = "imagesmith.yml"
OVERLAY_DIRNAME = "overlay"

PLATFORMS = ("amd64", "aarch64")
SSH_MODES = ("dropbear", "openssh", None)


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any]
    project_dir: str
    features: Tuple[Feature, ...] = field(default=())

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any], project_dir: str | Path) -> "BuildConfig":
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{CONFIG_FILENAME} must contain a mapping/object")

        features = tuple(build_features(raw.get("features")))
        cfg = cls(raw=raw, project_dir=os.path.realpath(str(project_dir)), features=features)

        if cfg.platform not in PLATFORMS:
            raise ConfigurationError(
                f"Unknown platform {cfg.platform}",
                hint="Valid platforms: " + ", ".join(PLATFORMS),
            )
        if cfg.ssh not in SSH_MODES:
            raise ConfigurationError(
                f"Unknown SSH server {cfg.ssh}, valid values are dropbear, openssh and null"
            )
        for key in ("packages",):
            if not isinstance(raw.get(key) or [], list):
                raise ConfigurationError(f"{key} must be a list")
        modules = raw.get("modules") or {}
        if not isinstance(modules, dict):
            raise ConfigurationError("modules must be a mapping with early/late lists")
        return cfg

    @property
    def config_file(self) -> Path:
        return Path(self.project_dir) / CONFIG_FILENAME

    @property
    def overlay_dir(self) -> Path:
        return Path(self.project_dir) / OVERLAY_DIRNAME

    @property
    def wrk_dir(self) -> Path:
        return Path(self.project_dir) / "wrk"

    @property
    def log_dir(self) -> Path:
        return Path(self.project_dir) / "log"

    @property
    def platform(self) -> str:
        return str(self.raw.get("platform") or "amd64")

    @property
    def arch(self) -> str:
        return self.platform.split("-")[0]

    @property
    def ssh(self) -> Optional[str]:
        return self.raw.get("ssh")

    @property
    def root_pwhash(self) -> Optional[str]:
        return self.raw.get("root_pwhash") or None

    @property
    def root_sshkey(self) -> Optional[str]:
        return self.raw.get("root_sshkey") or None

    @property
    def backup(self) -> bool:
        return bool(self.raw.get("backup", True))

    @property
    def busybox(self) -> bool:
        return bool(self.raw.get("busybox", False))

    @property
    def packages(self) -> List[str]:
        return [str(p) for p in (self.raw.get("packages") or [])]

    def required_packages(self) -> List[str]:
        """Configured packages plus those implied by options and enabled features."""

        pkgs = list(self.packages)
        if self.busybox:
            pkgs.append("busybox")
        if self.ssh == "dropbear":
            pkgs.append("dropbear")
        for f in self.features:
            if f.enabled:
                pkgs.extend(f.packages)
        return sorted(set(pkgs))

    def early_modules(self) -> List[str]:
        mods = _suffix_modules(((self.raw.get("modules") or {}).get("early")) or [])
        for f in self.features:
            if f.enabled:
                mods.extend(_suffix_modules([m for m, early in f.kmods.items() if early]))
        return _unique(mods)

    def late_modules(self) -> List[str]:
        mods = _suffix_modules(((self.raw.get("modules") or {}).get("late")) or [])
        if self.busybox:
            mods += ["linprocfs.ko", "linux_common.ko"]
        for f in self.features:
            if f.enabled:
                mods.extend(_suffix_modules([m for m, early in f.kmods.items() if not early]))
        return _unique(mods)

    def disabled_prune_list(self) -> List[str]:
        out: List[str] = []
        for f in self.features:
            if not f.enabled:
                out.extend(f.prune_list)
        return out


def _suffix_modules(modules: List[str]) -> List[str]:
    return [m if m.endswith(".ko") else m + ".ko" for m in (str(x) for x in modules)]


def _unique(items: List[str]) -> List[str]:
    seen: List[str] = []
    for i in items:
        if i not in seen:
            seen.append(i)
    return seen


def load_build_config(project_dir: str | Path) -> BuildConfig:
    p = Path(project_dir) / CONFIG_FILENAME
    if not p.exists():
        raise ConfigurationError(f"Cannot find {p}")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{p} is not valid YAML", context={"error": str(e)}) from e

    cfg = BuildConfig.from_mapping(raw, project_dir)
    if not cfg.overlay_dir.is_dir():
        raise ConfigurationError(f"{cfg.overlay_dir} directory does not exist")
    return cfg
