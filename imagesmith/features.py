from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Tuple

from .errors import ConfigurationError


@dataclass(frozen=True)
class Feature:
    """A named, toggleable bundle of packages, kernel modules and prune rules.

    ``kmods`` maps module name to True when it must load early (from the
    loader) and False when it may load late (from rc).
    """

    name: str
    enabled: bool = False
    prune_list: Tuple[str, ...] = ()
    packages: Tuple[str, ...] = ()
    kmods: Mapping[str, bool] = field(default_factory=dict)


KNOWN_FEATURES: Dict[str, Feature] = {
    "bsdinstall": Feature(
        name="bsdinstall",
        prune_list=(
            "usr/sbin/bsdinstall",
            "usr/libexec/bsdinstall",
            "boot/pmbr",
            "boot/gptboot",
            "boot/gptzfsboot",
        ),
        packages=("pkg",),
    ),
}


def build_features(raw: Mapping[str, Any] | None) -> List[Feature]:
    """Resolve the ``features`` mapping of a project config, in registry order."""

    raw = dict(raw or {})
    unknown = sorted(set(raw) - set(KNOWN_FEATURES))
    if unknown:
        raise ConfigurationError(
            f"Unknown feature{'s' if len(unknown) > 1 else ''}: {', '.join(unknown)}",
            hint="Known features: " + ", ".join(KNOWN_FEATURES),
        )

    out: List[Feature] = []
    for name, default in KNOWN_FEATURES.items():
        value = raw.get(name, default.enabled)
        if not isinstance(value, bool):
            raise ConfigurationError(f"Feature {name} must be true or false, got {value!r}")
        out.append(replace(default, enabled=value))
    return out
