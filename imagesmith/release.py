from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import ConfigurationError

PKG_DOMAIN = "pkg.FreeBSD.org"
BASE_REPO_NAME = "FreeBSD-base"
BASE_PACKAGE_PREFIX = "FreeBSD-"

_RELEASE_RE = re.compile(r"^(\d{2})\.(\d)(?:-RELEASE)?$")


@dataclass(frozen=True)
class ReleaseDescriptor:
    """A base-system release, parameterized by architecture."""

    major: int
    minor: int

    @classmethod
    def parse(cls, release: str) -> "ReleaseDescriptor":
        m = _RELEASE_RE.match(release.strip())
        if not m:
            raise ConfigurationError(
                f"Unsupported release {release!r}",
                hint="Use a release name like 14.2 or 14.2-RELEASE.",
            )
        return cls(major=int(m.group(1)), minor=int(m.group(2)))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}-RELEASE"

    def abi(self, arch: str) -> str:
        return f"FreeBSD:{self.major}:{arch}"

    def base_repo(self, arch: str) -> str:
        return f"https://{PKG_DOMAIN}/{self.abi(arch)}/base_release_{self.minor}"

    def os_version(self) -> str:
        return str(self.major * 100000 + self.minor * 1000)

    def keys_dir(self) -> str:
        return f"/usr/share/keys/pkgbase-{self.major}"

    def base_conf(self, arch: str) -> str:
        """Repository and trust configuration for the base repository."""

        return (
            f"{BASE_REPO_NAME}: {{\n"
            f'  url: "pkg+{self.base_repo(arch)}",\n'
            '  mirror_type: "srv",\n'
            '  signature_type: "fingerprints",\n'
            f'  fingerprints: "{self.keys_dir()}",\n'
            "  enabled: yes\n"
            "}\n"
        )
