from __future__ import annotations

import logging
import re
from typing import Iterable, List, Sequence

logger = logging.getLogger(__name__)

KERNEL_PACKAGE = "kernel-generic"


def pkgbase_argv(*, root: str, repo_conf_dir: str, abi: str, os_version: str) -> List[str]:
    """pkg invocation that manages base packages of a foreign root."""

    return [
        "pkg",
        "--rootdir", root,
        "--repo-conf-dir", repo_conf_dir,
        "-o", "IGNORE_OSVERSION=yes",
        "-o", f"ABI={abi}",
        "-o", f"OSVERSION={os_version}",
    ]


def pkg_chroot_argv(root: str) -> List[str]:
    return ["pkg", "-c", root]


def base_package_regex(patterns: Iterable[str], *, prefix: str) -> "re.Pattern[str]":
    names = [p.strip() for p in patterns if p.strip() and not p.strip().startswith("#")]
    return re.compile(r"^(%s(%s))-([1-9][0-9])" % (re.escape(prefix), "|".join(names)))


def filter_base_packages(search_output: str, patterns: Sequence[str], *, prefix: str) -> List[str]:
    """Pick allow-listed base package names out of ``pkg search`` output.

    The kernel package is always part of the allow-list.
    """

    regex = base_package_regex([*patterns, KERNEL_PACKAGE], prefix=prefix)
    out: List[str] = []
    for line in search_output.splitlines():
        m = regex.match(line)
        if m and m.group(1) not in out:
            out.append(m.group(1))
    logger.info("Selected %d base packages", len(out))
    return out
