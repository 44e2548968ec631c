from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List

from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

HOST_KEY_ALGORITHMS = {
    "rsa": ["-t", "rsa", "-b", "3072"],
    "ecdsa": ["-t", "ecdsa", "-b", "256"],
    "ed25519": ["-t", "ed25519"],
}


def host_key_path(keys_dir: str | Path, alg: str) -> Path:
    return Path(keys_dir) / f"ssh_host_{alg}_key"


def ensure_host_keys(keys_dir: str | Path, *, run: Runner = run_cmd) -> List[str]:
    """Generate every missing SSH host keypair under ``keys_dir``.

    Returns the algorithms that were generated.
    """

    d = Path(keys_dir)
    d.mkdir(parents=True, exist_ok=True)

    generated: List[str] = []
    for alg, opts in HOST_KEY_ALGORITHMS.items():
        key = host_key_path(d, alg)
        if key.exists():
            continue
        run(["ssh-keygen", "-q", *opts, "-N", "", "-C", "", "-f", str(key)])
        if key.exists():
            os.chmod(key, 0o600)
        generated.append(alg)
        logger.info("Generated %s SSH host key in %s", alg, d)
    return generated
