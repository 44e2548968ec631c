from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from ..errors import RepositoryError, UnreachableRepository

logger = logging.getLogger(__name__)

OK_STATUSES = frozenset({200, 301, 302})
PROBE_TIMEOUT_S = 30


def probe_repository(url: str, *, session: Optional[Any] = None, timeout: float = PROBE_TIMEOUT_S) -> int:
    """Check that a package repository URL answers without following redirects.

    Returns the status code (200/301/302). 404 raises UnreachableRepository,
    any other status or a transport failure raises RepositoryError.
    """

    http = session if session is not None else requests
    try:
        response = http.get(url, timeout=timeout, allow_redirects=False)
    except requests.RequestException as exc:
        raise RepositoryError(
            f"Could not reach package repository {url}",
            hint="Check network connectivity and the release name.",
            context={"url": url, "error": str(exc)},
        ) from exc

    status = int(response.status_code)
    close = getattr(response, "close", None)
    if callable(close):
        close()

    logger.info("Repository probe %s -> %s", url, status)
    if status in OK_STATUSES:
        return status
    if status == 404:
        raise UnreachableRepository(
            f"Seems like {url} doesn't exist",
            hint="Check the release name and target architecture.",
            context={"url": url, "status": str(status)},
        )
    raise RepositoryError(
        f"Seems like there's something wrong in {url}, status code: {status}",
        context={"url": url, "status": str(status)},
    )
