"""HTTP helper shared by the weather fetchers: GET with retry + error mapping."""

from __future__ import annotations

import logging
import time

import requests

from rainoracle.errors import Fatal, Retryable

log = logging.getLogger("rainoracle.http")

RETRY_STATUS = (429, 500, 502, 503, 504)
AUTH_STATUS = (401, 403)


def get_json(
    url: str,
    params: dict,
    timeout: float = 30,
    max_retries: int = 3,
    sleep=time.sleep,
):
    """GET request with exponential backoff retry.

    Rate limits and server errors are retried ``max_retries`` times and then
    surface as ``Retryable``.  Authentication failures and other 4xx answers
    are configuration problems and raise ``Fatal`` straight away.
    """
    last_error = ""
    for attempt in range(max_retries + 1):
        try:
            r = requests.get(url, params=params, timeout=timeout)
        except requests.exceptions.RequestException as exc:
            last_error = f"{type(exc).__name__}: {exc}"
            log.warning("GET %s failed (attempt %d/%d): %s",
                        url, attempt + 1, max_retries + 1, last_error)
        else:
            if r.status_code == 200:
                return r.json()
            if r.status_code in AUTH_STATUS:
                raise Fatal(f"{url} rejected credentials (HTTP {r.status_code})")
            if r.status_code not in RETRY_STATUS:
                raise Fatal(f"{url} answered HTTP {r.status_code}: {r.text[:200]}")
            last_error = f"HTTP {r.status_code}"
            log.warning("GET %s -> %s (attempt %d/%d)",
                        url, last_error, attempt + 1, max_retries + 1)

        if attempt < max_retries:
            sleep(2 ** (attempt + 1))

    raise Retryable(f"Max retries exceeded for {url}: {last_error}")
