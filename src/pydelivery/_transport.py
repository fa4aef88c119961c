"""HTTP transport for the external geocoding and directions oracles."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from pydelivery.exceptions import OracleError

_logger = logging.getLogger(__name__)

USER_AGENT = "pydelivery/1 (+https://pypi.org/project/pydelivery/)"


class Transport(Protocol):
    """Structural transport interface used by the oracle clients.

    Tests pass a fake with the same coroutine; production uses
    :class:`JsonTransport`.
    """

    async def get_json(self, url: str, params: Mapping[str, str] | None = None) -> Any:
        ...


class JsonTransport:
    """GET requests returning decoded JSON, with failures mapped to :class:`OracleError`."""

    def __init__(self, http_session: aiohttp.ClientSession, *, timeout: float = 10.0) -> None:
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def get_json(self, url: str, params: Mapping[str, str] | None = None) -> Any:
        headers = {"accept": "application/json", "user-agent": USER_AGENT}

        _logger.debug("GET %s params=%s", url, dict(params or {}))

        try:
            async with self._http.get(url, params=params, headers=headers, timeout=self._timeout) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise OracleError(
                        f"HTTP {resp.status} from {url}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=url,
                    )
        except OracleError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise OracleError(f"Request to {url} failed: {exc}", endpoint=url) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise OracleError(f"Invalid JSON from {url}: {text[:200]}", endpoint=url) from exc
