import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from .credentials import CredentialPool
from .errors import DispatchNetworkError, DispatchQuotaOrAuthExhausted
from .transport import TransportSelector

logger = logging.getLogger(__name__)

QUOTA_OR_AUTH_STATUSES: frozenset[int] = frozenset({401, 402, 403, 429})
DEFAULT_MAX_ATTEMPTS = 10
MAX_ATTEMPTS_ENV = "RELAY_MAX_DISPATCH_ATTEMPTS"
BODY_PREVIEW_CHARS = 200

ClientFactory = Callable[[str | None], httpx.AsyncClient]


def max_attempts_from_env(default: int = DEFAULT_MAX_ATTEMPTS) -> int:
    raw = os.getenv(MAX_ATTEMPTS_ENV)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("invalid %s=%r, using %d", MAX_ATTEMPTS_ENV, raw, default)
        return default
    return value if value > 0 else default


@dataclass
class DispatchResult:
    response: httpx.Response
    attempts: int
    rotated: bool = False
    credential_index: int | None = None


class ResilientDispatcher:
    """Sends one upstream request, rotating pooled credentials on quota/auth failures.

    The returned response is opened in streaming mode; the caller owns it and must
    close it. Quota/auth failures are buffered before rotation so the last one can
    still be relayed to the client verbatim.
    """

    def __init__(
        self,
        pool: CredentialPool,
        selector: TransportSelector | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 600.0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.pool = pool
        self.selector = selector
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._client_factory = client_factory
        self._clients: dict[str | None, httpx.AsyncClient] = {}

    def _client(self, proxy: str | None) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            if self._client_factory is not None:
                client = self._client_factory(proxy)
            else:
                client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), proxy=proxy)
            self._clients[proxy] = client
        return client

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    async def dispatch(
        self,
        url: str,
        headers: Mapping[str, str],
        payload: Any,
        *,
        label: str = "",
    ) -> DispatchResult:
        self.pool.start_cycle()
        request_headers = dict(headers)
        if self.pool.mode == "pool":
            request_headers["authorization"] = await self.pool.authorization()
        attempts = 0
        rotated = False
        while True:
            attempts += 1
            credential = self.pool.current()
            proxy = self.selector.select(url) if self.selector is not None else None
            client = self._client(proxy)
            request = client.build_request("POST", url, headers=request_headers, json=payload)
            try:
                response = await client.send(request, stream=True)
            except httpx.TransportError as exc:
                logger.error(
                    "dispatch network_error label=%s url=%s attempt=%d error=%s",
                    label,
                    url,
                    attempts,
                    exc.__class__.__name__,
                )
                raise DispatchNetworkError(str(exc) or exc.__class__.__name__, url=url, attempts=attempts) from exc

            if response.status_code not in QUOTA_OR_AUTH_STATUSES:
                if rotated:
                    logger.warning(
                        "dispatch fallback success label=%s status=%d attempts=%d credential=#%s",
                        label,
                        response.status_code,
                        attempts,
                        credential.index + 1 if credential else "-",
                    )
                return DispatchResult(
                    response=response,
                    attempts=attempts,
                    rotated=rotated,
                    credential_index=credential.index if credential else None,
                )

            try:
                body = await response.aread()
            except httpx.TransportError as exc:
                await response.aclose()
                raise DispatchNetworkError(str(exc) or exc.__class__.__name__, url=url, attempts=attempts) from exc
            logger.warning(
                "dispatch quota_or_auth label=%s status=%d attempt=%d credential=%s body=%s",
                label,
                response.status_code,
                attempts,
                credential.preview if credential else "-",
                body[:BODY_PREVIEW_CHARS].decode("utf-8", errors="replace"),
            )
            if attempts >= self.max_attempts or not self.pool.has_more() or not self.pool.rotate():
                logger.error(
                    "dispatch exhausted label=%s status=%d attempts=%d pool_size=%d",
                    label,
                    response.status_code,
                    attempts,
                    self.pool.size,
                )
                raise DispatchQuotaOrAuthExhausted(response, attempts=attempts)
            rotated = True
            request_headers["authorization"] = await self.pool.authorization()
