"""Upstream credential pool with a process-wide rotation cycle.

The pool holds either an ordered list of bearer secrets (primary first, then
fallbacks) or a single refreshable token. Rotation state lives in one
``RotationCycle`` record guarded by a lock so concurrent requests never observe
an index outside the pool. Interleaving between requests is tolerated: a
request may start its cycle while another one is rotating.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Literal

import httpx

from .errors import CredentialUnavailable

logger = logging.getLogger(__name__)

MAX_POOL_KEYS = 7
KEY_ENV_NAMES: tuple[str, ...] = ("RELAY_API_KEY",) + tuple(
    f"RELAY_API_KEY_{n}" for n in range(2, MAX_POOL_KEYS + 1)
)
REFRESH_TOKEN_ENV = "RELAY_REFRESH_TOKEN"
REFRESH_INTERVAL_SECONDS = 6 * 60 * 60

PoolMode = Literal["pool", "refresh", "client"]


@dataclass(frozen=True)
class Credential:
    index: int
    total: int
    secret: str

    @property
    def preview(self) -> str:
        return f"{self.secret[:10]}..."

    @property
    def authorization(self) -> str:
        return f"Bearer {self.secret}"

    def __repr__(self) -> str:
        return f"Credential(index={self.index}, total={self.total}, secret={self.preview!r})"


@dataclass
class RotationCycle:
    current_index: int = 0
    cycle_start_index: int = 0
    cycle_exhausted: bool = False


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    refresh_token: str


class TokenRefresher:
    """Exchanges a refresh token for a fresh access token over HTTP."""

    def __init__(self, url: str, client_id: str, *, timeout: float = 30.0) -> None:
        self.url = url
        self.client_id = client_id
        self.timeout = timeout

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                r = await client.post(self.url, data=form)
            except httpx.TransportError as exc:
                raise CredentialUnavailable(f"token refresh failed: {exc}") from exc
        if r.status_code >= 400:
            raise CredentialUnavailable(f"token refresh failed with status {r.status_code}")
        try:
            data = r.json()
        except ValueError as exc:
            raise CredentialUnavailable("token refresh returned invalid JSON") from exc
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise CredentialUnavailable("token refresh response carried no access_token")
        next_refresh = data.get("refresh_token")
        if not isinstance(next_refresh, str) or not next_refresh:
            next_refresh = refresh_token
        return RefreshedToken(access_token=access_token, refresh_token=next_refresh)


class CredentialPool:
    def __init__(
        self,
        secrets: Sequence[str] = (),
        *,
        refresh_token: str | None = None,
        refresher: TokenRefresher | None = None,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._secrets: tuple[str, ...] = tuple(s.strip() for s in secrets if s and s.strip())
        self._refresh_token = refresh_token.strip() if refresh_token else None
        self._refresher = refresher
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._access_token: str | None = None
        self._last_refresh: float | None = None
        self._refresh_lock: asyncio.Lock | None = None
        self._lock = threading.Lock()
        self._cycle = RotationCycle()
        self.mode: PoolMode
        if self._secrets:
            self.mode = "pool"
        elif self._refresh_token:
            self.mode = "refresh"
        else:
            self.mode = "client"

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        refresher: TokenRefresher | None = None,
    ) -> "CredentialPool":
        env = os.environ if environ is None else environ
        secrets = [env[name].strip() for name in KEY_ENV_NAMES if env.get(name, "").strip()]
        pool = cls(secrets, refresh_token=env.get(REFRESH_TOKEN_ENV), refresher=refresher)
        if pool.mode == "pool":
            logger.info("credential pool loaded keys=%d/%d", pool.size, MAX_POOL_KEYS)
        elif pool.mode == "refresh":
            logger.info("credential pool using refresh token from %s", REFRESH_TOKEN_ENV)
        else:
            logger.info("credential pool empty, client authorization will be forwarded")
        return pool

    @property
    def size(self) -> int:
        if self.mode == "pool":
            return len(self._secrets)
        return 1 if self.mode == "refresh" else 0

    def current(self) -> Credential | None:
        if self.mode != "pool":
            return None
        with self._lock:
            index = self._cycle.current_index
        return Credential(index=index, total=len(self._secrets), secret=self._secrets[index])

    def snapshot(self) -> RotationCycle:
        with self._lock:
            return replace(self._cycle)

    def start_cycle(self) -> None:
        with self._lock:
            self._cycle.cycle_start_index = self._cycle.current_index
            self._cycle.cycle_exhausted = False

    def has_more(self) -> bool:
        if self.mode != "pool" or len(self._secrets) <= 1:
            return False
        with self._lock:
            return not self._cycle.cycle_exhausted

    def rotate(self) -> bool:
        """Advance to the next credential; False once the cycle wraps around."""
        if self.mode != "pool" or len(self._secrets) <= 1:
            return False
        total = len(self._secrets)
        with self._lock:
            previous = self._cycle.current_index
            next_index = (previous + 1) % total
            if next_index == self._cycle.cycle_start_index:
                self._cycle.cycle_exhausted = True
                rotated = False
            else:
                self._cycle.current_index = next_index
                rotated = True
        if not rotated:
            logger.info("credential cycle exhausted total=%d", total)
            return False
        logger.warning(
            "credential rotated from=#%d to=#%d/%d key=%s",
            previous + 1,
            next_index + 1,
            total,
            f"{self._secrets[next_index][:10]}...",
        )
        return True

    def _needs_refresh(self) -> bool:
        if self._access_token is None or self._last_refresh is None:
            return True
        return self._clock() - self._last_refresh >= self._refresh_interval

    async def _refresh(self) -> None:
        if self._refresher is None or self._refresh_token is None:
            raise CredentialUnavailable("no token refresher configured")
        if self._refresh_lock is None:
            self._refresh_lock = asyncio.Lock()
        async with self._refresh_lock:
            if not self._needs_refresh():
                return
            logger.info("refreshing upstream access token")
            refreshed = await self._refresher.refresh(self._refresh_token)
            self._access_token = refreshed.access_token
            self._refresh_token = refreshed.refresh_token
            self._last_refresh = self._clock()
            logger.info("upstream access token refreshed")

    async def initialize(self) -> None:
        if self.mode == "refresh":
            await self._refresh()

    async def authorization(self, client_authorization: str | None = None) -> str:
        """Resolve the Authorization header value for the next upstream call."""
        if self.mode == "pool":
            credential = self.current()
            if credential is None:
                raise CredentialUnavailable("credential pool is empty")
            logger.debug("using credential #%d/%d key=%s", credential.index + 1, credential.total, credential.preview)
            return credential.authorization
        if self.mode == "refresh":
            if self._needs_refresh():
                await self._refresh()
            if not self._access_token:
                raise CredentialUnavailable("no access token available from refresh token")
            return f"Bearer {self._access_token}"
        if client_authorization:
            return client_authorization
        raise CredentialUnavailable(
            "no authorization available: configure RELAY_API_KEY, RELAY_REFRESH_TOKEN or send client authorization"
        )
