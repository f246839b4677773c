import itertools
import logging
import os
import threading
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

PROXIES_ENV = "RELAY_PROXIES"


class TransportSelector(Protocol):
    def select(self, target_url: str) -> str | None:
        """Return the forward proxy URL to reach ``target_url``, or None for a direct route."""
        ...


class ProxySelector:
    """Round-robin over configured forward proxies."""

    def __init__(self, proxies: Sequence[str] = ()) -> None:
        self.proxies = tuple(p.strip() for p in proxies if p and p.strip())
        self._cycle = itertools.cycle(self.proxies) if self.proxies else None
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "ProxySelector":
        raw = os.environ.get(PROXIES_ENV, "")
        return cls([item for item in raw.split(",") if item.strip()])

    def select(self, target_url: str) -> str | None:
        if self._cycle is None:
            return None
        with self._lock:
            proxy = next(self._cycle)
        logger.debug("proxy selected target=%s proxy=%s", target_url, proxy)
        return proxy
