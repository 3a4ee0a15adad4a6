"""Per-id exclusive leases.

A lease grants one holder exclusive right to mutate one id (a resource id, or
keys:<owner> for key rotation) for a bounded time. Holders renew before every
provider call; an expired lease is free for the next acquirer, so a crashed
worker never wedges an id.

User mutations block on acquire (a delete waits for an in-flight create);
the drift sweep uses try_acquire and skips busy ids.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from errors import LeaseBusyError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 900.0


@dataclass
class Lease:
    """One granted lease. token distinguishes successive grants of a key."""
    key: str
    holder: str
    expires_at: float
    token: int


class LeaseTable:
    """Thread-safe lease table shared by the engine, the sweep and the key manager."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._cond = threading.Condition()
        self._leases: dict[str, Lease] = {}
        self._next_token = 0

    def _current(self, key: str) -> Optional[Lease]:
        lease = self._leases.get(key)
        if lease is not None and lease.expires_at <= self._clock():
            logger.warning(f"Lease for {key} held by {lease.holder} expired")
            del self._leases[key]
            return None
        return lease

    def _grant(self, key: str, holder: str, ttl: Optional[float]) -> Lease:
        self._next_token += 1
        lease = Lease(
            key=key,
            holder=holder,
            expires_at=self._clock() + (ttl if ttl is not None else self.ttl),
            token=self._next_token,
        )
        self._leases[key] = lease
        return lease

    def try_acquire(self, key: str, holder: str, ttl: Optional[float] = None) -> Optional[Lease]:
        """Grant the lease if free, else return None without waiting."""
        with self._cond:
            if self._current(key) is not None:
                return None
            return self._grant(key, holder, ttl)

    def acquire(self, key: str, holder: str, timeout: Optional[float] = None,
                ttl: Optional[float] = None) -> Lease:
        """Wait until the lease is free (or the holder's lease expires) and take it.

        Raises:
            LeaseBusyError: If timeout elapses first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                current = self._current(key)
                if current is None:
                    return self._grant(key, holder, ttl)
                wait = max(0.0, current.expires_at - self._clock())
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise LeaseBusyError(key, current.holder)
                    wait = min(wait, remaining)
                self._cond.wait(wait)

    def renew(self, lease: Lease, ttl: Optional[float] = None) -> None:
        """Extend a held lease.

        Raises:
            LeaseBusyError: If the lease expired and someone else took the key
        """
        with self._cond:
            current = self._current(lease.key)
            if current is None:
                # Expired but unclaimed: take it back under the same token
                self._leases[lease.key] = lease
            elif current.token != lease.token:
                raise LeaseBusyError(lease.key, current.holder)
            lease.expires_at = self._clock() + (ttl if ttl is not None else self.ttl)

    def release(self, lease: Lease) -> None:
        with self._cond:
            current = self._leases.get(lease.key)
            if current is not None and current.token == lease.token:
                del self._leases[lease.key]
                self._cond.notify_all()

    def holder(self, key: str) -> Optional[str]:
        with self._cond:
            current = self._current(key)
            return current.holder if current else None

    @contextmanager
    def hold(self, key: str, holder: str, blocking: bool = True,
             timeout: Optional[float] = None) -> Iterator[Lease]:
        """Hold a lease for the duration of a with-block.

        Raises:
            LeaseBusyError: Non-blocking and the key is busy, or timeout elapsed
        """
        if blocking:
            lease = self.acquire(key, holder, timeout=timeout)
        else:
            lease = self.try_acquire(key, holder)
            if lease is None:
                raise LeaseBusyError(key, self.holder(key) or 'unknown')
        try:
            yield lease
        finally:
            self.release(lease)
