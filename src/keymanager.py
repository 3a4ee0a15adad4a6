"""WireGuard key lifecycle for the management channel.

Every owner (a provider connection, or a vpn network) holds at most one
Active key. Rotation never drops connectivity:

1. Generate a new X25519 pair.
2. Push it to the provider as an additional accepted peer.
3. Mark it Active and the prior key Overlapping.
4. Once the grace period passes with no handshake failure attributed to the
   old key, and no in-flight call pins it, mark it Retiring, remove it from
   the provider and wipe its private half. Peers that still handshake on the
   old key but never on the new one count as a handshake failure.

A failed step 2 aborts the rotation and the old key stays Active. A failed
step 4 is retried on every tick without blocking other owners.

Rotations are staggered: each owner rotates at slots k*interval + offset,
where offset is derived from the SHA-256 of the owner id, so a fleet of
owners does not rotate at the same moment.

Nothing here hands out secrets except borrow() and session(); everything
else returns KeyHandle.
"""

import hashlib
import logging
import math
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from cryptography.fernet import Fernet

from errors import KeyUnavailableError, ProviderError
from models.keys import KeyHandle, KeyMaterial, RotationState, SecretKey
from providers.base import DEFAULT_TIMEOUT, CallContext, Credential, ProviderAdapter
from reconciler.lease import LeaseTable
from reconciler.state import KEYRING_PREFIX, StateStore, keyring_key

logger = logging.getLogger(__name__)

DEFAULT_ROTATION_INTERVAL = 7 * 86400.0
DEFAULT_GRACE_PERIOD = 48 * 3600.0


def rotation_offset(owner: str, interval: float) -> float:
    """Deterministic offset in [0, interval) for an owner."""
    digest = hashlib.sha256(owner.encode('utf-8')).digest()
    fraction = int.from_bytes(digest[:8], 'big') / 2 ** 64
    return fraction * interval


def next_rotation_at(owner: str, valid_from: float, interval: float) -> float:
    """First staggered slot at or after valid_from + interval / 2."""
    offset = rotation_offset(owner, interval)
    earliest = valid_from + interval / 2
    k = math.ceil((earliest - offset) / interval)
    return k * interval + offset


def lease_key(owner: str) -> str:
    return f'keys:{owner}'


class KeyLifecycleManager:
    """Owns every KeyMaterial and drives rotation.

    Args:
        adapters: Provider adapters by connection name
        leases: Lease table shared with the engine
        store: Where keyrings persist (optional)
        clock: Wall clock, injectable for tests
        rotation_interval: Seconds between rotations of one owner
        grace_period: Seconds an Overlapping key stays accepted
        sealer: Fernet used to seal private halves at rest
        timeout: Bound for each adapter call
    """

    def __init__(
        self,
        adapters: dict[str, ProviderAdapter],
        leases: LeaseTable,
        store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
        rotation_interval: float = DEFAULT_ROTATION_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        sealer: Optional[Fernet] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._adapters = adapters
        self._leases = leases
        self._store = store
        self._clock = clock
        self.rotation_interval = rotation_interval
        self.grace_period = grace_period
        self._sealer = sealer
        self._timeout = timeout
        self._lock = threading.RLock()
        self._rings: dict[str, list[KeyMaterial]] = {}
        self._pins: dict[str, int] = {}

    # -- internals --------------------------------------------------------

    def _ctx(self) -> CallContext:
        return CallContext(timeout=self._timeout)

    def _adapter(self, material: KeyMaterial) -> ProviderAdapter:
        try:
            return self._adapters[material.provider]
        except KeyError:
            raise ProviderError(f"no adapter for provider '{material.provider}'", provider=material.provider)

    def _active(self, owner: str) -> Optional[KeyMaterial]:
        for material in self._rings.get(owner, []):
            if material.rotation_state == RotationState.ACTIVE:
                return material
        return None

    def _find(self, key_id: str) -> Optional[KeyMaterial]:
        for ring in self._rings.values():
            for material in ring:
                if material.key_id == key_id:
                    return material
        return None

    def _persist(self, owner: str) -> None:
        if self._store is None:
            return
        ring = self._rings.get(owner)
        if not ring:
            self._store.delete(keyring_key(owner))
            return
        self._store.put(keyring_key(owner), {
            'owner': owner,
            'keys': [m.to_record(self._sealer) for m in ring],
        })

    def _push(self, material: KeyMaterial) -> None:
        self._adapter(material).rotate_credentials(self._ctx(), material)

    def _drop(self, owner: str, material: KeyMaterial) -> None:
        material.purge()
        with self._lock:
            ring = self._rings.get(owner, [])
            if material in ring:
                ring.remove(material)
            if not ring:
                self._rings.pop(owner, None)
            self._persist(owner)

    def _pinned(self, key_id: str) -> bool:
        return self._pins.get(key_id, 0) > 0

    def _still_needed(self, owner: str, material: KeyMaterial) -> bool:
        """Whether peers still handshake on an expiring key but never on its successor.

        That is a handshake failure on the rotation: it is reported against the
        old key, which restarts its grace period.
        """
        with self._lock:
            active = self._active(owner)
        if active is None:
            return False
        try:
            seen = self._adapter(material).latest_handshakes(self._ctx())
        except ProviderError as e:
            logger.warning(f"Reading handshakes for {owner} failed: {e}")
            return False
        if seen.get(active.public_key, 0) >= active.valid_from:
            return False
        if seen.get(material.public_key, 0) < active.valid_from:
            return False
        self.report_handshake_failure(material.key_id)
        return True

    def _remove_from_provider(self, owner: str, material: KeyMaterial) -> bool:
        """Retire one key upstream. Returns False (key kept Retiring) on failure."""
        with self._lock:
            material.rotation_state = RotationState.RETIRING
            self._persist(owner)
        try:
            self._push(material)
        except ProviderError as e:
            logger.warning(f"Removing key {material.key_id} of {owner} failed, will retry: {e}")
            return False
        self._drop(owner, material)
        logger.info(f"Purged key {material.key_id} of {owner}")
        return True

    # -- lifecycle --------------------------------------------------------

    def enroll(self, owner: str, provider: str) -> KeyHandle:
        """Create and push the first key of an owner (no-op if it has one)."""
        with self._leases.hold(lease_key(owner), 'keys:enroll'):
            with self._lock:
                active = self._active(owner)
            if active is not None:
                return active.handle()
            material = KeyMaterial.generate(owner, provider, now=self._clock())
            try:
                self._push(material)
            except ProviderError:
                material.purge()
                raise
            with self._lock:
                self._rings.setdefault(owner, []).insert(0, material)
                self._persist(owner)
        logger.info(f"Enrolled key {material.key_id} for {owner} on {provider}")
        return material.handle()

    def rotate(self, owner: str) -> KeyHandle:
        """Rotate an owner's key now.

        Returns the new Active handle, or the current one when a previous
        rotation is still overlapping.

        Raises:
            KeyUnavailableError: If the owner has no key
            ProviderError: If the new key could not be pushed (old stays Active)
            LeaseBusyError: If another rotation of this owner is in flight
        """
        with self._leases.hold(lease_key(owner), 'keys:rotate', blocking=False):
            return self._rotate(owner)

    def _rotate(self, owner: str) -> KeyHandle:
        with self._lock:
            current = self._active(owner)
            if current is None:
                raise KeyUnavailableError(f'{owner}/active')
            if any(m.rotation_state != RotationState.ACTIVE for m in self._rings[owner]):
                logger.info(f"Rotation of {owner} deferred: previous key still overlapping")
                return current.handle()

        now = self._clock()
        new = KeyMaterial.generate(owner, current.provider, now=now, slot=1 - current.slot)
        try:
            self._push(new)
        except ProviderError as e:
            new.purge()
            logger.warning(f"Rotation of {owner} aborted, key {current.key_id} stays active: {e}")
            raise

        with self._lock:
            current.rotation_state = RotationState.OVERLAPPING
            current.valid_until = now + self.grace_period
            self._rings[owner].insert(0, new)
            self._persist(owner)
        logger.info(f"Rotated {owner}: {current.key_id} -> {new.key_id}")
        return new.handle()

    def refresh(self, owner: str) -> None:
        """Re-push every accepted key of an owner (after Unauthenticated)."""
        with self._lock:
            ring = [m for m in self._rings.get(owner, []) if m.rotation_state != RotationState.RETIRING]
        for material in ring:
            self._push(material)
        if ring:
            logger.info(f"Refreshed {len(ring)} key(s) for {owner}")

    def retire_owner(self, owner: str) -> None:
        """Remove every key of an owner. Failed removals stay Retiring for tick()."""
        with self._leases.hold(lease_key(owner), 'keys:retire'):
            with self._lock:
                ring = list(self._rings.get(owner, []))
            for material in ring:
                self._remove_from_provider(owner, material)

    def tick(self) -> dict:
        """One pass of the rotation schedule over every owner.

        Busy owners are skipped and picked up by the next tick.

        Returns:
            Summary with lists of owner ids: rotated, purged, deferred, failed
        """
        summary = {'rotated': [], 'purged': [], 'deferred': [], 'failed': []}
        with self._lock:
            owners = sorted(self._rings)
        for owner in owners:
            lease = self._leases.try_acquire(lease_key(owner), 'keys:tick')
            if lease is None:
                summary['deferred'].append(owner)
                continue
            try:
                self._tick_owner(owner, summary)
            finally:
                self._leases.release(lease)

        for handle in self.overdue():
            logger.warning(
                f"Key {handle.key_id} of {handle.owner} is past its grace period "
                f"({handle.rotation_state.value})"
            )
        return summary

    def _tick_owner(self, owner: str, summary: dict) -> None:
        now = self._clock()
        with self._lock:
            ring = list(self._rings.get(owner, []))

        for material in ring:
            if material.rotation_state == RotationState.ACTIVE:
                continue
            expired = material.valid_until is None or material.valid_until <= now
            if material.rotation_state == RotationState.OVERLAPPING and not expired:
                continue
            if material.rotation_state == RotationState.OVERLAPPING and self._still_needed(owner, material):
                summary['deferred'].append(owner)
                continue
            if self._pinned(material.key_id):
                logger.debug(f"Purge of {material.key_id} deferred: pinned by an in-flight call")
                summary['deferred'].append(owner)
                continue
            if self._remove_from_provider(owner, material):
                summary['purged'].append(owner)
            else:
                summary['failed'].append(owner)

        with self._lock:
            active = self._active(owner)
        if active is None:
            return
        due = next_rotation_at(owner, active.valid_from, self.rotation_interval)
        # Keys restored without a private half cannot be used; replace them
        if now >= due or not active.has_secret:
            try:
                handle = self._rotate(owner)
            except ProviderError:
                summary['failed'].append(owner)
                return
            if handle.key_id != active.key_id:
                summary['rotated'].append(owner)

    # -- use ----------------------------------------------------------------

    @contextmanager
    def session(self, owner: str) -> Iterator[Optional[Credential]]:
        """Pin the owner's Active key for the duration of an adapter call.

        Yields None when the owner has no key. A pinned key is not purged even
        if a rotation moves it to Overlapping and its grace period ends.
        """
        with self._lock:
            active = self._active(owner)
            if active is None:
                credential = None
            else:
                credential = Credential(
                    owner=owner,
                    key_id=active.key_id,
                    public_key=active.public_key,
                    secret=active.private,
                )
                self._pins[active.key_id] = self._pins.get(active.key_id, 0) + 1
        try:
            yield credential
        finally:
            if credential is not None:
                with self._lock:
                    remaining = self._pins.get(credential.key_id, 1) - 1
                    if remaining:
                        self._pins[credential.key_id] = remaining
                    else:
                        self._pins.pop(credential.key_id, None)

    def borrow(self, handle: KeyHandle) -> SecretKey:
        """The only path from a handle to its secret.

        Raises:
            KeyUnavailableError: After purge, or for keys this manager never held
        """
        with self._lock:
            material = self._find(handle.key_id)
            if material is None or not material.has_secret:
                raise KeyUnavailableError(handle.key_id)
            return material.private

    def report_handshake_failure(self, key_id: str) -> None:
        """A peer failed a handshake with this key; restart its grace window."""
        with self._lock:
            material = self._find(key_id)
            if material is None:
                logger.warning(f"Handshake failure reported for unknown key {key_id}")
                return
            if material.rotation_state == RotationState.OVERLAPPING:
                material.valid_until = self._clock() + self.grace_period
                self._persist(material.owner)
                logger.warning(
                    f"Handshake failure on overlapping key {key_id} of {material.owner}; grace period restarted"
                )
            else:
                logger.warning(f"Handshake failure on {material.rotation_state.value} key {key_id} of {material.owner}")

    # -- introspection --------------------------------------------------------

    def handles(self, owner: Optional[str] = None) -> list[KeyHandle]:
        with self._lock:
            owners = [owner] if owner is not None else sorted(self._rings)
            return [m.handle() for o in owners for m in self._rings.get(o, [])]

    def owners(self) -> list[str]:
        with self._lock:
            return sorted(self._rings)

    def overdue(self) -> list[KeyHandle]:
        """Overlapping/Retiring keys still held past their grace period."""
        now = self._clock()
        with self._lock:
            return [
                m.handle()
                for ring in self._rings.values()
                for m in ring
                if m.rotation_state != RotationState.ACTIVE
                and m.valid_until is not None
                and m.valid_until < now
            ]

    def next_rotation(self, owner: str) -> Optional[float]:
        with self._lock:
            active = self._active(owner)
        if active is None:
            return None
        return next_rotation_at(owner, active.valid_from, self.rotation_interval)

    # -- persistence ---------------------------------------------------------

    def load(self) -> int:
        """Restore keyrings from the store. Returns the number of keys loaded."""
        if self._store is None:
            return 0
        count = 0
        with self._lock:
            for key in self._store.keys(KEYRING_PREFIX):
                record = self._store.get(key) or {}
                owner = record.get('owner') or key[len(KEYRING_PREFIX):]
                if owner in self._rings:
                    continue
                ring = [KeyMaterial.from_record(r, self._sealer) for r in record.get('keys', [])]
                if not ring:
                    continue
                self._rings[owner] = ring
                count += len(ring)
                for material in ring:
                    if material.rotation_state == RotationState.ACTIVE and not material.has_secret:
                        logger.warning(
                            f"Key {material.key_id} of {owner} restored without its private half; "
                            f"it will be rotated on the next tick"
                        )
        logger.debug(f"Loaded {count} key(s) from state")
        return count


