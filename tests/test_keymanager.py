"""Tests for keymanager.py - WireGuard key rotation."""

import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import KeyUnavailableError, LeaseBusyError, TransientError
from keymanager import (
    KeyLifecycleManager,
    lease_key,
    next_rotation_at,
    rotation_offset,
)
from models.keys import RotationState, make_sealer

DAY = 86400
INTERVAL = 7 * DAY
GRACE = 48 * 3600


class TestStagger:
    """Tests for the staggered rotation schedule."""

    def test_offset_is_deterministic(self):
        assert rotation_offset('pve1', INTERVAL) == rotation_offset('pve1', INTERVAL)
        assert 0 <= rotation_offset('pve1', INTERVAL) < INTERVAL

    def test_owners_spread_out(self):
        offsets = {rotation_offset(f'owner-{i}', INTERVAL) for i in range(50)}
        assert len(offsets) == 50

    def test_next_rotation_is_on_a_slot(self):
        offset = rotation_offset('pve1', INTERVAL)
        due = next_rotation_at('pve1', 1_700_000_000.0, INTERVAL)
        assert due >= 1_700_000_000.0 + INTERVAL / 2
        assert due < 1_700_000_000.0 + INTERVAL / 2 + INTERVAL
        assert (due - offset) / INTERVAL == pytest.approx(round((due - offset) / INTERVAL))


class TestEnroll:
    """Tests for enroll()."""

    def test_first_key_is_active_and_pushed(self, keys, provider):
        handle = keys.enroll('fake', 'fake')
        assert handle.rotation_state == RotationState.ACTIVE
        assert handle.public_key in provider.peers
        assert keys.handles('fake') == [handle]

    def test_enroll_is_idempotent(self, keys, provider):
        first = keys.enroll('fake', 'fake')
        second = keys.enroll('fake', 'fake')
        assert first == second
        assert provider.count('rotate_credentials') == 1

    def test_push_failure_keeps_nothing(self, keys, provider):
        provider.fail('rotate_credentials', TransientError('timeout'))
        with pytest.raises(TransientError):
            keys.enroll('fake', 'fake')
        assert keys.handles('fake') == []

    def test_persisted(self, keys, store):
        keys.enroll('fake', 'fake')
        assert store.keys('keyring/') == ['keyring/fake']


class TestRotate:
    """Tests for rotate()."""

    def test_overlap_then_purge(self, keys, provider, clock):
        old = keys.enroll('fake', 'fake')
        new = keys.rotate('fake')

        assert new.key_id != old.key_id
        states = {h.key_id: h.rotation_state for h in keys.handles('fake')}
        assert states == {new.key_id: RotationState.ACTIVE, old.key_id: RotationState.OVERLAPPING}
        assert {old.public_key, new.public_key} <= provider.peers

        clock.advance(GRACE - 1)
        keys.tick()
        assert len(keys.handles('fake')) == 2

        clock.advance(2)
        summary = keys.tick()
        assert summary['purged'] == ['fake']
        assert [h.key_id for h in keys.handles('fake')] == [new.key_id]
        assert old.public_key not in provider.peers

    def test_overlapping_keys_get_distinct_slots(self, keys, provider, clock):
        old = keys.enroll('fake', 'fake')
        new = keys.rotate('fake')
        assert provider.peer_slots == {old.public_key: 0, new.public_key: 1}

        clock.advance(GRACE + 1)
        keys.tick()
        newest = keys.rotate('fake')
        assert provider.peer_slots == {new.public_key: 1, newest.public_key: 0}

    def test_push_failure_keeps_old_active(self, keys, provider):
        old = keys.enroll('fake', 'fake')
        provider.fail('rotate_credentials', TransientError('timeout'))
        with pytest.raises(TransientError):
            keys.rotate('fake')
        assert keys.handles('fake') == [old]

    def test_rotation_deferred_while_overlapping(self, keys):
        keys.enroll('fake', 'fake')
        new = keys.rotate('fake')
        assert keys.rotate('fake') == new
        assert len(keys.handles('fake')) == 2

    def test_unknown_owner(self, keys):
        with pytest.raises(KeyUnavailableError):
            keys.rotate('nobody')

    def test_busy_owner(self, keys, leases):
        keys.enroll('fake', 'fake')
        leases.try_acquire(lease_key('fake'), 'other')
        with pytest.raises(LeaseBusyError):
            keys.rotate('fake')

    def test_secret_never_in_logs(self, keys, caplog):
        caplog.set_level(logging.DEBUG)
        keys.enroll('fake', 'fake')
        handle = keys.rotate('fake')
        secret = keys.borrow(handle).reveal_b64()
        assert secret not in caplog.text


class TestTick:
    """Tests for tick()."""

    def test_rotates_when_due(self, keys, clock):
        old = keys.enroll('fake', 'fake')
        clock.now = keys.next_rotation('fake')
        summary = keys.tick()
        assert summary['rotated'] == ['fake']
        active = [h for h in keys.handles('fake') if h.rotation_state == RotationState.ACTIVE]
        assert active[0].key_id != old.key_id

    def test_not_due(self, keys, clock):
        keys.enroll('fake', 'fake')
        clock.now = keys.next_rotation('fake') - 1
        assert keys.tick()['rotated'] == []

    def test_handshake_failure_restarts_grace(self, keys, clock):
        old = keys.enroll('fake', 'fake')
        keys.rotate('fake')
        clock.advance(GRACE - 10)
        keys.report_handshake_failure(old.key_id)
        clock.advance(20)
        keys.tick()
        assert old.key_id in [h.key_id for h in keys.handles('fake')]
        clock.advance(GRACE)
        keys.tick()
        assert old.key_id not in [h.key_id for h in keys.handles('fake')]

    def test_peers_still_on_old_key_restart_grace(self, keys, provider, clock):
        old = keys.enroll('fake', 'fake')
        keys.rotate('fake')
        clock.advance(GRACE + 1)
        provider.handshakes = {old.public_key: clock.now - 30}

        summary = keys.tick()

        assert summary['deferred'] == ['fake']
        assert old.public_key in provider.peers
        [kept] = [h for h in keys.handles('fake') if h.key_id == old.key_id]
        assert kept.rotation_state == RotationState.OVERLAPPING
        assert kept.valid_until == clock.now + GRACE

    def test_old_key_purged_once_peers_switched(self, keys, provider, clock):
        old = keys.enroll('fake', 'fake')
        new = keys.rotate('fake')
        clock.advance(GRACE + 1)
        provider.handshakes = {old.public_key: clock.now - 30, new.public_key: clock.now - 5}
        assert keys.tick()['purged'] == ['fake']

    def test_unreadable_handshakes_do_not_block_purge(self, keys, provider, clock):
        keys.enroll('fake', 'fake')
        keys.rotate('fake')
        clock.advance(GRACE + 1)
        provider.fail('latest_handshakes', TransientError('timeout'))
        assert keys.tick()['purged'] == ['fake']

    def test_pinned_key_not_purged(self, keys, clock):
        old = keys.enroll('fake', 'fake')
        with keys.session('fake') as credential:
            assert credential.key_id == old.key_id
            keys.rotate('fake')
            clock.advance(GRACE + 1)
            summary = keys.tick()
            assert summary['deferred'] == ['fake']
            assert keys.borrow(old).reveal()
        summary = keys.tick()
        assert summary['purged'] == ['fake']

    def test_failed_removal_retried(self, keys, provider, clock):
        old = keys.enroll('fake', 'fake')
        keys.rotate('fake')
        clock.advance(GRACE + 1)
        provider.fail('rotate_credentials', TransientError('timeout'))
        assert keys.tick()['failed'] == ['fake']
        states = {h.key_id: h.rotation_state for h in keys.handles('fake')}
        assert states[old.key_id] == RotationState.RETIRING
        assert keys.tick()['purged'] == ['fake']

    def test_overdue_reported(self, keys, provider, clock):
        old = keys.enroll('fake', 'fake')
        keys.rotate('fake')
        clock.advance(GRACE + 1)
        provider.fail('rotate_credentials', TransientError('timeout'))
        keys.tick()
        assert [h.key_id for h in keys.overdue()] == [old.key_id]

    def test_busy_owner_deferred(self, keys, leases):
        keys.enroll('fake', 'fake')
        leases.try_acquire(lease_key('fake'), 'other')
        assert keys.tick()['deferred'] == ['fake']


class TestBorrow:
    """Secrets are only reachable through borrow() and session()."""

    def test_borrow_after_purge(self, keys, clock):
        old = keys.enroll('fake', 'fake')
        keys.rotate('fake')
        clock.advance(GRACE + 1)
        keys.tick()
        with pytest.raises(KeyUnavailableError):
            keys.borrow(old)

    def test_session_without_key(self, keys):
        with keys.session('nobody') as credential:
            assert credential is None


class TestRetireOwner:

    def test_removes_every_key(self, keys, provider):
        keys.enroll('net-1', 'fake')
        keys.rotate('net-1')
        keys.retire_owner('net-1')
        assert keys.handles('net-1') == []
        assert provider.peers == set()
        assert keys.owners() == []


class TestLoad:
    """Tests for restoring keyrings from state."""

    def test_sealed_keys_restored(self, adapters, leases, store, clock):
        sealer = make_sealer('state-key')
        first = KeyLifecycleManager(adapters, leases, store=store, clock=clock, sealer=sealer)
        handle = first.enroll('fake', 'fake')

        second = KeyLifecycleManager(adapters, leases, store=store, clock=clock, sealer=sealer)
        assert second.load() == 1
        assert second.borrow(handle).reveal() == first.borrow(handle).reveal()

    def test_keeps_keys_in_memory(self, keys):
        handle = keys.enroll('fake', 'fake')
        assert keys.load() == 0
        assert keys.borrow(handle).reveal()

    def test_unsealed_keys_replaced_on_tick(self, keys, adapters, leases, store, clock):
        handle = keys.enroll('fake', 'fake')
        restored = KeyLifecycleManager(adapters, leases, store=store, clock=clock)
        restored.load()
        with pytest.raises(KeyUnavailableError):
            restored.borrow(handle)
        assert restored.tick()['rotated'] == ['fake']
