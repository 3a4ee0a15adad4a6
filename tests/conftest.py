"""Shared pytest fixtures for bbctl tests."""

import sys
from pathlib import Path

import pytest

# Add src and tests to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))
sys.path.insert(0, str(Path(__file__).parent))

from allocator import ScopeConfig, TenantAllocator  # noqa: E402
from fakes import FakeClock, FakeProvider  # noqa: E402
from keymanager import KeyLifecycleManager  # noqa: E402
from reconciler.engine import ReconciliationEngine  # noqa: E402
from reconciler.lease import LeaseTable  # noqa: E402
from reconciler.retry import RetryPolicy  # noqa: E402
from reconciler.state import MemoryStateStore  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider('fake')


@pytest.fixture
def adapters(provider):
    return {provider.name: provider}


@pytest.fixture
def leases():
    return LeaseTable(ttl=60.0)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def allocator():
    return TenantAllocator([ScopeConfig(provider='fake', region='default', supernet='10.0.0.0/16')])


@pytest.fixture
def keys(adapters, leases, store, clock):
    return KeyLifecycleManager(
        adapters,
        leases,
        store=store,
        clock=clock,
        rotation_interval=7 * 86400,
        grace_period=48 * 3600,
    )


@pytest.fixture
def sleeps():
    """Backoff delays requested by the engine."""
    return []


@pytest.fixture
def transitions():
    """(id, old, new) tuples delivered to on_transition."""
    return []


@pytest.fixture
def engine(adapters, allocator, keys, leases, store, clock, sleeps, transitions):
    return ReconciliationEngine(
        adapters,
        allocator,
        keys,
        leases,
        store=store,
        policy=RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0),
        timeout=5.0,
        clock=clock,
        sleep=sleeps.append,
        on_transition=lambda r, old, new: transitions.append((r.id, old.value, new.value)),
    )


@pytest.fixture
def config_dir(tmp_path):
    """Create a temporary configuration directory.

    Creates:
    - settings.yaml (defaults, reconcile, keys)
    - secrets.yaml (api token, state key)
    - providers/pve1.yaml (proxmox)
    - providers/vyos1.yaml (vyos)
    """
    (tmp_path / 'providers').mkdir()
    (tmp_path / 'settings.yaml').write_text("""
defaults:
  provider: pve1
  region: lab
  log_level: info
reconcile:
  max_attempts: 3
  base_delay: 0.5
keys:
  rotation_days: 14
""")
    (tmp_path / 'secrets.yaml').write_text("""
api_tokens:
  pve1: root@pam!bbctl=00000000-1111-2222-3333-444444444444
state_key: correct-horse-battery-staple
""")
    (tmp_path / 'providers' / 'pve1.yaml').write_text("""
type: proxmox
host: pve1.lab.example
api_token: pve1
verify_ssl: false
node: pve1
regions:
  lab:
    supernet: 10.10.0.0/16
    vrf_range: [1000, 1999]
    vni_range: [10000, 19999]
""")
    (tmp_path / 'providers' / 'vyos1.yaml').write_text("""
type: vyos
host: 192.0.2.1
ssh:
  user: vyos
  key: ~/.ssh/id_ed25519
wireguard:
  interface: wg0
  allowed_ips: 172.29.0.0/24
regions:
  lab:
    supernet: 10.20.0.0/16
""")
    return tmp_path
