"""Tests for providers/vyos.py - VRF/VXLAN/WireGuard over SSH and the HTTPS API."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ProviderConfig
from errors import (
    ConnectError,
    NotFoundError,
    RejectedError,
    TransientError,
    UnauthenticatedError,
)
from models.keys import KeyMaterial, RotationState
from models.resource import InstanceSpec, NetworkSpec, ProviderRef, Resource, TenantAllocation
from providers.base import CallContext
from providers.vyos import (
    CFG_WRAPPER,
    VyOSAdapter,
    flatten_config,
    parse_config_commands,
    peer_name,
)

ALLOCATION = TenantAllocation('vyos1', 'lab', '10.20.0.0/24', 2000, 20000)

RUNNING_CONFIG = """\
set interfaces bridge br20000 address '10.20.0.1/24'
set interfaces bridge br20000 description 'bbctl:n1'
set interfaces bridge br20000 member interface vxlan20000
set interfaces bridge br20000 vrf 'bb2000'
set interfaces vxlan vxlan20000 vni '20000'
set interfaces vxlan vxlan20000 vrf 'bb2000'
set system host-name 'vyos1'
set vrf name bb2000 description 'bbctl:n1'
set vrf name bb2000 table '2000'
"""


@pytest.fixture
def adapter():
    config = ProviderConfig(name='vyos1', type='vyos', host='192.0.2.1', wg_allowed_ips='172.29.0.0/24')
    return VyOSAdapter(config)


def _ctx():
    return CallContext(timeout=5)


def _network():
    resource = Resource.new('net1', 'vyos1', 'lab', NetworkSpec(), resource_id='n1')
    resource.allocation = ALLOCATION
    return resource


def _scripts(mock_ssh):
    """Config scripts piped to vbash, one list of commands per session."""
    sessions = []
    for call in mock_ssh.call_args_list:
        script = call.kwargs.get('input_text')
        if script is None:
            continue
        lines = script.splitlines()
        assert lines[:2] == ['set -e', f'{CFG_WRAPPER} begin']
        assert lines[-3:] == [f'{CFG_WRAPPER} commit', f'{CFG_WRAPPER} save', f'{CFG_WRAPPER} end']
        sessions.append([line[len(CFG_WRAPPER) + 1:] for line in lines[2:-3]])
    return sessions


class TestParseConfigCommands:

    def test_parse(self):
        lines = parse_config_commands(RUNNING_CONFIG)
        assert ['vrf', 'name', 'bb2000', 'table', '2000'] in lines
        assert ['interfaces', 'bridge', 'br20000', 'description', 'bbctl:n1'] in lines

    def test_skips_noise(self):
        assert parse_config_commands("Welcome\nset vrf name 'unterminated\n") == []


class TestConnect:
    """Tests for connect()."""

    def test_version(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, 'Version:          VyOS 1.4.0\n', '')):
            session = adapter.connect(_ctx())
        assert session.info == {'version': 'VyOS 1.4.0'}
        assert session.endpoint == 'ssh://vyos@192.0.2.1:22'

    def test_unreachable(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(255, '', 'ssh: connect to host: No route to host')):
            with pytest.raises(ConnectError):
                adapter.connect(_ctx())


class TestNetworks:
    """Tests for VRF + VXLAN + bridge mapping."""

    def test_create(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, 'set system host-name vyos1\n', '')) as mock_ssh:
            ref = adapter.create(_ctx(), 'n1', _network())
        assert ref == ProviderRef('vyos1', 'bb2000')
        commands = _scripts(mock_ssh)[0]
        assert 'set vrf name bb2000 table 2000' in commands
        assert "set vrf name bb2000 description 'bbctl:n1'" in commands
        assert 'set interfaces vxlan vxlan20000 vni 20000' in commands
        assert 'set interfaces bridge br20000 address 10.20.0.1/24' in commands
        assert 'set interfaces bridge br20000 vrf bb2000' in commands

    def test_create_is_idempotent(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, RUNNING_CONFIG, '')) as mock_ssh:
            ref = adapter.create(_ctx(), 'n1', _network())
        assert ref.local_id == 'bb2000'
        assert _scripts(mock_ssh) == []

    def test_rejects_instances(self, adapter):
        resource = Resource.new('web1', 'vyos1', 'lab', InstanceSpec(cpu=1, memory_gb=1, disk_gb=1))
        with patch('providers.vyos.run_ssh') as mock_ssh:
            with pytest.raises(RejectedError):
                adapter.create(_ctx(), 'i1', resource)
        mock_ssh.assert_not_called()

    def test_commit_failure_is_rejected(self, adapter):
        responses = [(0, '', ''), (1, '', 'Commit failed')]
        with patch('providers.vyos.run_ssh', side_effect=responses):
            with pytest.raises(RejectedError, match='Commit failed'):
                adapter.create(_ctx(), 'n1', _network())

    def test_auth_failure(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(255, '', 'Permission denied (publickey).')):
            with pytest.raises(UnauthenticatedError):
                adapter.create(_ctx(), 'n1', _network())

    def test_ssh_timeout(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(-1, '', 'Command timed out after 5s')):
            with pytest.raises(TransientError):
                adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000'))

    def test_describe(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, RUNNING_CONFIG, '')):
            observed = adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000'))
        assert observed.exists
        assert observed.attributes == {'description': 'bbctl:n1', 'table': '2000', 'bridges': ['br20000']}

    def test_describe_absent(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, '', '')):
            assert adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000')).exists is False

    def test_delete(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, RUNNING_CONFIG, '')) as mock_ssh:
            adapter.delete(_ctx(), ProviderRef('vyos1', 'bb2000'))
        assert _scripts(mock_ssh)[0] == [
            'delete interfaces bridge br20000',
            'delete interfaces vxlan vxlan20000',
            'delete vrf name bb2000',
        ]

    def test_delete_missing(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, '', '')):
            with pytest.raises(NotFoundError):
                adapter.delete(_ctx(), ProviderRef('vyos1', 'bb2000'))

    def test_apply_network_config(self, adapter):
        with patch('providers.vyos.run_ssh', return_value=(0, '', '')) as mock_ssh:
            adapter.apply_network_config(_ctx(), ALLOCATION)
        commands = _scripts(mock_ssh)[0]
        assert 'set vrf name bb2000 vni 20000' in commands
        assert ("set vrf name bb2000 protocols bgp address-family ipv4-unicast "
                "route-target vpn export '65000:2000'") in commands


class TestRotateCredentials:
    """Tests for WireGuard peers on the appliance."""

    def test_add_peer(self, adapter):
        material = KeyMaterial.generate('vyos1', 'vyos1')
        with patch('providers.vyos.run_ssh', return_value=(0, '', '')) as mock_ssh:
            adapter.rotate_credentials(_ctx(), material)
        commands = _scripts(mock_ssh)[0]
        base = f'interfaces wireguard wg0 peer {peer_name(material)}'
        assert f"set {base} public-key '{material.public_key}'" in commands
        assert f"set {base} allowed-ips '172.29.0.0/25'" in commands
        assert material.private.reveal_b64() not in ''.join(commands)

    def test_next_generation_gets_other_half(self, adapter):
        material = KeyMaterial.generate('vyos1', 'vyos1', slot=1)
        with patch('providers.vyos.run_ssh', return_value=(0, '', '')) as mock_ssh:
            adapter.rotate_credentials(_ctx(), material)
        allowed = [c for c in _scripts(mock_ssh)[0] if ' allowed-ips ' in c]
        assert allowed == [f"set interfaces wireguard wg0 peer {peer_name(material)} allowed-ips '172.29.0.128/25'"]

    def test_remove_peer(self, adapter):
        material = KeyMaterial.generate('vyos1', 'vyos1')
        material.rotation_state = RotationState.RETIRING
        running = f"set interfaces wireguard wg0 peer {peer_name(material)} public-key '{material.public_key}'\n"
        with patch('providers.vyos.run_ssh', return_value=(0, running, '')) as mock_ssh:
            adapter.rotate_credentials(_ctx(), material)
        assert _scripts(mock_ssh)[0] == [f'delete interfaces wireguard wg0 peer {peer_name(material)}']

    def test_remove_absent_peer(self, adapter):
        material = KeyMaterial.generate('vyos1', 'vyos1')
        material.rotation_state = RotationState.RETIRING
        with patch('providers.vyos.run_ssh', return_value=(0, '', '')) as mock_ssh:
            adapter.rotate_credentials(_ctx(), material)
        assert _scripts(mock_ssh) == []

    def test_invalid_allowed_ips(self, adapter):
        adapter._config.wg_allowed_ips = 'everything'
        with patch('providers.vyos.run_ssh') as mock_ssh:
            with pytest.raises(RejectedError):
                adapter.rotate_credentials(_ctx(), KeyMaterial.generate('vyos1', 'vyos1'))
        mock_ssh.assert_not_called()

    def test_latest_handshakes_over_ssh(self, adapter):
        with patch('providers.vyos.wg_handshakes', return_value={'pub': 1700000000.0}) as mock_wg:
            assert adapter.latest_handshakes(_ctx()) == {'pub': 1700000000.0}
        assert mock_wg.call_args[0][1] == 'wg0'
        assert mock_wg.call_args.kwargs['sudo'] is True


CONFIG_TREE = {
    'interfaces': {
        'bridge': {'br20000': {
            'address': ['10.20.0.1/24'],
            'description': 'bbctl:n1',
            'member': {'interface': {'vxlan20000': {}}},
            'vrf': 'bb2000',
        }},
        'vxlan': {'vxlan20000': {'vni': '20000', 'vrf': 'bb2000'}},
    },
    'system': {'host-name': 'vyos1'},
    'vrf': {'name': {'bb2000': {'description': 'bbctl:n1', 'table': '2000'}}},
}


def _api_response(data=None, success=True, error=None, status=200):
    resp = requests.Response()
    resp.status_code = status
    resp._content = json.dumps({'success': success, 'data': data, 'error': error}).encode()
    resp.url = 'https://192.0.2.1:443/configure'
    return resp


def _api_adapter(*responses, timeout=30.0):
    config = ProviderConfig(name='vyos1', type='vyos', host='192.0.2.1', api_key='api-secret',
                            verify_ssl=False, timeout=timeout)
    http = MagicMock()
    http.headers = {}
    http.post.side_effect = list(responses)
    return VyOSAdapter(config, http=http), http


def _posted(http):
    """(endpoint, decoded data) for every API request."""
    return [
        (call.args[0].rsplit('/', 1)[1], json.loads(call.kwargs['data']['data']))
        for call in http.post.call_args_list
    ]


class TestFlattenConfig:

    def test_matches_command_form(self):
        assert sorted(flatten_config(CONFIG_TREE)) == sorted(parse_config_commands(RUNNING_CONFIG))

    def test_empty(self):
        assert flatten_config({}) == []


class TestHTTPTransport:
    """Tests for the HTTPS API transport used when an api_key is configured."""

    def test_key_sent(self):
        adapter, http = _api_adapter(_api_response('Version:          VyOS 1.4.0\n'))
        assert adapter.uses_api
        with patch('providers.vyos.run_ssh') as mock_ssh:
            session = adapter.connect(_ctx())
        mock_ssh.assert_not_called()
        assert http.headers['X-API-Key'] == 'api-secret'
        assert http.post.call_args.kwargs['data']['key'] == 'api-secret'
        assert _posted(http) == [('show', {'op': 'show', 'path': ['version']})]
        assert session.info == {'version': 'VyOS 1.4.0'}
        assert session.endpoint == 'https://192.0.2.1:443'

    def test_create_configures_then_saves(self):
        adapter, http = _api_adapter(_api_response({}), _api_response(None), _api_response(None))
        ref = adapter.create(_ctx(), 'n1', _network())
        assert ref == ProviderRef('vyos1', 'bb2000')
        posted = _posted(http)
        assert [endpoint for endpoint, _ in posted] == ['retrieve', 'configure', 'config-file']
        ops = posted[1][1]
        assert {'op': 'set', 'path': ['vrf', 'name', 'bb2000', 'table', '2000']} in ops
        assert {'op': 'set', 'path': ['vrf', 'name', 'bb2000', 'description', 'bbctl:n1']} in ops
        assert posted[2][1] == {'op': 'save'}

    def test_create_is_idempotent(self):
        adapter, http = _api_adapter(_api_response(CONFIG_TREE))
        assert adapter.create(_ctx(), 'n1', _network()).local_id == 'bb2000'
        assert http.post.call_count == 1

    def test_describe(self):
        adapter, _ = _api_adapter(_api_response(CONFIG_TREE))
        observed = adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000'))
        assert observed.attributes == {'description': 'bbctl:n1', 'table': '2000', 'bridges': ['br20000']}

    def test_delete(self):
        adapter, http = _api_adapter(_api_response(CONFIG_TREE), _api_response(None), _api_response(None))
        adapter.delete(_ctx(), ProviderRef('vyos1', 'bb2000'))
        assert _posted(http)[1][1] == [
            {'op': 'delete', 'path': ['interfaces', 'bridge', 'br20000']},
            {'op': 'delete', 'path': ['interfaces', 'vxlan', 'vxlan20000']},
            {'op': 'delete', 'path': ['vrf', 'name', 'bb2000']},
        ]

    @pytest.mark.parametrize('status,error', [
        (401, UnauthenticatedError),
        (403, UnauthenticatedError),
        (503, TransientError),
    ])
    def test_status_mapping(self, status, error):
        adapter, _ = _api_adapter(_api_response(success=False, error='nope', status=status))
        with pytest.raises(error):
            adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000'))

    def test_failed_commit_rejected(self):
        adapter, _ = _api_adapter(
            _api_response({}), _api_response(success=False, error='Commit failed', status=400))
        with pytest.raises(RejectedError, match='Commit failed'):
            adapter.create(_ctx(), 'n1', _network())

    def test_connection_error_is_transient(self):
        adapter, _ = _api_adapter(requests.exceptions.ConnectionError('refused'))
        with pytest.raises(TransientError):
            adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000'))

    def test_provider_timeout_bounds_call(self):
        adapter, http = _api_adapter(_api_response({}), timeout=2.0)
        adapter.describe(CallContext(timeout=30), ProviderRef('vyos1', 'bb2000'))
        assert 0 < http.post.call_args.kwargs['timeout'] <= 2.0

    def test_key_not_in_errors(self):
        adapter, _ = _api_adapter(_api_response(success=False, error='nope', status=401))
        with pytest.raises(UnauthenticatedError) as excinfo:
            adapter.describe(_ctx(), ProviderRef('vyos1', 'bb2000'))
        assert 'api-secret' not in str(excinfo.value)
