"""VyOS network-appliance adapter.

Configuration is driven one of two ways:

- Over SSH with the vyatta cfg wrapper: one session (begin, set/delete,
  commit, save, end) per mutating call, fed to vbash on stdin. This is the
  default.
- Over the HTTPS API when an api_key is configured: POST /configure with the
  same set/delete paths (committed as one batch), then /config-file save.
  The key is sent both as the `key` form field and the X-API-Key header.

Tenant networks become VRF + VXLAN + bridge, all tagged with the description
bbctl:<token> so a repeated create finds the first one. WireGuard handshake
times are not exposed by the API and are always read over SSH.

Instances and volumes are not hosted on the appliance and are rejected.
"""

import json
import logging
import shlex
from typing import Any, Optional

import requests
import urllib3

from common import SSHTarget, classify_ssh_failure, run_ssh, slot_allowed_ips, wg_handshakes
from config import ProviderConfig
from errors import (
    ConnectError,
    NotFoundError,
    ProviderError,
    RejectedError,
    TransientError,
    UnauthenticatedError,
)
from models.keys import KeyMaterial, RotationState
from models.resource import ObservedState, ProviderRef, Resource, ResourceKind, TenantAllocation
from providers.base import CallContext, Session, remaining

logger = logging.getLogger(__name__)

CFG_WRAPPER = '/opt/vyatta/sbin/vyatta-cfg-cmd-wrapper'
OP_WRAPPER = '/opt/vyatta/bin/vyatta-op-cmd-wrapper'
VXLAN_MTU = 9000
KEEPALIVE = 25


def vrf_name(vrf_table: int) -> str:
    return f'bb{vrf_table}'


def description_for(token: str) -> str:
    return f'bbctl:{token}'


def peer_name(material: KeyMaterial) -> str:
    return f'bb-{material.key_id}'


def parse_config_commands(text: str) -> list[list[str]]:
    """Parse `show configuration commands` output into token lists (without 'set')."""
    lines = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith('set '):
            continue
        try:
            lines.append(shlex.split(line)[1:])
        except ValueError:
            logger.debug(f"Skipping unparsable config line: {line}")
    return lines


def flatten_config(tree: Any, path: Optional[list[str]] = None) -> list[list[str]]:
    """Flatten a showConfig JSON tree into the token lists parse_config_commands yields.

    Leaf values (strings, or lists of strings for multi-valued nodes) end a
    path; an empty dict is a valueless node such as `member interface vxlan1`.
    """
    path = path or []
    if isinstance(tree, dict):
        if not tree:
            return [path] if path else []
        lines = []
        for key, value in tree.items():
            lines += flatten_config(value, path + [str(key)])
        return lines
    if isinstance(tree, list):
        return [path + [str(v)] for v in tree]
    if tree is None:
        return [path]
    return [path + [str(tree)]]


def raise_for_api(resp: requests.Response, provider: str = '') -> Any:
    """Return the data of a VyOS API response, or raise the matching ProviderError."""
    status = resp.status_code
    if status in (401, 403):
        raise UnauthenticatedError(f"API key refused ({status})", provider=provider)
    if status == 429 or status >= 500:
        raise TransientError(f"{resp.url}: {status} {resp.text[:200]}", provider=provider)
    try:
        body = resp.json()
    except ValueError:
        raise RejectedError(f"{resp.url}: {status} non-JSON response", provider=provider)
    if not resp.ok or not body.get('success', False):
        error = body.get('error') or f'status {status}'
        if 'does not exist' in str(error):
            raise NotFoundError(str(error), provider=provider)
        raise RejectedError(str(error), provider=provider)
    return body.get('data')


class VyOSAdapter:
    """Adapter for a VyOS router, over SSH or its HTTPS API."""

    def __init__(self, config: ProviderConfig, http: Optional[requests.Session] = None):
        self.name = config.name
        self._config = config
        self._target = SSHTarget(
            host=config.host,
            user=config.ssh_user,
            port=config.ssh_port,
            key_path=config.ssh_key,
        )
        self._http = None
        if config.api_key:
            self._http = http or requests.Session()
            self._http.headers['X-API-Key'] = config.api_key
            self._http.verify = config.verify_ssl
            if not config.verify_ssl:
                urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def uses_api(self) -> bool:
        return self._http is not None

    # -- transport ----------------------------------------------------------

    def _run(self, deadline: float, command: str, input_text: Optional[str] = None) -> str:
        rc, out, err = run_ssh(
            self._target, command, timeout=remaining(deadline, self.name), input_text=input_text)
        if rc != 0:
            raise classify_ssh_failure(rc, err or out, provider=self.name)
        return out

    def _api(self, deadline: float, endpoint: str, data: Any) -> Any:
        url = f"{self._config.api_endpoint}/{endpoint}"
        form = {'data': json.dumps(data), 'key': self._config.api_key}
        try:
            resp = self._http.post(url, data=form, timeout=remaining(deadline, self.name))
        except requests.exceptions.Timeout:
            raise TransientError(f"POST /{endpoint} timed out", provider=self.name)
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"cannot reach {self._config.api_endpoint}: {e}", provider=self.name)
        except requests.exceptions.RequestException as e:
            raise TransientError(f"POST /{endpoint} failed: {e}", provider=self.name)
        return raise_for_api(resp, self.name)

    def _configure(self, deadline: float, commands: list[str]) -> None:
        """Apply one batch of set/delete commands. Nothing is committed if any fails."""
        logger.debug(f"[{self.name}] applying {len(commands)} config command(s)")
        if self.uses_api:
            ops = []
            for command in commands:
                tokens = shlex.split(command)
                ops.append({'op': tokens[0], 'path': tokens[1:]})
            self._api(deadline, 'configure', ops)
            self._api(deadline, 'config-file', {'op': 'save'})
            return
        script = '\n'.join(
            ['set -e', f'{CFG_WRAPPER} begin']
            + [f'{CFG_WRAPPER} {c}' for c in commands]
            + [f'{CFG_WRAPPER} commit', f'{CFG_WRAPPER} save', f'{CFG_WRAPPER} end']
        ) + '\n'
        self._run(deadline, 'vbash -s', input_text=script)

    def _show_config(self, deadline: float) -> list[list[str]]:
        if self.uses_api:
            return flatten_config(self._api(deadline, 'retrieve', {'op': 'showConfig', 'path': []}) or {})
        return parse_config_commands(self._run(deadline, f'{OP_WRAPPER} show configuration commands'))

    def _show_version(self, deadline: float) -> str:
        if self.uses_api:
            return str(self._api(deadline, 'show', {'op': 'show', 'path': ['version']}) or '')
        return self._run(deadline, f'{OP_WRAPPER} show version')

    # -- config lookups -------------------------------------------------------

    @staticmethod
    def _vrf_by_description(lines: list[list[str]], description: str) -> Optional[str]:
        for tokens in lines:
            if tokens[:2] == ['vrf', 'name'] and tokens[3:] == ['description', description]:
                return tokens[2]
        return None

    @staticmethod
    def _vrf_settings(lines: list[list[str]], vrf: str) -> dict:
        settings = {}
        for tokens in lines:
            if tokens[:3] == ['vrf', 'name', vrf] and len(tokens) == 5:
                settings[tokens[3]] = tokens[4]
        return settings

    @staticmethod
    def _bridges_in_vrf(lines: list[list[str]], vrf: str) -> list[str]:
        return sorted({
            tokens[2] for tokens in lines
            if tokens[:2] == ['interfaces', 'bridge'] and tokens[3:] == ['vrf', vrf]
        })

    # -- network commands -----------------------------------------------------

    def _network_commands(self, token: str, allocation: TenantAllocation,
                          gateway: Optional[str] = None) -> list[str]:
        vrf = vrf_name(allocation.vrf_table)
        vni = allocation.vni
        net = allocation.network
        gateway = gateway or str(next(net.hosts()))
        description = description_for(token)
        return [
            f"set vrf name {vrf} table {allocation.vrf_table}",
            f"set vrf name {vrf} description '{description}'",
            f"set interfaces vxlan vxlan{vni} vni {vni}",
            f"set interfaces vxlan vxlan{vni} mtu {VXLAN_MTU}",
            f"set interfaces vxlan vxlan{vni} vrf {vrf}",
            f"set interfaces bridge br{vni} address {gateway}/{net.prefixlen}",
            f"set interfaces bridge br{vni} description '{description}'",
            f"set interfaces bridge br{vni} member interface vxlan{vni}",
            f"set interfaces bridge br{vni} vrf {vrf}",
        ]

    def _reject_kind(self, resource: Resource) -> None:
        if resource.kind != ResourceKind.NETWORK:
            raise RejectedError(f"vyos does not host {resource.kind.value}s", provider=self.name)

    # -- ProviderAdapter ------------------------------------------------------

    def connect(self, ctx: CallContext) -> Session:
        deadline = ctx.deadline(self._config.timeout)
        try:
            out = self._show_version(deadline)
        except ProviderError as e:
            raise ConnectError(f"cannot open session to {self._config.host}: {e.message}", provider=self.name)
        version = ''
        for line in out.splitlines():
            if line.strip().lower().startswith('version:'):
                version = line.split(':', 1)[1].strip()
                break
        logger.info(f"[{self.name}] connected to VyOS {version or '(unknown version)'}")
        endpoint = f'ssh://{self._target.user}@{self._target.host}:{self._target.port}'
        return Session(
            provider=self.name,
            endpoint=self._config.api_endpoint if self.uses_api else endpoint,
            key_id=ctx.credential.key_id if ctx.credential else None,
            info={'version': version},
        )

    def create(self, ctx: CallContext, token: str, resource: Resource) -> ProviderRef:
        self._reject_kind(resource)
        if resource.allocation is None:
            raise RejectedError("network has no tenant allocation", provider=self.name)
        deadline = ctx.deadline(self._config.timeout)
        existing = self._vrf_by_description(self._show_config(deadline), description_for(token))
        if existing:
            logger.info(f"[{self.name}] network for {token} already exists as vrf {existing}")
            return ProviderRef(provider=self.name, local_id=existing)
        self._configure(deadline, self._network_commands(token, resource.allocation, resource.desired.gateway))
        vrf = vrf_name(resource.allocation.vrf_table)
        logger.info(f"[{self.name}] created vrf {vrf} vni {resource.allocation.vni} for {token}")
        return ProviderRef(provider=self.name, local_id=vrf)

    def delete(self, ctx: CallContext, ref: ProviderRef) -> None:
        deadline = ctx.deadline(self._config.timeout)
        lines = self._show_config(deadline)
        if not self._vrf_settings(lines, ref.local_id):
            raise NotFoundError(f"vrf {ref.local_id} does not exist", provider=self.name)
        commands = []
        for bridge in self._bridges_in_vrf(lines, ref.local_id):
            vni = bridge[len('br'):]
            commands += [f"delete interfaces bridge {bridge}", f"delete interfaces vxlan vxlan{vni}"]
        commands.append(f"delete vrf name {ref.local_id}")
        self._configure(deadline, commands)
        logger.info(f"[{self.name}] deleted vrf {ref.local_id}")

    def describe(self, ctx: CallContext, ref: ProviderRef) -> ObservedState:
        lines = self._show_config(ctx.deadline(self._config.timeout))
        settings = self._vrf_settings(lines, ref.local_id)
        if not settings:
            return ObservedState.absent()
        attributes = dict(settings)
        attributes['bridges'] = self._bridges_in_vrf(lines, ref.local_id)
        return ObservedState(exists=True, attributes=attributes)

    def update(self, ctx: CallContext, ref: ProviderRef, resource: Resource,
               links: dict[str, ProviderRef]) -> None:
        self._reject_kind(resource)
        if resource.allocation is None:
            raise RejectedError("network has no tenant allocation", provider=self.name)
        # set is idempotent: re-applying restores anything changed out of band
        self._configure(ctx.deadline(self._config.timeout), self._network_commands(
            resource.id, resource.allocation, resource.desired.gateway))

    def apply_network_config(self, ctx: CallContext, allocation: TenantAllocation) -> None:
        vrf = vrf_name(allocation.vrf_table)
        target = f"{self._config.bgp_asn}:{allocation.vrf_table}"
        bgp = f"set vrf name {vrf} protocols bgp address-family ipv4-unicast"
        self._configure(ctx.deadline(self._config.timeout), [
            f"set vrf name {vrf} vni {allocation.vni}",
            f"{bgp} route-target vpn export '{target}'",
            f"{bgp} route-target vpn import '{target}'",
            f"{bgp} redistribute connected",
        ])
        logger.info(f"[{self.name}] applied EVPN config for vrf {vrf} (vni {allocation.vni}, rt {target})")

    def rotate_credentials(self, ctx: CallContext, material: KeyMaterial) -> None:
        deadline = ctx.deadline(self._config.timeout)
        iface = self._config.wg_interface
        peer = peer_name(material)
        base = f"interfaces wireguard {iface} peer {peer}"
        if material.rotation_state == RotationState.RETIRING:
            present = any(tokens[:5] == base.split() for tokens in self._show_config(deadline))
            if not present:
                logger.debug(f"[{self.name}] peer {peer} already absent")
                return
            self._configure(deadline, [f"delete {base}"])
            logger.info(f"[{self.name}] removed wireguard peer {peer}")
            return
        try:
            allowed = slot_allowed_ips(self._config.wg_allowed_ips or '0.0.0.0/0', material.slot)
        except ValueError as e:
            raise RejectedError(f"invalid wireguard allowed-ips: {e}", provider=self.name)
        commands = [f"set {base} public-key '{material.public_key}'"]
        commands += [f"set {base} allowed-ips '{c}'" for c in allowed]
        commands.append(f"set {base} persistent-keepalive '{KEEPALIVE}'")
        self._configure(deadline, commands)
        logger.info(f"[{self.name}] wireguard peer {peer} accepted on {iface}")

    def latest_handshakes(self, ctx: CallContext) -> dict[str, float]:
        deadline = ctx.deadline(self._config.timeout)
        return wg_handshakes(self._target, self._config.wg_interface, remaining(deadline, self.name),
                             sudo=True, provider=self.name)
