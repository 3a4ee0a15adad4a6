"""Proxmox VE hypervisor adapter.

Talks to the PVE HTTPS API with an API token (Authorization:
PVEAPIToken=user@realm!name=value). Mapping:

- Instances are QEMU VMs tagged bb-<token>; a repeated create finds the VM by
  tag instead of allocating a second vmid.
- Volumes are disk images on the configured storage, owned by a placeholder
  vmid (volume_owner_vmid) and named after the token. The instance a volume
  is attached to is recorded in the image notes.
- Networks are SDN vnets (tag = VNI) in the configured zone, with one subnet
  per allocation.
- WireGuard peers on the node are managed with `wg set` over SSH.

HTTP failures map onto the provider error taxonomy in raise_for_status().
"""

import logging
import shlex
import time
from typing import Any, Optional

import requests
import urllib3

from common import SSHTarget, slot_allowed_ips, ssh_check, wg_handshakes, wg_peers
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

TASK_POLL_INTERVAL = 1.0
MAX_SCSI_SLOTS = 31
ATTACH_NOTE_PREFIX = 'bbctl-attached:'


def vm_tag(token: str) -> str:
    return f'bb-{token}'


def vnet_name(vni: int) -> str:
    """SDN vnet ids are at most 8 characters."""
    return f'bb{vni:06x}'


def raise_for_status(resp: requests.Response, provider: str = '') -> None:
    """Translate a PVE response status into a ProviderError."""
    if resp.ok:
        return
    status = resp.status_code
    detail = f"{resp.request.method if resp.request else ''} {resp.url}: {status} {resp.text[:200]}".strip()
    if status in (401, 403):
        raise UnauthenticatedError(f"API token refused ({status})", provider=provider)
    # PVE answers 500 "... does not exist" for missing VMs and volumes
    if status == 404 or 'does not exist' in resp.text:
        raise NotFoundError(detail, provider=provider)
    if status == 429 or status >= 500:
        raise TransientError(detail, provider=provider)
    raise RejectedError(detail, provider=provider)


class ProxmoxAdapter:
    """Adapter for one Proxmox VE node."""

    def __init__(self, config: ProviderConfig, http: Optional[requests.Session] = None):
        self.name = config.name
        self._config = config
        self._http = http or requests.Session()
        self._http.headers['Authorization'] = f'PVEAPIToken={config.api_token}'
        self._http.verify = config.verify_ssl
        if not config.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        self._ssh = SSHTarget(
            host=config.host,
            user=config.ssh_user,
            port=config.ssh_port,
            key_path=config.ssh_key,
        )

    # -- transport ----------------------------------------------------------

    def _request(self, deadline: float, method: str, path: str, **kwargs) -> Any:
        url = f"{self._config.api_endpoint}/api2/json/{path}"
        try:
            resp = self._http.request(method, url, timeout=remaining(deadline, self.name), **kwargs)
        except requests.exceptions.Timeout:
            raise TransientError(f"{method} {path} timed out", provider=self.name)
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"cannot reach {self._config.api_endpoint}: {e}", provider=self.name)
        except requests.exceptions.RequestException as e:
            raise TransientError(f"{method} {path} failed: {e}", provider=self.name)
        raise_for_status(resp, self.name)
        if not resp.content:
            return None
        return resp.json().get('data')

    def _wait_task(self, deadline: float, upid: Optional[str]) -> None:
        """Poll an async PVE task until it stops."""
        if not upid:
            return
        node = self._config.node
        while True:
            status = self._request(deadline, 'GET', f'nodes/{node}/tasks/{upid}/status') or {}
            if status.get('status') == 'stopped':
                exit_status = status.get('exitstatus', 'OK')
                if exit_status != 'OK':
                    raise RejectedError(f"task {upid} failed: {exit_status}", provider=self.name)
                return
            time.sleep(min(TASK_POLL_INTERVAL, remaining(deadline, self.name)))

    def _sdn_apply(self, deadline: float) -> None:
        self._wait_task(deadline, self._request(deadline, 'PUT', 'cluster/sdn'))

    @property
    def _node(self) -> str:
        return self._config.node

    # -- instances ----------------------------------------------------------

    def _find_vm(self, deadline: float, token: str) -> Optional[dict]:
        tag = vm_tag(token)
        for vm in self._request(deadline, 'GET', 'cluster/resources', params={'type': 'vm'}) or []:
            if tag in (vm.get('tags') or '').split(';'):
                return vm
        return None

    def _create_instance(self, deadline: float, token: str, resource: Resource) -> ProviderRef:
        existing = self._find_vm(deadline, token)
        if existing:
            logger.info(f"[{self.name}] instance for {token} already exists as vmid {existing['vmid']}")
            return ProviderRef(provider=self.name, local_id=str(existing['vmid']))

        spec = resource.desired
        vmid = int(self._request(deadline, 'GET', 'cluster/nextid'))
        data = {
            'vmid': vmid,
            'name': resource.name,
            'cores': spec.cpu,
            'memory': spec.memory_gb * 1024,
            'scsihw': 'virtio-scsi-single',
            'scsi0': f"{self._config.storage}:{spec.disk_gb}",
            'net0': f"virtio,bridge={self._config.bridge}",
            'ostype': 'l26',
            'tags': vm_tag(token),
        }
        if spec.image:
            data['ide2'] = f"{spec.image},media=cdrom"
        self._wait_task(deadline, self._request(deadline, 'POST', f'nodes/{self._node}/qemu', data=data))
        logger.info(f"[{self.name}] created vmid {vmid} ({resource.name}) for {token}")
        if spec.power == 'running':
            self._set_power(deadline, vmid, 'running')
        return ProviderRef(provider=self.name, local_id=str(vmid))

    def _vm_status(self, deadline: float, vmid: str) -> dict:
        return self._request(deadline, 'GET', f'nodes/{self._node}/qemu/{vmid}/status/current') or {}

    def _set_power(self, deadline: float, vmid, power: str) -> None:
        action = 'start' if power == 'running' else 'stop'
        self._wait_task(deadline, self._request(deadline, 'POST', f'nodes/{self._node}/qemu/{vmid}/status/{action}'))
        logger.info(f"[{self.name}] vmid {vmid}: {action}")

    def _vm_config(self, deadline: float, vmid: str) -> dict:
        return self._request(deadline, 'GET', f'nodes/{self._node}/qemu/{vmid}/config') or {}

    def _update_instance(self, deadline: float, ref: ProviderRef, resource: Resource,
                         links: dict[str, ProviderRef]) -> None:
        spec = resource.desired
        current = self._vm_status(deadline, ref.local_id).get('status')
        changes = {}
        config = self._vm_config(deadline, ref.local_id)
        for index, network_id in enumerate(spec.network_ids, start=1):
            link = links.get(network_id)
            if link is None:
                continue
            wanted = f"virtio,bridge={link.local_id}"
            if not (config.get(f'net{index}') or '').endswith(f"bridge={link.local_id}"):
                changes[f'net{index}'] = wanted
        if changes:
            self._request(deadline, 'PUT', f'nodes/{self._node}/qemu/{ref.local_id}/config', data=changes)
            logger.info(f"[{self.name}] vmid {ref.local_id}: set {', '.join(sorted(changes))}")
        if current != spec.power:
            self._set_power(deadline, ref.local_id, spec.power)

    def _delete_instance(self, deadline: float, ref: ProviderRef) -> None:
        if self._vm_status(deadline, ref.local_id).get('status') == 'running':
            self._set_power(deadline, ref.local_id, 'stopped')
        self._wait_task(deadline, self._request(
            deadline, 'DELETE', f'nodes/{self._node}/qemu/{ref.local_id}', params={'purge': 1}))

    def _describe_instance(self, deadline: float, ref: ProviderRef) -> ObservedState:
        status = self._vm_status(deadline, ref.local_id)
        return ObservedState(
            exists=True,
            power='running' if status.get('status') == 'running' else 'stopped',
            attributes={k: status[k] for k in ('name', 'cpus', 'maxmem', 'uptime') if k in status},
        )

    # -- volumes ------------------------------------------------------------

    def _storage_path(self, volid: Optional[str] = None) -> str:
        path = f'nodes/{self._node}/storage/{self._config.storage}/content'
        return f'{path}/{volid}' if volid else path

    def _create_volume(self, deadline: float, token: str, resource: Resource) -> ProviderRef:
        owner = self._config.volume_owner_vmid
        filename = f'vm-{owner}-bb-{token}'
        content = self._request(deadline, 'GET', self._storage_path(), params={'vmid': owner}) or []
        for item in content:
            if item.get('volid', '').endswith(f':{filename}'):
                logger.info(f"[{self.name}] volume for {token} already exists as {item['volid']}")
                return ProviderRef(provider=self.name, local_id=item['volid'])

        volid = self._request(deadline, 'POST', self._storage_path(), data={
            'vmid': owner,
            'filename': filename,
            'size': f'{resource.desired.size_gb}G',
        })
        logger.info(f"[{self.name}] created volume {volid} for {token}")
        return ProviderRef(provider=self.name, local_id=volid)

    def _volume_info(self, deadline: float, volid: str) -> dict:
        return self._request(deadline, 'GET', self._storage_path(volid)) or {}

    @staticmethod
    def _attached_vmid(info: dict) -> Optional[str]:
        notes = info.get('notes') or ''
        if notes.startswith(ATTACH_NOTE_PREFIX):
            return notes[len(ATTACH_NOTE_PREFIX):] or None
        return None

    def _detach_volume(self, deadline: float, vmid: str, volid: str) -> None:
        config = self._vm_config(deadline, vmid)
        slots = [k for k, v in config.items() if k.startswith('scsi') and str(v).split(',')[0] == volid]
        if slots:
            self._request(deadline, 'PUT', f'nodes/{self._node}/qemu/{vmid}/config', data={'delete': ','.join(slots)})
            logger.info(f"[{self.name}] detached {volid} from vmid {vmid}")

    def _attach_volume(self, deadline: float, vmid: str, volid: str) -> None:
        config = self._vm_config(deadline, vmid)
        if any(k.startswith('scsi') and str(v).split(',')[0] == volid for k, v in config.items()):
            return
        for index in range(1, MAX_SCSI_SLOTS):
            slot = f'scsi{index}'
            if slot not in config:
                self._request(deadline, 'PUT', f'nodes/{self._node}/qemu/{vmid}/config', data={slot: volid})
                logger.info(f"[{self.name}] attached {volid} to vmid {vmid} as {slot}")
                return
        raise RejectedError(f"vmid {vmid} has no free scsi slot", provider=self.name)

    def _update_volume(self, deadline: float, ref: ProviderRef, resource: Resource,
                       links: dict[str, ProviderRef]) -> None:
        volid = ref.local_id
        current = self._attached_vmid(self._volume_info(deadline, volid))
        wanted = None
        if resource.desired.attached_to:
            link = links.get(resource.desired.attached_to)
            if link is None:
                raise RejectedError(
                    f"instance {resource.desired.attached_to} has no provider incarnation", provider=self.name)
            wanted = link.local_id
        if current == wanted:
            return
        if current:
            self._detach_volume(deadline, current, volid)
        if wanted:
            self._attach_volume(deadline, wanted, volid)
        self._request(deadline, 'PUT', self._storage_path(volid),
                      data={'notes': f'{ATTACH_NOTE_PREFIX}{wanted}' if wanted else ''})

    def _delete_volume(self, deadline: float, ref: ProviderRef) -> None:
        attached = self._attached_vmid(self._volume_info(deadline, ref.local_id))
        if attached:
            self._detach_volume(deadline, attached, ref.local_id)
        self._wait_task(deadline, self._request(deadline, 'DELETE', self._storage_path(ref.local_id)))

    def _describe_volume(self, deadline: float, ref: ProviderRef) -> ObservedState:
        info = self._volume_info(deadline, ref.local_id)
        return ObservedState(
            exists=True,
            attached_to=self._attached_vmid(info),
            attributes={k: info[k] for k in ('size', 'used', 'format', 'path') if k in info},
        )

    # -- networks -----------------------------------------------------------

    def _create_network(self, deadline: float, token: str, resource: Resource) -> ProviderRef:
        if resource.allocation is None:
            raise RejectedError("network has no tenant allocation", provider=self.name)
        vnet = vnet_name(resource.allocation.vni)
        alias = f'bbctl {token}'
        for existing in self._request(deadline, 'GET', 'cluster/sdn/vnets') or []:
            if existing.get('vnet') != vnet:
                continue
            if existing.get('alias') == alias:
                logger.info(f"[{self.name}] vnet {vnet} for {token} already exists")
                return ProviderRef(provider=self.name, local_id=vnet)
            raise RejectedError(f"vnet {vnet} exists and belongs to {existing.get('alias')!r}", provider=self.name)
        self._request(deadline, 'POST', 'cluster/sdn/vnets', data={
            'vnet': vnet,
            'zone': self._config.sdn_zone,
            'tag': resource.allocation.vni,
            'alias': alias,
        })
        logger.info(f"[{self.name}] created vnet {vnet} (vni {resource.allocation.vni}) for {token}")
        return ProviderRef(provider=self.name, local_id=vnet)

    def _ensure_subnet(self, deadline: float, allocation: TenantAllocation, gateway: Optional[str] = None) -> None:
        vnet = vnet_name(allocation.vni)
        subnets = self._request(deadline, 'GET', f'cluster/sdn/vnets/{vnet}/subnets') or []
        if any(s.get('cidr') == allocation.cidr for s in subnets):
            return
        self._request(deadline, 'POST', f'cluster/sdn/vnets/{vnet}/subnets', data={
            'subnet': allocation.cidr,
            'type': 'subnet',
            'gateway': gateway or str(next(allocation.network.hosts())),
        })
        logger.info(f"[{self.name}] added subnet {allocation.cidr} to vnet {vnet}")

    def _delete_network(self, deadline: float, ref: ProviderRef) -> None:
        vnet = ref.local_id
        for subnet in self._request(deadline, 'GET', f'cluster/sdn/vnets/{vnet}/subnets') or []:
            self._request(deadline, 'DELETE', f"cluster/sdn/vnets/{vnet}/subnets/{subnet['subnet']}")
        self._request(deadline, 'DELETE', f'cluster/sdn/vnets/{vnet}')
        self._sdn_apply(deadline)

    def _describe_network(self, deadline: float, ref: ProviderRef) -> ObservedState:
        vnet = self._request(deadline, 'GET', f'cluster/sdn/vnets/{ref.local_id}') or {}
        return ObservedState(
            exists=True,
            attributes={k: vnet[k] for k in ('zone', 'tag', 'alias') if k in vnet},
        )

    # -- ProviderAdapter ------------------------------------------------------

    def connect(self, ctx: CallContext) -> Session:
        if not self._config.api_token:
            raise ConnectError("no API token configured", provider=self.name)
        try:
            version = self._request(ctx.deadline(self._config.timeout), 'GET', 'version') or {}
        except ProviderError as e:
            raise ConnectError(f"cannot open session to {self._config.api_endpoint}: {e.message}", provider=self.name)
        logger.info(f"[{self.name}] connected to PVE {version.get('version', 'unknown')}")
        return Session(
            provider=self.name,
            endpoint=self._config.api_endpoint,
            key_id=ctx.credential.key_id if ctx.credential else None,
            info={'version': version.get('version', ''), 'node': self._node},
        )

    def create(self, ctx: CallContext, token: str, resource: Resource) -> ProviderRef:
        deadline = ctx.deadline(self._config.timeout)
        if resource.kind == ResourceKind.INSTANCE:
            return self._create_instance(deadline, token, resource)
        if resource.kind == ResourceKind.VOLUME:
            return self._create_volume(deadline, token, resource)
        return self._create_network(deadline, token, resource)

    def delete(self, ctx: CallContext, ref: ProviderRef) -> None:
        deadline = ctx.deadline(self._config.timeout)
        kind = self._kind_of(ref)
        if kind == ResourceKind.INSTANCE:
            self._delete_instance(deadline, ref)
        elif kind == ResourceKind.VOLUME:
            self._delete_volume(deadline, ref)
        else:
            self._delete_network(deadline, ref)
        logger.info(f"[{self.name}] deleted {kind.value} {ref.local_id}")

    def describe(self, ctx: CallContext, ref: ProviderRef) -> ObservedState:
        deadline = ctx.deadline(self._config.timeout)
        kind = self._kind_of(ref)
        try:
            if kind == ResourceKind.INSTANCE:
                return self._describe_instance(deadline, ref)
            if kind == ResourceKind.VOLUME:
                return self._describe_volume(deadline, ref)
            return self._describe_network(deadline, ref)
        except NotFoundError:
            return ObservedState.absent()

    def update(self, ctx: CallContext, ref: ProviderRef, resource: Resource,
               links: dict[str, ProviderRef]) -> None:
        deadline = ctx.deadline(self._config.timeout)
        if resource.kind == ResourceKind.INSTANCE:
            self._update_instance(deadline, ref, resource, links)
        elif resource.kind == ResourceKind.VOLUME:
            self._update_volume(deadline, ref, resource, links)
        elif resource.allocation is not None:
            self._ensure_subnet(deadline, resource.allocation, resource.desired.gateway)
            self._sdn_apply(deadline)

    def apply_network_config(self, ctx: CallContext, allocation: TenantAllocation) -> None:
        deadline = ctx.deadline(self._config.timeout)
        self._ensure_subnet(deadline, allocation)
        self._sdn_apply(deadline)
        # VRF tables live on the network appliance; PVE only carries the VNI
        logger.debug(f"[{self.name}] vnet {vnet_name(allocation.vni)} applied (vrf {allocation.vrf_table})")

    def rotate_credentials(self, ctx: CallContext, material: KeyMaterial) -> None:
        deadline = ctx.deadline(self._config.timeout)
        iface = shlex.quote(self._config.wg_interface)
        public = shlex.quote(material.public_key)
        if material.rotation_state == RotationState.RETIRING:
            peers = wg_peers(self._ssh, self._config.wg_interface, remaining(deadline, self.name), provider=self.name)
            if material.public_key not in peers:
                logger.debug(f"[{self.name}] peer {material.key_id} already absent")
                return
            ssh_check(self._ssh, f'wg set {iface} peer {public} remove', remaining(deadline, self.name),
                      provider=self.name)
            logger.info(f"[{self.name}] removed wireguard peer {material.key_id}")
            return
        try:
            allowed = slot_allowed_ips(self._config.wg_allowed_ips or '0.0.0.0/0', material.slot)
        except ValueError as e:
            raise RejectedError(f"invalid wireguard allowed-ips: {e}", provider=self.name)
        allowed = shlex.quote(','.join(allowed))
        ssh_check(self._ssh, f'wg set {iface} peer {public} allowed-ips {allowed}', remaining(deadline, self.name),
                  provider=self.name)
        logger.info(f"[{self.name}] wireguard peer {material.key_id} accepted on {self._config.wg_interface}")

    def latest_handshakes(self, ctx: CallContext) -> dict[str, float]:
        deadline = ctx.deadline(self._config.timeout)
        return wg_handshakes(self._ssh, self._config.wg_interface, remaining(deadline, self.name),
                             provider=self.name)

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _kind_of(ref: ProviderRef) -> ResourceKind:
        """Infer the resource kind from the shape of a local id."""
        if ref.local_id.isdigit():
            return ResourceKind.INSTANCE
        if ':' in ref.local_id:
            return ResourceKind.VOLUME
        return ResourceKind.NETWORK
