"""Resource model.

Instances, volumes and networks share one Resource record. The variant lives
in `desired`, one of the *Spec dataclasses below, so the engine can drive any
resource through the same state machine.

Specs validate in __post_init__ and raise ValidationError naming the field.
Records round-trip through to_dict()/from_dict() for the state store.
"""

import copy
import ipaddress
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from errors import ValidationError

POWER_STATES = ('running', 'stopped')
VOLUME_TYPES = ('standard', 'ssd', 'nvme', 'hdd', 'network')
NETWORK_TYPES = ('bridged', 'routed', 'isolated', 'vxlan', 'vpn')

MIN_PREFIX_LEN = 8
MAX_PREFIX_LEN = 30

_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$')


class ResourceKind(str, Enum):
    INSTANCE = 'instance'
    VOLUME = 'volume'
    NETWORK = 'network'


class ResourceStatus(str, Enum):
    """Lifecycle states.

    pending -> provisioning -> live -> deleting -> deleted
    live -> degraded (drift), provisioning/deleting -> failed
    """
    PENDING = 'pending'
    PROVISIONING = 'provisioning'
    LIVE = 'live'
    DEGRADED = 'degraded'
    DELETING = 'deleting'
    DELETED = 'deleted'
    FAILED = 'failed'


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(name, f"must be a positive integer, got {value!r}")
    return value


def _one_of(name: str, value: Any, allowed: tuple) -> str:
    if value not in allowed:
        raise ValidationError(name, f"must be one of {', '.join(allowed)}, got {value!r}")
    return value


def parse_cidr(value: Any, name: str = 'cidr') -> ipaddress.IPv4Network:
    """Parse a strict IPv4 network (host bits must be zero)."""
    if not isinstance(value, str):
        raise ValidationError(name, f"must be a string, got {value!r}")
    try:
        net = ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValidationError(name, f"malformed CIDR {value!r}: {e}")
    if not isinstance(net, ipaddress.IPv4Network):
        raise ValidationError(name, f"only IPv4 networks are supported, got {value!r}")
    return net


@dataclass(frozen=True)
class InstanceSpec:
    """Desired state of a VM instance."""
    cpu: int
    memory_gb: int
    disk_gb: int
    power: str = 'running'
    image: str = ''
    network_ids: tuple = ()

    kind = ResourceKind.INSTANCE

    def __post_init__(self):
        _positive_int('cpu', self.cpu)
        _positive_int('memory_gb', self.memory_gb)
        _positive_int('disk_gb', self.disk_gb)
        _one_of('power', self.power, POWER_STATES)
        object.__setattr__(self, 'network_ids', tuple(self.network_ids))

    def to_dict(self) -> dict:
        return {
            'cpu': self.cpu,
            'memory_gb': self.memory_gb,
            'disk_gb': self.disk_gb,
            'power': self.power,
            'image': self.image,
            'network_ids': list(self.network_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'InstanceSpec':
        return cls(
            cpu=data.get('cpu'),
            memory_gb=data.get('memory_gb'),
            disk_gb=data.get('disk_gb'),
            power=data.get('power', 'running'),
            image=data.get('image', ''),
            network_ids=tuple(data.get('network_ids', ())),
        )


@dataclass(frozen=True)
class VolumeSpec:
    """Desired state of a block volume. attached_to is an instance resource id."""
    size_gb: int
    volume_type: str = 'standard'
    attached_to: Optional[str] = None

    kind = ResourceKind.VOLUME

    def __post_init__(self):
        _positive_int('size_gb', self.size_gb)
        _one_of('volume_type', self.volume_type, VOLUME_TYPES)

    def to_dict(self) -> dict:
        return {
            'size_gb': self.size_gb,
            'volume_type': self.volume_type,
            'attached_to': self.attached_to,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'VolumeSpec':
        return cls(
            size_gb=data.get('size_gb'),
            volume_type=data.get('volume_type', 'standard'),
            attached_to=data.get('attached_to'),
        )


@dataclass(frozen=True)
class NetworkSpec:
    """Desired state of a tenant network.

    cidr pins an explicit block; otherwise the allocator carves a block of
    prefix_len from the scope's supernet. An explicit cidr overrides
    prefix_len.
    """
    cidr: Optional[str] = None
    prefix_len: int = 24
    network_type: str = 'routed'
    gateway: Optional[str] = None
    dns_servers: tuple = ()

    kind = ResourceKind.NETWORK

    def __post_init__(self):
        _one_of('network_type', self.network_type, NETWORK_TYPES)
        net = None
        if self.cidr is not None:
            net = parse_cidr(self.cidr)
            object.__setattr__(self, 'cidr', str(net))
            object.__setattr__(self, 'prefix_len', net.prefixlen)
        prefix_len = _positive_int('prefix_len', self.prefix_len)
        if not MIN_PREFIX_LEN <= prefix_len <= MAX_PREFIX_LEN:
            raise ValidationError(
                'prefix_len', f"must be between {MIN_PREFIX_LEN} and {MAX_PREFIX_LEN}, got {prefix_len}")
        if self.gateway is not None:
            try:
                gw = ipaddress.IPv4Address(self.gateway)
            except ValueError:
                raise ValidationError('gateway', f"malformed address {self.gateway!r}")
            if net is not None and gw not in net:
                raise ValidationError('gateway', f"{gw} is outside {net}")
        servers = tuple(self.dns_servers)
        for server in servers:
            try:
                ipaddress.ip_address(server)
            except ValueError:
                raise ValidationError('dns_servers', f"malformed address {server!r}")
        object.__setattr__(self, 'dns_servers', servers)

    def to_dict(self) -> dict:
        return {
            'cidr': self.cidr,
            'prefix_len': self.prefix_len,
            'network_type': self.network_type,
            'gateway': self.gateway,
            'dns_servers': list(self.dns_servers),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'NetworkSpec':
        return cls(
            cidr=data.get('cidr'),
            prefix_len=data.get('prefix_len', 24),
            network_type=data.get('network_type', 'routed'),
            gateway=data.get('gateway'),
            dns_servers=tuple(data.get('dns_servers', ())),
        )


Spec = Union[InstanceSpec, VolumeSpec, NetworkSpec]

SPEC_TYPES = {
    ResourceKind.INSTANCE: InstanceSpec,
    ResourceKind.VOLUME: VolumeSpec,
    ResourceKind.NETWORK: NetworkSpec,
}


def spec_from_dict(kind: Union[str, ResourceKind], data: dict) -> Spec:
    """Build the spec for a resource kind, validating every field."""
    try:
        spec_cls = SPEC_TYPES[ResourceKind(kind)]
    except ValueError:
        raise ValidationError('kind', f"unknown resource kind {kind!r}")
    try:
        return spec_cls.from_dict(data)
    except TypeError as e:
        raise ValidationError('spec', str(e))


@dataclass(frozen=True)
class ProviderRef:
    """Which provider owns a resource, and its provider-local id."""
    provider: str
    local_id: str

    def to_dict(self) -> dict:
        return {'provider': self.provider, 'local_id': self.local_id}

    @classmethod
    def from_dict(cls, data: dict) -> 'ProviderRef':
        return cls(provider=data['provider'], local_id=str(data['local_id']))

    def __str__(self) -> str:
        return f"{self.provider}:{self.local_id}"


@dataclass
class ObservedState:
    """Provider-reported truth about one incarnation.

    Attributes:
        exists: False when the provider no longer knows the resource
        power: 'running'/'stopped' for instances
        attached_to: Provider-local id of the instance a volume is attached to
        attributes: Free-form provider details (for show/debugging)
    """
    exists: bool = True
    power: Optional[str] = None
    attached_to: Optional[str] = None
    attributes: dict = field(default_factory=dict)

    @classmethod
    def absent(cls) -> 'ObservedState':
        return cls(exists=False)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'exists': self.exists}
        if self.power is not None:
            d['power'] = self.power
        if self.attached_to is not None:
            d['attached_to'] = self.attached_to
        if self.attributes:
            d['attributes'] = dict(self.attributes)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ObservedState':
        return cls(
            exists=data.get('exists', True),
            power=data.get('power'),
            attached_to=data.get('attached_to'),
            attributes=dict(data.get('attributes', {})),
        )


@dataclass(frozen=True)
class TenantAllocation:
    """Isolation identifiers held by one Network."""
    provider: str
    region: str
    cidr: str
    vrf_table: int
    vni: int

    @property
    def scope(self) -> tuple[str, str]:
        return (self.provider, self.region)

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.cidr)

    def to_dict(self) -> dict:
        return {
            'provider': self.provider,
            'region': self.region,
            'cidr': self.cidr,
            'vrf_table': self.vrf_table,
            'vni': self.vni,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TenantAllocation':
        return cls(
            provider=data['provider'],
            region=data['region'],
            cidr=data['cidr'],
            vrf_table=int(data['vrf_table']),
            vni=int(data['vni']),
        )


@dataclass
class Resource:
    """One managed resource and its reconciliation bookkeeping.

    Attributes:
        id: Opaque unique id, also the idempotency token for provider create
        name: Human-readable name
        provider: Name of the provider connection that owns it
        region: Region within that provider
        desired: User intent (InstanceSpec, VolumeSpec or NetworkSpec)
        status: Lifecycle status
        observed: Last provider-reported state
        provider_ref: Set when the provider accepts creation
        allocation: Tenant allocation (networks only)
        tags: Free-form labels
        created_at: Creation timestamp
        reconciled_at: Last time local and provider state were compared
        error: Last failure, for display
        operation: Operation a failed status belongs to ('create'/'delete')
        generation: Number of provider-side incarnations so far
        auto_redrive: Cleared when automatic drift repair gave up
    """
    id: str
    name: str
    provider: str
    region: str
    desired: Spec
    status: ResourceStatus = ResourceStatus.PENDING
    observed: Optional[ObservedState] = None
    provider_ref: Optional[ProviderRef] = None
    allocation: Optional[TenantAllocation] = None
    tags: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    reconciled_at: Optional[float] = None
    error: Optional[str] = None
    operation: Optional[str] = None
    generation: int = 0
    auto_redrive: bool = True

    @classmethod
    def new(
        cls,
        name: str,
        provider: str,
        region: str,
        desired: Spec,
        tags: Optional[dict] = None,
        resource_id: Optional[str] = None,
    ) -> 'Resource':
        """Validate identity fields and build a pending resource."""
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValidationError(
                'name', f"must be 1-63 characters of letters, digits, '.', '_' or '-', got {name!r}")
        if not provider:
            raise ValidationError('provider', "is required")
        if not region:
            raise ValidationError('region', "is required")
        if not isinstance(desired, (InstanceSpec, VolumeSpec, NetworkSpec)):
            raise ValidationError('desired', f"unsupported spec type {type(desired).__name__}")
        tags = dict(tags or {})
        for key, value in tags.items():
            if not isinstance(key, str) or not isinstance(value, str) or not key:
                raise ValidationError('tags', f"keys and values must be strings, got {key!r}={value!r}")
        if resource_id is not None and not (isinstance(resource_id, str) and resource_id):
            raise ValidationError('id', f"must be a non-empty string, got {resource_id!r}")
        return cls(
            id=resource_id or str(uuid.uuid4()),
            name=name,
            provider=provider,
            region=region,
            desired=desired,
            tags=tags,
        )

    @property
    def kind(self) -> ResourceKind:
        return self.desired.kind

    def bind(self, ref: ProviderRef) -> None:
        """Record the provider ref of a newly accepted incarnation.

        Raises:
            ValueError: If a ref is already bound
        """
        if self.provider_ref is not None:
            raise ValueError(f"{self.id} already bound to {self.provider_ref}")
        self.provider_ref = ref
        self.generation += 1

    def unbind(self) -> None:
        """Forget a ref whose incarnation the provider reported absent."""
        self.provider_ref = None

    def snapshot(self) -> 'Resource':
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'kind': self.kind.value,
            'name': self.name,
            'provider': self.provider,
            'region': self.region,
            'desired': self.desired.to_dict(),
            'status': self.status.value,
            'tags': dict(self.tags),
            'created_at': self.created_at,
            'generation': self.generation,
            'auto_redrive': self.auto_redrive,
        }
        if self.observed is not None:
            d['observed'] = self.observed.to_dict()
        if self.provider_ref is not None:
            d['provider_ref'] = self.provider_ref.to_dict()
        if self.allocation is not None:
            d['allocation'] = self.allocation.to_dict()
        if self.reconciled_at is not None:
            d['reconciled_at'] = self.reconciled_at
        if self.error is not None:
            d['error'] = self.error
        if self.operation is not None:
            d['operation'] = self.operation
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        observed = data.get('observed')
        ref = data.get('provider_ref')
        allocation = data.get('allocation')
        return cls(
            id=data['id'],
            name=data['name'],
            provider=data['provider'],
            region=data['region'],
            desired=spec_from_dict(data['kind'], data.get('desired', {})),
            status=ResourceStatus(data.get('status', 'pending')),
            observed=ObservedState.from_dict(observed) if observed else None,
            provider_ref=ProviderRef.from_dict(ref) if ref else None,
            allocation=TenantAllocation.from_dict(allocation) if allocation else None,
            tags=dict(data.get('tags', {})),
            created_at=data.get('created_at', time.time()),
            reconciled_at=data.get('reconciled_at'),
            error=data.get('error'),
            operation=data.get('operation'),
            generation=data.get('generation', 0),
            auto_redrive=data.get('auto_redrive', True),
        )
