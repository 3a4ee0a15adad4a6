"""Tenant/network allocator.

Each provider/region scope owns three pools:
- VRF table ids: a bounded integer range
- VNIs: a slice of the 24-bit VXLAN space reserved for the scope
- CIDR blocks: carved from the scope's supernet

CIDR carving is best-fit: the smallest free block at least as large as the
request is split buddy-style, so released blocks coalesce back with their
buddies and fragmentation stays low.

allocate/release/restore for one scope run under that scope's lock, giving
linearizable allocation: concurrent network creation never receives
duplicate ids or overlapping blocks. Scopes never share a lock, and their
VRF/VNI slices are checked disjoint at construction, so ids are unique across
all scopes.
"""

import heapq
import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from config import ConfigError
from errors import AllocationError, ValidationError
from models.resource import NetworkSpec, TenantAllocation, parse_cidr

logger = logging.getLogger(__name__)

VRF_MIN = 1000
VRF_MAX = 65535
VNI_MIN = 1
VNI_MAX = 2 ** 24 - 1


@dataclass(frozen=True)
class AllocationRequest:
    """What a network needs from its scope.

    cidr pins an explicit block; otherwise a block of prefix_len is carved.
    """
    provider: str
    region: str
    prefix_len: int = 24
    cidr: Optional[str] = None

    @classmethod
    def for_network(cls, provider: str, region: str, spec: NetworkSpec) -> 'AllocationRequest':
        return cls(provider=provider, region=region, prefix_len=spec.prefix_len, cidr=spec.cidr)

    @property
    def scope(self) -> tuple[str, str]:
        return (self.provider, self.region)


@dataclass(frozen=True)
class ScopeConfig:
    """Pool layout for one provider/region scope."""
    provider: str
    region: str
    supernet: str
    vrf_range: Optional[tuple[int, int]] = None
    vni_range: Optional[tuple[int, int]] = None


class IdPool:
    """Lowest-free integer allocator over an inclusive range."""

    def __init__(self, name: str, low: int, high: int):
        if low > high:
            raise ValueError(f"{name} range is empty: {low}-{high}")
        self.name = name
        self.low = low
        self.high = high
        self._used: set[int] = set()
        self._released: list[int] = []
        self._cursor = low

    def __contains__(self, value: int) -> bool:
        return value in self._used

    @property
    def capacity(self) -> int:
        return self.high - self.low + 1

    @property
    def in_use(self) -> int:
        return len(self._used)

    def take(self) -> int:
        while self._released:
            value = heapq.heappop(self._released)
            if value not in self._used:
                self._used.add(value)
                return value
        while self._cursor <= self.high:
            value = self._cursor
            self._cursor += 1
            if value not in self._used:
                self._used.add(value)
                return value
        raise AllocationError.exhausted(self.name, f"all {self.capacity} ids in {self.low}-{self.high} are in use")

    def reserve(self, value: int) -> None:
        if not self.low <= value <= self.high:
            raise AllocationError.conflict(self.name, f"{value} is outside {self.low}-{self.high}")
        if value in self._used:
            raise AllocationError.conflict(self.name, f"{value} is already allocated")
        self._used.add(value)

    def give_back(self, value: int) -> None:
        self._used.discard(value)
        heapq.heappush(self._released, value)


class CidrPool:
    """Best-fit CIDR carving from a supernet.

    Blocks outside the supernet may be reserved explicitly; they only take
    part in overlap checks.
    """

    def __init__(self, supernet: str):
        self.supernet = parse_cidr(supernet, 'supernet')
        self._free: set[ipaddress.IPv4Network] = {self.supernet}
        self._allocated: set[ipaddress.IPv4Network] = set()

    @property
    def free_blocks(self) -> list[ipaddress.IPv4Network]:
        return sorted(self._free)

    @property
    def allocated(self) -> list[ipaddress.IPv4Network]:
        return sorted(self._allocated)

    def take(self, prefix_len: int) -> ipaddress.IPv4Network:
        candidates = [b for b in self._free if b.prefixlen <= prefix_len]
        if not candidates:
            raise AllocationError.exhausted(
                'cidr', f"no free /{prefix_len} left in {self.supernet}")
        # Smallest sufficient block first, lowest address on ties
        block = min(candidates, key=lambda b: (-b.prefixlen, int(b.network_address)))
        self._free.remove(block)
        while block.prefixlen < prefix_len:
            low, high = block.subnets(prefixlen_diff=1)
            self._free.add(high)
            block = low
        self._allocated.add(block)
        return block

    def reserve(self, net: ipaddress.IPv4Network) -> None:
        for existing in self._allocated:
            if net.overlaps(existing):
                raise AllocationError.conflict('cidr', f"{net} overlaps allocated {existing}")
        if net.overlaps(self.supernet):
            if not net.subnet_of(self.supernet):
                raise AllocationError.conflict(
                    'cidr', f"{net} straddles the supernet {self.supernet}")
            for block in [b for b in self._free if b.overlaps(net)]:
                self._free.remove(block)
                if net.subnet_of(block) and block != net:
                    self._free.update(block.address_exclude(net))
        self._allocated.add(net)

    def give_back(self, net: ipaddress.IPv4Network) -> None:
        self._allocated.discard(net)
        if net.subnet_of(self.supernet):
            self._free.add(net)
            self._coalesce()

    def _coalesce(self) -> None:
        merged = True
        while merged:
            merged = False
            for block in sorted(self._free, key=lambda b: -b.prefixlen):
                if block.prefixlen <= self.supernet.prefixlen:
                    continue
                parent = block.supernet()
                low, high = parent.subnets(prefixlen_diff=1)
                buddy = high if block == low else low
                if buddy in self._free:
                    self._free -= {block, buddy}
                    self._free.add(parent)
                    merged = True
                    break


class ScopePool:
    """The three pools of one provider/region scope, behind one lock."""

    def __init__(self, config: ScopeConfig):
        if config.vrf_range is None or config.vni_range is None:
            raise ValueError(f"scope {config.provider}/{config.region} needs vrf and vni ranges")
        self.provider = config.provider
        self.region = config.region
        self.vrf = IdPool('vrf', *config.vrf_range)
        self.vni = IdPool('vni', *config.vni_range)
        self.cidr = CidrPool(config.supernet)
        self._lock = threading.Lock()
        self._live: set[TenantAllocation] = set()

    def allocate(self, request: AllocationRequest) -> TenantAllocation:
        with self._lock:
            if request.cidr is not None:
                net = parse_cidr(request.cidr)
                self.cidr.reserve(net)
            else:
                net = self.cidr.take(request.prefix_len)
            try:
                vrf = self.vrf.take()
                try:
                    vni = self.vni.take()
                except AllocationError:
                    self.vrf.give_back(vrf)
                    raise
            except AllocationError:
                self.cidr.give_back(net)
                raise

            allocation = TenantAllocation(
                provider=self.provider,
                region=self.region,
                cidr=str(net),
                vrf_table=vrf,
                vni=vni,
            )
            self._live.add(allocation)
        logger.info(f"Allocated {allocation.cidr} vrf={vrf} vni={vni} in {self.provider}/{self.region}")
        return allocation

    def release(self, allocation: TenantAllocation) -> None:
        """Return all three identifiers at once.

        Raises:
            ValueError: If the allocation is not live in this scope
        """
        with self._lock:
            if allocation not in self._live:
                raise ValueError(f"{allocation} is not a live allocation of {self.provider}/{self.region}")
            self.cidr.give_back(allocation.network)
            self.vrf.give_back(allocation.vrf_table)
            self.vni.give_back(allocation.vni)
            self._live.remove(allocation)
        logger.info(
            f"Released {allocation.cidr} vrf={allocation.vrf_table} vni={allocation.vni} "
            f"in {self.provider}/{self.region}"
        )

    def restore(self, allocation: TenantAllocation) -> None:
        """Mark a persisted allocation as in use again."""
        with self._lock:
            if allocation in self._live:
                return
            net = allocation.network
            self.cidr.reserve(net)
            try:
                self.vrf.reserve(allocation.vrf_table)
                try:
                    self.vni.reserve(allocation.vni)
                except AllocationError:
                    self.vrf.give_back(allocation.vrf_table)
                    raise
            except AllocationError:
                self.cidr.give_back(net)
                raise
            self._live.add(allocation)

    def usage(self) -> dict:
        with self._lock:
            return {
                'provider': self.provider,
                'region': self.region,
                'supernet': str(self.cidr.supernet),
                'allocations': len(self._live),
                'vrf': {'in_use': self.vrf.in_use, 'capacity': self.vrf.capacity},
                'vni': {'in_use': self.vni.in_use, 'capacity': self.vni.capacity},
                'free_blocks': [str(b) for b in self.cidr.free_blocks],
            }


def _partition(low: int, high: int, count: int) -> list[tuple[int, int]]:
    """Split [low, high] into count contiguous, equal-sized slices."""
    size = (high - low + 1) // count
    if size < 1:
        raise ConfigError(f"range {low}-{high} cannot be split {count} ways")
    return [(low + i * size, low + (i + 1) * size - 1) for i in range(count)]


def _gaps(taken: list[tuple[int, int]], low: int, high: int) -> list[tuple[int, int]]:
    """Sub-ranges of [low, high] not covered by the sorted, disjoint taken ranges."""
    gaps = []
    start = low
    for first, last in taken:
        if first > start:
            gaps.append((start, first - 1))
        start = max(start, last + 1)
    if start <= high:
        gaps.append((start, high))
    return gaps


def _assign_ranges(scopes: list[ScopeConfig], attr: str, low: int, high: int) -> dict:
    """Give every scope a range: explicit ones as configured, the rest partitioned.

    Explicit ranges must lie within [low, high] and be disjoint. Unassigned
    scopes share the largest gap left between them.

    Raises:
        ConfigError: On an out-of-bounds or overlapping range, or when the
            free space cannot hold the unassigned scopes
    """
    ranges = {}
    for scope in scopes:
        value = getattr(scope, attr)
        if value is None:
            continue
        if not low <= value[0] <= value[1] <= high:
            raise ConfigError(
                f"{attr} of {scope.provider}/{scope.region} {tuple(value)} is outside {low}-{high}")
        ranges[(scope.provider, scope.region)] = tuple(value)

    ordered = sorted(ranges.items(), key=lambda item: item[1])
    for (scope_a, range_a), (scope_b, range_b) in zip(ordered, ordered[1:]):
        if range_b[0] <= range_a[1]:
            raise ConfigError(
                f"{attr} of {scope_a[0]}/{scope_a[1]} {range_a} overlaps "
                f"{scope_b[0]}/{scope_b[1]} {range_b}"
            )

    auto = [s for s in scopes if getattr(s, attr) is None]
    if auto:
        gaps = _gaps([r for _, r in ordered], low, high)
        if not gaps:
            raise ConfigError(f"no {attr} space left in {low}-{high} for {len(auto)} scope(s)")
        start, end = max(gaps, key=lambda g: (g[1] - g[0], -g[0]))
        for scope, part in zip(auto, _partition(start, end, len(auto))):
            ranges[(scope.provider, scope.region)] = part
    return ranges


class TenantAllocator:
    """Routes allocation requests to per-scope pools.

    Built once from explicit scope configuration and injected into the
    engine; nothing here is process-global, so independent allocators can
    coexist (one per reconciler instance).
    """

    def __init__(self, scopes: Iterable[ScopeConfig]):
        scopes = list(scopes)
        vrf_ranges = _assign_ranges(scopes, 'vrf_range', VRF_MIN, VRF_MAX)
        vni_ranges = _assign_ranges(scopes, 'vni_range', VNI_MIN, VNI_MAX)
        self._pools: dict[tuple[str, str], ScopePool] = {}
        for scope in scopes:
            key = (scope.provider, scope.region)
            if key in self._pools:
                raise ConfigError(f"duplicate allocation scope {scope.provider}/{scope.region}")
            self._pools[key] = ScopePool(ScopeConfig(
                provider=scope.provider,
                region=scope.region,
                supernet=scope.supernet,
                vrf_range=vrf_ranges[key],
                vni_range=vni_ranges[key],
            ))

    @classmethod
    def from_providers(cls, providers: Iterable) -> 'TenantAllocator':
        """Build scopes from ProviderConfig objects (one per configured region)."""
        return cls(
            ScopeConfig(
                provider=provider.name,
                region=region.name,
                supernet=region.supernet,
                vrf_range=region.vrf_range,
                vni_range=region.vni_range,
            )
            for provider in providers
            for region in provider.regions
        )

    def pool(self, provider: str, region: str) -> ScopePool:
        try:
            return self._pools[(provider, region)]
        except KeyError:
            raise ValidationError('region', f"no allocation scope for {provider}/{region}")

    def allocate(self, request: AllocationRequest) -> TenantAllocation:
        return self.pool(request.provider, request.region).allocate(request)

    def release(self, allocation: TenantAllocation) -> None:
        self.pool(allocation.provider, allocation.region).release(allocation)

    def restore(self, allocation: TenantAllocation) -> None:
        self.pool(allocation.provider, allocation.region).restore(allocation)

    def usage(self) -> list[dict]:
        return [pool.usage() for _, pool in sorted(self._pools.items())]
