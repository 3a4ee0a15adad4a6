"""Provider adapter contract.

Each provider family (hypervisor, network appliance) implements this
capability set. Adapters are stateless translators: the engine passes every
call enough context to act (a CallContext plus the resource or ref) and owns
the authoritative copy of all state.

Every mutating call must be safe to retry. create() is idempotent keyed by
the caller-supplied token (the resource id): a duplicate call returns the
existing ProviderRef instead of creating a second resource.

Failures are raised as errors.ProviderError subclasses:
TransientError, RejectedError, NotFoundError, UnauthenticatedError.
A call that outlives ctx.timeout is reported as TransientError.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from errors import TransientError
from models.keys import KeyMaterial, SecretKey
from models.resource import ObservedState, ProviderRef, Resource, TenantAllocation

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class Credential:
    """The key an adapter call runs under.

    secret is only for adapters that terminate the tunnel themselves; most
    adapters only need public_key to prove which peer they expect.
    """
    owner: str
    key_id: str
    public_key: str
    secret: Optional[SecretKey] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class CallContext:
    """Per-call context.

    Attributes:
        timeout: Upper bound in seconds for the whole provider call
        credential: Active management-channel key, None before enrollment
    """
    timeout: float = DEFAULT_TIMEOUT
    credential: Optional[Credential] = None

    def deadline(self, limit: Optional[float] = None) -> float:
        """Monotonic deadline for the call; limit caps the timeout (provider setting)."""
        timeout = self.timeout if not limit else min(self.timeout, limit)
        return time.monotonic() + timeout


@dataclass
class Session:
    """Result of a successful connect()."""
    provider: str
    endpoint: str
    key_id: Optional[str] = None
    info: dict = field(default_factory=dict)
    established_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            'provider': self.provider,
            'endpoint': self.endpoint,
            'key_id': self.key_id,
            'info': dict(self.info),
            'established_at': self.established_at,
        }


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability set every provider family implements."""

    name: str

    def connect(self, ctx: CallContext) -> Session:
        """Open (or verify) a session. Raises ConnectError."""

    def create(self, ctx: CallContext, token: str, resource: Resource) -> ProviderRef:
        """Create the resource, or return the ref already created for token."""

    def delete(self, ctx: CallContext, ref: ProviderRef) -> None:
        """Delete an incarnation. Raises NotFoundError if already gone."""

    def describe(self, ctx: CallContext, ref: ProviderRef) -> ObservedState:
        """Report provider truth. Never mutates."""

    def update(self, ctx: CallContext, ref: ProviderRef, resource: Resource,
               links: dict[str, ProviderRef]) -> None:
        """Drive mutable attributes (power, attachment) toward resource.desired.

        links maps related resource ids (e.g. an attached instance) to refs.
        """

    def apply_network_config(self, ctx: CallContext, allocation: TenantAllocation) -> None:
        """Materialize VRF/VNI/CIDR isolation for a network allocation."""

    def rotate_credentials(self, ctx: CallContext, material: KeyMaterial) -> None:
        """Sync one key with the provider's accepted peers.

        Active/Overlapping keys are ensured present; Retiring keys are removed.
        Each key is routed the half of the allowed-ips range its slot selects.
        """

    def latest_handshakes(self, ctx: CallContext) -> dict[str, float]:
        """Last completed handshake per accepted public key (epoch, 0 = never)."""


def remaining(deadline: float, provider: str = '') -> float:
    """Seconds left before a monotonic deadline.

    Raises:
        TransientError: Once the deadline has passed
    """
    left = deadline - time.monotonic()
    if left <= 0:
        raise TransientError("call exceeded its timeout", provider=provider)
    return left
