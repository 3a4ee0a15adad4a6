"""Error taxonomy for the reconciler.

Callers branch on the exception class:
- ValidationError and AllocationError are surfaced immediately, no provider call.
- ProviderError subclasses drive the retry policy (see reconciler.retry).
- ReconcileError subclasses describe what the engine gave up on.

Messages never carry key material; KeyMaterial and SecretKey refuse to format.
"""

from typing import Optional


class BbctlError(Exception):
    """Base class for all bbctl exceptions."""


class ValidationError(BbctlError):
    """Malformed desired state. Names the offending field."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class AllocationError(BbctlError):
    """Tenant allocation failed.

    Attributes:
        kind: 'exhausted' (no identifier/block of the class remains) or
            'conflict' (explicit CIDR overlaps an existing allocation)
        pool: Which pool failed ('cidr', 'vrf', 'vni')
    """

    EXHAUSTED = 'exhausted'
    CONFLICT = 'conflict'

    def __init__(self, kind: str, pool: str, message: str):
        self.kind = kind
        self.pool = pool
        self.message = message
        super().__init__(f"{kind} ({pool}): {message}")

    @classmethod
    def exhausted(cls, pool: str, message: str) -> 'AllocationError':
        return cls(cls.EXHAUSTED, pool, message)

    @classmethod
    def conflict(cls, pool: str, message: str) -> 'AllocationError':
        return cls(cls.CONFLICT, pool, message)


class ProviderError(BbctlError):
    """Failure reported by a provider adapter."""

    retryable = False

    def __init__(self, message: str, provider: str = ''):
        self.message = message
        self.provider = provider
        prefix = f"[{provider}] " if provider else ''
        super().__init__(f"{prefix}{message}")


class TransientError(ProviderError):
    """Timeouts, rate limits, unreachable hosts. Retried with backoff."""

    retryable = True


class RejectedError(ProviderError):
    """The request is invalid as sent. Not retried."""


class NotFoundError(ProviderError):
    """Target vanished upstream. Triggers local reconciliation."""


class UnauthenticatedError(ProviderError):
    """Credentials refused. Triggers a credential refresh and one retry."""


class ConnectError(ProviderError):
    """Session could not be established with the provider."""


class ReconcileError(BbctlError):
    """Base class for engine-level failures."""


class RetriesExhausted(ReconcileError):
    """Transient failures outlasted the retry policy."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[ProviderError]):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} gave up after {attempts} attempts: {last_error}"
        )


class OperationCancelled(ReconcileError):
    """The operation was cancelled at a checkpoint before its provider call."""


class LeaseBusyError(ReconcileError):
    """Another worker holds the lease for this id."""

    def __init__(self, key: str, holder: str):
        self.key = key
        self.holder = holder
        super().__init__(f"lease for {key} held by {holder}")


class UnknownResourceError(ReconcileError, KeyError):
    """No resource with this id is tracked."""

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"unknown resource: {resource_id}")

    def __str__(self) -> str:
        return f"unknown resource: {self.resource_id}"


class KeyUnavailableError(BbctlError, KeyError):
    """Key material was purged or never held by this manager."""

    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(f"key {key_id} is not available")

    def __str__(self) -> str:
        return f"key {self.key_id} is not available"
