"""Reconciliation engine.

Turns declared resources into idempotent provider operations and keeps the
local records in step with what providers report.

Lifecycle:
    pending -> provisioning -> live -> deleting -> deleted
    live -> degraded (drift), provisioning/deleting -> failed

Every mutation of one resource runs under that resource's lease, so a delete
waits for an in-flight create and the drift sweep skips resources a user
operation is working on. Provider calls go through _call(), which applies
the retry policy:
- TransientError: capped exponential backoff, then RetriesExhausted
- RejectedError: fail immediately
- UnauthenticatedError: refresh the provider's keys, retry once

The engine owns the authoritative copy of every record and persists each
change to the state store before moving on.
"""

import dataclasses
import logging
import threading
import time
from typing import Callable, Optional, Union

from allocator import AllocationRequest, TenantAllocator
from errors import (
    BbctlError,
    NotFoundError,
    OperationCancelled,
    ProviderError,
    RetriesExhausted,
    UnknownResourceError,
    ValidationError,
)
from keymanager import KeyLifecycleManager
from models.resource import (
    ObservedState,
    ProviderRef,
    Resource,
    ResourceKind,
    ResourceStatus,
    Spec,
    spec_from_dict,
)
from providers.base import DEFAULT_TIMEOUT, CallContext, ProviderAdapter, Session
from reconciler.lease import Lease, LeaseTable
from reconciler.retry import RetryPolicy, needs_refresh
from reconciler.state import StateStore, delete_resource, load_resources, save_resource

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[Resource, ResourceStatus, ResourceStatus], None]

# Outcomes reported by sweep()/check_drift()
IN_SYNC = 'in_sync'
REPAIRED = 'repaired'
DEGRADED = 'degraded'
UNREACHABLE = 'unreachable'
SKIPPED = 'skipped'


class ReconciliationEngine:
    """Drives resources through their lifecycle.

    Args:
        adapters: Provider adapters by connection name
        allocator: Tenant allocator for networks
        keys: Key lifecycle manager (credentials, vpn network keys)
        leases: Lease table shared with the key manager and the sweep
        store: State store; records are only kept in memory when None
        policy: Retry policy for provider calls
        timeout: Bound for each provider call
        clock: Wall clock, injectable for tests
        sleep: Backoff sleep, injectable for tests
        on_transition: Called with (snapshot, old, new) on every status change
    """

    def __init__(
        self,
        adapters: dict[str, ProviderAdapter],
        allocator: TenantAllocator,
        keys: KeyLifecycleManager,
        leases: LeaseTable,
        store: Optional[StateStore] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        on_transition: Optional[TransitionCallback] = None,
    ):
        self._adapters = adapters
        self._allocator = allocator
        self._keys = keys
        self._leases = leases
        self._store = store
        self._policy = policy or RetryPolicy()
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._on_transition = on_transition
        self._lock = threading.RLock()
        self._resources: dict[str, Resource] = {}
        self._inflight: dict[str, str] = {}
        self._cancelled: set[str] = set()

    # -- bookkeeping ----------------------------------------------------------

    def _save(self, resource: Resource) -> None:
        if self._store is not None:
            save_resource(self._store, resource)

    def _get(self, resource_id: str) -> Resource:
        with self._lock:
            try:
                return self._resources[resource_id]
            except KeyError:
                raise UnknownResourceError(resource_id)

    def _adapter(self, provider: str) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise ValidationError('provider', f"unknown provider '{provider}'")

    def _transition(self, resource: Resource, new: ResourceStatus, error: Optional[str] = None,
                    operation: Optional[str] = None) -> None:
        with self._lock:
            old = resource.status
            resource.status = new
            resource.error = error
            resource.operation = operation
            if new == ResourceStatus.DELETED:
                self._resources.pop(resource.id, None)
                if self._store is not None:
                    delete_resource(self._store, resource.id)
            else:
                self._save(resource)
            snapshot = resource.snapshot()
        if error:
            logger.warning(f"{resource.kind.value} {resource.name} ({resource.id}): "
                           f"{old.value} -> {new.value}: {error}")
        else:
            logger.info(f"{resource.kind.value} {resource.name} ({resource.id}): {old.value} -> {new.value}")
        if self._on_transition is not None:
            try:
                self._on_transition(snapshot, old, new)
            except Exception:
                logger.exception(f"on_transition callback failed for {resource.id}")

    def _fail(self, resource: Resource, operation: str, error: Exception) -> None:
        message = str(error) if isinstance(error, BbctlError) else f"{type(error).__name__}: {error}"
        self._transition(resource, ResourceStatus.FAILED, error=message, operation=operation)

    def _begin(self, resource_id: str, operation: str) -> None:
        with self._lock:
            self._inflight[resource_id] = operation
            self._cancelled.discard(resource_id)

    def _end(self, resource_id: str) -> None:
        with self._lock:
            self._inflight.pop(resource_id, None)
            self._cancelled.discard(resource_id)

    def _checkpoint(self, resource_id: str) -> None:
        with self._lock:
            if resource_id in self._cancelled:
                raise OperationCancelled(f"operation on {resource_id} cancelled")

    # -- provider calls -------------------------------------------------------

    def _call(self, resource: Resource, operation: str,
              fn: Callable[[ProviderAdapter, CallContext], object], lease: Lease):
        """Run one provider call under the retry policy.

        Raises:
            OperationCancelled: If cancelled before an attempt
            RetriesExhausted: If transient failures outlast the policy
            ProviderError: Rejected/NotFound, or Unauthenticated after one refresh
        """
        adapter = self._adapter(resource.provider)
        attempt = 0
        refreshed = False
        while True:
            attempt += 1
            self._checkpoint(resource.id)
            self._leases.renew(lease)
            failure: Optional[ProviderError] = None
            with self._keys.session(resource.provider) as credential:
                ctx = CallContext(timeout=self._timeout, credential=credential)
                try:
                    return fn(adapter, ctx)
                except ProviderError as e:
                    failure = e

            if needs_refresh(failure) and not refreshed:
                refreshed = True
                attempt -= 1
                logger.warning(f"{operation} {resource.id}: credentials refused, refreshing keys for "
                               f"{resource.provider}")
                self._keys.refresh(resource.provider)
                continue
            if failure.retryable:
                if not self._policy.should_retry(failure, attempt):
                    raise RetriesExhausted(operation, attempt, failure) from failure
                delay = self._policy.delay(attempt)
                logger.warning(f"{operation} {resource.id}: attempt {attempt}/{self._policy.max_attempts} "
                               f"failed: {failure}; retrying in {delay:.1f}s")
                self._sleep(delay)
                continue
            raise failure

    def _links(self, resource: Resource) -> dict[str, ProviderRef]:
        """Provider refs of the resources this one refers to."""
        spec = resource.desired
        related: list[str] = []
        if resource.kind == ResourceKind.INSTANCE:
            related = list(spec.network_ids)
        elif resource.kind == ResourceKind.VOLUME and spec.attached_to:
            related = [spec.attached_to]
        links = {}
        with self._lock:
            for resource_id in related:
                other = self._resources.get(resource_id)
                if other is not None and other.provider_ref is not None:
                    links[resource_id] = other.provider_ref
        return links

    @staticmethod
    def _needs_update(resource: Resource) -> bool:
        if resource.kind == ResourceKind.INSTANCE:
            return bool(resource.desired.network_ids)
        if resource.kind == ResourceKind.VOLUME:
            return resource.desired.attached_to is not None
        return False

    def _bring_up(self, resource: Resource, lease: Lease) -> None:
        """Create (if unbound) and configure one incarnation."""
        if resource.provider_ref is None:
            ref = self._call(resource, 'create', lambda a, ctx: a.create(ctx, resource.id, resource), lease)
            with self._lock:
                resource.bind(ref)
                self._save(resource)
            logger.info(f"{resource.kind.value} {resource.name} bound to {ref} (generation {resource.generation})")
        ref = resource.provider_ref
        if resource.kind == ResourceKind.NETWORK:
            self._call(resource, 'apply_network_config',
                       lambda a, ctx: a.apply_network_config(ctx, resource.allocation), lease)
            if resource.desired.network_type == 'vpn':
                self._checkpoint(resource.id)
                self._keys.enroll(resource.id, resource.provider)
        if self._needs_update(resource):
            links = self._links(resource)
            self._call(resource, 'update', lambda a, ctx: a.update(ctx, ref, resource, links), lease)
        with self._lock:
            resource.reconciled_at = self._clock()

    # -- create ---------------------------------------------------------------

    @staticmethod
    def _coerce_spec(kind: Union[str, ResourceKind], spec: Union[Spec, dict]) -> Spec:
        try:
            kind = ResourceKind(kind)
        except ValueError:
            raise ValidationError('kind', f"unknown resource kind {kind!r}")
        if isinstance(spec, dict):
            return spec_from_dict(kind, spec)
        if getattr(spec, 'kind', None) != kind:
            raise ValidationError('spec', f"{type(spec).__name__} is not a {kind.value} spec")
        return spec

    def create(
        self,
        kind: Union[str, ResourceKind],
        name: str,
        provider: str,
        region: str,
        spec: Union[Spec, dict],
        tags: Optional[dict] = None,
        resource_id: Optional[str] = None,
    ) -> Resource:
        """Declare a resource and drive it to Live.

        A repeated create with the same resource_id and spec returns the
        existing record without a second provider create.

        Returns:
            Snapshot of the resource once Live

        Raises:
            ValidationError: Malformed input, or resource_id reused with another spec
            AllocationError: Network identifiers unavailable (nothing is stored)
            RetriesExhausted / ProviderError: The resource is left Failed
            OperationCancelled: The resource was discarded before any provider call
        """
        desired = self._coerce_spec(kind, spec)
        self._adapter(provider)
        resource = Resource.new(name, provider, region, desired, tags=tags, resource_id=resource_id)
        resource.created_at = self._clock()

        with self._leases.hold(resource.id, 'engine:create') as lease:
            with self._lock:
                existing = self._resources.get(resource.id)
            if existing is not None:
                same = (existing.desired == desired and existing.provider == provider
                        and existing.region == region)
                if not same:
                    raise ValidationError('id', f"{resource.id} already exists with a different spec")
                logger.info(f"create {resource.id}: already declared ({existing.status.value})")
                with self._lock:
                    return existing.snapshot()

            if resource.kind == ResourceKind.NETWORK:
                resource.allocation = self._allocator.allocate(
                    AllocationRequest.for_network(provider, region, desired))

            with self._lock:
                self._resources[resource.id] = resource
                self._save(resource)
            logger.info(f"Declared {resource.kind.value} {resource.name} ({resource.id}) on {provider}/{region}")
            self._provision(resource, lease)
            with self._lock:
                return resource.snapshot()

    def _provision(self, resource: Resource, lease: Lease) -> None:
        self._begin(resource.id, 'create')
        try:
            self._transition(resource, ResourceStatus.PROVISIONING, operation='create')
            self._bring_up(resource, lease)
            self._transition(resource, ResourceStatus.LIVE)
        except OperationCancelled:
            logger.info(f"create {resource.id} cancelled")
            if resource.provider_ref is None:
                self._discard(resource)
            else:
                self._teardown(resource, lease, ResourceStatus.PROVISIONING)
            raise
        except (ProviderError, RetriesExhausted) as e:
            self._fail(resource, 'create', e)
            raise
        except Exception as e:
            logger.exception(f"create {resource.id}: unexpected error")
            self._fail(resource, 'create', e)
            raise
        finally:
            self._end(resource.id)

    # -- delete ---------------------------------------------------------------

    def _release_owned(self, resource: Resource) -> None:
        if resource.kind == ResourceKind.NETWORK and resource.desired.network_type == 'vpn':
            self._keys.retire_owner(resource.id)
        if resource.allocation is not None:
            self._allocator.release(resource.allocation)

    def _discard(self, resource: Resource) -> None:
        """Drop a resource that never reached the provider."""
        self._release_owned(resource)
        self._transition(resource, ResourceStatus.DELETED, operation='delete')
        logger.info(f"Discarded {resource.kind.value} {resource.name} ({resource.id}) locally")

    def _teardown(self, resource: Resource, lease: Lease, prior: ResourceStatus) -> None:
        """Delete the provider incarnation, then everything the resource holds."""
        ref = resource.provider_ref
        prior_error, prior_operation = resource.error, resource.operation
        self._begin(resource.id, 'delete')
        try:
            self._transition(resource, ResourceStatus.DELETING, operation='delete')
            try:
                self._call(resource, 'delete', lambda a, ctx: a.delete(ctx, ref), lease)
            except NotFoundError:
                logger.info(f"delete {resource.id}: {ref} already gone upstream")
        except OperationCancelled:
            logger.info(f"delete {resource.id} cancelled, back to {prior.value}")
            self._transition(resource, prior, error=prior_error, operation=prior_operation)
            raise
        except (ProviderError, RetriesExhausted) as e:
            self._fail(resource, 'delete', e)
            raise
        except Exception as e:
            logger.exception(f"delete {resource.id}: unexpected error")
            self._fail(resource, 'delete', e)
            raise
        finally:
            self._end(resource.id)
        self._release_owned(resource)
        self._transition(resource, ResourceStatus.DELETED, operation='delete')

    def delete(self, resource_id: str) -> Resource:
        """Delete a resource, waiting for any in-flight operation on it first.

        Returns:
            Final snapshot (status deleted)
        """
        with self._leases.hold(resource_id, 'engine:delete') as lease:
            resource = self._get(resource_id)
            if resource.provider_ref is None:
                self._discard(resource)
            else:
                self._teardown(resource, lease, resource.status)
            return resource.snapshot()

    # -- attach / detach -----------------------------------------------------

    def _set_attachment(self, volume_id: str, instance_id: Optional[str]) -> Resource:
        with self._leases.hold(volume_id, 'engine:attach') as lease:
            volume = self._get(volume_id)
            if volume.kind != ResourceKind.VOLUME:
                raise ValidationError('volume', f"{volume_id} is a {volume.kind.value}")
            if instance_id is not None:
                instance = self._get(instance_id)
                if instance.kind != ResourceKind.INSTANCE:
                    raise ValidationError('instance', f"{instance_id} is a {instance.kind.value}")
                if instance.provider != volume.provider:
                    raise ValidationError('instance', f"{instance_id} is on another provider")

            with self._lock:
                volume.desired = dataclasses.replace(volume.desired, attached_to=instance_id)
                self._save(volume)
            if volume.status != ResourceStatus.LIVE or volume.provider_ref is None:
                logger.info(f"volume {volume_id} is {volume.status.value}; attachment applied on next re-drive")
                return volume.snapshot()

            ref = volume.provider_ref
            links = self._links(volume)
            self._begin(volume.id, 'attach')
            try:
                self._call(volume, 'update', lambda a, ctx: a.update(ctx, ref, volume, links), lease)
            except (ProviderError, RetriesExhausted) as e:
                self._transition(volume, ResourceStatus.DEGRADED, error=str(e))
                raise
            finally:
                self._end(volume.id)
            with self._lock:
                volume.reconciled_at = self._clock()
                self._save(volume)
            logger.info(f"volume {volume_id} attachment is now {instance_id or 'none'}")
            return volume.snapshot()

    def attach(self, volume_id: str, instance_id: str) -> Resource:
        return self._set_attachment(volume_id, instance_id)

    def detach(self, volume_id: str) -> Resource:
        return self._set_attachment(volume_id, None)

    # -- drift ----------------------------------------------------------------

    def _divergence(self, resource: Resource, observed: ObservedState) -> Optional[str]:
        if not observed.exists:
            return f"{resource.provider_ref} is absent upstream"
        spec = resource.desired
        if resource.kind == ResourceKind.INSTANCE:
            if observed.power is not None and observed.power != spec.power:
                return f"power is {observed.power}, want {spec.power}"
        elif resource.kind == ResourceKind.VOLUME:
            wanted = None
            if spec.attached_to:
                link = self._links(resource).get(spec.attached_to)
                wanted = link.local_id if link else None
            if observed.attached_to != wanted:
                return f"attached to {observed.attached_to or 'nothing'}, want {wanted or 'nothing'}"
        return None

    def _redrive(self, resource: Resource, lease: Lease, observed: ObservedState) -> str:
        try:
            if not observed.exists:
                with self._lock:
                    resource.unbind()
                    self._save(resource)
                self._bring_up(resource, lease)
            else:
                ref = resource.provider_ref
                links = self._links(resource)
                try:
                    self._call(resource, 'update', lambda a, ctx: a.update(ctx, ref, resource, links), lease)
                except NotFoundError:
                    logger.warning(f"{ref} vanished while re-driving {resource.id}; re-creating")
                    with self._lock:
                        resource.unbind()
                        self._save(resource)
                    self._bring_up(resource, lease)
                with self._lock:
                    resource.reconciled_at = self._clock()
        except (ProviderError, RetriesExhausted) as e:
            with self._lock:
                resource.auto_redrive = False
            self._transition(resource, ResourceStatus.DEGRADED, error=str(e))
            logger.error(f"Re-drive of {resource.id} gave up; waiting for a manual retry")
            return DEGRADED
        self._transition(resource, ResourceStatus.LIVE)
        return REPAIRED

    def _check(self, resource: Resource, lease: Lease) -> str:
        if resource.status not in (ResourceStatus.LIVE, ResourceStatus.DEGRADED):
            return SKIPPED
        if resource.provider_ref is None:
            # A re-create that gave up leaves the resource unbound
            if not resource.auto_redrive:
                return DEGRADED
            return self._redrive(resource, lease, ObservedState.absent())
        ref = resource.provider_ref
        try:
            observed = self._call(resource, 'describe', lambda a, ctx: a.describe(ctx, ref), lease)
        except NotFoundError:
            observed = ObservedState.absent()
        except (ProviderError, RetriesExhausted) as e:
            logger.warning(f"Cannot describe {resource.id}: {e}")
            return UNREACHABLE
        with self._lock:
            resource.observed = observed
            resource.reconciled_at = self._clock()
            self._save(resource)

        drift = self._divergence(resource, observed)
        if drift is None:
            if resource.status == ResourceStatus.DEGRADED:
                self._transition(resource, ResourceStatus.LIVE)
                return REPAIRED
            return IN_SYNC
        logger.warning(f"Drift on {resource.kind.value} {resource.name} ({resource.id}): {drift}")
        if resource.status == ResourceStatus.LIVE:
            self._transition(resource, ResourceStatus.DEGRADED, error=drift)
        if not resource.auto_redrive:
            return DEGRADED
        return self._redrive(resource, lease, observed)

    def check_drift(self, resource_id: str) -> str:
        """Compare one resource against its provider and repair drift.

        Raises:
            LeaseBusyError: If another operation holds the resource
        """
        with self._leases.hold(resource_id, 'engine:sweep', blocking=False) as lease:
            return self._check(self._get(resource_id), lease)

    def sweep(self) -> dict[str, str]:
        """One drift pass over every Live/Degraded resource. Busy ids are skipped."""
        with self._lock:
            candidates = [r.id for r in self._resources.values()
                          if r.status in (ResourceStatus.LIVE, ResourceStatus.DEGRADED)]
        results = {}
        for resource_id in candidates:
            lease = self._leases.try_acquire(resource_id, 'engine:sweep')
            if lease is None:
                results[resource_id] = SKIPPED
                continue
            try:
                with self._lock:
                    resource = self._resources.get(resource_id)
                results[resource_id] = self._check(resource, lease) if resource else SKIPPED
            finally:
                self._leases.release(lease)
        if results:
            counts = {outcome: list(results.values()).count(outcome) for outcome in set(results.values())}
            logger.info(f"Sweep: {', '.join(f'{k}={v}' for k, v in sorted(counts.items()))}")
        return results

    # -- user re-drive --------------------------------------------------------

    def retry(self, resource_id: str) -> Resource:
        """Re-drive a Failed or Degraded resource (re-enables automatic repair)."""
        with self._leases.hold(resource_id, 'engine:retry') as lease:
            resource = self._get(resource_id)
            status = resource.status
            if status == ResourceStatus.FAILED and resource.operation == 'delete':
                self._teardown(resource, lease, status)
            elif status in (ResourceStatus.FAILED, ResourceStatus.PENDING, ResourceStatus.PROVISIONING):
                self._provision(resource, lease)
            elif status == ResourceStatus.DELETING:
                self._teardown(resource, lease, ResourceStatus.LIVE)
            else:
                with self._lock:
                    resource.auto_redrive = True
                    self._save(resource)
                self._check(resource, lease)
            return resource.snapshot()

    def cancel(self, resource_id: str) -> bool:
        """Ask the in-flight operation on a resource to stop at its next checkpoint.

        Returns:
            False when nothing is in flight for the resource
        """
        with self._lock:
            if resource_id not in self._inflight:
                return False
            self._cancelled.add(resource_id)
            operation = self._inflight[resource_id]
        logger.info(f"Cancellation requested for {operation} {resource_id}")
        return True

    # -- providers ------------------------------------------------------------

    def connect(self, provider: str, enroll: bool = True) -> Session:
        """Open a session with a provider and, optionally, enroll its channel key."""
        adapter = self._adapter(provider)
        with self._keys.session(provider) as credential:
            session = adapter.connect(CallContext(timeout=self._timeout, credential=credential))
        if enroll:
            handle = self._keys.enroll(provider, provider)
            session.key_id = handle.key_id
        return session

    # -- queries --------------------------------------------------------------

    def list(self, kind: Optional[Union[str, ResourceKind]] = None,
             provider: Optional[str] = None) -> list[Resource]:
        kind = ResourceKind(kind) if kind is not None else None
        with self._lock:
            return [
                r.snapshot()
                for r in sorted(self._resources.values(), key=lambda r: (r.created_at, r.id))
                if (kind is None or r.kind == kind) and (provider is None or r.provider == provider)
            ]

    def show(self, resource_id: str) -> Resource:
        with self._lock:
            return self._get(resource_id).snapshot()

    # -- startup --------------------------------------------------------------

    def load(self) -> int:
        """Reload persisted records, their allocations and the keyrings.

        Returns:
            Number of resources loaded
        """
        if self._store is None:
            return 0
        count = 0
        for resource in load_resources(self._store):
            with self._lock:
                if resource.id in self._resources:
                    continue
            if resource.allocation is not None:
                self._allocator.restore(resource.allocation)
            with self._lock:
                self._resources[resource.id] = resource
            count += 1
        self._keys.load()
        return count

    def resume(self) -> dict:
        """Reload persisted state and finish operations a restart interrupted.

        Returns:
            Summary: loaded (count), resumed and failed (lists of ids)
        """
        summary = {'loaded': self.load(), 'resumed': [], 'failed': []}
        interrupted = [
            r.id for r in self.list()
            if r.status in (ResourceStatus.PENDING, ResourceStatus.PROVISIONING, ResourceStatus.DELETING)
        ]
        for resource_id in interrupted:
            try:
                self.retry(resource_id)
            except (ProviderError, RetriesExhausted, OperationCancelled) as e:
                logger.error(f"Resume of {resource_id} failed: {e}")
                summary['failed'].append(resource_id)
            else:
                summary['resumed'].append(resource_id)
        logger.info(f"Resumed state: {summary['loaded']} resource(s), {len(interrupted)} interrupted")
        return summary
