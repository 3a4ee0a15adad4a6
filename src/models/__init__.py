"""Resource and key models shared by every layer."""

from models.keys import KeyHandle, KeyMaterial, RotationState, SecretKey
from models.resource import (
    InstanceSpec,
    NetworkSpec,
    ObservedState,
    ProviderRef,
    Resource,
    ResourceKind,
    ResourceStatus,
    TenantAllocation,
    VolumeSpec,
    spec_from_dict,
)

__all__ = [
    'InstanceSpec',
    'KeyHandle',
    'KeyMaterial',
    'NetworkSpec',
    'ObservedState',
    'ProviderRef',
    'Resource',
    'ResourceKind',
    'ResourceStatus',
    'RotationState',
    'SecretKey',
    'TenantAllocation',
    'VolumeSpec',
    'spec_from_dict',
]
