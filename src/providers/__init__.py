"""Provider plugins reached by the reconciliation engine."""

from providers.base import (
    DataSourceType,
    Provider,
    ProviderContext,
    ProviderError,
    ProviderRegistry,
    ResourceType,
    default_registry,
)
from providers.archive import ArchiveFile, ArchiveProvider
from providers.google import (
    CloudFunction,
    CloudFunctionIamMember,
    GoogleProvider,
    StorageBucket,
    StorageBucketObject,
)
from providers.local_cloud import LocalCloud

__all__ = [
    'DataSourceType',
    'Provider',
    'ProviderContext',
    'ProviderError',
    'ProviderRegistry',
    'ResourceType',
    'default_registry',
    'ArchiveFile',
    'ArchiveProvider',
    'CloudFunction',
    'CloudFunctionIamMember',
    'GoogleProvider',
    'StorageBucket',
    'StorageBucketObject',
    'LocalCloud',
]
