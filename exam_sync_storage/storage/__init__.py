"""
Storage backends.

Provides the remote record stores (Cosmos DB, in-memory) and the local
caches the sync layer falls back to while offline.

Authentication Methods:
    For Cosmos DB, multiple authentication methods are supported:
    - KEY: Account key (not recommended for production)
    - DEFAULT_CREDENTIAL: Azure DefaultAzureCredential (recommended)
    - MANAGED_IDENTITY: Azure Managed Identity
    - SERVICE_PRINCIPAL: Service Principal with client secret

Example:
    >>> from exam_sync_storage.storage import (
    ...     StoreConfig, CosmosAuthMethod, CosmosRemoteStore
    ... )
    >>> config = StoreConfig(
    ...     cosmos_endpoint="https://example.documents.azure.com:443/",
    ...     cosmos_auth_method=CosmosAuthMethod.DEFAULT_CREDENTIAL,
    ... )
    >>> remote = CosmosRemoteStore(config)
"""

from .base import (
    ChangeCallback,
    CosmosAuthMethod,
    LocalCache,
    RemoteStore,
    StoreConfig,
    Subscription,
)
from .local import FileLocalCache, LocalSnapshot, MemoryLocalCache
from .memory import InMemoryRemoteStore

__all__ = [
    # Configuration
    "StoreConfig",
    "CosmosAuthMethod",
    # Contracts
    "RemoteStore",
    "LocalCache",
    "Subscription",
    "ChangeCallback",
    # Implementations
    "InMemoryRemoteStore",
    "FileLocalCache",
    "MemoryLocalCache",
    "LocalSnapshot",
]

# Cosmos DB support needs azure-cosmos; import it lazily so the local
# pieces stay usable without the Azure SDK installed.
try:
    from .cosmos import CosmosRemoteStore  # noqa: F401

    __all__.append("CosmosRemoteStore")
except ImportError:
    pass
