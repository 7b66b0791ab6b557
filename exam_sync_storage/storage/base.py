"""
Abstract storage interfaces and configuration.

Defines the contracts the SyncStore consumes:
- RemoteStore: the hosted durable record store
- LocalCache: the string-keyed durable cache used while offline
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from ..exceptions import ValidationError


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Use account key (development only)
    DEFAULT_CREDENTIAL: Use Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Use Azure Managed Identity explicitly
    SERVICE_PRINCIPAL: Use Service Principal with client_id/client_secret
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


@dataclass
class StoreConfig:
    """Configuration for the sync storage layer.

    Configuration can be provided directly, via environment variables,
    or from a YAML settings file.

    Environment Variables:
        EXAM_SYNC_DEVICE_ID: Identifier of this device (used in logs)
        EXAM_SYNC_LOCAL_PATH: Directory for the local cache
        EXAM_SYNC_COSMOS_ENDPOINT: Cosmos DB endpoint URL
        EXAM_SYNC_COSMOS_KEY: Cosmos DB key (if using key auth)
        EXAM_SYNC_COSMOS_DATABASE: Database name (default: exam-db)
        EXAM_SYNC_COSMOS_CONTAINER: Container name (default: records)
        EXAM_SYNC_COSMOS_AUTH_METHOD: Auth method (default: default_credential)
        EXAM_SYNC_MAX_REPLAY_ATTEMPTS: Replay budget per queued operation
        EXAM_SYNC_POLL_INTERVAL: Seconds between subscription polls
        AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET: service principal

    Attributes:
        device_id: Identifier of this device
        local_path: Directory for the file-backed local cache
        cosmos_endpoint: Cosmos DB endpoint URL
        cosmos_auth_method: Authentication method (default: DEFAULT_CREDENTIAL)
        cosmos_key: Cosmos DB key (only for KEY auth method)
        cosmos_database: Cosmos DB database name
        cosmos_container: Cosmos DB container name
        max_replay_attempts: Replays allowed before an operation fails permanently
        subscription_poll_interval: Seconds between remote polls for subscriptions
        connectivity_host / connectivity_port: Endpoint probed for reachability
        connectivity_interval: Seconds between reachability probes
        connectivity_timeout: Seconds before a probe counts as failed
    """

    device_id: str = "default"
    local_path: str | None = None

    # Cosmos DB connection settings
    cosmos_endpoint: str | None = None
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    cosmos_key: str | None = None
    cosmos_database: str = "exam-db"
    cosmos_container: str = "records"

    # Azure AD authentication settings (for SERVICE_PRINCIPAL)
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    # Sync behavior
    max_replay_attempts: int = 5
    subscription_poll_interval: float = 2.0

    # Network detection
    connectivity_host: str = "login.microsoftonline.com"
    connectivity_port: int = 443
    connectivity_interval: float = 30.0
    connectivity_timeout: float = 5.0

    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_replay_attempts < 1:
            raise ValidationError(
                "max_replay_attempts", "must be at least 1", str(self.max_replay_attempts)
            )
        if self.subscription_poll_interval <= 0:
            raise ValidationError(
                "subscription_poll_interval",
                "must be positive",
                str(self.subscription_poll_interval),
            )

    @property
    def cache_path(self) -> Path:
        """Directory of the local cache (default: ~/.exam-sync/cache)."""
        if self.local_path:
            return Path(self.local_path)
        return Path.home() / ".exam-sync" / "cache"

    @classmethod
    def from_environment(cls) -> StoreConfig:
        """Create configuration from environment variables."""
        auth_method_str = os.environ.get("EXAM_SYNC_COSMOS_AUTH_METHOD", "default_credential")
        try:
            auth_method = CosmosAuthMethod(auth_method_str.lower())
        except ValueError:
            auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        return cls(
            device_id=os.environ.get("EXAM_SYNC_DEVICE_ID", "default"),
            local_path=os.environ.get("EXAM_SYNC_LOCAL_PATH"),
            cosmos_endpoint=os.environ.get("EXAM_SYNC_COSMOS_ENDPOINT"),
            cosmos_auth_method=auth_method,
            cosmos_key=os.environ.get("EXAM_SYNC_COSMOS_KEY"),
            cosmos_database=os.environ.get("EXAM_SYNC_COSMOS_DATABASE", "exam-db"),
            cosmos_container=os.environ.get("EXAM_SYNC_COSMOS_CONTAINER", "records"),
            azure_tenant_id=os.environ.get("AZURE_TENANT_ID"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            azure_client_secret=os.environ.get("AZURE_CLIENT_SECRET"),
            max_replay_attempts=int(os.environ.get("EXAM_SYNC_MAX_REPLAY_ATTEMPTS", "5")),
            subscription_poll_interval=float(os.environ.get("EXAM_SYNC_POLL_INTERVAL", "2.0")),
        )

    @classmethod
    def from_file(cls, path: Path | str) -> StoreConfig:
        """Create configuration from the ``storage`` section of a YAML file.

        ```yaml
        storage:
          device_id: "lab-pc-07"
          local_path: "/var/lib/exam-sync"
          cosmos_endpoint: "https://exams.documents.azure.com:443/"
          cosmos_auth_method: "managed_identity"
          max_replay_attempts: 8
        ```
        """
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        section = dict(data.get("storage") or {})
        if "cosmos_auth_method" in section:
            section["cosmos_auth_method"] = CosmosAuthMethod(
                str(section["cosmos_auth_method"]).lower()
            )

        known = set(cls.__dataclass_fields__)
        unknown = {k: section.pop(k) for k in list(section) if k not in known}
        config = cls(**section)
        config.options.update(unknown)
        return config


# Callback invoked with the current value at a path (None when absent)
ChangeCallback = Callable[[Any], None]


class Subscription(ABC):
    """Handle for a live remote feed."""

    @abstractmethod
    async def cancel(self) -> None:
        """Detach the feed. Must be idempotent."""
        ...


class RemoteStore(ABC):
    """Abstract interface for the hosted durable record store.

    Every failure is reported as RemoteUnavailableError so callers can fall
    back to the local cache without catching arbitrary SDK exceptions.
    """

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at a path (and its whole subtree).

        Raises:
            RemoteUnavailableError: If the store cannot be reached
        """
        ...

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Read the value at a path.

        Returns:
            The stored value, or None if nothing is stored there
        """
        ...

    @abstractmethod
    async def generate_id(self, parent_path: str) -> str:
        """Generate a key for a new child of ``parent_path``.

        Keys must be unique across all clients of the store.
        """
        ...

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove the value at a path (and its subtree)."""
        ...

    @abstractmethod
    async def subscribe(self, path: str, callback: ChangeCallback) -> Subscription:
        """Register a live feed for a path.

        The callback receives the current value immediately and again after
        every change to it.
        """
        ...

    async def close(self) -> None:
        """Close the connection and cleanup resources."""
        return None


class LocalCache(ABC):
    """Abstract string-keyed durable cache.

    Implementations may run out of space; that surfaces as LocalCacheError.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        ...

    async def size_bytes(self) -> int:
        """Approximate space used by all keys and values."""
        total = 0
        for key in await self.keys():
            value = await self.get(key)
            total += len(key) + len(value or "")
        return total

    async def close(self) -> None:
        return None
