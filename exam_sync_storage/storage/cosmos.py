"""
Cosmos DB remote store.

Stores records in Azure Cosmos DB, one document per record, partitioned
by collection so a whole collection is read without cross-partition scans.

Supports multiple authentication methods:
- Key-based authentication (if org policy allows)
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
- Service Principal
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from .. import tree
from ..exceptions import (
    AuthenticationError,
    InvalidPathError,
    RemoteUnavailableError,
    ValidationError,
)
from ..paths import generate_push_id, split_path
from .base import ChangeCallback, CosmosAuthMethod, RemoteStore, StoreConfig, Subscription

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    CosmosHttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
    OSError,
    asyncio.TimeoutError,
)


def _get_credential(config: StoreConfig) -> Any:
    """Get the appropriate credential based on auth method.

    Args:
        config: Store configuration with auth settings

    Returns:
        Credential object for Cosmos DB authentication

    Raises:
        AuthenticationError: If credential cannot be created
    """
    endpoint = config.cosmos_endpoint or "cosmos"
    auth_method = config.cosmos_auth_method

    if auth_method == CosmosAuthMethod.KEY:
        if not config.cosmos_key:
            raise AuthenticationError(endpoint, "cosmos_key required for KEY authentication")
        return config.cosmos_key

    if auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        from azure.identity.aio import DefaultAzureCredential

        return DefaultAzureCredential()

    if auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        from azure.identity.aio import ManagedIdentityCredential

        # If client_id is provided, use user-assigned managed identity
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()

    if auth_method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        if not all([config.azure_tenant_id, config.azure_client_id, config.azure_client_secret]):
            raise AuthenticationError(
                endpoint,
                "azure_tenant_id, azure_client_id, and azure_client_secret "
                "required for SERVICE_PRINCIPAL authentication",
            )
        from azure.identity.aio import ClientSecretCredential

        return ClientSecretCredential(
            tenant_id=config.azure_tenant_id,
            client_id=config.azure_client_id,
            client_secret=config.azure_client_secret,
        )

    raise AuthenticationError(endpoint, f"Unsupported auth method: {auth_method}")


# Marks a collection that exists even with no records in it. Record keys
# cannot contain '.', so the id never clashes with a record's.
_COLLECTION_MARKER = ".collection"


def _document_id(key: str) -> str:
    """Cosmos ids may not contain '/', '\\', '?' or '#'."""
    return quote(key, safe="")


class PollingSubscription(Subscription):
    """Live feed implemented by polling the store.

    The latest-version change feed does not report deletes, so the value
    is re-read every ``interval`` seconds and delivered when it changes.
    """

    def __init__(
        self,
        store: CosmosRemoteStore,
        path: str,
        callback: ChangeCallback,
        interval: float,
    ) -> None:
        self.store = store
        self.path = path
        self.callback = callback
        self.interval = interval
        self._last: str | None = None
        self._task: asyncio.Task[None] | None = None

    def _deliver(self, value: Any) -> None:
        canonical = json.dumps(value, sort_keys=True, default=str)
        if canonical == self._last:
            return
        self._last = canonical
        try:
            self.callback(value)
        except Exception as e:
            logger.error(f"Subscriber callback for {self.path} raised: {e}")

    async def start(self) -> None:
        # The initial read must succeed so the caller knows the feed is live
        self._deliver(await self.store.get(self.path))
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._deliver(await self.store.get(self.path))
            except RemoteUnavailableError as e:
                logger.warning(f"Subscription poll failed for {self.path}: {e}")

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.store._detach(self)


class CosmosRemoteStore(RemoteStore):
    """Cosmos DB remote store.

    Path mapping:
    - segment 1 is the collection (partition key value)
    - segment 2 is the record key (document id)
    - further segments address fields inside the record value

    Container schema:
    {
        "id": "{quoted record key}",
        "collection": "{collection}",
        "key": "{record key}",
        "value": {...}
    }

    A collection that has had records written as a whole, or has lost its
    last record, keeps a ``.collection`` marker document so it reads as
    ``{}`` rather than absent. Replacing a collection upserts the new
    records before deleting the stale ones.
    """

    def __init__(self, config: StoreConfig) -> None:
        if not config.cosmos_endpoint:
            raise ValidationError("cosmos_endpoint", "Cosmos endpoint is required")

        self.config = config
        self.poll_interval = config.subscription_poll_interval

        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._container: ContainerProxy | None = None
        self._subscriptions: list[PollingSubscription] = []

    async def _ensure_initialized(self) -> ContainerProxy:
        """Ensure client and container are initialized."""
        if self._container is not None:
            return self._container

        if self._credential is None:
            self._credential = _get_credential(self.config)

        try:
            client = CosmosClient(
                self.config.cosmos_endpoint,  # type: ignore[arg-type]
                credential=self._credential,
            )
            self._client = client
            self._database = await client.create_database_if_not_exists(
                id=self.config.cosmos_database
            )
            self._container = await self._database.create_container_if_not_exists(
                id=self.config.cosmos_container,
                partition_key=PartitionKey(path="/collection"),
            )
        except _TRANSIENT_ERRORS as e:
            if self._client is not None:
                await self._client.close()
                self._client = None
            raise self._translate("connect", None, e) from e

        logger.info(
            f"Connected to Cosmos DB: {self.config.cosmos_endpoint} "
            f"(database={self.config.cosmos_database}, "
            f"container={self.config.cosmos_container}, "
            f"auth={self.config.cosmos_auth_method.value})"
        )
        return self._container

    def _translate(
        self, operation: str, path: str | None, error: Exception
    ) -> RemoteUnavailableError:
        status = getattr(error, "status_code", None)
        if status in (401, 403):
            return AuthenticationError(self.config.cosmos_endpoint or "cosmos", str(error))
        return RemoteUnavailableError(operation, path, error)

    async def _read_document(
        self, container: ContainerProxy, collection: str, key: str
    ) -> dict[str, Any] | None:
        try:
            return await container.read_item(item=_document_id(key), partition_key=collection)
        except CosmosResourceNotFoundError:
            return None

    async def _write_document(
        self, container: ContainerProxy, collection: str, key: str, value: Any
    ) -> None:
        await container.upsert_item(
            {
                "id": _document_id(key),
                "collection": collection,
                "key": key,
                "value": value,
            }
        )

    async def _delete_item(self, container: ContainerProxy, collection: str, item: str) -> bool:
        try:
            await container.delete_item(item=item, partition_key=collection)
        except CosmosResourceNotFoundError:
            return False
        return True

    async def _mark_collection(self, container: ContainerProxy, collection: str) -> None:
        await container.upsert_item({"id": _COLLECTION_MARKER, "collection": collection})

    async def _query_collection(
        self, container: ContainerProxy, collection: str
    ) -> list[dict[str, Any]]:
        return [
            doc
            async for doc in container.query_items(
                query="SELECT * FROM c WHERE c.collection = @collection",
                parameters=[{"name": "@collection", "value": collection}],
                partition_key=collection,
            )
        ]

    async def _read_collection(
        self, container: ContainerProxy, collection: str
    ) -> dict[str, Any] | None:
        """Records of a collection, or None if the collection does not exist."""
        docs = await self._query_collection(container, collection)
        if not docs:
            return None
        return {doc["key"]: doc["value"] for doc in docs if doc["id"] != _COLLECTION_MARKER}

    async def _replace_collection(
        self, container: ContainerProxy, collection: str, value: dict[str, Any] | None
    ) -> None:
        # Upsert before deleting so a failure part way never loses records
        # that are in both the old and the new value
        stale = {doc["id"] for doc in await self._query_collection(container, collection)}
        if value is not None:
            await self._mark_collection(container, collection)
            stale.discard(_COLLECTION_MARKER)
            for key, child in value.items():
                await self._write_document(container, collection, key, child)
                stale.discard(_document_id(key))
        for item in sorted(stale):
            await self._delete_item(container, collection, item)

    async def set(self, path: str, value: Any) -> None:
        segments = split_path(path)
        collection = segments[0]

        if len(segments) == 1 and value is not None and not isinstance(value, dict):
            raise InvalidPathError(path, "collection values must be mappings")

        try:
            container = await self._ensure_initialized()

            if len(segments) == 1:
                await self._replace_collection(container, collection, value)
                return

            key = segments[1]
            if len(segments) == 2:
                if value is None:
                    # The collection outlives its last record, as an empty one
                    if await self._delete_item(container, collection, _document_id(key)):
                        await self._mark_collection(container, collection)
                else:
                    await self._write_document(container, collection, key, value)
                return

            doc = await self._read_document(container, collection, key)
            if doc is None and value is None:
                return
            holder = {"value": doc["value"] if doc and isinstance(doc["value"], dict) else {}}
            field_path = ["value", *segments[2:]]
            if value is None:
                tree.remove_in(holder, field_path)
            else:
                tree.set_in(holder, field_path, value)
            await self._write_document(container, collection, key, holder["value"])

        except RemoteUnavailableError:
            raise
        except _TRANSIENT_ERRORS as e:
            raise self._translate("set", path, e) from e

    async def get(self, path: str) -> Any:
        segments = split_path(path)
        collection = segments[0]

        try:
            container = await self._ensure_initialized()

            if len(segments) == 1:
                return await self._read_collection(container, collection)

            doc = await self._read_document(container, collection, segments[1])
            if doc is None:
                return None
            return tree.get_in({"value": doc["value"]}, ["value", *segments[2:]])

        except RemoteUnavailableError:
            raise
        except _TRANSIENT_ERRORS as e:
            raise self._translate("get", path, e) from e

    async def generate_id(self, parent_path: str) -> str:
        split_path(parent_path)
        return generate_push_id()

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    async def subscribe(self, path: str, callback: ChangeCallback) -> PollingSubscription:
        subscription = PollingSubscription(
            self, "/".join(split_path(path)), callback, self.poll_interval
        )
        await subscription.start()
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: PollingSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self) -> None:
        """Cancel subscriptions and close the Cosmos DB client."""
        for subscription in list(self._subscriptions):
            await subscription.cancel()
        if self._client:
            await self._client.close()
            self._client = None
            self._database = None
            self._container = None
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
            self._credential = None
