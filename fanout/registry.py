"""
Endpoint registry.

Owns the existence and ownership of capture endpoints. Ingestion and the
fan-out bus only ever ask it two questions - does this endpoint exist, and
who owns it - so those are the hot paths; the rest is plain CRUD.
"""

import logging
from typing import Optional

from capture.data_store import DataStore
from capture.errors import EndpointNotFound, PermissionDenied
from capture.models import Endpoint

logger = logging.getLogger("registry")


class EndpointRegistry:
    def __init__(self, data_store: DataStore):
        self.data_store = data_store

    async def create(self, name: Optional[str] = None, owner_key: Optional[str] = None) -> Endpoint:
        endpoint = await self.data_store.add_endpoint(Endpoint(name=name, owner_key=owner_key))
        logger.info(f"Created endpoint {endpoint.id} (owner={owner_key or 'anonymous'})")
        return endpoint

    async def exists(self, endpoint_id: str) -> bool:
        return await self.data_store.get_endpoint(endpoint_id) is not None

    async def get(self, endpoint_id: str) -> Endpoint:
        endpoint = await self.data_store.get_endpoint(endpoint_id)
        if endpoint is None:
            raise EndpointNotFound(endpoint_id)
        return endpoint

    async def owner_of(self, endpoint_id: str) -> Optional[str]:
        endpoint = await self.data_store.get_endpoint(endpoint_id)
        return endpoint.owner_key if endpoint else None

    async def list_for_owner(self, owner_key: str) -> list[Endpoint]:
        return await self.data_store.list_endpoints(owner_key=owner_key)

    async def delete(self, endpoint_id: str, owner_keys: Optional[list[str]] = None) -> None:
        """
        Delete an endpoint, cascading to its captured requests.

        When `owner_keys` is given the endpoint must be owned by one of them.

        Raises:
            EndpointNotFound: If the endpoint doesn't exist.
            PermissionDenied: If the caller doesn't own it.
        """
        endpoint = await self.get(endpoint_id)
        if owner_keys is not None and endpoint.owner_key not in owner_keys:
            raise PermissionDenied(f"Not the owner of endpoint {endpoint_id}")
        if not await self.data_store.delete_endpoint(endpoint_id):
            raise EndpointNotFound(endpoint_id)
