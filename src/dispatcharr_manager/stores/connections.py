from typing import List, Optional

from dispatcharr_manager.domain.connection import SavedConnection, SavedConnectionInput, SavedConnectionUpdate
from dispatcharr_manager.domain.job import utcnow
from dispatcharr_manager.errors import NotFoundError
from dispatcharr_manager.storages.protocol import Storage


class ConnectionStore:
    DOCUMENT = "connections"

    def __init__(self, storage: Storage):
        self.storage = storage
        self._connections: List[SavedConnection] = []

    async def start(self) -> None:
        connections = await self.storage.load(self.DOCUMENT) or []
        self._connections = [SavedConnection.model_validate(item) for item in connections]

    async def get_all(self) -> List[SavedConnection]:
        return [c.model_copy() for c in self._connections]

    async def get_by_id(self, connection_id: Optional[str]) -> Optional[SavedConnection]:
        connection = next((c for c in self._connections if c.id == connection_id), None)
        return connection.model_copy() if connection else None

    async def create(self, data: SavedConnectionInput) -> SavedConnection:
        connection = SavedConnection(**data.model_dump())
        self._connections.append(connection)
        await self._save()
        return connection.model_copy()

    async def update(self, connection_id: str, changes: SavedConnectionUpdate) -> SavedConnection:
        index = next((i for i, c in enumerate(self._connections) if c.id == connection_id), None)
        if index is None:
            raise NotFoundError("Saved connection not found")
        updated = self._connections[index].model_copy(
            update={**changes.model_dump(exclude_unset=True), "updated_at": utcnow()}
        )
        self._connections[index] = updated
        await self._save()
        return updated.model_copy()

    async def delete(self, connection_id: str) -> None:
        self._connections = [c for c in self._connections if c.id != connection_id]
        await self._save()

    async def _save(self) -> None:
        await self.storage.save(self.DOCUMENT, [c.model_dump(mode="json") for c in self._connections])
