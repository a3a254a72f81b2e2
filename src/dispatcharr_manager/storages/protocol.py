from typing import Any, Optional, Protocol


class Storage(Protocol):
    async def start(self) -> None:
        """Prepare the backing store (create tables, directories)."""
        ...

    async def close(self) -> None:
        """Release connections held by the store."""
        ...

    async def load(self, name: str) -> Optional[Any]:
        """Return the JSON document saved under `name`, or None if it was never saved."""
        ...

    async def save(self, name: str, document: Any) -> None:
        """Replace the document saved under `name`."""
        ...
