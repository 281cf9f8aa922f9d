"""Entity store interface shared by the local cache and the remote store."""

from collections.abc import Sequence
from typing import Protocol

from src.indexer.entities import Entity, IndexKey, ScanCursor


class EntityStore(Protocol):
    """Key-value persistence for entity snapshots plus one scan cursor per index key.

    Reads raise StoreReadError, writes raise StoreWriteError.
    """

    name: str

    async def get_cursor(self, index_key: IndexKey) -> ScanCursor | None: ...

    async def set_cursor(self, index_key: IndexKey, block_number: int) -> None: ...

    async def get_entities(self, index_key: IndexKey) -> dict[str, Entity]: ...

    async def upsert_entities(self, index_key: IndexKey, entities: Sequence[Entity]) -> None: ...


class TokenIdStore(EntityStore, Protocol):
    """Store that also keeps the verified position token ids of an owner."""

    async def get_token_ids(self, index_key: IndexKey) -> set[int]: ...

    async def set_token_ids(self, index_key: IndexKey, token_ids: set[int]) -> None: ...
