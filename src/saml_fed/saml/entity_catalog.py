"""In-memory catalog of federation entities.

Readers never take a lock: every write builds a new mapping and swaps the
reference, so a Lookup always sees a complete snapshot. Records are
immutable and replaced wholesale; there is no field merging.
"""

import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from ..models.entity import EntityRecord

logger = logging.getLogger("saml_fed.metadata")


class EntityCatalog:
    """Thread-safe map from entity identifier to EntityRecord.

    Example:
        >>> catalog = EntityCatalog()
        >>> catalog.upsert("https://idp.example.com", record)
        >>> catalog.lookup("https://idp.example.com") is record
        True
        >>> catalog.lookup("https://unknown.example.com") is None
        True
    """

    def __init__(self) -> None:
        self._records: Mapping[str, EntityRecord] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def upsert(self, entity_id: str, record: EntityRecord) -> None:
        """Insert or replace the record for an entity (last write wins).

        Args:
            entity_id: Entity identifier URI
            record: Complete record replacing any previous one

        Raises:
            ValueError: If entity_id is blank or does not match the record
        """
        if not entity_id or not entity_id.strip():
            raise ValueError("entity_id must not be blank")
        if record.entity_id != entity_id:
            raise ValueError(
                f"Record entity_id {record.entity_id!r} does not match key {entity_id!r}"
            )

        with self._write_lock:
            updated: Dict[str, EntityRecord] = dict(self._records)
            replaced = entity_id in updated
            updated[entity_id] = record
            self._records = MappingProxyType(updated)

        logger.debug(f"{'Replaced' if replaced else 'Added'} entity: {entity_id}")

    def upsert_all(self, records: Iterable[EntityRecord]) -> None:
        """Upsert several records in a single swap."""
        records = list(records)
        if not records:
            return
        with self._write_lock:
            updated: Dict[str, EntityRecord] = dict(self._records)
            for record in records:
                updated[record.entity_id] = record
            self._records = MappingProxyType(updated)
        logger.debug(f"Upserted {len(records)} entities")

    def lookup(self, entity_id: str) -> Optional[EntityRecord]:
        """Return the record for an entity, or None if it is unknown."""
        return self._records.get(entity_id)

    def remove(self, entity_id: str) -> bool:
        """Remove an entity. Returns True if it was present."""
        with self._write_lock:
            if entity_id not in self._records:
                return False
            updated = dict(self._records)
            del updated[entity_id]
            self._records = MappingProxyType(updated)
        return True

    def entity_ids(self) -> List[str]:
        return sorted(self._records)

    def records(self) -> List[EntityRecord]:
        snapshot = self._records
        return [snapshot[key] for key in sorted(snapshot)]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._records
