"""
Record Store - row-style access to Firebase Realtime Database collections

Collections: disasters, resources, reports. Records are stored under
`{collection}/{id}` with the id repeated inside the record.

Unlike the cache, storage failures here are real failures: they raise
StoreError so the request layer can answer with a 5xx.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

COLLECTIONS = ('disasters', 'resources', 'reports')

# Characters Firebase rejects in a path segment
_INVALID_ID_CHARS = set('.$#[]/')


class StoreError(Exception):
    """Persistent store read/write failure"""


class RecordStore:
    """CRUD with filter/sort/paginate over named collections"""

    def __init__(self, db_client):
        """
        Args:
            db_client: Object exposing reference(path) (firebase_admin.db)
        """
        self.db = db_client

    @staticmethod
    def is_valid_id(record_id) -> bool:
        """Ids are non-empty strings Firebase accepts as a single path segment"""
        return isinstance(record_id, str) and bool(record_id) and not (_INVALID_ID_CHARS & set(record_id))

    def _ref(self, collection: str, record_id: Optional[str] = None):
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        path = f'{collection}/{record_id}' if record_id else collection
        return self.db.reference(path)

    def list(self, collection: str, filters: Optional[Dict[str, Any]] = None,
             order_by: str = 'created_at', descending: bool = True,
             offset: int = 0, limit: Optional[int] = None) -> Dict:
        """
        List records with equality filters, sorting and pagination

        Args:
            collection: Collection name
            filters: Field -> value equality filters (None values ignored)
            order_by: Field to sort by
            descending: Sort direction
            offset: Records to skip
            limit: Max records to return

        Returns:
            Dict with 'items' (page) and 'total' (matches before pagination)

        Raises:
            StoreError: If the database read fails
        """
        try:
            raw = self._ref(collection).get() or {}
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Error listing {collection}: {e}")
            raise StoreError(f"Failed to fetch {collection}") from e

        records = [{**record, 'id': key} for key, record in raw.items() if isinstance(record, dict)]

        for field, value in (filters or {}).items():
            if value is None:
                continue
            records = [r for r in records if self._matches(r.get(field), value)]

        records.sort(key=lambda r: str(r.get(order_by) or ''), reverse=descending)

        total = len(records)
        offset = max(0, offset or 0)
        page = records[offset:offset + limit] if limit is not None else records[offset:]
        return {'items': page, 'total': total}

    @staticmethod
    def _matches(field_value, expected) -> bool:
        # List fields (tags) match when they contain the expected value
        if isinstance(field_value, list):
            return expected in field_value
        return field_value == expected

    def get(self, collection: str, record_id: str) -> Optional[Dict]:
        """Fetch one record, or None if it does not exist. Raises StoreError."""
        if not self.is_valid_id(record_id):
            return None
        try:
            record = self._ref(collection, record_id).get()
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Error fetching {collection}/{record_id}: {e}")
            raise StoreError(f"Failed to fetch record from {collection}") from e

        if not isinstance(record, dict):
            return None
        return {**record, 'id': record_id}

    def insert(self, collection: str, record: Dict) -> Dict:
        """Insert a record with a new uuid4 id. Raises StoreError."""
        record_id = record.get('id') or str(uuid.uuid4())
        stored = {**record, 'id': record_id}
        try:
            self._ref(collection, record_id).set(stored)
        except Exception as e:
            logger.error(f"Error inserting into {collection}: {e}")
            raise StoreError(f"Failed to create record in {collection}") from e
        return stored

    def update(self, collection: str, record_id: str, changes: Dict) -> Dict:
        """Apply partial changes and return the updated record. Raises StoreError."""
        changes = {k: v for k, v in changes.items() if k != 'id'}
        if not changes:
            return self.get(collection, record_id)
        try:
            self._ref(collection, record_id).update(changes)
        except Exception as e:
            logger.error(f"Error updating {collection}/{record_id}: {e}")
            raise StoreError(f"Failed to update record in {collection}") from e
        return self.get(collection, record_id)

    def delete(self, collection: str, record_id: str) -> None:
        """Delete one record. Raises StoreError."""
        try:
            self._ref(collection, record_id).delete()
        except Exception as e:
            logger.error(f"Error deleting {collection}/{record_id}: {e}")
            raise StoreError(f"Failed to delete record from {collection}") from e

    def cascade_delete(self, collection: str, record_id: str,
                       dependents: Dict[str, str]) -> Dict[str, int]:
        """
        Delete a record and every record referencing it in one multi-path update

        Dependents are matched client-side (no .indexOn rule required). The
        parent and its dependents are removed by one root-level update.

        Args:
            collection: Parent collection
            record_id: Parent record id
            dependents: Dependent collection -> field holding the parent id

        Returns:
            Dependent collection -> number of records deleted

        Raises:
            StoreError: If a read or the batch delete fails
        """
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")

        paths = {f'{collection}/{record_id}': None}
        counts = {}
        for child_collection, field in dependents.items():
            matches = self.list(child_collection, {field: record_id})['items']
            counts[child_collection] = len(matches)
            for record in matches:
                paths[f"{child_collection}/{record['id']}"] = None

        try:
            self.db.reference('/').update(paths)
        except Exception as e:
            logger.error(f"Error deleting {collection}/{record_id} with dependents: {e}")
            raise StoreError(f"Failed to delete record from {collection}") from e

        logger.info(f"Batch deleted {collection}/{record_id} and {len(paths) - 1} dependent record(s)")
        return counts
