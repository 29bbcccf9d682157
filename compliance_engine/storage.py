"""
Thread-safe storage for saved label filters.

Persists named filters to a JSON file with schema:
{
    "id": string,
    "name": string,
    "filter": Filter document,
    "controls": [string, ...],
    "created_at": ISO8601 datetime,
    "updated_at": ISO8601 datetime
}
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Filter
from .serializer import decode_filter, encode_filter

logger = logging.getLogger(__name__)


class FilterStorage:
    """Thread-safe storage for saved label filters."""

    def __init__(self, storage_path: str | Path = "compliance_engine/filters.json"):
        """Initialize the filter storage.

        Args:
            storage_path: Path to the filters JSON file
        """
        self.storage_path = Path(storage_path)
        self._lock = threading.RLock()
        self._ensure_file_exists()

    def _ensure_file_exists(self) -> None:
        with self._lock:
            if not self.storage_path.exists():
                self.storage_path.parent.mkdir(parents=True, exist_ok=True)
                self._write_file([])

    def _read_file(self) -> List[Dict[str, Any]]:
        """Read the filters file.

        An empty file reads as no filters. A corrupt file is an error: silently
        treating it as empty would overwrite it on the next write.
        """
        with open(self.storage_path, 'r') as f:
            content = f.read().strip()
        if not content:
            return []
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Filters file {self.storage_path} is corrupt: {e}")
            raise

    def _write_file(self, filters: List[Dict[str, Any]]) -> None:
        with open(self.storage_path, 'w') as f:
            json.dump(filters, f, indent=2)

    def get_all(self) -> List[Dict[str, Any]]:
        """Get all saved filters."""
        with self._lock:
            return self._read_file()

    def get_by_id(self, filter_id: str) -> Optional[Dict[str, Any]]:
        """Get a saved filter by ID, or None if not found."""
        with self._lock:
            for saved in self._read_file():
                if saved.get("id") == filter_id:
                    return saved
            return None

    def get_filter(self, filter_id: str) -> Optional[Filter]:
        """Get the decoded label filter of a saved filter, or None if not found."""
        saved = self.get_by_id(filter_id)
        if saved is None:
            return None
        return decode_filter(saved.get("filter"))

    def create(self, saved: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new saved filter.

        The filter document is decoded and re-encoded so that only
        well-formed filters are stored, in canonical form.

        Args:
            saved: Dictionary with id, name, filter and optional controls

        Returns:
            The created entry with timestamps added

        Raises:
            FilterDecodeError: If the filter document is malformed
        """
        saved["filter"] = encode_filter(decode_filter(saved.get("filter")))
        saved.setdefault("controls", [])

        with self._lock:
            filters = self._read_file()

            now = datetime.now(timezone.utc).isoformat()
            saved["created_at"] = now
            saved["updated_at"] = now

            filters.append(saved)
            self._write_file(filters)
            logger.info(f"Saved filter '{saved.get('name')}' ({saved.get('id')})")
            return saved

    def update(self, filter_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update an existing saved filter.

        Returns:
            The updated entry or None if not found

        Raises:
            FilterDecodeError: If a new filter document is malformed
        """
        if "filter" in updates:
            updates["filter"] = encode_filter(decode_filter(updates["filter"]))

        with self._lock:
            filters = self._read_file()

            for saved in filters:
                if saved.get("id") == filter_id:
                    for key, value in updates.items():
                        if key not in ("id", "created_at"):
                            saved[key] = value

                    saved["updated_at"] = datetime.now(timezone.utc).isoformat()

                    self._write_file(filters)
                    return saved

            return None

    def delete(self, filter_id: str) -> bool:
        """Delete a saved filter. Returns False if it was not found."""
        with self._lock:
            filters = self._read_file()
            original_len = len(filters)
            filters = [f for f in filters if f.get("id") != filter_id]

            if len(filters) < original_len:
                self._write_file(filters)
                return True

            return False
