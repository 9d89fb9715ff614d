"""
docstore/models.py -- Domain dataclasses for the document store.

Pattern: Data class (pure data container, zero logic). The store owns
persistence; these types describe what comes back from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


class _ServerTimestamp:
    """Sentinel: replaced by the store's commit time when written."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def subcollection(collection: str, doc_id: str, name: str) -> str:
    """Path of a sub-collection nested under one document, e.g. "parliamentSubjects/s1/notes"."""
    return f"{collection}/{doc_id}/{name}"


@dataclass
class Document:
    """A single stored document.

    collection is the full collection path (sub-collections included), id the
    document key within it. data is the JSON body as a plain dict.
    """

    collection: str
    id: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)
