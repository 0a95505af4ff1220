"""
Document store port and its in-memory adapter.

Documents are addressed by slash-separated paths alternating collection and
document ids, e.g. ``users/u1/knownContacts/c1``. Queries run against a
collection path and take ``(field, op, value)`` filters, where ``op`` is
``"=="`` or ``"in"`` and the pseudo-field ``"__name__"`` is the document id.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

log = logging.getLogger(__name__)

# Remote 'in' filters accept at most this many values
MAX_IN_ITEMS = 10

DOCUMENT_ID = "__name__"
SUPPORTED_OPS = ("==", "in")

Filter = Tuple[str, str, Any]


class _ServerTimestamp:
    # singleton, copies must stay identical to SERVER_TIMESTAMP
    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return "SERVER_TIMESTAMP"

    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    pass


class PermissionDeniedError(StoreError):
    def __init__(self, message: str = "Missing or insufficient permissions."):
        super().__init__(message)


class DocumentNotFoundError(StoreError):
    def __init__(self, path: str):
        super().__init__(f"No document to update: {path}")
        self.path = path


class DocumentStore(Protocol):
    def get(self, path: str) -> Optional[Dict[str, Any]]:
        """Return the document data, or None when it does not exist."""
        ...

    def set(self, path: str, data: Dict[str, Any]) -> None:
        """Create or fully replace a document."""
        ...

    def update(self, path: str, data: Dict[str, Any]) -> None:
        """Merge fields into an existing document. Raises DocumentNotFoundError."""
        ...

    def delete(self, path: str) -> None:
        """Delete a document; deleting a missing document is not an error."""
        ...

    def query(self, collection: str, filters: Iterable[Filter] = ()) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(document_id, data)`` pairs matching every filter."""
        ...


def split_path(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise StoreError("Empty document path")
    return parts


def document_path(*segments: str) -> str:
    parts = split_path("/".join(segments))
    if len(parts) % 2:
        raise StoreError(f"Not a document path: {'/'.join(parts)}")
    return "/".join(parts)


def collection_path(*segments: str) -> str:
    parts = split_path("/".join(segments))
    if len(parts) % 2 == 0:
        raise StoreError(f"Not a collection path: {'/'.join(parts)}")
    return "/".join(parts)


def resolve_server_timestamps(value, now: datetime):
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_timestamps(v, now) for v in value]
    return value


def validate_filters(filters: Iterable[Filter]) -> List[Filter]:
    checked = []
    for field, op, value in filters:
        if op not in SUPPORTED_OPS:
            raise StoreError(f"Unsupported filter operator: {op}")
        if op == "in":
            value = list(value)
            if not value:
                raise StoreError("'in' filters require a non-empty array")
            if len(value) > MAX_IN_ITEMS:
                raise StoreError(f"'in' filters support a maximum of {MAX_IN_ITEMS} elements")
        checked.append((field, op, value))
    return checked


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryDocumentStore:
    """Keeps documents in a dict keyed by full path. Used for local runs and tests."""

    def __init__(self, read_only: bool = False, clock=_utcnow):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self.read_only = read_only
        self._clock = clock

    def _check_writable(self):
        if self.read_only:
            raise PermissionDeniedError()

    def get(self, path):
        doc = self._docs.get(document_path(path))
        return copy.deepcopy(doc) if doc is not None else None

    def set(self, path, data):
        self._check_writable()
        self._docs[document_path(path)] = copy.deepcopy(resolve_server_timestamps(data, self._clock()))

    def update(self, path, data):
        self._check_writable()
        key = document_path(path)
        if key not in self._docs:
            raise DocumentNotFoundError(key)
        self._docs[key].update(copy.deepcopy(resolve_server_timestamps(data, self._clock())))

    def delete(self, path):
        self._check_writable()
        self._docs.pop(document_path(path), None)

    def query(self, collection, filters=()):
        prefix = collection_path(collection) + "/"
        checked = validate_filters(filters)
        results = []
        for key, data in self._docs.items():
            if not key.startswith(prefix):
                continue
            doc_id = key[len(prefix):]
            # skip documents of nested subcollections
            if "/" in doc_id:
                continue
            if all(self._matches(doc_id, data, f) for f in checked):
                results.append((doc_id, copy.deepcopy(data)))
        log.debug(f"Query {collection} {checked} -> {len(results)} documents")
        return results

    @staticmethod
    def _matches(doc_id, data, flt) -> bool:
        field, op, value = flt
        if field == DOCUMENT_ID:
            actual, present = doc_id, True
        else:
            present = field in data
            actual = data.get(field)
        if not present:
            return False
        if op == "==":
            return actual == value
        return actual in value

    def __len__(self):
        return len(self._docs)
