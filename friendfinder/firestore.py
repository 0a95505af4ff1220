"""
Cloud Firestore adapter over the REST v1 API.

Server timestamps are resolved client-side to the current UTC time before
writing.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import quote

import requests

from friendfinder.store import (
    DOCUMENT_ID,
    DocumentNotFoundError,
    PermissionDeniedError,
    StoreError,
    collection_path,
    document_path,
    resolve_server_timestamps,
    validate_filters,
)

log = logging.getLogger(__name__)

FIRESTORE_URL = "https://firestore.googleapis.com/v1"

OPERATORS = {"==": "EQUAL", "in": "IN"}

_FRACTION = re.compile(r"\.(\d+)")


def encode_value(value) -> dict:
    if value is None:
        return {"nullValue": None}
    # bool before int, bool is an int subclass
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        ts = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": ts}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise StoreError(f"Unsupported value type: {type(value).__name__}")


def encode_fields(data: dict) -> dict:
    return {k: encode_value(v) for k, v in data.items()}


def parse_timestamp(value: str) -> datetime:
    # Firestore returns up to nanosecond precision, datetime takes microseconds
    value = value.replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    return datetime.fromisoformat(value)


def decode_value(value: dict):
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return value["booleanValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "referenceValue" in value:
        return value["referenceValue"]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    raise StoreError(f"Unsupported Firestore value: {sorted(value)}")


def decode_fields(fields: dict) -> dict:
    return {k: decode_value(v) for k, v in fields.items()}


class FirestoreRestStore:
    def __init__(
        self,
        project_id: str,
        token_provider: Callable[[], Optional[str]] = lambda: None,
        session: requests.Session = None,
        database: str = "(default)",
        timeout: float = 30,
    ):
        if not project_id:
            raise StoreError("A Firebase project id is required")
        self.project_id = project_id
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self.timeout = timeout
        self.root = f"projects/{project_id}/databases/{database}/documents"

    def _name(self, path: str) -> str:
        return f"{self.root}/{path}"

    def _url(self, path: str = "") -> str:
        # ids may hold "?", "#" or spaces; each segment is percent-encoded
        encoded = "/".join(quote(segment, safe="") for segment in path.split("/") if segment)
        return f"{FIRESTORE_URL}/{self.root}/{encoded}" if encoded else f"{FIRESTORE_URL}/{self.root}"

    def _headers(self) -> dict:
        token = self.token_provider()
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise StoreError(f"Firestore request failed: {e}") from e
        if response.status_code == 403:
            raise PermissionDeniedError(self._error_message(response) or "Missing or insufficient permissions.")
        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            return response.json().get("error", {}).get("message", "")
        except ValueError:
            return response.text

    def _raise_for_status(self, response: requests.Response):
        if response.status_code >= 400:
            raise StoreError(f"Firestore error {response.status_code}: {self._error_message(response)}")

    def get(self, path):
        path = document_path(path)
        response = self._request("GET", self._url(path))
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return decode_fields(response.json().get("fields", {}))

    def set(self, path, data):
        path = document_path(path)
        data = resolve_server_timestamps(data, datetime.now(timezone.utc))
        response = self._request("PATCH", self._url(path), json={"fields": encode_fields(data)})
        self._raise_for_status(response)

    def update(self, path, data):
        path = document_path(path)
        data = resolve_server_timestamps(data, datetime.now(timezone.utc))
        params = [("updateMask.fieldPaths", field) for field in data]
        params.append(("currentDocument.exists", "true"))
        response = self._request(
            "PATCH",
            self._url(path),
            params=params,
            json={"fields": encode_fields(data)},
        )
        if response.status_code == 404:
            raise DocumentNotFoundError(path)
        self._raise_for_status(response)

    def delete(self, path):
        path = document_path(path)
        response = self._request("DELETE", self._url(path))
        if response.status_code == 404:
            return
        self._raise_for_status(response)

    def _field_filter(self, collection: str, field: str, op: str, value) -> dict:
        if field == DOCUMENT_ID:
            refs = value if op == "in" else [value]
            encoded = [{"referenceValue": self._name(f"{collection}/{doc_id}")} for doc_id in refs]
            value_json = {"arrayValue": {"values": encoded}} if op == "in" else encoded[0]
        else:
            value_json = encode_value(value)
        return {"fieldFilter": {"field": {"fieldPath": field}, "op": OPERATORS[op], "value": value_json}}

    def build_query(self, collection: str, filters=()) -> dict:
        collection = collection_path(collection)
        collection_id = collection.rsplit("/", 1)[-1]
        structured = {"from": [{"collectionId": collection_id}]}
        clauses = [self._field_filter(collection, *f) for f in validate_filters(filters)]
        if len(clauses) == 1:
            structured["where"] = clauses[0]
        elif clauses:
            structured["where"] = {"compositeFilter": {"op": "AND", "filters": clauses}}
        return {"structuredQuery": structured}

    def query(self, collection, filters=()):
        collection = collection_path(collection)
        body = self.build_query(collection, filters)
        parent = collection.rsplit("/", 1)[0] if "/" in collection else ""
        response = self._request("POST", f"{self._url(parent)}:runQuery", json=body)
        self._raise_for_status(response)

        results = []
        for row in response.json():
            doc = row.get("document")
            if not doc:
                continue
            doc_id = doc["name"].rsplit("/", 1)[-1]
            results.append((doc_id, decode_fields(doc.get("fields", {}))))
        log.debug(f"Firestore query {collection} -> {len(results)} documents")
        return results
