from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from friendfinder.firestore import (
    FIRESTORE_URL,
    FirestoreRestStore,
    decode_fields,
    encode_fields,
    parse_timestamp,
)
from friendfinder.store import DocumentNotFoundError, PermissionDeniedError, StoreError

ROOT = "projects/demo/databases/(default)/documents"


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload if payload is not None else {}
    resp.text = str(payload)
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def fs(session):
    return FirestoreRestStore("demo", token_provider=lambda: "tok", session=session)


def test_encode_fields():
    at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    encoded = encode_fields({
        "uid": "u1", "isActive": True, "count": 5, "ratio": 0.5, "none": None, "at": at,
        "numbers": ["+1"], "prefs": {"tracking": False},
    })
    assert encoded == {
        "uid": {"stringValue": "u1"},
        "isActive": {"booleanValue": True},
        "count": {"integerValue": "5"},
        "ratio": {"doubleValue": 0.5},
        "none": {"nullValue": None},
        "at": {"timestampValue": "2024-05-01T12:00:00Z"},
        "numbers": {"arrayValue": {"values": [{"stringValue": "+1"}]}},
        "prefs": {"mapValue": {"fields": {"tracking": {"booleanValue": False}}}},
    }


def test_decode_fields():
    decoded = decode_fields({
        "count": {"integerValue": "5"},
        "at": {"timestampValue": "2024-05-01T12:00:00.123456789Z"},
        "empty": {"arrayValue": {}},
        "prefs": {"mapValue": {"fields": {"tracking": {"booleanValue": True}}}},
    })
    assert decoded["count"] == 5
    assert decoded["at"] == datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert decoded["empty"] == []
    assert decoded["prefs"] == {"tracking": True}


def test_parse_timestamp_without_fraction():
    assert parse_timestamp("2024-05-01T12:00:00Z") == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def test_get_sends_bearer_token_and_decodes(fs, session):
    session.request.return_value = response(200, {"fields": {"uid": {"stringValue": "u1"}}})
    assert fs.get("users/u1/profile/main") == {"uid": "u1"}
    method, url = session.request.call_args[0]
    assert method == "GET"
    assert url == f"{FIRESTORE_URL}/{ROOT}/users/u1/profile/main"
    assert session.request.call_args[1]["headers"] == {"Authorization": "Bearer tok"}


def test_get_missing_document(fs, session):
    session.request.return_value = response(404, {"error": {"message": "not found"}})
    assert fs.get("users/u1/profile/main") is None


def test_forbidden_maps_to_permission_denied(fs, session):
    session.request.return_value = response(403, {"error": {"message": "Missing or insufficient permissions."}})
    with pytest.raises(PermissionDeniedError):
        fs.set("userPhoneHashes/abc", {"uid": "u1"})


def test_network_errors_become_store_errors(fs, session):
    session.request.side_effect = requests.ConnectionError("down")
    with pytest.raises(StoreError):
        fs.delete("userPhoneHashes/abc")


def test_update_uses_field_mask_and_existence_precondition(fs, session):
    session.request.return_value = response(200, {})
    fs.update("users/u1/knownContacts/c1", {"isActive": False})
    params = session.request.call_args[1]["params"]
    assert ("updateMask.fieldPaths", "isActive") in params
    assert ("currentDocument.exists", "true") in params

    session.request.return_value = response(404, {})
    with pytest.raises(DocumentNotFoundError):
        fs.update("users/u1/knownContacts/c1", {"isActive": False})


def test_build_query_by_document_name(fs):
    body = fs.build_query("userPhoneHashes", [("__name__", "in", ["a", "b"]), ("isActive", "==", True)])
    where = body["structuredQuery"]["where"]["compositeFilter"]
    assert body["structuredQuery"]["from"] == [{"collectionId": "userPhoneHashes"}]
    assert where["op"] == "AND"
    name_filter, active_filter = where["filters"]
    assert name_filter["fieldFilter"]["op"] == "IN"
    assert name_filter["fieldFilter"]["value"]["arrayValue"]["values"] == [
        {"referenceValue": f"{ROOT}/userPhoneHashes/a"},
        {"referenceValue": f"{ROOT}/userPhoneHashes/b"},
    ]
    assert active_filter["fieldFilter"] == {
        "field": {"fieldPath": "isActive"}, "op": "EQUAL", "value": {"booleanValue": True},
    }


def test_query_subcollection(fs, session):
    session.request.return_value = response(200, [
        {"readTime": "2024-05-01T12:00:00Z"},
        {"document": {"name": f"{ROOT}/users/u1/knownContacts/c1", "fields": {"isActive": {"booleanValue": True}}}},
    ])
    assert fs.query("users/u1/knownContacts", [("isActive", "==", True)]) == [("c1", {"isActive": True})]
    method, url = session.request.call_args[0]
    assert method == "POST"
    assert url == f"{FIRESTORE_URL}/{ROOT}/users/u1:runQuery"
    body = session.request.call_args[1]["json"]
    assert body["structuredQuery"]["where"]["fieldFilter"]["field"] == {"fieldPath": "isActive"}


def test_project_id_required():
    with pytest.raises(StoreError):
        FirestoreRestStore("")


def test_document_ids_are_percent_encoded_in_urls(fs, session):
    session.request.return_value = response(200, {})
    fs.set("users/me/knownContacts/Who? #2", {"contactName": "Who? #2"})
    url = session.request.call_args[0][1]
    assert url == f"{FIRESTORE_URL}/{ROOT}/users/me/knownContacts/Who%3F%20%232"

    body = fs.build_query("users/me/knownContacts", [("__name__", "in", ["Who? #2"])])
    ref = body["structuredQuery"]["where"]["fieldFilter"]["value"]["arrayValue"]["values"][0]
    assert ref == {"referenceValue": f"{ROOT}/users/me/knownContacts/Who? #2"}


def test_root_collection_query_url(fs, session):
    session.request.return_value = response(200, [])
    assert fs.query("userPhoneHashes") == []
    assert session.request.call_args[0][1] == f"{FIRESTORE_URL}/{ROOT}:runQuery"
