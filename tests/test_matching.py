from unittest.mock import MagicMock

import pytest

from friendfinder.hashing import hash_phone_number
from friendfinder.matching import PERMISSION_DENIED_MESSAGE, ContactMatchingService
from friendfinder.models import NormalizedContact
from friendfinder.store import MemoryDocumentStore, PermissionDeniedError, StoreError

BOB = "+12024561111"
CAROL = "+442070313000"


class CountingStore(MemoryDocumentStore):
    def __init__(self):
        super().__init__()
        self.queries = []

    def query(self, collection, filters=()):
        filters = list(filters)
        self.queries.append((collection, filters))
        return super().query(collection, filters)


def contact(id, name, *numbers):
    return NormalizedContact(
        id=id,
        name=name,
        original_phone_numbers=list(numbers),
        normalized_phone_numbers=list(numbers),
        has_valid_phone_numbers=bool(numbers),
    )


def test_register_writes_hash_document(store, matching):
    assert matching.register_user_phone_number("bob", BOB, "bob@example.com")
    doc = store.get(f"userPhoneHashes/{hash_phone_number(BOB)}")
    assert doc["uid"] == "bob"
    assert doc["email"] == "bob@example.com"
    assert doc["phoneNumber"] == BOB
    assert doc["isActive"] is True
    assert doc["createdAt"] is not None


def test_register_fails_without_permission():
    matching = ContactMatchingService(MemoryDocumentStore(read_only=True))
    assert matching.register_user_phone_number("bob", BOB, "") is False


def test_unregister(store, matching):
    matching.register_user_phone_number("bob", BOB, "")
    assert matching.unregister_user_phone_number(BOB)
    assert len(store) == 0


def test_find_matches_empty_input_skips_queries():
    store = CountingStore()
    result = ContactMatchingService(store).find_contact_matches([])
    assert result.success and result.matches == []
    assert store.queries == []


def test_find_matches(matching):
    matching.register_user_phone_number("bob", BOB, "bob@example.com")
    result = matching.find_contact_matches([BOB, CAROL])
    assert result.success
    assert [(m.uid, m.phone_number, m.contact_name) for m in result.matches] == [("bob", BOB, "")]


def test_find_matches_batches_lookups():
    store = CountingStore()
    matching = ContactMatchingService(store)
    numbers = [f"+1202456{1000 + i:04d}" for i in range(25)]
    for i, number in enumerate(numbers[::6]):
        matching.register_user_phone_number(f"user{i}", number, "")

    result = matching.find_contact_matches(numbers + numbers[:3])

    assert result.success
    assert len(result.matches) == 5
    sizes = [len(filters[0][2]) for _, filters in store.queries]
    assert sizes == [10, 10, 5]
    assert all(filters[1] == ("isActive", "==", True) for _, filters in store.queries)


def test_custom_batch_size():
    store = CountingStore()
    ContactMatchingService(store, batch_size=3).find_contact_matches([BOB, CAROL, "+1", "+2"])
    assert len(store.queries) == 2
    with pytest.raises(ValueError):
        ContactMatchingService(store, batch_size=11)


def test_inactive_registrations_do_not_match(store, matching):
    matching.register_user_phone_number("bob", BOB, "")
    store.update(f"userPhoneHashes/{hash_phone_number(BOB)}", {"isActive": False})
    assert matching.find_contact_matches([BOB]).matches == []


def test_permission_errors_get_a_friendly_message():
    store = MagicMock()
    store.query.side_effect = PermissionDeniedError()
    result = ContactMatchingService(store).find_contact_matches([BOB])
    assert not result.success
    assert result.error == PERMISSION_DENIED_MESSAGE


def test_other_store_errors_pass_through():
    store = MagicMock()
    store.query.side_effect = StoreError("quota exceeded")
    result = ContactMatchingService(store).find_contact_matches([BOB])
    assert result.error == "quota exceeded"


def test_store_known_contacts(store, matching):
    matching.register_user_phone_number("bob", BOB, "bob@example.com")
    matching.register_user_phone_number("carol", CAROL, "carol@example.com")

    contacts = [
        contact("c1", "Bobby", BOB, "+16502530000"),
        contact("c2", "Nobody", "+16502530001"),
        contact("", "Carol", CAROL),
        contact("c4", "No numbers"),
    ]
    result = matching.store_known_contacts("me", contacts)

    assert result.success
    assert result.processed_count == 4
    assert result.matched_count == 2

    doc = store.get("users/me/knownContacts/c1")
    assert doc["contactName"] == "Bobby"
    assert doc["normalizedPhoneNumbers"] == [BOB, "+16502530000"]
    assert doc["isActive"] is True
    assert [u["uid"] for u in doc["matchedUsers"]] == ["bob"]
    assert doc["syncedAt"] is not None

    # falls back to the name when the contact has no id
    assert store.get("users/me/knownContacts/Carol")["contactId"] == ""
    assert store.get("users/me/knownContacts/c2") is None


def test_store_known_contacts_reports_matching_failure():
    store = MagicMock()
    store.query.side_effect = PermissionDeniedError()
    result = ContactMatchingService(store).store_known_contacts("me", [contact("c1", "Bob", BOB)])
    assert not result.success
    assert result.processed_count == 0
    assert result.error == PERMISSION_DENIED_MESSAGE


def test_get_known_contacts_flattens_matched_users(store, matching):
    matching.register_user_phone_number("bob", BOB, "bob@example.com")
    matching.register_user_phone_number("bob-work", "+16502530000", "bob@work.example.com")
    matching.store_known_contacts("me", [contact("c1", "Bobby", BOB, "+16502530000")])

    result = matching.get_known_contacts("me")

    assert result.success
    assert sorted(m.uid for m in result.matches) == ["bob", "bob-work"]
    assert {m.contact_name for m in result.matches} == {"Bobby"}
    assert all(m.matched_at is not None for m in result.matches)


def test_known_contact_status_and_delete(store, matching):
    matching.register_user_phone_number("bob", BOB, "")
    matching.store_known_contacts("me", [contact("c1", "Bobby", BOB)])

    assert matching.update_known_contact_status("me", "c1", False)
    assert matching.get_known_contacts("me").matches == []
    assert store.get("users/me/knownContacts/c1")["updatedAt"] is not None

    assert matching.update_known_contact_status("me", "missing", True) is False

    assert matching.delete_known_contact("me", "c1")
    assert store.get("users/me/knownContacts/c1") is None


def test_known_contact_ids_never_nest(store, matching):
    matching.register_user_phone_number("bob", BOB, "bob@example.com")
    matching.register_user_phone_number("carol", CAROL, "carol@example.com")

    result = matching.store_known_contacts("me", [contact("", "Mom/Dad", BOB), contact("a/b", "Carol", CAROL)])

    assert result.success
    assert result.matched_count == 2
    assert store.get("users/me/knownContacts/Mom_Dad")["contactName"] == "Mom/Dad"
    assert store.get("users/me/knownContacts/a_b")["contactId"] == "a/b"
    assert len(matching.get_known_contacts("me").matches) == 2
