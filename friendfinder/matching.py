import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List

from friendfinder.hashing import hash_phone_number
from friendfinder.models import ContactMatch, ContactMatchingResult, ContactSyncResult, NormalizedContact
from friendfinder.store import (
    DOCUMENT_ID,
    MAX_IN_ITEMS,
    SERVER_TIMESTAMP,
    DocumentStore,
    PermissionDeniedError,
    StoreError,
)

log = logging.getLogger(__name__)

PHONE_HASHES = "userPhoneHashes"
PERMISSION_DENIED_MESSAGE = "Permission denied. Please make sure you are logged in and try again."


def known_contacts_collection(user_uid: str) -> str:
    return f"users/{user_uid}/knownContacts"


def known_contact_id(contact: NormalizedContact) -> str:
    # "/" would split the id into extra path segments
    return (contact.id or contact.name).replace("/", "_")


def batched(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _error_message(error: Exception, fallback: str) -> str:
    message = str(error)
    if "permission" in message.lower():
        return PERMISSION_DENIED_MESSAGE
    return message or fallback


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ContactMatchingService:
    """
    Friend discovery against the phone hash registry.

    Registered users publish ``userPhoneHashes/{hash}``; a user's contacts are
    hashed the same way and looked up in batches, and contacts with at least
    one registered number are written to ``users/{uid}/knownContacts``.
    """

    def __init__(self, store: DocumentStore, batch_size: int = MAX_IN_ITEMS):
        if not 0 < batch_size <= MAX_IN_ITEMS:
            raise ValueError(f"batch_size must be between 1 and {MAX_IN_ITEMS}")
        self.store = store
        self.batch_size = batch_size

    def register_user_phone_number(self, uid: str, phone_number: str, email: str) -> bool:
        try:
            phone_hash = hash_phone_number(phone_number)
            self.store.set(f"{PHONE_HASHES}/{phone_hash}", {
                "uid": uid,
                "email": email,
                "phoneNumber": phone_number,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
                "isActive": True,
            })
            return True
        except StoreError as e:
            log.error(f"Error registering user phone number: {e}")
            if isinstance(e, PermissionDeniedError):
                log.error("Permission denied - user may not be authenticated")
            return False

    def unregister_user_phone_number(self, phone_number: str) -> bool:
        try:
            self.store.delete(f"{PHONE_HASHES}/{hash_phone_number(phone_number)}")
            return True
        except StoreError as e:
            log.error(f"Error unregistering user phone number: {e}")
            return False

    def find_contact_matches(self, normalized_phone_numbers: Iterable[str]) -> ContactMatchingResult:
        numbers = list(normalized_phone_numbers)
        if not numbers:
            return ContactMatchingResult(success=True, matches=[])

        try:
            hashes = list(dict.fromkeys(hash_phone_number(n) for n in numbers))
            matches = []
            for batch in batched(hashes, self.batch_size):
                docs = self.store.query(PHONE_HASHES, [
                    (DOCUMENT_ID, "in", batch),
                    ("isActive", "==", True),
                ])
                for _, data in docs:
                    matches.append(ContactMatch(
                        uid=data["uid"],
                        email=data.get("email") or "",
                        phone_number=data["phoneNumber"],
                        matched_at=_now(),
                        contact_name="",
                        is_active=data.get("isActive", True),
                    ))
            log.info(f"Matched {len(matches)} users from {len(hashes)} phone hashes")
            return ContactMatchingResult(success=True, matches=matches)
        except (StoreError, KeyError) as e:
            log.error(f"Error finding contact matches: {e}")
            return ContactMatchingResult(success=False, error=_error_message(e, "Failed to find contact matches"))

    def store_known_contacts(self, user_uid: str, contacts: List[NormalizedContact]) -> ContactSyncResult:
        all_numbers = [n for contact in contacts for n in contact.normalized_phone_numbers]

        matching = self.find_contact_matches(all_numbers)
        if not matching.success:
            return ContactSyncResult(success=False, error=matching.error)

        phone_to_user: Dict[str, ContactMatch] = {m.phone_number: m for m in matching.matches or []}

        processed = 0
        matched = 0
        try:
            for contact in contacts:
                processed += 1
                users = [
                    phone_to_user[n].model_copy(update={"contact_name": contact.name})
                    for n in contact.normalized_phone_numbers
                    if n in phone_to_user
                ]
                if not users:
                    continue

                matched += 1
                # server timestamps are not allowed inside arrays
                matched_at = _now()
                doc_id = known_contact_id(contact)
                self.store.set(f"{known_contacts_collection(user_uid)}/{doc_id}", {
                    "contactId": contact.id,
                    "contactName": contact.name,
                    "originalPhoneNumbers": contact.original_phone_numbers,
                    "normalizedPhoneNumbers": contact.normalized_phone_numbers,
                    "hasValidPhoneNumbers": contact.has_valid_phone_numbers,
                    "matchedUsers": [
                        {"uid": u.uid, "email": u.email, "phoneNumber": u.phone_number, "matchedAt": matched_at}
                        for u in users
                    ],
                    "syncedAt": SERVER_TIMESTAMP,
                    "isActive": True,
                })
        except StoreError as e:
            log.error(f"Error storing known contacts: {e}")
            return ContactSyncResult(success=False, error=_error_message(e, "Failed to store known contacts"))

        log.info(f"Synced contacts for {user_uid}: {processed} processed, {matched} matched")
        return ContactSyncResult(success=True, processed_count=processed, matched_count=matched)

    def get_known_contacts(self, user_uid: str) -> ContactMatchingResult:
        try:
            docs = self.store.query(known_contacts_collection(user_uid), [("isActive", "==", True)])
        except StoreError as e:
            log.error(f"Error getting known contacts: {e}")
            return ContactMatchingResult(success=False, error=str(e) or "Failed to get known contacts")

        known = []
        for _, data in docs:
            for user in data.get("matchedUsers") or []:
                known.append(ContactMatch(
                    uid=user["uid"],
                    email=user.get("email") or "",
                    phone_number=user["phoneNumber"],
                    matched_at=user.get("matchedAt") or _now(),
                    contact_name=data.get("contactName", ""),
                    is_active=data.get("isActive", True),
                ))
        return ContactMatchingResult(success=True, matches=known)

    def update_known_contact_status(self, user_uid: str, contact_id: str, is_active: bool) -> bool:
        try:
            self.store.update(f"{known_contacts_collection(user_uid)}/{contact_id}", {
                "isActive": is_active,
                "updatedAt": SERVER_TIMESTAMP,
            })
            return True
        except StoreError as e:
            log.error(f"Error updating known contact status: {e}")
            return False

    def delete_known_contact(self, user_uid: str, contact_id: str) -> bool:
        try:
            self.store.delete(f"{known_contacts_collection(user_uid)}/{contact_id}")
            return True
        except StoreError as e:
            log.error(f"Error deleting known contact: {e}")
            return False
