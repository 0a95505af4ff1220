import logging
import os
import re
from typing import List, Protocol

import pandas as pd

from friendfinder.models import (
    ContactPermissionResult,
    ContactServiceResult,
    PermissionStatus,
    RawContact,
)
from friendfinder.phone import DEFAULT_REGION, normalize_contact

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000
PERMISSION_NOT_GRANTED = "Contacts permission not granted"


class ContactsFormatError(ValueError):
    pass


class ContactsProvider(Protocol):
    """Access to the user's address book."""

    def request_permission(self) -> ContactPermissionResult:
        ...

    def get_permission(self) -> ContactPermissionResult:
        ...

    def list_contacts(self, page_size: int) -> List[RawContact]:
        ...

    def count_contacts(self) -> int:
        ...


def _read_csv(source) -> pd.DataFrame:
    try:
        return pd.read_csv(source, dtype=str, keep_default_na=False)
    except UnicodeDecodeError:
        # exports from older address books are often latin1
        if hasattr(source, "seek"):
            source.seek(0)
        return pd.read_csv(source, dtype=str, keep_default_na=False, encoding="latin1")


# CSV contacts: any column starting with "phone", several numbers per cell split by ";"
def read_contacts_csv(source) -> List[RawContact]:
    df = _read_csv(source)
    # headers may differ only by case ("Phone,phone"), so cells are read by position
    columns = [str(c).strip().lower() for c in df.columns]

    phone_positions = [i for i, c in enumerate(columns) if c.startswith("phone")]
    if not phone_positions:
        raise ContactsFormatError("CSV must have a 'phone' column")
    id_position = columns.index("id") if "id" in columns else None
    name_position = columns.index("name") if "name" in columns else None

    contacts = []
    for row in df.itertuples(index=False, name=None):
        numbers = []
        for i in phone_positions:
            numbers.extend(n.strip() for n in row[i].split(";") if n.strip())
        contacts.append(RawContact(
            id=row[id_position].strip() if id_position is not None else None,
            name=row[name_position].strip() if name_position is not None else None,
            phone_numbers=numbers,
        ))
    return contacts


def _vcard_value(line: str) -> str:
    return line.split(":", 1)[1].strip() if ":" in line else ""


def read_contacts_vcard(text: str) -> List[RawContact]:
    # unfold continuation lines
    text = re.sub(r"\r?\n[ \t]", "", text)

    contacts = []
    for card in re.split(r"(?=BEGIN:VCARD)", text):
        if not card.strip().upper().startswith("BEGIN:VCARD"):
            continue
        uid = None
        full_name = None
        structured_name = None
        numbers = []
        for line in card.splitlines():
            line = line.strip()
            key = line.split(":", 1)[0].split(";", 1)[0].upper()
            if key == "FN":
                full_name = _vcard_value(line) or None
            elif key == "N":
                parts = [p for p in _vcard_value(line).split(";") if p]
                # N is family;given;...
                structured_name = " ".join(reversed(parts[:2])) or None
            elif key == "TEL":
                number = _vcard_value(line)
                if number.lower().startswith("tel:"):
                    number = number[4:]
                if number:
                    numbers.append(number)
            elif key == "UID":
                uid = _vcard_value(line) or None
        contacts.append(RawContact(id=uid, name=full_name or structured_name, phone_numbers=numbers))
    return contacts


class StaticContactsProvider:
    """Contacts handed over in memory, e.g. uploaded by a client."""

    def __init__(self, contacts: List[RawContact] = None, status: PermissionStatus = PermissionStatus.GRANTED,
                 can_ask_again: bool = True):
        self.contacts = list(contacts or [])
        self.status = status
        self.can_ask_again = can_ask_again

    def _permission(self) -> ContactPermissionResult:
        return ContactPermissionResult(
            granted=self.status == PermissionStatus.GRANTED,
            can_ask_again=self.can_ask_again,
            status=self.status,
        )

    def request_permission(self):
        if self.status == PermissionStatus.UNDETERMINED:
            self.status = PermissionStatus.GRANTED
        return self._permission()

    def get_permission(self):
        return self._permission()

    def list_contacts(self, page_size):
        return self.contacts[:page_size]

    def count_contacts(self):
        return len(self.contacts)


class FileContactsProvider:
    """Address book exported to a CSV or vCard file."""

    def __init__(self, path: str):
        self.path = path

    def get_permission(self):
        readable = os.path.isfile(self.path) and os.access(self.path, os.R_OK)
        return ContactPermissionResult(
            granted=readable,
            can_ask_again=False,
            status=PermissionStatus.GRANTED if readable else PermissionStatus.DENIED,
        )

    def request_permission(self):
        return self.get_permission()

    def _read(self) -> List[RawContact]:
        if self.path.lower().endswith((".vcf", ".vcard")):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    return read_contacts_vcard(f.read())
            except UnicodeDecodeError:
                with open(self.path, "r", encoding="latin1") as f:
                    return read_contacts_vcard(f.read())
        return read_contacts_csv(self.path)

    def list_contacts(self, page_size):
        contacts = self._read()
        # address books are sorted by last name
        contacts.sort(key=lambda c: ((c.name or "").split()[-1:] or [""])[0].lower())
        return contacts[:page_size]

    def count_contacts(self):
        return len(self._read())


class ContactService:
    def __init__(self, provider: ContactsProvider, default_region: str = DEFAULT_REGION,
                 page_size: int = DEFAULT_PAGE_SIZE):
        self.provider = provider
        self.default_region = default_region
        self.page_size = page_size

    def request_contacts_permission(self) -> ContactPermissionResult:
        try:
            return self.provider.request_permission()
        except Exception as e:
            log.error(f"Error requesting contacts permission: {e}")
            return ContactPermissionResult(granted=False, can_ask_again=False, status=PermissionStatus.DENIED)

    def get_contacts_permission_status(self) -> ContactPermissionResult:
        try:
            return self.provider.get_permission()
        except Exception as e:
            log.error(f"Error checking contacts permission: {e}")
            return ContactPermissionResult(granted=False, can_ask_again=False, status=PermissionStatus.DENIED)

    def get_raw_contacts(self, limit: int = None) -> ContactServiceResult:
        if not self.get_contacts_permission_status().granted:
            return ContactServiceResult(success=False, error=PERMISSION_NOT_GRANTED)
        try:
            contacts = self.provider.list_contacts(limit or self.page_size)
        except Exception as e:
            log.error(f"Error reading contacts: {e}")
            return ContactServiceResult(success=False, error=str(e) or "Failed to read contacts")
        return ContactServiceResult(success=True, data=contacts)

    def get_contacts(self, limit: int = None) -> ContactServiceResult:
        raw = self.get_raw_contacts(limit)
        if not raw.success:
            return raw
        normalized = [normalize_contact(c, self.default_region) for c in raw.data]
        log.info(f"Normalized {len(normalized)} contacts, "
                 f"{sum(c.has_valid_phone_numbers for c in normalized)} with valid numbers")
        return ContactServiceResult(success=True, data=normalized)

    def get_contacts_count(self) -> int:
        if not self.get_contacts_permission_status().granted:
            return 0
        try:
            return self.provider.count_contacts()
        except Exception as e:
            log.error(f"Error getting contacts count: {e}")
            return 0
