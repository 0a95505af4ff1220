"""Client-side state for the signed-in user and their contacts."""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from friendfinder.auth import AuthService
from friendfinder.contacts import ContactService
from friendfinder.matching import ContactMatchingService
from friendfinder.models import (
    AuthUser,
    ContactMatch,
    ContactPermissionResult,
    ContactSyncResult,
    NormalizedContact,
    RawContact,
    UserProfile,
)

log = logging.getLogger(__name__)


class AuthSession:
    def __init__(self, auth_service: AuthService):
        self.auth_service = auth_service
        self.user: Optional[AuthUser] = None
        self.user_profile: Optional[UserProfile] = None
        self.is_loading = True
        self.is_authenticated = False
        self.error: Optional[str] = None

    def set_user(self, user: Optional[AuthUser]):
        self.user = user
        self.is_authenticated = user is not None
        self.is_loading = False

    def set_user_profile(self, profile: Optional[UserProfile]):
        self.user_profile = profile

    def set_loading(self, loading: bool):
        self.is_loading = loading

    def set_error(self, error: Optional[str]):
        self.error = error
        self.is_loading = False

    def clear_error(self):
        self.error = None

    def sign_out(self):
        self.is_loading = True
        result = self.auth_service.sign_out()
        if result.success:
            self.user = None
            self.user_profile = None
            self.is_authenticated = False
            self.is_loading = False
            self.error = None
        else:
            self.set_error(result.error or "Failed to sign out")

    def _on_auth_state_changed(self, user: Optional[AuthUser]):
        self.set_user(user)
        if user is None:
            self.set_user_profile(None)
            return
        try:
            profile = self.auth_service.get_user_profile(user.uid)
            if profile is not None:
                self.set_user_profile(profile)
        except Exception as e:
            log.error(f"Error fetching user profile: {e}")
            self.set_error("Failed to fetch user profile")

    def watch(self) -> Callable[[], None]:
        """Follow auth state changes, loading the profile of each signed-in user."""
        self.set_loading(True)
        return self.auth_service.on_auth_state_changed(self._on_auth_state_changed)


class ContactSession:
    def __init__(self, contact_service: ContactService, matching: ContactMatchingService):
        self.contact_service = contact_service
        self.matching = matching

        self.permission_status: Optional[ContactPermissionResult] = None
        self.is_requesting_permission = False

        self.contacts: List[NormalizedContact] = []
        self.raw_contacts: List[RawContact] = []
        self.is_loading_contacts = False
        self.contacts_error: Optional[str] = None

        self.is_syncing = False
        self.sync_error: Optional[str] = None
        self.last_sync_date: Optional[datetime] = None

        self.known_contacts: List[ContactMatch] = []
        self.is_loading_known_contacts = False
        self.known_contacts_error: Optional[str] = None

    def request_contacts_permission(self) -> bool:
        self.is_requesting_permission = True
        self.contacts_error = None
        result = self.contact_service.request_contacts_permission()
        self.permission_status = result
        self.is_requesting_permission = False
        return result.granted

    def check_contacts_permission(self):
        self.permission_status = self.contact_service.get_contacts_permission_status()

    def load_contacts(self):
        self.is_loading_contacts = True
        self.contacts_error = None

        normalized = self.contact_service.get_contacts()
        if normalized.success and normalized.data is not None:
            raw = self.contact_service.get_raw_contacts()
            self.contacts = normalized.data
            self.raw_contacts = raw.data if raw.success else []
        else:
            self.contacts_error = normalized.error or "Failed to load contacts"
        self.is_loading_contacts = False

    def sync_contacts(self, user_uid: str) -> ContactSyncResult:
        self.is_syncing = True
        self.sync_error = None

        result = self.matching.store_known_contacts(user_uid, self.contacts)
        if result.success:
            self.last_sync_date = datetime.now(timezone.utc)
        else:
            self.sync_error = result.error or "Failed to sync contacts"
        self.is_syncing = False
        return result

    def load_known_contacts(self, user_uid: str):
        self.is_loading_known_contacts = True
        self.known_contacts_error = None

        result = self.matching.get_known_contacts(user_uid)
        if result.success and result.matches is not None:
            self.known_contacts = result.matches
        else:
            self.known_contacts_error = result.error or "Failed to load known contacts"
        self.is_loading_known_contacts = False

    def clear_contacts_error(self):
        self.contacts_error = None

    def clear_sync_error(self):
        self.sync_error = None

    def clear_known_contacts_error(self):
        self.known_contacts_error = None

    @property
    def has_permission(self) -> bool:
        return bool(self.permission_status and self.permission_status.granted)

    @property
    def needs_permission(self) -> bool:
        return not self.has_permission

    @property
    def can_request_permission(self) -> bool:
        return self.permission_status is None or self.permission_status.can_ask_again

    @property
    def valid_contacts(self) -> List[NormalizedContact]:
        return [c for c in self.contacts if c.has_valid_phone_numbers]

    @property
    def all_normalized_numbers(self) -> List[str]:
        return [n for c in self.contacts for n in c.normalized_phone_numbers]

    @property
    def contact_count(self) -> int:
        return len(self.contacts)

    @property
    def valid_contact_count(self) -> int:
        return len(self.valid_contacts)

    @property
    def known_contact_count(self) -> int:
        return len(self.known_contacts)
