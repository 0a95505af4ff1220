import hashlib
import logging
import secrets
import uuid
from typing import Callable, Dict, List, Optional, Protocol

import requests

from friendfinder.matching import ContactMatchingService
from friendfinder.models import AuthServiceResult, AuthUser, SignUpData, UserProfile
from friendfinder.phone import DEFAULT_REGION, normalize_phone_number
from friendfinder.store import SERVER_TIMESTAMP, DocumentStore

log = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"

# Identity Toolkit error codes -> readable messages
AUTH_ERRORS = {
    "EMAIL_EXISTS": "Email already in use",
    "EMAIL_NOT_FOUND": "Invalid credentials",
    "INVALID_PASSWORD": "Invalid credentials",
    "INVALID_LOGIN_CREDENTIALS": "Invalid credentials",
    "INVALID_EMAIL": "Invalid email address",
    "USER_DISABLED": "This account has been disabled",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts, try again later",
}


class AuthProviderError(Exception):
    pass


class IdentityProvider(Protocol):
    def sign_in(self, email: str, password: str) -> AuthUser:
        ...

    def sign_up(self, email: str, password: str) -> AuthUser:
        ...

    def sign_out(self, user: AuthUser) -> None:
        ...


def profile_path(uid: str) -> str:
    return f"users/{uid}/profile/main"


class FirebaseIdentityProvider:
    """Email/password accounts through the Identity Toolkit REST API."""

    def __init__(self, api_key: str, session: requests.Session = None, timeout: float = 30):
        if not api_key:
            raise AuthProviderError("A Firebase web API key is required")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, endpoint: str, email: str, password: str) -> AuthUser:
        try:
            response = self.session.post(
                f"{IDENTITY_TOOLKIT_URL}/accounts:{endpoint}",
                params={"key": self.api_key},
                json={"email": email, "password": password, "returnSecureToken": True},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthProviderError(f"Network error: {e}") from e

        if response.status_code != 200:
            try:
                code = response.json().get("error", {}).get("message", "")
            except ValueError:
                code = response.text
            # codes may carry a detail, e.g. "WEAK_PASSWORD : Password should be at least 6 characters"
            key = code.split(" : ", 1)[0].strip()
            raise AuthProviderError(AUTH_ERRORS.get(key, code or f"Auth error {response.status_code}"))

        data = response.json()
        return AuthUser(
            uid=data["localId"],
            email=data.get("email", email),
            id_token=data.get("idToken"),
            refresh_token=data.get("refreshToken"),
        )

    def sign_in(self, email, password):
        return self._call("signInWithPassword", email, password)

    def sign_up(self, email, password):
        return self._call("signUp", email, password)

    def sign_out(self, user):
        # tokens are dropped client-side
        return None


class MemoryIdentityProvider:
    """Local accounts for development and tests."""

    def __init__(self):
        self._accounts: Dict[str, dict] = {}

    @staticmethod
    def _digest(password: str, salt: str) -> str:
        return hashlib.sha256((password + salt).encode("utf-8")).hexdigest()

    def sign_up(self, email, password):
        key = email.strip().lower()
        if key in self._accounts:
            raise AuthProviderError(AUTH_ERRORS["EMAIL_EXISTS"])
        if len(password) < 6:
            raise AuthProviderError("Password should be at least 6 characters")
        salt = secrets.token_hex(8)
        uid = uuid.uuid4().hex
        self._accounts[key] = {"uid": uid, "email": email, "salt": salt, "digest": self._digest(password, salt)}
        return AuthUser(uid=uid, email=email, id_token=secrets.token_urlsafe(24))

    def sign_in(self, email, password):
        account = self._accounts.get(email.strip().lower())
        if account is None or account["digest"] != self._digest(password, account["salt"]):
            raise AuthProviderError(AUTH_ERRORS["INVALID_LOGIN_CREDENTIALS"])
        return AuthUser(uid=account["uid"], email=account["email"], id_token=secrets.token_urlsafe(24))

    def sign_out(self, user):
        return None


class AuthService:
    def __init__(self, provider: IdentityProvider, store: DocumentStore,
                 matching: ContactMatchingService = None, default_region: str = DEFAULT_REGION):
        self.provider = provider
        self.store = store
        self.matching = matching or ContactMatchingService(store)
        self.default_region = default_region
        self.current_user: Optional[AuthUser] = None
        self._listeners: List[Callable[[Optional[AuthUser]], None]] = []

    def _set_current_user(self, user: Optional[AuthUser]):
        self.current_user = user
        for listener in list(self._listeners):
            try:
                listener(user)
            except Exception:
                log.exception("Auth state listener failed")

    def sign_in_with_email(self, email: str, password: str) -> AuthServiceResult:
        try:
            user = self.provider.sign_in(email, password)
        except Exception as e:
            log.error(f"Error signing in: {e}")
            return AuthServiceResult(success=False, error=str(e) or "Failed to sign in")
        self._set_current_user(user)
        return AuthServiceResult(success=True, user=user)

    def sign_up_with_email(self, sign_up_data: SignUpData) -> AuthServiceResult:
        phone = normalize_phone_number(sign_up_data.phone_number, self.default_region)
        if not phone.is_valid:
            return AuthServiceResult(success=False, error=phone.error)

        try:
            user = self.provider.sign_up(sign_up_data.email, sign_up_data.password)
        except Exception as e:
            log.error(f"Error signing up: {e}")
            return AuthServiceResult(success=False, error=str(e) or "Failed to create account")

        # the new account is signed in; listeners hear about it once the profile exists
        self.current_user = user
        try:
            self._create_user_profile(user, phone.normalized)
        except Exception as e:
            log.error(f"Error signing up: {e}")
            return AuthServiceResult(success=False, error=str(e) or "Failed to create account")
        finally:
            self._set_current_user(user)
        return AuthServiceResult(success=True, user=user)

    def _create_user_profile(self, user: AuthUser, phone_number: str):
        self.store.set(profile_path(user.uid), {
            "uid": user.uid,
            "email": user.email or "",
            "phoneNumber": phone_number,
            "createdAt": SERVER_TIMESTAMP,
            "preferences": {
                "tracking": True,
                "trackingInterval": 5,
            },
        })
        if not self.matching.register_user_phone_number(user.uid, phone_number, user.email or ""):
            log.warning(f"Phone number for {user.uid} was not registered for contact matching")

    def get_user_profile(self, uid: str) -> Optional[UserProfile]:
        data = self.store.get(profile_path(uid))
        if data is None:
            return None
        prefs = data.get("preferences") or {}
        return UserProfile(
            uid=data["uid"],
            email=data.get("email", ""),
            phone_number=data["phoneNumber"],
            created_at=data.get("createdAt"),
            preferences={
                "tracking": prefs.get("tracking", True),
                "tracking_interval": prefs.get("trackingInterval", 5),
            },
        )

    def sign_out(self) -> AuthServiceResult:
        try:
            if self.current_user is not None:
                self.provider.sign_out(self.current_user)
        except Exception as e:
            log.error(f"Error signing out: {e}")
            return AuthServiceResult(success=False, error=str(e) or "Failed to sign out")
        self._set_current_user(None)
        return AuthServiceResult(success=True)

    def get_current_user(self) -> Optional[AuthUser]:
        return self.current_user

    def get_id_token(self) -> Optional[str]:
        return self.current_user.id_token if self.current_user else None

    def on_auth_state_changed(self, callback: Callable[[Optional[AuthUser]], None]) -> Callable[[], None]:
        """Call ``callback`` now and on every sign in or out. Returns an unsubscribe function."""
        self._listeners.append(callback)
        callback(self.current_user)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe
