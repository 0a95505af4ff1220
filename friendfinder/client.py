import os

import requests

DEFAULT_TIMEOUT = 300


class ApiError(Exception):
    def __init__(self, status_code: int, detail):
        super().__init__(f"Error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class FriendFinderClient:
    """Thin client for the friendfinder HTTP API."""

    def __init__(self, base_url: str, api_key: str, timeout: float = DEFAULT_TIMEOUT, session: requests.Session = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs):
        response = self.session.request(
            method,
            f"{self.base_url}{path}",
            headers={"X-API-Key": self.api_key},
            timeout=self.timeout,
            **kwargs,
        )
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ApiError(response.status_code, detail)
        return response.json()

    def normalize(self, phone: str, region: str = None) -> dict:
        params = {"phone": phone}
        if region:
            params["region"] = region
        return self._request("POST", "/normalize", params=params)

    def hash_phone(self, phone: str, region: str = None) -> dict:
        params = {"phone": phone}
        if region:
            params["region"] = region
        return self._request("POST", "/hash", params=params)

    def sign_up(self, email: str, password: str, phone_number: str) -> dict:
        return self._request("POST", "/auth/signup",
                             json={"email": email, "password": password, "phone_number": phone_number})

    def sign_in(self, email: str, password: str) -> dict:
        return self._request("POST", "/auth/signin", json={"email": email, "password": password})

    def register_phone(self, uid: str, phone_number: str, email: str = "") -> dict:
        return self._request("POST", f"/users/{uid}/phone", json={"phone_number": phone_number, "email": email})

    def unregister_phone(self, phone_number: str) -> dict:
        return self._request("DELETE", "/phone", params={"phone": phone_number})

    def find_matches(self, phone_numbers) -> dict:
        return self._request("POST", "/matches", json={"phone_numbers": list(phone_numbers)})

    def sync_contacts(self, uid: str, contacts) -> dict:
        """``contacts`` are dicts with ``id``, ``name`` and ``phone_numbers``."""
        return self._request("POST", f"/users/{uid}/contacts/sync", json={"contacts": list(contacts)})

    def sync_contacts_csv(self, uid: str, csv_path: str) -> dict:
        with open(csv_path, "rb") as f:
            files = {"file": (os.path.basename(csv_path), f, "text/csv")}
            return self._request("POST", f"/users/{uid}/contacts/sync_csv", files=files)

    def known_contacts(self, uid: str) -> dict:
        return self._request("GET", f"/users/{uid}/known-contacts")

    def set_known_contact_active(self, uid: str, contact_id: str, is_active: bool) -> dict:
        return self._request("PATCH", f"/users/{uid}/known-contacts/{contact_id}", json={"is_active": is_active})

    def delete_known_contact(self, uid: str, contact_id: str) -> dict:
        return self._request("DELETE", f"/users/{uid}/known-contacts/{contact_id}")
