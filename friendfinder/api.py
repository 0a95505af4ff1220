import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from friendfinder import __version__
from friendfinder.auth import AuthService, FirebaseIdentityProvider, MemoryIdentityProvider
from friendfinder.config import Settings, configure_logging, get_settings
from friendfinder.contacts import ContactsFormatError, read_contacts_csv
from friendfinder.firestore import FirestoreRestStore
from friendfinder.hashing import hash_phone_number
from friendfinder.matching import ContactMatchingService
from friendfinder.models import (
    AuthServiceResult,
    ContactMatchingResult,
    ContactSyncResult,
    PhoneNormalizationResult,
    RawContact,
    SignUpData,
)
from friendfinder.phone import normalize_contact, normalize_phone_number
from friendfinder.store import MemoryDocumentStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings())
    yield


app = FastAPI(title="Friend Finder API", version=__version__, lifespan=lifespan)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SignInRequest(BaseModel):
    email: str
    password: str


class RegisterPhoneRequest(BaseModel):
    phone_number: str
    email: str = ""


class PhoneNumbersRequest(BaseModel):
    phone_numbers: List[str]


class ContactsRequest(BaseModel):
    contacts: List[RawContact]


class KnownContactStatusRequest(BaseModel):
    is_active: bool


# Backends are built once per process
@lru_cache()
def build_store(settings: Settings):
    if settings.store_backend == "firestore":
        token = settings.firestore_access_token
        return FirestoreRestStore(settings.firebase_project_id, token_provider=lambda: token)
    return MemoryDocumentStore()


@lru_cache()
def build_identity_provider(settings: Settings):
    if settings.firebase_api_key:
        return FirebaseIdentityProvider(settings.firebase_api_key)
    return MemoryIdentityProvider()


def get_store(settings: Settings = Depends(get_settings)):
    return build_store(settings)


def get_identity_provider(settings: Settings = Depends(get_settings)):
    return build_identity_provider(settings)


def get_matching_service(store=Depends(get_store), settings: Settings = Depends(get_settings)):
    return ContactMatchingService(store, batch_size=settings.match_batch_size)


def get_auth_service(
    provider=Depends(get_identity_provider),
    store=Depends(get_store),
    matching: ContactMatchingService = Depends(get_matching_service),
    settings: Settings = Depends(get_settings),
):
    return AuthService(provider, store, matching, default_region=settings.default_region)


# Verify API Key
def verify_api_key(api_key: str = Depends(api_key_header), settings: Settings = Depends(get_settings)):
    if not settings.api_key or api_key != settings.api_key:
        log.warning("Rejected request with invalid or missing API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def raise_for_failure(error: str):
    if "permission" in (error or "").lower():
        raise HTTPException(status_code=403, detail=error)
    raise HTTPException(status_code=400, detail=error)


@app.post("/normalize", response_model=PhoneNormalizationResult, dependencies=[Depends(verify_api_key)])
def normalize(phone: str, region: str = None, settings: Settings = Depends(get_settings)):
    return normalize_phone_number(phone, (region or settings.default_region).upper())


@app.post("/hash", dependencies=[Depends(verify_api_key)])
def hash_single(phone: str, region: str = None, settings: Settings = Depends(get_settings)):
    result = normalize_phone_number(phone, (region or settings.default_region).upper())
    if not result.is_valid:
        raise HTTPException(status_code=400, detail=result.error)
    return {"normalized": result.normalized, "phone_hash": hash_phone_number(result.normalized)}


@app.post("/auth/signup", response_model=AuthServiceResult, dependencies=[Depends(verify_api_key)])
def sign_up(data: SignUpData, auth: AuthService = Depends(get_auth_service)):
    result = auth.sign_up_with_email(data)
    if not result.success:
        raise_for_failure(result.error)
    return result


@app.post("/auth/signin", response_model=AuthServiceResult, dependencies=[Depends(verify_api_key)])
def sign_in(data: SignInRequest, auth: AuthService = Depends(get_auth_service)):
    result = auth.sign_in_with_email(data.email, data.password)
    if not result.success:
        raise HTTPException(status_code=401, detail=result.error)
    return result


@app.post("/users/{uid}/phone", dependencies=[Depends(verify_api_key)])
def register_phone(
    uid: str,
    data: RegisterPhoneRequest,
    matching: ContactMatchingService = Depends(get_matching_service),
    settings: Settings = Depends(get_settings),
):
    phone = normalize_phone_number(data.phone_number, settings.default_region)
    if not phone.is_valid:
        raise HTTPException(status_code=400, detail=phone.error)
    if not matching.register_user_phone_number(uid, phone.normalized, data.email):
        raise HTTPException(status_code=500, detail="Failed to register phone number")
    return {"status": "success", "phone_number": phone.normalized}


@app.delete("/phone", dependencies=[Depends(verify_api_key)])
def unregister_phone(
    phone: str,
    matching: ContactMatchingService = Depends(get_matching_service),
    settings: Settings = Depends(get_settings),
):
    result = normalize_phone_number(phone, settings.default_region)
    if not result.is_valid:
        raise HTTPException(status_code=400, detail=result.error)
    if not matching.unregister_user_phone_number(result.normalized):
        raise HTTPException(status_code=500, detail="Failed to unregister phone number")
    return {"status": "success"}


@app.post("/matches", response_model=ContactMatchingResult, dependencies=[Depends(verify_api_key)])
def find_matches(
    data: PhoneNumbersRequest,
    matching: ContactMatchingService = Depends(get_matching_service),
    settings: Settings = Depends(get_settings),
):
    numbers = []
    for number in data.phone_numbers:
        result = normalize_phone_number(number, settings.default_region)
        if result.is_valid:
            numbers.append(result.normalized)
    result = matching.find_contact_matches(numbers)
    if not result.success:
        raise_for_failure(result.error)
    return result


def _sync(uid: str, raw: List[RawContact], matching: ContactMatchingService, settings: Settings):
    contacts = [normalize_contact(c, settings.default_region) for c in raw[:settings.contacts_page_size]]
    result = matching.store_known_contacts(uid, contacts)
    if not result.success:
        raise_for_failure(result.error)
    return result


@app.post("/users/{uid}/contacts/sync", response_model=ContactSyncResult, dependencies=[Depends(verify_api_key)])
def sync_contacts(
    uid: str,
    data: ContactsRequest,
    matching: ContactMatchingService = Depends(get_matching_service),
    settings: Settings = Depends(get_settings),
):
    return _sync(uid, data.contacts, matching, settings)


# CSV contacts upload & sync
@app.post("/users/{uid}/contacts/sync_csv", response_model=ContactSyncResult, dependencies=[Depends(verify_api_key)])
def sync_contacts_csv(
    uid: str,
    file: UploadFile = File(...),
    matching: ContactMatchingService = Depends(get_matching_service),
    settings: Settings = Depends(get_settings),
):
    if not file.filename.endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only CSV allowed")
    try:
        raw = read_contacts_csv(file.file)
    except (ContactsFormatError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _sync(uid, raw, matching, settings)


@app.get("/users/{uid}/known-contacts", response_model=ContactMatchingResult, dependencies=[Depends(verify_api_key)])
def known_contacts(uid: str, matching: ContactMatchingService = Depends(get_matching_service)):
    result = matching.get_known_contacts(uid)
    if not result.success:
        raise_for_failure(result.error)
    return result


@app.patch("/users/{uid}/known-contacts/{contact_id}", dependencies=[Depends(verify_api_key)])
def update_known_contact(
    uid: str,
    contact_id: str,
    data: KnownContactStatusRequest,
    matching: ContactMatchingService = Depends(get_matching_service),
):
    if not matching.update_known_contact_status(uid, contact_id, data.is_active):
        raise HTTPException(status_code=400, detail="Failed to update known contact")
    return {"status": "success", "is_active": data.is_active}


@app.delete("/users/{uid}/known-contacts/{contact_id}", dependencies=[Depends(verify_api_key)])
def delete_known_contact(uid: str, contact_id: str, matching: ContactMatchingService = Depends(get_matching_service)):
    if not matching.delete_known_contact(uid, contact_id):
        raise HTTPException(status_code=400, detail="Failed to delete known contact")
    return {"status": "success"}
