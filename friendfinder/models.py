from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class PhoneNormalizationResult(BaseModel):
    original: Optional[str] = None
    normalized: Optional[str] = None
    is_valid: bool = False
    country: Optional[str] = None
    error: Optional[str] = None


class RawContact(BaseModel):
    """A contact as read from the address book, before normalization."""

    id: Optional[str] = None
    name: Optional[str] = None
    phone_numbers: List[str] = Field(default_factory=list)


class NormalizedContact(BaseModel):
    id: str = ""
    name: str = "Unknown Contact"
    original_phone_numbers: List[str] = Field(default_factory=list)
    normalized_phone_numbers: List[str] = Field(default_factory=list)
    has_valid_phone_numbers: bool = False


class ContactPermissionResult(BaseModel):
    granted: bool
    can_ask_again: bool
    status: PermissionStatus


class ContactServiceResult(BaseModel):
    success: bool
    data: Optional[list] = None
    error: Optional[str] = None


class ContactMatch(BaseModel):
    uid: str
    email: str = ""
    phone_number: str
    matched_at: datetime
    contact_name: str = ""
    is_active: bool = True


class ContactMatchingResult(BaseModel):
    success: bool
    matches: Optional[List[ContactMatch]] = None
    error: Optional[str] = None


class ContactSyncResult(BaseModel):
    success: bool
    processed_count: int = 0
    matched_count: int = 0
    error: Optional[str] = None


class AuthUser(BaseModel):
    uid: str
    email: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None


class AuthServiceResult(BaseModel):
    success: bool
    user: Optional[AuthUser] = None
    error: Optional[str] = None


class SignUpData(BaseModel):
    email: str
    password: str
    phone_number: str


class UserPreferences(BaseModel):
    tracking: bool = True
    # minutes
    tracking_interval: int = 5


class UserProfile(BaseModel):
    uid: str
    email: str = ""
    phone_number: str
    created_at: Optional[datetime] = None
    preferences: UserPreferences = Field(default_factory=UserPreferences)
