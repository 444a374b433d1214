from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Coordinates = Tuple[float, float]


class StoredModel(BaseModel):
    """Shape of a record kept in the store: camelCase keys, unknown keys kept."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class EmergencyType(str, Enum):
    HARASSMENT = "harassment"
    STALKING = "stalking"
    ASSAULT = "assault"
    ROBBERY = "robbery"
    MEDICAL = "medical"
    ACCIDENT = "accident"
    OTHER = "other"


class User(StoredModel):
    id: str
    full_name: str = ""
    email: str = ""
    phone_number: str = ""
    city: str = ""
    password: str = ""
    has_bracelet: bool = False
    bracelet_verified: bool = False
    bracelet_code: Optional[str] = None
    bracelet_verified_at: Optional[str] = None
    trusted_contacts: List[str] = Field(default_factory=list)
    trusted_by: List[str] = Field(default_factory=list)


class ChunkRef(StoredModel):
    id: str
    timestamp: str


class AlertRecord(StoredModel):
    id: Optional[str] = None
    user_id: str
    user_name: str = ""
    timestamp: str
    location: Optional[Coordinates] = None
    active: bool = False
    doubt_mode: bool = False
    bracelet_code: Optional[str] = None
    play_alarm_on_contact: bool = False
    audio_chunks: List[str] = Field(default_factory=list)
    latest_chunk: Optional[ChunkRef] = None
    live_stream_active: bool = False
    cancelled_at: Optional[str] = None
    was_real_emergency: Optional[bool] = None
    cancellation_reason: Optional[str] = None
    emergency_type: Optional[EmergencyType] = None


class LocationSlot(StoredModel):
    location: Coordinates
    timestamp: str


# --- Request models --- #

class UserCreate(BaseModel):
    full_name: str = ""
    email: str = ""
    phone_number: str = ""
    city: str = ""
    password: str = ""
    confirm_password: str = ""


class UserLogin(BaseModel):
    email: str = ""
    password: str = ""


class Token(BaseModel):
    access_token: str
    token_type: str
    full_name: str = ""
    user_id: str = ""


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    city: Optional[str] = None
    has_bracelet: Optional[bool] = None


class BraceletSelection(BaseModel):
    has_bracelet: bool


class BraceletVerification(BaseModel):
    code: str = ""


class LocationUpdate(BaseModel):
    lat: float
    lon: float


class TriggerRequest(BaseModel):
    doubt_mode: bool = False
    lat: Optional[float] = None
    lon: Optional[float] = None


class CancelRequest(BaseModel):
    was_real_emergency: bool = False
    emergency_type: Optional[EmergencyType] = None


class StreamToggle(BaseModel):
    active: bool


class AudioChunkUpload(BaseModel):
    chunk_id: str


# --- Response models --- #

class UserPublic(StoredModel):
    id: str
    full_name: str = ""
    email: str = ""
    phone_number: str = ""
    city: str = ""
    has_bracelet: bool = False
    bracelet_verified: bool = False
    bracelet_code: Optional[str] = None
    trusted_contacts: List[str] = Field(default_factory=list)
    trusted_by: List[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls.model_validate(user.model_dump(include=set(cls.model_fields)))


class AlarmStatus(StoredModel):
    state: str
    alert: Optional[AlertRecord] = None
    elapsed_seconds: int = 0
    elapsed: str = "00:00"
    recording: bool = False
    contacts_notified: int = 0


class NotificationView(StoredModel):
    user_id: str
    user_name: str
    timestamp: str
    time_ago: str
    location: Optional[Coordinates] = None
    doubt_mode: bool = False
    play_alarm_on_contact: bool = False


class DashboardView(StoredModel):
    notifications: List[NotificationView] = Field(default_factory=list)
    tone_playing: bool = False
    muted: bool = False


class TrackingView(StoredModel):
    user: UserPublic
    alert: AlertRecord
    location: Optional[Coordinates] = None
    location_updated_at: Optional[str] = None
    audio_duration: str = "00:00"
    latest_chunk_label: Optional[str] = None


class HistoryEntry(StoredModel):
    user_id: str
    user_name: str
    status: str
    alert: AlertRecord


class HistoryView(StoredModel):
    sent: List[HistoryEntry] = Field(default_factory=list)
    received: List[HistoryEntry] = Field(default_factory=list)


class Zone(StoredModel):
    position: Coordinates
    is_safe: bool
    radius: float


class SafeWalkView(StoredModel):
    center: Coordinates
    label: str
    points: List[Tuple[float, float, float]]
    zones: List[Zone]
