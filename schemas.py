"""
Schemas for the Smart Parking API

Slot documents live in the ``parkingslots`` MongoDB collection. Field names are
snake_case in Python and camelCase in stored documents and JSON bodies
(``slotNumber``, ``isOccupied``, ...), so every field declares its alias.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

VehicleType = Literal["car", "bike", "truck"]
BookingStatus = Literal["active", "completed", "cancelled"]
DetectionStatus = Literal["empty", "occupied", "uncertain"]
OperationType = Literal["insert", "update", "delete"]

VEHICLE_TYPES = ("car", "bike", "truck")
DETECTION_STATUSES = ("empty", "occupied", "uncertain")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # MongoDB hands back naive datetimes that are implicitly UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DocumentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        """Dump for storage: aliased keys, native datetimes, no ``_id``."""
        return self.model_dump(by_alias=True, exclude={"id"})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class UserData(DocumentModel):
    name: Optional[str] = Field(None, description="Name of the person holding the booking")
    phone_number: Optional[str] = Field(None, alias="phoneNumber", description="Contact phone number")
    email: Optional[str] = Field(None, description="Contact email")
    vehicle_type: VehicleType = Field("car", alias="vehicleType", description="Kind of vehicle parked")


class MLDetection(DocumentModel):
    last_update: datetime = Field(..., alias="lastUpdate", description="When the sensor last reported")
    confidence: float = Field(..., ge=0, le=1, description="Classifier confidence")
    status: DetectionStatus = Field(..., description="Sensor occupancy classification")

    @field_validator("last_update")
    @classmethod
    def last_update_utc(cls, value):
        return as_utc(value)


class Slot(DocumentModel):
    id: Optional[str] = Field(None, alias="_id", description="Store identifier")
    slot_number: int = Field(..., alias="slotNumber", description="Unique, immutable slot number")
    floor: int = Field(1, description="Floor the slot is on")
    is_occupied: bool = Field(False, alias="isOccupied", description="Whether the slot is currently taken")
    vehicle_number: Optional[str] = Field(None, alias="vehicleNumber", description="Plate of the parked vehicle")
    booked_at: Optional[datetime] = Field(None, alias="bookedAt", description="Start of the current booking")
    user_data: UserData = Field(default_factory=UserData, alias="userData")
    expected_duration: Optional[float] = Field(
        None, alias="expectedDuration", gt=0, description="Expected stay in hours"
    )
    booking_status: BookingStatus = Field("active", alias="bookingStatus", description="Booking lifecycle state")
    ml_detection: Optional[MLDetection] = Field(None, alias="mlDetection", description="Advisory sensor reading")

    @field_validator("booked_at")
    @classmethod
    def booked_at_utc(cls, value):
        return as_utc(value)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return str(value) if value is not None else None

    @field_validator("user_data", mode="before")
    @classmethod
    def default_user_data(cls, value):
        return UserData() if value is None else value


# Fields a save() may write; slotNumber is immutable once created.
MUTABLE_FIELDS = (
    "floor",
    "isOccupied",
    "vehicleNumber",
    "bookedAt",
    "userData",
    "expectedDuration",
    "bookingStatus",
    "mlDetection",
)


class BookingSummary(DocumentModel):
    slot_number: int = Field(..., alias="slotNumber")
    floor: int
    booked_at: datetime = Field(..., alias="bookedAt")
    expected_duration: float = Field(..., alias="expectedDuration")
    vehicle_type: VehicleType = Field(..., alias="vehicleType")


class BookingReceipt(DocumentModel):
    vehicle_number: Optional[str] = Field(None, alias="vehicleNumber")
    user_data: UserData = Field(..., alias="userData")
    booked_at: Optional[datetime] = Field(None, alias="bookedAt")
    duration: Optional[int] = Field(None, description="Hours parked, rounded up")
    status: BookingStatus = "completed"


class ChangeEvent(DocumentModel):
    operation_type: OperationType = Field(..., alias="operationType")
    slot_number: Optional[int] = Field(None, alias="slotNumber", description="Unknown for deletes")
    full_document: Optional[Dict[str, Any]] = Field(None, alias="fullDocument")
    updated_fields: Optional[Dict[str, Any]] = Field(
        None, alias="updatedFields", description="Dotted-path delta of an update"
    )
    removed_fields: List[str] = Field(default_factory=list, alias="removedFields")
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, value):
        return as_utc(value)


# --- Request bodies -----------------------------------------------------------
# Presence checks live in the booking engine so every missing field maps to 400.

class AddSlotRequest(DocumentModel):
    slot_number: Optional[int] = Field(None, alias="slotNumber")


class ContactDetails(DocumentModel):
    name: Optional[str] = None
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    email: Optional[str] = None


class BookSlotRequest(DocumentModel):
    slot_number: Optional[int] = Field(None, alias="slotNumber")
    vehicle_number: Optional[str] = Field(None, alias="vehicleNumber")
    user_data: Optional[ContactDetails] = Field(None, alias="userData")
    expected_duration: Optional[float] = Field(None, alias="expectedDuration")
    vehicle_type: Optional[str] = Field(None, alias="vehicleType")


class FreeSlotRequest(DocumentModel):
    slot_number: Optional[int] = Field(None, alias="slotNumber")


class MLUpdateRequest(DocumentModel):
    slot_id: Optional[int] = Field(None, alias="slotId")
    status: Optional[str] = None
    confidence: Optional[float] = None
    timestamp: Optional[datetime] = None
