"""
Booking engine: the slot transitions behind the parking API.

Each operation reads a slot, applies one transition and writes it back with a
single-document save. Nothing serializes two operations on the same slot, so
a human booking and a sensor update that race are settled by whichever write
commits last.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from numbers import Real
from typing import Any, Callable, List, Optional

import errors
from schemas import (
    DETECTION_STATUSES,
    VEHICLE_TYPES,
    BookingReceipt,
    BookingSummary,
    ContactDetails,
    MLDetection,
    Slot,
    UserData,
)
from store import SlotStore, utcnow

logger = logging.getLogger(__name__)

BOOKING_FIELDS = ("isOccupied", "vehicleNumber", "bookedAt", "userData", "expectedDuration", "bookingStatus")
DETECTION_FIELDS = ("isOccupied", "mlDetection")

SECONDS_PER_HOUR = 3600


@dataclass
class BookingResult:
    slot: Slot
    summary: BookingSummary


@dataclass
class ReleaseResult:
    slot: Slot
    receipt: BookingReceipt


@dataclass
class DetectionResult:
    slot: Slot
    created: bool


def parse_slot_number(value: Any, field: str = "slotNumber") -> int:
    if value is None or isinstance(value, bool):
        raise errors.ValidationError(f"{field} is required and must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise errors.ValidationError(f"{field} is required and must be a number") from exc
    raise errors.ValidationError(f"{field} is required and must be a number")


def hours_parked(booked_at: Optional[datetime], now: datetime) -> Optional[int]:
    """Hours between booking and ``now``, rounded up; at least one."""
    if booked_at is None:
        return None
    elapsed = (now - booked_at).total_seconds() / SECONDS_PER_HOUR
    return max(1, math.ceil(elapsed))


class BookingEngine:
    def __init__(self, store: SlotStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def list_slots(self) -> List[Slot]:
        return self.store.list_all()

    def add_slot(self, slot_number: Any) -> Slot:
        number = parse_slot_number(slot_number)
        slot = self.store.create(Slot(slot_number=number))
        logger.info("Slot %s added", number)
        return slot

    def book_slot(
        self,
        slot_number: Any,
        vehicle_number: Optional[str],
        user_data: Optional[ContactDetails],
        expected_duration: Optional[float] = None,
        vehicle_type: Optional[str] = None,
    ) -> BookingResult:
        if (
            slot_number is None
            or not vehicle_number
            or user_data is None
            or not user_data.name
            or not user_data.phone_number
        ):
            raise errors.ValidationError(
                "Missing required fields. Please provide slotNumber, vehicleNumber, "
                "and user details (name and phone number)"
            )
        number = parse_slot_number(slot_number)
        if expected_duration is not None and (
            isinstance(expected_duration, bool)
            or not isinstance(expected_duration, Real)
            or expected_duration <= 0
        ):
            raise errors.ValidationError("expectedDuration must be a positive number of hours")
        vehicle_type = vehicle_type or "car"
        if vehicle_type not in VEHICLE_TYPES:
            raise errors.ValidationError(f"vehicleType must be one of {', '.join(VEHICLE_TYPES)}")

        slot = self.store.find_by_slot_number(number)
        if slot.is_occupied:
            raise errors.Conflict("Slot already occupied")

        slot.is_occupied = True
        slot.vehicle_number = vehicle_number
        slot.booked_at = self.clock()
        slot.user_data = UserData(
            name=user_data.name,
            phone_number=user_data.phone_number,
            email=user_data.email or None,
            vehicle_type=vehicle_type,
        )
        slot.expected_duration = expected_duration or 1
        slot.booking_status = "active"
        saved = self.store.save(slot, BOOKING_FIELDS)
        logger.info("Slot %s booked for vehicle %s", number, vehicle_number)

        summary = BookingSummary(
            slot_number=saved.slot_number,
            floor=saved.floor,
            booked_at=slot.booked_at,
            expected_duration=slot.expected_duration,
            vehicle_type=vehicle_type,
        )
        return BookingResult(slot=saved, summary=summary)

    def free_slot(self, slot_number: Any) -> ReleaseResult:
        number = parse_slot_number(slot_number)
        slot = self.store.find_by_slot_number(number)
        if not slot.is_occupied:
            raise errors.Conflict("Slot is already free")

        receipt = BookingReceipt(
            vehicle_number=slot.vehicle_number,
            user_data=slot.user_data.model_copy(),
            booked_at=slot.booked_at,
            duration=hours_parked(slot.booked_at, self.clock()),
            status="completed",
        )

        slot.is_occupied = False
        slot.vehicle_number = None
        slot.booked_at = None
        slot.user_data = UserData()
        slot.expected_duration = None
        slot.booking_status = "completed"
        saved = self.store.save(slot, BOOKING_FIELDS)
        logger.info("Slot %s freed after %s hour(s)", number, receipt.duration)
        return ReleaseResult(slot=saved, receipt=receipt)

    def apply_ml_detection(
        self,
        slot_id: Any,
        status: Optional[str],
        confidence: Optional[float],
        timestamp: Optional[datetime] = None,
    ) -> DetectionResult:
        """Record a sensor reading, creating the slot on first sight.

        The reading sets ``isOccupied`` unconditionally, including over an
        active human booking; the booking fields themselves are left alone.
        """
        if slot_id is None or not status or confidence is None:
            raise errors.ValidationError("Missing required ML detection data")
        number = parse_slot_number(slot_id, field="slotId")
        if status not in DETECTION_STATUSES:
            raise errors.ValidationError(f"status must be one of {', '.join(DETECTION_STATUSES)}")
        if isinstance(confidence, bool) or not isinstance(confidence, Real) or not 0 <= confidence <= 1:
            raise errors.ValidationError("confidence must be a number between 0 and 1")

        detection = MLDetection(last_update=timestamp or self.clock(), confidence=confidence, status=status)
        occupied = status == "occupied"

        if not self.store.exists(number):
            try:
                slot = self.store.create(
                    Slot(slot_number=number, is_occupied=occupied, ml_detection=detection)
                )
                logger.info("Slot %s created from ML detection (%s, %.2f)", number, status, confidence)
                return DetectionResult(slot=slot, created=True)
            except errors.DuplicateKey:
                # another writer created it first; fall through to the update
                pass

        slot = self.store.find_by_slot_number(number)
        slot.is_occupied = occupied
        slot.ml_detection = detection
        saved = self.store.save(slot, DETECTION_FIELDS)
        logger.info("Slot %s updated from ML detection (%s, %.2f)", number, status, confidence)
        return DetectionResult(slot=saved, created=False)
