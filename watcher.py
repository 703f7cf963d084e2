#!/usr/bin/env python3
"""
Live monitor for parking slot changes.

Usage:
    python watcher.py [--style text|emoji] [--color auto|always|never]
                      [--retry-delay SECONDS] [--max-retry-delay SECONDS]

Tails the ``parkingslots`` change stream and prints one block per change.
Lost connectivity is retried with a growing, capped delay; any other error
while setting up the watch ends the process with exit code 1.
"""
import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import ConnectionFailure, PyMongoError

import errors
from change_feed import MongoChangeSource
from config import get_settings
from database import Database
from schemas import ChangeEvent

logger = logging.getLogger("watcher")

SEPARATOR = "-----------------------------------"


COLORS = {
    "insert": "\033[32m",  # green
    "update": "\033[33m",  # yellow
    "delete": "\033[31m",  # red
}
RESET = "\033[0m"


class Renderer:
    """Turns a change event into display lines, using only the fields it carries.

    With ``color`` set, every line but the separator is wrapped in the ANSI
    colour of the event's operation.
    """

    def __init__(self, color: bool = False):
        self.color = color

    def render(self, event: ChangeEvent) -> List[str]:
        stamp = event.timestamp.astimezone().strftime("%H:%M:%S")
        if event.operation_type == "insert":
            lines = self.inserted(stamp, event.slot_number)
        elif event.operation_type == "update":
            lines = self.updated(stamp, event.slot_number)
            lines.extend(self.changes(self._fields(event)))
        else:
            lines = self.deleted(stamp, event.slot_number)
        if self.color:
            code = COLORS.get(event.operation_type, "")
            lines = [f"{code}{line}{RESET}" for line in lines]
        lines.append(SEPARATOR)
        return lines

    @staticmethod
    def _fields(event: ChangeEvent) -> Dict[str, Any]:
        if event.updated_fields is not None:
            return event.updated_fields
        # replace-style events carry only the full document
        fields: Dict[str, Any] = {}
        for key, value in (event.full_document or {}).items():
            if isinstance(value, dict) and key == "userData":
                fields.update({f"{key}.{k}": v for k, v in value.items()})
            else:
                fields[key] = value
        return fields

    @staticmethod
    def _booker(fields: Dict[str, Any]) -> Optional[str]:
        if fields.get("userData.name"):
            return fields["userData.name"]
        user_data = fields.get("userData")
        if isinstance(user_data, dict):
            return user_data.get("name")
        return None

    def changes(self, fields: Dict[str, Any]) -> List[str]:
        lines: List[str] = []
        booker = self._booker(fields)
        if booker:
            lines.append(self.booking_line(booker))
            if "vehicleNumber" in fields:
                lines.append(self.vehicle_line(fields["vehicleNumber"]))
            if "expectedDuration" in fields:
                lines.append(self.duration_line(fields["expectedDuration"]))
        if "isOccupied" in fields:
            lines.append(self.occupancy_line(bool(fields["isOccupied"])))
        detection = fields.get("mlDetection")
        if isinstance(detection, dict) and detection.get("status"):
            lines.append(self.detection_line(detection["status"], detection.get("confidence")))
        return lines

    def inserted(self, stamp: str, slot_number: Optional[int]) -> List[str]:
        label = f"Slot #{slot_number}" if slot_number is not None else "Slot number unknown"
        return [f"[{stamp}] New parking slot created:", label]

    def updated(self, stamp: str, slot_number: Optional[int]) -> List[str]:
        suffix = f" #{slot_number}" if slot_number is not None else ""
        return [f"[{stamp}] Parking slot{suffix} updated:"]

    def deleted(self, stamp: str, slot_number: Optional[int]) -> List[str]:
        suffix = f" #{slot_number}" if slot_number is not None else ""
        return [f"[{stamp}] Parking slot{suffix} deleted"]

    def booking_line(self, name: str) -> str:
        return f"New booking by: {name}"

    def vehicle_line(self, vehicle_number: Any) -> str:
        return f"Vehicle: {vehicle_number}"

    def duration_line(self, hours: Any) -> str:
        return f"Duration: {hours} hours"

    def occupancy_line(self, occupied: bool) -> str:
        return f"Slot status changed: {'Occupied' if occupied else 'Available'}"

    def detection_line(self, status: str, confidence: Any) -> str:
        if confidence is None:
            return f"Sensor reports: {status}"
        try:
            share = float(confidence)
        except (TypeError, ValueError):
            return f"Sensor reports: {status} (confidence {confidence})"
        return f"Sensor reports: {status} ({share:.0%} confidence)"


TextRenderer = Renderer


class EmojiRenderer(Renderer):
    def inserted(self, stamp, slot_number):
        return [f"[{stamp}] ✨ New slot created: #{slot_number if slot_number is not None else '?'}"]

    def booking_line(self, name):
        return f"👤 New booking by: {name}"

    def vehicle_line(self, vehicle_number):
        return f"🚗 Vehicle: {vehicle_number}"

    def duration_line(self, hours):
        return f"⏱️ Duration: {hours} hours"

    def occupancy_line(self, occupied):
        return "🔴 Slot occupied" if occupied else "🟢 Slot available"

    def detection_line(self, status, confidence):
        return "📷 " + super().detection_line(status, confidence)


RENDERERS = {"text": TextRenderer, "emoji": EmojiRenderer}


class Watcher:
    def __init__(
        self,
        source,
        renderer: Optional[Renderer] = None,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        stop: Optional[threading.Event] = None,
        write: Callable[[str], None] = print,
    ):
        self.source = source
        self.renderer = renderer or TextRenderer()
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.stop = stop or threading.Event()
        self.write = write

    def run(self) -> int:
        """Watch until stopped (0) or a non-connectivity error occurs (1)."""
        delay = self.retry_delay
        while not self.stop.is_set():
            try:
                with self.source.subscribe() as subscription:
                    logger.info("Watching for parking slot changes...")
                    delay = self.retry_delay
                    for event in subscription.events(self.stop):
                        for line in self.renderer.render(event):
                            self.write(line)
                if not self.stop.is_set():
                    logger.warning("Change stream closed. Resubscribing in %.1fs", delay)
                    self.stop.wait(delay)
            except (ConnectionFailure, errors.StoreUnavailable) as exc:
                logger.warning("Lost connection to MongoDB (%s). Retrying in %.1fs", exc, delay)
                self.stop.wait(delay)
                delay = min(delay * 2, self.max_retry_delay)
            except PyMongoError as exc:
                logger.error("Error setting up watch: %s", exc)
                return 1
        logger.info("Watcher stopped")
        return 0


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Watch parking slot changes as they happen")
    parser.add_argument("--style", choices=sorted(RENDERERS), default="text", help="Output style")
    parser.add_argument(
        "--color", choices=("auto", "always", "never"), default="auto",
        help="Colour lines by operation (auto: only when stdout is a terminal)",
    )
    parser.add_argument(
        "--retry-delay", type=float, default=settings.WATCH_RETRY_DELAY,
        help="Initial delay between reconnect attempts (seconds)",
    )
    parser.add_argument(
        "--max-retry-delay", type=float, default=settings.WATCH_MAX_RETRY_DELAY,
        help="Upper bound for the reconnect delay (seconds)",
    )
    return parser


def use_color(mode: str, stream=None) -> bool:
    if mode == "auto":
        stream = stream or sys.stdout
        return stream.isatty()
    return mode == "always"


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    database = Database(settings).connect(ensure_indexes=False)
    try:
        watcher = Watcher(
            MongoChangeSource(database.slots, max_await_ms=settings.WATCH_MAX_AWAIT_MS),
            renderer=RENDERERS[args.style](color=use_color(args.color)),
            retry_delay=args.retry_delay,
            max_retry_delay=args.max_retry_delay,
            stop=stop,
        )
        print("Press Ctrl+C to stop watching\n")
        return watcher.run()
    finally:
        database.close()


if __name__ == "__main__":
    sys.exit(main())
