import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Callable, List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo import MongoClient

import errors
from booking import BookingEngine
from change_feed import ChangeFeed
from config import Settings, get_settings
from database import Database
from schemas import (
    AddSlotRequest,
    BookSlotRequest,
    ChangeEvent,
    FreeSlotRequest,
    MLUpdateRequest,
)
from store import SlotStore, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/parking")


def get_engine(request: Request) -> BookingEngine:
    return request.app.state.engine


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@router.get("")
def get_all_slots(request: Request):
    slots = get_engine(request).list_slots()
    logger.info("Found %d parking slots", len(slots))
    return [slot.to_json() for slot in slots]


@router.post("", status_code=201)
def add_slot(req: AddSlotRequest, request: Request):
    slot = get_engine(request).add_slot(req.slot_number)
    return slot.to_json()


@router.post("/book")
def book_slot(req: BookSlotRequest, request: Request):
    result = get_engine(request).book_slot(
        req.slot_number,
        req.vehicle_number,
        req.user_data,
        expected_duration=req.expected_duration,
        vehicle_type=req.vehicle_type,
    )
    return {
        "message": "Slot booked successfully",
        "slot": result.slot.to_json(),
        "bookingDetails": result.summary.to_json(),
    }


@router.post("/free")
def free_slot(req: FreeSlotRequest, request: Request):
    result = get_engine(request).free_slot(req.slot_number)
    return {
        "message": "Slot freed successfully",
        "bookingDetails": result.receipt.to_json(),
        "slot": result.slot.to_json(),
    }


@router.post("/ml-update")
def update_slot_from_ml(req: MLUpdateRequest, request: Request):
    result = get_engine(request).apply_ml_detection(
        req.slot_id, req.status, req.confidence, timestamp=req.timestamp
    )
    message = "New slot created from ML detection" if result.created else "Slot updated from ML detection"
    return JSONResponse(
        status_code=201 if result.created else 200,
        content={"success": True, "message": message, "slot": result.slot.to_json()},
    )


def format_sse(event: ChangeEvent) -> bytes:
    return f"event: {event.operation_type}\ndata: {json.dumps(event.to_json())}\n\n".encode("utf-8")


@router.get("/events")
async def slot_events(request: Request):
    feed: ChangeFeed = request.app.state.feed
    keepalive = request.app.state.settings.SSE_KEEPALIVE_SECONDS

    async def event_stream() -> AsyncGenerator[bytes, None]:
        subscription = feed.subscribe_async()
        try:
            # initial comment to open stream
            yield b":ok\n\n"
            while not await request.is_disconnected():
                event = await subscription.get(timeout=keepalive)
                if event is not None:
                    yield format_sse(event)
                elif subscription.closed:
                    break
                else:
                    yield b":keepalive\n\n"
        finally:
            subscription.close()

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[MongoClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(settings, client=client).connect()
        feed = ChangeFeed(max_queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
        app.state.database = database
        app.state.feed = feed
        app.state.engine = BookingEngine(SlotStore(database.slots, feed=feed, clock=clock), clock=clock)
        try:
            yield
        finally:
            feed.close()
            database.close()

    app = FastAPI(title="Smart Parking API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(errors.ParkingError)
    async def parking_error_handler(request: Request, exc: errors.ParkingError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems: List[str] = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return error_response(400, "Invalid request: " + "; ".join(problems))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Something went wrong!")

    @app.get("/")
    def read_root():
        return {"message": "Smart Parking API is running"}

    @app.get("/test")
    def test_database(request: Request):
        database: Database = request.app.state.database
        response = {
            "backend": "✅ Running",
            "database": "✅ Connected" if database.ping() else "❌ Not Available",
        }
        try:
            response["collections"] = database.collection_names()
        except Exception as e:
            response["database"] = f"⚠️ {str(e)[:50]}"
        return response

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
