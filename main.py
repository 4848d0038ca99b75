import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aggregate import health_counts, snapshot
from auth import AdminSession, SessionStore, require_admin
from database import Record, Store, create_store
from errors import ApiError, InvalidCredentials, NotFound, StorageError
from notifications import WebhookNotifier
from registry import (
    GIVEAWAYS,
    LIVE_MATCHES,
    PLAYERS,
    TEAMS,
    TOURNAMENT_REGISTRATIONS,
    TOURNAMENTS,
    UPCOMING_MATCHES,
    VERIFICATION_REQUESTS,
    require_collection,
)
from schemas import (
    CollectionReplace,
    LoginRequest,
    RegistrationCreate,
    StatusUpdate,
    VerificationCreate,
    VerificationReview,
    normalize_iso_date,
    utc_now_iso,
)
from settings import Settings
from validators import KeyedLocks, register_team, submit_verification

logger = logging.getLogger(__name__)

router = APIRouter()
api = APIRouter(prefix="/api")


def get_store(request: Request) -> Store:
    return request.app.state.store


def normalize_record(collection: str, record: Record) -> Record:
    """Per-collection write rules that apply to every admin write."""
    if collection == UPCOMING_MATCHES and "date" in record:
        return {**record, "date": normalize_iso_date(record["date"])}
    return record


# ----------------------
# Basic endpoints
# ----------------------
@router.get("/")
def read_root():
    return {"message": "VMNC Esports API is running"}


@router.get("/ping", response_class=PlainTextResponse)
def ping():
    return "pong"


@router.get("/test")
async def test_database(store: Store = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "storage_backend": store.backend,
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") or os.getenv("MONGODB_URI") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if await store.ping():
            response["connection_status"] = "Connected"
            response["collections"] = await store.collection_names()
            response["database"] = "✅ Connected & Working"
    except StorageError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@api.get("/health")
async def health(store: Store = Depends(get_store)):
    return {"status": "ok", "database": store.backend, "data": await health_counts(store)}


@api.get("/data")
async def get_all_data(store: Store = Depends(get_store)):
    return await snapshot(store)


# ----------------------
# Public collections
# ----------------------
@api.get("/players")
async def list_players(store: Store = Depends(get_store)):
    return await store.fetch_all(PLAYERS)


@api.get("/teams")
async def list_teams(store: Store = Depends(get_store)):
    return await store.fetch_all(TEAMS)


@api.get("/tournaments")
async def list_tournaments(store: Store = Depends(get_store)):
    return await store.fetch_all(TOURNAMENTS)


@api.get("/giveaways")
async def list_giveaways(store: Store = Depends(get_store)):
    return await store.fetch_all(GIVEAWAYS)


# ----------------------
# Matches
# ----------------------
@api.get("/live-matches")
async def list_matches(store: Store = Depends(get_store)):
    return {
        "liveMatches": await store.fetch_all(LIVE_MATCHES),
        "upcomingMatches": await store.fetch_all(UPCOMING_MATCHES),
    }


@api.get("/live-matches/current")
async def current_live_matches(store: Store = Depends(get_store)):
    return await store.find(LIVE_MATCHES, {"status": "LIVE"})


@api.get("/upcoming-matches")
async def upcoming_matches(store: Store = Depends(get_store)):
    return await store.find(UPCOMING_MATCHES, {"date": {"$gte": utc_now_iso()}}, sort=[("date", 1)])


# ----------------------
# Tournament registrations
# ----------------------
@api.post("/tournament-registrations")
async def create_registration(payload: RegistrationCreate, request: Request,
                              store: Store = Depends(get_store)):
    record = await register_team(store, request.app.state.locks, payload)
    request.app.state.notifier.notify_registration(record)
    return {"success": True, "message": "Registration submitted successfully", "registrationId": record["id"]}


@api.get("/tournament-registrations/{tournament_id}")
async def registrations_for_tournament(tournament_id: str, store: Store = Depends(get_store)):
    return await store.find(TOURNAMENT_REGISTRATIONS, {"tournamentId": tournament_id},
                            sort=[("registeredAt", -1)])


@api.get("/user-registrations/{user_id}")
async def registrations_for_user(user_id: str, store: Store = Depends(get_store)):
    return await store.find(TOURNAMENT_REGISTRATIONS, {"userId": user_id}, sort=[("registeredAt", -1)])


@api.get("/tournament-registrations")
async def list_registrations(store: Store = Depends(get_store), _: AdminSession = Depends(require_admin)):
    return await store.find(TOURNAMENT_REGISTRATIONS, {}, sort=[("registeredAt", -1)])


@api.put("/tournament-registrations/{registration_id}")
async def update_registration_status(registration_id: str, payload: StatusUpdate,
                                     store: Store = Depends(get_store),
                                     _: AdminSession = Depends(require_admin)):
    updated = await store.update_one(TOURNAMENT_REGISTRATIONS, registration_id,
                                     {"status": payload.status, "updatedAt": utc_now_iso()})
    if not updated:
        raise NotFound("Registration not found")
    return {"success": True, "message": f"Registration {payload.status}"}


@api.delete("/tournament-registrations/{registration_id}")
async def delete_registration(registration_id: str, store: Store = Depends(get_store),
                              _: AdminSession = Depends(require_admin)):
    if not await store.delete_one(TOURNAMENT_REGISTRATIONS, registration_id):
        raise NotFound("Registration not found")
    return {"success": True, "message": "Registration deleted"}


# ----------------------
# Verification requests
# ----------------------
@api.post("/verification-requests")
async def create_verification_request(payload: VerificationCreate, request: Request,
                                      store: Store = Depends(get_store)):
    record = await submit_verification(store, request.app.state.locks, payload)
    return {"success": True, "message": "Verification request submitted", "requestId": record["id"]}


@api.get("/verification-requests/user/{discord_id}")
async def verification_requests_for_user(discord_id: str, store: Store = Depends(get_store)):
    return await store.find(VERIFICATION_REQUESTS, {"discord_id": discord_id}, sort=[("requested_at", -1)])


@api.get("/verification-requests")
async def list_verification_requests(store: Store = Depends(get_store),
                                     _: AdminSession = Depends(require_admin)):
    return await store.find(VERIFICATION_REQUESTS, {}, sort=[("requested_at", -1)])


@api.put("/verification-requests/{request_id}")
async def review_verification_request(request_id: str, payload: VerificationReview,
                                      store: Store = Depends(get_store),
                                      _: AdminSession = Depends(require_admin)):
    fields = {
        "status": payload.status,
        "reviewed": True,
        "reviewed_by": payload.reviewed_by or "admin",
        "reviewed_at": utc_now_iso(),
    }
    if not await store.update_one(VERIFICATION_REQUESTS, request_id, fields):
        raise NotFound("Verification request not found")
    return {"success": True, "message": f"Verification request {payload.status}"}


@api.delete("/verification-requests/{request_id}")
async def delete_verification_request(request_id: str, store: Store = Depends(get_store),
                                      _: AdminSession = Depends(require_admin)):
    if not await store.delete_one(VERIFICATION_REQUESTS, request_id):
        raise NotFound("Verification request not found")
    return {"success": True, "message": "Verification request deleted"}


# ----------------------
# Admin
# ----------------------
@api.post("/admin/login")
def admin_login(payload: LoginRequest, request: Request):
    try:
        token = request.app.state.sessions.login(payload.password)
    except InvalidCredentials as e:
        logger.warning("Failed admin login attempt")
        return JSONResponse(status_code=401, content={"success": False, "error": e.message, "message": e.message})
    logger.info("Admin logged in")
    return {"success": True, "token": token, "message": "Login successful"}


@api.post("/admin/logout")
def admin_logout(request: Request, session: AdminSession = Depends(require_admin)):
    request.app.state.sessions.logout(session.token)
    return {"success": True, "message": "Logged out"}


@api.get("/admin/data")
async def admin_data(store: Store = Depends(get_store), _: AdminSession = Depends(require_admin)):
    return await snapshot(store)


@api.post("/admin/update")
async def replace_collection(payload: CollectionReplace, store: Store = Depends(get_store),
                             _: AdminSession = Depends(require_admin)):
    collection = require_collection(payload.type)
    records = [normalize_record(collection, r) for r in payload.data]
    count = await store.replace_all(collection, records)
    logger.info(f"Replaced {collection} with {count} records")
    return {"success": True, "message": f"{collection} updated successfully", "count": count}


@api.post("/admin/{collection}")
async def admin_create(collection: str, record: Dict[str, Any] = Body(...),
                       store: Store = Depends(get_store), _: AdminSession = Depends(require_admin)):
    require_collection(collection)
    record_id = await store.insert_one(collection, normalize_record(collection, record))
    return {"success": True, "id": record_id}


@api.put("/admin/{collection}/{record_id}")
async def admin_update(collection: str, record_id: str, fields: Dict[str, Any] = Body(...),
                       store: Store = Depends(get_store), _: AdminSession = Depends(require_admin)):
    require_collection(collection)
    fields = normalize_record(collection, fields)
    if collection == TOURNAMENT_REGISTRATIONS:
        fields = {**fields, "updatedAt": utc_now_iso()}
    if not await store.update_one(collection, record_id, fields):
        raise NotFound(f"Record {record_id} not found in {collection}")
    return {"success": True}


@api.delete("/admin/{collection}/{record_id}")
async def admin_delete(collection: str, record_id: str, store: Store = Depends(get_store),
                       _: AdminSession = Depends(require_admin)):
    require_collection(collection)
    if not await store.delete_one(collection, record_id):
        raise NotFound(f"Record {record_id} not found in {collection}")
    return {"success": True}


# ----------------------
# Error handling
# ----------------------
def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        # Routes match on method and path together, so a wrong method is an unknown route
        if exc.status_code in (404, 405):
            return JSONResponse(status_code=404, content={"error": "Route not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ----------------------
# FastAPI app + CORS
# ----------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    store: Store = app.state.store
    logger.info(f"Starting VMNC Esports API with {store.backend} storage")
    # A store that cannot connect stops startup
    await store.connect()
    if not app.state.settings.admin_password:
        logger.warning("ADMIN_PASSWORD is not set; admin login is disabled")
    try:
        yield
    finally:
        await app.state.notifier.aclose()
        await store.close()


def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None,
               sessions: Optional[SessionStore] = None,
               notifier: Optional[WebhookNotifier] = None) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(title="VMNC Esports API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store or create_store(settings)
    app.state.sessions = sessions or SessionStore(settings.admin_password,
                                                  timedelta(hours=settings.session_ttl_hours))
    app.state.notifier = notifier or WebhookNotifier(settings.discord_webhook_url, settings.webhook_timeout)
    app.state.locks = KeyedLocks()

    register_error_handlers(app)
    app.include_router(router)
    app.include_router(api)
    return app


settings = Settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
