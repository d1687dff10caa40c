import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from . import db as db_module
from .admin_auth import AdminGate, SessionStore, admin_session_required, iso, require_csrf
from .audit import audit, configure_logging, get_ip
from .background import TaskRegistry
from .errors import AppError, BadRequest, NotFound, OriginNotAllowed, RateLimited, SpamDetected
from .image_store import ImageStore, LocalImageStore, build_image_store
from .leads import LeadService
from .mailer import SendGridMailer
from .ratelimit import SlidingWindowLimiter
from .settings import Settings, settings as default_settings
from .vehicles import Upload, VehicleService

logger = logging.getLogger(__name__)

FILE_FIELDS = ("images", "image")
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
        "font-src 'self' https://fonts.gstatic.com; img-src 'self' data: blob: https:; "
        "connect-src 'self'; frame-src 'none'; object-src 'none'"
    ),
}

router = APIRouter(prefix="/api")


# -------- helpers ----------
def _vehicles(request: Request) -> VehicleService:
    return request.app.state.vehicles


def _leads(request: Request) -> LeadService:
    return request.app.state.leads


def _parse_id(raw: str, what: str) -> int:
    if not raw.isdigit():
        raise BadRequest(f"Invalid {what} ID")
    return int(raw)


def mutation_limit(request: Request):
    try:
        request.app.state.mutation_limiter.consume(get_ip(request))
    except RateLimited:
        audit("RATE_LIMIT_EXCEEDED", request, path=request.url.path, method=request.method, limiter="mutation")
        raise


def contact_origin_check(request: Request):
    origin = request.headers.get("origin")
    if not origin:
        referer = request.headers.get("referer")
        if referer:
            parts = referer.split("/")
            origin = "/".join(parts[:3]) if len(parts) >= 3 else None
    if not origin:
        audit("CONTACT_NO_ORIGIN", request, userAgent=request.headers.get("user-agent"))
        return
    allowed = request.app.state.settings.contact_origins()
    if allowed and origin not in allowed:
        audit("CONTACT_ORIGIN_BLOCKED", request, origin=origin)
        raise OriginNotAllowed()


def contact_limit(request: Request):
    try:
        request.app.state.contact_limiter.consume(get_ip(request))
    except RateLimited:
        audit("CONTACT_RATE_LIMIT", request)
        raise


async def _read_body(request: Request) -> tuple[dict, list[Upload]]:
    """Split a JSON or form body into plain fields and image uploads."""
    ctype = request.headers.get("content-type", "")
    if ctype.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise BadRequest("Malformed JSON body") from None
        if not isinstance(data, dict):
            raise BadRequest("Expected a JSON object")
        data.pop("_csrf", None)
        return data, []
    if not ctype.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        return {}, []
    form = await request.form()
    fields, uploads = {}, []
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if not value.filename:
                continue  # empty file input
            if key not in FILE_FIELDS:
                fields[key] = value.filename  # rejected by the allow-list
                continue
            uploads.append(Upload(await value.read(), value.content_type or "", value.filename))
        elif key != "_csrf":
            fields[key] = value
    return fields, uploads


ADMIN_WRITE = [Depends(admin_session_required), Depends(mutation_limit), Depends(require_csrf)]


# -------- admin auth ----------
@router.get("/admin/csrf-token")
def admin_csrf_token(request: Request, response: Response):
    return {"csrfToken": request.app.state.gate.issue_csrf(request, response)}


@router.get("/admin/session")
def admin_session(request: Request, response: Response):
    row = request.app.state.gate.current_session(request, response)
    authed = bool(row and row.is_admin)
    return {"authenticated": authed, "expiresAt": iso(row.expires_at) if authed else None}


@router.post("/admin/login")
async def admin_login(request: Request, response: Response):
    body, _ = await _read_body(request)
    password = body.get("password")
    gate: AdminGate = request.app.state.gate
    logger.info("login attempt from %s", get_ip(request))
    row = await run_in_threadpool(gate.login, request, response, password if isinstance(password, str) else None)
    token = gate.issue_csrf(request, response)
    return {"success": True, "csrfToken": token, "expiresAt": iso(row.expires_at)}


@router.post("/admin/logout")
def admin_logout(request: Request, response: Response):
    request.app.state.gate.logout(request, response)
    return {"success": True}


# -------- public vehicle reads ----------
@router.get("/vehicles")
def list_vehicles(request: Request):
    return _vehicles(request).list_vehicles()


@router.get("/vehicles/{vehicle_id}")
def get_vehicle(request: Request, vehicle_id: str):
    return _vehicles(request).get_vehicle(_parse_id(vehicle_id, "vehicle"))


# -------- admin vehicle writes ----------
@router.post("/vehicles", status_code=201, dependencies=ADMIN_WRITE)
async def create_vehicle(request: Request):
    fields, uploads = await _read_body(request)
    vehicle_id = await _vehicles(request).create(fields, uploads)
    audit("CREATE_VEHICLE", request, id=vehicle_id, make=fields.get("make"), model=fields.get("model"))
    return {"id": vehicle_id}


@router.put("/vehicles/{vehicle_id}", dependencies=ADMIN_WRITE)
async def update_vehicle(request: Request, vehicle_id: str):
    vid = _parse_id(vehicle_id, "vehicle")
    fields, uploads = await _read_body(request)
    await _vehicles(request).update(vid, fields, uploads)
    audit("UPDATE_VEHICLE", request, id=vid, make=fields.get("make"), model=fields.get("model"))
    return {"success": True}


@router.delete("/vehicles/{vehicle_id}", dependencies=ADMIN_WRITE)
async def delete_vehicle(request: Request, vehicle_id: str):
    vid = _parse_id(vehicle_id, "vehicle")
    await _vehicles(request).delete(vid)
    audit("DELETE_VEHICLE", request, id=vid)
    return {"success": True}


# -------- leads ----------
@router.post("/contact", dependencies=[Depends(contact_origin_check), Depends(contact_limit)])
async def contact(request: Request):
    data, _ = await _read_body(request)
    ip = get_ip(request)
    try:
        lead_id = await _leads(request).submit(data, ip, request.headers.get("user-agent") or "unknown")
    except SpamDetected:
        audit("SPAM_BLOCKED", request, type="honeypot")
        raise
    audit("CONTACT_FORM", request, leadId=lead_id, name=data.get("name"), vehicleId=data.get("vehicleId"))
    return {"success": True, "message": "Message sent successfully"}


@router.get("/leads", dependencies=[Depends(admin_session_required)])
def list_leads(request: Request):
    rows = _leads(request).list_leads()
    audit("VIEW_LEADS", request, count=len(rows))
    return rows


@router.delete("/leads/{lead_id}", dependencies=ADMIN_WRITE)
def delete_lead(request: Request, lead_id: str):
    lid = _parse_id(lead_id, "lead")
    _leads(request).delete(lid)
    audit("DELETE_LEAD", request, id=lid)
    return {"success": True}


@router.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "DELETE"], include_in_schema=False)
def api_not_found(full_path: str):
    raise NotFound("Endpoint not found")


# -------- app factory ----------
def _install_handlers(app: FastAPI, settings: Settings):
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        return JSONResponse(exc.body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        details = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
        return JSONResponse({"error": "Validation failed", "details": details}, status_code=400)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        audit("SERVER_ERROR", request, message=str(exc), path=request.url.path, method=request.method)
        body = {"error": "Internal server error" if settings.is_production else str(exc)}
        return JSONResponse(body, status_code=500)


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    image_store: ImageStore | None = None,
    mailer=None,
) -> FastAPI:
    settings = settings or default_settings
    settings.check_production()
    configure_logging()
    engine = engine or (db_module.engine if settings is default_settings else db_module.make_engine(settings.database_url))
    db_module.init_db(engine)

    tasks = TaskRegistry()
    image_store = image_store or build_image_store(settings)
    mailer = mailer or SendGridMailer.from_settings(settings)
    if not getattr(mailer, "configured", True):
        logger.info("email notifications disabled (SENDGRID_API_KEY not configured)")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        purged = await run_in_threadpool(app.state.gate.store.purge_expired)
        if purged:
            logger.info("purged %d expired admin sessions", purged)
        yield
        await tasks.drain()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.settings = settings
    app.state.tasks = tasks
    app.state.gate = AdminGate(settings, SessionStore(engine, settings.SESSION_MAX_AGE_SECONDS))
    app.state.vehicles = VehicleService(
        engine, image_store, tasks,
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        max_upload_files=settings.MAX_UPLOAD_FILES,
    )
    app.state.leads = LeadService(engine, mailer, tasks)
    app.state.api_limiter = SlidingWindowLimiter(
        settings.API_RATE_MAX, settings.API_RATE_WINDOW_SECONDS, "Too many requests, please try again later"
    )
    app.state.mutation_limiter = SlidingWindowLimiter(
        settings.MUTATION_RATE_MAX, settings.MUTATION_RATE_WINDOW_SECONDS,
        "Too many modification requests, please try again later",
    )
    app.state.contact_limiter = SlidingWindowLimiter(
        settings.CONTACT_RATE_MAX, settings.CONTACT_RATE_WINDOW_SECONDS,
        "Too many messages sent. Please try again later.",
    )

    @app.middleware("http")
    async def _api_limit_and_headers(request: Request, call_next):
        if request.url.path.startswith("/api") and request.method != "OPTIONS":
            try:
                app.state.api_limiter.consume(get_ip(request))
            except RateLimited as exc:
                audit("RATE_LIMIT_EXCEEDED", request, path=request.url.path, method=request.method, limiter="api")
                return JSONResponse(exc.body(), status_code=exc.status_code)
        response = await call_next(request)
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
        max_age=86400,
    )

    _install_handlers(app, settings)
    app.include_router(router)

    if isinstance(image_store, LocalImageStore):
        app.mount("/uploads", StaticFiles(directory=str(image_store.base_path)), name="uploads")

    @app.get("/health", include_in_schema=False)
    def healthcheck():
        return {"status": "ok"}

    return app
