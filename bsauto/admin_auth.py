import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import Request, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeSerializer, URLSafeTimedSerializer
from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlmodel import Session

from .audit import audit, get_ip
from .errors import AuthRequired, CsrfInvalid, InvalidCredentials, RateLimited
from .models import AdminSession, utcnow
from .ratelimit import SlidingWindowLimiter
from .settings import Settings

logger = logging.getLogger(__name__)

CSRF_HEADER = "x-csrf-token"
CSRF_FORM_FIELD = "_csrf"


def password_matches(candidate: str, expected: str) -> bool:
    """Constant-time password check. Unequal lengths never reach a byte comparison."""
    a = (candidate or "").encode("utf-8")
    b = expected.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def iso(dt: datetime | None) -> str | None:
    return dt.astimezone(timezone.utc).isoformat() if dt else None


class SessionStore:
    """Admin sessions kept in the application database, keyed by an opaque sid."""

    def __init__(self, engine: Engine, max_age_seconds: int):
        self.engine = engine
        self.max_age = timedelta(seconds=max_age_seconds)

    def create(self) -> AdminSession:
        """Start an authenticated admin session."""
        self.purge_expired()
        now = utcnow()
        row = AdminSession(
            sid=secrets.token_urlsafe(32),
            is_admin=True,
            login_time=now,
            csrf_secret=secrets.token_urlsafe(32),
            expires_at=now + self.max_age,
            created_at=now,
        )
        with Session(self.engine) as s:
            s.add(row)
            s.commit()
            s.refresh(row)
        return row

    def load(self, sid: str) -> AdminSession | None:
        """Return the live session for ``sid``; expired rows are dropped. Pushes expiry forward."""
        with Session(self.engine) as s:
            row = s.get(AdminSession, sid)
            if row is None:
                return None
            now = utcnow()
            if row.expires_at <= now:
                s.delete(row)
                s.commit()
                return None
            row.expires_at = now + self.max_age
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    def destroy(self, sid: str):
        with Session(self.engine) as s:
            s.exec(sa_delete(AdminSession).where(AdminSession.sid == sid))
            s.commit()

    def purge_expired(self) -> int:
        with Session(self.engine) as s:
            result = s.exec(sa_delete(AdminSession).where(AdminSession.expires_at <= utcnow()))
            s.commit()
            return result.rowcount


class AdminGate:
    """Session authentication, double-submit CSRF, and the login limiter."""

    def __init__(self, settings: Settings, store: SessionStore):
        self.settings = settings
        self.store = store
        secret = settings.session_secret
        self.sid_signer = URLSafeSerializer(secret, salt="bsauto.session")
        self.csrf_signer = URLSafeTimedSerializer(secret, salt="bsauto.csrf")
        self.login_limiter = SlidingWindowLimiter(
            settings.LOGIN_RATE_MAX,
            settings.LOGIN_RATE_WINDOW_SECONDS,
            "Too many login attempts, please try again in 15 minutes",
        )

    # -------- cookies ----------
    def _cookie_kwargs(self) -> dict:
        prod = self.settings.is_production
        return {"httponly": True, "secure": prod, "samesite": "strict" if prod else "lax", "path": "/"}

    def _set_session_cookie(self, response: Response, row: AdminSession):
        response.set_cookie(
            self.settings.SESSION_COOKIE_NAME,
            self.sid_signer.dumps(row.sid),
            max_age=self.settings.SESSION_MAX_AGE_SECONDS,
            **self._cookie_kwargs(),
        )

    def _sid_from_cookie(self, request: Request) -> str | None:
        raw = request.cookies.get(self.settings.SESSION_COOKIE_NAME)
        if not raw:
            return None
        try:
            return self.sid_signer.loads(raw)
        except BadSignature:
            return None

    # -------- sessions ----------
    def current_session(self, request: Request, response: Response | None = None) -> AdminSession | None:
        if hasattr(request.state, "admin_session"):
            return request.state.admin_session
        sid = self._sid_from_cookie(request)
        row = self.store.load(sid) if sid else None
        request.state.admin_session = row
        if row is not None and response is not None:
            self._set_session_cookie(response, row)  # rolling expiry
        return row

    def login(self, request: Request, response: Response, password: str | None) -> AdminSession:
        ip = get_ip(request)
        ok = bool(password) and password_matches(password, self.settings.admin_password)
        try:
            # Only failures count; correct passwords are refused too until the window rolls.
            self.login_limiter.consume(ip, counted=not ok)
        except RateLimited:
            audit("LOGIN_RATE_LIMIT", request)
            logger.warning("login rate limit exceeded for %s", ip)
            raise
        if not password:
            audit("LOGIN_FAILED", request, reason="empty_password")
            raise InvalidCredentials("Password is required")
        if not ok:
            audit("LOGIN_FAILED", request, reason="invalid_password")
            logger.warning("login failed: invalid password from %s", ip)
            raise InvalidCredentials("Invalid password")

        # Never reuse an identifier issued before authentication.
        old_sid = self._sid_from_cookie(request)
        if old_sid:
            self.store.destroy(old_sid)
        row = self.store.create()
        request.state.admin_session = row
        self._set_session_cookie(response, row)
        audit("LOGIN_SUCCESS", request)
        logger.info("login successful from %s", ip)
        return row

    def logout(self, request: Request, response: Response) -> bool:
        row = self.current_session(request)
        sid = self._sid_from_cookie(request)
        if sid:
            self.store.destroy(sid)
        request.state.admin_session = None
        kw = self._cookie_kwargs()
        response.delete_cookie(self.settings.SESSION_COOKIE_NAME, **kw)
        response.delete_cookie(self.settings.csrf_cookie_name, **kw)
        was_admin = bool(row and row.is_admin)
        if was_admin:
            audit("LOGOUT", request)
        return was_admin

    # -------- csrf ----------
    def issue_csrf(self, request: Request, response: Response) -> str:
        """Token bound to the current session's secret.

        Anonymous callers get a token over a throwaway secret and no session
        row; it can never pass ``verify_csrf``, and login issues a real one.
        """
        row = self.current_session(request, response)
        secret = row.csrf_secret if row is not None else secrets.token_urlsafe(32)
        token = self.csrf_signer.dumps(secret)
        response.set_cookie(self.settings.csrf_cookie_name, token, **self._cookie_kwargs())
        return token

    def verify_csrf(self, request: Request, presented: str | None):
        row = self.current_session(request)
        cookie = request.cookies.get(self.settings.csrf_cookie_name)
        if not (row and row.csrf_secret and presented and cookie):
            raise CsrfInvalid()
        if not hmac.compare_digest(presented.encode("utf-8"), cookie.encode("utf-8")):
            raise CsrfInvalid()
        try:
            secret = self.csrf_signer.loads(presented, max_age=self.settings.SESSION_MAX_AGE_SECONDS)
        except (BadSignature, SignatureExpired):
            raise CsrfInvalid() from None
        if not isinstance(secret, str) or not hmac.compare_digest(secret, row.csrf_secret):
            raise CsrfInvalid()


# -------- FastAPI dependencies ----------

def get_gate(request: Request) -> AdminGate:
    return request.app.state.gate


def admin_session_required(request: Request, response: Response) -> AdminSession:
    gate = get_gate(request)
    row = gate.current_session(request, response)
    if not (row and row.is_admin):
        audit("AUTH_REQUIRED", request, path=request.url.path, method=request.method)
        raise AuthRequired()
    return row


async def require_csrf(request: Request):
    token = request.headers.get(CSRF_HEADER)
    if not token and request.headers.get("content-type", "").startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        token = form.get(CSRF_FORM_FIELD)
    try:
        get_gate(request).verify_csrf(request, token if isinstance(token, str) else None)
    except CsrfInvalid:
        audit("CSRF_VIOLATION", request, path=request.url.path, method=request.method)
        raise
