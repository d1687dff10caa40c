import json
import logging

import httpx

from ..errors import (
    AppError,
    AuthRequired,
    BadRequest,
    CsrfInvalid,
    InvalidCredentials,
    NotFound,
    RateLimited,
    ValidationFailed,
)
from .schema import EditSession, SchemaProfile, detect_schema

logger = logging.getLogger(__name__)


def _error_message(resp: httpx.Response) -> tuple[str, dict]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase, {}
    if not isinstance(body, dict):
        return str(body), {}
    return body.get("error") or resp.reason_phrase, body


def _is_csrf_rejection(resp: httpx.Response) -> bool:
    if resp.status_code != 403:
        return False
    _, body = _error_message(resp)
    return body.get("code") == CsrfInvalid.code


def _form_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


class AdminClient:
    """Async client for the admin API.

    Holds the session cookie (in the underlying httpx client), the current
    CSRF token and the schema profile detected from the first vehicle list.
    """

    def __init__(self, base_url: str = "", client: httpx.AsyncClient | None = None):
        self.http = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(30.0))
        self.csrf_token: str | None = None
        self.profile = SchemaProfile.unknown()

    async def aclose(self):
        await self.http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    # -------- error mapping ----------
    def _raise_for(self, resp: httpx.Response):
        if resp.is_success:
            return
        message, body = _error_message(resp)
        status = resp.status_code
        if status == 401:
            self.csrf_token = None
            if resp.request.url.path.endswith("/admin/login"):
                raise InvalidCredentials(message)
            raise AuthRequired(message)
        if status == 403 and body.get("code") == CsrfInvalid.code:
            raise CsrfInvalid()
        if status == 404:
            raise NotFound(message)
        if status == 429:
            raise RateLimited(message)
        if status == 400 and "details" in body:
            raise ValidationFailed(body["details"])
        if status == 400:
            raise BadRequest(message)
        err = AppError(message)
        err.status_code = status
        raise err

    # -------- session ----------
    async def fetch_csrf_token(self) -> str:
        resp = await self.http.get("/api/admin/csrf-token")
        self._raise_for(resp)
        self.csrf_token = resp.json()["csrfToken"]
        return self.csrf_token

    async def login(self, password: str) -> dict:
        resp = await self.http.post("/api/admin/login", json={"password": password})
        self._raise_for(resp)
        data = resp.json()
        self.csrf_token = data.get("csrfToken")
        return data

    async def logout(self):
        resp = await self.http.post("/api/admin/logout")
        self.csrf_token = None
        self._raise_for(resp)

    async def session(self) -> dict:
        resp = await self.http.get("/api/admin/session")
        self._raise_for(resp)
        return resp.json()

    async def _mutate(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a state-changing request, refreshing the CSRF token once on rejection."""
        if not self.csrf_token:
            await self.fetch_csrf_token()
        for attempt in (1, 2):
            resp = await self.http.request(method, url, headers={"X-CSRF-Token": self.csrf_token}, **kwargs)
            if not _is_csrf_rejection(resp) or attempt == 2:
                break
            logger.info("csrf token rejected on %s %s; refreshing and retrying", method, url)
            await self.fetch_csrf_token()
        self._raise_for(resp)
        return resp

    # -------- vehicles ----------
    async def list_vehicles(self) -> list[dict]:
        resp = await self.http.get("/api/vehicles")
        self._raise_for(resp)
        rows = resp.json()
        if rows and self.profile.is_unknown:
            self.profile = detect_schema(rows[0])
            logger.info("detected row schema: casing=%s images=%s", self.profile.casing.value, self.profile.image_field.value)
        return rows

    async def get_vehicle(self, vehicle_id: int) -> dict:
        resp = await self.http.get(f"/api/vehicles/{vehicle_id}")
        self._raise_for(resp)
        return resp.json()

    def _body(self, payload: dict, files: list | None) -> dict:
        if not files:
            return {"json": payload}
        return {
            "data": {k: _form_value(v) for k, v in payload.items()},
            "files": [("images", f) for f in files],
        }

    async def create_vehicle(self, edit: EditSession, files: list | None = None) -> int:
        """``files`` are ``(filename, bytes, content_type)`` tuples."""
        resp = await self._mutate("POST", "/api/vehicles", **self._body(edit.payload(self.profile), files))
        return resp.json()["id"]

    async def update_vehicle(self, edit: EditSession, files: list | None = None):
        if edit.vehicle_id is None:
            raise ValueError("update needs an EditSession with a vehicle_id")
        await self._mutate("PUT", f"/api/vehicles/{edit.vehicle_id}", **self._body(edit.payload(self.profile), files))

    async def delete_vehicle(self, vehicle_id: int):
        await self._mutate("DELETE", f"/api/vehicles/{vehicle_id}")

    # -------- leads ----------
    async def list_leads(self) -> list[dict]:
        resp = await self.http.get("/api/leads")
        self._raise_for(resp)
        return resp.json()

    async def delete_lead(self, lead_id: int):
        await self._mutate("DELETE", f"/api/leads/{lead_id}")
