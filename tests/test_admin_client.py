import asyncio
import json

import httpx
import pytest

from bsauto.client import AdminClient, Casing, EditSession, ImageField
from bsauto.errors import AuthRequired, CsrfInvalid, InvalidCredentials

CSRF_REJECTED = {"error": "Invalid or missing CSRF token", "code": "csrf_invalid"}


class FakeApi:
    """Scripted server: ``reject`` is how many mutations get a CSRF 403 before one passes."""

    def __init__(self, reject=0, rows=None):
        self.reject = reject
        self.rows = rows or []
        self.tokens_issued = 0
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path, request.headers.get("x-csrf-token")))
        if path == "/api/admin/csrf-token":
            self.tokens_issued += 1
            return httpx.Response(200, json={"csrfToken": f"t{self.tokens_issued}"})
        if path == "/api/admin/login":
            if json.loads(request.content)["password"] != "pw":
                return httpx.Response(401, json={"error": "Invalid password"})
            return httpx.Response(200, json={"success": True, "csrfToken": "login-token", "expiresAt": "x"})
        if path == "/api/vehicles" and request.method == "GET":
            return httpx.Response(200, json=self.rows)
        if request.method in ("POST", "PUT", "DELETE"):
            if self.reject:
                self.reject -= 1
                return httpx.Response(403, json=CSRF_REJECTED)
            self.last_body = request.content
            return httpx.Response(201 if request.method == "POST" else 200, json={"id": 7, "success": True})
        return httpx.Response(404, json={"error": "Endpoint not found"})


def client_for(api):
    return AdminClient(client=httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://dealer.test"))


def mutations(api):
    return [c for c in api.calls if c[0] in ("PUT", "DELETE", "POST") and c[1].startswith("/api/vehicles")]


def test_fetches_token_before_first_mutation():
    api = FakeApi()

    async def go():
        async with client_for(api) as c:
            await c.delete_vehicle(3)

    asyncio.run(go())
    assert api.calls[0][1] == "/api/admin/csrf-token"
    assert mutations(api) == [("DELETE", "/api/vehicles/3", "t1")]


def test_retries_once_after_csrf_rejection():
    api = FakeApi(reject=1)

    async def go():
        async with client_for(api) as c:
            await c.update_vehicle(EditSession(vehicle_id=5, draft={"make": "Ford"}))
            return c.csrf_token

    assert asyncio.run(go()) == "t2"
    assert mutations(api) == [("PUT", "/api/vehicles/5", "t1"), ("PUT", "/api/vehicles/5", "t2")]


def test_second_csrf_rejection_raises():
    api = FakeApi(reject=5)

    async def go():
        async with client_for(api) as c:
            await c.update_vehicle(EditSession(vehicle_id=5, draft={"make": "Ford"}))

    with pytest.raises(CsrfInvalid):
        asyncio.run(go())
    assert len(mutations(api)) == 2
    assert api.tokens_issued == 2


def test_unauthorized_clears_token():
    def handler(request):
        return httpx.Response(401, json={"error": "Authentication required"})

    async def go():
        c = AdminClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://dealer.test"))
        c.csrf_token = "stale"
        with pytest.raises(AuthRequired):
            await c.list_leads()
        await c.aclose()
        return c.csrf_token

    assert asyncio.run(go()) is None


def test_login_keeps_token_and_reports_bad_password():
    api = FakeApi()

    async def go():
        async with client_for(api) as c:
            await c.login("pw")
            token = c.csrf_token
            await c.delete_vehicle(1)
            with pytest.raises(InvalidCredentials):
                await c.login("wrong")
            return token

    assert asyncio.run(go()) == "login-token"
    assert mutations(api) == [("DELETE", "/api/vehicles/1", "login-token")]


def test_first_list_sets_profile_and_shapes_payload():
    rows = [{"id": 1, "fuelType": "Gas", "exteriorColor": "Red", "make": "Kia", "price": 1, "imageUrl": "https://x/a.jpg"}]
    api = FakeApi(rows=rows)

    async def go():
        async with client_for(api) as c:
            await c.list_vehicles()
            edit = EditSession(vehicle_id=1, draft={"make": "Kia", "price": "", "fuel_type": "Hybrid", "trim": "LX"})
            edit.set_images(["https://x/b.jpg"])
            await c.update_vehicle(edit)
            return c.profile

    profile = asyncio.run(go())
    assert profile.casing is Casing.CAMEL
    assert profile.image_field is ImageField.SINGLE_URL
    assert json.loads(api.last_body) == {"make": "Kia", "price": None, "fuelType": "Hybrid", "imageUrl": "https://x/b.jpg"}


def test_multipart_when_files_attached():
    api = FakeApi()

    async def go():
        async with client_for(api) as c:
            edit = EditSession(draft={"make": "Kia", "year": "2020"})
            return await c.create_vehicle(edit, files=[("a.jpg", b"\xff\xd8", "image/jpeg")])

    assert asyncio.run(go()) == 7
    assert b'name="images"; filename="a.jpg"' in api.last_body
    assert b'name="year"' in api.last_body
