import logging
from typing import Awaitable, Callable

import httpx

from ..errors import AppError
from ..images import primary_image
from .schema import NUMERIC_FIELDS, TEXT_FIELDS, pick, row_images

logger = logging.getLogger(__name__)


def normalize_vehicle(row: dict) -> dict:
    """Turn an API row of either casing into a display record."""
    out = {"id": row.get("id")}
    for name in NUMERIC_FIELDS + TEXT_FIELDS:
        out[name] = pick(row, name)
    out["status"] = out["status"] or "available"
    images = row_images(row)
    out["images"] = images
    out["main_image"] = primary_image(images)
    out["title"] = " ".join(str(out[k]) for k in ("year", "make", "model", "trim") if out[k])
    return out


class InventoryReader:
    """Keeps the latest vehicle list; late answers from older fetches are dropped."""

    def __init__(self, fetch: Callable[[], Awaitable[list[dict]]]):
        self.fetch = fetch
        self.vehicles: list[dict] = []
        self.error: str | None = None
        self._issued = 0
        self.applied = 0

    @classmethod
    def over_http(cls, client: httpx.AsyncClient) -> "InventoryReader":
        async def fetch():
            resp = await client.get("/api/vehicles")
            resp.raise_for_status()
            return resp.json()

        return cls(fetch)

    def _is_latest(self, seq: int) -> bool:
        return seq == self._issued

    async def refresh(self) -> bool:
        """Fetch and apply. Returns False when the result was stale or the fetch failed."""
        self._issued += 1
        seq = self._issued
        try:
            rows = await self.fetch()
        except (httpx.HTTPError, AppError, ValueError) as exc:
            if self._is_latest(seq):
                self.error = str(exc)
            logger.warning("inventory fetch #%d failed: %s", seq, exc)
            return False
        if not self._is_latest(seq):
            logger.debug("discarding stale inventory fetch #%d (latest is #%d)", seq, self._issued)
            return False
        self.vehicles = [normalize_vehicle(r) for r in rows]
        self.error = None
        self.applied = seq
        return True

    def find(self, vehicle_id: int) -> dict | None:
        return next((v for v in self.vehicles if v["id"] == vehicle_id), None)
