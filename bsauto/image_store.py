"""Remote image hosting.

Stores know nothing about vehicles: they take bytes, hand back a display URL
plus the handle needed to delete it later, and delete by handle.
"""
import io
import logging
from pathlib import Path
from typing import Iterable, Protocol
from uuid import uuid4

import cloudinary.exceptions
import cloudinary.uploader
from starlette.concurrency import run_in_threadpool

from .errors import UploadFailed
from .images import ImageRef
from .settings import Settings

logger = logging.getLogger(__name__)

EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


class ImageStore(Protocol):
    async def upload(self, data: bytes, content_type: str) -> ImageRef:
        """Store one image. Raises UploadFailed on any provider error."""
        ...

    async def delete(self, public_id: str) -> bool:
        """Best-effort removal; never raises."""
        ...

    async def delete_many(self, public_ids: Iterable[str]) -> int:
        ...


class _DeleteManyMixin:
    async def delete_many(self, public_ids: Iterable[str]) -> int:
        deleted = 0
        for pid in public_ids:
            if await self.delete(pid):
                deleted += 1
        return deleted


class CloudinaryImageStore(_DeleteManyMixin):
    """Cloudinary through its SDK; the blocking calls run in the threadpool."""

    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = "bs-auto-sales"):
        self.folder = folder
        self.credentials = {"cloud_name": cloud_name, "api_key": api_key, "api_secret": api_secret}

    async def upload(self, data: bytes, content_type: str) -> ImageRef:
        try:
            body = await run_in_threadpool(
                cloudinary.uploader.upload,
                io.BytesIO(data),
                folder=self.folder,
                resource_type="image",
                **self.credentials,
            )
        except cloudinary.exceptions.Error as exc:
            raise UploadFailed(str(exc) or exc.__class__.__name__) from exc
        url, public_id = body.get("secure_url"), body.get("public_id")
        if not url or not public_id:
            raise UploadFailed("image host response missing secure_url/public_id")
        return ImageRef(url, public_id)

    async def delete(self, public_id: str) -> bool:
        try:
            body = await run_in_threadpool(cloudinary.uploader.destroy, public_id, invalidate=True, **self.credentials)
        except Exception as exc:
            logger.warning("image delete failed for %s: %s", public_id, exc)
            return False
        result = body.get("result")
        if result != "ok":
            logger.warning("image delete for %s returned %r", public_id, result)
            return False
        logger.info("image deleted: %s", public_id)
        return True


class LocalImageStore(_DeleteManyMixin):
    """Writes uploads into a directory served at ``/uploads``. The handle is the file name."""

    def __init__(self, base_path: str | Path, base_url: str = "/uploads"):
        self.base_path = Path(base_path)
        self.base_url = base_url.rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    async def upload(self, data: bytes, content_type: str) -> ImageRef:
        fname = f"{uuid4().hex}.{EXTENSIONS.get(content_type, 'jpg')}"
        try:
            await run_in_threadpool((self.base_path / fname).write_bytes, data)
        except OSError as exc:
            raise UploadFailed(str(exc)) from exc
        return ImageRef(f"{self.base_url}/{fname}", fname)

    async def delete(self, public_id: str) -> bool:
        path = self.base_path / Path(public_id).name
        try:
            await run_in_threadpool(path.unlink)
        except OSError as exc:
            logger.warning("local image delete failed for %s: %s", public_id, exc)
            return False
        return True


def build_image_store(settings: Settings) -> ImageStore:
    if settings.cloudinary_configured:
        return CloudinaryImageStore(
            settings.CLOUDINARY_CLOUD_NAME,
            settings.CLOUDINARY_API_KEY,
            settings.CLOUDINARY_API_SECRET,
            folder=settings.CLOUDINARY_FOLDER,
        )
    logger.warning("Cloudinary not configured; storing uploads under %s", settings.upload_dir)
    return LocalImageStore(settings.upload_dir)
