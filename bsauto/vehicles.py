"""Vehicle writes and the image lifecycle around them.

Ordering matters here. On create the row is written last, so an upload
failure never leaves a row pointing at missing images. On update and delete
the row is written first and remote cleanup follows in a detached task, so a
cleanup failure never leaves the row pointing at deleted images.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from .background import TaskRegistry
from .errors import NotFound, StoreFailure, UploadFailed, ValidationFailed
from .image_store import ImageStore
from .images import ImageRef, decode_images, encode_images, public_ids
from .models import Vehicle, utcnow
from .validation import VehicleFields, check_uploads, external_images, validate_vehicle_fields

logger = logging.getLogger(__name__)


@dataclass
class Upload:
    data: bytes
    content_type: str
    filename: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


def _validate(fields: dict, uploads: list[Upload], max_bytes: int, max_files: int) -> tuple[VehicleFields, list[ImageRef]]:
    details = []
    record = external = None
    try:
        record = validate_vehicle_fields(fields)
    except ValidationFailed as exc:
        details += exc.details
    try:
        external = external_images(fields)
    except ValidationFailed as exc:
        details += exc.details
    if details:
        raise ValidationFailed(details)
    check_uploads([(u.content_type, u.size) for u in uploads], max_bytes, max_files)
    return record, external


def row_to_dict(v: Vehicle) -> dict:
    return v.model_dump()


class VehicleService:
    def __init__(
        self,
        engine: Engine,
        image_store: ImageStore,
        tasks: TaskRegistry,
        max_upload_bytes: int = 15 * 1024 * 1024,
        max_upload_files: int = 20,
    ):
        self.engine = engine
        self.image_store = image_store
        self.tasks = tasks
        self.max_upload_bytes = max_upload_bytes
        self.max_upload_files = max_upload_files

    # -------- reads ----------
    def list_vehicles(self) -> list[dict]:
        with Session(self.engine) as s:
            rows = s.exec(select(Vehicle).order_by(Vehicle.created_at.desc(), Vehicle.id.desc())).all()
            return [row_to_dict(v) for v in rows]

    def get_vehicle(self, vehicle_id: int) -> dict:
        with Session(self.engine) as s:
            v = s.get(Vehicle, vehicle_id)
            if not v:
                raise NotFound("Vehicle not found")
            return row_to_dict(v)

    def _load_images(self, vehicle_id: int) -> list[ImageRef]:
        with Session(self.engine) as s:
            raw = s.exec(select(Vehicle.images_json).where(Vehicle.id == vehicle_id)).first()
        if raw is None:
            raise NotFound("Vehicle not found")
        return decode_images(raw)

    # -------- image batch ----------
    async def upload_all(self, uploads: list[Upload]) -> list[ImageRef]:
        """Upload in order. If one fails, the ones before it are removed before the error propagates."""
        done: list[ImageRef] = []
        total = len(uploads)
        for i, up in enumerate(uploads, 1):
            try:
                ref = await self.image_store.upload(up.data, up.content_type)
            except BaseException as exc:
                # Cancellation rolls back too.
                logger.error("upload FAILED (%d/%d): %r", i, total, exc)
                if done:
                    logger.info("cleaning up %d successful uploads after failure", len(done))
                    await self.image_store.delete_many(public_ids(done))
                if not isinstance(exc, Exception):
                    raise
                if isinstance(exc, UploadFailed):
                    exc.index = i
                    raise
                raise UploadFailed(str(exc), index=i) from exc
            logger.info("upload OK (%d/%d): %s", i, total, ref.public_id)
            done.append(ref)
        return done

    def _schedule_cleanup(self, handles: list[str], reason: str):
        if not handles:
            return
        self.tasks.spawn(self.image_store.delete_many(handles), name=f"image-cleanup:{reason}")

    # -------- writes ----------
    def _insert(self, record: dict, images: list[ImageRef]) -> int:
        now = utcnow()
        with Session(self.engine) as s:
            v = Vehicle(**record, images_json=encode_images(images), created_at=now, updated_at=now)
            s.add(v)
            s.commit()
            return v.id

    def _update(self, vehicle_id: int, record: dict, images: list[ImageRef]) -> int:
        stmt = (
            sa_update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .values(**record, images_json=encode_images(images), updated_at=utcnow())
        )
        with Session(self.engine) as s:
            result = s.exec(stmt)
            s.commit()
            return result.rowcount

    def _delete(self, vehicle_id: int) -> int:
        with Session(self.engine) as s:
            result = s.exec(sa_delete(Vehicle).where(Vehicle.id == vehicle_id))
            s.commit()
            return result.rowcount

    async def create(self, fields: dict, uploads: list[Upload] | None = None) -> int:
        uploads = uploads or []
        record, external = _validate(fields, uploads, self.max_upload_bytes, self.max_upload_files)
        uploaded = await self.upload_all(uploads)
        images = uploaded + external
        try:
            vehicle_id = await run_in_threadpool(self._insert, record.record(), images)
        except SQLAlchemyError as exc:
            # The write may have landed even though we saw an error, so the
            # uploads are left in place and only reported.
            logger.error("insert failed; orphaned image handles: %s (%s)", public_ids(uploaded), exc)
            raise StoreFailure("Insert failed") from exc
        logger.info("vehicle %s created with %d images", vehicle_id, len(images))
        return vehicle_id

    async def update(self, vehicle_id: int, fields: dict, uploads: list[Upload] | None = None) -> list[str]:
        """Full-record replace. Returns the image handles scheduled for removal."""
        uploads = uploads or []
        record, external = _validate(fields, uploads, self.max_upload_bytes, self.max_upload_files)
        existing = await run_in_threadpool(self._load_images, vehicle_id)

        uploaded = await self.upload_all(uploads)
        if uploaded or external:
            # Re-sent URLs of images we already host keep their handles.
            known = {img.url: img.public_id for img in existing}
            images = uploaded + [ImageRef(img.url, known.get(img.url)) for img in external]
        else:
            images = existing

        try:
            changed = await run_in_threadpool(self._update, vehicle_id, record.record(), images)
        except SQLAlchemyError as exc:
            logger.error("update of vehicle %s failed; orphaned image handles: %s (%s)", vehicle_id, public_ids(uploaded), exc)
            raise StoreFailure("Update failed") from exc
        if not changed:
            # Row vanished between read and write: nothing references the new uploads.
            self._schedule_cleanup(public_ids(uploaded), f"update-missing:{vehicle_id}")
            raise NotFound("Vehicle not found")

        keep = set(public_ids(images))
        dropped = list(dict.fromkeys(pid for pid in public_ids(existing) if pid not in keep))
        self._schedule_cleanup(dropped, f"update:{vehicle_id}")
        logger.info("vehicle %s updated (%d images, %d replaced)", vehicle_id, len(images), len(dropped))
        return dropped

    async def delete(self, vehicle_id: int) -> list[str]:
        """Delete the row, then its remote images in the background. Returns the scheduled handles."""
        images = await run_in_threadpool(self._load_images, vehicle_id)
        try:
            removed = await run_in_threadpool(self._delete, vehicle_id)
        except SQLAlchemyError as exc:
            logger.error("delete of vehicle %s failed: %s", vehicle_id, exc)
            raise StoreFailure("Delete failed") from exc
        if not removed:
            raise NotFound("Vehicle not found")
        handles = list(dict.fromkeys(public_ids(images)))
        self._schedule_cleanup(handles, f"delete:{vehicle_id}")
        return handles
