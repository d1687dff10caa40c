import asyncio
import json
import logging

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from bsauto.errors import NotFound, PayloadTooLarge, StoreFailure, UnsupportedImageType, UploadFailed, ValidationFailed
from bsauto.images import ImageRef, decode_images
from bsauto.models import Vehicle
from bsauto.vehicles import Upload, VehicleService

from conftest import FakeImageStore, add_vehicle, run

JPEG = Upload(b"\xff\xd8\xff" + b"0" * 64, "image/jpeg", "car.jpg")


def service(engine, store, tasks, **kw):
    return VehicleService(engine, store, tasks, **kw)


def rows(engine):
    with Session(engine) as s:
        return s.exec(select(Vehicle)).all()


def images_of(engine, vehicle_id):
    with Session(engine) as s:
        return decode_images(s.get(Vehicle, vehicle_id).images_json)


def test_create_stores_uploads_in_order(engine):
    store = FakeImageStore()

    async def go(tasks):
        return await service(engine, store, tasks).create({"year": "2020", "make": "Ford", "model": "F-150"}, [JPEG, JPEG])

    vid = run(go)
    imgs = images_of(engine, vid)
    assert [i.public_id for i in imgs] == ["bs-auto-sales/img1", "bs-auto-sales/img2"]
    v = rows(engine)[0]
    assert (v.year, v.make, v.status) == (2020, "Ford", "available")


def test_invalid_year_rejected_before_any_upload(engine):
    store = FakeImageStore()

    async def go(tasks):
        await service(engine, store, tasks).create({"year": 1899, "make": "Ford"}, [JPEG])

    with pytest.raises(ValidationFailed) as exc:
        run(go)
    assert exc.value.details[0]["field"] == "year"
    assert "1900" in exc.value.details[0]["message"]
    assert store.upload_calls == 0
    assert rows(engine) == []


def test_unknown_field_rejected(engine):
    async def go(tasks):
        await service(engine, FakeImageStore(), tasks).create({"make": "Ford", "vin": "1FT"})

    with pytest.raises(ValidationFailed) as exc:
        run(go)
    assert [d["field"] for d in exc.value.details] == ["vin"]


def test_markup_is_stripped(engine):
    async def go(tasks):
        return await service(engine, FakeImageStore(), tasks).create({"make": "<b>Ford</b>", "description": "<script>x</script>nice"})

    run(go)
    v = rows(engine)[0]
    assert v.make == "Ford"
    assert v.description == "xnice"


def test_upload_failure_rolls_back_earlier_uploads(engine):
    store = FakeImageStore(fail_at=2)

    async def go(tasks):
        await service(engine, store, tasks).create({"make": "Ford"}, [JPEG, JPEG, JPEG])

    with pytest.raises(UploadFailed) as exc:
        run(go)
    assert exc.value.index == 2
    assert store.delete_calls == ["bs-auto-sales/img1"]
    assert store.upload_calls == 2
    assert rows(engine) == []


class CancelledOnSecondUpload(FakeImageStore):
    async def upload(self, data, content_type):
        if self.upload_calls == 1:
            self.upload_calls += 1
            raise asyncio.CancelledError()
        return await super().upload(data, content_type)


def test_cancelled_batch_rolls_back_earlier_uploads(engine):
    store = CancelledOnSecondUpload()

    async def go(tasks):
        with pytest.raises(asyncio.CancelledError):
            await service(engine, store, tasks).create({"make": "Ford"}, [JPEG, JPEG, JPEG])

    run(go)
    assert store.delete_calls == ["bs-auto-sales/img1"]
    assert rows(engine) == []


def test_insert_failure_keeps_uploads_and_logs_handles(engine, monkeypatch, caplog):
    store = FakeImageStore()

    def broken_insert(self, record, images):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(VehicleService, "_insert", broken_insert)

    async def go(tasks):
        await service(engine, store, tasks).create({"make": "Ford"}, [JPEG, JPEG])

    with caplog.at_level(logging.ERROR, logger="bsauto.vehicles"):
        with pytest.raises(StoreFailure) as exc:
            run(go)
    assert exc.value.status_code == 500
    assert store.uploaded == ["bs-auto-sales/img1", "bs-auto-sales/img2"]
    assert store.delete_calls == []
    assert "bs-auto-sales/img1" in caplog.text and "bs-auto-sales/img2" in caplog.text


def test_upload_type_and_size_checked_first(engine):
    store = FakeImageStore()

    async def bad_type(tasks):
        await service(engine, store, tasks).create({"make": "Ford"}, [JPEG, Upload(b"GIF89a", "image/gif")])

    async def too_big(tasks):
        await service(engine, store, tasks, max_upload_bytes=10).create({"make": "Ford"}, [JPEG])

    with pytest.raises(UnsupportedImageType):
        run(bad_type)
    with pytest.raises(PayloadTooLarge):
        run(too_big)
    assert store.upload_calls == 0


def test_external_urls_are_kept_without_handles(engine):
    async def go(tasks):
        return await service(engine, FakeImageStore(), tasks).create(
            {"make": "Ford", "image_url": "https://cdn.example.com/a.webp"}, [JPEG]
        )

    vid = run(go)
    imgs = images_of(engine, vid)
    assert imgs[0].public_id == "bs-auto-sales/img1"
    assert imgs[1] == ImageRef("https://cdn.example.com/a.webp", None)


def test_update_without_images_preserves_list(engine):
    original = [ImageRef("https://res.cloudinary.com/d/image/upload/v1/a.jpg", "a"), ImageRef("/uploads/b.png", "b.png")]
    vid = add_vehicle(engine, original, price=15000)
    store = FakeImageStore()

    async def go(tasks):
        return await service(engine, store, tasks).update(vid, {"make": "Honda", "model": "Accord", "price": "16500"})

    dropped = run(go)
    assert dropped == []
    assert images_of(engine, vid) == original
    assert store.delete_calls == []
    v = rows(engine)[0]
    assert (v.model, v.price) == ("Accord", 16500)


def test_update_is_full_replace(engine):
    vid = add_vehicle(engine, trim="EX", mileage=42000)

    async def go(tasks):
        await service(engine, FakeImageStore(), tasks).update(vid, {"make": "Honda", "model": "Civic"})

    run(go)
    v = rows(engine)[0]
    assert v.trim == ""
    assert v.mileage is None
    assert v.year is None


def test_update_deletes_replaced_handles_once(engine):
    old = [ImageRef("https://x/upload/a.jpg", "a"), ImageRef("https://x/upload/b.jpg", "b"), ImageRef("https://x/upload/a2.jpg", "a")]
    vid = add_vehicle(engine, old)
    store = FakeImageStore()

    async def go(tasks):
        return await service(engine, store, tasks).update(vid, {"make": "Honda"}, [JPEG])

    dropped = run(go)
    assert dropped == ["a", "b"]
    assert sorted(store.delete_calls) == ["a", "b"]
    assert [i.public_id for i in images_of(engine, vid)] == ["bs-auto-sales/img1"]


def test_update_resending_known_url_keeps_handle(engine):
    keep = ImageRef("https://res.cloudinary.com/d/image/upload/v1/keep.jpg", "keep")
    drop = ImageRef("https://res.cloudinary.com/d/image/upload/v1/drop.jpg", "drop")
    vid = add_vehicle(engine, [keep, drop])
    store = FakeImageStore()

    async def go(tasks):
        return await service(engine, store, tasks).update(vid, {"make": "Honda", "images": json.dumps([keep.url])})

    assert run(go) == ["drop"]
    assert images_of(engine, vid) == [keep]
    assert store.delete_calls == ["drop"]


def test_update_missing_vehicle_uploads_nothing(engine):
    store = FakeImageStore()

    async def go(tasks):
        await service(engine, store, tasks).update(999, {"make": "Honda"}, [JPEG])

    with pytest.raises(NotFound):
        run(go)
    assert store.upload_calls == 0


def test_delete_attempts_every_handle(engine):
    imgs = [ImageRef(f"https://x/upload/{p}.jpg", p) for p in ("p1", "p2", "p3")]
    vid = add_vehicle(engine, imgs)
    store = FakeImageStore(failing_deletes={"p2"})

    async def go(tasks):
        return await service(engine, store, tasks).delete(vid)

    assert run(go) == ["p1", "p2", "p3"]
    assert store.delete_calls == ["p1", "p2", "p3"]
    assert rows(engine) == []


def test_delete_missing_vehicle(engine):
    async def go(tasks):
        await service(engine, FakeImageStore(), tasks).delete(12345)

    with pytest.raises(NotFound):
        run(go)


def test_list_newest_first(engine):
    first = add_vehicle(engine, make="Old")
    second = add_vehicle(engine, make="New")

    async def go(tasks):
        return service(engine, FakeImageStore(), tasks).list_vehicles()

    assert [v["id"] for v in run(go)] == [second, first]
