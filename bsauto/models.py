from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, also on SQLite which stores them without an offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Vehicle(SQLModel, table=True):
    __tablename__ = "vehicles"

    id: int | None = Field(default=None, primary_key=True)
    year: int | None = None
    make: str = ""
    model: str = ""
    trim: str = ""
    price: int | None = None
    mileage: int | None = None
    exterior_color: str = ""
    interior_color: str = ""
    fuel_type: str = ""
    transmission: str = ""
    engine: str = ""
    drivetrain: str = ""
    description: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    # JSON array of {"url": ..., "publicId": ...}; see bsauto.images
    images_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    status: str = Field(default="available", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Lead(SQLModel, table=True):
    __tablename__ = "leads"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    phone: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    vehicle_id: int | None = None  # not a foreign key: leads outlive vehicles
    vehicle_title: str = ""
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)


class AdminSession(SQLModel, table=True):
    __tablename__ = "admin_sessions"

    sid: str = Field(primary_key=True)
    is_admin: bool = False
    login_time: datetime | None = Field(default=None, sa_type=UTCDateTime)
    csrf_secret: str | None = None
    expires_at: datetime = Field(sa_type=UTCDateTime, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
