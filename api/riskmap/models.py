import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, String, func

from .db import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Pin(Base):
    __tablename__ = "pins"

    id = Column(String(32), primary_key=True, default=_new_id)
    type = Column(String(64), nullable=False, index=True)
    category = Column(String(16), nullable=False)
    title = Column(String(60), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_name = Column(String(512), nullable=False)
    report_id = Column(String(128), nullable=True, index=True)
    search_terms = Column(JSON, nullable=False, default=list)
    created_at = Column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False, index=True
    )
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    created_by = Column(String(128), nullable=False)
    created_by_name = Column(String(255), nullable=False)
