"""Re-export Base and the column helpers shared by the ORM models."""

from datetime import datetime

from sqlalchemy import DateTime, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import mapped_column

from app.database import Base

__all__ = ["Base", "uuid_pk", "created_at_column"]


def uuid_pk():
    """UUID primary key generated by PostgreSQL (``gen_random_uuid()``)."""
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )


def created_at_column():
    return mapped_column(DateTime(timezone=True), server_default=func.now())
