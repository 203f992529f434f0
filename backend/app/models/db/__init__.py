"""SQLAlchemy 2.0 ORM models.

Import all models here so Alembic's ``env.py`` can discover them via::

    from app.models.db import Base  # noqa: F401

Every model must be imported at module level to register with the
``DeclarativeBase`` metadata.
"""

from app.models.db.base import Base  # noqa: F401

# Tenancy and roles
from app.models.db.organization import (  # noqa: F401
    Admin,
    Coalition,
    Organization,
    SuperAdmin,
)

# Programs
from app.models.db.program import Program, ProgramStatusHistory  # noqa: F401

__all__ = [
    "Base",
    "Admin",
    "Coalition",
    "Organization",
    "SuperAdmin",
    "Program",
    "ProgramStatusHistory",
]
