import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Uuid
from sqlalchemy.orm import DeclarativeBase

from app.db.types import Money


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    type_annotation_map = {
        datetime: DateTime(timezone=True),
        uuid.UUID: Uuid(),
        Decimal: Money(),
    }
