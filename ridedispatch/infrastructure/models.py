"""
SQLAlchemy ORM models.

Tables
------
* ``records`` -- one row per document, keyed by ``(collection, id)``.
  ``data`` holds the canonical JSON record; ``version`` increments on
  every committed write.

Indexes
-------
* **B-Tree** on ``collection`` and ``updated_at`` for collection scans
  used by queries and subscriptions.
* **GIN** on ``data`` (PostgreSQL only) for the JSONB containment
  filters queries push down.
"""

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base


class RecordModel(Base):
    __tablename__ = "records"

    collection = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_records_collection", "collection"),
        Index("idx_records_updated", "collection", "updated_at"),
        Index("idx_records_data", "data", postgresql_using="gin").ddl_if(
            dialect="postgresql"
        ),
    )
