"""
SQLAlchemy ORM models for the model registry.

Column types are portable (String ids, JSON) so the schema runs on PostgreSQL in
production and on SQLite in tests.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from modelstudio.db.postgres import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class MLModel(Base):
    __tablename__ = "ml_models"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    model_type = Column(String(100), nullable=False)
    algorithm = Column(String(100), nullable=False)
    accuracy = Column(Float, nullable=False)
    dataset_name = Column(String(255), nullable=False)
    parameters = Column(JSON, nullable=False, default=dict)
    features = Column(JSON, nullable=False, default=list)
    targets = Column(JSON, nullable=False, default=list)
    problem_type = Column(String(50), nullable=True)
    metrics = Column(JSON, nullable=True)
    is_trained = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class MLModelVersion(Base):
    __tablename__ = "ml_model_versions"

    id = Column(String(64), primary_key=True, default=_new_id)
    model_id = Column(String(64), ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False)
    version_number = Column(Integer, nullable=False)
    version_label = Column(String(50), nullable=False)
    algorithm = Column(String(100), nullable=False)
    parameters = Column(JSON, nullable=False, default=dict)
    accuracy = Column(Float, nullable=False)
    metrics = Column(JSON, nullable=True)
    artifact_path = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("model_id", "version_number", name="uq_ml_model_versions_model_number"),
    )
