from sqlalchemy import JSON, Boolean, Column, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from app.core.database import Base
from app.services.experiments.domain import ABTestStatus, ImpressionType


class ABTestRecord(Base):
    """
    Persisted experiment definition.

    Variants, audience and metrics are stored as JSON documents; the engine
    reads them back into domain dataclasses.
    """

    __tablename__ = "ab_tests"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)

    variants = Column(JSON, nullable=False)  # [{"id", "name", "content", "traffic_allocation", "is_active"}]
    target_audience = Column(JSON, nullable=False)  # {"segments", "criteria", "sample_size", "duration"}
    metrics = Column(JSON, nullable=False)  # [{"name", "type", "calculation", "target"}]

    status = Column(SQLEnum(ABTestStatus), nullable=False, default=ABTestStatus.DRAFT, index=True)
    winner = Column(String)
    significance = Column(Float, default=0.95)

    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))

    created_by = Column(String, default="system")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TestAssignmentRecord(Base):
    """
    Sticky subject → variant mapping.

    The unique constraint on (test_id, subject_key) is what makes
    insert-if-absent atomic: expired rows are deleted in the same
    transaction before the new row is inserted.
    """

    __tablename__ = "test_assignments"
    __table_args__ = (UniqueConstraint("test_id", "subject_key", name="uq_assignment_subject"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_id = Column(String, ForeignKey("ab_tests.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(String, nullable=False)

    # user_id when known, else session_id
    subject_key = Column(String, nullable=False, index=True)
    user_id = Column(String)
    session_id = Column(String)

    assigned_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True))


class TestImpressionRecord(Base):
    """Append-only subject events attributed to a variant."""

    __tablename__ = "test_impressions"

    id = Column(String, primary_key=True)
    test_id = Column(
        String, ForeignKey("ab_tests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id = Column(String, nullable=False)
    subject_key = Column(String, nullable=False)

    type = Column(SQLEnum(ImpressionType), nullable=False)
    value = Column(Float)  # NULL counts as 1 in aggregates

    timestamp = Column(DateTime(timezone=True), nullable=False)
    metadata_ = Column("metadata", JSON)


class TestResultRecord(Base):
    """Last computed statistics per (variant, metric). Rebuilt from impressions at will."""

    __tablename__ = "test_results"
    __table_args__ = (
        UniqueConstraint("test_id", "variant_id", "metric_name", name="uq_result_metric"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_id = Column(String, ForeignKey("ab_tests.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(String, nullable=False)
    metric_name = Column(String, nullable=False)

    value = Column(Float, default=0.0)
    total = Column(Float, default=0.0)
    sample_size = Column(Integer, default=0)
    confidence = Column(Float, default=0.0)
    p_value = Column(Float, default=1.0)
    is_significant = Column(Boolean, default=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
