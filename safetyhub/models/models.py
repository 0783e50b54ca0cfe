import uuid
from datetime import datetime, date
from typing import Optional, List

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user", index=True)  # user|reviewer|assignee
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


class Report(Base):
    """Hazard, incident and SOT reports share one table, keyed by `kind`."""
    __tablename__ = "reports"
    __table_args__ = (
        Index("ix_reports_kind_status", "kind", "status"),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # hazard|incident|sot
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    site: Mapped[Optional[str]] = mapped_column(String(255))
    department: Mapped[Optional[str]] = mapped_column(String(255))
    location: Mapped[Optional[str]] = mapped_column(String(255))
    date_of_reporting: Mapped[Optional[date]] = mapped_column(Date)
    image_urls: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="submitted", nullable=False, index=True)

    # Hazard
    date_of_finding: Mapped[Optional[date]] = mapped_column(Date)
    risk_level: Mapped[Optional[str]] = mapped_column(String(50))
    hazard_characteristics: Mapped[Optional[str]] = mapped_column(Text)
    responsible_department: Mapped[Optional[str]] = mapped_column(String(255))

    # Incident
    date_of_incident: Mapped[Optional[date]] = mapped_column(Date)
    time_of_incident: Mapped[Optional[str]] = mapped_column(String(20))
    severity_level: Mapped[Optional[str]] = mapped_column(String(50))
    incident_type: Mapped[Optional[str]] = mapped_column(String(100))
    incident_category: Mapped[Optional[str]] = mapped_column(String(100))
    witnesses: Mapped[Optional[str]] = mapped_column(Text)
    immediate_actions_taken: Mapped[Optional[str]] = mapped_column(Text)
    reporter_name: Mapped[Optional[str]] = mapped_column(String(255))

    # SOT (safety observation tour)
    observation_date: Mapped[Optional[date]] = mapped_column(Date)
    personal_category: Mapped[Optional[str]] = mapped_column(String(100))
    details_if_observation: Mapped[Optional[str]] = mapped_column(Text)
    time_duration: Mapped[Optional[str]] = mapped_column(String(100))
    type_of_work: Mapped[Optional[str]] = mapped_column(String(255))
    add_action: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    submitter = relationship("Profile", foreign_keys=[user_id])
    assignment = relationship("Assignment", back_populates="report", uselist=False)


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    report_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    reviewer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    assignee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    target_completion_date: Mapped[date] = mapped_column(Date, nullable=False)
    remark: Mapped[Optional[str]] = mapped_column(Text)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    review_status: Mapped[Optional[str]] = mapped_column(String(20), index=True)  # NULL|approved|rejected
    review_reason: Mapped[Optional[str]] = mapped_column(Text)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Bumped on every lifecycle write; guards compare-and-swap updates
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    report = relationship("Report", back_populates="assignment")
    reviewer = relationship("Profile", foreign_keys=[reviewer_id])
    assignee = relationship("Profile", foreign_keys=[assignee_id])
    evidences = relationship("Evidence", back_populates="assignment", order_by="Evidence.uploaded_at")


class Evidence(Base):
    __tablename__ = "evidences"

    id: Mapped[uuid.UUID] = uuid_pk()
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    file_type: Mapped[Optional[str]] = mapped_column(String(100))
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    assignment = relationship("Assignment", back_populates="evidences")


class AuditLog(Base):
    """Append-only trail of lifecycle transitions"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)  # report|assignment
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    actor_role: Mapped[Optional[str]] = mapped_column(String(20))
    source: Mapped[str] = mapped_column(String(20), default="api")
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # per-entity ordering
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))
