import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotFound, PermissionDenied, PersistenceFailure, ValidationFailed
from ..config import settings
from ..models.models import Assignment, Profile, Report
from .audit import create_audit_log
from .lifecycle import ActingUser, ReportKind, ReportStatus, Role


log = structlog.get_logger(__name__)

# Columns each report kind may set besides the common ones
KIND_FIELDS = {
    ReportKind.HAZARD: (
        "date_of_finding",
        "risk_level",
        "hazard_characteristics",
        "responsible_department",
    ),
    ReportKind.INCIDENT: (
        "date_of_incident",
        "time_of_incident",
        "severity_level",
        "incident_type",
        "incident_category",
        "witnesses",
        "immediate_actions_taken",
    ),
    ReportKind.SOT: (
        "observation_date",
        "personal_category",
        "details_if_observation",
        "time_duration",
        "type_of_work",
        "add_action",
    ),
}
COMMON_FIELDS = ("title", "description", "site", "department", "location", "date_of_reporting", "image_urls")


def get_user_display(db: Session, profile_id: Optional[uuid.UUID]) -> Optional[str]:
    if not profile_id:
        return None
    profile = db.get(Profile, profile_id)
    if not profile:
        return None
    return profile.display_name


def create_report(db: Session, actor: ActingUser, kind: ReportKind, data: Dict[str, Any]) -> Report:
    kind = ReportKind(kind)
    allowed = set(COMMON_FIELDS) | set(KIND_FIELDS[kind])
    unknown = sorted(k for k, v in data.items() if k not in allowed and v is not None)
    if unknown:
        raise ValidationFailed(f"Fields not valid for a {kind.value} report: {', '.join(unknown)}")

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationFailed("A title is required")
    image_urls = [u.strip() for u in (data.get("image_urls") or []) if u and u.strip()]
    if len(image_urls) > settings.report_images_max:
        raise ValidationFailed(f"At most {settings.report_images_max} images per report")

    values = {k: v for k, v in data.items() if k in allowed and k not in ("title", "image_urls")}
    report = Report(
        kind=kind.value,
        user_id=actor.id,
        title=title,
        image_urls=image_urls,
        status=ReportStatus.SUBMITTED.value,
        **values,
    )
    if kind is ReportKind.INCIDENT:
        report.reporter_name = get_user_display(db, actor.id) or "Unknown"
    try:
        db.add(report)
        db.flush()
        create_audit_log(
            db,
            entity_type="report",
            entity_id=str(report.id),
            action="CREATE_REPORT",
            actor_id=str(actor.id),
            actor_role=actor.role.value,
            source="api",
            changes_json={"report_status": {"before": None, "after": report.status}},
            context={"kind": kind.value},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("report.persistence_failure", kind=kind.value, actor_id=str(actor.id), error=str(exc))
        raise PersistenceFailure("Report could not be saved") from exc
    db.refresh(report)
    log.info("report.submitted", report_id=str(report.id), kind=kind.value, actor_id=str(actor.id))
    return report


def get_report(db: Session, report_id: uuid.UUID) -> Report:
    report = db.get(Report, report_id)
    if report is None:
        raise NotFound("Report not found", report_id=str(report_id))
    return report


def ensure_can_view(actor: ActingUser, report: Report) -> None:
    """Submitter, any reviewer, or the report's assignee."""
    if actor.role is Role.REVIEWER or report.user_id == actor.id:
        return
    assignment = report.assignment
    if assignment is not None and assignment.assignee_id == actor.id:
        return
    raise PermissionDenied("You cannot view this report")


def ensure_can_view_assignment(actor: ActingUser, assignment: Assignment) -> None:
    if actor.id in (assignment.reviewer_id, assignment.assignee_id):
        return
    raise PermissionDenied("You cannot view this assignment")


def list_reports_for_submitter(db: Session, user_id: uuid.UUID, kind: Optional[ReportKind] = None) -> List[Report]:
    q = db.query(Report).filter(Report.user_id == user_id)
    if kind:
        q = q.filter(Report.kind == ReportKind(kind).value)
    return q.order_by(Report.created_at.desc()).all()


def list_unassigned_reports(db: Session, kind: Optional[ReportKind] = None) -> List[Report]:
    q = db.query(Report).filter(Report.status == ReportStatus.SUBMITTED.value)
    if kind:
        q = q.filter(Report.kind == ReportKind(kind).value)
    return q.order_by(Report.created_at.desc()).all()


def list_assignments_for_assignee(db: Session, assignee_id: uuid.UUID) -> List[Assignment]:
    return (
        db.query(Assignment)
        .filter(Assignment.assignee_id == assignee_id)
        .order_by(Assignment.created_at.desc())
        .all()
    )


def list_awaiting_review(db: Session, reviewer_id: uuid.UUID) -> List[Assignment]:
    return (
        db.query(Assignment)
        .filter(
            Assignment.reviewer_id == reviewer_id,
            Assignment.completed_at.isnot(None),
            (Assignment.review_status.is_(None)) | (Assignment.review_status == "pending"),
        )
        .order_by(Assignment.completed_at.asc())
        .all()
    )


def list_reviewed(db: Session, reviewer_id: uuid.UUID) -> List[Assignment]:
    return (
        db.query(Assignment)
        .filter(
            Assignment.reviewer_id == reviewer_id,
            Assignment.review_status.in_(["approved", "rejected"]),
        )
        .order_by(Assignment.reviewed_at.desc())
        .all()
    )


def search_profiles(db: Session, role: Optional[Role] = None, q: Optional[str] = None) -> List[Profile]:
    query = db.query(Profile).filter(Profile.is_active.is_(True))
    if role:
        query = query.filter(Profile.role == Role(role).value)
    if q:
        like = f"%{q.strip().lower()}%"
        query = query.filter(Profile.email.ilike(like) | Profile.full_name.ilike(like))
    return query.order_by(Profile.email.asc()).all()
