import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_acting_user, require_roles
from ..db import get_db
from ..models.models import Assignment, Report
from ..schemas.reports import HazardReportCreate, IncidentReportCreate, SOTReportCreate
from ..services import reports as report_service
from ..services.audit import get_audit_logs
from ..services.lifecycle import (
    ActingUser,
    ReportKind,
    Role,
    derive_task_status,
    permitted_actions,
    reconcile_report_status,
)


router = APIRouter(prefix="/reports", tags=["reports"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


KIND_TITLES = {"hazard": "Hazard", "incident": "Incident", "sot": "SOT"}


def serialize_assignment(assignment: Assignment, *, include_report: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(assignment.id),
        "report_id": str(assignment.report_id),
        "reviewer": {
            "id": str(assignment.reviewer_id),
            "name": assignment.reviewer.display_name if assignment.reviewer else None,
        },
        "assignee": {
            "id": str(assignment.assignee_id),
            "name": assignment.assignee.display_name if assignment.assignee else None,
        },
        "action": assignment.action,
        "target_completion_date": _iso(assignment.target_completion_date),
        "remark": assignment.remark,
        "assigned_at": _iso(assignment.assigned_at),
        "completed_at": _iso(assignment.completed_at),
        "review_status": assignment.review_status if assignment.review_status != "pending" else None,
        "review_reason": assignment.review_reason,
        "reviewed_at": _iso(assignment.reviewed_at),
        "task_status": derive_task_status(assignment),
        "version": assignment.version,
        "evidence_count": len(assignment.evidences),
    }
    if include_report and assignment.report is not None:
        data["report"] = serialize_report(assignment.report)
    return data


def serialize_report(report: Report) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(report.id),
        "kind": report.kind,
        "kind_label": KIND_TITLES.get(report.kind, report.kind),
        "user_id": str(report.user_id),
        "title": report.title,
        "description": report.description,
        "site": report.site,
        "department": report.department,
        "location": report.location,
        "date_of_reporting": _iso(report.date_of_reporting),
        "image_urls": list(report.image_urls or []),
        "status": report.status,
        "created_at": _iso(report.created_at),
        "updated_at": _iso(report.updated_at),
    }
    for field in report_service.KIND_FIELDS[ReportKind(report.kind)]:
        value = getattr(report, field)
        data[field] = _iso(value) if hasattr(value, "isoformat") else value
    if report.kind == ReportKind.INCIDENT.value:
        data["reporter_name"] = report.reporter_name
    return data


def _report_detail(report: Report, actor: ActingUser) -> Dict[str, Any]:
    assignment = report.assignment
    data = serialize_report(report)
    data["assignment"] = serialize_assignment(assignment) if assignment else None
    data["permitted_actions"] = sorted(a.value for a in permitted_actions(actor, report, assignment))
    return data


def _create(db: Session, actor: ActingUser, kind: ReportKind, payload) -> Dict[str, Any]:
    report = report_service.create_report(db, actor, kind, payload.model_dump(exclude_unset=True))
    return _report_detail(report, actor)


@router.post("/hazard", status_code=201)
def create_hazard_report(payload: HazardReportCreate, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    return _create(db, actor, ReportKind.HAZARD, payload)


@router.post("/incident", status_code=201)
def create_incident_report(payload: IncidentReportCreate, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    return _create(db, actor, ReportKind.INCIDENT, payload)


@router.post("/sot", status_code=201)
def create_sot_report(payload: SOTReportCreate, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    return _create(db, actor, ReportKind.SOT, payload)


@router.get("/mine")
def list_my_reports(kind: Optional[ReportKind] = None, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    rows = report_service.list_reports_for_submitter(db, actor.id, kind)
    return [_report_detail(r, actor) for r in rows]


@router.get("/queue")
def list_unassigned(
    kind: Optional[ReportKind] = None,
    db: Session = Depends(get_db),
    actor: ActingUser = Depends(require_roles(Role.REVIEWER)),
):
    return [_report_detail(r, actor) for r in report_service.list_unassigned_reports(db, kind)]


@router.get("/{report_id}")
def get_report(report_id: uuid.UUID, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    report = report_service.get_report(db, report_id)
    report_service.ensure_can_view(actor, report)
    return _report_detail(report, actor)


@router.get("/{report_id}/history")
def get_report_history(report_id: uuid.UUID, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    report = report_service.get_report(db, report_id)
    report_service.ensure_can_view(actor, report)
    return [
        {
            "seq": e.seq,
            "action": e.action,
            "actor_id": e.actor_id,
            "actor_role": e.actor_role,
            "changes": e.changes_json,
            "context": e.context,
            "at": e.timestamp_utc.isoformat(),
        }
        for e in get_audit_logs(db, entity_type="report", entity_id=str(report.id))
    ]


@router.post("/{report_id}/reconcile")
def reconcile_report(
    report_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActingUser = Depends(require_roles(Role.REVIEWER)),
):
    changed = reconcile_report_status(db, report_id, actor)
    report = report_service.get_report(db, report_id)
    return {
        "report_id": str(report.id),
        "status": report.status,
        "repaired": changed is not None,
        "previous_status": changed[0] if changed else None,
    }
