import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_acting_user, require_roles
from ..db import get_db
from ..errors import NotFound
from ..models.models import Assignment
from ..schemas.reports import AssignmentCreate, CompletionSubmit, ReviewDecision
from ..services import lifecycle
from ..services import reports as report_service
from ..services.lifecycle import ActingUser, EvidenceRef, ReviewStatus, Role, TransitionResult
from .reports import serialize_assignment, serialize_report


router = APIRouter(prefix="/assignments", tags=["assignments"])


def _get_assignment(db: Session, assignment_id: uuid.UUID) -> Assignment:
    assignment = db.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFound("Assignment not found", assignment_id=str(assignment_id))
    return assignment


def _result(result: TransitionResult) -> dict:
    return {
        "assignment": serialize_assignment(result.assignment),
        "report": serialize_report(result.report),
    }


def _evidence_refs(payload: CompletionSubmit):
    return [EvidenceRef(file_name=e.file_name, file_url=e.file_url, file_type=e.file_type) for e in payload.evidence]


@router.post("", status_code=201)
def create_assignment(
    payload: AssignmentCreate,
    db: Session = Depends(get_db),
    actor: ActingUser = Depends(get_acting_user),
):
    result = lifecycle.create_assignment(
        db,
        actor,
        report_id=payload.report_id,
        reviewer_id=payload.reviewer_id or actor.id,
        assignee_id=payload.assignee_id,
        action=payload.action,
        target_date=payload.target_completion_date,
        remark=payload.remark,
    )
    return _result(result)


@router.get("/mine")
def list_my_tasks(db: Session = Depends(get_db), actor: ActingUser = Depends(require_roles(Role.ASSIGNEE))):
    rows = report_service.list_assignments_for_assignee(db, actor.id)
    return [serialize_assignment(a, include_report=True) for a in rows]


@router.get("/review-queue")
def list_awaiting_review(db: Session = Depends(get_db), actor: ActingUser = Depends(require_roles(Role.REVIEWER))):
    rows = report_service.list_awaiting_review(db, actor.id)
    return [serialize_assignment(a, include_report=True) for a in rows]


@router.get("/reviewed")
def list_reviewed(db: Session = Depends(get_db), actor: ActingUser = Depends(require_roles(Role.REVIEWER))):
    rows = report_service.list_reviewed(db, actor.id)
    return [serialize_assignment(a, include_report=True) for a in rows]


@router.get("/{assignment_id}")
def get_assignment(assignment_id: uuid.UUID, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    assignment = _get_assignment(db, assignment_id)
    report_service.ensure_can_view_assignment(actor, assignment)
    data = serialize_assignment(assignment, include_report=True)
    data["permitted_actions"] = sorted(
        a.value for a in lifecycle.permitted_actions(actor, assignment.report, assignment)
    )
    return data


@router.get("/{assignment_id}/status")
def get_task_status(assignment_id: uuid.UUID, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    assignment = _get_assignment(db, assignment_id)
    report_service.ensure_can_view_assignment(actor, assignment)
    return {
        "assignment_id": str(assignment.id),
        "status": lifecycle.derive_task_status(assignment),
        "report_title": assignment.report.title if assignment.report else None,
        "assignee_name": assignment.assignee.display_name if assignment.assignee else None,
        "reviewer_name": assignment.reviewer.display_name if assignment.reviewer else None,
        "review_reason": assignment.review_reason,
        "reviewed_at": assignment.reviewed_at.isoformat() if assignment.reviewed_at else None,
    }


@router.get("/{assignment_id}/evidence")
def list_evidence(assignment_id: uuid.UUID, db: Session = Depends(get_db), actor: ActingUser = Depends(get_acting_user)):
    assignment = _get_assignment(db, assignment_id)
    report_service.ensure_can_view_assignment(actor, assignment)
    return [
        {
            "id": str(e.id),
            "file_name": e.file_name,
            "file_url": e.file_url,
            "file_type": e.file_type,
            "uploaded_at": e.uploaded_at.isoformat() if e.uploaded_at else None,
        }
        for e in assignment.evidences
    ]


@router.post("/{assignment_id}/complete")
def submit_completion(
    assignment_id: uuid.UUID,
    payload: CompletionSubmit,
    db: Session = Depends(get_db),
    actor: ActingUser = Depends(get_acting_user),
):
    return _result(lifecycle.submit_completion(db, actor, assignment_id, _evidence_refs(payload)))


@router.post("/{assignment_id}/resubmit")
def resubmit(
    assignment_id: uuid.UUID,
    payload: CompletionSubmit,
    db: Session = Depends(get_db),
    actor: ActingUser = Depends(get_acting_user),
):
    return _result(lifecycle.resubmit(db, actor, assignment_id, _evidence_refs(payload)))


@router.post("/{assignment_id}/review")
def review_assignment(
    assignment_id: uuid.UUID,
    payload: ReviewDecision,
    db: Session = Depends(get_db),
    actor: ActingUser = Depends(get_acting_user),
):
    result = lifecycle.review_assignment(db, actor, assignment_id, ReviewStatus(payload.decision), payload.reason)
    return _result(result)
