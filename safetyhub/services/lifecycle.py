"""
Report lifecycle engine.

Hazard, incident and SOT reports all move through the same states:

    submitted -> assigned -> completed -> approved | rejected
    rejected -> (resubmit) -> completed

A report's status is never set directly. It is derived from its assignment
and written in the same transaction as the assignment change that caused it.
Assignment writes are compare-and-swap updates guarded by the transition's
precondition and the row's version, so of two concurrent reviews exactly one
commits and the other gets PreconditionFailed.
"""
import enum
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    InvariantViolation,
    LifecycleError,
    NotFound,
    PartialFailure,
    PermissionDenied,
    PersistenceFailure,
    PreconditionFailed,
    ValidationFailed,
)
from ..models.models import Assignment, Evidence, Profile, Report
from .audit import compute_diff, create_audit_log


log = structlog.get_logger(__name__)


class Role(str, enum.Enum):
    USER = "user"
    REVIEWER = "reviewer"
    ASSIGNEE = "assignee"


class ReportKind(str, enum.Enum):
    HAZARD = "hazard"
    INCIDENT = "incident"
    SOT = "sot"


class ReportStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"  # reserved, never produced
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewStatus(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Action(str, enum.Enum):
    CREATE_ASSIGNMENT = "create_assignment"
    SUBMIT_COMPLETION = "submit_completion"
    APPROVE = "approve"
    REJECT = "reject"
    RESUBMIT = "resubmit"


# Report status while a rejected assignment waits for rework
REWORK_STATUS = ReportStatus.REJECTED

# Written by older clients to mean "not reviewed yet"
_LEGACY_PENDING = "pending"


@dataclass(frozen=True)
class ActingUser:
    id: uuid.UUID
    role: Role

    @classmethod
    def from_profile(cls, profile: Profile) -> "ActingUser":
        return cls(id=profile.id, role=Role(profile.role))


@dataclass(frozen=True)
class EvidenceRef:
    file_name: str
    file_url: str
    file_type: Optional[str] = None


@dataclass
class TransitionResult:
    assignment: Assignment
    report: Report


# -----------------------------
# Pure state functions
# -----------------------------


def review_state(assignment: Assignment) -> Optional[ReviewStatus]:
    raw = assignment.review_status
    if raw is None or raw == _LEGACY_PENDING:
        return None
    return ReviewStatus(raw)


def derive_report_status(assignment: Optional[Assignment]) -> ReportStatus:
    if assignment is None:
        return ReportStatus.SUBMITTED
    review = review_state(assignment)
    if review is ReviewStatus.APPROVED:
        return ReportStatus.APPROVED
    if review is ReviewStatus.REJECTED:
        return REWORK_STATUS
    if assignment.completed_at is not None:
        return ReportStatus.COMPLETED
    return ReportStatus.ASSIGNED


def derive_task_status(assignment: Assignment) -> str:
    """pending|completed|approved|rejected, as shown on the task status card."""
    review = review_state(assignment)
    if review is not None:
        return review.value
    if assignment.completed_at is not None:
        return "completed"
    return "pending"


def permitted_actions(actor: ActingUser, report: Report, assignment: Optional[Assignment]) -> Set[Action]:
    actions: Set[Action] = set()
    if actor.role is Role.REVIEWER:
        if assignment is None and report.status == ReportStatus.SUBMITTED.value:
            actions.add(Action.CREATE_ASSIGNMENT)
        if (
            assignment is not None
            and assignment.reviewer_id == actor.id
            and assignment.completed_at is not None
            and review_state(assignment) is None
        ):
            actions.update({Action.APPROVE, Action.REJECT})
    elif actor.role is Role.ASSIGNEE and assignment is not None and assignment.assignee_id == actor.id:
        review = review_state(assignment)
        if assignment.completed_at is None and review is None:
            actions.add(Action.SUBMIT_COMPLETION)
        if review is ReviewStatus.REJECTED:
            actions.add(Action.RESUBMIT)
    return actions


def check_invariants(report: Report, assignment: Optional[Assignment]) -> None:
    if assignment is not None and review_state(assignment) is not None and assignment.completed_at is None:
        raise InvariantViolation(
            "Assignment has a review without a completion",
            assignment_id=str(assignment.id),
        )
    expected = derive_report_status(assignment)
    if report.status != expected.value:
        raise InvariantViolation(
            f"Report status is {report.status!r}, assignment implies {expected.value!r}",
            report_id=str(report.id),
        )


# -----------------------------
# Internals
# -----------------------------


def _utcnow() -> datetime:
    return datetime.utcnow()


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, (datetime, date)) else value


def _snapshot(report: Report, assignment: Optional[Assignment]) -> Dict[str, Any]:
    data: Dict[str, Any] = {"report_status": report.status}
    if assignment is not None:
        data.update(
            completed_at=_iso(assignment.completed_at),
            review_status=assignment.review_status,
            review_reason=assignment.review_reason,
            reviewed_at=_iso(assignment.reviewed_at),
        )
    return data


def _require_role(actor: ActingUser, role: Role, action: Action) -> None:
    if actor.role is not role:
        raise PermissionDenied(f"Only a {role.value} may {action.value.replace('_', ' ')}")


def _load_assignment(db: Session, assignment_id: uuid.UUID) -> Assignment:
    assignment = db.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFound("Assignment not found", assignment_id=str(assignment_id))
    return assignment


def _check_evidence(evidence_refs: Sequence[EvidenceRef]) -> None:
    if len(evidence_refs) > settings.evidence_max_files:
        raise ValidationFailed(f"At most {settings.evidence_max_files} evidence files per submission")
    for ref in evidence_refs:
        if not (ref.file_name or "").strip() or not (ref.file_url or "").strip():
            raise ValidationFailed("Evidence needs a file name and URL")
        # Column widths on the evidence table
        if len(ref.file_name) > 255 or len(ref.file_url) > 2048 or len(ref.file_type or "") > 100:
            raise ValidationFailed("Evidence file name, URL or type is too long", file_name=ref.file_name[:64])


@contextmanager
def _atomic(db: Session, label: str, applied: List[str], **log_ctx: Any) -> Iterator[None]:
    """
    Commit the transition's writes together. `applied` collects the steps
    executed so far; a store error after the first step is a PartialFailure.
    """
    try:
        yield
        db.commit()
    except LifecycleError as exc:
        db.rollback()
        log.info("lifecycle.refused", action=label, code=exc.code, reason=exc.message, **log_ctx)
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        if applied:
            log.error("lifecycle.partial_failure", action=label, applied=list(applied), error=str(exc), **log_ctx)
            raise PartialFailure(
                f"{label} failed after {', '.join(applied)} was written; changes were rolled back",
                applied=applied,
            ) from exc
        log.error("lifecycle.persistence_failure", action=label, error=str(exc), **log_ctx)
        raise PersistenceFailure(f"{label} could not be saved") from exc


def _cas_assignment(db: Session, assignment: Assignment, guard: Sequence[Any], values: Dict[str, Any], now: datetime) -> None:
    stmt = (
        update(Assignment)
        .where(Assignment.id == assignment.id, Assignment.version == assignment.version, *guard)
        .values(version=Assignment.version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        raise PreconditionFailed(
            "Assignment was changed by someone else; reload and try again",
            assignment_id=str(assignment.id),
        )
    db.refresh(assignment)


def _write_report_status(db: Session, report: Report, status: ReportStatus, now: datetime) -> None:
    report.status = status.value
    report.updated_at = now
    db.flush()


def _append_evidence(db: Session, assignment: Assignment, evidence_refs: Sequence[EvidenceRef], now: datetime) -> None:
    for ref in evidence_refs:
        db.add(
            Evidence(
                assignment_id=assignment.id,
                file_name=ref.file_name.strip(),
                file_url=ref.file_url.strip(),
                file_type=ref.file_type,
                uploaded_at=now,
            )
        )
    db.flush()


def _record(db: Session, actor: ActingUser, action: str, report: Report, before: Dict[str, Any], assignment: Assignment, **context: Any) -> None:
    create_audit_log(
        db,
        entity_type="report",
        entity_id=str(report.id),
        action=action,
        actor_id=str(actor.id),
        actor_role=actor.role.value,
        source="api",
        changes_json=compute_diff(before, _snapshot(report, assignment)),
        context={"assignment_id": str(assignment.id), **context},
    )


_NOT_REVIEWED = or_(Assignment.review_status.is_(None), Assignment.review_status == _LEGACY_PENDING)


# -----------------------------
# Transitions
# -----------------------------


def create_assignment(
    db: Session,
    actor: ActingUser,
    report_id: uuid.UUID,
    reviewer_id: uuid.UUID,
    assignee_id: uuid.UUID,
    action: str,
    target_date: Optional[date] = None,
    remark: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TransitionResult:
    _require_role(actor, Role.REVIEWER, Action.CREATE_ASSIGNMENT)
    if reviewer_id != actor.id:
        raise PermissionDenied("Assignments can only be created in the acting reviewer's name")

    report = db.get(Report, report_id)
    if report is None:
        raise NotFound("Report not found", report_id=str(report_id))
    # State first: a report that is already taken is refused whatever the arguments
    if report.status != ReportStatus.SUBMITTED.value or report.assignment is not None:
        raise PreconditionFailed(
            f"Report is {report.status}; only submitted reports can be assigned",
            report_id=str(report.id),
        )

    action_text = (action or "").strip()
    if not action_text:
        raise ValidationFailed("An action is required")
    assignee = db.get(Profile, assignee_id)
    if assignee is None or not assignee.is_active:
        raise NotFound("Assignee not found", assignee_id=str(assignee_id))
    if assignee.role != Role.ASSIGNEE.value:
        raise ValidationFailed(f"{assignee.email} is not an assignee")

    now = now or _utcnow()
    target_date = target_date or (now.date() + timedelta(days=settings.default_target_days))
    before = _snapshot(report, None)
    applied: List[str] = []
    ctx = {"report_id": str(report.id), "actor_id": str(actor.id)}

    with _atomic(db, Action.CREATE_ASSIGNMENT.value, applied, **ctx):
        claimed = db.execute(
            update(Report)
            .where(Report.id == report.id, Report.status == ReportStatus.SUBMITTED.value)
            .values(status=ReportStatus.ASSIGNED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            raise PreconditionFailed("Report was assigned by someone else", report_id=str(report.id))
        applied.append("report")

        assignment = Assignment(
            report=report,
            reviewer_id=actor.id,
            assignee_id=assignee.id,
            action=action_text,
            target_completion_date=target_date,
            remark=(remark or "").strip() or None,
            assigned_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(assignment)
        db.flush()
        applied.append("assignment")
        db.refresh(report)
        _record(db, actor, "CREATE_ASSIGNMENT", report, before, assignment, assignee_id=str(assignee.id))

    log.info("lifecycle.assigned", assignment_id=str(assignment.id), assignee_id=str(assignee.id), **ctx)
    return TransitionResult(assignment=assignment, report=report)


def submit_completion(
    db: Session,
    actor: ActingUser,
    assignment_id: uuid.UUID,
    evidence_refs: Sequence[EvidenceRef] = (),
    *,
    now: Optional[datetime] = None,
) -> TransitionResult:
    _require_role(actor, Role.ASSIGNEE, Action.SUBMIT_COMPLETION)
    assignment = _load_assignment(db, assignment_id)
    if assignment.assignee_id != actor.id:
        raise PermissionDenied("Only the assigned assignee can complete this task")
    if assignment.completed_at is not None or review_state(assignment) is not None:
        raise PreconditionFailed("Task has already been completed", assignment_id=str(assignment.id))
    _check_evidence(evidence_refs)
    return _complete(db, actor, assignment, evidence_refs, Action.SUBMIT_COMPLETION, now or _utcnow())


def resubmit(
    db: Session,
    actor: ActingUser,
    assignment_id: uuid.UUID,
    evidence_refs: Sequence[EvidenceRef] = (),
    *,
    now: Optional[datetime] = None,
) -> TransitionResult:
    _require_role(actor, Role.ASSIGNEE, Action.RESUBMIT)
    assignment = _load_assignment(db, assignment_id)
    if assignment.assignee_id != actor.id:
        raise PermissionDenied("Only the assigned assignee can resubmit this task")
    if review_state(assignment) is not ReviewStatus.REJECTED:
        raise PreconditionFailed("Only rejected tasks can be resubmitted", assignment_id=str(assignment.id))
    _check_evidence(evidence_refs)
    return _complete(db, actor, assignment, evidence_refs, Action.RESUBMIT, now or _utcnow())


def _complete(
    db: Session,
    actor: ActingUser,
    assignment: Assignment,
    evidence_refs: Sequence[EvidenceRef],
    action: Action,
    now: datetime,
) -> TransitionResult:
    report = assignment.report
    before = _snapshot(report, assignment)
    if action is Action.RESUBMIT:
        guard = [Assignment.review_status == ReviewStatus.REJECTED.value]
        values = {"completed_at": now, "review_status": None, "review_reason": None, "reviewed_at": None}
    else:
        guard = [Assignment.completed_at.is_(None), _NOT_REVIEWED]
        values = {"completed_at": now}

    applied: List[str] = []
    ctx = {"assignment_id": str(assignment.id), "report_id": str(report.id), "actor_id": str(actor.id)}
    with _atomic(db, action.value, applied, **ctx):
        _cas_assignment(db, assignment, guard, values, now)
        applied.append("assignment")
        _write_report_status(db, report, derive_report_status(assignment), now)
        applied.append("report")
        if evidence_refs:
            _append_evidence(db, assignment, evidence_refs, now)
            applied.append("evidence")
        _record(db, actor, action.name, report, before, assignment, evidence=len(evidence_refs))

    log.info("lifecycle.completed", action=action.value, evidence=len(evidence_refs), **ctx)
    return TransitionResult(assignment=assignment, report=report)


def review_assignment(
    db: Session,
    actor: ActingUser,
    assignment_id: uuid.UUID,
    decision: ReviewStatus,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TransitionResult:
    try:
        decision = ReviewStatus(decision)
    except ValueError:
        raise ValidationFailed("decision must be 'approved' or 'rejected'", decision=str(decision))
    verb = Action.APPROVE if decision is ReviewStatus.APPROVED else Action.REJECT
    _require_role(actor, Role.REVIEWER, verb)
    assignment = _load_assignment(db, assignment_id)
    if assignment.reviewer_id != actor.id:
        raise PermissionDenied("Only the reviewer who assigned this task can review it")
    if assignment.completed_at is None:
        raise PreconditionFailed("Task has not been completed yet", assignment_id=str(assignment.id))
    if review_state(assignment) is not None:
        raise PreconditionFailed(
            f"Task has already been {assignment.review_status}",
            assignment_id=str(assignment.id),
        )
    reason = (reason or "").strip() or None
    if decision is ReviewStatus.REJECTED and not reason:
        raise ValidationFailed("A reason is required to reject a task")

    now = now or _utcnow()
    report = assignment.report
    before = _snapshot(report, assignment)
    applied: List[str] = []
    ctx = {"assignment_id": str(assignment.id), "report_id": str(report.id), "actor_id": str(actor.id)}
    with _atomic(db, verb.value, applied, **ctx):
        _cas_assignment(
            db,
            assignment,
            [Assignment.completed_at.isnot(None), _NOT_REVIEWED],
            {"review_status": decision.value, "review_reason": reason, "reviewed_at": now},
            now,
        )
        applied.append("assignment")
        _write_report_status(db, report, derive_report_status(assignment), now)
        applied.append("report")
        _record(db, actor, verb.name, report, before, assignment)

    log.info("lifecycle.reviewed", decision=decision.value, **ctx)
    return TransitionResult(assignment=assignment, report=report)


# -----------------------------
# Reconciliation
# -----------------------------


def reconcile_report_status(
    db: Session, report_id: uuid.UUID, actor: Optional[ActingUser] = None
) -> Optional[Tuple[str, str]]:
    """
    Rewrite a report's status from its assignment. Returns (old, new) when the
    status had drifted, None when it was already consistent.
    """
    report = db.get(Report, report_id)
    if report is None:
        raise NotFound("Report not found", report_id=str(report_id))
    expected = derive_report_status(report.assignment)
    if report.status == expected.value:
        return None

    old = report.status
    now = _utcnow()
    applied: List[str] = []
    with _atomic(db, "reconcile", applied, report_id=str(report.id)):
        _write_report_status(db, report, expected, now)
        applied.append("report")
        create_audit_log(
            db,
            entity_type="report",
            entity_id=str(report.id),
            action="RECONCILE",
            actor_id=str(actor.id) if actor else None,
            actor_role=actor.role.value if actor else "system",
            source="api" if actor else "system",
            changes_json={"report_status": {"before": old, "after": expected.value}},
        )
    log.warning("lifecycle.reconciled", report_id=str(report.id), before=old, after=expected.value)
    return old, expected.value


def reconcile_all(db: Session, actor: Optional[ActingUser] = None) -> List[uuid.UUID]:
    repaired = []
    for (report_id,) in db.query(Report.id).order_by(Report.created_at.asc()).all():
        if reconcile_report_status(db, report_id, actor) is not None:
            repaired.append(report_id)
    return repaired
