from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from safetyhub.errors import (
    InvariantViolation,
    NotFound,
    PartialFailure,
    PermissionDenied,
    PersistenceFailure,
    PreconditionFailed,
    ValidationFailed,
)
from safetyhub.models.models import Assignment, AuditLog, Evidence, Report
from safetyhub.services import lifecycle
from safetyhub.services import reports as report_service
from safetyhub.services.audit import get_audit_logs
from safetyhub.services.lifecycle import (
    Action,
    ActingUser,
    EvidenceRef,
    ReportKind,
    ReportStatus,
    ReviewStatus,
    Role,
    check_invariants,
    derive_report_status,
    derive_task_status,
    permitted_actions,
)
from safetyhub.services.reports import create_report


T0 = datetime(2026, 3, 2, 8, 0, 0)
T1 = T0 + timedelta(days=1)
T2 = T0 + timedelta(days=2)
T3 = T0 + timedelta(days=3)
T4 = T0 + timedelta(days=4)

PHOTO = EvidenceRef(file_name="railing.jpg", file_url="https://files.example.com/railing.jpg", file_type="image/jpeg")


def _report(db, actors, kind=ReportKind.HAZARD, **data):
    data.setdefault("title", "Loose railing on mezzanine")
    return create_report(db, actors["reporter"], kind, data)


def _assign(db, actors, profiles, report, **kw):
    kw.setdefault("action", "Replace railing bolts")
    kw.setdefault("target_date", date(2026, 3, 9))
    return lifecycle.create_assignment(
        db,
        actors["reviewer"],
        report.id,
        profiles["reviewer"].id,
        profiles["assignee"].id,
        now=kw.pop("now", T0),
        **kw,
    )


def _completed(db, actors, profiles):
    report = _report(db, actors)
    result = _assign(db, actors, profiles, report)
    return lifecycle.submit_completion(db, actors["assignee"], result.assignment.id, [PHOTO], now=T1)


class TestDerivedState:
    def test_no_assignment_is_submitted(self):
        assert derive_report_status(None) is ReportStatus.SUBMITTED

    @pytest.mark.parametrize(
        "completed_at, review_status, expected, task",
        [
            (None, None, ReportStatus.ASSIGNED, "pending"),
            (T1, None, ReportStatus.COMPLETED, "completed"),
            (T1, "pending", ReportStatus.COMPLETED, "completed"),
            (T1, "approved", ReportStatus.APPROVED, "approved"),
            (T1, "rejected", ReportStatus.REJECTED, "rejected"),
        ],
    )
    def test_assignment_drives_report_status(self, completed_at, review_status, expected, task):
        assignment = Assignment(completed_at=completed_at, review_status=review_status)
        assert derive_report_status(assignment) is expected
        assert derive_task_status(assignment) == task

    def test_invariants_flag_review_without_completion(self):
        report = Report(status="approved")
        assignment = Assignment(completed_at=None, review_status="approved")
        with pytest.raises(InvariantViolation):
            check_invariants(report, assignment)

    def test_invariants_flag_status_drift(self):
        with pytest.raises(InvariantViolation):
            check_invariants(Report(status="assigned"), None)
        check_invariants(Report(status="submitted"), None)


class TestPermittedActions:
    def test_reviewer_can_assign_submitted_report(self, db, actors):
        report = _report(db, actors)
        assert permitted_actions(actors["reviewer"], report, None) == {Action.CREATE_ASSIGNMENT}
        assert permitted_actions(actors["reporter"], report, None) == set()
        assert permitted_actions(actors["assignee"], report, None) == set()

    def test_assignee_actions_follow_assignment(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        assert permitted_actions(actors["assignee"], report, assignment) == {Action.SUBMIT_COMPLETION}
        assert permitted_actions(actors["other_assignee"], report, assignment) == set()
        assert permitted_actions(actors["reviewer"], report, assignment) == set()

    def test_only_owning_reviewer_may_review(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        assert permitted_actions(actors["reviewer"], result.report, result.assignment) == {Action.APPROVE, Action.REJECT}
        assert permitted_actions(actors["other_reviewer"], result.report, result.assignment) == set()
        assert permitted_actions(actors["assignee"], result.report, result.assignment) == set()

    def test_rejected_task_can_be_resubmitted(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        result = lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.REJECTED, "blurry photo")
        assert permitted_actions(actors["assignee"], result.report, result.assignment) == {Action.RESUBMIT}


def test_full_review_loop(db, actors, profiles):
    report = _report(db, actors)
    assert report.status == "submitted"
    assert report.assignment is None

    result = _assign(db, actors, profiles, report, now=T0)
    assignment = result.assignment
    assert result.report.status == "assigned"
    assert assignment.completed_at is None
    assert assignment.review_status is None
    assert assignment.target_completion_date == date(2026, 3, 9)

    result = lifecycle.submit_completion(db, actors["assignee"], assignment.id, [PHOTO], now=T1)
    assert result.report.status == "completed"
    assert result.assignment.completed_at == T1

    result = lifecycle.review_assignment(
        db, actors["reviewer"], assignment.id, ReviewStatus.REJECTED, "insufficient evidence", now=T2
    )
    assert result.assignment.review_status == "rejected"
    assert result.assignment.review_reason == "insufficient evidence"
    assert result.assignment.reviewed_at == T2
    assert result.assignment.completed_at == T1
    assert result.report.status == "rejected"

    result = lifecycle.resubmit(db, actors["assignee"], assignment.id, [PHOTO], now=T3)
    assert result.assignment.completed_at == T3
    assert result.assignment.review_status is None
    assert result.assignment.review_reason is None
    assert result.assignment.reviewed_at is None
    assert result.report.status == "completed"

    result = lifecycle.review_assignment(db, actors["reviewer"], assignment.id, ReviewStatus.APPROVED, now=T4)
    assert result.assignment.review_status == "approved"
    assert result.report.status == "approved"
    check_invariants(result.report, result.assignment)

    history = get_audit_logs(db, entity_type="report", entity_id=str(report.id))
    assert [h.action for h in history] == [
        "CREATE_REPORT",
        "CREATE_ASSIGNMENT",
        "SUBMIT_COMPLETION",
        "REJECT",
        "RESUBMIT",
        "APPROVE",
    ]
    assert [h.changes_json["report_status"]["after"] for h in history] == [
        "submitted",
        "assigned",
        "completed",
        "rejected",
        "completed",
        "approved",
    ]
    assert all(h.integrity_hash for h in history)
    assert db.query(Evidence).filter(Evidence.assignment_id == assignment.id).count() == 2


class TestCreateAssignment:
    def test_default_target_date(self, db, actors, profiles):
        report = _report(db, actors)
        result = lifecycle.create_assignment(
            db, actors["reviewer"], report.id, profiles["reviewer"].id, profiles["assignee"].id, "Fix it", now=T0
        )
        assert result.assignment.target_completion_date == date(2026, 3, 9)

    def test_requires_reviewer_role(self, db, actors, profiles):
        report = _report(db, actors)
        with pytest.raises(PermissionDenied):
            lifecycle.create_assignment(
                db, actors["reporter"], report.id, profiles["reporter"].id, profiles["assignee"].id, "Fix it"
            )

    def test_cannot_assign_in_another_reviewers_name(self, db, actors, profiles):
        report = _report(db, actors)
        with pytest.raises(PermissionDenied):
            lifecycle.create_assignment(
                db, actors["reviewer"], report.id, profiles["other_reviewer"].id, profiles["assignee"].id, "Fix it"
            )

    def test_assignee_must_have_assignee_role(self, db, actors, profiles):
        report = _report(db, actors)
        with pytest.raises(ValidationFailed):
            lifecycle.create_assignment(
                db, actors["reviewer"], report.id, profiles["reviewer"].id, profiles["reporter"].id, "Fix it"
            )

    def test_blank_action_refused(self, db, actors, profiles):
        report = _report(db, actors)
        with pytest.raises(ValidationFailed):
            _assign(db, actors, profiles, report, action="   ")

    def test_unknown_report(self, db, actors, profiles):
        import uuid

        with pytest.raises(NotFound):
            lifecycle.create_assignment(
                db, actors["reviewer"], uuid.uuid4(), profiles["reviewer"].id, profiles["assignee"].id, "Fix it"
            )

    def test_second_assignment_refused(self, db, actors, profiles):
        report = _report(db, actors)
        _assign(db, actors, profiles, report)
        with pytest.raises(PreconditionFailed):
            lifecycle.create_assignment(
                db, actors["other_reviewer"], report.id, profiles["other_reviewer"].id, profiles["assignee"].id, "Again"
            )
        assert db.query(Assignment).filter(Assignment.report_id == report.id).count() == 1

    def test_taken_report_refused_before_argument_checks(self, db, actors, profiles):
        report = _report(db, actors)
        _assign(db, actors, profiles, report)
        with pytest.raises(PreconditionFailed):
            lifecycle.create_assignment(
                db, actors["reviewer"], report.id, profiles["reviewer"].id, profiles["reporter"].id, "Again"
            )
        with pytest.raises(PreconditionFailed):
            lifecycle.create_assignment(
                db, actors["reviewer"], report.id, profiles["reviewer"].id, profiles["assignee"].id, "  "
            )


class TestCompletion:
    def test_only_owner_can_complete(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        with pytest.raises(PermissionDenied):
            lifecycle.submit_completion(db, actors["other_assignee"], assignment.id)
        with pytest.raises(PermissionDenied):
            lifecycle.submit_completion(db, actors["reviewer"], assignment.id)

    def test_cannot_complete_twice(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        with pytest.raises(PreconditionFailed):
            lifecycle.submit_completion(db, actors["assignee"], result.assignment.id, now=T2)
        db.expire_all()
        assert db.get(Assignment, result.assignment.id).completed_at == T1

    def test_evidence_limit(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        with pytest.raises(ValidationFailed):
            lifecycle.submit_completion(db, actors["assignee"], assignment.id, [PHOTO] * 4)
        db.expire_all()
        assert db.get(Assignment, assignment.id).completed_at is None

    def test_oversized_evidence_refused(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        long_url = EvidenceRef(file_name="a.jpg", file_url="https://files.example.com/" + "x" * 2048)
        with pytest.raises(ValidationFailed):
            lifecycle.submit_completion(db, actors["assignee"], assignment.id, [long_url])
        db.expire_all()
        assert db.get(Assignment, assignment.id).completed_at is None

    def test_completion_without_evidence(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        result = lifecycle.submit_completion(db, actors["assignee"], assignment.id, now=T1)
        assert result.report.status == "completed"
        assert result.assignment.evidences == []

    def test_resubmit_requires_rejection(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        with pytest.raises(PreconditionFailed):
            lifecycle.resubmit(db, actors["assignee"], result.assignment.id)

    def test_legacy_pending_counts_as_unreviewed(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        assignment.review_status = "pending"
        db.commit()
        result = lifecycle.submit_completion(db, actors["assignee"], assignment.id, now=T1)
        assert result.report.status == "completed"
        result = lifecycle.review_assignment(db, actors["reviewer"], assignment.id, ReviewStatus.APPROVED, now=T2)
        assert result.report.status == "approved"


class TestReview:
    def test_cannot_review_incomplete_task(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        version = assignment.version
        with pytest.raises(PreconditionFailed):
            lifecycle.review_assignment(db, actors["reviewer"], assignment.id, ReviewStatus.APPROVED)
        db.expire_all()
        fresh = db.get(Assignment, assignment.id)
        assert fresh.review_status is None
        assert fresh.version == version
        assert fresh.report.status == "assigned"

    def test_cannot_review_twice(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.APPROVED, "good", now=T2)
        with pytest.raises(PreconditionFailed):
            lifecycle.review_assignment(
                db, actors["reviewer"], result.assignment.id, ReviewStatus.REJECTED, "changed my mind", now=T3
            )
        db.expire_all()
        fresh = db.get(Assignment, result.assignment.id)
        assert fresh.review_status == "approved"
        assert fresh.review_reason == "good"

    def test_reject_needs_reason(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        with pytest.raises(ValidationFailed):
            lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.REJECTED, "  ")

    def test_reject_on_incomplete_task_is_precondition_even_without_reason(self, db, actors, profiles):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment
        with pytest.raises(PreconditionFailed):
            lifecycle.review_assignment(db, actors["reviewer"], assignment.id, ReviewStatus.REJECTED, None)

    def test_reject_on_approved_task_is_precondition_even_without_reason(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.APPROVED, now=T2)
        with pytest.raises(PreconditionFailed):
            lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.REJECTED, "")

    @pytest.mark.parametrize("decision", ["pending", "maybe", None])
    def test_unknown_decision_is_validation_failure(self, db, actors, profiles, decision):
        result = _completed(db, actors, profiles)
        with pytest.raises(ValidationFailed):
            lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, decision, "x")
        db.expire_all()
        assert db.get(Assignment, result.assignment.id).review_status is None

    def test_other_reviewer_refused(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        with pytest.raises(PermissionDenied):
            lifecycle.review_assignment(db, actors["other_reviewer"], result.assignment.id, ReviewStatus.APPROVED)

    def test_assignee_cannot_review(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        with pytest.raises(PermissionDenied):
            lifecycle.review_assignment(db, actors["assignee"], result.assignment.id, ReviewStatus.APPROVED)

    def test_display_role_does_not_grant_review(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        impostor = ActingUser(id=profiles["assignee"].id, role=Role.REVIEWER)
        with pytest.raises(PermissionDenied):
            lifecycle.review_assignment(db, impostor, result.assignment.id, ReviewStatus.APPROVED)

    def test_concurrent_reviews_second_loses(self, db, session_factory, actors, profiles):
        assignment_id = _completed(db, actors, profiles).assignment.id

        first = session_factory()
        second = session_factory()
        try:
            # Both reviewers have the task open before either decides
            assert first.get(Assignment, assignment_id).review_status is None
            assert second.get(Assignment, assignment_id).review_status is None

            lifecycle.review_assignment(first, actors["reviewer"], assignment_id, ReviewStatus.APPROVED, "looks good", now=T2)
            with pytest.raises(PreconditionFailed):
                lifecycle.review_assignment(
                    second, actors["reviewer"], assignment_id, ReviewStatus.REJECTED, "not enough", now=T3
                )
        finally:
            first.close()
            second.close()

        db.expire_all()
        fresh = db.get(Assignment, assignment_id)
        assert fresh.review_status == "approved"
        assert fresh.review_reason == "looks good"
        assert fresh.report.status == "approved"


class TestFailures:
    def test_partial_failure_is_rolled_back(self, db, actors, profiles, monkeypatch):
        report = _report(db, actors)
        assignment = _assign(db, actors, profiles, report).assignment

        def _broken(*args, **kwargs):
            raise OperationalError("UPDATE reports", {}, Exception("database is locked"))

        monkeypatch.setattr(lifecycle, "_write_report_status", _broken)
        with pytest.raises(PartialFailure) as excinfo:
            lifecycle.submit_completion(db, actors["assignee"], assignment.id, [PHOTO], now=T1)
        assert excinfo.value.applied == ["assignment"]
        assert excinfo.value.retryable
        assert excinfo.value.to_dict()["compensated"] is True

        db.expire_all()
        fresh = db.get(Assignment, assignment.id)
        assert fresh.completed_at is None
        assert fresh.report.status == "assigned"
        assert db.query(Evidence).count() == 0

        monkeypatch.undo()
        result = lifecycle.submit_completion(db, actors["assignee"], assignment.id, [PHOTO], now=T1)
        assert result.report.status == "completed"

    def test_persistence_failure_on_first_write(self, db, actors, profiles, monkeypatch):
        result = _completed(db, actors, profiles)

        def _broken(*args, **kwargs):
            raise OperationalError("UPDATE assignments", {}, Exception("permission denied"))

        monkeypatch.setattr(lifecycle, "_cas_assignment", _broken)
        with pytest.raises(PersistenceFailure) as excinfo:
            lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.APPROVED)
        assert not isinstance(excinfo.value, PartialFailure)
        assert excinfo.value.retryable

        db.expire_all()
        assert db.get(Assignment, result.assignment.id).review_status is None

    def test_report_store_error_is_persistence_failure(self, db, actors, profiles, monkeypatch):
        def _broken(*args, **kwargs):
            raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

        monkeypatch.setattr(report_service, "create_audit_log", _broken)
        with pytest.raises(PersistenceFailure) as excinfo:
            _report(db, actors)
        assert excinfo.value.retryable
        assert db.query(Report).count() == 0

    def test_refused_transition_leaves_no_trail(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        before = db.query(AuditLog).count()
        with pytest.raises(PreconditionFailed):
            lifecycle.submit_completion(db, actors["assignee"], result.assignment.id)
        assert db.query(AuditLog).count() == before


class TestReconcile:
    def test_repairs_drifted_status(self, db, actors, profiles):
        result = _completed(db, actors, profiles)
        lifecycle.review_assignment(db, actors["reviewer"], result.assignment.id, ReviewStatus.APPROVED, now=T2)
        report = db.get(Report, result.report.id)
        # Older clients wrote the report status separately and could leave it behind
        report.status = "assigned"
        db.commit()

        assert lifecycle.reconcile_report_status(db, report.id) == ("assigned", "approved")
        assert db.get(Report, report.id).status == "approved"
        assert lifecycle.reconcile_report_status(db, report.id) is None

    def test_reconcile_all(self, db, actors, profiles):
        clean = _report(db, actors, title="Spill near dock")
        drifted = _report(db, actors, title="Blocked exit")
        drifted.status = "completed"
        db.commit()

        assert lifecycle.reconcile_all(db) == [drifted.id]
        assert db.get(Report, drifted.id).status == "submitted"
        assert db.get(Report, clean.id).status == "submitted"
        actions = [h.action for h in get_audit_logs(db, entity_type="report", entity_id=str(drifted.id))]
        assert actions[-1] == "RECONCILE"
