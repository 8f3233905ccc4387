"""
Tests for the generation job lifecycle and its token charges.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from adledger.models import AdImage, GenerationJob, JobStatus, TokenLedger
from adledger.services import generation as generation_service
from adledger.services import tokens as tokens_service
from adledger.services.errors import InsufficientTokensError, InvalidJobTransitionError, JobNotFoundError


def _reasons(db: Session, user_id: str) -> list[str]:
    rows = db.query(TokenLedger).filter(TokenLedger.userId == user_id).order_by(TokenLedger.id.asc()).all()
    return [row.reason for row in rows]


class TestTokenCost:
    def test_single_format_costs_50(self):
        assert generation_service.calculate_token_cost(["1:1"]) == 50
        assert generation_service.calculate_token_cost(["story"]) == 50

    def test_both_formats_cost_80(self):
        assert generation_service.calculate_token_cost(["1:1", "9:16"]) == 80
        assert generation_service.calculate_token_cost(["square", "story"]) == 80

    def test_no_format_is_single(self):
        assert generation_service.calculate_token_cost([]) == 50
        assert generation_service.calculate_token_cost(None) == 50


class TestCreateJob:
    """Reservation and job creation happen together."""

    def test_create_reserves_and_links_ledger(self, db_session: Session, make_account):
        user = make_account(balance=100)
        job = generation_service.create_generation_job(
            db_session, user.id, job_id="J1", formats=["1:1", "9:16"], prompt="summer sale"
        )
        db_session.commit()

        assert job.status == JobStatus.QUEUED.value
        assert job.tokensCost == 80
        reserve = tokens_service.get_ledger_entry_by_reference(db_session, "J1", "JOB_RESERVE")
        assert reserve is not None
        assert job.ledgerId == reserve.id
        assert reserve.delta == -80
        assert tokens_service.get_token_balance(db_session, user.id) == 20

    def test_insufficient_tokens_creates_nothing(self, db_session: Session, make_account):
        user = make_account(balance=20)
        with pytest.raises(InsufficientTokensError):
            generation_service.create_generation_job(db_session, user.id, job_id="J2", formats=["1:1"])
        db_session.rollback()

        assert db_session.get(GenerationJob, "J2") is None
        assert tokens_service.get_ledger_entry_by_reference(db_session, "J2", "JOB_RESERVE") is None
        assert tokens_service.get_token_balance(db_session, user.id) == 20

    def test_resubmitting_same_job_id_charges_once(self, db_session: Session, make_account):
        user = make_account(balance=200)
        first = generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        second = generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        db_session.commit()

        assert first.id == second.id
        assert tokens_service.get_token_balance(db_session, user.id) == 150
        assert _reasons(db_session, user.id).count("JOB_RESERVE") == 1

    def test_job_id_of_another_user_is_not_found(self, db_session: Session, make_account):
        alice = make_account(balance=100)
        bob = make_account(balance=100)
        generation_service.create_generation_job(db_session, alice.id, job_id="J1", formats=["1:1"])
        db_session.commit()

        with pytest.raises(JobNotFoundError):
            generation_service.create_generation_job(db_session, bob.id, job_id="J1", formats=["1:1"])
        db_session.rollback()
        assert tokens_service.get_token_balance(db_session, bob.id) == 100

    def test_generated_job_id(self, db_session: Session, make_account):
        user = make_account(balance=100)
        job = generation_service.create_generation_job(db_session, user.id, formats=["1:1"])
        db_session.commit()
        assert job.id


class TestJobTransitions:
    """Status changes and the refund they trigger (scenario D)."""

    def test_failed_job_is_refunded_once(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        generation_service.mark_job_running(db_session, "J1")
        db_session.commit()

        job = generation_service.mark_job_failed(db_session, "J1", error_code="MODEL_ERROR", error_message="boom")
        db_session.commit()
        assert job.status == "FAILED"
        assert job.errorCode == "MODEL_ERROR"
        assert job.completedAt is not None
        assert tokens_service.get_token_balance(db_session, user.id) == 100

        # 工作流重复回调
        generation_service.mark_job_failed(db_session, "J1", error_code="MODEL_ERROR")
        db_session.commit()
        assert tokens_service.get_token_balance(db_session, user.id) == 100
        assert _reasons(db_session, user.id).count("JOB_REFUND") == 1

    def test_success_keeps_charge_and_records_images(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1", "9:16"])
        generation_service.mark_job_running(db_session, "J1")
        job = generation_service.mark_job_succeeded(
            db_session, "J1", image_urls=["https://cdn.example.com/a.png", "https://cdn.example.com/b.png"]
        )
        db_session.commit()

        assert job.status == "SUCCEEDED"
        assert job.startedAt is not None
        assert tokens_service.get_token_balance(db_session, user.id) == 20
        assert db_session.query(AdImage).filter(AdImage.jobId == "J1").count() == 2
        assert "JOB_REFUND" not in _reasons(db_session, user.id)

    def test_cancel_queued_job_refunds(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        job = generation_service.cancel_job(db_session, "J1")
        db_session.commit()

        assert job.status == "CANCELED"
        assert job.errorCode == "CANCELED"
        assert tokens_service.get_token_balance(db_session, user.id) == 100

    def test_terminal_job_cannot_change(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        generation_service.mark_job_running(db_session, "J1")
        generation_service.mark_job_succeeded(db_session, "J1")
        db_session.commit()

        with pytest.raises(InvalidJobTransitionError) as exc_info:
            generation_service.cancel_job(db_session, "J1")
        db_session.rollback()

        assert exc_info.value.http_status == 409
        assert db_session.get(GenerationJob, "J1").status == "SUCCEEDED"
        assert tokens_service.get_token_balance(db_session, user.id) == 50

    def test_queued_cannot_jump_to_succeeded(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        db_session.commit()

        with pytest.raises(InvalidJobTransitionError):
            generation_service.mark_job_succeeded(db_session, "J1")

    def test_update_status_rejects_queued(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        db_session.commit()

        with pytest.raises(InvalidJobTransitionError):
            generation_service.update_job_status(db_session, "J1", JobStatus.QUEUED)

    def test_unknown_job(self, db_session: Session):
        with pytest.raises(JobNotFoundError):
            generation_service.mark_job_running(db_session, "missing")

    def test_terminal_statuses(self):
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.RUNNING.is_terminal


class TestPartialCharge:
    def test_partial_charge_after_failure(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1", "9:16"])
        generation_service.mark_job_failed(db_session, "J1")
        db_session.commit()
        assert tokens_service.get_token_balance(db_session, user.id) == 100

        result = generation_service.charge_partial_job(db_session, user.id, "J1", 50)
        replay = generation_service.charge_partial_job(db_session, user.id, "J1", 50)
        db_session.commit()

        assert result.applied is True
        assert replay.applied is False
        assert tokens_service.get_token_balance(db_session, user.id) == 50
        tokens_service.verify_user_ledger(db_session, user.id)

    def test_partial_charge_is_capped_at_job_cost(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        generation_service.cancel_job(db_session, "J1")
        result = generation_service.charge_partial_job(db_session, user.id, "J1", 999)
        db_session.commit()

        assert result.entry.delta == -50
        assert tokens_service.get_token_balance(db_session, user.id) == 50

    def test_partial_charge_requires_failed_job(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="J1", formats=["1:1"])
        db_session.commit()

        with pytest.raises(InvalidJobTransitionError):
            generation_service.charge_partial_job(db_session, user.id, "J1", 10)


class TestStaleJobs:
    def test_stale_jobs_fail_with_timeout_and_refund(self, db_session: Session, make_account):
        user = make_account(balance=200)
        generation_service.create_generation_job(db_session, user.id, job_id="OLD", formats=["1:1"])
        generation_service.create_generation_job(db_session, user.id, job_id="DONE", formats=["1:1"])
        generation_service.mark_job_running(db_session, "DONE")
        generation_service.mark_job_succeeded(db_session, "DONE")
        db_session.commit()

        failed = generation_service.fail_stale_jobs(
            db_session, max_age_minutes=30, now=datetime.utcnow() + timedelta(hours=1)
        )
        db_session.commit()

        assert failed == 1
        old = db_session.get(GenerationJob, "OLD")
        assert old.status == "FAILED"
        assert old.errorCode == "TIMEOUT"
        assert tokens_service.get_token_balance(db_session, user.id) == 150

    def test_recent_jobs_are_left_alone(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="NEW", formats=["1:1"])
        db_session.commit()

        assert generation_service.fail_stale_jobs(db_session, max_age_minutes=30) == 0
        assert db_session.get(GenerationJob, "NEW").status == "QUEUED"

    def test_running_job_age_counts_from_start(self, db_session: Session, make_account):
        user = make_account(balance=100)
        generation_service.create_generation_job(db_session, user.id, job_id="SLOW_QUEUE", formats=["1:1"])
        job = db_session.get(GenerationJob, "SLOW_QUEUE")
        job.createdAt = datetime.utcnow() - timedelta(hours=2)
        db_session.commit()
        generation_service.mark_job_running(db_session, "SLOW_QUEUE")
        db_session.commit()

        # 排队两小时，但刚开始执行
        assert generation_service.fail_stale_jobs(db_session, max_age_minutes=30) == 0
        assert db_session.get(GenerationJob, "SLOW_QUEUE").status == "RUNNING"

        later = datetime.utcnow() + timedelta(hours=1)
        assert generation_service.fail_stale_jobs(db_session, max_age_minutes=30, now=later) == 1


class TestListJobs:
    def test_list_includes_image_counts(self, db_session: Session, make_account):
        user = make_account(balance=200)
        generation_service.create_generation_job(db_session, user.id, job_id="A", formats=["1:1"])
        generation_service.mark_job_running(db_session, "A")
        generation_service.mark_job_succeeded(db_session, "A", image_urls=["https://cdn.example.com/1.png"])
        generation_service.create_generation_job(db_session, user.id, job_id="B", formats=["1:1"])
        db_session.commit()

        counts = {job.id: count for job, count in generation_service.list_jobs_for_user(db_session, user.id)}
        assert counts == {"A": 1, "B": 0}
