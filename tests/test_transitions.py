from datetime import UTC, datetime, timedelta

import pytest

from racky.v1.core.exceptions import InvalidTransitionError
from racky.v1.infra.jobs import transitions
from racky.v1.infra.jobs.models import Job
from racky.v1.infra.jobs.types import HistoryEvent, JobStatus

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def make_job(**overrides) -> Job:
    fields = {
        "job_id": "job-1",
        "job_type": "marketplace-sync",
        "queue_name": "sync.marketplace",
        "routing_key": "sync.marketplace.normal",
        "user_id": "user-1",
        "workspace_id": "ws-1",
        "data": {},
        "status": JobStatus.QUEUED.value,
        "progress": 0,
        "attempts": 0,
        "max_attempts": 3,
        "priority": "NORMAL",
        "meta": {},
        "created_at": NOW - timedelta(seconds=2),
    }
    fields.update(overrides)
    return Job(**fields)


class TestProgress:
    @pytest.mark.parametrize(
        "value,expected", [(-10, 0), (0, 0), (42, 42), (99.5, 99.5), (150, 100)]
    )
    def test_numeric_progress_is_clamped(self, value, expected):
        assert transitions.clamp_progress(value) == expected

    def test_structured_progress_passes_through(self):
        value = {"stage": "fetching", "processed": 10, "total": 40}
        assert transitions.clamp_progress(value) == value

    @pytest.mark.parametrize("value", [True, "50", None])
    def test_other_progress_values_are_rejected(self, value):
        with pytest.raises(TypeError):
            transitions.clamp_progress(value)

    def test_progress_transition_records_event(self):
        transition = transitions.progressed(make_job(status="processing"), 150)

        assert transition.changes == {"progress": 100}
        assert transition.event is HistoryEvent.PROGRESS
        assert transition.event_fields == {"progress": 100}


class TestLifecycle:
    def test_started_records_wait_and_attempt(self):
        transition = transitions.started(make_job(), NOW, consumer_tag="tag-1")

        assert transition.changes["status"] == "processing"
        assert transition.changes["started_at"] == NOW
        assert transition.changes["queue_wait_time"] == 2000
        assert transition.event_fields["attempt"] == 1
        assert transition.event_fields["previous_status"] == "queued"
        assert transition.event_fields["meta"] == {"consumerTag": "tag-1"}

    def test_completed_sets_progress_and_processing_time(self):
        job = make_job(status="processing", started_at=NOW - timedelta(milliseconds=750))

        transition = transitions.completed(job, {"synced": 12}, NOW)

        assert transition.changes["status"] == "completed"
        assert transition.changes["progress"] == 100
        assert transition.changes["result"] == {"synced": 12}
        assert transition.changes["processing_time"] == 750
        assert transition.event is HistoryEvent.COMPLETED

    def test_naive_timestamps_are_treated_as_utc(self):
        job = make_job(created_at=(NOW - timedelta(seconds=1)).replace(tzinfo=None))
        transition = transitions.started(job, NOW)
        assert transition.changes["queue_wait_time"] == 1000

    def test_batch_initiated_keeps_job_processing(self):
        result = {"status": "processing_batches", "batches": 4}
        transition = transitions.batch_initiated(make_job(status="processing"), result)

        assert "status" not in transition.changes
        assert transition.changes == {"result": result}
        assert transition.event is HistoryEvent.BATCH_INITIATED

    @pytest.mark.parametrize("status", ["completed", "failed"])
    def test_terminal_jobs_refuse_transitions(self, status):
        job = make_job(status=status)

        with pytest.raises(InvalidTransitionError):
            transitions.started(job, NOW)
        with pytest.raises(InvalidTransitionError):
            transitions.progressed(job, 10)
        with pytest.raises(InvalidTransitionError):
            transitions.completed(job, None, NOW)
        with pytest.raises(InvalidTransitionError):
            transitions.failed_attempt(job, "boom", NOW)


class TestFailure:
    def test_failure_below_limit_requeues(self):
        job = make_job(status="processing", attempts=0)

        transition = transitions.failed_attempt(job, "timeout", NOW)

        assert transition.changes["status"] == "queued"
        assert transition.changes["attempts"] == 1
        assert transition.changes["last_error"] == "timeout"
        assert transition.event is HistoryEvent.RETRY
        assert transitions.should_retry(transition)

    def test_failure_at_limit_is_terminal(self):
        job = make_job(status="processing", attempts=2, started_at=NOW)

        transition = transitions.failed_attempt(job, "timeout", NOW)

        assert transition.changes["status"] == "failed"
        assert transition.changes["attempts"] == 3
        assert transition.changes["completed_at"] == NOW
        assert transition.event is HistoryEvent.FAILED
        assert not transitions.should_retry(transition)

    def test_attempts_never_exceed_max(self):
        job = make_job(status="processing", attempts=3, max_attempts=3)

        transition = transitions.failed_attempt(job, "again", NOW)

        assert transition.changes["attempts"] == 3
        assert transition.changes["status"] == "failed"

    def test_single_attempt_job_fails_immediately(self):
        job = make_job(status="processing", max_attempts=1)
        transition = transitions.failed_attempt(job, "bad input", NOW)
        assert transition.changes["status"] == "failed"
