"""State transition tests for GenerationJob model.

Tests focus on validating the job state machine:
- Valid transitions through the in-progress states to a terminal state
- Terminal states never change again
- resolved_url is set if and only if the job succeeded
"""

from datetime import timedelta

import pytest

from mediagen.models.generation_job import (
    IN_PROGRESS_STATES,
    TERMINAL_STATES,
    GenerationJob,
    InvalidStateTransition,
    JobKind,
    JobState,
    utcnow,
)


def new_job() -> GenerationJob:
    return GenerationJob(kind=JobKind.VIDEO, prompt="a red balloon rising", params={})


def test_valid_state_transitions():
    """submitted → queued → preprocessing → running → succeeded."""
    job = new_job()
    assert job.state == JobState.SUBMITTED

    job.mark_in_progress(JobState.QUEUED, "queued")
    assert job.state == JobState.QUEUED

    job.mark_in_progress(JobState.PREPROCESSING)
    assert job.last_status == "preprocessing"

    job.mark_in_progress(JobState.RUNNING, "processing")
    assert job.state == JobState.RUNNING
    assert job.last_status == "processing"

    job.mark_succeeded("https://x/y.mp4", "direct")
    assert job.state == JobState.SUCCEEDED
    assert job.resolved_url == "https://x/y.mp4"
    assert job.completed_at is not None


def test_in_progress_states_may_repeat_and_skip():
    job = new_job()
    job.mark_in_progress(JobState.RUNNING)
    job.mark_in_progress(JobState.RUNNING)
    job.mark_in_progress(JobState.QUEUED)
    assert job.state == JobState.QUEUED


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_are_final(terminal):
    job = new_job()
    if terminal == JobState.SUCCEEDED:
        job.mark_succeeded("https://x/y.mp4", "direct")
    elif terminal == JobState.FAILED:
        job.mark_failed("boom", "TerminalFailure")
    else:
        job.mark_cancelled()

    for state in IN_PROGRESS_STATES:
        with pytest.raises(InvalidStateTransition):
            job.mark_in_progress(state)
    with pytest.raises(InvalidStateTransition):
        job.mark_succeeded("https://x/z.mp4", "direct")
    with pytest.raises(InvalidStateTransition):
        job.mark_failed("late", "TerminalFailure")
    with pytest.raises(InvalidStateTransition):
        job.mark_cancelled()

    assert job.state == terminal


def test_failed_from_any_non_terminal_state():
    for state in [JobState.SUBMITTED, *IN_PROGRESS_STATES]:
        job = new_job()
        if state != JobState.SUBMITTED:
            job.mark_in_progress(state)
        job.mark_failed("Content policy violation", "TerminalFailure")
        assert job.state == JobState.FAILED
        assert job.failure_reason == "Content policy violation"
        assert job.resolved_url is None


def test_cancelled_has_no_failure_reason():
    job = new_job()
    job.mark_in_progress(JobState.RUNNING)
    job.mark_cancelled()

    assert job.state == JobState.CANCELLED
    assert job.failure_reason is None
    assert job.resolved_url is None


def test_mark_in_progress_rejects_terminal_target():
    with pytest.raises(InvalidStateTransition):
        new_job().mark_in_progress(JobState.SUCCEEDED)


def test_mark_succeeded_requires_url():
    job = new_job()
    with pytest.raises(ValueError):
        job.mark_succeeded("", "direct")
    assert job.state == JobState.SUBMITTED


def test_update_resolution_only_after_success():
    job = new_job()
    with pytest.raises(InvalidStateTransition):
        job.update_resolution("https://x/alt.mp4", "buffered_copy")

    job.mark_succeeded("https://x/y.mp4", "direct")
    job.update_resolution("file:///tmp/y.mp4", "buffered_copy")
    assert job.resolved_url == "file:///tmp/y.mp4"
    assert job.resolution_variant == "buffered_copy"


def test_failure_reason_is_truncated():
    job = new_job()
    job.mark_failed("x" * 5000, "TerminalFailure")
    assert len(job.failure_reason) == 1000


def test_elapsed_seconds_freezes_on_completion():
    job = new_job()
    job.submitted_at = utcnow() - timedelta(seconds=30)

    assert job.elapsed_seconds(job.submitted_at + timedelta(seconds=12)) == 12

    job.mark_cancelled()
    frozen = job.elapsed_seconds()
    assert frozen >= 30
    assert job.elapsed_seconds(utcnow() + timedelta(hours=1)) == frozen


def test_elapsed_seconds_accepts_naive_timestamps():
    job = new_job()
    now = utcnow()
    job.submitted_at = (now - timedelta(seconds=5)).replace(tzinfo=None)

    assert job.elapsed_seconds(now) == 5
