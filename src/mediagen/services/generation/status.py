"""Status classification for generation jobs.

Maps the remote service's raw status vocabulary onto JobState. Only
``succeeded``, ``failed`` and ``cancelled`` are terminal; every other label,
including ones the service may add later, is treated as in-progress.
"""

from typing import Optional

import structlog

from mediagen.models.generation_job import JobState

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = {
    "succeeded": JobState.SUCCEEDED,
    "failed": JobState.FAILED,
    "cancelled": JobState.CANCELLED,
}

IN_PROGRESS_STATUSES = {
    "queued": JobState.QUEUED,
    "preprocessing": JobState.PREPROCESSING,
    "running": JobState.RUNNING,
    "processing": JobState.RUNNING,
}


def classify_status(raw_status: Optional[str]) -> JobState:
    """Classify a raw status label.

    Args:
        raw_status: Status string from the status report (case-insensitive)

    Returns:
        Terminal state for succeeded/failed/cancelled, otherwise an in-progress state
        (RUNNING for unrecognized labels)
    """
    label = (raw_status or "").strip().lower()

    if label in TERMINAL_STATUSES:
        return TERMINAL_STATUSES[label]

    if label in IN_PROGRESS_STATUSES:
        return IN_PROGRESS_STATUSES[label]

    logger.debug("generation.status.unrecognized", raw_status=raw_status)
    return JobState.RUNNING
