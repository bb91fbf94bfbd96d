"""Background workers for asynchronous job processing."""

from mediagen.workers.polling_worker import (
    PollingScheduler,
    PollOutcome,
    cadence_interval,
    rate_limit_delay,
)

__all__ = [
    "PollingScheduler",
    "PollOutcome",
    "cadence_interval",
    "rate_limit_delay",
]
