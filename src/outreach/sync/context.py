"""
Per-run state shared by the phases of one sync batch.

A SyncContext lives for exactly one invocation of the runner. It carries
the time budget, the run's error list and counters, and the only write
path into the checkpoint (so every write carries the run's generation).
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from outreach.models.connection import SyncStatus
from outreach.platforms.base import PlatformAdapter
from outreach.security import CredentialDecryptError
from outreach.sync.checkpoint import Checkpoint, CheckpointStore, StaleCheckpointError
from outreach.sync.http_client import CredentialError

logger = logging.getLogger(__name__)


class ConnectionLevelError(RuntimeError):
    """
    Aborts the whole run: rejected or undecryptable credential, failed
    entity listing, batch ceiling exceeded. The connection ends in "error"
    and no continuation is scheduled.
    """


# Exceptions that must never be downgraded to a per-item error
FATAL_ERRORS = (
    CredentialError,
    CredentialDecryptError,
    ConnectionLevelError,
    StaleCheckpointError,
)


class TimeBudget:
    """Wall-clock budget for one invocation. Checked between units, never mid-unit."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._start = clock()

    def elapsed(self) -> float:
        return self._clock() - self._start

    def exceeded(self) -> bool:
        return self.elapsed() > self.seconds


class SyncContext:
    """Mutable state for one batch: checkpoint snapshot, budget, counters, errors."""

    def __init__(
        self,
        engine,
        store: CheckpointStore,
        adapter: PlatformAdapter,
        checkpoint: Checkpoint,
        budget: TimeBudget,
        *,
        batch_number: int = 1,
        force_advance: bool = False,
        historical_lookback_days: int = 730,
        historical_chunk_days: int = 90,
    ):
        self.engine = engine
        self.store = store
        self.adapter = adapter
        self.checkpoint = checkpoint
        self.budget = budget
        self.batch_number = batch_number
        self.force_advance = force_advance
        self.historical_lookback_days = historical_lookback_days
        self.historical_chunk_days = historical_chunk_days

        self.counts: Dict[str, int] = dict(checkpoint.section("counts"))
        self.errors: List[str] = list(checkpoint.progress.get("errors") or [])
        self.new_errors = 0
        self.stop_reason: Optional[str] = None

    @property
    def connection_id(self) -> int:
        return self.checkpoint.connection_id

    @property
    def tenant_id(self) -> str:
        return self.checkpoint.tenant_id

    @property
    def platform(self) -> str:
        return self.checkpoint.platform

    @property
    def generation(self) -> int:
        return self.checkpoint.generation

    # ─── Bookkeeping ──────────────────────────────────────────────────────────

    def count(self, key: str, n: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + n

    def record_error(self, message: str) -> None:
        logger.warning("[%s/%s] %s", self.tenant_id, self.platform, message)
        self.errors.append(message)
        self.new_errors += 1

    def should_stop(self) -> bool:
        """
        Unit-boundary check: a user stop or an exhausted budget ends the run.

        Sets stop_reason to "stopped" or "budget".
        """
        if self.store.status_of(self.connection_id) == SyncStatus.STOPPED.value:
            logger.info("[%s/%s] Stop observed, exiting", self.tenant_id, self.platform)
            self.stop_reason = "stopped"
            return True
        if self.budget.exceeded():
            logger.info(
                "[%s/%s] Time budget reached after %.1fs",
                self.tenant_id, self.platform, self.budget.elapsed(),
            )
            self.stop_reason = "budget"
            return True
        return False

    def save(self, patch: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Checkpoint:
        """Merge patch plus the run's counters and errors into the checkpoint."""
        body = dict(patch or {})
        body["counts"] = dict(self.counts)
        body["errors"] = list(self.errors)
        body["batch_number"] = self.batch_number
        self.checkpoint = self.store.save(
            self.connection_id, body, generation=self.generation, **kwargs
        )
        self.errors = list(self.checkpoint.progress.get("errors") or [])
        return self.checkpoint
