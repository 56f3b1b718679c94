"""
SyncRunner — one time-boxed batch of a (tenant, platform) sync.

Flow for one invocation:
  1. Load the active connection's checkpoint
  2. Entry guards: stopped continuation, already-complete continuation,
     sync lock, batch ceiling
  3. Reset (purge + new generation) or mark "syncing"
  4. Decrypt the credential, build the adapter
  5. Run the phase pipeline until done, out of budget, or stopped
  6. Persist the outcome, then schedule the continuation / downstream chain

Status machine: idle → syncing → {success | partial | error | stopped},
partial → syncing on the next batch.

Connection-level failures (credential rejected or undecryptable, listing
failure, ceiling exceeded) end in "error" with no continuation. A run that
loses the generation race to a reset exits without writing anything else.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from outreach.config import Settings, get_settings
from outreach.models.connection import SyncStatus, utcnow
from outreach.platforms.base import PlatformAdapter
from outreach.platforms.registry import get_adapter_class
from outreach.security import CredentialDecryptError, decrypt_credential
from outreach.sync.checkpoint import Checkpoint, CheckpointStore, StaleCheckpointError
from outreach.sync.context import ConnectionLevelError, SyncContext, TimeBudget
from outreach.sync.continuation import ContinuationParams, ContinuationScheduler
from outreach.sync.http_client import CredentialError, RateLimitedClient
from outreach.sync.phases import run_pipeline
from outreach.sync.reset import fresh_progress, reset_connection

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, RateLimitedClient, str], PlatformAdapter]


class NoActiveConnectionError(LookupError):
    """Raised when a sync is triggered for a (tenant, platform) with no active connection."""


@dataclass
class RunOptions:
    reset: bool = False
    force_advance: bool = False
    continuation: bool = False
    batch_number: int = 1


@dataclass
class RunResult:
    success: bool
    complete: bool
    status: str
    message: str
    batch_number: int
    progress: Dict[str, Any] = field(default_factory=dict)
    skipped: bool = False


def default_adapter_factory(platform: str, client: RateLimitedClient, credential: str) -> PlatformAdapter:
    return get_adapter_class(platform)(client, credential)


class SyncRunner:
    """Runs one batch of the phase pipeline for a connection."""

    def __init__(
        self,
        engine,
        continuations: Optional[ContinuationScheduler] = None,
        settings: Optional[Settings] = None,
        *,
        adapter_factory: AdapterFactory = default_adapter_factory,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        time_budget: Optional[float] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            continuations: Scheduler for the next batch; None disables chaining.
            settings: Settings override (defaults to get_settings()).
            adapter_factory: Builds the platform adapter (tests inject fakes).
            http_client: Shared httpx.AsyncClient for upstream calls.
            sleep: Awaitable sleep used for rate-limit delays.
            clock: Monotonic clock for the time budget.
            time_budget: Seconds per batch; defaults to the smaller of the
                         configured budget and the platform's own.
        """
        self.engine = engine
        self.store = CheckpointStore(engine)
        self.continuations = continuations
        self.settings = settings or get_settings()
        self.adapter_factory = adapter_factory
        self.http_client = http_client
        self.sleep = sleep
        self.clock = clock
        self.time_budget = time_budget

        transport = getattr(continuations, "transport", None)
        if transport is not None and hasattr(transport, "bind") and getattr(transport, "runner", None) is None:
            transport.bind(self)

    async def run(self, tenant_id: str, platform: str, options: Optional[RunOptions] = None) -> RunResult:
        """
        Execute one batch.

        Args:
            tenant_id: Tenant owning the connection.
            platform: "smartlead", "replyio" or "phoneburner".
            options: reset / force_advance / continuation / batch_number.

        Returns:
            RunResult describing the batch outcome.

        Raises:
            NoActiveConnectionError: no active connection for (tenant, platform).
            UnknownPlatformError: platform has no adapter.
        """
        options = options or RunOptions()
        get_adapter_class(platform)

        checkpoint = self.store.find_active(tenant_id, platform)
        if checkpoint is None:
            raise NoActiveConnectionError(f"no active {platform} connection for tenant {tenant_id}")

        skipped = self._entry_guard(checkpoint, options)
        if skipped is not None:
            return skipped

        if options.batch_number > self.settings.max_batches:
            message = f"Exceeded max batches ({self.settings.max_batches}); sync aborted"
            logger.error("[%s/%s] %s", tenant_id, platform, message)
            return self._fail(checkpoint, message, options.batch_number)

        try:
            checkpoint = self._begin(checkpoint, options)
        except StaleCheckpointError:
            logger.info("[%s/%s] Superseded before start, exiting", tenant_id, platform)
            return self._superseded(options.batch_number)

        try:
            credential = decrypt_credential(checkpoint.credential_encrypted, self.settings.credential_key)
        except CredentialDecryptError as exc:
            return self._fail(checkpoint, str(exc), options.batch_number)

        client = RateLimitedClient(
            get_adapter_class(platform).profile,
            http_client=self.http_client,
            sleep=self.sleep,
        )
        adapter = self.adapter_factory(platform, client, credential)
        budget_seconds = self.time_budget
        if budget_seconds is None:
            budget_seconds = min(self.settings.time_budget_seconds, adapter.time_budget_seconds)

        ctx = SyncContext(
            self.engine,
            self.store,
            adapter,
            checkpoint,
            TimeBudget(budget_seconds, self.clock),
            batch_number=options.batch_number,
            force_advance=options.force_advance,
            historical_lookback_days=self.settings.historical_lookback_days,
            historical_chunk_days=self.settings.historical_chunk_days,
        )
        logger.info(
            "[%s/%s] Batch %d starting at phase %s (budget %.0fs)",
            tenant_id, platform, options.batch_number, checkpoint.phase, budget_seconds,
        )

        try:
            outcome = await run_pipeline(ctx)
        except StaleCheckpointError:
            logger.info("[%s/%s] Checkpoint superseded by a reset, exiting", tenant_id, platform)
            return self._superseded(options.batch_number)
        except (CredentialError, ConnectionLevelError) as exc:
            logger.error("[%s/%s] Connection-level failure: %s", tenant_id, platform, exc)
            return self._fail(ctx.checkpoint, str(exc), options.batch_number, ctx=ctx)
        except Exception as exc:
            self._fail(ctx.checkpoint, f"Unexpected error: {exc}", options.batch_number, ctx=ctx)
            raise
        finally:
            await client.aclose()

        if outcome == "complete":
            return self._complete(ctx)
        if outcome == "stopped":
            return RunResult(
                success=True,
                complete=False,
                status=SyncStatus.STOPPED.value,
                message="Sync stopped by user",
                batch_number=options.batch_number,
                progress=ctx.checkpoint.progress,
            )
        return self._partial(ctx)

    # ─── Entry ────────────────────────────────────────────────────────────────

    def _entry_guard(self, checkpoint: Checkpoint, options: RunOptions) -> Optional[RunResult]:
        status = checkpoint.status
        if options.continuation and status == SyncStatus.STOPPED.value:
            return self._skip(checkpoint, "Sync was stopped; continuation ignored", options.batch_number)
        # Only a late continuation is a no-op here; a user trigger starts a new pass
        if options.continuation and status == SyncStatus.SUCCESS.value and not options.reset:
            return self._skip(checkpoint, "Sync already complete", options.batch_number, complete=True)
        if not options.reset and status == SyncStatus.SYNCING.value:
            heartbeat = checkpoint.heartbeat
            lock = timedelta(seconds=self.settings.sync_lock_timeout_seconds)
            if heartbeat is not None and utcnow() - heartbeat < lock:
                return self._skip(checkpoint, "Sync already in progress", options.batch_number)
        return None

    def _begin(self, checkpoint: Checkpoint, options: RunOptions) -> Checkpoint:
        if options.reset:
            logger.info("[%s/%s] Reset requested", checkpoint.tenant_id, checkpoint.platform)
            return reset_connection(self.engine, checkpoint.connection_id)

        # A user re-trigger may leave "stopped"; a continuation never does
        preserve_stopped = options.continuation
        if checkpoint.phase is None:
            # Nothing in flight: start a new pass
            return self.store.save(
                checkpoint.connection_id,
                fresh_progress(options.batch_number),
                generation=checkpoint.generation,
                status=SyncStatus.SYNCING.value,
                replace=True,
                preserve_stopped=preserve_stopped,
            )
        return self.store.save(
            checkpoint.connection_id,
            {"batch_number": options.batch_number, "message": None},
            generation=checkpoint.generation,
            status=SyncStatus.SYNCING.value,
            preserve_stopped=preserve_stopped,
        )

    # ─── Outcomes ─────────────────────────────────────────────────────────────

    def _complete(self, ctx: SyncContext) -> RunResult:
        now = utcnow()
        message = f"Sync complete: {self._summary(ctx.counts)}"
        if ctx.errors:
            message += f" ({len(ctx.errors)} errors)"
        # Cursors are dropped; only the summary survives a finished pass
        checkpoint = self.store.save(
            ctx.connection_id,
            {
                "counts": ctx.counts,
                "errors": ctx.errors,
                "batch_number": ctx.batch_number,
                "message": message,
                "completed_at": now.isoformat(),
            },
            generation=ctx.generation,
            status=SyncStatus.SUCCESS.value,
            replace=True,
            last_sync_at=now,
            last_full_sync_at=now,
        )
        logger.info("[%s/%s] %s", ctx.tenant_id, ctx.platform, message)
        self._chain_downstream(ctx.tenant_id, ctx.platform)
        return RunResult(
            success=True,
            complete=True,
            status=checkpoint.status,
            message=message,
            batch_number=ctx.batch_number,
            progress=checkpoint.progress,
        )

    def _partial(self, ctx: SyncContext) -> RunResult:
        message = f"Time budget reached in {ctx.checkpoint.phase}; continuing in batch {ctx.batch_number + 1}"
        checkpoint = ctx.save({"message": message}, status=SyncStatus.PARTIAL.value)
        if checkpoint.status == SyncStatus.STOPPED.value:
            # Stop landed between the last unit and this write
            return RunResult(
                success=True,
                complete=False,
                status=checkpoint.status,
                message="Sync stopped by user",
                batch_number=ctx.batch_number,
                progress=checkpoint.progress,
            )
        if self.continuations is not None:
            self.continuations.schedule(
                ctx.tenant_id,
                ctx.platform,
                ContinuationParams(continuation=True, batch_number=ctx.batch_number + 1),
            )
        return RunResult(
            success=True,
            complete=False,
            status=checkpoint.status,
            message=message,
            batch_number=ctx.batch_number,
            progress=checkpoint.progress,
        )

    def _fail(
        self,
        checkpoint: Checkpoint,
        message: str,
        batch_number: int,
        ctx: Optional[SyncContext] = None,
    ) -> RunResult:
        patch: Dict[str, Any] = {"message": message}
        if ctx is not None:
            patch.update(counts=ctx.counts, errors=ctx.errors + [message])
        try:
            written = self.store.save(
                checkpoint.connection_id,
                patch,
                generation=ctx.generation if ctx is not None else checkpoint.generation,
                status=SyncStatus.ERROR.value,
            )
        except StaleCheckpointError:
            return self._superseded(batch_number)
        logger.error("[%s/%s] Sync failed: %s", checkpoint.tenant_id, checkpoint.platform, message)
        return RunResult(
            success=False,
            complete=False,
            status=written.status,
            message=message,
            batch_number=batch_number,
            progress=written.progress,
        )

    def _skip(self, checkpoint: Checkpoint, message: str, batch_number: int, complete: bool = False) -> RunResult:
        logger.info("[%s/%s] %s", checkpoint.tenant_id, checkpoint.platform, message)
        return RunResult(
            success=True,
            complete=complete,
            status=checkpoint.status,
            message=message,
            batch_number=batch_number,
            progress=checkpoint.progress,
            skipped=True,
        )

    @staticmethod
    def _superseded(batch_number: int) -> RunResult:
        return RunResult(
            success=True,
            complete=False,
            status=SyncStatus.SYNCING.value,
            message="Superseded by a newer sync generation",
            batch_number=batch_number,
            skipped=True,
        )

    def _chain_downstream(self, tenant_id: str, platform: str) -> None:
        downstream = self.settings.chain_after.get(platform)
        if not downstream or self.continuations is None:
            return
        if self.store.find_active(tenant_id, downstream) is None:
            logger.info("No active %s connection for %s; chain ends here", downstream, tenant_id)
            return
        self.continuations.schedule(
            tenant_id, downstream, ContinuationParams(continuation=False, batch_number=1)
        )

    @staticmethod
    def _summary(counts: Dict[str, int]) -> str:
        if not counts:
            return "nothing to sync"
        return ", ".join(f"{v} {k}" for k, v in sorted(counts.items()))
