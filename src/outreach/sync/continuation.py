"""
Self-continuation: schedule the next batch of a sync without waiting for it.

The runner always persists its checkpoint before calling schedule(), so
the next invocation reads what this one wrote. schedule() never raises and
never blocks on the next batch; a continuation that fails to dispatch is
logged and leaves the connection in "partial", which the recovery sweep
picks up.

Two transports:
  - LocalTransport: re-invokes the runner in this process via asyncio tasks.
  - HttpTransport:  POSTs to this service's own /sync endpoint, for hosts
                    that cap each request's execution time.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Set

import httpx

logger = logging.getLogger(__name__)


@dataclass
class ContinuationParams:
    continuation: bool = True
    batch_number: int = 1
    reset: bool = False


class LocalTransport:
    """Run continuations as background tasks on the current event loop."""

    def __init__(self, runner: Any = None, delay: float = 1.0):
        """
        Args:
            runner: SyncRunner to invoke (bind() may set it later, since the
                    runner itself holds the scheduler).
            delay: Seconds to wait before starting the next batch.
        """
        self.runner = runner
        self.delay = delay
        # Strong references: the loop only keeps weak ones to running tasks
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, runner: Any) -> None:
        self.runner = runner

    def send(self, tenant_id: str, platform: str, params: ContinuationParams) -> None:
        if self.runner is None:
            raise RuntimeError("LocalTransport has no runner bound")
        task = asyncio.get_running_loop().create_task(self._invoke(tenant_id, platform, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _invoke(self, tenant_id: str, platform: str, params: ContinuationParams) -> None:
        from outreach.sync.runner import RunOptions

        if self.delay:
            await asyncio.sleep(self.delay)
        try:
            await self.runner.run(
                tenant_id,
                platform,
                RunOptions(
                    reset=params.reset,
                    continuation=params.continuation,
                    batch_number=params.batch_number,
                ),
            )
        except Exception as exc:
            # Nobody awaits this task; the runner already recorded the failure
            logger.error("Continuation %s/%s batch %d failed: %s", tenant_id, platform, params.batch_number, exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until the continuation chain (including tasks it spawns) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class HttpTransport:
    """POST the continuation to {base_url}/sync/{tenant}/{platform}."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._http = http_client
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def send(self, tenant_id: str, platform: str, params: ContinuationParams) -> None:
        task = asyncio.get_running_loop().create_task(self._post(tenant_id, platform, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, tenant_id: str, platform: str, params: ContinuationParams) -> None:
        url = f"{self.base_url}/sync/{tenant_id}/{platform}"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {
            "continuation": params.continuation,
            "batch_number": params.batch_number,
            "reset": params.reset,
        }
        client = self._http or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(url, json=payload, headers=headers)
            logger.info("Next batch triggered for %s/%s, status: %d", tenant_id, platform, response.status_code)
        except httpx.HTTPError as exc:
            # The target keeps running even if we stop waiting for its response
            logger.warning("Continuation POST to %s did not complete: %s", url, exc)
        finally:
            if self._http is None:
                await client.aclose()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ContinuationScheduler:
    """Fire-and-forget dispatch of the next batch through a transport."""

    def __init__(self, transport):
        self.transport = transport

    def schedule(self, tenant_id: str, platform: str, params: ContinuationParams) -> bool:
        """
        Dispatch the next invocation and return immediately.

        Returns:
            True when dispatched, False when the transport refused (logged).
        """
        try:
            self.transport.send(tenant_id, platform, params)
        except Exception as exc:
            logger.error(
                "Could not schedule continuation for %s/%s (batch %d): %s",
                tenant_id, platform, params.batch_number, exc,
            )
            return False
        logger.info("Scheduled %s/%s batch %d", tenant_id, platform, params.batch_number)
        return True

    async def drain(self) -> None:
        drain = getattr(self.transport, "drain", None)
        if drain is not None:
            await drain()


def build_scheduler_from_settings(settings, runner: Any = None) -> ContinuationScheduler:
    """Pick the transport named by CONTINUATION_MODE."""
    if settings.continuation_mode == "http":
        transport = HttpTransport(settings.continuation_base_url, token=settings.continuation_token)
    else:
        transport = LocalTransport(runner, delay=settings.continuation_delay_seconds)
    return ContinuationScheduler(transport)
