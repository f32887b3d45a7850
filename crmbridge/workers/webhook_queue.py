"""
Webhook queue - decouples webhook receipt from rule processing.

InMemoryWebhookQueue is a single-process, bounded-concurrency queue:
- a ticker (every 100ms) starts up to `concurrency - active` ready jobs
  (those whose retry_after has passed)
- a failed job is retried after min(base * 2^(attempts-1), cap) ms until
  attempts >= max_attempts, then dropped with a "job-failed" event
- a periodic sweep evicts jobs older than an hour, finished or not

Jobs live only in process memory. Anything durable (Redis streams, a DB
table) can implement WebhookQueue without touching the dispatcher.

Events: job-added, job-start, job-completed, job-retry, job-failed.
"""
import asyncio
import inspect
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from crmbridge.schemas.webhook_payloads import WebhookJob
from crmbridge.utils.logging import set_correlation_id

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20

QUEUE_EVENTS = ("job-added", "job-start", "job-completed", "job-retry", "job-failed")

JobHandler = Callable[[WebhookJob], Awaitable[Any]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_backoff_ms(attempts: int, base_ms: int = 1000, cap_ms: int = 30000) -> int:
    """Delay before retry number `attempts` (1-based)."""
    return min(base_ms * (2 ** max(attempts - 1, 0)), cap_ms)


class WebhookQueue(ABC):
    """Queue interface the webhook endpoints and main.py depend on."""

    @abstractmethod
    async def enqueue(
        self,
        provider: str,
        payload: dict,
        tenant_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Add a job. Returns its id."""
        ...

    @abstractmethod
    def on_process(self, handler: JobHandler) -> None:
        """Register the coroutine that processes one job; raising means failure."""
        ...

    @abstractmethod
    def on_event(self, event: str, listener: Callable) -> None:
        ...

    @abstractmethod
    def stats(self) -> dict:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class InMemoryWebhookQueue(WebhookQueue):
    def __init__(
        self,
        concurrency: int = 5,
        max_attempts: int = 3,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 30000,
        tick_interval_ms: int = 100,
        job_max_age_seconds: int = 3600,
        cleanup_interval_seconds: int = 300,
        system_log=None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.concurrency = self._clamp(concurrency)
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.tick_interval_ms = tick_interval_ms
        self.job_max_age_seconds = job_max_age_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._system_log = system_log
        self._clock = clock

        self._jobs: list[WebhookJob] = []
        self._active: dict[str, asyncio.Task] = {}
        self._handler: Optional[JobHandler] = None
        self._listeners: dict[str, list[Callable]] = {name: [] for name in QUEUE_EVENTS}
        self._runner: Optional[asyncio.Task] = None
        self._last_cleanup_ms = clock()
        self._completed = 0
        self._failed = 0
        self._retried = 0

    @classmethod
    def from_settings(cls, settings=None, system_log=None) -> "InMemoryWebhookQueue":
        if settings is None:
            from crmbridge.config import get_settings
            settings = get_settings()
        return cls(
            concurrency=settings.queue_concurrency,
            max_attempts=settings.queue_max_attempts,
            backoff_base_ms=settings.queue_backoff_base_ms,
            backoff_cap_ms=settings.queue_backoff_cap_ms,
            tick_interval_ms=settings.queue_tick_interval_ms,
            job_max_age_seconds=settings.queue_job_max_age_seconds,
            cleanup_interval_seconds=settings.queue_cleanup_interval_seconds,
            system_log=system_log,
        )

    @staticmethod
    def _clamp(concurrency: int) -> int:
        return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(concurrency)))

    # -- registration --

    def on_process(self, handler: JobHandler) -> None:
        self._handler = handler

    def on_event(self, event: str, listener: Callable) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, job: WebhookJob, error: Optional[BaseException] = None) -> None:
        for listener in self._listeners.get(event, []):
            try:
                outcome = listener(job, error) if error is not None else listener(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Queue listener for %s failed: %s", event, str(e))

    async def _log(self, level: str, message: str, job: WebhookJob, data: Optional[dict] = None) -> None:
        if self._system_log is not None:
            await self._system_log.log(
                level, message, tenant_id=job.tenant_id,
                data={"job_id": job.id, **(data or {})}, source="webhook-queue",
            )
        else:
            logger.log(
                logging.WARNING if level == "warning" else logging.ERROR if level == "error" else logging.INFO,
                message, extra={"job_id": job.id, "tenant_id": job.tenant_id},
            )

    # -- producer side --

    async def enqueue(
        self,
        provider: str,
        payload: dict,
        tenant_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        job = WebhookJob(
            id=f"webhook_{self._clock()}_{uuid.uuid4().hex[:9]}",
            provider=provider,
            payload=payload or {},
            tenant_id=tenant_id,
            max_attempts=max_attempts or self.max_attempts,
            created_at=self._clock(),
        )
        self._jobs.append(job)
        await self._log("info", f"Webhook queued: {provider}", job, {"queue_size": len(self._jobs)})
        await self._emit("job-added", job)
        return job.id

    # -- consumer side --

    def _ready_jobs(self, now_ms: int) -> list[WebhookJob]:
        return [
            job for job in self._jobs
            if job.id not in self._active
            and (job.retry_after is None or now_ms >= job.retry_after)
        ]

    def _tick(self) -> list[asyncio.Task]:
        """Start as many ready jobs as free slots allow. Returns the started tasks."""
        if self._handler is None or not self._jobs:
            return []
        free = self.concurrency - len(self._active)
        if free <= 0:
            return []

        started = []
        for job in self._ready_jobs(self._clock())[:free]:
            task = asyncio.create_task(self._process_job(job))
            self._active[job.id] = task
            started.append(task)
        return started

    async def _process_job(self, job: WebhookJob) -> None:
        set_correlation_id(job.id)
        try:
            await self._log(
                "info", f"Processing webhook: {job.provider}", job,
                {"attempt": job.attempts + 1, "active_jobs": len(self._active)},
            )
            await self._emit("job-start", job)
            await self._handler(job)
        except Exception as e:
            job.attempts += 1
            job.last_error = str(e)
            if job.attempts >= job.max_attempts:
                self._remove(job.id)
                self._failed += 1
                await self._log(
                    "error",
                    f"Webhook {job.provider} failed after {job.max_attempts} attempts",
                    job, {"error": str(e), "payload": job.payload},
                )
                await self._emit("job-failed", job, e)
            else:
                delay = compute_backoff_ms(job.attempts, self.backoff_base_ms, self.backoff_cap_ms)
                job.retry_after = self._clock() + delay
                self._retried += 1
                await self._log(
                    "warning",
                    f"Webhook {job.provider} will be retried in {delay}ms",
                    job, {"attempt": job.attempts, "error": str(e)},
                )
                await self._emit("job-retry", job, e)
        else:
            self._remove(job.id)
            self._completed += 1
            await self._log("info", f"Webhook processed: {job.provider}", job)
            await self._emit("job-completed", job)
        finally:
            self._active.pop(job.id, None)

    def _remove(self, job_id: str) -> None:
        self._jobs = [job for job in self._jobs if job.id != job_id]

    def cleanup(self) -> int:
        """
        Evict jobs older than job_max_age_seconds. Returns how many were dropped.

        A running job is never evicted; its attempt finishes and an expired job
        waiting for a retry goes on the next sweep.
        """
        cutoff = self._clock() - self.job_max_age_seconds * 1000
        before = len(self._jobs)
        self._jobs = [
            job for job in self._jobs
            if job.created_at > cutoff or job.id in self._active
        ]
        removed = before - len(self._jobs)
        if removed:
            logger.info("Evicted %d stale webhook jobs, %d remaining", removed, len(self._jobs))
        return removed

    def stats(self) -> dict:
        now = self._clock()
        oldest = min((job.created_at for job in self._jobs), default=None)
        return {
            "queue_size": len(self._jobs),
            "active_jobs": len(self._active),
            "concurrency": self.concurrency,
            "oldest_job_age_ms": now - oldest if oldest is not None else None,
            "completed": self._completed,
            "failed": self._failed,
            "retried": self._retried,
            "running": self._runner is not None and not self._runner.done(),
        }

    # -- lifecycle --

    async def start(self) -> None:
        if self._runner is not None and not self._runner.done():
            return
        self._runner = asyncio.create_task(self._run())
        logger.info(
            "Webhook queue started (concurrency=%d, max_attempts=%d)",
            self.concurrency, self.max_attempts,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        logger.info("Webhook queue stopped (%d jobs pending)", len(self._jobs))

    async def _run(self) -> None:
        while True:
            try:
                self._tick()
                now = self._clock()
                if now - self._last_cleanup_ms >= self.cleanup_interval_seconds * 1000:
                    self.cleanup()
                    self._last_cleanup_ms = now
            except Exception as e:
                logger.error("Webhook queue tick error: %s", str(e), exc_info=True)
            await asyncio.sleep(self.tick_interval_ms / 1000)


def dispatch_job(dispatcher) -> JobHandler:
    """Queue handler that routes a job to the dispatcher's raising entry points."""

    async def _handle(job: WebhookJob) -> None:
        if job.provider == "amocrm":
            await dispatcher.process_amocrm_webhook(job.payload)
        elif job.provider == "lptracker":
            await dispatcher.process_lptracker_webhook(job.payload)
        else:
            logger.warning("Dropping job %s for unknown provider %s", job.id, job.provider)

    return _handle


async def alert_failed_job(job: WebhookJob, error: Optional[BaseException] = None) -> None:
    """job-failed listener: page the operator once attempts are exhausted."""
    from crmbridge.utils.alerting import send_alert, AlertType
    await send_alert(
        AlertType.WEBHOOK_JOB_FAILED,
        f"{job.provider} webhook job {job.id} dropped after {job.attempts} attempts: {error}",
        extra={"tenant_id": job.tenant_id or "unresolved"},
        dedup_suffix=job.provider,
    )
