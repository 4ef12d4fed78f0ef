"""
Trigger surfaces for the extraction pipeline.

- ScrapeJob: background job keyed by record id, with retry scheduling and the
  dead letter queue once the retry budget is spent
- quick_extract: caller waits a bounded time; extraction itself is never cancelled
- cleanup_stuck_attempts: periodic sweep for attempts abandoned mid-flight

Callers of these never see pipeline exceptions; they get a status dict and the
full story is in the attempt's events and the logs.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.config import PipelineConfig, get_config
from core.html_cleaner import HTMLCleaner
from core.net import HTTPClient
from core.notifier import ErrorNotifier
from . import state_machine
from .ai_fallback import AIExtractor
from .api_fetchers import build_api_fetchers
from .cache import HTMLCache
from .extractor import BaseExtractor
from .fetcher import HTMLFetcher
from .models import Attempt, AttemptStatus, EventStatus, FailedStep, utcnow
from .orchestrator import ExtractionOrchestrator
from .retry import RetryService
from .storage import InMemoryStore, PipelineStore, PostgresStore

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_SECONDS = 30
RETRY_MAX_DELAY_SECONDS = 900
FOLLOW_UP_MAX_CHECKS = 5

STUCK_STATUSES = (AttemptStatus.FETCHING, AttemptStatus.EXTRACTING, AttemptStatus.RETRYING)

# Step blamed when an attempt is found stuck in a given status
STUCK_FAILED_STEP = {
    AttemptStatus.FETCHING: FailedStep.HTML_FETCH.value,
    AttemptStatus.EXTRACTING: FailedStep.AI_EXTRACTION.value,
    AttemptStatus.RETRYING: FailedStep.ORCHESTRATION.value,
}


class JobQueue:
    """In-process delayed job queue on the running event loop."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.history: List[Dict[str, Any]] = []

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def enqueue(self, job: Callable[[], Awaitable[Any]], delay: float = 0, name: Optional[str] = None) -> asyncio.Task:
        async def runner():
            if delay > 0:
                await asyncio.sleep(delay)
            return await job()

        task = asyncio.get_running_loop().create_task(runner())
        self.history.append({"name": name, "delay": delay, "enqueued_at": utcnow().isoformat()})
        logger.info(f"[triggers] Enqueued {name or 'job'} delay={delay}s")
        return self.track(task, name)

    def track(self, task: asyncio.Task, name: Optional[str] = None) -> asyncio.Task:
        """Keep a reference to a task until it finishes and log its failure."""
        self._tasks.add(task)

        def done(finished: asyncio.Task):
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(f"[triggers] Job {name or 'job'} failed: {exc}", exc_info=exc)

        task.add_done_callback(done)
        return task

    async def drain(self) -> None:
        """Wait until every queued job, including ones queued meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


@dataclass
class Pipeline:
    """Wired-up pipeline components."""
    config: PipelineConfig
    store: PipelineStore
    notifier: ErrorNotifier
    http_client: HTTPClient
    cache: HTMLCache
    fetcher: HTMLFetcher
    orchestrator: ExtractionOrchestrator
    retry_service: RetryService
    queue: JobQueue


def build_pipeline(
    config: Optional[PipelineConfig] = None,
    store: Optional[PipelineStore] = None,
    http_client: Optional[HTTPClient] = None,
    ai_extractor: Optional[BaseExtractor] = None,
    notifier: Optional[ErrorNotifier] = None,
    api_fetchers: Optional[List[BaseExtractor]] = None,
) -> Pipeline:
    """Assemble the pipeline; any component may be swapped, e.g. for tests."""
    config = config or get_config()
    if store is None:
        if config.database_url:
            store = PostgresStore(config.database_url)
        else:
            logger.warning("[triggers] DATABASE_URL not set, using in-memory store")
            store = InMemoryStore()
    notifier = notifier or ErrorNotifier.from_config(config)
    http_client = http_client or HTTPClient.from_config(config)
    cache = HTMLCache(store, validity_days=config.cache_validity_days)
    fetcher = HTMLFetcher(cache, http_client, cleaner=HTMLCleaner.from_config(config), notifier=notifier)
    orchestrator = ExtractionOrchestrator(
        store=store,
        fetcher=fetcher,
        api_fetchers=api_fetchers if api_fetchers is not None else build_api_fetchers(http_client, config, notifier=notifier),
        ai_extractor=ai_extractor or AIExtractor.from_config(config, notifier=notifier),
        config=config,
        notifier=notifier,
    )
    return Pipeline(
        config=config,
        store=store,
        notifier=notifier,
        http_client=http_client,
        cache=cache,
        fetcher=fetcher,
        orchestrator=orchestrator,
        retry_service=RetryService(store, orchestrator, cache),
        queue=JobQueue(),
    )


def retry_delay(retry_count: int, base: float = RETRY_BASE_DELAY_SECONDS) -> float:
    if base <= 0:
        return 0
    return min(base * (2 ** max(retry_count - 1, 0)), RETRY_MAX_DELAY_SECONDS)


class ScrapeJob:
    """Background extraction for one record, retried until done or dead-lettered."""

    def __init__(self, pipeline: Pipeline, retry_base_delay: float = RETRY_BASE_DELAY_SECONDS):
        self.pipeline = pipeline
        self.retry_base_delay = retry_base_delay

    def enqueue(self, record_id: str, attempt_id: Optional[str] = None, delay: float = 0) -> asyncio.Task:
        return self.pipeline.queue.enqueue(
            lambda: self.perform(record_id, attempt_id),
            delay=delay,
            name=f"scrape record={record_id} attempt={attempt_id}",
        )

    async def perform(self, record_id: str, attempt_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run a first extraction, or retry ``attempt_id`` by where it failed.

        retry_html_fetch for fetch failures, retry_extraction for API/AI
        failures, retry_full for anything else.
        """
        store = self.pipeline.store
        attempt: Optional[Attempt] = None
        try:
            if attempt_id is None:
                run_result = await self.pipeline.orchestrator.run(record_id)
                attempt = run_result.attempt
                if run_result.deduplicated:
                    return run_result.to_dict()
            else:
                attempt = store.get_attempt(attempt_id)
                if attempt is None:
                    logger.warning(f"[triggers] Attempt {attempt_id} not found, nothing to retry")
                    return {"status": "not_found", "attempt_id": attempt_id}
                if not state_machine.is_retryable(attempt):
                    logger.info(f"[triggers] Attempt {attempt.id} is {attempt.status.value}, skipping retry")
                    return {"status": attempt.status.value, "attempt_id": attempt.id}
                retry_result = await self.pipeline.retry_service.retry(attempt)
                attempt = retry_result.attempt or attempt
        except Exception as e:
            logger.error(f"[triggers] Scrape job failed record={record_id} attempt={attempt_id}: {e}", exc_info=True)
            attempt = self._refresh(attempt, record_id)

        return self.handle_outcome(record_id, attempt)

    async def follow_up(self, record_id: str, attempt_id: str, task: Optional[asyncio.Task] = None,
                        checks_left: int = FOLLOW_UP_MAX_CHECKS) -> Dict[str, Any]:
        """
        Delayed check after a quick extraction timed out; never starts a second run.

        Waits for the still-running extraction ``task`` when given, then hands the
        attempt to handle_outcome. Without a task it re-checks at most
        ``checks_left`` more times while the attempt is in progress.
        """
        if task is not None and not task.done():
            logger.info(f"[triggers] Follow-up: waiting for running extraction attempt={attempt_id}")
            await asyncio.wait({task})

        attempt = self.pipeline.store.get_attempt(attempt_id)
        if attempt is None:
            return {"status": "not_found", "attempt_id": attempt_id}
        if attempt.is_in_progress:
            logger.info(f"[triggers] Follow-up: attempt={attempt.id} still {attempt.status.value}, "
                        f"{checks_left} checks left")
            if checks_left > 0:
                self.pipeline.queue.enqueue(
                    lambda: self.follow_up(record_id, attempt_id, checks_left=checks_left - 1),
                    delay=self.pipeline.config.followup_delay_seconds,
                    name=f"follow-up record={record_id} attempt={attempt_id}",
                )
            return {"status": attempt.status.value, "attempt_id": attempt.id}
        return self.handle_outcome(record_id, attempt)

    def handle_outcome(self, record_id: str, attempt: Optional[Attempt]) -> Dict[str, Any]:
        """Schedule a retry for a failed attempt, or dead-letter it when the budget is spent."""
        attempt = self._refresh(attempt, record_id)
        if attempt is None:
            return {"status": "failed", "record_id": record_id, "error": "No attempt recorded"}

        if attempt.status == AttemptStatus.FAILED:
            budget = self.pipeline.config.retry_budget
            if attempt.retry_count >= budget:
                state_machine.send_to_dlq(attempt)
                self.pipeline.store.save_attempt(attempt)
                logger.error(
                    f"[triggers] Attempt {attempt.id} for record={record_id} moved to dead letter queue "
                    f"after {attempt.retry_count} retries: step={attempt.failed_step} error={attempt.error_message}"
                )
            else:
                state_machine.retry_attempt(attempt)
                self.pipeline.store.save_attempt(attempt)
                delay = retry_delay(attempt.retry_count, self.retry_base_delay)
                logger.info(f"[triggers] Scheduling retry {attempt.retry_count}/{budget} "
                            f"attempt={attempt.id} in {delay}s")
                self.enqueue(record_id, attempt.id, delay=delay)

        return {
            "status": attempt.status.value,
            "record_id": record_id,
            "attempt_id": attempt.id,
            "retry_count": attempt.retry_count,
            "failed_step": attempt.failed_step,
            "error": attempt.error_message,
        }

    def _refresh(self, attempt: Optional[Attempt], record_id: str) -> Optional[Attempt]:
        if attempt is not None:
            return self.pipeline.store.get_attempt(attempt.id) or attempt
        return self.pipeline.store.latest_attempt(record_id)


async def quick_extract(pipeline: Pipeline, record_id: str, job: Optional[ScrapeJob] = None) -> Dict[str, Any]:
    """
    Extract with a bounded wait.

    The orchestrator runs as its own task. If it has not finished within
    QUICK_EXTRACTION_TIMEOUT the caller gets ``pending`` and a delayed
    follow-up is queued; the task keeps running and the follow-up handles its
    outcome once it finishes.
    """
    job = job or ScrapeJob(pipeline)
    task = asyncio.get_running_loop().create_task(pipeline.orchestrator.run(record_id))
    pipeline.queue.track(task, name=f"quick record={record_id}")

    done, _ = await asyncio.wait({task}, timeout=pipeline.config.quick_timeout)
    if task in done:
        if task.exception() is not None:
            # Already logged and notified at the attempt boundary
            latest = pipeline.store.latest_attempt(record_id)
            return job.handle_outcome(record_id, latest)
        run_result = task.result()
        if run_result.deduplicated or run_result.success:
            return run_result.to_dict()
        return {**run_result.to_dict(), **job.handle_outcome(record_id, run_result.attempt)}

    latest = pipeline.store.latest_attempt(record_id)
    logger.info(f"[triggers] Quick extraction for record={record_id} exceeded "
                f"{pipeline.config.quick_timeout}s, queuing follow-up")
    if latest is not None:
        pipeline.queue.enqueue(
            lambda: job.follow_up(record_id, latest.id, task=task),
            delay=pipeline.config.followup_delay_seconds,
            name=f"follow-up record={record_id} attempt={latest.id}",
        )
    return {
        "status": "pending",
        "record_id": record_id,
        "attempt_id": latest.id if latest else None,
    }


def cleanup_stuck_attempts(pipeline: Pipeline) -> int:
    """Fail attempts left in an in-flight status longer than STUCK_ATTEMPT_MINUTES."""
    store = pipeline.store
    minutes = pipeline.config.stuck_attempt_minutes
    cutoff = utcnow() - timedelta(minutes=minutes)

    cleaned = 0
    for attempt in store.find_stuck_attempts(STUCK_STATUSES, cutoff):
        record = store.get_record(attempt.record_id)
        if record is None:
            logger.warning(f"[triggers] Stuck attempt {attempt.id} has no record, skipping")
            continue

        status = attempt.status
        message = f"Stuck in {status.value} for more than {minutes} minutes"
        now = utcnow()
        for event in store.list_events(attempt.id):
            if event.status == EventStatus.STARTED:
                event.status = EventStatus.FAILED
                event.completed_at = now
                event.error_type = "StuckTimeout"
                event.error_message = message
                store.update_event(event)

        run = pipeline.orchestrator.open_run(record, attempt)
        failed_step = STUCK_FAILED_STEP[status]
        if status == AttemptStatus.RETRYING and attempt.failed_step:
            failed_step = attempt.failed_step
        pipeline.orchestrator.fail_attempt(run, failed_step, message, "StuckTimeout")
        pipeline.notifier.notify(
            TimeoutError(message), "stuck_attempt_cleanup", severity="warning",
            attempt_id=attempt.id, record_id=attempt.record_id, url=attempt.url, status=status.value,
        )
        cleaned += 1

    pending = store.find_stuck_attempts([AttemptStatus.PENDING], cutoff)
    if pending:
        logger.warning(f"[triggers] {len(pending)} attempts pending for more than {minutes} minutes")
    if cleaned:
        logger.info(f"[triggers] Cleaned up {cleaned} stuck attempts")
    return cleaned
