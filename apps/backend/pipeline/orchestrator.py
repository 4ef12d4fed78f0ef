"""
Extraction orchestrator.

Drives one Attempt through the confidence cascade:

    fetch (cache or network)
      -> Greenhouse embed resolution, for gh_jid pages on company sites
      -> meta tags, for limited-access boards
      -> heuristic scrape (kept as the floor result, nothing written yet)
      -> vendor API, when the board has one
      -> AI extraction
      -> heuristic floor, then the meta-tag result

The first result at or above the confidence threshold is written to the record
and completes the attempt. Otherwise the attempt fails at the extraction stage
and becomes eligible for retry. This is the only component that moves an
attempt into ``completed`` or ``failed``.
"""

import time
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from core.config import PipelineConfig
from core.notifier import ErrorNotifier
from core.salary import validate_salary_range
from core.url_normalizer import extract_domain
from . import state_machine
from .api_fetchers import BaseAPIFetcher, fetcher_for
from .board_detector import (
    BoardInfo,
    detect_board,
    greenhouse_embed_key,
    greenhouse_embed_url,
    query_param,
    resolve_embedded_board,
)
from .events import EventRecorder
from .extractor import BaseExtractor, ExtractionInput, ExtractionOutcome, has_value
from .fetcher import FetchResult, HTMLFetcher
from .heuristics import HeuristicExtractor, heuristic_extractor_for
from .limited_sources import MetaTagExtractor
from .models import Attempt, AttemptStatus, EventType, FailedStep, RECORD_FIELDS, TargetRecord, utcnow
from .storage import PipelineStore, RecordNotFound

logger = logging.getLogger(__name__)

SALARY_FIELDS = ('salary_min', 'salary_max', 'salary_currency')

EMBED_FETCH_MODE = "greenhouse_embed"
# Below this much text the embed page is another shell, not the posting
EMBED_MIN_TEXT_LENGTH = 800


@dataclass
class RunResult:
    """What a caller learns about one orchestrator invocation."""
    status: str
    record_id: str
    attempt: Optional[Attempt] = None
    outcome: Optional[ExtractionOutcome] = None
    error: Optional[str] = None
    from_cache: bool = False
    updated_fields: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == AttemptStatus.COMPLETED.value

    @property
    def deduplicated(self) -> bool:
        return self.status == "deduplicated"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "success": self.success,
            "record_id": self.record_id,
            "attempt_id": self.attempt.id if self.attempt else None,
            "attempt_status": self.attempt.status.value if self.attempt else None,
            "method": self.outcome.method if self.outcome else None,
            "confidence": self.outcome.confidence if self.outcome else None,
            "from_cache": self.from_cache,
            "updated_fields": self.updated_fields,
            "error": self.error,
        }


@dataclass
class AttemptRun:
    """State carried through one pass over an attempt."""
    record: TargetRecord
    attempt: Attempt
    recorder: EventRecorder
    board: BoardInfo
    started: float = field(default_factory=time.monotonic)
    step: str = FailedStep.ORCHESTRATION.value
    from_cache: bool = False


class ExtractionOrchestrator:
    """Runs the extraction cascade for job records."""

    def __init__(
        self,
        store: PipelineStore,
        fetcher: HTMLFetcher,
        api_fetchers: List[BaseAPIFetcher],
        ai_extractor: BaseExtractor,
        config: PipelineConfig,
        notifier: Optional[ErrorNotifier] = None,
        heuristic_factory: Callable[..., HeuristicExtractor] = heuristic_extractor_for,
        limited_extractor: Optional[BaseExtractor] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.api_fetchers = api_fetchers
        self.ai_extractor = ai_extractor
        self.config = config
        self.notifier = notifier or ErrorNotifier()
        self.heuristic_factory = heuristic_factory
        self.limited_extractor = limited_extractor or MetaTagExtractor()

    # Entry point

    async def run(self, record: Union[str, TargetRecord], force: bool = False) -> RunResult:
        """
        Extract one record end-to-end under a new Attempt.

        Unexpected exceptions fail the attempt at the ``orchestration`` step,
        are reported to the notifier, and propagate.
        """
        record = self._resolve_record(record)

        if not force:
            in_flight = self.find_in_flight(record.id)
            if in_flight:
                logger.info(
                    f"[orchestrator] Attempt {in_flight.id} already {in_flight.status.value} "
                    f"for record={record.id}, not starting another"
                )
                return RunResult(status="deduplicated", record_id=record.id, attempt=in_flight)

        attempt = self.store.create_attempt(Attempt(
            record_id=record.id,
            url=record.url,
            domain=extract_domain(record.url),
        ))
        run = self.open_run(record, attempt)
        logger.info(f"[orchestrator] Starting attempt={attempt.id} record={record.id} url={record.url} "
                    f"board={run.board.board_type}")

        try:
            return await self._run_cascade(run)
        except Exception as e:
            self.fail_unexpected(run, e)
            raise

    async def resume(self, attempt: Attempt, use_cache: bool = True) -> RunResult:
        """
        Run the whole cascade again on an existing attempt in ``retrying``.

        Events continue the attempt's step numbering.
        """
        record = self._resolve_record(attempt.record_id)
        run = self.open_run(record, attempt)
        logger.info(f"[orchestrator] Resuming attempt={attempt.id} record={record.id} "
                    f"retry_count={attempt.retry_count} use_cache={use_cache}")
        try:
            return await self._run_cascade(run, use_cache=use_cache)
        except Exception as e:
            self.fail_unexpected(run, e)
            raise

    def find_in_flight(self, record_id: str) -> Optional[Attempt]:
        """Latest attempt still in progress and touched within the reuse window."""
        latest = self.store.latest_attempt(record_id)
        if latest is None or not latest.is_in_progress:
            return None
        window = timedelta(seconds=self.config.attempt_reuse_window_seconds)
        if utcnow() - latest.updated_at > window:
            return None
        return latest

    def open_run(self, record: TargetRecord, attempt: Attempt) -> AttemptRun:
        return AttemptRun(
            record=record,
            attempt=attempt,
            recorder=EventRecorder.from_config(self.store, attempt, self.config),
            board=detect_board(record.url),
        )

    async def _run_cascade(self, run: AttemptRun, use_cache: bool = True) -> RunResult:
        state_machine.start_fetch(run.attempt)
        self.save(run)

        fetch_result = await self.fetch_html(run, use_cache=use_cache)
        if not fetch_result.success:
            return self.fail_attempt(run, FailedStep.HTML_FETCH.value,
                                     f"HTML fetch failed: {fetch_result.error}", "FetchError")

        state_machine.start_extract(run.attempt)
        self.save(run)
        return await self.extract(run, fetch_result)

    # Steps, shared with the retry service

    async def fetch_html(self, run: AttemptRun, use_cache: bool = True) -> FetchResult:
        """html_fetch step. The attempt must already be in ``fetching``."""
        run.step = FailedStep.HTML_FETCH.value
        with run.recorder.record(EventType.HTML_FETCH, input_data={"url": run.record.url, "use_cache": use_cache},
                                 metadata={"board_type": run.board.board_type}) as event:
            result = await self.fetcher.fetch(run.record, run.attempt, use_cache=use_cache)
            event.set_output(**result.summary())
            if not result.success:
                event.fail(result.error or "HTML fetch failed", "FetchError")

        run.from_cache = result.from_cache
        if result.cache_entry is not None:
            run.attempt.cache_entry_id = result.cache_entry.id
            run.attempt.response_metadata["from_cache"] = result.from_cache
            self.save(run)
        return result

    async def extract(self, run: AttemptRun, fetch_result: FetchResult) -> RunResult:
        """Everything after the page is available. The attempt must be in ``extracting``."""
        fetch_result = await self.resolve_embedded_board(run, fetch_result)
        extraction_input = ExtractionInput(
            record=run.record,
            url=run.record.url,
            board=run.board,
            raw_html=fetch_result.raw_html,
            cleaned_html=fetch_result.cleaned_html,
            attempt=run.attempt,
        )

        limited = None
        if run.board.limited_extraction:
            limited = await self.run_extractor(run, self.limited_extractor, extraction_input)
        floor = await self.scrape_preliminary(run, extraction_input)
        fallbacks = [o for o in (floor, limited) if o is not None]

        outcomes: List[ExtractionOutcome] = []
        for extractor in self.cascade_for(run.board):
            outcome = await self.run_extractor(run, extractor, extraction_input)
            if outcome is None:
                continue
            outcomes.append(outcome)
            if outcome.accepted(self.threshold(run)):
                return self.complete(run, outcome)

        for fallback in fallbacks:
            if fallback.accepted(self.threshold(run)):
                logger.info(f"[orchestrator] attempt={run.attempt.id} accepting {fallback.provider or fallback.method} "
                            f"fallback confidence={fallback.confidence:.2f}")
                return self.complete(run, fallback)

        outcomes.extend(fallbacks)
        best = max(outcomes, key=lambda o: o.confidence)
        message = f"Low confidence: {best.confidence:.2f} (best method: {best.method})"
        return self.fail_attempt(
            run, FailedStep.AI_EXTRACTION.value, message, "LowConfidence",
            details={"threshold": self.threshold(run), "outcomes": [o.summary() for o in outcomes]},
            outcome=best,
        )

    async def resolve_embedded_board(self, run: AttemptRun, fetch_result: FetchResult) -> FetchResult:
        """
        embedded_job_board_fetch step for Greenhouse boards embedded in company sites.

        The board key found in the page unlocks the vendor API. The embed page
        replaces the fetched HTML only when it carries real content.
        """
        resolved = resolve_embedded_board(run.board, run.record.url, fetch_result.raw_html)
        if resolved is None:
            return fetch_result
        run.board = resolved
        board_key = greenhouse_embed_key(fetch_result.raw_html)
        embed_url = greenhouse_embed_url(board_key, resolved.job_id, query_param(run.record.url, 'gh_src'))

        run.step = EventType.EMBEDDED_JOB_BOARD_FETCH.value
        with run.recorder.record(EventType.EMBEDDED_JOB_BOARD_FETCH, input_data={
            "board_type": resolved.board_type,
            "board_key": board_key,
            "gh_jid": resolved.job_id,
            "embed_url": embed_url,
        }) as event:
            embedded = await self.fetcher.fetch(run.record, run.attempt, url=embed_url, fetch_mode=EMBED_FETCH_MODE)
            text_length = len((embedded.cleaned_html or '').strip())
            event.set_output(**embedded.summary(), cleaned_text_length=text_length, fetch_mode=EMBED_FETCH_MODE)
            if not embedded.success:
                event.fail(embedded.error or "Embedded fetch failed", "FetchError")

        if not embedded.success or text_length < EMBED_MIN_TEXT_LENGTH:
            logger.info(f"[orchestrator] attempt={run.attempt.id} keeping original page, embed text "
                        f"length={text_length}")
            return fetch_result

        run.attempt.response_metadata["fetch_mode"] = EMBED_FETCH_MODE
        return FetchResult(
            success=True,
            raw_html=embedded.raw_html,
            cleaned_html=embedded.cleaned_html,
            from_cache=fetch_result.from_cache,
            http_status=embedded.http_status,
            cache_entry=fetch_result.cache_entry,
        )

    async def scrape_preliminary(self, run: AttemptRun, extraction_input: ExtractionInput) -> ExtractionOutcome:
        """html_scrape step: heuristic pass whose result is the floor of the cascade. Writes nothing."""
        run.step = FailedStep.ORCHESTRATION.value
        heuristic = self.heuristic_factory(run.board.board_type, store=self.store)
        with run.recorder.record(EventType.HTML_SCRAPE, metadata={
            "board_type": run.board.board_type,
            "extractor_kind": heuristic.extractor_kind,
        }) as event:
            floor = await heuristic.extract(extraction_input)
            event.set_output(**floor.summary())
        return floor

    def cascade_for(self, board: BoardInfo) -> List[BaseExtractor]:
        extractors: List[BaseExtractor] = []
        api_fetcher = fetcher_for(board.board_type, self.api_fetchers)
        if api_fetcher is not None:
            extractors.append(api_fetcher)
        extractors.append(self.ai_extractor)
        return extractors

    async def run_extractor(self, run: AttemptRun, extractor: BaseExtractor,
                            extraction_input: ExtractionInput) -> Optional[ExtractionOutcome]:
        """Run one cascade step under its event. Returns None when the step was skipped."""
        event_type = extractor.event_type
        skip_reason = extractor.applies_to(extraction_input)
        if skip_reason:
            run.recorder.record_skipped(event_type, skip_reason, metadata={"board_type": run.board.board_type})
            return None

        run.step = event_type
        with run.recorder.record(event_type, input_data={"url": extraction_input.url},
                                 metadata={"board_type": run.board.board_type}) as event:
            outcome = await extractor.extract(extraction_input)
            event.set_output(**outcome.summary())
            if outcome.error:
                event.fail(outcome.error, "ExtractionError")
        return outcome

    def threshold(self, run: AttemptRun) -> float:
        return self.config.threshold_for(run.board.board_type)

    # Record updates

    def accepted_fields(self, outcome: ExtractionOutcome) -> Dict[str, Any]:
        """Produced fields that may be written, with the salary validated as a unit."""
        fields = {name: value for name, value in outcome.produced_fields().items() if name in RECORD_FIELDS}
        if any(name in fields for name in SALARY_FIELDS):
            salary = validate_salary_range(
                fields.get('salary_min'), fields.get('salary_max'), fields.get('salary_currency'),
            )
            for name in SALARY_FIELDS:
                fields.pop(name, None)
            if salary.valid:
                fields['salary_min'] = salary.min
                fields['salary_max'] = salary.max
                fields['salary_currency'] = salary.currency
            else:
                logger.info(f"[orchestrator] Dropping {outcome.method} salary: {salary.reason}")
        return {name: value for name, value in fields.items() if has_value(value)}

    def complete(self, run: AttemptRun, outcome: ExtractionOutcome) -> RunResult:
        attempt = run.attempt
        duration = round(time.monotonic() - run.started, 3)

        with run.recorder.record(EventType.DATA_UPDATE, metadata={"method": outcome.method}) as event:
            updates = self.accepted_fields(outcome)
            updates['extraction_status'] = {
                "method": outcome.method,
                "provider": outcome.provider,
                "model": outcome.model,
                "confidence": outcome.confidence,
                "tokens_used": outcome.tokens_used,
                "extracted_at": utcnow().isoformat(),
                "duration_seconds": duration,
                "retried": attempt.retry_count > 0,
                "attempt_id": attempt.id,
            }
            run.record = self.store.update_record_fields(run.record.id, updates)
            updated = sorted(name for name in updates if name != 'extraction_status')
            event.set_output(updated_fields=updated)

        attempt.extraction_method = outcome.method
        attempt.provider = outcome.provider
        attempt.confidence = outcome.confidence
        attempt.duration_seconds = duration
        attempt.response_metadata.update({
            "model": outcome.model,
            "tokens_used": outcome.tokens_used,
            "board_type": run.board.board_type,
        })
        run.recorder.record_completion({
            "method": outcome.method,
            "provider": outcome.provider,
            "confidence": outcome.confidence,
            "updated_fields": updated,
            "duration_seconds": duration,
        })
        state_machine.mark_completed(attempt)
        self.save(run)

        logger.info(
            f"[orchestrator] Completed attempt={attempt.id} record={run.record.id} "
            f"method={outcome.method} confidence={outcome.confidence:.2f} duration={duration}s"
        )
        return RunResult(status=attempt.status.value, record_id=run.record.id, attempt=attempt,
                         outcome=outcome, from_cache=run.from_cache, updated_fields=updated)

    # Failure handling

    def fail_attempt(self, run: AttemptRun, failed_step: str, message: str, error_type: str,
                     details: Optional[Dict[str, Any]] = None,
                     outcome: Optional[ExtractionOutcome] = None) -> RunResult:
        """Expected failure: failure event, attempt -> failed, no exception."""
        attempt = run.attempt
        run.recorder.record_failure(message, error_type, details={"failed_step": failed_step, **(details or {})})
        attempt.duration_seconds = round(time.monotonic() - run.started, 3)
        if outcome is not None:
            attempt.extraction_method = outcome.method
            attempt.provider = outcome.provider
            attempt.confidence = outcome.confidence
        state_machine.mark_failed(attempt, failed_step, message)
        self.save(run)

        logger.warning(f"[orchestrator] Failed attempt={attempt.id} record={run.record.id} "
                       f"step={failed_step} error={message}")
        return RunResult(status=attempt.status.value, record_id=run.record.id, attempt=attempt,
                         outcome=outcome, error=message, from_cache=run.from_cache)

    def fail_unexpected(self, run: AttemptRun, exc: Exception) -> None:
        """Per-attempt boundary for exceptions nobody anticipated."""
        attempt = run.attempt
        message = f"{type(exc).__name__}: {exc}"
        logger.error(f"[orchestrator] Unexpected error attempt={attempt.id} step={run.step}: {message}",
                     exc_info=True)
        try:
            run.recorder.record_failure(message, type(exc).__name__, details={"step": run.step})
            if state_machine.can_transition(attempt.status, AttemptStatus.FAILED):
                attempt.duration_seconds = round(time.monotonic() - run.started, 3)
                state_machine.mark_failed(attempt, FailedStep.ORCHESTRATION.value, message)
                self.save(run)
        except Exception as bookkeeping_error:
            logger.error(f"[orchestrator] Could not record failure for attempt={attempt.id}: {bookkeeping_error}")
        self.notifier.notify(exc, "extraction_orchestrator", url=run.record.url,
                             record_id=run.record.id, attempt_id=attempt.id, step=run.step)

    # Helpers

    def save(self, run: AttemptRun) -> None:
        self.store.save_attempt(run.attempt)

    def _resolve_record(self, record: Union[str, TargetRecord]) -> TargetRecord:
        if isinstance(record, TargetRecord):
            return record
        found = self.store.get_record(record)
        if found is None:
            raise RecordNotFound(record)
        return found
