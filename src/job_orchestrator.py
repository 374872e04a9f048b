#!/usr/bin/env python3
"""
Analysis Job Orchestrator

Runs auto-analyze jobs in the background and tracks their progress:

    sampling -> analyzing -> conflict_resolution -> generating_summary -> complete

with "error" reachable from every phase. Cancellation is cooperative and is
reported as an error whose message mentions cancellation.

Within the analyzing phase the first batch(es) run alone to seed the label
vocabulary ("discovery"), then the remaining batches fan out over a bounded
thread pool ("parallel_processing"). Workers only return results; the shared
vocabulary and result list are updated by the job thread, and the progress
snapshot is updated under the job's lock.
"""

import re
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from analysis_summary import AnalysisSummary, StatisticsSummaryGenerator
from batch_classifier import BatchClassifier, BatchResult
from config_manager import ConfigManager, ModelInfo, get_config
from conflict_resolver import ConflictResolutionEngine, ResolutionStats
from llm_provider import LLMProvider, RateLimiter, create_llm_provider
from session_models import ClassificationVocabulary, ClassifiedSession, SessionRecord, TokenUsage
from session_sampler import SessionSampler, localize_start
from session_source import SessionSource
from transcript_normalizer import TranscriptNormalizer

PHASE_SAMPLING = "sampling"
PHASE_ANALYZING = "analyzing"
PHASE_CONFLICT_RESOLUTION = "conflict_resolution"
PHASE_GENERATING_SUMMARY = "generating_summary"
PHASE_COMPLETE = "complete"
PHASE_ERROR = "error"
TERMINAL_PHASES = (PHASE_COMPLETE, PHASE_ERROR)

SUB_PHASE_DISCOVERY = "discovery"
SUB_PHASE_PARALLEL = "parallel_processing"

CANCELLED_MESSAGE = "Analysis cancelled by user"

DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')
SECRET_PATTERN = re.compile(r'sk-[A-Za-z0-9_\-]{4,}')

ProviderFactory = Callable[[ModelInfo, str], LLMProvider]


class ConfigValidationError(ValueError):
    """Analysis configuration rejected before a job was created"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid analysis configuration: " + "; ".join(self.errors))


class JobNotFoundError(KeyError):
    pass


class JobNotReadyError(RuntimeError):
    pass


class JobCancelledError(RuntimeError):
    """Raised inside the job thread once cancellation has been observed"""


def sanitize_error(message: str, api_key: Optional[str] = None) -> str:
    """Mask API keys in an error message before it is stored on a job"""
    if api_key:
        message = message.replace(api_key, "***")
    return SECRET_PATTERN.sub("sk-***", message)


@dataclass(frozen=True)
class AnalysisConfig:
    start_date: str  # YYYY-MM-DD, local to the sampling timezone
    start_time: str  # HH:MM
    session_count: int
    model_id: str
    api_key: str = field(repr=False)
    additional_context: Optional[str] = None


def validate_config(config: AnalysisConfig, config_manager: Optional[ConfigManager] = None,
                    now: Optional[datetime] = None) -> List[str]:
    """Return every problem with the configuration, empty when it is valid"""
    config_manager = config_manager or get_config()
    job_config = config_manager.get_job_config()
    timezone = config_manager.get_sampling_config().timezone
    errors = []

    date_ok = isinstance(config.start_date, str) and bool(DATE_PATTERN.match(config.start_date))
    time_ok = isinstance(config.start_time, str) and bool(TIME_PATTERN.match(config.start_time))
    if not date_ok:
        errors.append("Start date must be in YYYY-MM-DD format")
    if not time_ok:
        errors.append("Start time must be in HH:MM format")
    if date_ok and time_ok:
        try:
            start = localize_start(config.start_date, config.start_time, timezone)
        except ValueError:
            errors.append(f"Start date '{config.start_date}' is not a valid calendar date")
        else:
            current = pd.Timestamp(now) if now is not None else pd.Timestamp.now(tz=timezone)
            if current.tzinfo is None:
                current = current.tz_localize(timezone)
            if start >= current:
                errors.append("Start date and time must be in the past")

    count = config.session_count
    if isinstance(count, bool) or not isinstance(count, int):
        errors.append("Session count must be an integer")
    elif not job_config.min_session_count <= count <= job_config.max_session_count:
        errors.append(f"Session count must be between {job_config.min_session_count} and {job_config.max_session_count}")

    model_info = config_manager.get_model_info(config.model_id) if config.model_id else None
    if model_info is None:
        available = ", ".join(config_manager.list_available_models())
        errors.append(f"Unknown model '{config.model_id}'. Available models: {available}")

    if not config.api_key or not config.api_key.strip():
        errors.append("API key is required")
    elif model_info is not None:
        prefix = job_config.api_key_prefixes.get(model_info.provider, "")
        if prefix and not config.api_key.startswith(prefix):
            errors.append(f"Invalid {model_info.provider} API key format (expected '{prefix}...')")

    return errors


@dataclass
class ProgressSnapshot:
    job_id: str
    phase: str
    current_step: str
    model_id: str
    start_time: datetime
    sub_phase: Optional[str] = None
    sessions_found: int = 0
    sessions_processed: int = 0
    sessions_failed: int = 0
    total_sessions: int = 0
    batches_completed: int = 0
    batches_failed: int = 0
    total_batches: int = 0
    tokens_used: int = 0
    estimated_cost: float = 0.0
    end_time: Optional[datetime] = None
    eta_seconds: Optional[float] = None
    error: Optional[str] = None
    sampling: Dict[str, Any] = field(default_factory=dict)
    conflict_stats: Optional[ResolutionStats] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_cancelled(self) -> bool:
        return self.phase == PHASE_ERROR and "cancel" in (self.error or "").lower()


@dataclass
class AnalysisResults:
    job_id: str
    sessions: List[ClassifiedSession]
    summary: Optional[AnalysisSummary]
    progress: ProgressSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "sessions": [s.to_dict() for s in self.sessions],
            "summary": self.summary.to_dict() if self.summary else None,
            "conflict_resolution": self.progress.conflict_stats.to_dict() if self.progress.conflict_stats else None,
            "tokens_used": self.progress.tokens_used,
            "estimated_cost": self.progress.estimated_cost,
        }


class AnalysisJob:
    """State of one analysis job; progress is only read or written under the lock"""

    def __init__(self, job_id: str, config: AnalysisConfig):
        self.job_id = job_id
        self.config = config
        self.created_at = time.time()
        self.finished_at: Optional[float] = None
        self.sessions: List[ClassifiedSession] = []
        self.summary: Optional[AnalysisSummary] = None
        self.thread: Optional[threading.Thread] = None

        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._done = threading.Event()
        self._batch_durations: List[float] = []
        self._progress = ProgressSnapshot(
            job_id=job_id,
            phase=PHASE_SAMPLING,
            current_step="Initializing",
            model_id=config.model_id,
            start_time=datetime.now(),
        )

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return replace(self._progress, sampling=dict(self._progress.sampling))

    @property
    def is_terminal(self) -> bool:
        with self._lock:
            return self._progress.phase in TERMINAL_PHASES

    def is_cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def request_cancel(self) -> bool:
        with self._lock:
            if self._progress.phase in TERMINAL_PHASES:
                return False
            self._cancel_requested.set()
            return True

    def update(self, **changes: Any) -> None:
        with self._lock:
            if self._progress.phase in TERMINAL_PHASES:
                return
            for name, value in changes.items():
                setattr(self._progress, name, value)

    def add_usage(self, usage: TokenUsage) -> None:
        with self._lock:
            self._progress.tokens_used += usage.total_tokens
            self._progress.estimated_cost += usage.cost

    def record_batch(self, result: BatchResult) -> None:
        with self._lock:
            progress = self._progress
            progress.batches_completed += 1
            if not result.succeeded:
                progress.batches_failed += 1
            progress.sessions_processed += len(result.classified)
            progress.sessions_failed += len(result.failed_session_ids)
            progress.tokens_used += result.token_usage.total_tokens
            progress.estimated_cost += result.token_usage.cost

            self._batch_durations.append(result.processing_time)
            remaining = max(progress.total_batches - progress.batches_completed, 0)
            average = sum(self._batch_durations) / len(self._batch_durations)
            progress.eta_seconds = round(remaining * average, 1)
            progress.current_step = f"Classified {progress.batches_completed}/{progress.total_batches} batches"

    def complete(self, sessions: List[ClassifiedSession], summary: Optional[AnalysisSummary]) -> None:
        with self._lock:
            if self._progress.phase in TERMINAL_PHASES:
                return
            # A cancel accepted before this point wins over completion
            if self._cancel_requested.is_set():
                raise JobCancelledError(CANCELLED_MESSAGE)
            self.sessions = sessions
            self.summary = summary
            self._progress.phase = PHASE_COMPLETE
            self._progress.sub_phase = None
            self._progress.current_step = f"Analysis complete: {len(sessions)} sessions"
            self._progress.end_time = datetime.now()
            self._progress.eta_seconds = 0.0
            self.finished_at = time.time()

    def fail(self, message: str) -> None:
        with self._lock:
            if self._progress.phase in TERMINAL_PHASES:
                return
            self._progress.phase = PHASE_ERROR
            self._progress.sub_phase = None
            self._progress.error = message
            self._progress.current_step = message
            self._progress.end_time = datetime.now()
            self._progress.eta_seconds = None
            self.finished_at = time.time()

    def mark_done(self) -> None:
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class JobRegistry:
    """Job id -> AnalysisJob table shared by one orchestrator"""

    def __init__(self):
        self._jobs: Dict[str, AnalysisJob] = {}
        self._lock = threading.Lock()

    def add(self, job: AnalysisJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job

    def get(self, job_id: str) -> AnalysisJob:
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(f"Analysis job not found: {job_id}")
            return self._jobs[job_id]

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def cleanup_expired(self, retention_seconds: float, now: Optional[float] = None) -> int:
        """Drop finished jobs older than the retention period"""
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.finished_at is not None and now - job.finished_at > retention_seconds
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            print(f"🧹 Removed {len(expired)} expired analysis job(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class AnalysisJobOrchestrator:
    """Starts, tracks and cancels auto-analyze jobs"""

    def __init__(self, session_source: SessionSource, registry: Optional[JobRegistry] = None,
                 provider_factory: ProviderFactory = create_llm_provider,
                 normalizer: Optional[TranscriptNormalizer] = None,
                 summary_generator: Optional[StatisticsSummaryGenerator] = None,
                 config_manager: Optional[ConfigManager] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.session_source = session_source
        self.registry = registry if registry is not None else JobRegistry()
        self.provider_factory = provider_factory
        self.normalizer = normalizer or TranscriptNormalizer()
        self.summary_generator = summary_generator or StatisticsSummaryGenerator()
        self.config_manager = config_manager or get_config()
        self.sleep = sleep

        self.sampling_config = self.config_manager.get_sampling_config()
        self.batch_config = self.config_manager.get_batch_config()
        self.conflict_config = self.config_manager.get_conflict_resolution_config()
        self.job_config = self.config_manager.get_job_config()

    # Job API

    def start(self, config: AnalysisConfig) -> str:
        """Validate the configuration and launch the job in a background thread"""
        errors = validate_config(config, self.config_manager)
        if errors:
            raise ConfigValidationError(errors)

        self.registry.cleanup_expired(self.job_config.retention_seconds)

        job_id = str(uuid.uuid4())
        job = AnalysisJob(job_id, config)
        self.registry.add(job)

        job.thread = threading.Thread(target=self._run_job, args=(job,), name=f"analysis-{job_id[:8]}", daemon=True)
        job.thread.start()
        print(f"🚀 Started analysis job {job_id}: {config.session_count} sessions from "
              f"{config.start_date} {config.start_time} with {config.model_id}")
        return job_id

    def get_progress(self, job_id: str) -> ProgressSnapshot:
        return self.registry.get(job_id).snapshot()

    def get_results(self, job_id: str) -> AnalysisResults:
        job = self.registry.get(job_id)
        progress = job.snapshot()
        if progress.phase != PHASE_COMPLETE:
            raise JobNotReadyError(f"Analysis job {job_id} is not complete (phase: {progress.phase})")
        return AnalysisResults(job_id=job_id, sessions=list(job.sessions), summary=job.summary, progress=progress)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; False when the job already finished"""
        accepted = self.registry.get(job_id).request_cancel()
        if accepted:
            print(f"⚠️  Cancellation requested for analysis job {job_id}")
        return accepted

    def wait(self, job_id: str, timeout: Optional[float] = None) -> ProgressSnapshot:
        job = self.registry.get(job_id)
        job.wait(timeout)
        return job.snapshot()

    def cleanup(self, job_id: str) -> bool:
        return self.registry.remove(job_id)

    # Job thread

    def _run_job(self, job: AnalysisJob) -> None:
        start_time = time.time()
        try:
            self._execute(job)
            print(f"✅ Analysis job {job.job_id} complete in {time.time() - start_time:.2f}s")
        except JobCancelledError:
            print(f"⚠️  Analysis job {job.job_id} cancelled")
            job.fail(CANCELLED_MESSAGE)
        except Exception as e:
            message = sanitize_error(str(e) or e.__class__.__name__, job.config.api_key)
            print(f"❌ Analysis job {job.job_id} failed: {message}")
            job.fail(message)
        finally:
            job.mark_done()

    def _check_cancelled(self, job: AnalysisJob) -> None:
        if job.is_cancel_requested():
            raise JobCancelledError(CANCELLED_MESSAGE)

    def _execute(self, job: AnalysisJob) -> None:
        config = job.config
        model_info = self.config_manager.get_model_info(config.model_id)
        provider = self.provider_factory(model_info, config.api_key)
        rate_limiter = RateLimiter(self.batch_config.requests_per_minute, sleep=self.sleep)

        # Phase 1: sampling
        job.update(phase=PHASE_SAMPLING, current_step="Searching for sessions")
        sampler = SessionSampler(self.session_source, self.normalizer, self.sampling_config)
        sampling = sampler.sample_sessions(
            config.session_count, config.start_date, config.start_time,
            progress_callback=lambda found, window: job.update(
                sessions_found=found, current_step=f"Searched {window.label}: {found} sessions found"
            ),
            should_stop=job.is_cancel_requested,
        )
        self._check_cancelled(job)

        sessions = sampling.sessions
        job.update(
            sessions_found=len(sessions),
            total_sessions=len(sessions),
            sampling={
                "windows_searched": [window.label for window in sampling.time_windows],
                "total_found": sampling.total_found,
                "successful_queries": sampling.successful_queries,
                "failed_queries": sampling.failed_queries,
            },
        )
        if not sessions:
            print(f"⚠️  No sessions found for job {job.job_id}; completing with an empty result")

        # Phase 2: batch classification
        classifier = BatchClassifier(provider, model_info, self.batch_config, rate_limiter, sleep=self.sleep)
        batches = classifier.plan_batches(sessions)
        job.update(phase=PHASE_ANALYZING, total_batches=len(batches),
                   current_step=f"Classifying {len(sessions)} sessions in {len(batches)} batches")
        classified = self._classify_batches(job, classifier, batches, sessions)
        self._check_cancelled(job)

        # Phase 3: conflict resolution
        job.update(phase=PHASE_CONFLICT_RESOLUTION, sub_phase=None, eta_seconds=None,
                   current_step="Resolving classification conflicts")
        engine = ConflictResolutionEngine(provider, model_info, self.conflict_config, rate_limiter)
        resolution = engine.resolve_conflicts(classified)
        job.add_usage(resolution.token_usage)
        job.update(conflict_stats=resolution.stats)
        self._check_cancelled(job)

        # Phase 4: summary
        job.update(phase=PHASE_GENERATING_SUMMARY, current_step="Generating analysis summary")
        summary = None
        try:
            summary = self.summary_generator.generate(resolution.resolved_sessions)
        except Exception as e:
            print(f"⚠️  Summary generation failed for job {job.job_id}, continuing without summary: {e}")

        job.complete(resolution.resolved_sessions, summary)

    def _classify_batches(self, job: AnalysisJob, classifier: BatchClassifier,
                          batches: List[List[SessionRecord]],
                          sessions: List[SessionRecord]) -> List[ClassifiedSession]:
        vocabulary = ClassificationVocabulary()
        classified: List[ClassifiedSession] = []
        context = job.config.additional_context

        discovery_count = min(self.batch_config.discovery_batches, len(batches))
        if discovery_count:
            job.update(sub_phase=SUB_PHASE_DISCOVERY,
                       current_step=f"Discovery: classifying {discovery_count} batch(es) to seed classifications")
        for batch_number, batch in enumerate(batches[:discovery_count], start=1):
            self._check_cancelled(job)
            result = classifier.classify_batch(batch, vocabulary.copy(), batch_number, context)
            self._absorb(job, result, classified, vocabulary)

        remaining = batches[discovery_count:]
        if remaining:
            job.update(sub_phase=SUB_PHASE_PARALLEL,
                       current_step=f"Classifying {len(remaining)} batches with {self.batch_config.max_workers} workers")
            self._classify_in_parallel(job, classifier, remaining, discovery_count + 1, vocabulary, classified)

        order = {session.session_id: index for index, session in enumerate(sessions)}
        classified.sort(key=lambda s: order.get(s.session_id, len(order)))
        print(f"📦 Batch classification finished: {len(classified)}/{len(sessions)} sessions classified")
        return classified

    def _classify_in_parallel(self, job: AnalysisJob, classifier: BatchClassifier,
                              batches: List[List[SessionRecord]], first_batch_number: int,
                              vocabulary: ClassificationVocabulary,
                              classified: List[ClassifiedSession]) -> None:
        """Keep at most max_workers batches in flight, dispatching with the current vocabulary"""
        max_workers = max(self.batch_config.max_workers, 1)
        pending = iter(enumerate(batches, start=first_batch_number))
        in_flight = set()

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"batch-{job.job_id[:8]}") as executor:
            while True:
                while len(in_flight) < max_workers and not job.is_cancel_requested():
                    next_batch = next(pending, None)
                    if next_batch is None:
                        break
                    batch_number, batch = next_batch
                    in_flight.add(executor.submit(
                        classifier.classify_batch, batch, vocabulary.copy(), batch_number, job.config.additional_context
                    ))

                if not in_flight:
                    break

                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    self._absorb(job, future.result(), classified, vocabulary)

        self._check_cancelled(job)

    def _absorb(self, job: AnalysisJob, result: BatchResult, classified: List[ClassifiedSession],
                vocabulary: ClassificationVocabulary) -> None:
        classified.extend(result.classified)
        for session in result.classified:
            vocabulary.add_facts(session.facts)
        job.record_batch(result)
