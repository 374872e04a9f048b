#!/usr/bin/env python3
"""
Session Sampler

Discovers enough sessions for an analysis job by searching a time window
anchored at the requested start time and widening it (3h, 6h, 12h, 6 days)
until the target count is reached or the search budget runs out.

Each widening only queries the newly covered slice. The three containment
types are queried concurrently and merged, deduplicated by session id.
Transcripts are fetched once, for the selected sessions only.
"""

import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd

from config_manager import SamplingConfig, get_sampling_config
from session_models import SessionRecord, TranscriptMessage
from session_source import SessionSource
from transcript_normalizer import TranscriptNormalizer


class SessionSamplingError(RuntimeError):
    """Every session source query failed"""


@dataclass
class TimeWindow:
    start: datetime
    end: datetime
    duration_hours: float
    label: str


@dataclass
class SamplingResult:
    sessions: List[SessionRecord]
    time_windows: List[TimeWindow] = field(default_factory=list)
    total_found: int = 0
    successful_queries: int = 0
    failed_queries: int = 0


def localize_start(start_date: str, start_time: str, timezone: str) -> pd.Timestamp:
    """Interpret a local date and HH:MM time in the given timezone"""
    local = pd.Timestamp(f"{start_date} {start_time}")
    return local.tz_localize(timezone, ambiguous=True, nonexistent="shift_forward")


def _window_label(hours: float) -> str:
    if hours >= 24 and hours % 24 == 0:
        days = int(hours // 24)
        return f"{days}-day window"
    return f"{hours:g}-hour window"


class SessionSampler:
    """Adaptive time-window search over a session source"""

    def __init__(self, source: SessionSource, normalizer: Optional[TranscriptNormalizer] = None,
                 config: Optional[SamplingConfig] = None):
        self.source = source
        self.normalizer = normalizer or TranscriptNormalizer()
        self.config = config or get_sampling_config()

    def resolve_start(self, start_date: str, start_time: str) -> datetime:
        """Interpret a local date/time in the configured timezone, returned in UTC"""
        local = localize_start(start_date, start_time, self.config.timezone)
        return local.tz_convert("UTC").to_pydatetime()

    def generate_time_windows(self, start: datetime) -> List[TimeWindow]:
        hours_schedule = [h for h in self.config.window_hours if h <= self.config.max_window_hours]
        return [
            TimeWindow(start=start, end=start + timedelta(hours=hours), duration_hours=hours,
                       label=_window_label(hours))
            for hours in hours_schedule[:self.config.max_attempts]
        ]

    def sample_sessions(self, target_count: int, start_date: str, start_time: str,
                        progress_callback: Optional[Callable[[int, TimeWindow], None]] = None,
                        should_stop: Optional[Callable[[], bool]] = None) -> SamplingResult:
        start = self.resolve_start(start_date, start_time)
        print(f"🔍 Sampling {target_count} sessions from {start_date} {start_time} ({self.config.timezone})")

        found: Dict[str, SessionRecord] = {}
        result = SamplingResult(sessions=[])
        queried_until = start
        sampling_start = time.time()

        for window in self.generate_time_windows(start):
            if should_stop is not None and should_stop():
                print("  ⚠️  Sampling stopped early")
                break
            if window.end <= queried_until:
                continue

            print(f"  Searching {window.label} ({queried_until.isoformat()} → {window.end.isoformat()})")
            new_sessions = self._query_slice(queried_until, window.end, window.label, result)
            for session in new_sessions:
                if session.message_count < self.config.min_messages_per_session:
                    continue
                if session.session_id not in found:
                    found[session.session_id] = session

            queried_until = window.end
            result.time_windows.append(window)
            print(f"  {len(found)} unique sessions after {window.label}")
            if progress_callback is not None:
                progress_callback(min(len(found), target_count), window)

            if len(found) >= target_count:
                break

        if not found and result.successful_queries == 0 and result.failed_queries > 0:
            raise SessionSamplingError(
                f"All {result.failed_queries} session source queries failed; no sessions could be sampled"
            )

        selected = sorted(found.values(), key=lambda s: s.start_time)[:target_count]
        self._attach_transcripts(selected)

        result.sessions = selected
        result.total_found = len(found)

        if len(selected) < target_count:
            print(f"  ⚠️  Found {len(selected)} of {target_count} requested sessions")
        print(f"✅ Sampling complete: {len(selected)} sessions in {time.time() - sampling_start:.2f}s")
        return result

    def _query_slice(self, date_from: datetime, date_to: datetime, label: str,
                     result: SamplingResult) -> List[SessionRecord]:
        """Query every containment type for one slice, tolerating per-type failures"""
        sessions = []
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {
                containment_type: executor.submit(self._query_containment_type, containment_type, date_from, date_to)
                for containment_type in self.config.containment_types
            }
            # Merge in containment type order so dedup is deterministic
            for containment_type, future in futures.items():
                try:
                    page, page_error = future.result()
                except Exception as e:
                    result.failed_queries += 1
                    print(f"  ❌ Session query failed for {containment_type} in {label}: {e}")
                    continue
                if page_error is not None:
                    result.failed_queries += 1
                    print(f"  ⚠️  Session query for {containment_type} in {label} stopped after "
                          f"{len(page)} sessions: {page_error}")
                else:
                    result.successful_queries += 1
                sessions.extend(page)
        return sessions

    def _query_containment_type(self, containment_type: str, date_from: datetime,
                                date_to: datetime) -> Tuple[List[SessionRecord], Optional[Exception]]:
        """Page through one containment type; a failure after the first page keeps what was fetched"""
        sessions = []
        for page_number in range(self.config.max_pages):
            try:
                page = self.source.list_sessions(
                    containment_type, date_from, date_to,
                    skip=page_number * self.config.page_size,
                    limit=self.config.page_size
                )
            except Exception as e:
                if page_number == 0:
                    raise
                return sessions, e
            sessions.extend(page)
            if len(page) < self.config.page_size:
                break
        return sessions, None

    def _attach_transcripts(self, sessions: List[SessionRecord]) -> None:
        """Fetch and normalize transcripts for the selected sessions"""
        if not sessions:
            return

        buffer = timedelta(hours=self.config.message_buffer_hours)
        date_from = min(s.start_time for s in sessions) - buffer
        date_to = max(s.end_time for s in sessions) + buffer

        try:
            raw_messages = self.source.list_messages([s.session_id for s in sessions], date_from, date_to)
        except Exception as e:
            print(f"  ⚠️  Message fetch failed, continuing with empty transcripts: {e}")
            return

        by_session = defaultdict(list)
        for message in raw_messages:
            by_session[message.session_id].append(
                TranscriptMessage(timestamp=message.timestamp, role=message.role, text=message.text)
            )

        for session in sessions:
            messages = sorted(by_session.get(session.session_id, []), key=lambda m: m.timestamp)
            session.messages = self.normalizer.normalize_messages(messages)
