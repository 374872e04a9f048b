"""Tests for adaptive time-window session sampling."""
from datetime import datetime, timedelta, timezone

import pytest

from config_manager import SamplingConfig
from conftest import BASE_TIME, InMemorySessionSource, make_session, transcript
from session_sampler import SessionSampler, SessionSamplingError


def sessions_at(prefix, hours_offsets, containment_type="agent", message_count=4):
    return [
        make_session(f"{prefix}{i}", start=BASE_TIME + timedelta(hours=offset),
                     containment_type=containment_type, message_count=message_count)
        for i, offset in enumerate(hours_offsets)
    ]


class TestTimeWindows:
    """Test window generation and timezone anchoring."""

    def test_window_schedule(self):
        sampler = SessionSampler(InMemorySessionSource(), config=SamplingConfig())
        windows = sampler.generate_time_windows(BASE_TIME)
        assert [w.duration_hours for w in windows] == [3, 6, 12, 144]
        assert all(w.start == BASE_TIME for w in windows)
        assert windows[-1].end == BASE_TIME + timedelta(days=6)
        assert windows[-1].label == "6-day window"

    def test_max_attempts_limits_windows(self):
        sampler = SessionSampler(InMemorySessionSource(), config=SamplingConfig(max_attempts=2))
        assert len(sampler.generate_time_windows(BASE_TIME)) == 2

    def test_start_interpreted_in_eastern_time(self):
        sampler = SessionSampler(InMemorySessionSource(), config=SamplingConfig())
        assert sampler.resolve_start("2025-01-15", "09:00") == BASE_TIME
        assert sampler.resolve_start("2025-07-15", "09:00") == datetime(2025, 7, 15, 13, 0, tzinfo=timezone.utc)


class TestSampleSessions:
    """Test discovery, deduplication and capping."""

    def test_target_reached_in_first_window(self):
        source = InMemorySessionSource(sessions_at("a", [0.5, 0.1, 1, 1.5, 2, 2.5]))
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(5, "2025-01-15", "09:00")

        assert len(result.sessions) == 5
        assert [s.session_id for s in result.sessions] == ["a1", "a0", "a2", "a3", "a4"]
        assert len(result.time_windows) == 1
        assert len(source.session_queries) == 3

    def test_window_widens_and_queries_only_new_slice(self):
        source = InMemorySessionSource(sessions_at("a", [1, 2]) + sessions_at("b", [4, 5], containment_type="dropOff"))
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(4, "2025-01-15", "09:00")

        assert {s.session_id for s in result.sessions} == {"a0", "a1", "b0", "b1"}
        assert [w.duration_hours for w in result.time_windows] == [3, 6]
        second_slice = {(q[1], q[2]) for q in source.session_queries[3:]}
        assert second_slice == {(BASE_TIME + timedelta(hours=3), BASE_TIME + timedelta(hours=6))}

    def test_never_exceeds_target_and_no_duplicates(self):
        shared = sessions_at("dup", [1])
        duplicate = make_session("dup0", start=shared[0].start_time, containment_type="selfService")
        source = InMemorySessionSource(shared + [duplicate] + sessions_at("c", [1, 2, 2.5], containment_type="dropOff"))
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(3, "2025-01-15", "09:00")
        ids = [s.session_id for s in result.sessions]

        assert len(ids) == 3
        assert len(set(ids)) == len(ids)

    def test_partial_satisfaction_returns_what_was_found(self):
        source = InMemorySessionSource(sessions_at("a", [1, 50]))
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(10, "2025-01-15", "09:00")

        assert [s.session_id for s in result.sessions] == ["a0", "a1"]
        assert len(result.time_windows) == 4

    def test_sessions_below_message_minimum_discarded(self):
        source = InMemorySessionSource(sessions_at("a", [1]) + sessions_at("short", [1.5], message_count=1))
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(5, "2025-01-15", "09:00")

        assert [s.session_id for s in result.sessions] == ["a0"]

    def test_zero_sessions_is_not_an_error(self):
        sampler = SessionSampler(InMemorySessionSource(), config=SamplingConfig())
        result = sampler.sample_sessions(5, "2025-01-15", "09:00")
        assert result.sessions == []
        assert result.failed_queries == 0

    def test_pagination_respects_max_pages(self):
        source = InMemorySessionSource(sessions_at("a", [0.1, 0.2, 0.3, 0.4, 0.5]))
        sampler = SessionSampler(source, config=SamplingConfig(page_size=2, max_pages=2, max_attempts=1))

        result = sampler.sample_sessions(10, "2025-01-15", "09:00")

        assert len(result.sessions) == 4

    def test_progress_never_reports_more_than_target(self):
        source = InMemorySessionSource(sessions_at("a", [0.5, 1, 1.5, 2, 2.5, 2.8]))
        sampler = SessionSampler(source, config=SamplingConfig())
        reported = []

        result = sampler.sample_sessions(3, "2025-01-15", "09:00",
                                         progress_callback=lambda found, window: reported.append(found))

        assert reported == [3]
        assert len(result.sessions) == 3
        assert result.total_found == 6

    def test_should_stop_halts_search(self):
        source = InMemorySessionSource(sessions_at("a", [1]))
        sampler = SessionSampler(source, config=SamplingConfig())
        result = sampler.sample_sessions(5, "2025-01-15", "09:00", should_stop=lambda: True)
        assert result.sessions == []
        assert source.session_queries == []


class TestSamplingFailures:
    """Test tolerance of session source errors."""

    def test_one_containment_type_failing_is_tolerated(self):
        source = InMemorySessionSource(sessions_at("s", [1, 2], containment_type="selfService"), failing_types={"agent"})
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(2, "2025-01-15", "09:00")

        assert {s.session_id for s in result.sessions} == {"s0", "s1"}
        assert result.failed_queries == 1
        assert result.successful_queries == 2

    def test_later_page_failure_keeps_fetched_pages(self):
        source = InMemorySessionSource(sessions_at("a", [0.1, 0.2, 0.3, 0.4, 0.5]), fail_from_skip=2)
        sampler = SessionSampler(source, config=SamplingConfig(page_size=2, max_pages=3, max_attempts=1))

        result = sampler.sample_sessions(10, "2025-01-15", "09:00")

        assert [s.session_id for s in result.sessions] == ["a0", "a1"]
        assert result.failed_queries == 1
        assert result.successful_queries == 2

    def test_every_query_failing_raises(self):
        source = InMemorySessionSource(failing_types={"agent", "selfService", "dropOff"})
        sampler = SessionSampler(source, config=SamplingConfig())
        with pytest.raises(SessionSamplingError):
            sampler.sample_sessions(5, "2025-01-15", "09:00")


class TestTranscripts:
    """Test message fetch and normalization for selected sessions."""

    def test_transcripts_attached_and_normalized(self):
        session = sessions_at("a", [1])[0]
        messages = transcript("a0", session.start_time,
                              ("user", "Welcome Task"), ("bot", "How can I help?"), ("user", "Claim status"))
        source = InMemorySessionSource([session], messages)
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(1, "2025-01-15", "09:00")

        assert [m.text for m in result.sessions[0].messages] == ["How can I help?", "Claim status"]

    def test_message_fetch_failure_keeps_sessions(self):
        source = InMemorySessionSource(sessions_at("a", [1]), fail_messages=True)
        sampler = SessionSampler(source, config=SamplingConfig())

        result = sampler.sample_sessions(1, "2025-01-15", "09:00")

        assert [s.session_id for s in result.sessions] == ["a0"]
        assert result.sessions[0].messages == []
