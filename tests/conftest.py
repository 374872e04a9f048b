"""Shared fixtures and fakes for the auto-analyze test suite."""
import json
import os
import re
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path so the flat modules import by name
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))
os.environ["AUTO_ANALYZE_CONFIG"] = str(PROJECT_ROOT / "config.json")

from config_manager import ConfigManager  # noqa: E402
from llm_provider import LLMProvider, LLMResponse  # noqa: E402
from session_models import (  # noqa: E402
    AnalysisMetadata,
    ClassifiedSession,
    Facts,
    SessionRecord,
    TranscriptMessage,
)
from session_source import SessionSource, SourceMessage  # noqa: E402

SESSION_ID_PATTERN = re.compile(r'^Session ID: (.+)$', re.MULTILINE)

BASE_TIME = datetime(2025, 1, 15, 14, 0, tzinfo=timezone.utc)  # 09:00 America/New_York


def make_session(session_id, start=None, containment_type="agent", message_count=4, messages=None, user_id=None):
    start = start or BASE_TIME
    return SessionRecord(
        session_id=session_id,
        user_id=user_id or f"user-{session_id}",
        start_time=start,
        end_time=start + timedelta(minutes=5),
        containment_type=containment_type,
        message_count=message_count,
        messages=list(messages or []),
    )


def make_classified(session_id, general_intent, session_outcome="Transfer", transfer_reason="", drop_off_location="",
                    batch_number=1):
    if session_outcome == "Transfer":
        transfer_reason = transfer_reason or "Live Agent Request"
        drop_off_location = drop_off_location or "Help Offer Prompt"
    return ClassifiedSession(
        session=make_session(session_id),
        facts=Facts(
            general_intent=general_intent,
            session_outcome=session_outcome,
            transfer_reason=transfer_reason,
            drop_off_location=drop_off_location,
            notes=f"Session {session_id}",
        ),
        metadata=AnalysisMetadata(tokens_used=10, batch_number=batch_number, model="gpt-4o-mini",
                                  timestamp=datetime(2025, 1, 15, 12, 0)),
    )


def default_classification(session_id):
    return {
        "session_id": session_id,
        "general_intent": "Claim Status",
        "session_outcome": "Contained",
        "transfer_reason": "",
        "drop_off_location": "",
        "notes": "User checked a claim.",
    }


def _encode(payload):
    """Raw strings and None pass through; a list is wrapped as the sessions array"""
    if payload is None or isinstance(payload, str):
        return payload
    if isinstance(payload, list):
        payload = {"sessions": payload}
    return json.dumps(payload)


class FakeProvider(LLMProvider):
    """Scripted provider: answers classification and canonicalization calls from callables"""

    provider_name = "fake"
    model = "fake-model"

    def __init__(self, classify=None, resolve=None, input_tokens=100, output_tokens=50):
        self.classify = classify or (lambda session_ids, prompt: [default_classification(s) for s in session_ids])
        self.resolve = resolve or (lambda prompt: {"generalIntents": [], "transferReasons": [], "dropOffLocations": []})
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls = []
        self._lock = threading.Lock()

    def call_function(self, system_message, prompt, function_schema):
        with self._lock:
            self.calls.append(function_schema["name"])
        if function_schema["name"] == "analyze_sessions_batch":
            session_ids = SESSION_ID_PATTERN.findall(prompt)
            payload = self.classify(session_ids, prompt)
        else:
            payload = self.resolve(prompt)
        return LLMResponse(
            content="",
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=self.model,
            provider=self.provider_name,
            processing_time=0.0,
            tool_arguments=_encode(payload),
        )

    def count_tokens(self, text):
        return len(text.split())

    def is_available(self):
        return True

    def count(self, name):
        with self._lock:
            return self.calls.count(name)


class InMemorySessionSource(SessionSource):
    """Session source over plain lists, with optional per-type failures"""

    def __init__(self, sessions=None, messages=None, failing_types=(), fail_messages=False, fail_from_skip=None):
        self.sessions = list(sessions or [])
        self.fail_from_skip = fail_from_skip
        self.messages = list(messages or [])
        self.failing_types = set(failing_types)
        self.fail_messages = fail_messages
        self.session_queries = []
        self._lock = threading.Lock()

    def list_sessions(self, containment_type, date_from, date_to, skip=0, limit=1000):
        with self._lock:
            self.session_queries.append((containment_type, date_from, date_to, skip, limit))
        if containment_type in self.failing_types:
            raise ConnectionError(f"{containment_type} endpoint unavailable")
        if self.fail_from_skip is not None and skip >= self.fail_from_skip:
            raise TimeoutError(f"{containment_type} page at offset {skip} timed out")
        matching = sorted(
            (s for s in self.sessions
             if s.containment_type == containment_type and date_from <= s.start_time < date_to),
            key=lambda s: s.start_time,
        )
        return matching[skip:skip + limit]

    def list_messages(self, session_ids, date_from, date_to):
        if self.fail_messages:
            raise TimeoutError("message endpoint timed out")
        wanted = set(session_ids)
        return [m for m in self.messages if m.session_id in wanted and date_from <= m.timestamp <= date_to]


@pytest.fixture
def config_manager():
    return ConfigManager(str(PROJECT_ROOT / "config.json"))


@pytest.fixture
def model_info(config_manager):
    return config_manager.get_model_info("gpt-4o-mini")


@pytest.fixture
def fake_provider():
    return FakeProvider()


def transcript(session_id, start, *turns):
    """SourceMessages alternating from the given (role, text) turns, 10 seconds apart"""
    return [
        SourceMessage(session_id=session_id, timestamp=start + timedelta(seconds=10 * i), role=role, text=text)
        for i, (role, text) in enumerate(turns)
    ]


def transcript_messages(start, *turns):
    return [
        TranscriptMessage(timestamp=start + timedelta(seconds=10 * i), role=role, text=text)
        for i, (role, text) in enumerate(turns)
    ]

