#!/usr/bin/env python3
"""
Session Data Model

Dataclasses shared by every stage of the auto-analyze pipeline:
sessions and their transcripts as returned by a session source, the facts the
LLM extracts for each session, and the vocabulary of labels observed so far.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

CONTAINMENT_TYPES = ("agent", "selfService", "dropOff")

OUTCOME_TRANSFER = "Transfer"
OUTCOME_CONTAINED = "Contained"
SESSION_OUTCOMES = (OUTCOME_TRANSFER, OUTCOME_CONTAINED)

# Facts attribute -> key used in LLM payloads
CATEGORY_FIELDS = {
    "general_intent": "generalIntents",
    "transfer_reason": "transferReasons",
    "drop_off_location": "dropOffLocations",
}


@dataclass
class TranscriptMessage:
    timestamp: datetime
    role: str  # "user" or "bot"
    text: str


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    containment_type: str
    message_count: int = 0
    messages: List[TranscriptMessage] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return max((self.end_time - self.start_time).total_seconds(), 0.0)

    def transcript_length(self) -> int:
        """Total characters across all transcript messages"""
        return sum(len(msg.text) for msg in self.messages)

    def format_transcript(self) -> str:
        return "\n".join(f"{msg.role}: {msg.text}" for msg in self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "containment_type": self.containment_type,
            "message_count": self.message_count,
            "messages": [
                {"timestamp": msg.timestamp.isoformat(), "role": msg.role, "text": msg.text}
                for msg in self.messages
            ],
        }


@dataclass(frozen=True)
class Facts:
    """Structured classification of one session"""
    general_intent: str
    session_outcome: str
    transfer_reason: str = ""
    drop_off_location: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "generalIntent": self.general_intent,
            "sessionOutcome": self.session_outcome,
            "transferReason": self.transfer_reason,
            "dropOffLocation": self.drop_off_location,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class AnalysisMetadata:
    tokens_used: int
    batch_number: int
    model: str
    timestamp: datetime
    processing_time: float = 0.0


@dataclass(frozen=True)
class ClassifiedSession:
    session: SessionRecord
    facts: Facts
    metadata: AnalysisMetadata

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def with_facts(self, facts: Facts) -> "ClassifiedSession":
        return replace(self, facts=facts)

    def to_dict(self) -> Dict[str, Any]:
        data = self.session.to_dict()
        data["facts"] = self.facts.to_dict()
        data["analysis_metadata"] = {
            "tokens_used": self.metadata.tokens_used,
            "batch_number": self.metadata.batch_number,
            "model": self.metadata.model,
            "timestamp": self.metadata.timestamp.isoformat(),
            "processing_time": self.metadata.processing_time,
        }
        return data


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    model: str = ""

    def add(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cost=self.cost + other.cost,
            model=other.model or self.model,
        )


@dataclass
class ClassificationVocabulary:
    """Observed label values per classification category"""
    general_intent: Set[str] = field(default_factory=set)
    transfer_reason: Set[str] = field(default_factory=set)
    drop_off_location: Set[str] = field(default_factory=set)

    @classmethod
    def from_sessions(cls, sessions: Iterable[ClassifiedSession]) -> "ClassificationVocabulary":
        vocabulary = cls()
        for session in sessions:
            vocabulary.add_facts(session.facts)
        return vocabulary

    def add_facts(self, facts: Facts) -> None:
        for category in CATEGORY_FIELDS:
            value = getattr(facts, category).strip()
            if value:
                getattr(self, category).add(value)

    def values(self, category: str) -> List[str]:
        return sorted(getattr(self, category))

    def copy(self) -> "ClassificationVocabulary":
        return ClassificationVocabulary(
            general_intent=set(self.general_intent),
            transfer_reason=set(self.transfer_reason),
            drop_off_location=set(self.drop_off_location),
        )

    def total_size(self) -> int:
        return len(self.general_intent) + len(self.transfer_reason) + len(self.drop_off_location)


def normalize_facts(general_intent: str, session_outcome: str, transfer_reason: Optional[str],
                    drop_off_location: Optional[str], notes: Optional[str]) -> Facts:
    """Build Facts with transfer fields present only for transferred sessions"""
    general_intent = (general_intent or "").strip() or "Unknown"
    transfer_reason = (transfer_reason or "").strip()
    drop_off_location = (drop_off_location or "").strip()

    if session_outcome == OUTCOME_CONTAINED:
        transfer_reason = ""
        drop_off_location = ""
    else:
        transfer_reason = transfer_reason or "Unknown"
        drop_off_location = drop_off_location or "Unknown"

    return Facts(
        general_intent=general_intent,
        session_outcome=session_outcome,
        transfer_reason=transfer_reason,
        drop_off_location=drop_off_location,
        notes=(notes or "").strip(),
    )
