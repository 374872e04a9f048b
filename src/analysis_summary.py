#!/usr/bin/env python3
"""
Analysis Summary

Aggregate statistics over a finished, canonicalized result set: outcome
rates, intent / transfer reason / drop-off breakdowns, and a few sample
transcripts picked with a seeded generator so reruns pick the same ones.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from session_models import OUTCOME_CONTAINED, OUTCOME_TRANSFER, ClassifiedSession

RESULT_COLUMNS = [
    "session_id", "user_id", "containment_type", "start_time", "message_count", "duration_seconds",
    "general_intent", "session_outcome", "transfer_reason", "drop_off_location",
    "notes", "batch_number", "tokens_used",
]

EXCERPT_MAX_CHARS = 1000


@dataclass
class AnalysisStatistics:
    total_sessions: int = 0
    transfer_count: int = 0
    contained_count: int = 0
    transfer_rate: float = 0.0
    containment_rate: float = 0.0
    average_messages_per_session: float = 0.0
    average_duration_seconds: float = 0.0
    intent_breakdown: Dict[str, int] = field(default_factory=dict)
    transfer_reason_breakdown: Dict[str, int] = field(default_factory=dict)
    drop_off_breakdown: Dict[str, int] = field(default_factory=dict)


@dataclass
class AnalysisSummary:
    statistics: AnalysisStatistics
    sample_transcripts: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        stats = self.statistics
        return {
            "statistics": {
                "total_sessions": stats.total_sessions,
                "transfer_count": stats.transfer_count,
                "contained_count": stats.contained_count,
                "transfer_rate": stats.transfer_rate,
                "containment_rate": stats.containment_rate,
                "average_messages_per_session": stats.average_messages_per_session,
                "average_duration_seconds": stats.average_duration_seconds,
                "intent_breakdown": stats.intent_breakdown,
                "transfer_reason_breakdown": stats.transfer_reason_breakdown,
                "drop_off_breakdown": stats.drop_off_breakdown,
            },
            "sample_transcripts": self.sample_transcripts,
            "generated_at": self.generated_at.isoformat(),
        }


def build_results_dataframe(sessions: List[ClassifiedSession]) -> pd.DataFrame:
    """One row per classified session"""
    rows = [
        {
            "session_id": s.session_id,
            "user_id": s.session.user_id,
            "containment_type": s.session.containment_type,
            "start_time": s.session.start_time,
            "message_count": len(s.session.messages),
            "duration_seconds": s.session.duration_seconds,
            "general_intent": s.facts.general_intent,
            "session_outcome": s.facts.session_outcome,
            "transfer_reason": s.facts.transfer_reason,
            "drop_off_location": s.facts.drop_off_location,
            "notes": s.facts.notes,
            "batch_number": s.metadata.batch_number,
            "tokens_used": s.metadata.tokens_used,
        }
        for s in sessions
    ]
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def _breakdown(series: pd.Series) -> Dict[str, int]:
    series = series[series.str.strip() != ""]
    return {str(label): int(count) for label, count in series.value_counts().items()}


def compute_statistics(df: pd.DataFrame) -> AnalysisStatistics:
    total = len(df)
    if total == 0:
        return AnalysisStatistics()

    transferred = df[df["session_outcome"] == OUTCOME_TRANSFER]
    transfer_count = len(transferred)
    contained_count = int((df["session_outcome"] == OUTCOME_CONTAINED).sum())

    return AnalysisStatistics(
        total_sessions=total,
        transfer_count=transfer_count,
        contained_count=contained_count,
        transfer_rate=round(transfer_count / total, 4),
        containment_rate=round(contained_count / total, 4),
        average_messages_per_session=round(float(df["message_count"].mean()), 2),
        average_duration_seconds=round(float(df["duration_seconds"].mean()), 2),
        intent_breakdown=_breakdown(df["general_intent"]),
        transfer_reason_breakdown=_breakdown(transferred["transfer_reason"]),
        drop_off_breakdown=_breakdown(transferred["drop_off_location"]),
    )


def select_sample_transcripts(sessions: List[ClassifiedSession], count: int,
                              seed: Optional[int] = None) -> List[Dict[str, Any]]:
    """Pick up to count sessions at random and return their transcript excerpts"""
    rng = random.Random(seed)
    picked = rng.sample(sessions, min(count, len(sessions)))

    samples = []
    for session in picked:
        transcript = session.session.format_transcript()
        if len(transcript) > EXCERPT_MAX_CHARS:
            transcript = transcript[:EXCERPT_MAX_CHARS] + "..."
        samples.append({
            "session_id": session.session_id,
            "facts": session.facts.to_dict(),
            "transcript": transcript,
        })
    return samples


class StatisticsSummaryGenerator:
    """Summary step run after conflict resolution"""

    def __init__(self, sample_count: int = 5, seed: Optional[int] = 0):
        self.sample_count = sample_count
        self.seed = seed

    def generate(self, sessions: List[ClassifiedSession]) -> AnalysisSummary:
        df = build_results_dataframe(sessions)
        statistics = compute_statistics(df)
        print(f"📊 Summary: {statistics.total_sessions} sessions, "
              f"{statistics.transfer_rate:.1%} transferred, {len(statistics.intent_breakdown)} intents")
        return AnalysisSummary(
            statistics=statistics,
            sample_transcripts=select_sample_transcripts(sessions, self.sample_count, self.seed),
        )
