#!/usr/bin/env python3
"""
Session Source

Capability interface for whatever system stores bot sessions and transcripts,
plus a pandas-backed implementation that serves CSV exports or in-memory
DataFrames. The source partitions sessions by containment type, so callers
query each type separately and merge.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

import pandas as pd

from session_models import CONTAINMENT_TYPES, SessionRecord

SESSION_COLUMNS = ["session_id", "user_id", "start_time", "end_time", "containment_type", "message_count"]
MESSAGE_COLUMNS = ["session_id", "timestamp", "message_type", "message"]


@dataclass
class SourceMessage:
    """Raw transcript message as stored by the source, before normalization"""
    session_id: str
    timestamp: datetime
    role: str
    text: str


class SessionSource(ABC):
    """Abstract base class for session stores"""

    @abstractmethod
    def list_sessions(self, containment_type: str, date_from: datetime, date_to: datetime,
                      skip: int = 0, limit: int = 1000) -> List[SessionRecord]:
        """One page of session metadata of one containment type, ordered by start time"""
        pass

    @abstractmethod
    def list_messages(self, session_ids: Sequence[str], date_from: datetime,
                      date_to: datetime) -> List[SourceMessage]:
        """Transcript messages of the given sessions within the date range"""
        pass


def _to_utc(value: datetime) -> pd.Timestamp:
    timestamp = pd.Timestamp(value)
    if timestamp.tzinfo is None:
        return timestamp.tz_localize("UTC")
    return timestamp.tz_convert("UTC")


class DataFrameSessionSource(SessionSource):
    """Serves sessions and messages from pandas DataFrames"""

    def __init__(self, sessions: pd.DataFrame, messages: Optional[pd.DataFrame] = None):
        missing = [col for col in SESSION_COLUMNS if col not in sessions.columns and col not in ("user_id", "message_count")]
        if missing:
            raise ValueError(f"Sessions data is missing required columns: {missing}")

        self.sessions = sessions.copy()
        self.sessions["session_id"] = self.sessions["session_id"].astype(str)
        if "user_id" not in self.sessions.columns:
            self.sessions["user_id"] = ""
        self.sessions["user_id"] = self.sessions["user_id"].fillna("").astype(str)
        self.sessions["start_time"] = pd.to_datetime(self.sessions["start_time"], utc=True)
        self.sessions["end_time"] = pd.to_datetime(self.sessions["end_time"], utc=True)

        if messages is None:
            messages = pd.DataFrame(columns=MESSAGE_COLUMNS)
        missing = [col for col in MESSAGE_COLUMNS if col not in messages.columns]
        if missing:
            raise ValueError(f"Messages data is missing required columns: {missing}")

        self.messages = messages.copy()
        self.messages["session_id"] = self.messages["session_id"].astype(str)
        self.messages["timestamp"] = pd.to_datetime(self.messages["timestamp"], utc=True)
        self.messages["message"] = self.messages["message"].fillna("").astype(str)

        if "message_count" not in self.sessions.columns:
            counts = self.messages.groupby("session_id").size()
            self.sessions["message_count"] = self.sessions["session_id"].map(counts)
        self.sessions["message_count"] = self.sessions["message_count"].fillna(0).astype(int)

    @classmethod
    def from_csv(cls, sessions_csv: str, messages_csv: Optional[str] = None) -> "DataFrameSessionSource":
        """Load a source from CSV exports"""
        print(f"📁 Loading sessions from: {sessions_csv}")
        sessions = pd.read_csv(sessions_csv)
        messages = None
        if messages_csv:
            print(f"📁 Loading messages from: {messages_csv}")
            messages = pd.read_csv(messages_csv)
        source = cls(sessions, messages)
        print(f"  Loaded {len(source.sessions)} sessions, {len(source.messages)} messages")
        return source

    def list_sessions(self, containment_type: str, date_from: datetime, date_to: datetime,
                      skip: int = 0, limit: int = 1000) -> List[SessionRecord]:
        if containment_type not in CONTAINMENT_TYPES:
            raise ValueError(f"Unknown containment type: {containment_type}")

        df = self.sessions
        mask = (
            (df["containment_type"] == containment_type)
            & (df["start_time"] >= _to_utc(date_from))
            & (df["start_time"] < _to_utc(date_to))
        )
        page = df[mask].sort_values("start_time", kind="stable").iloc[skip:skip + limit]

        return [
            SessionRecord(
                session_id=row.session_id,
                user_id=row.user_id,
                start_time=row.start_time.to_pydatetime(),
                end_time=row.end_time.to_pydatetime(),
                containment_type=row.containment_type,
                message_count=int(row.message_count),
            )
            for row in page.itertuples(index=False)
        ]

    def list_messages(self, session_ids: Sequence[str], date_from: datetime,
                      date_to: datetime) -> List[SourceMessage]:
        df = self.messages
        mask = (
            df["session_id"].isin(list(session_ids))
            & (df["timestamp"] >= _to_utc(date_from))
            & (df["timestamp"] <= _to_utc(date_to))
        )
        rows = df[mask].sort_values(["session_id", "timestamp"], kind="stable")

        return [
            SourceMessage(
                session_id=row.session_id,
                timestamp=row.timestamp.to_pydatetime(),
                role=row.message_type,
                text=row.message,
            )
            for row in rows.itertuples(index=False)
        ]
