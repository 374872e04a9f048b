#!/usr/bin/env python3
"""
Transcript Normalizer

Cleans raw bot platform message bodies before they reach the LLM:
1. Extracts spoken text from JSON bot payloads ("say.text")
2. Strips SSML markup (speak, prosody, break, emphasis, say-as)
3. Decodes HTML entities
4. Replaces MAX_NO_INPUT user turns with "<User is silent>"
5. Drops "Welcome Task" user turns and hangup redirect commands
6. Drops the idle-timeout closing message when it arrives long after the previous turn
"""

import html
import json
import re
from dataclasses import dataclass, replace
from typing import Any, List, Optional

from session_models import TranscriptMessage

# Pre-compiled regex patterns for performance
SSML_BLOCK_PATTERN = re.compile(r'<speak\b[^>]*>[\s\S]*</speak>|<prosody\b[^>]*>[\s\S]*</prosody>', re.IGNORECASE)
SSML_TAG_PATTERN = re.compile(r'</?(?:speak|prosody|emphasis|say-as)\b[^>]*>', re.IGNORECASE)
SSML_BREAK_PATTERN = re.compile(r'<break\b[^>]*/>', re.IGNORECASE)
HTML_ENTITY_PATTERN = re.compile(r'&[a-zA-Z][a-zA-Z0-9]*;|&#[0-9]+;|&#x[0-9a-fA-F]+;')
WHITESPACE_PATTERN = re.compile(r'\s+')

SILENT_USER_TEXT = "<User is silent>"
CLOSING_MESSAGE = ("I am closing our current conversation as I have not received any input from you. "
                   "We can start over when you need.")
CLOSING_MESSAGE_THRESHOLD_SECONDS = 8.0


@dataclass
class NormalizationResult:
    filtered: bool
    text: Optional[str]
    reason: str = ""


def _is_json_message(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def _say_text(node: Any) -> Optional[str]:
    say = node.get("say") if isinstance(node, dict) else None
    if not isinstance(say, dict) or not say.get("text"):
        return None
    if isinstance(say["text"], list):
        return " ".join(str(part) for part in say["text"])
    return str(say["text"])


def _find_text(node: Any) -> Optional[str]:
    """Depth-first search for the first string "text" field"""
    if isinstance(node, dict):
        if isinstance(node.get("text"), str):
            return node["text"]
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None

    for child in children:
        found = _find_text(child)
        if found:
            return found
    return None


class TranscriptNormalizer:
    """Default normalizer for bot platform transcripts"""

    def normalize(self, text: str, role: str) -> NormalizationResult:
        if not text or not isinstance(text, str):
            return NormalizationResult(filtered=True, text=None, reason="empty message")

        if role == "user" and text.strip().lower() == "welcome task":
            return NormalizationResult(filtered=True, text=None, reason="welcome task")

        if role == "bot" and self._is_hangup_command(text):
            return NormalizationResult(filtered=True, text=None, reason="hangup command")

        cleaned = text
        if role == "bot" and _is_json_message(cleaned):
            extracted = self._extract_json_text(cleaned)
            if extracted:
                cleaned = extracted

        if SSML_BLOCK_PATTERN.search(cleaned):
            cleaned = SSML_BREAK_PATTERN.sub(" ", cleaned)
            cleaned = SSML_TAG_PATTERN.sub("", cleaned)
            cleaned = WHITESPACE_PATTERN.sub(" ", cleaned)

        if HTML_ENTITY_PATTERN.search(cleaned):
            cleaned = html.unescape(cleaned)

        if role == "user" and cleaned.strip().upper() == "MAX_NO_INPUT":
            cleaned = SILENT_USER_TEXT

        cleaned = cleaned.strip()
        if not cleaned:
            return NormalizationResult(filtered=True, text=None, reason="empty after cleaning")
        return NormalizationResult(filtered=False, text=cleaned)

    def normalize_messages(self, messages: List[TranscriptMessage]) -> List[TranscriptMessage]:
        """Normalize a time-ordered transcript, dropping filtered messages"""
        kept = []
        for message in messages:
            result = self.normalize(message.text, message.role)
            if not result.filtered:
                kept.append(replace(message, text=result.text))

        if len(kept) >= 2:
            last, previous = kept[-1], kept[-2]
            gap = abs((last.timestamp - previous.timestamp).total_seconds())
            if last.role == "bot" and last.text == CLOSING_MESSAGE and gap > CLOSING_MESSAGE_THRESHOLD_SECONDS:
                kept.pop()

        return kept

    @staticmethod
    def _extract_json_text(text: str) -> Optional[str]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return None

        direct = _say_text(payload)
        if direct:
            return direct
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            for item in payload["data"]:
                nested = _say_text(item)
                if nested:
                    return nested
        return _find_text(payload)

    @staticmethod
    def _is_hangup_command(text: str) -> bool:
        if not _is_json_message(text):
            return False
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return False
        if not isinstance(payload, dict):
            return False
        if payload.get("type") != "command" or payload.get("command") != "redirect":
            return False
        return any(isinstance(item, dict) and item.get("verb") == "hangup"
                   for item in payload.get("data") or [])
