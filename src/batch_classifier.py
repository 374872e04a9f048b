#!/usr/bin/env python3
"""
Batch Session Classifier

Classifies a batch of bot sessions in a single schema-constrained LLM call.
Each session gets a general intent, an outcome (Transfer / Contained), a
transfer reason, a drop-off location and a one-sentence note. The labels
already observed in earlier batches are included in the prompt so the model
reuses them instead of inventing synonyms.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config_manager import BatchConfig, ModelInfo, get_batch_config
from llm_provider import LLMProvider, LLMProviderError, RateLimiter, TransientLLMError, calculate_cost
from session_models import (
    SESSION_OUTCOMES,
    AnalysisMetadata,
    ClassificationVocabulary,
    ClassifiedSession,
    SessionRecord,
    TokenUsage,
    normalize_facts,
)

SESSION_ANALYSIS_SYSTEM_MESSAGE = (
    "You are an expert session analyst. Analyze the session transcripts and use the "
    "provided function to classify them consistently."
)

SESSION_ANALYSIS_FUNCTION_SCHEMA = {
    "name": "analyze_sessions_batch",
    "description": "Analyze a batch of session transcripts and classify each session",
    "parameters": {
        "type": "object",
        "properties": {
            "sessions": {
                "type": "array",
                "description": "One entry per analyzed session",
                "items": {
                    "type": "object",
                    "properties": {
                        "session_id": {
                            "type": "string",
                            "description": "The Session ID exactly as given in the transcript header"
                        },
                        "general_intent": {
                            "type": "string",
                            "description": "What the user is trying to accomplish (1-2 words). Examples: Claim Status, Billing, Eligibility, Live Agent, Provider Enrollment, Portal Access, Authorization. Use 'Unknown' if unclear."
                        },
                        "session_outcome": {
                            "type": "string",
                            "enum": list(SESSION_OUTCOMES),
                            "description": "Whether the session was transferred to a live agent or contained by the bot"
                        },
                        "transfer_reason": {
                            "type": "string",
                            "description": "Why the session was transferred (only if session_outcome is 'Transfer'). Examples: Invalid Provider ID, Invalid Member ID, Invalid Claim Number, No Provider ID, Authentication Failed, Technical Issue. Leave empty if not transferred."
                        },
                        "drop_off_location": {
                            "type": "string",
                            "description": "At which prompt the user started getting routed to an agent (only if session_outcome is 'Transfer'). Examples: Policy Number Prompt, Help Offer Prompt, Authentication, Claim Details, Provider ID. Leave empty if not transferred."
                        },
                        "notes": {
                            "type": "string",
                            "description": "One sentence summary of what happened in the session"
                        }
                    },
                    "required": ["session_id", "general_intent", "session_outcome", "transfer_reason", "drop_off_location", "notes"]
                }
            }
        },
        "required": ["sessions"]
    }
}

CLASSIFICATION_INSTRUCTIONS = """For each session, provide the following classifications:

1. **General Intent**: What the user is trying to accomplish (usually 1-2 words). Common examples: "Claim Status", "Billing", "Eligibility", "Live Agent", "Provider Enrollment", "Portal Access", "Authorization". If unknown, use "Unknown". If the user asked for a live agent and also had another intent, use the other intent.

2. **Session Outcome**: "Transfer" if the session was handed to a live agent (e.g. "Please hold while I connect you with a customer service representative" near the end), otherwise "Contained". Some contained sessions end with the bot closing the conversation ("I am closing our current conversation...").

3. **Transfer Reason**: Why the session was transferred, only when the outcome is "Transfer". Look for the error or rejected input that caused the transfer. Examples: "Invalid Provider ID", "Live Agent Request", "Invalid Member ID", "Invalid Claim Number", "No Provider ID", "Authentication Failed", "Technical Issue". Leave blank if not transferred.

4. **Drop-Off Location**: The prompt at which the user started getting routed to an agent, not counting error responses or live agent rebuttal prompts. Only set when the outcome is "Transfer". Examples: "Policy Number Prompt", "Help Offer Prompt", "Authentication", "Claim Details", "Member Information", "Provider ID", "Date of Service". Leave blank if not transferred.

5. **Notes**: One sentence summary of what happened in the session.

EXAMPLE:
---
bot: How can I help you today?
user: Speak to a person
bot: I can connect you to an agent, but before I do, can you tell me the reason for your call?
user: Live agent
bot: Please hold while I transfer you.
---
Intent: Live Agent
Outcome: Transfer
Transfer Reason: Live Agent Request
Drop-Off Location: Help Offer Prompt

IMPORTANT:
- Return exactly one entry per session, using its Session ID
- Use existing classifications when possible to maintain consistency
- If Session Outcome is "Contained", leave Transfer Reason and Drop-Off Location blank
- Be concise but descriptive in your classifications"""

VOCABULARY_LABELS = {
    "general_intent": "General Intent",
    "transfer_reason": "Transfer Reason",
    "drop_off_location": "Drop-Off Location",
}

OPTIONAL_TEXT_FIELDS = ("transfer_reason", "drop_off_location", "notes")

# Context window budget per classification call
RESERVED_PROMPT_TOKENS = 5500
AVG_TOKENS_PER_SESSION = 1500
TOKEN_SAFETY_MARGIN = 1.2
MAX_SESSIONS_PER_CALL = 50

# ConnectionError and TimeoutError are OSError subclasses
TRANSIENT_ERRORS = (TransientLLMError, OSError)


class ClassificationParseError(ValueError):
    """The model's function call arguments did not match the classification schema"""


class BatchClassificationError(RuntimeError):
    """A classification call could not be completed"""


@dataclass
class BatchResult:
    """Outcome of classifying one batch"""
    batch_number: int
    classified: List[ClassifiedSession] = field(default_factory=list)
    failed_session_ids: List[str] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    attempts: int = 0
    processing_time: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def max_sessions_per_call(model_info: ModelInfo, batch_size: int) -> int:
    """Configured batch size, capped by what fits in the model's context window"""
    available = model_info.context_window - RESERVED_PROMPT_TOKENS
    fits = int(available // (AVG_TOKENS_PER_SESSION * TOKEN_SAFETY_MARGIN))
    return max(min(batch_size, fits, MAX_SESSIONS_PER_CALL), 1)


def session_token_budget(model_info: ModelInfo, batch_size: int) -> int:
    """Largest transcript, in tokens, that can share a call with batch_size - 1 others"""
    available = max(model_info.context_window - RESERVED_PROMPT_TOKENS, 0)
    return available // max(batch_size, 1)


def split_into_batches(sessions: List[SessionRecord], batch_size: int, max_session_chars: int,
                       token_counter: Optional[Callable[[str], int]] = None,
                       max_session_tokens: Optional[int] = None) -> List[List[SessionRecord]]:
    """Partition sessions into fixed-size batches; oversized transcripts go alone"""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    def is_oversized(session: SessionRecord) -> bool:
        if session.transcript_length() > max_session_chars:
            return True
        if token_counter is not None and max_session_tokens is not None:
            return token_counter(session.format_transcript()) > max_session_tokens
        return False

    regular, oversized = [], []
    for session in sessions:
        (oversized if is_oversized(session) else regular).append(session)

    batches = [regular[i:i + batch_size] for i in range(0, len(regular), batch_size)]
    batches.extend([session] for session in oversized)
    return batches


def create_session_analysis_prompt(sessions: List[SessionRecord], vocabulary: ClassificationVocabulary,
                                   additional_context: Optional[str] = None) -> str:
    guidance = ""
    for category, label in VOCABULARY_LABELS.items():
        values = vocabulary.values(category)
        if values:
            guidance += f"\nExisting {label} classifications: {', '.join(values)}"

    context_section = ""
    if additional_context:
        context_section = f"\nAdditional Context and Instructions from User: {additional_context}\n"

    sessions_text = "\n\n".join(
        f"--- Session {index} ---\n"
        f"Session ID: {session.session_id}\n"
        f"User ID: {session.user_id}\n"
        f"Transcript:\n{session.format_transcript() or '(no messages)'}"
        for index, session in enumerate(sessions, start=1)
    )

    return (
        "Analyze the following session transcripts and classify each session according to the specified criteria.\n"
        f"{context_section}{guidance}\n\n"
        f"{CLASSIFICATION_INSTRUCTIONS}\n\n"
        f"{sessions_text}"
    )


def index_classifications(items: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Key parsed items by session id; the first answer for a session wins"""
    by_id: Dict[str, Dict[str, Any]] = {}
    for item in items:
        by_id.setdefault(item["session_id"].strip(), item)
    return by_id


def parse_classification_response(arguments: Optional[str]) -> List[Dict[str, Any]]:
    """Decode and validate the function call arguments of a classification call"""
    if not arguments:
        raise ClassificationParseError("Model did not call analyze_sessions_batch")

    try:
        payload = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ClassificationParseError(f"Function arguments are not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("sessions"), list):
        raise ClassificationParseError("Function arguments must contain a 'sessions' array")

    items = []
    for index, item in enumerate(payload["sessions"]):
        if not isinstance(item, dict):
            raise ClassificationParseError(f"sessions[{index}] is not an object")
        session_id = item.get("session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            raise ClassificationParseError(f"sessions[{index}] has no session_id")
        if not isinstance(item.get("general_intent"), str):
            raise ClassificationParseError(f"sessions[{index}] has no general_intent")
        if item.get("session_outcome") not in SESSION_OUTCOMES:
            raise ClassificationParseError(
                f"sessions[{index}] has invalid session_outcome: {item.get('session_outcome')!r}"
            )
        for name in OPTIONAL_TEXT_FIELDS:
            if item.get(name) is not None and not isinstance(item[name], str):
                raise ClassificationParseError(f"sessions[{index}].{name} must be a string")
        items.append(item)

    return items


class BatchClassifier:
    """Classifies batches of sessions against one model"""

    def __init__(self, provider: LLMProvider, model_info: ModelInfo, config: Optional[BatchConfig] = None,
                 rate_limiter: Optional[RateLimiter] = None, sleep: Callable[[float], None] = time.sleep):
        self.provider = provider
        self.model_info = model_info
        self.config = config or get_batch_config()
        self.rate_limiter = rate_limiter
        self.sleep = sleep

    def plan_batches(self, sessions: List[SessionRecord]) -> List[List[SessionRecord]]:
        """Split sessions into batches sized to fit the model's context window"""
        batch_size = max_sessions_per_call(self.model_info, self.config.batch_size)
        return split_into_batches(
            sessions, batch_size, self.config.max_session_chars,
            token_counter=self.provider.count_tokens,
            max_session_tokens=session_token_budget(self.model_info, batch_size),
        )

    def classify_batch(self, sessions: List[SessionRecord], vocabulary: ClassificationVocabulary,
                       batch_number: int, additional_context: Optional[str] = None) -> BatchResult:
        """
        Classify one batch, retrying transient failures with exponential backoff.

        Sessions missing from the response are sent again on their own, up to
        missing_session_retries times. Never raises: a batch that cannot be
        classified comes back with error set and every session listed in
        failed_session_ids.
        """
        result = BatchResult(batch_number=batch_number)
        if not sessions:
            return result

        start_time = time.time()
        label = f"Batch {batch_number}"
        try:
            items = self._request_classifications(sessions, vocabulary, label, additional_context, result)
        except BatchClassificationError as e:
            return self._fail(result, sessions, str(e), start_time)
        except Exception as e:
            return self._fail(result, sessions, f"{label} failed unexpectedly: {e}", start_time)

        answered = index_classifications(items)
        missing = [s for s in sessions if s.session_id not in answered]
        retry_round = 0
        while missing and retry_round < self.config.missing_session_retries:
            retry_round += 1
            if retry_round > 1:
                self.sleep(self.config.retry_base_delay * (2 ** (retry_round - 1)))
            print(f"  🔄 {label}: re-sending {len(missing)} missing session(s) "
                  f"(retry {retry_round}/{self.config.missing_session_retries})")
            try:
                retry_items = self._request_classifications(
                    missing, vocabulary, f"{label} retry {retry_round}", additional_context, result
                )
            except Exception as e:
                print(f"  ⚠️  {label} retry {retry_round} failed: {e}")
                continue
            for session_id, item in index_classifications(retry_items).items():
                answered.setdefault(session_id, item)
            missing = [s for s in missing if s.session_id not in answered]

        result.processing_time = time.time() - start_time
        self._apply_items(result, sessions, answered)
        if result.failed_session_ids:
            print(f"  ⚠️  {label}: {len(result.failed_session_ids)} session(s) missing from response")
        print(f"  ✅ {label}: {len(result.classified)}/{len(sessions)} sessions classified "
              f"({result.token_usage.total_tokens} tokens, ${result.token_usage.cost:.4f})")
        return result

    def _request_classifications(self, sessions: List[SessionRecord], vocabulary: ClassificationVocabulary,
                                 label: str, additional_context: Optional[str],
                                 result: BatchResult) -> List[Dict[str, Any]]:
        """One classification call with backoff; usage is added to the result even if parsing fails"""
        prompt = create_session_analysis_prompt(sessions, vocabulary, additional_context)
        max_attempts = max(self.config.max_retries, 1)

        for attempt in range(1, max_attempts + 1):
            result.attempts += 1
            if self.rate_limiter is not None:
                self.rate_limiter.wait_if_needed()

            try:
                response = self.provider.call_function(
                    SESSION_ANALYSIS_SYSTEM_MESSAGE, prompt, SESSION_ANALYSIS_FUNCTION_SCHEMA
                )
            except TRANSIENT_ERRORS as e:
                if attempt < max_attempts:
                    delay = self.config.retry_base_delay * (2 ** (attempt - 1))
                    print(f"  ⚠️  {label} attempt {attempt}/{max_attempts} failed ({e}), retrying in {delay:.1f}s")
                    self.sleep(delay)
                    continue
                raise BatchClassificationError(f"{label} failed after {attempt} attempts: {e}") from e
            except LLMProviderError as e:
                raise BatchClassificationError(f"{label} failed: {e}") from e

            result.token_usage = result.token_usage.add(TokenUsage(
                prompt_tokens=response.input_tokens,
                completion_tokens=response.output_tokens,
                total_tokens=response.total_tokens,
                cost=calculate_cost(response.input_tokens, response.output_tokens, self.model_info),
                model=self.model_info.id,
            ))

            try:
                return parse_classification_response(response.tool_arguments)
            except ClassificationParseError as e:
                raise BatchClassificationError(f"{label} returned a malformed response: {e}") from e

    def _apply_items(self, result: BatchResult, sessions: List[SessionRecord],
                     answered: Dict[str, Dict[str, Any]]) -> None:
        tokens_per_session = round(result.token_usage.total_tokens / len(sessions))
        timestamp = datetime.now()

        for session in sessions:
            item = answered.get(session.session_id)
            if item is None:
                result.failed_session_ids.append(session.session_id)
                continue

            facts = normalize_facts(
                general_intent=item["general_intent"],
                session_outcome=item["session_outcome"],
                transfer_reason=item.get("transfer_reason"),
                drop_off_location=item.get("drop_off_location"),
                notes=item.get("notes"),
            )
            result.classified.append(ClassifiedSession(
                session=session,
                facts=facts,
                metadata=AnalysisMetadata(
                    tokens_used=tokens_per_session,
                    batch_number=result.batch_number,
                    model=self.model_info.id,
                    timestamp=timestamp,
                    processing_time=result.processing_time,
                ),
            ))

    def _fail(self, result: BatchResult, sessions: List[SessionRecord], message: str,
              start_time: float) -> BatchResult:
        print(f"  ❌ {message}")
        result.error = message
        result.failed_session_ids = [s.session_id for s in sessions]
        result.classified = []
        result.processing_time = time.time() - start_time
        return result
