"""Tests for batch classification, parsing and retry."""
import json

import pytest

from batch_classifier import (
    BatchClassifier,
    ClassificationParseError,
    create_session_analysis_prompt,
    max_sessions_per_call,
    parse_classification_response,
    session_token_budget,
    split_into_batches,
)
from config_manager import BatchConfig, ModelInfo
from conftest import BASE_TIME, FakeProvider, default_classification, make_session, transcript_messages
from llm_provider import LLMProviderError, TransientLLMError
from session_models import ClassificationVocabulary, Facts


def make_batch(count, prefix="s"):
    return [make_session(f"{prefix}{i}", messages=transcript_messages(BASE_TIME, ("bot", "Hi"), ("user", "Billing")))
            for i in range(count)]


def classifier_for(provider, model_info, sleeps=None, **config):
    return BatchClassifier(provider, model_info, BatchConfig(**config),
                           sleep=(sleeps.append if sleeps is not None else lambda seconds: None))


class TestSplitIntoBatches:
    """Test batch partitioning."""

    def test_fixed_size_batches(self):
        batches = split_into_batches(make_batch(12), batch_size=5, max_session_chars=8000)
        assert [len(b) for b in batches] == [5, 5, 2]

    def test_oversized_sessions_get_their_own_batch(self):
        sessions = make_batch(3)
        sessions[1].messages = transcript_messages(BASE_TIME, ("user", "x" * 9000))
        batches = split_into_batches(sessions, batch_size=5, max_session_chars=8000)
        assert [[s.session_id for s in b] for b in batches] == [["s0", "s2"], ["s1"]]

    def test_empty_input(self):
        assert split_into_batches([], batch_size=5, max_session_chars=8000) == []


TINY_MODEL = ModelInfo(id="tiny", name="Tiny", provider="openai", api_model_string="tiny",
                       input_price_per_million=0.1, output_price_per_million=0.1, context_window=10000)


class TestContextWindowBudget:
    """Test batch sizing against the model's context window."""

    def test_batch_size_capped_by_context_window(self, model_info):
        assert max_sessions_per_call(TINY_MODEL, 5) == 2
        assert max_sessions_per_call(model_info, 5) == 5
        assert max_sessions_per_call(model_info, 100) == 50

    def test_window_smaller_than_prompt_still_sends_one(self):
        cramped = ModelInfo(id="cramped", name="Cramped", provider="openai", api_model_string="cramped",
                            input_price_per_million=0.1, output_price_per_million=0.1, context_window=4000)
        assert max_sessions_per_call(cramped, 5) == 1
        assert session_token_budget(cramped, 1) == 0

    def test_session_token_budget(self):
        assert session_token_budget(TINY_MODEL, 2) == 2250

    def test_plan_isolates_sessions_over_token_budget(self):
        sessions = make_batch(4)
        sessions.append(make_session("long", messages=transcript_messages(BASE_TIME, ("user", "w " * 3000))))
        classifier = classifier_for(FakeProvider(), TINY_MODEL, batch_size=5, max_session_chars=8000)

        batches = classifier.plan_batches(sessions)

        assert [[s.session_id for s in b] for b in batches] == [["s0", "s1"], ["s2", "s3"], ["long"]]


class TestPrompt:
    """Test prompt construction."""

    def test_prompt_lists_sessions_and_vocabulary(self):
        vocabulary = ClassificationVocabulary()
        vocabulary.add_facts(Facts("Claim Status", "Transfer", "Invalid Provider ID", "Provider ID"))
        prompt = create_session_analysis_prompt(make_batch(2), vocabulary, additional_context="Dental plan bot")

        assert "Session ID: s0" in prompt
        assert "Session ID: s1" in prompt
        assert "Existing General Intent classifications: Claim Status" in prompt
        assert "Existing Transfer Reason classifications: Invalid Provider ID" in prompt
        assert "Dental plan bot" in prompt

    def test_prompt_without_vocabulary(self):
        prompt = create_session_analysis_prompt(make_batch(1), ClassificationVocabulary())
        assert "Existing" not in prompt.split("For each session")[0]


class TestParseClassificationResponse:
    """Test strict decoding of function call arguments."""

    def test_valid_response(self):
        items = parse_classification_response(json.dumps({"sessions": [default_classification("s0")]}))
        assert items[0]["session_id"] == "s0"

    @pytest.mark.parametrize("arguments", [
        None,
        "",
        "not json",
        json.dumps([]),
        json.dumps({"sessions": "s0"}),
        json.dumps({"sessions": ["s0"]}),
        json.dumps({"sessions": [dict(default_classification("s0"), session_outcome="Escalated")]}),
        json.dumps({"sessions": [dict(default_classification("s0"), session_id="")]}),
        json.dumps({"sessions": [dict(default_classification("s0"), notes=5)]}),
    ])
    def test_malformed_responses_rejected(self, arguments):
        with pytest.raises(ClassificationParseError):
            parse_classification_response(arguments)


class TestClassifyBatch:
    """Test classification results, usage and failure handling."""

    def test_every_session_classified(self, model_info):
        provider = FakeProvider(input_tokens=1000, output_tokens=500)
        result = classifier_for(provider, model_info).classify_batch(make_batch(3), ClassificationVocabulary(), 1)

        assert result.succeeded
        assert [c.session_id for c in result.classified] == ["s0", "s1", "s2"]
        assert result.failed_session_ids == []
        assert result.token_usage.total_tokens == 1500
        assert result.token_usage.cost == pytest.approx(1000 / 1e6 * 0.15 + 500 / 1e6 * 0.60)
        assert result.classified[0].metadata.batch_number == 1
        assert result.classified[0].metadata.tokens_used == 500

    def test_missing_sessions_resent_alone(self, model_info):
        requested = []

        def classify(ids, prompt):
            requested.append(ids)
            return [default_classification(ids[0])]

        sleeps = []
        provider = FakeProvider(classify=classify)
        result = classifier_for(provider, model_info, sleeps=sleeps, retry_base_delay=2.0).classify_batch(
            make_batch(3), ClassificationVocabulary(), 2)

        assert requested == [["s0", "s1", "s2"], ["s1", "s2"], ["s2"]]
        assert [c.session_id for c in result.classified] == ["s0", "s1", "s2"]
        assert result.failed_session_ids == []
        assert result.attempts == 3
        assert result.token_usage.total_tokens == 450
        assert result.classified[0].metadata.tokens_used == 150
        assert sleeps == [4.0]

    def test_still_missing_after_retries_counted_as_failed(self, model_info):
        def classify(ids, prompt):
            return [default_classification("s0")] if "s0" in ids else []

        provider = FakeProvider(classify=classify)
        result = classifier_for(provider, model_info).classify_batch(make_batch(3), ClassificationVocabulary(), 2)

        assert [c.session_id for c in result.classified] == ["s0"]
        assert result.failed_session_ids == ["s1", "s2"]
        assert provider.count("analyze_sessions_batch") == 3
        assert result.succeeded

    def test_missing_session_retries_disabled(self, model_info):
        provider = FakeProvider(classify=lambda ids, prompt: [default_classification(ids[0])])
        result = classifier_for(provider, model_info, missing_session_retries=0).classify_batch(
            make_batch(3), ClassificationVocabulary(), 2)

        assert result.failed_session_ids == ["s1", "s2"]
        assert provider.count("analyze_sessions_batch") == 1

    def test_failed_resend_keeps_first_answers(self, model_info):
        def classify(ids, prompt):
            if "s0" not in ids:
                raise LLMProviderError("invalid request")
            return [default_classification("s0")]

        result = classifier_for(FakeProvider(classify=classify), model_info).classify_batch(
            make_batch(2), ClassificationVocabulary(), 1)

        assert result.succeeded
        assert [c.session_id for c in result.classified] == ["s0"]
        assert result.failed_session_ids == ["s1"]
        assert result.attempts == 3

    def test_unknown_and_duplicate_ids_ignored(self, model_info):
        def classify(ids, prompt):
            first = dict(default_classification("s0"), general_intent="Billing")
            return [first, default_classification("s0"), default_classification("ghost"), default_classification("s1")]

        result = classifier_for(FakeProvider(classify=classify), model_info).classify_batch(
            make_batch(2), ClassificationVocabulary(), 1)

        assert [c.session_id for c in result.classified] == ["s0", "s1"]
        assert result.classified[0].facts.general_intent == "Billing"

    def test_fact_invariants_enforced(self, model_info):
        def classify(ids, prompt):
            return [
                dict(default_classification(ids[0]), session_outcome="Contained", transfer_reason="Leftover"),
                dict(default_classification(ids[1]), session_outcome="Transfer", transfer_reason="", drop_off_location=" "),
            ]

        result = classifier_for(FakeProvider(classify=classify), model_info).classify_batch(
            make_batch(2), ClassificationVocabulary(), 1)
        contained, transferred = (c.facts for c in result.classified)

        assert contained.transfer_reason == "" and contained.drop_off_location == ""
        assert transferred.transfer_reason == "Unknown" and transferred.drop_off_location == "Unknown"

    def test_transient_errors_retried_with_backoff(self, model_info):
        attempts = []

        def classify(ids, prompt):
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientLLMError("rate limited")
            return [default_classification(i) for i in ids]

        sleeps = []
        result = classifier_for(FakeProvider(classify=classify), model_info, sleeps=sleeps,
                                max_retries=3, retry_base_delay=2.0).classify_batch(
            make_batch(2), ClassificationVocabulary(), 1)

        assert result.succeeded
        assert result.attempts == 3
        assert sleeps == [2.0, 4.0]

    def test_retry_exhaustion_fails_batch(self, model_info):
        def classify(ids, prompt):
            raise TransientLLMError("connection reset")

        sleeps = []
        result = classifier_for(FakeProvider(classify=classify), model_info, sleeps=sleeps,
                                max_retries=3).classify_batch(make_batch(2), ClassificationVocabulary(), 4)

        assert not result.succeeded
        assert result.attempts == 3
        assert len(sleeps) == 2
        assert result.classified == []
        assert result.failed_session_ids == ["s0", "s1"]
        assert "connection reset" in result.error

    def test_builtin_network_errors_retried(self, model_info):
        attempts = []

        def classify(ids, prompt):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("connection reset by peer")
            if len(attempts) == 2:
                raise TimeoutError("read timed out")
            return [default_classification(i) for i in ids]

        sleeps = []
        result = classifier_for(FakeProvider(classify=classify), model_info, sleeps=sleeps,
                                max_retries=3, retry_base_delay=2.0).classify_batch(
            make_batch(2), ClassificationVocabulary(), 1)

        assert result.succeeded
        assert result.attempts == 3
        assert sleeps == [2.0, 4.0]

    def test_unexpected_error_fails_batch_without_raising(self, model_info):
        def classify(ids, prompt):
            raise KeyError("choices")

        sleeps = []
        result = classifier_for(FakeProvider(classify=classify), model_info, sleeps=sleeps).classify_batch(
            make_batch(2), ClassificationVocabulary(), 3)

        assert not result.succeeded
        assert result.attempts == 1
        assert sleeps == []
        assert result.failed_session_ids == ["s0", "s1"]
        assert "Batch 3 failed unexpectedly" in result.error

    def test_non_transient_error_not_retried(self, model_info):
        def classify(ids, prompt):
            raise LLMProviderError("invalid api key")

        sleeps = []
        result = classifier_for(FakeProvider(classify=classify), model_info, sleeps=sleeps).classify_batch(
            make_batch(1), ClassificationVocabulary(), 1)

        assert not result.succeeded
        assert result.attempts == 1
        assert sleeps == []

    def test_malformed_response_fails_batch_without_retry(self, model_info):
        provider = FakeProvider(classify=lambda ids, prompt: "{\"sessions\": [{\"session_id\": 3}]}")
        result = classifier_for(provider, model_info).classify_batch(make_batch(2), ClassificationVocabulary(), 1)

        assert not result.succeeded
        assert result.attempts == 1
        assert result.failed_session_ids == ["s0", "s1"]
        assert result.token_usage.total_tokens == 150
