#!/usr/bin/env python3
"""
Classification Conflict Resolver

Batches are classified independently, so the same concept can come back under
different labels ("Claim Status" vs "Claim Inquiry"). After all batches finish,
this module:
1. Builds the vocabulary of observed labels per category
2. Skips small vocabularies, and vocabularies with no similar-looking labels
3. Asks the LLM to group semantic duplicates under a canonical label
4. Validates the groups strictly and rewrites every session through an
   alias -> canonical lookup

Either every session is rewritten or, on any failure, none is.
"""

import json
import re
import time
from dataclasses import dataclass, field, replace
from difflib import SequenceMatcher
from itertools import combinations
from typing import Any, Dict, List, Optional, Tuple

from config_manager import ConflictResolutionConfig, ModelInfo, get_conflict_resolution_config
from llm_provider import LLMProvider, LLMProviderError, RateLimiter, calculate_cost
from session_models import CATEGORY_FIELDS, ClassificationVocabulary, ClassifiedSession, TokenUsage

TOKEN_PATTERN = re.compile(r'[a-z0-9]+')

# Stems that name the same concept without sharing a word
SYNONYM_STEMS = (
    ("agent", "human"),
    ("transfer", "connect"),
    ("invalid", "bad"),
    ("auth", "login"),
)

CONFLICT_RESOLUTION_SYSTEM_MESSAGE = """You are an expert at analyzing customer service classifications and identifying semantic duplicates. Your goal is to consolidate similar classifications to maintain consistency across the dataset.

Guidelines:
- Only group classifications that truly refer to the same concept
- Choose canonical names that are specific, professional, and clear
- Be conservative - it's better to miss a conflict than create a false positive
- Preserve important distinctions: "Invalid ID" vs "Missing ID" are different concepts"""

_GROUP_ARRAY_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "canonical": {"type": "string", "description": "The label every alias should be replaced with"},
            "aliases": {"type": "array", "items": {"type": "string"}, "description": "Labels that mean the same as the canonical label"}
        },
        "required": ["canonical", "aliases"]
    }
}

CONFLICT_RESOLUTION_SCHEMA = {
    "name": "resolve_classification_conflicts",
    "description": "Group semantically duplicate classification labels under a canonical label",
    "parameters": {
        "type": "object",
        "properties": {
            "generalIntents": dict(_GROUP_ARRAY_SCHEMA, description="Duplicate groups among general intents"),
            "transferReasons": dict(_GROUP_ARRAY_SCHEMA, description="Duplicate groups among transfer reasons"),
            "dropOffLocations": dict(_GROUP_ARRAY_SCHEMA, description="Duplicate groups among drop-off locations")
        },
        "required": ["generalIntents", "transferReasons", "dropOffLocations"]
    }
}

PROMPT_SECTIONS = {
    "general_intent": "General Intents",
    "transfer_reason": "Transfer Reasons",
    "drop_off_location": "Drop-Off Locations",
}


class ConflictResolutionError(RuntimeError):
    """Canonicalization could not be completed"""


class ResolutionValidationError(ConflictResolutionError):
    """The canonicalization response did not match the expected shape"""


@dataclass
class ResolutionGroup:
    canonical: str
    aliases: List[str] = field(default_factory=list)


@dataclass
class ConflictResolutions:
    general_intent: List[ResolutionGroup] = field(default_factory=list)
    transfer_reason: List[ResolutionGroup] = field(default_factory=list)
    drop_off_location: List[ResolutionGroup] = field(default_factory=list)

    def groups(self, category: str) -> List[ResolutionGroup]:
        return getattr(self, category)

    def all_groups(self) -> List[ResolutionGroup]:
        return self.general_intent + self.transfer_reason + self.drop_off_location


@dataclass
class ResolutionStats:
    conflicts_found: int = 0
    conflicts_resolved: int = 0
    canonical_mappings: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "conflicts_found": self.conflicts_found,
            "conflicts_resolved": self.conflicts_resolved,
            "canonical_mappings": self.canonical_mappings,
        }


@dataclass
class ConflictResolutionResult:
    resolved_sessions: List[ClassifiedSession]
    stats: ResolutionStats = field(default_factory=ResolutionStats)
    resolutions: ConflictResolutions = field(default_factory=ConflictResolutions)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    skipped: bool = False


def create_mapping(groups: List[ResolutionGroup]) -> Dict[str, str]:
    """
    Expand canonical/alias groups into a flat label -> canonical lookup.

    Every value in the returned mapping maps to itself, so rewriting a label
    twice gives the same result as rewriting it once. When groups overlap:
    - a canonical that is already an alias elsewhere resolves to that alias's canonical
    - an alias that is already the canonical of another group merges that group in
    - an alias already claimed by another canonical keeps its first assignment
    """
    mapping: Dict[str, str] = {}

    for group in groups:
        canonical = group.canonical.strip()
        if not canonical:
            continue
        canonical = mapping.get(canonical, canonical)
        mapping.setdefault(canonical, canonical)

        for alias in group.aliases:
            alias = alias.strip()
            if not alias:
                continue
            current = mapping.get(alias)
            if current is None:
                mapping[alias] = canonical
            elif current == alias and alias != canonical:
                for label, target in mapping.items():
                    if target == alias:
                        mapping[label] = canonical

    return mapping


def _tokens(value: str) -> set:
    return set(TOKEN_PATTERN.findall(value.lower()))


def labels_look_similar(first: str, second: str, token_overlap_threshold: float,
                        similarity_threshold: float) -> bool:
    """Cheap lexical test: synonym stems, shared words, or near-identical spelling"""
    first_lower, second_lower = first.lower(), second.lower()
    for stem, synonym in SYNONYM_STEMS:
        if (stem in first_lower and synonym in second_lower) or (synonym in first_lower and stem in second_lower):
            return True
    first_tokens, second_tokens = _tokens(first), _tokens(second)
    if first_tokens and second_tokens:
        overlap = len(first_tokens & second_tokens) / min(len(first_tokens), len(second_tokens))
        if overlap >= token_overlap_threshold:
            return True
    ratio = SequenceMatcher(None, first_lower, second_lower).ratio()
    return ratio >= similarity_threshold


def find_candidate_pairs(values: List[str], token_overlap_threshold: float,
                         similarity_threshold: float) -> List[Tuple[str, str]]:
    return [
        (first, second)
        for first, second in combinations(sorted(values), 2)
        if labels_look_similar(first, second, token_overlap_threshold, similarity_threshold)
    ]


def create_conflict_resolution_prompt(vocabulary: ClassificationVocabulary) -> str:
    sections = []
    for category, title in PROMPT_SECTIONS.items():
        values = vocabulary.values(category)
        listing = "\n".join(f'{i}. "{value}"' for i, value in enumerate(values, start=1)) or "None"
        sections.append(f"**{title} found ({len(values)} total):**\n{listing}")

    return (
        "You are reviewing classifications from parallel analysis streams. Identify any semantic "
        "duplicates and choose the canonical version for each group.\n\n"
        "**Instructions:**\n"
        "1. Look for classifications that refer to the same concept but use different wording\n"
        "2. For each group of duplicates, choose the most specific and clearest name as canonical\n"
        "3. Only group classifications that truly mean the same thing - be conservative\n"
        "4. If no duplicates exist for a category, return an empty array for that category\n\n"
        + "\n\n".join(sections) +
        "\n\n**Examples of what to look for:**\n"
        '- "Claim Status" and "Claim Inquiry" -> same concept\n'
        '- "Live Agent" and "Transfer to Human" -> same concept\n'
        '- "Invalid Provider ID" and "Bad Provider ID" -> same concept\n'
        '- "Policy Number Prompt" and "Policy Number Entry" -> same concept\n\n'
        "Canonical names and aliases must be copied exactly from the lists above."
    )


def _parse_groups(payload: Dict[str, Any], key: str) -> List[ResolutionGroup]:
    entries = payload.get(key)
    if not isinstance(entries, list):
        raise ResolutionValidationError(f"'{key}' must be an array")

    groups = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ResolutionValidationError(f"{key}[{index}] is not an object")
        canonical = entry.get("canonical")
        if not isinstance(canonical, str) or not canonical.strip():
            raise ResolutionValidationError(f"{key}[{index}].canonical must be a non-empty string")
        aliases = entry.get("aliases")
        if not isinstance(aliases, list) or not all(isinstance(alias, str) for alias in aliases):
            raise ResolutionValidationError(f"{key}[{index}].aliases must be an array of strings")
        groups.append(ResolutionGroup(canonical=canonical.strip(), aliases=list(aliases)))
    return groups


def parse_resolution_response(arguments: Optional[str]) -> ConflictResolutions:
    """Decode and validate resolve_classification_conflicts arguments"""
    if not arguments:
        raise ResolutionValidationError("Model did not call resolve_classification_conflicts")
    try:
        payload = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ResolutionValidationError(f"Function arguments are not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ResolutionValidationError("Function arguments must be a JSON object")

    return ConflictResolutions(**{
        category: _parse_groups(payload, key) for category, key in CATEGORY_FIELDS.items()
    })


def apply_resolutions(sessions: List[ClassifiedSession],
                      resolutions: ConflictResolutions) -> List[ClassifiedSession]:
    """Rewrite the classification fields of every session through the canonical lookups"""
    mappings = {category: create_mapping(resolutions.groups(category)) for category in CATEGORY_FIELDS}

    rewritten = []
    for session in sessions:
        changes = {}
        for category, mapping in mappings.items():
            value = getattr(session.facts, category).strip()
            if value and value in mapping and mapping[value] != getattr(session.facts, category):
                changes[category] = mapping[value]
        if changes:
            session = session.with_facts(replace(session.facts, **changes))
        rewritten.append(session)
    return rewritten


class ConflictResolutionEngine:
    """Canonicalizes classification labels across a finished result set"""

    def __init__(self, provider: LLMProvider, model_info: ModelInfo,
                 config: Optional[ConflictResolutionConfig] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        self.provider = provider
        self.model_info = model_info
        self.config = config or get_conflict_resolution_config()
        self.rate_limiter = rate_limiter

    def find_conflicts(self, vocabulary: ClassificationVocabulary) -> Dict[str, List[Tuple[str, str]]]:
        return {
            category: find_candidate_pairs(
                vocabulary.values(category),
                self.config.token_overlap_threshold,
                self.config.similarity_threshold
            )
            for category in CATEGORY_FIELDS
        }

    def resolve_conflicts(self, sessions: List[ClassifiedSession]) -> ConflictResolutionResult:
        vocabulary = ClassificationVocabulary.from_sessions(sessions)
        distinct_values = vocabulary.total_size()

        if distinct_values < self.config.min_distinct_values:
            print(f"🔧 Skipping conflict resolution: only {distinct_values} distinct classification values")
            return ConflictResolutionResult(resolved_sessions=list(sessions), skipped=True)

        candidates = self.find_conflicts(vocabulary)
        conflicts_found = sum(len(pairs) for pairs in candidates.values())
        if conflicts_found == 0:
            print(f"🔧 Skipping conflict resolution: no similar labels among {distinct_values} values")
            return ConflictResolutionResult(resolved_sessions=list(sessions), skipped=True)

        print(f"🔧 Resolving conflicts: {conflicts_found} candidate pair(s) across {distinct_values} values")
        start_time = time.time()
        if self.rate_limiter is not None:
            self.rate_limiter.wait_if_needed()

        try:
            response = self.provider.call_function(
                CONFLICT_RESOLUTION_SYSTEM_MESSAGE,
                create_conflict_resolution_prompt(vocabulary),
                CONFLICT_RESOLUTION_SCHEMA
            )
        except LLMProviderError as e:
            raise ConflictResolutionError(f"Conflict resolution failed: {e}") from e

        resolutions = parse_resolution_response(response.tool_arguments)
        resolved_sessions = apply_resolutions(sessions, resolutions)

        groups = resolutions.all_groups()
        stats = ResolutionStats(
            conflicts_found=conflicts_found,
            conflicts_resolved=sum(1 for group in groups if group.aliases),
            canonical_mappings=sum(len(group.aliases) for group in groups),
        )
        token_usage = TokenUsage(
            prompt_tokens=response.input_tokens,
            completion_tokens=response.output_tokens,
            total_tokens=response.total_tokens,
            cost=calculate_cost(response.input_tokens, response.output_tokens, self.model_info),
            model=self.model_info.id,
        )

        print(f"  ✅ {stats.conflicts_resolved} group(s) resolved, {stats.canonical_mappings} alias(es) mapped "
              f"in {time.time() - start_time:.2f}s")
        return ConflictResolutionResult(
            resolved_sessions=resolved_sessions,
            stats=stats,
            resolutions=resolutions,
            token_usage=token_usage,
        )
