"""
Context-aware fallback selection.

Candidates are grouped into pools that only apply once certain keywords
have shown up in earlier affirmative answers. When the caller signals that
a final answer is due (``must_guess``), a list of condition -> guess rules
is evaluated instead.

Recognised ``FallbackContext.metadata`` keys:
    must_guess:      bool, deduce a guess instead of picking a question
    asked_questions: list[str], items already used by the caller
    yes_answers:     list[str], answers that were affirmative
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from pydantic import BaseModel, Field

from autonomy.models.task import TaskRequest, TaskResult
from autonomy.resilience.fallback import FallbackContext

logger = logging.getLogger(__name__)

CONTEXT_KEYWORDS = (
    "living", "animal", "mammal", "large", "wild", "domesticated",
    "predator", "herbivore", "carnivore", "africa", "asia", "water",
    "trunk", "tusks", "stripes", "spots", "mane", "man-made", "electronic", "metal",
    "bigger", "smaller", "pet", "fly", "swim",
)  # fmt: skip

SIGNIFICANT_WORDS = frozenset(
    {"living", "animal", "mammal", "plant", "large", "small", "wild", "domestic", "trunk", "africa"}
)

_NORMALIZE_REMOVALS = ("?", "is it ", "does it ", "is the secret ", "the secret")


class FallbackPool(BaseModel):
    """Questions that apply once every ``context`` keyword has been seen."""

    context: list[str] = Field(default_factory=list)
    priority: str = "normal"  # "normal" | "high"
    questions: list[str] = Field(default_factory=list)


class FallbackConfig(BaseModel):
    """Fallback pools as declared in agent configuration."""

    enabled: bool = True
    strategy: str = "sequential"  # sequential | random | context-aware
    items: list[str] = Field(default_factory=list)
    default: list[str] = Field(default_factory=list)
    pools: list[FallbackPool] | None = None

    def all_items(self) -> list[str]:
        return self.items if self.items else self.default


class GuessRule(BaseModel):
    """Guess to make when every condition keyword is in context."""

    conditions: list[str] = Field(default_factory=list)
    guess: str | None = None
    default: str | None = None

    @property
    def is_default_rule(self) -> bool:
        return not self.conditions and self.default is not None

    def matches(self, context_keywords: Iterable[str]) -> bool:
        if not self.conditions:
            return self.default is not None
        keywords = {k.lower() for k in context_keywords}
        return all(any(c.lower() in k for k in keywords) for c in self.conditions)

    def get_guess(self) -> str:
        return self.guess or self.default or "unknown"


def normalize_question(question: str) -> str:
    normalized = question.lower()
    for fragment in _NORMALIZE_REMOVALS:
        normalized = normalized.replace(fragment, "")
    return normalized.strip()


def is_similar_question(first: str, second: str) -> bool:
    """Normalized questions are duplicates when one contains the other or
    they share at least two domain-significant words."""
    if first == second:
        return True
    if first in second or second in first:
        return True
    shared = set(first.split()) & set(second.split()) & SIGNIFICANT_WORDS
    return len(shared) >= 2


ContextResultFactory = Callable[[TaskRequest, str, bool], TaskResult]


def default_context_result_factory(request: TaskRequest, content: str, is_guess: bool) -> TaskResult:
    return TaskResult(
        request_id=request.request_id,
        success=True,
        output=content,
        metadata={"fallback": True, "is_guess": is_guess},
    )


class ContextAwareFallbackStrategy:
    """
    Picks fallbacks from keyword-gated pools.

    Selection order: guess rules (only when ``must_guess`` is set), matching
    pools (high priority first, then the most specific), the default pool,
    and finally the flat ``items`` list.
    """

    def __init__(
        self,
        config: FallbackConfig,
        guess_rules: list[GuessRule] | None = None,
        result_factory: ContextResultFactory | None = None,
    ):
        self.config = config
        self.guess_rules = guess_rules or []
        self._result_factory = result_factory or default_context_result_factory
        self._used: list[str] = []

    def can_provide_fallback(self, context: FallbackContext) -> bool:
        return self.config.enabled and self._next_fallback(context) is not None

    async def get_fallback(self, context: FallbackContext) -> TaskResult | None:
        selection = self._next_fallback(context)
        if selection is None:
            return None
        content, is_guess = selection
        self._used.append(content)
        logger.info(f"Context-aware fallback selected {'guess' if is_guess else 'question'}: {content}")
        return self._result_factory(context.failed_request, content, is_guess)

    def reset(self) -> None:
        self._used.clear()

    # ------------------------------------------------------------------

    def _next_fallback(self, context: FallbackContext) -> tuple[str, bool] | None:
        asked = self._asked_questions(context)

        if context.metadata.get("must_guess") is True:
            guess = self._deduce_best_guess(context)
            if guess is not None:
                return guess, True

        keywords = extract_context_keywords(context)

        if self.config.pools:
            ordered = sorted(
                self.config.pools,
                key=lambda p: (p.priority == "high", len(p.context)),
                reverse=True,
            )
            for pool in ordered:
                if _pool_matches(pool, keywords):
                    question = self._unused_from(pool.questions, asked)
                    if question is not None:
                        return question, False

        for candidates in (self.config.default, self.config.items):
            question = self._unused_from(candidates, asked)
            if question is not None:
                return question, False

        return None

    def _asked_questions(self, context: FallbackContext) -> set[str]:
        asked: set[str] = set()
        for question in context.metadata.get("asked_questions") or []:
            asked.add(normalize_question(question))
        for output in context.previous_outputs:
            asked.add(normalize_question(output))
        for used in self._used:
            asked.add(normalize_question(used))
        return asked

    def _unused_from(self, candidates: Iterable[str], asked: set[str]) -> str | None:
        used = {normalize_question(u) for u in self._used}
        for question in candidates:
            normalized = normalize_question(question)
            if normalized in used or normalized in asked:
                continue
            if any(is_similar_question(a, normalized) for a in asked):
                continue
            return question
        return None

    def _deduce_best_guess(self, context: FallbackContext) -> str | None:
        if not self.guess_rules:
            return None

        keywords = extract_context_keywords(context)
        default_rule: GuessRule | None = None
        for rule in self.guess_rules:
            if rule.is_default_rule:
                default_rule = rule
                continue
            if rule.matches(keywords):
                return rule.get_guess()

        return default_rule.get_guess() if default_rule else None


def extract_context_keywords(context: FallbackContext) -> set[str]:
    """Known keywords mentioned in affirmative answers.

    Uses ``yes_answers`` metadata when present, otherwise earlier outputs in
    the ``question: yes`` form.
    """
    yes_answers = context.metadata.get("yes_answers")
    if yes_answers is None:
        yes_answers = [
            output
            for output in context.previous_outputs
            if ": yes" in output.lower() or ":yes" in output.lower()
        ]

    keywords: set[str] = set()
    for answer in yes_answers:
        lower = answer.lower()
        keywords.update(k for k in CONTEXT_KEYWORDS if k in lower)
    return keywords


def _pool_matches(pool: FallbackPool, keywords: set[str]) -> bool:
    if not pool.context:
        return True
    return all(any(c.lower() in k for k in keywords) for c in pool.context)
