"""Rate-limit classification of agent output and the fallback/backoff policy."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ralph_loop.loop.errors import RateLimitExhausted
from ralph_loop.loop.models import EngineResult, RateLimitKind

if TYPE_CHECKING:
    from ralph_loop.loop.backend.base import AgentEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimitRule:
    """One named indicator family with its severity."""

    name: str
    kind: RateLimitKind
    pattern: re.Pattern[str]


def _rule(name: str, kind: RateLimitKind, pattern: str) -> RateLimitRule:
    return RateLimitRule(name=name, kind=kind, pattern=re.compile(pattern, re.IGNORECASE))


# Order matters: quota/billing phrases win over throttling phrases when both
# appear in the same output.
RATE_LIMIT_RULES: tuple[RateLimitRule, ...] = (
    _rule(
        "not_included_in_plan",
        RateLimitKind.HARD,
        r"\bnot[\s_-]?included[\s_-]?in[\s_-]?(?:your|the|this)?[\s_-]?plan\b",
    ),
    _rule(
        "insufficient_quota",
        RateLimitKind.HARD,
        r"\binsufficient[\s_-]?(?:quota|balance|credits?)\b",
    ),
    _rule(
        "quota_exhausted",
        RateLimitKind.HARD,
        r"\bquota\b[\w\s'\"-]{0,30}?\b(?:exceeded|reached|exhausted)\b"
        r"|\b(?:exceeded|reached|exhausted)\b[\w\s'\"-]{0,30}?\bquota\b"
        r"|\bresource[\s_-]?exhausted\b",
    ),
    _rule(
        "billing",
        RateLimitKind.HARD,
        r"\bbilling[\s_-]?(?:details|issue|required|limit)\b|\bexceeded\b[\w\s]{0,20}\busage[\s_-]?tier\b",
    ),
    _rule(
        "rate_limit",
        RateLimitKind.SOFT,
        r"\brate[\s_-]?limit(?:s|ed|ing)?\b",
    ),
    _rule(
        "http_429",
        RateLimitKind.SOFT,
        r"\bhttp(?:/\d(?:\.\d)?)?\W{0,3}429\b"
        r"|\b(?:status(?:[\s_-]?code)?|error|code)\W{0,3}429\b|\b429\W{0,3}too[\s_-]?many\b",
    ),
    _rule(
        "too_many_requests",
        RateLimitKind.SOFT,
        r"\btoo[\s_-]?many[\s_-]?requests?\b",
    ),
    _rule(
        "capacity",
        RateLimitKind.SOFT,
        r"\b(?:over|at)[\s_-]capacity\b|\bovercapacity\b",
    ),
    _rule(
        "retry_after",
        RateLimitKind.SOFT,
        r"\bretry[\s_-]after\b\W{0,3}\d",
    ),
)


class ClassificationMode(str, Enum):
    """How an engine interprets rate-limit indicators."""

    BINARY = "binary"
    CLASSIFIED = "classified"


@dataclass(slots=True, frozen=True)
class RateLimitClassification:
    """Tagged classifier result."""

    kind: RateLimitKind
    matched_rule: str | None = None
    matched_text: str | None = None


NO_RATE_LIMIT = RateLimitClassification(kind=RateLimitKind.NONE)


def classify_rate_limit(
    output: str,
    *,
    mode: ClassificationMode = ClassificationMode.CLASSIFIED,
    rules: tuple[RateLimitRule, ...] = RATE_LIMIT_RULES,
) -> RateLimitClassification:
    """Return the first matching rule, tagged with its severity.

    Binary mode does not distinguish severities: any hit is reported as
    ``HARD`` so the controller goes straight to the fallback path.
    """

    for rule in rules:
        match = rule.pattern.search(output)
        if match is None:
            continue
        kind = rule.kind if mode is ClassificationMode.CLASSIFIED else RateLimitKind.HARD
        return RateLimitClassification(
            kind=kind,
            matched_rule=rule.name,
            matched_text=match.group(0),
        )
    return NO_RATE_LIMIT


def backoff_seconds(attempt: int, base_seconds: float) -> float:
    """Soft-limit wait for 0-indexed ``attempt``."""

    return base_seconds * (2**attempt)


class RateLimitDecision(str, Enum):
    """What the controller does after a rate-limit check."""

    PROCEED = "proceed"
    RETRY = "retry"


class RateLimitController:
    """Backoff and fallback policy applied to each agent invocation result."""

    def __init__(
        self,
        *,
        engine: AgentEngine,
        max_soft_retries: int,
        soft_wait_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.max_soft_retries = max_soft_retries
        self.soft_wait_seconds = soft_wait_seconds
        self.soft_retry_count = 0
        self._sleep = sleep

    def handle(self, result: EngineResult) -> RateLimitDecision:
        """Return ``RETRY`` to re-run the same prompt, ``PROCEED`` otherwise.

        Raises ``RateLimitExhausted`` when no fallback remains.
        """

        if result.rate_limit is RateLimitKind.HARD:
            logger.warning(
                "Hard rate limit detected on %s (rule=%s)",
                self.engine.current_model,
                result.rate_limit_rule,
            )
            self.soft_retry_count = 0
            return self._fallback_or_abort("Hard rate limit and no fallback available")

        if result.rate_limit is RateLimitKind.SOFT:
            if self.soft_retry_count < self.max_soft_retries:
                wait = backoff_seconds(self.soft_retry_count, self.soft_wait_seconds)
                logger.warning(
                    "Soft rate limit: waiting %ss (attempt %d/%d)",
                    _format_seconds(wait),
                    self.soft_retry_count + 1,
                    self.max_soft_retries,
                )
                self._sleep(wait)
                self.soft_retry_count += 1
                return RateLimitDecision.RETRY

            logger.warning("Soft rate limit: exhausted %d retries", self.max_soft_retries)
            self.soft_retry_count = 0
            return self._fallback_or_abort("Soft rate limit persisted, no fallback available")

        self.soft_retry_count = 0
        return RateLimitDecision.PROCEED

    def _fallback_or_abort(self, message: str) -> RateLimitDecision:
        previous_model = self.engine.current_model
        if self.engine.capabilities.supports_fallback and self.engine.switch_to_fallback():
            logger.warning(
                "Rate limit on %s, switching to fallback: %s",
                previous_model,
                self.engine.current_model,
            )
            return RateLimitDecision.RETRY
        logger.error(message)
        raise RateLimitExhausted(message)


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"
