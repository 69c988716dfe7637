"""Deterministic job failure categorization for worker retry policy."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

FAILURE_CATEGORIZER_VERSION = 1
UNKNOWN_FAILURE_RETRY_BUDGET = 1


class FailureCategory(str, Enum):
    FETCH_REJECTED = "fetch_rejected"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH_EXPIRED = "auth_expired"
    PLATFORM_BLOCKED = "platform_blocked"
    POLICY_VIOLATION = "policy_violation"
    MEDIA_ERROR = "media_error"
    NETWORK_ERROR = "network_error"
    DOMAIN_UNAVAILABLE = "domain_unavailable"
    ECONOMICS_FAILED = "economics_failed"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True, frozen=True)
class FailureRule:
    category: FailureCategory
    pattern: re.Pattern[str]
    confidence: Confidence
    human_readable: str
    suggested_action: str
    retryable: bool


@dataclass(slots=True, frozen=True)
class ExtractedDetails:
    retry_after_seconds: int | None = None
    status_code: int | None = None

    def to_dict(self) -> dict[str, int]:
        payload: dict[str, int] = {}
        if self.retry_after_seconds is not None:
            payload["retryAfterSeconds"] = self.retry_after_seconds
        if self.status_code is not None:
            payload["statusCode"] = self.status_code
        return payload


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Categorization result consumed by retry policy and operator tooling."""

    category: FailureCategory
    confidence: Confidence
    human_readable: str
    suggested_action: str
    retryable: bool
    extracted_details: ExtractedDetails = field(default_factory=ExtractedDetails)
    matched_pattern: str | None = None
    retry_budget: int | None = None


@dataclass(slots=True, frozen=True)
class SuggestedAction:
    action: str
    description: str
    can_retry: bool
    auto_retry: bool = False
    retry_after_seconds: int | None = None


@dataclass(slots=True, frozen=True)
class FailureReport:
    classification: FailureClassification
    action: SuggestedAction


def _rule(  # noqa: PLR0913
    category: FailureCategory,
    pattern: str,
    confidence: Confidence,
    human_readable: str,
    suggested_action: str,
    *,
    retryable: bool,
) -> FailureRule:
    return FailureRule(
        category=category,
        pattern=re.compile(pattern, re.IGNORECASE),
        confidence=confidence,
        human_readable=human_readable,
        suggested_action=suggested_action,
        retryable=retryable,
    )


# Ordered by precedence: first match wins.
FAILURE_RULES: tuple[FailureRule, ...] = (
    _rule(
        FailureCategory.FETCH_REJECTED,
        r"outbound.?fetch.?rejected",
        Confidence.HIGH,
        "Outbound fetch rejected by URL policy",
        "Fix or replace the target URL; policy rejections are never retried.",
        retryable=False,
    ),
    _rule(
        FailureCategory.RATE_LIMIT,
        r"429|rate.?limit|too.?many.?requests|retry.?after",
        Confidence.HIGH,
        "Rate limit exceeded",
        "Wait for the retry window or reduce per-job-type throughput.",
        retryable=True,
    ),
    _rule(
        FailureCategory.TIMEOUT,
        r"timeout|timed out|etimedout|deadline exceeded",
        Confidence.HIGH,
        "Request timed out",
        "Retry automatically with backoff.",
        retryable=True,
    ),
    _rule(
        FailureCategory.AUTH_EXPIRED,
        r"401|unauthorized|invalid.?token|token.?expired|oauth|forbidden.*token",
        Confidence.HIGH,
        "Authentication expired or invalid",
        "Reconnect the account or refresh credentials.",
        retryable=False,
    ),
    _rule(
        FailureCategory.PLATFORM_BLOCKED,
        r"banned|blocked|suspended|restricted|account.?disabled",
        Confidence.HIGH,
        "Account or target is blocked by platform policy",
        "Use a different account or target and review platform policy.",
        retryable=False,
    ),
    _rule(
        FailureCategory.POLICY_VIOLATION,
        r"policy|violation|rejected|moderation|unsafe|disallowed|trademark",
        Confidence.MEDIUM,
        "Content failed policy checks",
        "Revise content and re-run policy checks before retry.",
        retryable=False,
    ),
    _rule(
        FailureCategory.MEDIA_ERROR,
        r"image|video|media|upload|mime|unsupported format|ffmpeg",
        Confidence.MEDIUM,
        "Media processing or upload failed",
        "Validate media format and size, then retry.",
        retryable=False,
    ),
    _rule(
        FailureCategory.NETWORK_ERROR,
        r"econnrefused|econnreset|enotfound|connecterror|connection (?:refused|reset)"
        r"|\bdns\b|network|socket hang up|50[234]",
        Confidence.HIGH,
        "Network or upstream service error",
        "Retry automatically; escalate if persistent.",
        retryable=True,
    ),
    _rule(
        FailureCategory.DOMAIN_UNAVAILABLE,
        r"domain not available|already registered|whois unavailable",
        Confidence.HIGH,
        "Domain is unavailable or not yet ready",
        "Switch candidate or place it on a watchlist until its state changes.",
        retryable=False,
    ),
    _rule(
        FailureCategory.ECONOMICS_FAILED,
        r"\broi\b|economics|max bid|underwriting|confidence too low|negative expectancy"
        r"|exceeds.*threshold",
        Confidence.HIGH,
        "Candidate failed underwriting economics",
        "Reject or lower the bid plan based on hard fail thresholds.",
        retryable=False,
    ),
)

_RETRY_AFTER_DIRECT = re.compile(r"retry.?after\s*[:=]?\s*(\d+)", re.IGNORECASE)
_RETRY_AFTER_MINUTES = re.compile(r"(\d+)\s*minute", re.IGNORECASE)
_RETRY_AFTER_SECONDS = re.compile(r"(\d+)\s*second", re.IGNORECASE)

_TRANSIENT_CATEGORIES = frozenset(
    {FailureCategory.RATE_LIMIT, FailureCategory.TIMEOUT, FailureCategory.NETWORK_ERROR},
)

# Checked before message patterns; a fetch rejection still wins.
STATUS_CODE_CATEGORIES: dict[int, FailureCategory] = {
    401: FailureCategory.AUTH_EXPIRED,
    408: FailureCategory.TIMEOUT,
    429: FailureCategory.RATE_LIMIT,
    502: FailureCategory.NETWORK_ERROR,
    503: FailureCategory.NETWORK_ERROR,
    504: FailureCategory.TIMEOUT,
}
_RULES_BY_CATEGORY = {rule.category: rule for rule in FAILURE_RULES}


def categorize(error: BaseException | str, status_code: int | None = None) -> FailureClassification:
    """Map an exception or message onto a stable failure category."""

    message = _error_message(error)
    details = ExtractedDetails(
        retry_after_seconds=extract_retry_after_seconds(message),
        status_code=status_code if status_code is not None else _status_code(error),
    )
    status_category = (
        STATUS_CODE_CATEGORIES.get(details.status_code)
        if details.status_code is not None
        else None
    )
    rejected = _RULES_BY_CATEGORY[FailureCategory.FETCH_REJECTED].pattern.search(message)
    if status_category is not None and rejected is None:
        logger.debug("Failure status %s mapped to %s", details.status_code, status_category.value)
        return _from_rule(
            _RULES_BY_CATEGORY[status_category],
            details,
            matched_pattern=f"HTTP {details.status_code}",
        )

    for rule in FAILURE_RULES:
        match = rule.pattern.search(message)
        if match is None:
            continue
        logger.debug("Failure matched %s via %r", rule.category.value, match.group(0))
        return _from_rule(rule, details, matched_pattern=match.group(0))

    logger.debug("No failure pattern matched; classifying as unknown")
    # Unclassified failures get a small bounded retry until ops settle a policy.
    return FailureClassification(
        category=FailureCategory.UNKNOWN,
        confidence=Confidence.LOW,
        human_readable="Unknown failure",
        suggested_action="Inspect logs and classify this failure pattern.",
        retryable=True,
        extracted_details=ExtractedDetails(status_code=details.status_code),
        retry_budget=UNKNOWN_FAILURE_RETRY_BUDGET,
    )


def _from_rule(
    rule: FailureRule,
    details: ExtractedDetails,
    *,
    matched_pattern: str,
) -> FailureClassification:
    return FailureClassification(
        category=rule.category,
        confidence=rule.confidence,
        human_readable=rule.human_readable,
        suggested_action=rule.suggested_action,
        retryable=rule.retryable,
        extracted_details=details,
        matched_pattern=matched_pattern,
    )


def is_transient(category: FailureCategory) -> bool:
    return category in _TRANSIENT_CATEGORIES


def is_valid_category(value: str) -> bool:
    return value in {category.value for category in FailureCategory}


def suggested_action(
    category: FailureCategory,
    details: ExtractedDetails | None = None,
) -> SuggestedAction:
    """Operator guidance for one category."""

    if category == FailureCategory.RATE_LIMIT:
        return SuggestedAction(
            action="Wait and retry",
            description="Request rate exceeded. Back off and retry automatically.",
            can_retry=True,
            auto_retry=True,
            retry_after_seconds=details.retry_after_seconds if details else None,
        )
    if category in {FailureCategory.TIMEOUT, FailureCategory.NETWORK_ERROR}:
        return SuggestedAction(
            action="Retry operation",
            description="Transient external error; retry with exponential backoff.",
            can_retry=True,
            auto_retry=True,
        )
    actions = {
        FailureCategory.FETCH_REJECTED: (
            "Fix target URL",
            "The URL resolves to a forbidden address.",
        ),
        FailureCategory.AUTH_EXPIRED: (
            "Reconnect account",
            "Credentials expired or invalid. Refresh the integration auth.",
        ),
        FailureCategory.PLATFORM_BLOCKED: (
            "Change target or account",
            "Platform-level restriction detected.",
        ),
        FailureCategory.POLICY_VIOLATION: (
            "Revise content",
            "Adjust content to pass policy and moderation checks.",
        ),
        FailureCategory.MEDIA_ERROR: (
            "Fix media asset",
            "Validate format, dimensions and upload constraints.",
        ),
        FailureCategory.DOMAIN_UNAVAILABLE: (
            "Watchlist or replace domain",
            "Domain cannot proceed in its current state.",
        ),
        FailureCategory.ECONOMICS_FAILED: ("Reject candidate", "Underwriting thresholds not met."),
    }
    if category in actions:
        action, description = actions[category]
        return SuggestedAction(action=action, description=description, can_retry=False)
    return SuggestedAction(
        action="Inspect logs",
        description="No known failure signature matched.",
        can_retry=True,
        auto_retry=True,
    )


def failure_report(error: BaseException | str, status_code: int | None = None) -> FailureReport:
    classification = categorize(error, status_code)
    return FailureReport(
        classification=classification,
        action=suggested_action(classification.category, classification.extracted_details),
    )


def extract_retry_after_seconds(message: str) -> int | None:
    for pattern, factor in (
        (_RETRY_AFTER_DIRECT, 1),
        (_RETRY_AFTER_MINUTES, 60),
        (_RETRY_AFTER_SECONDS, 1),
    ):
        match = pattern.search(message)
        if match is not None:
            return int(match.group(1)) * factor
    return None


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


def _status_code(error: BaseException | str) -> int | None:
    if isinstance(error, str):
        return None
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None
