"""Failure classification.

Maps an arbitrary failure value (exception, structured error payload, string,
status code or unknown object) to a ``ClassifiedError``. Classification is a
small interpreter over an ordered, static table of predicate rules; the first
matching rule wins.

Transport-level rules (network, timeout) are checked before permission and
validation because transport failures can carry misleading status codes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

import httpx
import pydantic

from eventsync.core.errors.resilience import AttemptTimeoutError
from eventsync.core.resilience.models import ClassifiedError, ErrorCategory, Severity

logger = logging.getLogger(__name__)

_MESSAGE_KEYS = ("message", "error", "detail", "msg", "error_description")
_STATUS_KEYS = ("status", "status_code", "statusCode")


@dataclass(frozen=True)
class ErrorFacts:
    """Best-effort facts extracted from a failure value."""

    message: str = ""
    code: Optional[str] = None
    status: Optional[int] = None
    raw: Any = None

    @property
    def lowered(self) -> str:
        return self.message.lower()


@dataclass(frozen=True)
class ClassificationRule:
    """One predicate -> category rule in the classification table."""

    name: str
    predicate: Callable[[ErrorFacts], bool]
    category: ErrorCategory
    severity: Severity
    retryable: bool


# =============================================================================
# Fact extraction
# =============================================================================


def _coerce_status(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 100 <= value <= 599 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if 100 <= number <= 599 else None
    return None


def _coerce_code(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def _has_custom_str(value: Any) -> bool:
    return type(value).__str__ is not object.__str__


def _facts_from_mapping(data: Mapping[Any, Any]) -> ErrorFacts:
    message = ""
    for key in _MESSAGE_KEYS:
        candidate = data.get(key)
        if isinstance(candidate, str) and candidate:
            message = candidate
            break
        if isinstance(candidate, Mapping):
            nested = candidate.get("message")
            if isinstance(nested, str) and nested:
                message = nested
                break
    status = None
    for key in _STATUS_KEYS:
        status = _coerce_status(data.get(key))
        if status is not None:
            break
    code = _coerce_code(data.get("code"))
    if status is None and code is not None:
        status = _coerce_status(code)
    return ErrorFacts(message=message, code=code, status=status, raw=data)


def _facts_from_exception(error: BaseException) -> ErrorFacts:
    message = str(error)
    if not message:
        message = type(error).__name__

    status = None
    if isinstance(error, httpx.HTTPStatusError):
        status = _coerce_status(error.response.status_code)
    if status is None:
        for attr in _STATUS_KEYS:
            status = _coerce_status(getattr(error, attr, None))
            if status is not None:
                break

    code = _coerce_code(getattr(error, "code", None))
    if code is None and isinstance(error, OSError) and error.errno is not None:
        code = str(error.errno)
    if status is None and code is not None and not isinstance(error, OSError):
        status = _coerce_status(code)
    return ErrorFacts(message=message, code=code, status=status, raw=error)


def _facts_from_object(error: Any) -> ErrorFacts:
    message = getattr(error, "message", None)
    if not isinstance(message, str):
        message = str(error) if _has_custom_str(error) else ""
    status = None
    for attr in _STATUS_KEYS:
        status = _coerce_status(getattr(error, attr, None))
        if status is not None:
            break
    code = _coerce_code(getattr(error, "code", None))
    return ErrorFacts(message=message, code=code, status=status, raw=error)


def extract_facts(error: Any) -> Optional[ErrorFacts]:
    """Extract message/code/status from any value.

    Returns None when neither a message nor a code/status can be found.
    Never raises.
    """
    try:
        if error is None or isinstance(error, bool):
            return None
        if isinstance(error, str):
            facts = ErrorFacts(message=error, raw=error)
        elif isinstance(error, int):
            facts = ErrorFacts(status=_coerce_status(error), code=str(error), raw=error)
        elif isinstance(error, BaseException):
            facts = _facts_from_exception(error)
        elif isinstance(error, Mapping):
            facts = _facts_from_mapping(error)
        else:
            facts = _facts_from_object(error)
    except Exception:  # noqa: BLE001 - hostile __str__/__getattr__ implementations
        logger.debug("Could not extract facts from %s", type(error).__name__, exc_info=True)
        return None

    if not facts.message and facts.code is None and facts.status is None:
        return None
    return facts


# =============================================================================
# Predicates
# =============================================================================

_NETWORK_CODES = frozenset(
    {
        "NETWORK_ERROR",
        "CONNECTION_FAILED",
        "ECONNREFUSED",
        "ECONNRESET",
        "ECONNABORTED",
        "ENOTFOUND",
        "EAI_AGAIN",
        "ENETUNREACH",
        "EHOSTUNREACH",
    }
)
_NETWORK_PHRASES = (
    "failed to fetch",
    "networkerror",
    "network error",
    "network request failed",
    "network is unreachable",
    "connection refused",
    "connection reset",
    "connection aborted",
    "connection error",
    "connection failed",
    "connection lost",
    "name or service not known",
    "getaddrinfo",
    "dns",
    "no internet",
)
_TIMEOUT_CODES = frozenset({"TIMEOUT", "REQUEST_TIMEOUT", "ETIMEDOUT", "ESOCKETTIMEDOUT", "57014"})
_TIMEOUT_PHRASES = ("timeout", "timed out", "deadline exceeded")
_PERMISSION_CODES = frozenset(
    {"401", "403", "42501", "PERMISSION_DENIED", "AUTH_ERROR", "SESSION_EXPIRED", "ACCOUNT_LOCKED", "PGRST301"}
)
_PERMISSION_PHRASES = (
    "permission denied",
    "access denied",
    "insufficient privileges",
    "insufficient permissions",
    "not authorized",
    "unauthorized",
    "forbidden",
    "authentication failed",
    "invalid credentials",
    "session expired",
    "account locked",
    "row-level security",
)
_VALIDATION_CODES = frozenset({"VALIDATION_ERROR", "INVALID_INPUT", "22P02", "23502", "23505", "23514", "PGRST102"})
_VALIDATION_STATUSES = frozenset({400, 409, 422})
_VALIDATION_PHRASES = (
    "validation",
    "invalid",
    "malformed",
    "is required",
    "must be",
    "at least",
    "violates",
    "duplicate key",
)
_CLIENT_PHRASES = (
    "typeerror",
    "referenceerror",
    "syntaxerror",
    "nonetype",
    "is not callable",
    "has no attribute",
    "is not defined",
    "cannot read propert",
)
_CLIENT_EXCEPTIONS = (
    TypeError,
    AttributeError,
    NameError,
    KeyError,
    IndexError,
    AssertionError,
    NotImplementedError,
    ZeroDivisionError,
    RecursionError,
)


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    return any(phrase in text for phrase in phrases)


def _is_network(facts: ErrorFacts) -> bool:
    raw = facts.raw
    if isinstance(raw, httpx.TransportError) and not isinstance(raw, httpx.TimeoutException):
        return True
    if isinstance(raw, ConnectionError):
        return True
    if facts.code is not None and facts.code.upper() in _NETWORK_CODES:
        return True
    return _contains_any(facts.lowered, _NETWORK_PHRASES)


def _is_timeout(facts: ErrorFacts) -> bool:
    raw = facts.raw
    if isinstance(raw, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException, AttemptTimeoutError)):
        return True
    if facts.status == 408:
        return True
    if facts.code is not None and facts.code.upper() in _TIMEOUT_CODES:
        return True
    return _contains_any(facts.lowered, _TIMEOUT_PHRASES)


def _is_permission(facts: ErrorFacts) -> bool:
    if isinstance(facts.raw, PermissionError):
        return True
    if facts.status in (401, 403):
        return True
    if facts.code is not None and facts.code.upper() in _PERMISSION_CODES:
        return True
    return _contains_any(facts.lowered, _PERMISSION_PHRASES)


def _is_validation(facts: ErrorFacts) -> bool:
    if isinstance(facts.raw, pydantic.ValidationError):
        return True
    # "must be str, not int" from a TypeError is a local bug, not bad input
    if isinstance(facts.raw, _CLIENT_EXCEPTIONS):
        return False
    if facts.status in _VALIDATION_STATUSES:
        return True
    if facts.code is not None and facts.code.upper() in _VALIDATION_CODES:
        return True
    return _contains_any(facts.lowered, _VALIDATION_PHRASES)


def _is_server(facts: ErrorFacts) -> bool:
    if facts.status is not None and 500 <= facts.status <= 599:
        return True
    return _contains_any(
        facts.lowered,
        ("internal server error", "service unavailable", "bad gateway", "server error"),
    )


def _is_client(facts: ErrorFacts) -> bool:
    if isinstance(facts.raw, _CLIENT_EXCEPTIONS):
        return True
    return _contains_any(facts.lowered, _CLIENT_PHRASES)


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("network", _is_network, ErrorCategory.NETWORK, Severity.WARNING, True),
    ClassificationRule("timeout", _is_timeout, ErrorCategory.TIMEOUT, Severity.WARNING, True),
    ClassificationRule("permission", _is_permission, ErrorCategory.PERMISSION, Severity.FATAL, False),
    ClassificationRule("validation", _is_validation, ErrorCategory.VALIDATION, Severity.INFO, False),
    ClassificationRule("server", _is_server, ErrorCategory.SERVER, Severity.WARNING, True),
    ClassificationRule("client", _is_client, ErrorCategory.CLIENT, Severity.FATAL, False),
)


# =============================================================================
# Classifier
# =============================================================================


class ErrorClassifier:
    """Ordered rule-table classifier.

    Example:
        >>> classifier = ErrorClassifier()
        >>> classifier.classify(ConnectionRefusedError()).category
        <ErrorCategory.NETWORK: 'network'>
    """

    def __init__(self, rules: Sequence[ClassificationRule] = DEFAULT_RULES) -> None:
        self.rules: tuple[ClassificationRule, ...] = tuple(rules)

    def match(self, facts: ErrorFacts) -> Optional[ClassificationRule]:
        """Return the first rule whose predicate accepts ``facts``."""
        for rule in self.rules:
            try:
                if rule.predicate(facts):
                    return rule
            except Exception:  # noqa: BLE001 - a faulty predicate must not break classification
                logger.warning("Classification rule %s raised; skipping", rule.name, exc_info=True)
        return None

    def classify(self, error: Any) -> ClassifiedError:
        """Classify any value. Never raises."""
        facts = extract_facts(error)
        if facts is None:
            return _unknown(error)

        rule = self.match(facts)
        if rule is None:
            return _unknown(error, facts)

        return ClassifiedError(
            category=rule.category,
            severity=rule.severity,
            retryable=rule.retryable,
            raw_cause=error,
            message=facts.message,
            status=facts.status,
            code=facts.code,
            rule=rule.name,
        )


def _unknown(error: Any, facts: Optional[ErrorFacts] = None) -> ClassifiedError:
    return ClassifiedError(
        category=ErrorCategory.UNKNOWN,
        severity=Severity.WARNING,
        retryable=False,
        raw_cause=error,
        message=facts.message if facts else "",
        status=facts.status if facts else None,
        code=facts.code if facts else None,
        rule="unknown",
    )


_default_classifier = ErrorClassifier()


def classify(error: Any) -> ClassifiedError:
    """Classify ``error`` with the default rule table."""
    return _default_classifier.classify(error)
