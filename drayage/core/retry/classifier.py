# drayage/core/retry/classifier.py
"""
Maps raw exceptions onto the ErrorCategory taxonomy.

Throw sites that know what went wrong raise a TaskFailure subclass and are
classified exactly. Everything else is classified by exception type, then
by keyword match on the message as a last resort.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from drayage.core.errors import ConsistencyViolation, LockUnavailableError
from drayage.core.types.errors import ErrorCategory, Severity


class TaskFailure(Exception):
    """Base of the failures handlers raise on purpose.

    Each subclass fixes its category; `severity` overrides the category's
    base severity when given.
    """

    category: ClassVar[ErrorCategory] = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, severity: Optional[Severity] = None) -> None:
        super().__init__(message)
        self.message = message
        self.severity = severity


class NetworkFailure(TaskFailure):
    category = ErrorCategory.NETWORK


class DatabaseFailure(TaskFailure):
    category = ErrorCategory.DATABASE


class ValidationFailure(TaskFailure):
    category = ErrorCategory.VALIDATION


class AuthenticationFailure(TaskFailure):
    category = ErrorCategory.AUTHENTICATION


class RateLimitFailure(TaskFailure):
    category = ErrorCategory.RATE_LIMIT


class BusinessRuleFailure(TaskFailure):
    category = ErrorCategory.BUSINESS_LOGIC


class SystemFailure(TaskFailure):
    category = ErrorCategory.SYSTEM


@dataclass(frozen=True)
class ErrorClassification:
    error_type: str
    category: ErrorCategory
    severity: Severity
    recoverable: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            'error_type': self.error_type,
            'category': self.category.value,
            'severity': self.severity.value,
            'recoverable': self.recoverable,
            'message': self.message,
        }

    def format_message(self) -> str:
        """Text persisted to drayage_tasks.error_message."""
        return f'[{self.category.value}] {self.error_type}: {self.message}'


# Checked in order; the first category with a matching keyword wins.
KEYWORD_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.NETWORK, ('timeout', 'connection', 'network', 'curl', 'http')),
    (ErrorCategory.DATABASE, ('sql', 'database', 'deadlock', 'lock')),
    (ErrorCategory.VALIDATION, ('validation', 'invalid', 'format', 'required')),
    (ErrorCategory.AUTHENTICATION, ('auth', 'token', 'unauthorized', 'forbidden')),
    (ErrorCategory.RATE_LIMIT, ('rate limit', 'quota', 'throttle', 'too many')),
    (ErrorCategory.BUSINESS_LOGIC, ('business', 'logic', 'rule')),
    (ErrorCategory.SYSTEM, ('memory', 'disk', 'permission', 'file')),
)

_RECOMMENDATIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.NETWORK: [
        'Check connectivity to the external service',
        'Verify the endpoint URL and DNS resolution',
        'Consider raising the request timeout',
    ],
    ErrorCategory.DATABASE: [
        'Check database connectivity and pool saturation',
        'Look for long-running transactions holding locks',
        'Review recent schema changes',
    ],
    ErrorCategory.VALIDATION: [
        'Fix the task payload; retrying the same input will fail again',
        'Check the producer against the handler input contract',
    ],
    ErrorCategory.AUTHENTICATION: [
        'Refresh or rotate the API credentials',
        'Check the token expiry and granted scopes',
    ],
    ErrorCategory.RATE_LIMIT: [
        'Reduce request concurrency for this integration',
        'Spread the work over a longer window',
        'Check the provider quota',
    ],
    ErrorCategory.BUSINESS_LOGIC: [
        'Review the business rule that rejected the operation',
        'Resolve the data conflict before a manual retry',
    ],
    ErrorCategory.SYSTEM: [
        'Check worker memory and disk headroom',
        'Verify file permissions of the worker user',
    ],
    ErrorCategory.UNKNOWN: [
        'Inspect the execution log for the full error',
        'Raise a TaskFailure subclass at the throw site to classify it',
    ],
}


def _is_driver_error(error: BaseException) -> bool:
    if isinstance(error, (DBAPIError, SQLAlchemyError)):
        return True
    # psycopg errors without the SQLAlchemy wrapper
    return type(error).__module__.split('.')[0] == 'psycopg'


class ErrorClassifier:
    """Stateless; one instance can be shared by every worker loop."""

    def classify(self, error: BaseException) -> ErrorClassification:
        category, severity = self._categorize(error)
        if category == ErrorCategory.UNKNOWN and error.__cause__ is not None:
            cause_category, cause_severity = self._categorize(error.__cause__)
            if cause_category != ErrorCategory.UNKNOWN:
                category, severity = cause_category, cause_severity

        if isinstance(error, ConsistencyViolation):
            recoverable = False
        else:
            recoverable = category.recoverable

        return ErrorClassification(
            error_type=type(error).__name__,
            category=category,
            severity=severity,
            recoverable=recoverable,
            message=_message_of(error),
        )

    def _categorize(self, error: BaseException) -> tuple[ErrorCategory, Severity]:
        match error:
            case TaskFailure():
                return error.category, error.severity or error.category.base_severity
            case ConsistencyViolation():
                return ErrorCategory.BUSINESS_LOGIC, Severity.CRITICAL
            case LockUnavailableError():
                return ErrorCategory.DATABASE, Severity.MEDIUM
            case _ if _is_driver_error(error):
                return ErrorCategory.DATABASE, Severity.HIGH
            case TimeoutError() | ConnectionError():
                return ErrorCategory.NETWORK, ErrorCategory.NETWORK.base_severity
            case MemoryError() | PermissionError():
                return ErrorCategory.SYSTEM, ErrorCategory.SYSTEM.base_severity

        category = self.match_keywords(_message_of(error))
        return category, category.base_severity

    @staticmethod
    def match_keywords(message: str) -> ErrorCategory:
        lowered = message.lower()
        for category, keywords in KEYWORD_PATTERNS:
            if any(keyword in lowered for keyword in keywords):
                return category
        return ErrorCategory.UNKNOWN

    @staticmethod
    def recommendations(category: ErrorCategory) -> list[str]:
        return list(_RECOMMENDATIONS.get(category, _RECOMMENDATIONS[ErrorCategory.UNKNOWN]))


def _message_of(error: BaseException) -> str:
    if isinstance(error, TaskFailure):
        return error.message
    if isinstance(error, (ConsistencyViolation, LockUnavailableError)):
        return error.message
    text = str(error)
    return text or type(error).__name__
