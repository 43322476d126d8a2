# drayage/core/types/errors.py
"""
Error taxonomy shared by the classifier, retry policies and persisted errors.
This module should not import from other application modules.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    NETWORK = 'network'
    DATABASE = 'database'
    VALIDATION = 'validation'
    AUTHENTICATION = 'authentication'
    RATE_LIMIT = 'rate_limit'
    BUSINESS_LOGIC = 'business_logic'
    SYSTEM = 'system'
    UNKNOWN = 'unknown'

    @property
    def recoverable(self) -> bool:
        return self not in NON_RECOVERABLE_CATEGORIES

    @property
    def base_severity(self) -> 'Severity':
        return BASE_SEVERITY[self]


class Severity(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

NON_RECOVERABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset({
    ErrorCategory.VALIDATION,
    ErrorCategory.BUSINESS_LOGIC,
})

BASE_SEVERITY: dict[ErrorCategory, Severity] = {
    ErrorCategory.NETWORK: Severity.MEDIUM,
    ErrorCategory.DATABASE: Severity.HIGH,
    ErrorCategory.VALIDATION: Severity.MEDIUM,
    ErrorCategory.AUTHENTICATION: Severity.HIGH,
    ErrorCategory.RATE_LIMIT: Severity.MEDIUM,
    ErrorCategory.BUSINESS_LOGIC: Severity.HIGH,
    ErrorCategory.SYSTEM: Severity.HIGH,
    ErrorCategory.UNKNOWN: Severity.MEDIUM,
}
