from drayage.core.retry.classifier import (
    AuthenticationFailure,
    BusinessRuleFailure,
    DatabaseFailure,
    ErrorClassification,
    ErrorClassifier,
    NetworkFailure,
    RateLimitFailure,
    SystemFailure,
    TaskFailure,
    ValidationFailure,
)
from drayage.core.retry.manager import FailureOutcome, RetryManager
from drayage.core.retry.policy import RetryPlan, RetryPolicyEngine

__all__ = [
    'AuthenticationFailure',
    'BusinessRuleFailure',
    'DatabaseFailure',
    'ErrorClassification',
    'ErrorClassifier',
    'FailureOutcome',
    'NetworkFailure',
    'RateLimitFailure',
    'RetryManager',
    'RetryPlan',
    'RetryPolicyEngine',
    'SystemFailure',
    'TaskFailure',
    'ValidationFailure',
]
