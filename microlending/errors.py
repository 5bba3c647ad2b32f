"""
Error Taxonomy Module

Every failure the lending core reports is one of these. The API layer maps
them to HTTP status codes; callers decide compensation by type.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for all lending core errors"""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LendingError):
    """Bad input (amount out of range, missing reason). No state change."""
    status_code = 400


class NotFound(LendingError):
    """Missing loan, user or transaction"""
    status_code = 404


class PermissionDenied(LendingError):
    """Principal may not act on this resource"""
    status_code = 403


class StateConflict(LendingError):
    """Illegal transition or lost compare-and-swap race. No state change."""
    status_code = 409


class AutoApprovalCriteriaNotMet(StateConflict):
    """Auto-approval refused; ``criteria`` names which checks failed"""

    def __init__(self, criteria: Dict[str, bool]):
        failed = [name for name, passed in criteria.items() if not passed]
        super().__init__(
            f"Loan does not meet auto-approval criteria: {', '.join(failed)}",
            details={"criteria": dict(criteria)}
        )
        self.criteria = dict(criteria)

    @property
    def failed_criteria(self) -> list:
        return [name for name, passed in self.criteria.items() if not passed]


class ProviderError(LendingError):
    """Payment provider rejected or failed the request"""
    status_code = 502


class PaymentDeclined(ProviderError):
    """Synchronous charge completed with an authoritative failure"""
    status_code = 402


class ProviderTimeout(ProviderError):
    """Payment provider did not answer within the configured bound"""
    status_code = 504
