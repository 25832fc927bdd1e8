"""
Error taxonomy for payment status resolution.

None of these escape resolve() or resolve_many(); they mark which
degradation path a failure takes.
"""

from __future__ import annotations

from typing import Any, Optional


class PaymentStatusError(Exception):
    """Base class for engine errors."""


class NetworkError(PaymentStatusError):
    """Remote call unreachable, timed out, or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DataError(PaymentStatusError):
    """Malformed or missing record."""


class ReconciliationError(PaymentStatusError):
    """Repair action failed or reported failure."""

    def __init__(self, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload
