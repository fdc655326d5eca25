from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailable(Exception):
    """Raised when the shared counter store cannot be reached.

    Distinct from a missing key: callers decide whether to fail open
    (throttles) or fail closed (sessions).
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.detail = detail or {}


__all__ = ["StoreUnavailable"]
