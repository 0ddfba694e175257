"""Error hierarchy for the synchronization engine.

Every error carries a code, a category and the HTTP status the transport
answers with. Business failures inside concepts are NOT raised: concepts
return ``{"error": "..."}`` payloads that flow back through ``respond``.
"""
from __future__ import annotations
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    DISPATCH = "dispatch"


class SyncEngineError(Exception):
    """Base exception for engine and transport failures."""

    def __init__(self, message: str, code: str, category: ErrorCategory, http_status: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.http_status = http_status

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "category": self.category.value}


# ====== Registration (startup) ======

class RegistrationError(SyncEngineError):
    """A concept or synchronization is malformed."""
    def __init__(self, message: str):
        super().__init__(message, "REGISTRATION_ERROR", ErrorCategory.CONFIGURATION)


class UnknownActionError(SyncEngineError):
    def __init__(self, concept: str, action: str):
        super().__init__(
            f"{concept}.{action} not found", "UNKNOWN_ACTION", ErrorCategory.NOT_FOUND, 404,
        )
        self.concept = concept
        self.action = action


class UnboundVariableError(SyncEngineError):
    """A then-template referenced a variable the frame does not bind."""
    def __init__(self, sync: str, var: str):
        super().__init__(
            f"Sync {sync} references unbound variable {var}",
            "UNBOUND_VARIABLE", ErrorCategory.CONFIGURATION,
        )
        self.sync = sync
        self.var = var


# ====== Runtime ======

class DispatchError(SyncEngineError):
    """One or more follow-up actions failed while the others still ran."""
    def __init__(self, failures: List[BaseException]):
        first = failures[0]
        super().__init__(
            f"{len(failures)} dispatched action(s) failed; first: {first!r}",
            "DISPATCH_FAILED", ErrorCategory.DISPATCH,
        )
        self.failures = failures


class RequestTimeoutError(SyncEngineError):
    def __init__(self, request_id: str, timeout: float):
        super().__init__(
            f"Request {request_id} timed out after {int(timeout * 1000)}ms",
            "REQUEST_TIMEOUT", ErrorCategory.TIMEOUT, 504,
        )
        self.request_id = request_id
        self.timeout = timeout

    def to_response(self) -> Dict[str, Any]:
        return {"error": "Request timed out."}


class RequestNotPendingError(SyncEngineError):
    def __init__(self, request_id: str, reason: Optional[str] = None):
        super().__init__(
            reason or f"Request {request_id} is not pending or does not exist: it may have timed-out.",
            "REQUEST_NOT_PENDING", ErrorCategory.NOT_FOUND, 404,
        )
        self.request_id = request_id
