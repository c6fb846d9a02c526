from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class OperationResult:
    """
    Outcome of a service operation.
    Expected business failures come back as ``success=False`` with an error
    code and HTTP status instead of raising.
    """

    success: bool
    message: str = ""
    error: Optional[str] = None
    status_code: int = 200
    details: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", status_code: int = 200, **data: Any) -> "OperationResult":
        return cls(success=True, message=message, status_code=status_code, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        message: str = "",
        status_code: int = 400,
        **details: Any,
    ) -> "OperationResult":
        return cls(
            success=False,
            message=message or error,
            error=error,
            status_code=status_code,
            details=details,
        )

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            body: Dict[str, Any] = {"success": True}
            if self.message:
                body["message"] = self.message
            body.update(self.data)
            return body
        body = {"success": False, "error": self.error, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body
