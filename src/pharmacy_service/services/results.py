"""
Operation results returned by the service layer.

Services never raise across their boundary for expected failures; they
return an OperationResult and the route layer maps its error kind to an
HTTP status.
"""
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar
from pydantic import ValidationError
import enum

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


@dataclass
class OperationResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    # Status reported by an upstream service, passed through verbatim
    status_code: Optional[int] = None
    details: Optional[Dict[str, List[str]]] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "OperationResult":
        return cls(data=data, message=message)

    @classmethod
    def fail(
        cls,
        error: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, List[str]]] = None,
    ) -> "OperationResult":
        return cls(error=error, message=message, status_code=status_code, details=details)


def field_errors(exc: ValidationError) -> Dict[str, List[str]]:
    """Flatten a pydantic ValidationError into {field: [messages]}"""
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "__root__"
        errors.setdefault(field, []).append(err["msg"])
    return errors
