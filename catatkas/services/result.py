from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    STORE_UNAVAILABLE = "store_unavailable"
    USAGE_ERROR = "usage_error"
    INVALID_AMOUNT = "invalid_amount"
    UNKNOWN_CATEGORY = "unknown_category"
    DB_ERROR = "db_error"
    UNKNOWN = "unknown"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str | ErrorCode = ErrorCode.UNKNOWN) -> "Result[T]":
        if isinstance(code, ErrorCode):
            code = code.value
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    @property
    def is_store_failure(self) -> bool:
        return not self.ok and self.error_code == ErrorCode.STORE_UNAVAILABLE.value
