# sessionledger/core/result.py
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Outcome(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"   # worked, but a fallback kicked in
    FAILED = "failed"


@dataclass
class OpResult:
    """Outcome of a best-effort operation. Callers can see a fallback happened without catching anything."""
    outcome: Outcome
    message: str = ""
    value: Optional[Any] = None

    @classmethod
    def ok(cls, message: str = "", value: Any = None) -> "OpResult":
        return cls(Outcome.SUCCESS, message, value)

    @classmethod
    def degraded(cls, message: str, value: Any = None) -> "OpResult":
        return cls(Outcome.DEGRADED, message, value)

    @classmethod
    def failed(cls, message: str) -> "OpResult":
        return cls(Outcome.FAILED, message)

    @property
    def is_degraded(self) -> bool:
        return self.outcome is Outcome.DEGRADED

    def __bool__(self):
        return self.outcome is not Outcome.FAILED

    def __str__(self):
        return f"{self.outcome.value}: {self.message}" if self.message else self.outcome.value
