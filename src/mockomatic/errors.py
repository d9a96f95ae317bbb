"""Error taxonomy for balancing and solving."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AllocationError(Exception):
    """Base class; carries the stage and the bucket/slot/circuit that failed."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        bucket: Optional[str] = None,
        slot_id: Optional[str] = None,
        circuit_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.bucket = bucket
        self.slot_id = slot_id
        self.circuit_id = circuit_id

    def with_context(self, **context: Any) -> "AllocationError":
        for key, value in context.items():
            if getattr(self, key, None) is None:
                setattr(self, key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "bucket": self.bucket,
            "slot_id": self.slot_id,
            "circuit_id": self.circuit_id,
        }

    def __str__(self) -> str:
        where = [
            f"{name}={value}"
            for name, value in (
                ("stage", self.stage),
                ("bucket", self.bucket),
                ("slot", self.slot_id),
                ("circuit", self.circuit_id),
            )
            if value is not None
        ]
        if where:
            return f"{self.message} ({', '.join(where)})"
        return self.message


class CapacityExceeded(AllocationError):
    """Supply of a bucket already exceeds its seats before any filling."""


class ImbalanceUnresolved(AllocationError):
    """The parity balancing loop could not reach an even, conserving split."""


class Infeasible(AllocationError):
    """No assignment satisfies the hard constraints. Not retried."""

    def __init__(self, message: str, *, status: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        return data


class InternalConsistency(AllocationError):
    """An extracted solution broke a structural invariant."""


__all__ = [
    "AllocationError",
    "CapacityExceeded",
    "ImbalanceUnresolved",
    "Infeasible",
    "InternalConsistency",
]
