"""Idempotency data models."""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from starlette.requests import Request

# (request, parsed body or None, current unix time) -> cache key
IdempotencyKeyGenerator = Callable[[Request, Any, float], str]


@dataclass(frozen=True)
class IdempotencyConfig:
    """Static idempotency policy for one endpoint class."""
    ttl_seconds: float
    key_generator: Optional[IdempotencyKeyGenerator] = None
    enabled_methods: frozenset[str] = field(default_factory=lambda: frozenset({"POST"}))


@dataclass
class IdempotencyRecord:
    """First response produced for a key. Written once, never mutated."""
    key: str
    response: Any
    status_code: int
    created_at: float
    expires_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IdempotencyRecord":
        return cls(
            key=data["key"],
            response=data["response"],
            status_code=int(data["status_code"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class IdempotencyCheck:
    """Outcome of looking a request up in the idempotency store.

    idempotency_key is empty when the request method is not covered.
    """
    should_process: bool
    idempotency_key: str
    cached_response: Any = None
    cached_status_code: Optional[int] = None


@dataclass
class IdempotencyOutcome:
    response: Any
    status_code: int
    was_idempotent: bool
