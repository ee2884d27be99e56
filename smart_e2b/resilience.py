from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from smart_e2b.errors import is_disconnect
from smart_e2b.utils import log_error

T = TypeVar("T")


async def with_fallback(operation: Callable[[], Awaitable[T]], fallback: T) -> T:
    """Run ``operation``; a client disconnect yields ``fallback`` instead of raising.

    Every other failure propagates unchanged.
    """
    try:
        return await operation()
    except Exception as exc:
        if not is_disconnect(exc):
            raise
        log_error("Connection interrupted (broken pipe), client probably disconnected")
        return fallback


@dataclass(frozen=True)
class Outcome:
    """Result of a best-effort step. Failures are reported, never raised."""

    ok: bool
    error: Optional[BaseException] = None
    value: Any = None


async def best_effort(awaitable: Awaitable[Any]) -> Outcome:
    try:
        value = await awaitable
    except Exception as exc:
        return Outcome(ok=False, error=exc)
    return Outcome(ok=True, value=value)
