from typing import Any, Dict

from smart_e2b.config import LOG_PREFIX
from smart_e2b.errors import invalid_params
from smart_e2b.guard import guard


def log_error(message: str) -> None:
    # Goes to the captured stderr directly when the guard is installed.
    guard.write_diagnostic(f"{LOG_PREFIX} {message}\n")


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    if value is None:
        return default
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def format_seconds(milliseconds: int) -> str:
    return f"{milliseconds / 1000:g}"


def require_arg(args: Dict[str, Any], name: str) -> Any:
    value = args.get(name)
    if value is None:
        raise invalid_params(f"Missing required argument: {name}")
    return value
