from typing import Any, Dict, List, Optional

from e2b_code_interpreter import AsyncSandbox

from smart_e2b.config import SANDBOX_TTL_SECONDS, config
from smart_e2b.pool import SandboxFactory

# Language names understood by the code interpreter's run_code()
E2B_LANGUAGES = {
    "python": "python",
    "javascript": "js",
}


async def create_e2b_sandbox() -> AsyncSandbox:
    return await AsyncSandbox.create(api_key=config.E2B_API_KEY, timeout=SANDBOX_TTL_SECONDS)


def sandbox_factory(backend: Optional[str] = None) -> SandboxFactory:
    backend = backend or config.BACKEND
    if backend == "e2b":
        return create_e2b_sandbox
    if backend == "ssh":
        from smart_e2b.ssh import SSHSandbox

        return SSHSandbox.create
    raise ValueError(f"unknown sandbox backend: {backend}")


def run_language(language: str) -> str:
    return E2B_LANGUAGES.get(language, language)


def describe_execution_error(error: Any) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, str):
        return error
    name = getattr(error, "name", None)
    value = getattr(error, "value", None)
    if name and value:
        return f"{name}: {value}"
    return str(value or name or error)


def execution_payload(execution: Any) -> Dict[str, Any]:
    logs = getattr(execution, "logs", None)
    stdout: List[str] = list(getattr(logs, "stdout", None) or [])
    stderr: List[str] = list(getattr(logs, "stderr", None) or [])
    payload: Dict[str, Any] = {
        "logs": {"stdout": stdout, "stderr": stderr},
        "error": describe_execution_error(getattr(execution, "error", None)),
    }
    results = [r.text for r in (getattr(execution, "results", None) or []) if getattr(r, "text", None)]
    if results:
        payload["results"] = results
    return payload
