import asyncio
import copy
from typing import Any, Dict, Optional, Set

from smart_e2b.config import (
    DEFAULT_EXECUTION_TIMEOUT_MS, MAX_EXECUTION_TIMEOUT_MS, MIN_EXECUTION_TIMEOUT_MS
)
from smart_e2b.errors import ToolError, internal_error
from smart_e2b.pool import SandboxPool
from smart_e2b.resilience import best_effort, with_fallback
from smart_e2b.sandbox import execution_payload, run_language
from smart_e2b.utils import clamp_int, format_seconds, log_error, require_arg

Pools = Dict[str, SandboxPool]

LANGUAGE_LABELS = {"javascript": "JavaScript", "python": "Python"}

# Remote calls that lost the race against their timeout; kept referenced until they settle.
_detached_calls: Set[asyncio.Future] = set()


def _settle_detached(call: asyncio.Future) -> None:
    _detached_calls.discard(call)
    if call.cancelled():
        return
    exc = call.exception()
    if exc is not None:
        log_error(f"late failure of timed-out execution discarded: {exc}")
    else:
        log_error("late result of timed-out execution discarded")


def _detach(call: asyncio.Future) -> None:
    _detached_calls.add(call)
    call.add_done_callback(_settle_detached)


def timeout_result(timeout_ms: int) -> Dict[str, Any]:
    seconds = format_seconds(timeout_ms)
    return {
        "logs": {
            "stdout": [""],
            "stderr": [f"Execution interrupted after {seconds} seconds. The code took too long to run."],
        },
        "error": f"Timeout after {seconds} seconds of execution",
    }


EXECUTION_FALLBACK = {
    "logs": {
        "stdout": [""],
        "stderr": ["Connection interrupted. The client disconnected during code execution."],
    },
    "error": "Connection interrupted",
}

UPLOAD_FALLBACK = {
    "success": False,
    "message": "Connection interrupted. The client disconnected during the file operation.",
}

READ_FALLBACK_MESSAGE = "Connection interrupted. The client disconnected while reading the file."


def _session_key(args: Dict[str, Any]) -> Optional[str]:
    key = args.get("sandboxId")
    return str(key) if key else None


async def execute_code(pools: Pools, args: Dict[str, Any], language: str) -> Dict[str, Any]:
    """Run ``code`` in the pooled sandbox for ``language``.

    The wait is bounded by ``timeout`` (milliseconds). When it runs out the
    caller gets a timeout result right away; the remote call is left
    running in its sandbox and whatever it eventually returns is dropped.
    """
    label = LANGUAGE_LABELS.get(language, language)
    code = require_arg(args, "code")
    timeout_ms = clamp_int(
        args.get("timeout"), DEFAULT_EXECUTION_TIMEOUT_MS, MIN_EXECUTION_TIMEOUT_MS, MAX_EXECUTION_TIMEOUT_MS
    )
    pool = pools[language]
    key = _session_key(args)

    async def run() -> Dict[str, Any]:
        sandbox = await pool.acquire(key)
        log_error(f"Executing {label} code with a timeout of {format_seconds(timeout_ms)} seconds...")
        call = asyncio.ensure_future(sandbox.run_code(code, language=run_language(language)))
        done, _ = await asyncio.wait({call}, timeout=timeout_ms / 1000)
        if call not in done:
            log_error(f"Execution interrupted after {format_seconds(timeout_ms)} seconds.")
            _detach(call)
            return timeout_result(timeout_ms)
        return execution_payload(call.result())

    try:
        return await with_fallback(run, copy.deepcopy(EXECUTION_FALLBACK))
    except ToolError:
        raise
    except Exception as exc:
        log_error(f"{label} execution error: {exc}")
        raise internal_error(exc, f"Failed to execute {label} code") from exc


async def execute_javascript(pools: Pools, args: Dict[str, Any]) -> Dict[str, Any]:
    return await execute_code(pools, args, "javascript")


async def execute_python(pools: Pools, args: Dict[str, Any]) -> Dict[str, Any]:
    return await execute_code(pools, args, "python")


def _parent_dirs(file_path: str):
    parts = [part for part in file_path.split("/")[:-1] if part]
    prefix = "/" if file_path.startswith("/") else ""
    current = ""
    for part in parts:
        current = f"{current}/{part}" if current else f"{prefix}{part}"
        yield current


async def upload_file(pools: Pools, args: Dict[str, Any]) -> Dict[str, Any]:
    file_path = str(require_arg(args, "filePath"))
    content = require_arg(args, "content")
    pool = pools["filesystem"]
    key = _session_key(args)

    async def upload() -> Dict[str, Any]:
        sandbox = await pool.acquire(key)
        for directory in _parent_dirs(file_path):
            # Existing directories fail here; that is expected.
            created = await best_effort(sandbox.files.make_dir(directory))
            if not created.ok:
                log_error(f"make_dir {directory} skipped: {created.error}")
        await sandbox.files.write(file_path, content)
        return {"success": True, "message": f"File uploaded successfully to {file_path}"}

    try:
        return await with_fallback(upload, dict(UPLOAD_FALLBACK))
    except ToolError:
        raise
    except Exception as exc:
        log_error(f"File upload error: {exc}")
        raise internal_error(exc, "Failed to upload file") from exc


def _entry_type(entry: Any) -> str:
    kind = getattr(entry, "type", None)
    return str(getattr(kind, "value", kind) or "")


async def list_files(pools: Pools, args: Dict[str, Any]) -> Dict[str, Any]:
    path = str(args.get("path") or "/")
    pool = pools["filesystem"]
    key = _session_key(args)

    async def listing() -> Dict[str, Any]:
        sandbox = await pool.acquire(key)
        entries = await sandbox.files.list(path)
        return {
            "files": [
                {"name": entry.name, "isDir": "dir" in _entry_type(entry), "path": entry.path}
                for entry in entries
            ]
        }

    try:
        return await with_fallback(listing, {"files": []})
    except ToolError:
        raise
    except Exception as exc:
        log_error(f"List files error: {exc}")
        raise internal_error(exc, "Failed to list files") from exc


async def read_file(pools: Pools, args: Dict[str, Any]) -> Dict[str, Any]:
    file_path = str(require_arg(args, "filePath"))
    pool = pools["filesystem"]
    key = _session_key(args)

    async def read() -> Dict[str, Any]:
        sandbox = await pool.acquire(key)
        content = await sandbox.files.read(file_path)
        return {"content": content, "filePath": file_path}

    try:
        return await with_fallback(read, {"content": READ_FALLBACK_MESSAGE, "filePath": file_path})
    except ToolError:
        raise
    except Exception as exc:
        log_error(f"Read file error: {exc}")
        raise internal_error(exc, "Failed to read file") from exc


TOOL_HANDLERS = {
    "executeJavaScript": execute_javascript,
    "executePython": execute_python,
    "uploadFile": upload_file,
    "listFiles": list_files,
    "readFile": read_file,
}
