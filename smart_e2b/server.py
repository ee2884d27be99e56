import asyncio
import json
from typing import Any, Dict, Optional, Set

from smart_e2b.config import PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
from smart_e2b.errors import ErrorCodes, ToolError
from smart_e2b.guard import guard
from smart_e2b.tools import TOOL_HANDLERS, Pools
from smart_e2b.utils import log_error


def format_tool_result(result: Dict[str, Any]) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    return {"content": [{"type": "text", "text": text}], "toolResult": result}


def make_response(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result)}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def tools_list() -> Dict[str, Any]:
    sandbox_id_param = {
        "type": "string",
        "description": "Optional sandbox id. Calls with the same id reuse the same sandbox.",
    }
    timeout_param = {"type": "number", "description": "Timeout in milliseconds (optional, default 180000)."}
    tools = [
        {
            "name": "executeJavaScript",
            "description": "Execute JavaScript code in a secure cloud sandbox",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "code": {"type": "string", "description": "JavaScript code to execute"},
                    "timeout": timeout_param,
                    "sandboxId": sandbox_id_param,
                },
                "required": ["code"],
            },
        },
        {
            "name": "executePython",
            "description": "Execute Python code in a secure cloud sandbox",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "code": {"type": "string", "description": "Python code to execute"},
                    "timeout": timeout_param,
                    "sandboxId": sandbox_id_param,
                },
                "required": ["code"],
            },
        },
        {
            "name": "uploadFile",
            "description": "Upload a file to the sandbox. Parent directories are created as needed.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "filePath": {"type": "string", "description": "Path where to save the file"},
                    "content": {"type": "string", "description": "Content of the file"},
                    "sandboxId": sandbox_id_param,
                },
                "required": ["filePath", "content"],
            },
        },
        {
            "name": "listFiles",
            "description": "List files in a directory in the sandbox",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path to list (defaults to root)"},
                    "sandboxId": sandbox_id_param,
                },
            },
        },
        {
            "name": "readFile",
            "description": "Read a file from the sandbox",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "filePath": {"type": "string", "description": "Path to the file to read"},
                    "sandboxId": sandbox_id_param,
                },
                "required": ["filePath"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "result": {"tools": tools}}


async def handle_request(request: Dict[str, Any], pools: Pools) -> Optional[Dict[str, Any]]:
    if not isinstance(request, dict):
        return make_error(None, ErrorCodes.INVALID_REQUEST, "Request must be a JSON object")

    method = request.get("method")
    params = request.get("params") or {}
    if "id" not in request:
        # Notification, e.g. notifications/initialized
        return None
    req_id = request.get("id")

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if method == "ping":
        return {"jsonrpc": "2.0", "id": req_id, "result": {}}

    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        if not isinstance(params, dict):
            return make_error(req_id, ErrorCodes.INVALID_PARAMS, "Tool call params must be an object")
        tool_name = params.get("name")
        args = params.get("arguments") or {}
        handler = TOOL_HANDLERS.get(tool_name)
        if handler is None:
            return make_error(req_id, ErrorCodes.METHOD_NOT_FOUND, f"Tool not found: {tool_name}")
        if not isinstance(args, dict):
            return make_error(req_id, ErrorCodes.INVALID_PARAMS, "Tool arguments must be an object")
        try:
            result = await handler(pools, args)
        except ToolError as exc:
            return make_error(req_id, exc.code, exc.message)
        except Exception as exc:
            log_error(f"Tool execution error ({tool_name}): {exc}")
            return make_error(
                req_id, ErrorCodes.INTERNAL_ERROR,
                str(exc) or "Unknown error occurred during tool execution",
            )
        return make_response(req_id, result)

    return make_error(req_id, ErrorCodes.METHOD_NOT_FOUND, f"Unknown method: {method}")


def _write_response(response: Dict[str, Any]) -> None:
    """Write one JSON-RPC frame to stdout as a single line."""
    try:
        guard.emit_frame(json.dumps(response, ensure_ascii=False) + "\n")
    except UnicodeEncodeError as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        guard.emit_frame(json.dumps(response, ensure_ascii=True) + "\n")


def _request_id(line: str) -> Any:
    try:
        request = json.loads(line)
    except ValueError:
        return None
    return request.get("id") if isinstance(request, dict) else None


async def handle_line(line: str, pools: Pools) -> Optional[Dict[str, Any]]:
    try:
        request = json.loads(line)
    except json.JSONDecodeError as exc:
        log_error(f"invalid json: {exc}")
        return None
    try:
        return await handle_request(request, pools)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        # Answer anyway so the client doesn't hang
        return make_error(_request_id(line), ErrorCodes.INTERNAL_ERROR, f"Internal error: {exc}")


async def _serve_line(line: str, pools: Pools) -> None:
    response = await handle_line(line, pools)
    if response is not None:
        _write_response(response)


async def serve(stdin, pools: Pools) -> None:
    for pool in pools.values():
        pool.start()

    in_flight: Set[asyncio.Task] = set()
    try:
        while True:
            line = await asyncio.to_thread(stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            task = asyncio.create_task(_serve_line(line, pools))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
    finally:
        log_error("shutting down...")
        for pool in pools.values():
            await pool.close()
