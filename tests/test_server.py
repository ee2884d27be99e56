import asyncio
import io
import json
import sys

import pytest

from smart_e2b import server
from smart_e2b.errors import ErrorCodes
from smart_e2b.guard import guard
from smart_e2b.pool import build_pools
from smart_e2b.server import handle_request, tools_list


@pytest.fixture
def pools(factory, clock):
    return build_pools(factory, clock=clock)


def _call(name, arguments, req_id=1):
    return {"jsonrpc": "2.0", "id": req_id, "method": "tools/call", "params": {"name": name, "arguments": arguments}}


def test_initialize_reports_server_info(pools):
    response = asyncio.run(handle_request({"jsonrpc": "2.0", "id": 0, "method": "initialize"}, pools))

    assert response["id"] == 0
    assert response["result"]["serverInfo"] == {"name": "smart-e2b", "version": "0.1.0"}
    assert response["result"]["capabilities"] == {"tools": {}}


def test_notifications_get_no_response(pools):
    request = {"jsonrpc": "2.0", "method": "notifications/initialized"}

    assert asyncio.run(handle_request(request, pools)) is None


def test_tools_list_advertises_all_tools():
    names = [tool["name"] for tool in tools_list()["result"]["tools"]]

    assert names == ["executeJavaScript", "executePython", "uploadFile", "listFiles", "readFile"]


def test_tool_call_wraps_result_in_content(pools):
    response = asyncio.run(handle_request(_call("executePython", {"code": "print('hello')"}, req_id=7), pools))

    assert response["id"] == 7
    result = response["result"]
    assert result["toolResult"]["logs"]["stdout"] == ["hello\n"]
    assert json.loads(result["content"][0]["text"]) == result["toolResult"]


def test_unknown_tool_is_method_not_found(pools):
    response = asyncio.run(handle_request(_call("deleteEverything", {}), pools))

    assert response["error"]["code"] == ErrorCodes.METHOD_NOT_FOUND
    assert "deleteEverything" in response["error"]["message"]


def test_unknown_method_is_method_not_found(pools):
    response = asyncio.run(handle_request({"jsonrpc": "2.0", "id": 3, "method": "resources/list"}, pools))

    assert response == {
        "jsonrpc": "2.0", "id": 3,
        "error": {"code": ErrorCodes.METHOD_NOT_FOUND, "message": "Unknown method: resources/list"},
    }


def test_invalid_arguments_become_error_objects(pools):
    response = asyncio.run(handle_request(_call("readFile", {}), pools))

    assert response["error"]["code"] == ErrorCodes.INVALID_PARAMS


def test_remote_failures_become_internal_errors(pools, factory):
    factory.error = RuntimeError("E2B unavailable")

    response = asyncio.run(handle_request(_call("listFiles", {"path": "/"}), pools))

    assert response["error"] == {"code": ErrorCodes.INTERNAL_ERROR, "message": "E2B unavailable"}


def test_handle_line_ignores_invalid_json(pools, capsys):
    assert asyncio.run(server.handle_line("{not json", pools)) is None
    assert "invalid json" in capsys.readouterr().err


def test_serve_answers_each_line_on_stdout_only(monkeypatch, pools):
    stdout = io.StringIO()
    stderr = io.StringIO()
    monkeypatch.setattr(sys, "stdout", stdout)
    monkeypatch.setattr(sys, "stderr", stderr)
    stdin = io.StringIO("\n".join([
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize"}),
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        "garbage",
        json.dumps(_call("uploadFile", {"filePath": "x/y.txt", "content": "Creating new sandbox"}, req_id=2)),
    ]) + "\n")

    guard.install()
    try:
        print("Creating new sandbox with ID: default-fs")
        asyncio.run(server.serve(stdin, pools))
    finally:
        guard.uninstall()

    lines = stdout.getvalue().splitlines()
    responses = sorted((json.loads(line) for line in lines), key=lambda r: r["id"])
    assert [r["id"] for r in responses] == [1, 2]
    assert responses[1]["result"]["toolResult"]["success"] is True
    diagnostics = stderr.getvalue()
    assert "Creating new sandbox with ID: default-fs" in diagnostics
    assert "invalid json" in diagnostics
    assert "shutting down" in diagnostics


@pytest.mark.parametrize("params", [["executePython"], "executePython", 3])
def test_tool_call_with_non_object_params_is_invalid(pools, params):
    request = {"jsonrpc": "2.0", "id": 9, "method": "tools/call", "params": params}

    response = asyncio.run(handle_request(request, pools))

    assert response["id"] == 9
    assert response["error"]["code"] == ErrorCodes.INVALID_PARAMS
