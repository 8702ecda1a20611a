"""
Minimal MCP tool server speaking newline-delimited JSON-RPC over stdio.

Used by the integration tests as a real child process. Behaviour is chosen
through environment variables:

    FIXTURE_NAME   server name reported by initialize and echo (default "fixture")
    FIXTURE_MODE   normal | silent | exit_immediately | no_resources

Tools: echo, add, slow, fail (isError result), explode (JSON-RPC error),
exit (process dies without answering), noisy (writes junk to stdout first).
Calls run on worker threads so responses can come back out of order.
"""

import json
import os
import sys
import threading
import time

NAME = os.environ.get("FIXTURE_NAME", "fixture")
MODE = os.environ.get("FIXTURE_MODE", "normal")

_write_lock = threading.Lock()

TOOLS = [
    {"name": "echo", "description": "Echo the given text",
     "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}},
    {"name": "add", "description": "Add two numbers",
     "inputSchema": {"type": "object", "properties": {"a": {"type": "number"}, "b": {"type": "number"}}}},
    {"name": "slow", "description": "Sleep before answering",
     "inputSchema": {"type": "object", "properties": {"seconds": {"type": "number"}}}},
    {"name": "fail", "description": "Report a tool failure", "inputSchema": {"type": "object"}},
    {"name": "explode", "description": "Answer with a JSON-RPC error", "inputSchema": {"type": "object"}},
    {"name": "exit", "description": "Terminate the server process", "inputSchema": {"type": "object"}},
    {"name": "noisy", "description": "Print junk before answering", "inputSchema": {"type": "object"}},
]

RESOURCES = [
    {"uri": f"fixture://{NAME}/readme", "name": "readme", "mimeType": "text/plain"},
]


def send(message):
    with _write_lock:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()


def text_result(text, is_error=False):
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def call_tool(request_id, name, arguments):
    if name == "echo":
        send({"jsonrpc": "2.0", "id": request_id, "result": text_result(f"{NAME}:{arguments.get('text', '')}")})
    elif name == "add":
        total = arguments.get("a", 0) + arguments.get("b", 0)
        send({"jsonrpc": "2.0", "id": request_id, "result": text_result(str(total))})
    elif name == "slow":
        time.sleep(float(arguments.get("seconds", 1)))
        send({"jsonrpc": "2.0", "id": request_id, "result": text_result("done")})
    elif name == "fail":
        send({"jsonrpc": "2.0", "id": request_id, "result": text_result("something went wrong", is_error=True)})
    elif name == "explode":
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": "kaboom"}})
    elif name == "exit":
        sys.stderr.write("exiting on request\n")
        sys.stderr.flush()
        os._exit(7)
    elif name == "noisy":
        with _write_lock:
            sys.stdout.write("this is not json\n")
            sys.stdout.flush()
        send({"jsonrpc": "2.0", "id": request_id, "result": text_result("quiet now")})
    else:
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32602, "message": f"Unknown tool: {name}"}})


def handle(message):
    method = message.get("method")
    request_id = message.get("id")
    params = message.get("params") or {}

    if request_id is None:
        return  # notification

    if method == "initialize":
        capabilities = {"tools": {}}
        if MODE != "no_resources":
            capabilities["resources"] = {}
        send({"jsonrpc": "2.0", "id": request_id, "result": {
            "protocolVersion": params.get("protocolVersion", "2024-11-05"),
            "capabilities": capabilities,
            "serverInfo": {"name": NAME, "version": "1.0.0"},
        }})
    elif method == "tools/list":
        send({"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOLS}})
    elif method == "resources/list":
        send({"jsonrpc": "2.0", "id": request_id, "result": {"resources": RESOURCES}})
    elif method == "resources/read":
        send({"jsonrpc": "2.0", "id": request_id, "result": {
            "contents": [{"uri": params.get("uri"), "mimeType": "text/plain", "text": f"hello from {NAME}"}],
        }})
    elif method == "ping":
        send({"jsonrpc": "2.0", "id": request_id, "result": {}})
    elif method == "tools/call":
        threading.Thread(
            target=call_tool,
            args=(request_id, params.get("name"), params.get("arguments") or {}),
            daemon=True,
        ).start()
    else:
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Method not found: {method}"}})


def main():
    if MODE == "exit_immediately":
        sys.stderr.write("fixture refused to start\n")
        sys.stderr.flush()
        sys.exit(3)

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        if MODE == "silent":
            continue
        handle(json.loads(line))


if __name__ == "__main__":
    main()
