"""
Scriptable provider used by the integration tests.

    python tests/fake_provider.py <mode> [tool,tool,...]

Modes:
    normal    answer every request; tools/call echoes name + arguments
    reverse   hold requests until <count> (env FAKE_BATCH, default 5) arrived,
              then answer them in reverse order
    garbage   write a malformed line before every response and split each
              response across two writes
    stubborn  ignore SIGTERM and keep running after stdin closes
    loud      write one 200 KB stderr line, then 200 KB of short stderr lines,
              then serve as in normal mode

Special tool names in any mode:
    slow      sleep arguments["delay"] seconds before answering
    hang      never answer
    crash     exit immediately with code 3
    fail      answer with a JSON-RPC error object
    noresult  answer with neither result nor error
"""

import json
import os
import signal
import sys
import time


def write(payload):
    sys.stdout.buffer.write(payload)
    sys.stdout.buffer.flush()


def answer(request, tools):
    method = request.get("method")
    params = request.get("params") or {}
    request_id = request["id"]

    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": request_id, "result": [
            {
                "name": name,
                "description": f"fake tool {name}",
                "parameters": {"type": "object", "properties": {"value": {"type": "string"}}},
            }
            for name in tools
        ]}

    if method != "tools/call":
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}

    name = params.get("name")
    arguments = params.get("arguments") or {}
    if name == "hang":
        return None
    if name == "crash":
        os._exit(3)
    if name == "slow":
        time.sleep(float(arguments.get("delay", 1)))
    if name == "fail":
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": "tool exploded"}}
    if name == "noresult":
        return {"jsonrpc": "2.0", "id": request_id}
    return {"jsonrpc": "2.0", "id": request_id, "result": {"tool": name, "arguments": arguments}}


def main():
    mode = sys.argv[1] if len(sys.argv) > 1 else "normal"
    tools = sys.argv[2].split(",") if len(sys.argv) > 2 else ["echo"]
    batch = int(os.environ.get("FAKE_BATCH", "5"))
    held = []

    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if mode == "loud":
        sys.stderr.write("x" * 200_000 + "\n")
        for i in range(2000):
            sys.stderr.write(f"log line {i} ".ljust(99, ".") + "\n")
        sys.stderr.write("loud provider ready\n")
        sys.stderr.flush()

    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            break
        request = json.loads(line)
        response = answer(request, tools)
        if response is None:
            continue

        encoded = json.dumps(response).encode("utf-8") + b"\n"
        if mode == "reverse" and request.get("method") == "tools/call":
            held.append(encoded)
            if len(held) == batch:
                for item in reversed(held):
                    write(item)
                held.clear()
        elif mode == "garbage":
            write(b"this is not json {\n")
            half = len(encoded) // 2
            write(encoded[:half])
            time.sleep(0.01)
            write(encoded[half:])
        else:
            write(encoded)

    if mode == "stubborn":
        while True:
            time.sleep(1)


if __name__ == "__main__":
    main()
