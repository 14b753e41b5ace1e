"""Stand-in VM helper speaking the line-delimited JSON bridge protocol.

Run as ``python fake_bridge.py [--no-ready] [--exit-on-start] [--crash-on COMMAND]``.

Commands understood by ``exec``: ``echo ...``, ``sleep N``, ``exit N``. Files live in an
in-memory dict. Each request is answered on its own thread so slow commands do not
block later ones.
"""

import argparse
import base64
import json
import os
import sys
import threading
import time

_write_lock = threading.Lock()
_files: dict[str, bytes] = {}


def send(message: dict) -> None:
    with _write_lock:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()


def respond(request_id: str, result=None, error=None) -> None:
    message = {"type": "response", "id": request_id}
    if error is not None:
        message["error"] = {"message": error}
    else:
        message["result"] = result
    send(message)


def run_shell(command: str) -> tuple[str, str, int]:
    words = command.split()
    if not words:
        return "", "", 0
    if words[0] == "echo":
        return " ".join(words[1:]) + "\n", "", 0
    if words[0] == "sleep":
        time.sleep(float(words[1]))
        return "", "", 0
    if words[0] == "exit":
        return "", "failed\n", int(words[1])
    return "", f"{words[0]}: command not found\n", 127


def handle(request: dict, crash_on: str | None) -> None:
    request_id = request["id"]
    command = request["command"]
    params = request.get("params") or {}

    if command == crash_on:
        sys.stdout.flush()
        os._exit(3)

    if command == "start":
        send({"type": "event", "event": "vm_booted", "data": {"sessionId": params.get("sessionId")}})
        respond(request_id, {"ok": True})
    elif command in ("stop", "force_stop"):
        respond(request_id, {})
        sys.stdout.flush()
        os._exit(0)
    elif command == "exec":
        stdout, stderr, code = run_shell(params["command"])
        respond(request_id, {"stdout": stdout, "stderr": stderr, "exitCode": code})
    elif command == "exec_stream":
        stdout, stderr, code = run_shell(params["command"])
        stream_id = params["streamId"]
        for line in stdout.splitlines(keepends=True):
            send({"type": "stream", "streamId": stream_id, "streamType": "stdout", "data": line})
        if stderr:
            send({"type": "stream", "streamId": stream_id, "streamType": "stderr", "data": stderr})
        send({"type": "stream", "streamId": stream_id, "streamType": "exit", "data": code})
        respond(request_id, {"exitCode": code})
    elif command == "write_file":
        _files[params["path"]] = base64.b64decode(params["content"])
        respond(request_id, {})
    elif command == "read_file":
        if params["path"] not in _files:
            respond(request_id, error=f"No such file: {params['path']}")
        else:
            respond(request_id, {"content": base64.b64encode(_files[params["path"]]).decode("ascii")})
    elif command == "list_files":
        prefix = params["path"].rstrip("/") + "/"
        names = sorted({p[len(prefix):].split("/")[0] for p in _files if p.startswith(prefix)})
        entries = [
            {"name": name, "size": len(_files.get(prefix + name, b"")), "isDirectory": prefix + name not in _files}
            for name in names
        ]
        respond(request_id, entries)
    elif command == "status":
        respond(request_id, {"running": True, "cpuPercent": 12.5, "memoryPercent": 40.0, "uptimeSeconds": 3.0})
    elif command == "update_profile":
        changed = params.get("changed", [])
        respond(request_id, {"requiresRestart": [name for name in changed if name.startswith("network")]})
    else:
        respond(request_id, error=f"Unknown command: {command}")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--no-ready", action="store_true")
    parser.add_argument("--exit-on-start", action="store_true")
    parser.add_argument("--crash-on")
    args = parser.parse_args()

    if args.exit_on_start:
        sys.exit(2)

    # Noise a real helper might print before the handshake.
    sys.stdout.write("booting helper...\n")
    sys.stdout.flush()
    print("helper diagnostics", file=sys.stderr, flush=True)

    if not args.no_ready:
        send({"type": "ready"})

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        threading.Thread(target=handle, args=(request, args.crash_on), daemon=True).start()


if __name__ == "__main__":
    main()
