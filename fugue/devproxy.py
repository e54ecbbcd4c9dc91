"""Development proxy for the tool server with hot reload.

Sits between a client and the real tool server, passing newline-delimited
JSON-RPC messages over stdio. It watches the source tree; when a file
changes it rebuilds and restarts the server, replays the client's
initialisation and restores the invention that was running.
"""

from __future__ import annotations

import argparse
import copy
import itertools
import json
import queue
import shlex
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence, TextIO

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

INTERNAL_ERROR = -32603
DEBOUNCE_SECONDS = 0.5
CALL_TIMEOUT = 10.0
POLL_SECONDS = 0.02

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_CHILD_COMMAND = (sys.executable, "-m", "fugue.mcp")
DEFAULT_BUILD_COMMAND = (sys.executable, "-m", "compileall", "-q", str(PACKAGE_DIR))

# Internal request ids are negative so they never collide with the client's.
_internal_ids = itertools.count(-1, -1)
_id_lock = threading.Lock()


def _log(message: str) -> None:
    print(f"[dev] {message}", file=sys.stderr, flush=True)


def _next_internal_id() -> int:
    with _id_lock:
        return next(_internal_ids)


# ---------------------------------------------------------------------------
# JSON-RPC helpers
# ---------------------------------------------------------------------------


def make_tool_call(name: str, arguments: Any) -> tuple[int, str]:
    """A ``tools/call`` request with a fresh internal id, as (id, JSON text)."""
    request_id = _next_internal_id()
    request = {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }
    return request_id, json.dumps(request)


def make_initialize(original: Mapping[str, Any]) -> tuple[int, str]:
    """A copy of the client's ``initialize`` request under a fresh internal id."""
    request_id = _next_internal_id()
    request = copy.deepcopy(dict(original))
    request["id"] = request_id
    return request_id, json.dumps(request)


def make_initialized_notification() -> str:
    return json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"})


def extract_text_content(response: Mapping[str, Any]) -> str | None:
    """The first text item of a tool call's result content, if there is one."""
    result = response.get("result")
    if not isinstance(result, Mapping):
        return None
    content = result.get("content")
    if not isinstance(content, list):
        return None
    for item in content:
        if not isinstance(item, Mapping):
            return None
        kind = item.get("type")
        if not isinstance(kind, str):
            return None
        if kind == "text":
            text = item.get("text")
            return text if isinstance(text, str) else None
    return None


def make_error_response(request_id: Any, message: str) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": INTERNAL_ERROR, "message": message},
        }
    )


def build_invention_from_state(
    modules: Iterable[Mapping[str, Any]], connections: Iterable[Mapping[str, Any]]
) -> dict[str, Any]:
    """An invention document built from ``list_modules`` and ``list_connections`` output."""
    return {
        "version": "1.0.0",
        "modules": [
            {"id": m.get("id"), "type": m.get("module_type"), "config": m.get("config")}
            for m in modules
        ],
        "connections": [
            {
                "from": c.get("from"),
                "to": c.get("to"),
                "from_port": c.get("from_port"),
                "to_port": c.get("to_port"),
            }
            for c in connections
        ],
    }


# ---------------------------------------------------------------------------
# Child process
# ---------------------------------------------------------------------------


class ChildExitedError(Exception):
    """The child server's output ended or its input could not be written."""


class ChildServer:
    """A tool server running as a child process, spoken to line by line.

    ``read_timeout`` bounds each ``read_line`` (None waits for ever);
    ``call_timeout`` bounds the wait for a response in ``call``.
    """

    def __init__(
        self,
        command: Sequence[str] | None = None,
        call_timeout: float | None = CALL_TIMEOUT,
        read_timeout: float | None = None,
    ) -> None:
        self.command = list(command) if command is not None else list(DEFAULT_CHILD_COMMAND)
        self.call_timeout = call_timeout
        self.read_timeout = read_timeout
        self.process: subprocess.Popen[str] | None = None
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._eof = False

    def start(self) -> ChildServer:
        """Spawn the process; its stderr goes to ours."""
        self.process = subprocess.Popen(
            self.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            bufsize=1,
        )
        threading.Thread(target=self._pump, daemon=True).start()
        return self

    def _pump(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        try:
            for line in self.process.stdout:
                self._lines.put(line)
        except (OSError, ValueError):
            pass
        self._lines.put(None)

    def send(self, line: str) -> None:
        """Write one message, adding the newline if it is missing."""
        if self.process is None or self.process.stdin is None:
            raise ChildExitedError("child process is not running")
        try:
            self.process.stdin.write(line if line.endswith("\n") else line + "\n")
            self.process.stdin.flush()
        except (OSError, ValueError) as exc:
            raise ChildExitedError(f"cannot write to child process: {exc}") from exc

    def _next_line(self, timeout: float | None) -> str | None:
        if self._eof:
            return None
        try:
            item = self._lines.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no output from child process") from None
        if item is None:
            self._eof = True
        return item

    def read_line(self) -> str | None:
        """The next output line, or None once output has ended.

        Raises TimeoutError if no line arrives within ``read_timeout`` seconds.
        """
        return self._next_line(self.read_timeout)

    def call(self, request_id: int, request: str) -> tuple[dict[str, Any], list[str]]:
        """Send ``request`` and wait for the response carrying ``request_id``.

        Other messages that arrive meanwhile are returned alongside it;
        lines that are not JSON are dropped.
        """
        self.send(request)
        others: list[str] = []
        timeout = self.call_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            line = self._next_line(remaining)
            if line is None:
                raise ChildExitedError("Child process exited unexpectedly")
            try:
                parsed = json.loads(line.strip())
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict) and "id" in parsed:
                response_id = parsed["id"]
                if type(response_id) is int and response_id == request_id:
                    return parsed, others
            others.append(line)

    def kill(self) -> None:
        if self.process is None:
            return
        try:
            self.process.kill()
        except OSError:
            pass
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            pass
        for stream in (self.process.stdin, self.process.stdout):
            if stream is not None:
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass

    def __enter__(self) -> ChildServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.kill()


# ---------------------------------------------------------------------------
# State capture and restore
# ---------------------------------------------------------------------------


def _tool_json(child: Any, name: str) -> Any:
    request_id, request = make_tool_call(name, {})
    response, _others = child.call(request_id, request)
    text = extract_text_content(response)
    if text is None:
        raise ValueError(f"{name} returned no text")
    return json.loads(text)


def capture_state(child: Any) -> str | None:
    """The running invention as JSON text, or None if nothing is running or it fails."""
    try:
        status = _tool_json(child, "get_status")
        if not isinstance(status, dict) or status.get("running") is not True:
            return None
        modules = _tool_json(child, "list_modules")
        connections = _tool_json(child, "list_connections")
    except (ChildExitedError, TimeoutError, OSError, ValueError):
        return None
    if not isinstance(modules, list) or not isinstance(connections, list):
        return None
    if not all(isinstance(m, Mapping) for m in modules) or not all(
        isinstance(c, Mapping) for c in connections
    ):
        return None
    return json.dumps(build_invention_from_state(modules, connections))


def restore_state(child: Any, invention_json: str) -> bool:
    """Load ``invention_json`` into the child; True if it accepted it."""
    request_id, request = make_tool_call("load_invention", {"json": invention_json})
    response, _others = child.call(request_id, request)
    error = response.get("error")
    if error is not None:
        message = error.get("message") if isinstance(error, Mapping) else None
        if not isinstance(message, str):
            message = "unknown error"
        _log(f"Warning: state restore failed: {message}")
        return False
    _log(f"State restored: {extract_text_content(response) or ''}")
    return True


def replay_init(child: Any, original_init: Mapping[str, Any]) -> list[str]:
    """Repeat the client's initialisation handshake; return other messages seen."""
    request_id, request = make_initialize(original_init)
    _response, extra = child.call(request_id, request)
    child.send(make_initialized_notification())
    return extra


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


def rebuild(command: Sequence[str]) -> None:
    """Run the build command; raise RuntimeError if it fails.

    Its output goes to stderr, since stdout carries the client's messages.
    """
    _log("Rebuilding...")
    result = subprocess.run(list(command), capture_output=True, text=True)
    if result.stdout:
        sys.stderr.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr)
    if result.returncode != 0:
        raise RuntimeError(f"Build failed with status: {result.returncode}")
    _log("Build successful.")


# ---------------------------------------------------------------------------
# File watching
# ---------------------------------------------------------------------------


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, changes: queue.Queue[None], only_name: str | None = None) -> None:
        super().__init__()
        self._changes = changes
        self._only_name = only_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        src = event.src_path
        path = src.decode(errors="replace") if isinstance(src, bytes) else str(src)
        if "__pycache__" in path or path.endswith((".pyc", ".pyo")):
            return
        if self._only_name is not None and Path(path).name != self._only_name:
            return
        self._changes.put(None)


def _schedule(observer: Any, path: Path, changes: queue.Queue[None]) -> None:
    if path.is_dir():
        observer.schedule(_ChangeHandler(changes), str(path), recursive=True)
    else:
        observer.schedule(_ChangeHandler(changes, path.name), str(path.parent), recursive=False)


def _read_client(stream: TextIO, lines: queue.Queue[str | None]) -> None:
    try:
        for line in stream:
            lines.put(line)
    finally:
        lines.put(None)


# ---------------------------------------------------------------------------
# Proxy loop
# ---------------------------------------------------------------------------


class _Proxy:
    def __init__(
        self,
        child: ChildServer,
        child_command: Sequence[str],
        build_command: Sequence[str],
        changes: queue.Queue[None],
        out: TextIO,
    ) -> None:
        self.child = child
        self.child_command = list(child_command)
        self.build_command = list(build_command)
        self.changes = changes
        self.out = out
        self.init_request: dict[str, Any] | None = None
        self.pending: list[tuple[Any, str]] = []

    def _write(self, text: str) -> None:
        self.out.write(text if text.endswith("\n") else text + "\n")

    def _drain_changes(self) -> None:
        while True:
            try:
                self.changes.get_nowait()
            except queue.Empty:
                return

    def _wait_for_change(self) -> None:
        self.changes.get()
        time.sleep(DEBOUNCE_SECONDS)
        self._drain_changes()

    def _try_rebuild(self) -> Exception | None:
        try:
            rebuild(self.build_command)
        except (RuntimeError, OSError) as exc:
            return exc
        return None

    def _spawn_and_init(self) -> None:
        self.child = ChildServer(self.child_command).start()
        if self.init_request is not None:
            try:
                replay_init(self.child, self.init_request)
            except (ChildExitedError, TimeoutError) as exc:
                _log(f"Init replay failed: {exc}")
            else:
                _log("MCP re-initialized.")

    def _restart_after_exit(self) -> bool:
        _log("Child process exited unexpectedly.")
        if self.init_request is None:
            return False
        _log("Attempting restart...")
        error = self._try_rebuild()
        if error is not None:
            _log(f"Rebuild failed: {error}. Waiting for next file change.")
            self._wait_for_change()
            error = self._try_rebuild()
            if error is not None:
                _log(f"Rebuild still failing: {error}")
                return True
        self._spawn_and_init()
        return True

    def _pump_child(self) -> bool:
        forwarded = False
        while True:
            try:
                line = self.child._next_line(0)
            except TimeoutError:
                break
            if line is None:
                if forwarded:
                    self.out.flush()
                return self._restart_after_exit()
            trimmed = line.strip()
            if not trimmed:
                continue
            try:
                parsed = json.loads(trimmed)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and "id" in parsed and (
                "result" in parsed or "error" in parsed
            ):
                self.pending = [p for p in self.pending if p[0] != parsed["id"]]
            self._write(line)
            forwarded = True
        if forwarded:
            self.out.flush()
        return True

    def _from_client(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed:
            return
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            if parsed.get("method") == "initialize":
                self.init_request = parsed
            if "id" in parsed and "method" in parsed:
                self.pending.append((parsed["id"], line))
        try:
            self.child.send(line)
        except ChildExitedError as exc:
            _log(str(exc))

    def _hot_reload(self) -> None:
        _log("File change detected, hot-reloading...")
        state = capture_state(self.child) if self.init_request is not None else None

        for request_id, _line in self.pending:
            self._write(make_error_response(request_id, "Server restarting due to code change"))
        self.out.flush()
        self.pending.clear()

        self.child.kill()

        error = self._try_rebuild()
        if error is not None:
            _log(f"Build failed: {error}. Waiting for next file change to retry.")
            while True:
                self._wait_for_change()
                _log("File change detected, retrying build...")
                error = self._try_rebuild()
                if error is None:
                    break
                _log(f"Build still failing: {error}")

        self._spawn_and_init()
        if state is not None:
            try:
                restore_state(self.child, state)
            except (ChildExitedError, TimeoutError) as exc:
                _log(f"Warning: state restore failed: {exc}")
        _log("Hot-reload complete.")

    def run(self, client: queue.Queue[str | None]) -> None:
        while True:
            if not self._pump_child():
                return
            if not self.changes.empty():
                time.sleep(DEBOUNCE_SECONDS)
                self._drain_changes()
                self._hot_reload()
                continue
            try:
                line = client.get(timeout=POLL_SECONDS)
            except queue.Empty:
                continue
            if line is None:
                _log("Client disconnected, shutting down.")
                self.child.kill()
                return
            self._from_client(line)


def main(argv: list[str] | None = None) -> int:
    """Run the proxy until the client disconnects."""
    parser = argparse.ArgumentParser(
        prog="fugue-mcp-dev", description="Hot-reloading proxy for the tool server"
    )
    parser.add_argument("--child-command", help="command that starts the tool server")
    parser.add_argument("--build-command", help="command run before each restart")
    parser.add_argument(
        "--watch", action="append", default=None, help="path to watch (repeatable)"
    )
    args = parser.parse_args(argv)

    child_command = (
        shlex.split(args.child_command) if args.child_command else list(DEFAULT_CHILD_COMMAND)
    )
    build_command = (
        shlex.split(args.build_command) if args.build_command else list(DEFAULT_BUILD_COMMAND)
    )

    _log("Starting fugue-mcp-dev proxy...")

    changes: queue.Queue[None] = queue.Queue()
    observer = Observer()
    if args.watch:
        for entry in args.watch:
            _schedule(observer, Path(entry), changes)
    else:
        _schedule(observer, PACKAGE_DIR, changes)
        for extra in ("pyproject.toml", "examples", "tests"):
            path = Path(extra)
            if path.exists():
                _schedule(observer, path, changes)
    observer.start()

    client: queue.Queue[str | None] = queue.Queue()
    threading.Thread(target=_read_client, args=(sys.stdin, client), daemon=True).start()

    _log("Spawning fugue-mcp...")
    proxy = _Proxy(
        ChildServer(child_command).start(), child_command, build_command, changes, sys.stdout
    )
    try:
        proxy.run(client)
    finally:
        proxy.child.kill()
        observer.stop()
        observer.join()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())