import json
import sys

import pytest

from fugue.devproxy import (
    ChildExitedError,
    ChildServer,
    build_invention_from_state,
    capture_state,
    extract_text_content,
    make_error_response,
    make_initialize,
    make_initialized_notification,
    make_tool_call,
    rebuild,
    replay_init,
    restore_state,
)
from fugue.format import Invention

FAKE_SERVER = r'''
import json
import sys

running = "idle" not in sys.argv[1:]
for raw in sys.stdin:
    raw = raw.strip()
    if not raw:
        continue
    msg = json.loads(raw)
    if "id" not in msg:
        print(json.dumps({"seen": msg.get("method")}), flush=True)
        continue
    method = msg.get("method")
    if method == "initialize":
        result = {"protocolVersion": msg["params"]["protocolVersion"]}
    else:
        name = msg["params"]["name"]
        args = msg["params"].get("arguments") or {}
        if name == "get_status":
            text = json.dumps({"running": running, "module_count": 1})
        elif name == "list_modules":
            text = json.dumps([{"id": "dac", "module_type": "dac", "config": None}])
        elif name == "list_connections":
            text = json.dumps([])
        elif name == "load_invention":
            text = "loaded " + str(len(json.loads(args["json"])["modules"]))
        else:
            text = "unknown"
        result = {"content": [{"type": "text", "text": text}]}
    print("not json at all", flush=True)
    print(json.dumps({"jsonrpc": "2.0", "method": "notifications/progress"}), flush=True)
    print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": result}), flush=True)
'''


@pytest.fixture
def server_script(tmp_path):
    script = tmp_path / "fake_server.py"
    script.write_text(FAKE_SERVER, encoding="utf-8")
    return script


@pytest.fixture
def fake_child(server_script):
    child = ChildServer([sys.executable, str(server_script)]).start()
    yield child
    child.kill()


class StubChild:
    """Answers tool calls from a table instead of a real process."""

    def __init__(self, replies):
        self.replies = replies
        self.requests = []

    def call(self, request_id, request):
        message = json.loads(request)
        self.requests.append(message)
        reply = self.replies[message["params"]["name"]]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return {"jsonrpc": "2.0", "id": request_id, **reply}, []
        content = [{"type": "text", "text": reply}]
        return {"jsonrpc": "2.0", "id": request_id, "result": {"content": content}}, []


def test_make_tool_call_structure():
    request_id, text = make_tool_call("get_status", {"a": 1})
    parsed = json.loads(text)
    assert request_id < 0
    assert parsed == {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": "get_status", "arguments": {"a": 1}},
    }


def test_internal_ids_keep_decreasing():
    first, _ = make_tool_call("a", {})
    second, _ = make_tool_call("b", {})
    third, _ = make_initialize({"method": "initialize"})
    assert first > second > third


def test_make_initialize_copies_with_new_id():
    original = {"jsonrpc": "2.0", "id": 7, "method": "initialize", "params": {"x": [1]}}
    request_id, text = make_initialize(original)
    parsed = json.loads(text)
    assert parsed["id"] == request_id
    assert parsed["method"] == "initialize"
    assert parsed["params"] == {"x": [1]}
    assert original["id"] == 7


def test_initialized_notification():
    assert json.loads(make_initialized_notification()) == {
        "jsonrpc": "2.0",
        "method": "notifications/initialized",
    }


def test_extract_text_content_picks_first_text():
    response = {
        "result": {
            "content": [
                {"type": "image", "data": "x"},
                {"type": "text", "text": "first"},
                {"type": "text", "text": "second"},
            ]
        }
    }
    assert extract_text_content(response) == "first"


def test_extract_text_content_missing():
    assert extract_text_content({"error": {"code": -1}}) is None
    assert extract_text_content({"result": {"content": [{"type": "image"}]}}) is None
    assert extract_text_content({"result": {"content": [{"text": "no type"}]}}) is None


def test_make_error_response():
    parsed = json.loads(make_error_response("abc", "Server restarting due to code change"))
    assert parsed == {
        "jsonrpc": "2.0",
        "id": "abc",
        "error": {"code": -32603, "message": "Server restarting due to code change"},
    }


def test_build_invention_from_state_parses_as_invention():
    modules = [
        {"id": "clock", "module_type": "clock", "config": {"bpm": 120.0}},
        {"id": "dac", "module_type": "dac", "config": None},
    ]
    connections = [{"from": "clock", "from_port": "gate", "to": "dac", "to_port": "audio"}]
    document = build_invention_from_state(modules, connections)
    assert document["version"] == "1.0.0"
    invention = Invention.from_json(json.dumps(document))
    assert [m.id for m in invention.modules] == ["clock", "dac"]
    assert invention.modules[0].module_type == "clock"
    assert invention.modules[0].config == {"bpm": 120.0}
    assert invention.connections[0].from_module == "clock"
    assert invention.connections[0].to_port == "audio"


def test_capture_state_when_running():
    child = StubChild(
        {
            "get_status": json.dumps({"running": True}),
            "list_modules": json.dumps([{"id": "osc", "module_type": "oscillator", "config": None}]),
            "list_connections": json.dumps(
                [{"from": "osc", "from_port": "audio", "to": "dac", "to_port": "audio"}]
            ),
        }
    )
    state = json.loads(capture_state(child))
    assert [r["params"]["name"] for r in child.requests] == [
        "get_status",
        "list_modules",
        "list_connections",
    ]
    assert state["modules"][0]["id"] == "osc"
    assert state["connections"][0]["from_port"] == "audio"


def test_capture_state_not_running():
    child = StubChild({"get_status": json.dumps({"running": False})})
    assert capture_state(child) is None
    assert len(child.requests) == 1


def test_capture_state_child_gone():
    child = StubChild({"get_status": ChildExitedError("gone")})
    assert capture_state(child) is None


def test_capture_state_bad_text():
    child = StubChild({"get_status": "not json"})
    assert capture_state(child) is None


def test_restore_state_success_and_failure():
    ok_child = StubChild({"load_invention": "Loaded"})
    assert restore_state(ok_child, '{"modules": []}') is True
    assert ok_child.requests[0]["params"]["arguments"] == {"json": '{"modules": []}'}

    bad_child = StubChild({"load_invention": {"error": {"code": -32603, "message": "bad"}}})
    assert restore_state(bad_child, "{}") is False


def test_child_call_collects_other_messages(fake_child):
    request_id, request = make_tool_call("list_connections", {})
    response, others = fake_child.call(request_id, request)
    assert response["id"] == request_id
    assert extract_text_content(response) == "[]"
    assert len(others) == 1
    assert json.loads(others[0])["method"] == "notifications/progress"


def test_child_capture_and_restore(fake_child):
    state = capture_state(fake_child)
    document = json.loads(state)
    assert document["modules"] == [{"id": "dac", "type": "dac", "config": None}]
    assert restore_state(fake_child, state) is True


def test_child_idle_capture_is_none(server_script):
    with ChildServer([sys.executable, str(server_script), "idle"]).start() as child:
        assert capture_state(child) is None


def test_replay_init_sends_notification(fake_child):
    original = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {"protocolVersion": "2024-11-05"},
    }
    extra = replay_init(fake_child, original)
    assert any("notifications/progress" in line for line in extra)
    # The fake server echoes notifications it receives.
    echoed = None
    while echoed is None:
        line = fake_child.read_line(timeout=5)
        assert line is not None
        if "seen" in line:
            echoed = json.loads(line)
    assert echoed == {"seen": "notifications/initialized"}


def test_read_line_times_out(fake_child):
    with pytest.raises(TimeoutError):
        fake_child.read_line(timeout=0.05)


def test_call_on_exited_child_raises():
    child = ChildServer([sys.executable, "-c", "pass"]).start()
    try:
        request_id, request = make_tool_call("get_status", {})
        with pytest.raises(ChildExitedError):
            child.call(request_id, request)
        assert child.read_line() is None
    finally:
        child.kill()


def test_killed_child_output_ends(fake_child):
    fake_child.kill()
    assert fake_child.read_line(timeout=5) is None
    request_id, request = make_tool_call("get_status", {})
    with pytest.raises(ChildExitedError):
        fake_child.call(request_id, request)


def test_send_before_start_raises():
    with pytest.raises(ChildExitedError):
        ChildServer([sys.executable, "-c", "pass"]).send("{}")


def test_rebuild_success():
    assert rebuild([sys.executable, "-c", "pass"]) is None


def test_rebuild_failure_reports_status():
    with pytest.raises(RuntimeError, match="Build failed with status: 3"):
        rebuild([sys.executable, "-c", "import sys; sys.exit(3)"])