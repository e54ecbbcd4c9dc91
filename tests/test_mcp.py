import io
import json

import pytest

from fugue.factory import ModuleBuildResult, ModuleCatalog, ModuleFactory
from fugue.graph import StereoFrame
from fugue.mcp import FugueMcp, ToolError, parse_control_value, serve


class _Module:
    def __init__(self, inputs, outputs):
        self._inputs = list(inputs)
        self._outputs = list(outputs)
        self.values = {}

    def name(self):
        return "fake"

    def inputs(self):
        return self._inputs

    def outputs(self):
        return self._outputs

    def set_input(self, port, value):
        self.values[port] = value

    def get_output(self, port):
        return 0.0

    def reset_inputs(self):
        pass

    def process(self):
        pass

    def mark_processed(self, sample):
        pass


class _Sink(_Module):
    def sink_output(self):
        return StereoFrame(0.0, 0.0)


class _Surface:
    def __init__(self):
        self.values = {"freq": 440.0}

    def controls(self):
        return [
            {
                "key": "freq",
                "description": "Frequency",
                "default": 440.0,
                "kind": {"type": "number", "min": 20.0, "max": 20000.0},
            }
        ]

    def get_control(self, key):
        return self.values[key]

    def set_control(self, key, value):
        if key not in self.values:
            raise KeyError(f"unknown control {key}")
        self.values[key] = value


class _DacFactory(ModuleFactory):
    def type_id(self):
        return "dac"

    def build(self, sample_rate, config):
        sink = _Sink(["audio"], [])
        return ModuleBuildResult(module=sink, sink=sink)

    def is_sink(self):
        return True


class _OscFactory(ModuleFactory):
    def type_id(self):
        return "osc"

    def build(self, sample_rate, config):
        return ModuleBuildResult(
            module=_Module(["fm"], ["audio"]), control_surface=_Surface()
        )


class _NeedsConfigFactory(ModuleFactory):
    def type_id(self):
        return "needs"

    def build(self, sample_rate, config):
        if config is None:
            raise ValueError("config required")
        return ModuleBuildResult(module=_Module([], ["out"]))


@pytest.fixture
def server():
    catalog = ModuleCatalog([_DacFactory(), _OscFactory(), _NeedsConfigFactory()])
    return FugueMcp(sample_rate=48000, catalog=catalog)


def _running(server):
    server.create_invention("Demo")
    server.add_module("osc1", "osc")
    return server


def test_parse_control_value_kinds():
    assert parse_control_value(True) is True
    assert parse_control_value(3) == 3.0
    assert isinstance(parse_control_value(3), float)
    assert parse_control_value("sine") == "sine"


@pytest.mark.parametrize("value", [None, [1], {"a": 1}])
def test_parse_control_value_rejects(value):
    with pytest.raises(ToolError):
        parse_control_value(value)


def test_create_invention_and_status(server):
    text = server.create_invention("Demo")
    assert text == (
        "Created invention 'Demo' with DAC. Add modules and connect them to make sound."
    )
    status = json.loads(server.get_status())
    assert status == {
        "running": True,
        "module_count": 1,
        "connection_count": 0,
        "modules": ["dac"],
    }


def test_create_invention_untitled(server):
    assert "'untitled'" in server.create_invention()


def test_status_when_stopped(server):
    status = json.loads(server.get_status())
    assert status["running"] is False
    assert status["modules"] == []


def test_add_module_requires_running(server):
    with pytest.raises(ToolError, match="Call create_invention first"):
        server.add_module("osc1", "osc")


def test_add_and_list_modules(server):
    server.create_invention("Demo")
    assert server.add_module("osc1", "osc", {"wave": "saw"}) == "Added osc module 'osc1'."
    modules = json.loads(server.list_modules())
    assert [m["id"] for m in modules] == ["dac", "osc1"]
    assert modules[1] == {"id": "osc1", "module_type": "osc", "config": {"wave": "saw"}}


def test_add_unknown_type(server):
    server.create_invention()
    with pytest.raises(ToolError, match="unknown module type"):
        server.add_module("x", "nope")
    assert [m["id"] for m in json.loads(server.list_modules())] == ["dac"]


def test_connect_disconnect(server):
    _running(server)
    text = server.connect("osc1", "audio", "dac", "audio")
    assert text == "Connected osc1:audio -> dac:audio"
    connections = json.loads(server.list_connections())
    assert connections == [
        {"from": "osc1", "from_port": "audio", "to": "dac", "to_port": "audio"}
    ]
    server.disconnect("osc1", "audio", "dac", "audio")
    assert json.loads(server.list_connections()) == []


def test_connect_invalid_port(server):
    _running(server)
    with pytest.raises(ToolError, match="invalid port"):
        server.connect("osc1", "nothing", "dac", "audio")
    assert json.loads(server.list_connections()) == []


def test_connect_unknown_module(server):
    _running(server)
    with pytest.raises(ToolError, match="unknown module"):
        server.connect("ghost", "audio", "dac", "audio")


def test_remove_module_drops_connections(server):
    _running(server)
    server.connect("osc1", "audio", "dac", "audio")
    assert server.remove_module("osc1") == "Removed module 'osc1'."
    assert json.loads(server.list_connections()) == []
    assert [m["id"] for m in json.loads(server.list_modules())] == ["dac"]


def test_set_and_get_control(server):
    _running(server)
    assert server.set_control("osc1", "freq", 220) == "Set osc1.freq"
    assert server.get_control("osc1", "freq") == "osc1.freq = 220.0"


def test_control_errors(server):
    _running(server)
    with pytest.raises(ToolError, match="unknown module"):
        server.get_control("dac", "freq")
    with pytest.raises(ToolError, match="control error"):
        server.set_control("osc1", "missing", 1)


def test_list_controls(server):
    _running(server)
    single = json.loads(server.list_controls("osc1"))
    assert single[0]["module_id"] == "osc1"
    assert single[0]["controls"][0]["key"] == "freq"
    everything = json.loads(server.list_controls())
    assert [entry["module_id"] for entry in everything] == ["osc1"]


def test_load_invention(server):
    doc = {
        "title": "T",
        "modules": [{"id": "dac", "type": "dac"}, {"id": "o", "type": "osc"}],
        "connections": [{"from": "o", "to": "dac", "from_port": "audio", "to_port": "audio"}],
    }
    text = server.load_invention(json.dumps(doc))
    assert text == "Loaded invention 'T' with 2 modules and 1 connections. Playback started."
    assert json.loads(server.get_status())["connection_count"] == 1


def test_load_invention_bad_json(server):
    with pytest.raises(ToolError):
        server.load_invention("{not json")
    assert json.loads(server.get_status())["running"] is False


def test_stop_invention(server):
    assert server.stop_invention() == "No invention is running."
    server.create_invention()
    assert server.stop_invention() == "Invention stopped."
    assert json.loads(server.get_status())["module_count"] == 0


def test_describe_module_types(server):
    types = json.loads(server.describe_module_types())
    assert [t["type_name"] for t in types] == ["dac", "needs", "osc"]
    by_name = {t["type_name"]: t for t in types}
    assert by_name["dac"]["is_sink"] is True
    assert by_name["osc"]["inputs"] == ["fm"]
    assert by_name["osc"]["outputs"] == ["audio"]
    assert by_name["needs"]["outputs"] == []


def test_call_tool_dispatch_and_missing_param(server):
    server.call_tool("create_invention", {"title": "X"})
    text = server.call_tool("add_module", {"id": "o", "module_type": "osc"})
    assert text == "Added osc module 'o'."
    with pytest.raises(ToolError) as info:
        server.call_tool("remove_module", {})
    assert info.value.code == -32602
    with pytest.raises(ToolError):
        server.call_tool("no_such_tool", {})


def test_handle_initialize(server):
    response = server.handle_message(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}
    )
    assert response["id"] == 1
    assert response["result"]["serverInfo"]["name"] == "fugue-mcp"


def test_handle_tools_list(server):
    response = server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    names = {tool["name"] for tool in response["result"]["tools"]}
    assert {"create_invention", "connect", "describe_module_types"} <= names


def test_handle_tools_call_success_and_error(server):
    ok = server.handle_message(
        {
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/call",
            "params": {"name": "stop_invention", "arguments": {}},
        }
    )
    assert ok["result"]["content"][0]["text"] == "No invention is running."
    err = server.handle_message(
        {
            "jsonrpc": "2.0",
            "id": 4,
            "method": "tools/call",
            "params": {"name": "connect", "arguments": {
                "from": "a", "from_port": "b", "to": "c", "to_port": "d"}},
        }
    )
    assert err["error"]["code"] == -32603
    assert err["error"]["message"] == "No invention is running."


def test_handle_notification_and_unknown_method(server):
    assert server.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None
    response = server.handle_message({"jsonrpc": "2.0", "id": 5, "method": "bogus"})
    assert response["error"]["code"] == -32601


def test_serve_lines(server):
    lines = [
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping"}) + "\n",
        "\n",
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}) + "\n",
        "garbage\n",
    ]
    out = io.StringIO()
    serve(server, lines, out)
    responses = [json.loads(line) for line in out.getvalue().splitlines()]
    assert len(responses) == 2
    assert responses[0] == {"jsonrpc": "2.0", "id": 1, "result": {}}
    assert responses[1]["error"]["code"] == -32700