"""JSON-RPC tool server for building and playing inventions over stdio."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, TextIO

from .builder import InventionBuilder
from .factory import ModuleCatalog
from .format import Invention, ModuleSpec
from .runtime import AudioBackend, GraphCommandError, OfflineBackend, RunningInvention

logger = logging.getLogger(__name__)

SERVER_NAME = "fugue-mcp"
SERVER_VERSION = "0.1.0"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"
DEFAULT_SAMPLE_RATE = 44100

INTERNAL_ERROR = -32603
INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INVALID_REQUEST = -32600
PARSE_ERROR = -32700

INSTRUCTIONS = (
    "Fugue modular synthesis server. Create inventions, add modules (oscillators, "
    "filters, envelopes, etc.), connect them via named ports, and adjust controls "
    "in real time. Call describe_module_types first to see available modules and "
    "their ports. Typical signal chain: clock -> melody -> oscillator -> vca -> dac, "
    "with an adsr envelope controlling the vca's cv input."
)


class ToolError(Exception):
    """A tool call failed; carries the JSON-RPC error code to report."""

    def __init__(self, message: str, code: int = INTERNAL_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


def parse_control_value(value: Any) -> bool | float | str:
    """Turn a JSON value into a control value: a boolean, a number or a string."""
    if isinstance(value, bool) or isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    raise ToolError("Control value must be a JSON number, boolean, or string")


def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Mapping):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"cannot serialise {type(obj).__name__}")


def _json_result(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, default=_json_default, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise ToolError(str(exc)) from exc


@dataclass
class _ModuleInfo:
    id: str
    module_type: str
    config: Any

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "module_type": self.module_type, "config": self.config}


@dataclass
class _ConnectionInfo:
    from_module: str
    from_port: str
    to_module: str
    to_port: str

    def to_dict(self) -> dict[str, str]:
        return {
            "from": self.from_module,
            "from_port": self.from_port,
            "to": self.to_module,
            "to_port": self.to_port,
        }


@dataclass(frozen=True)
class _Param:
    name: str
    json_type: str | None
    description: str
    required: bool = True


@dataclass(frozen=True)
class _Tool:
    description: str
    params: tuple[_Param, ...] = ()

    def input_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        for param in self.params:
            prop: dict[str, Any] = {"description": param.description}
            if param.json_type is not None:
                prop["type"] = param.json_type if param.required else [param.json_type, "null"]
            properties[param.name] = prop
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        required = [p.name for p in self.params if p.required]
        if required:
            schema["required"] = required
        return schema


_CONNECTION_PARAMS = (
    _Param("from", "string", "Source module ID"),
    _Param(
        "from_port",
        "string",
        "Output port name on source (e.g. 'audio', 'gate', 'frequency', 'envelope')",
    ),
    _Param("to", "string", "Destination module ID"),
    _Param(
        "to_port",
        "string",
        "Input port name on destination (e.g. 'audio', 'gate', 'frequency', 'cv', 'fm', 'am')",
    ),
)

TOOLS: dict[str, _Tool] = {
    "create_invention": _Tool(
        "Create a minimal invention with just a DAC (audio output) module and start playback. "
        "Stops any currently running invention first. Add modules and connections to build "
        "your synthesis setup.",
        (_Param("title", "string", "Optional title for the invention", required=False),),
    ),
    "load_invention": _Tool(
        "Load an invention from a JSON string and start playback. The JSON should have "
        "'modules' and 'connections' arrays. Stops any currently running invention first.",
        (
            _Param(
                "json",
                "string",
                "Complete invention JSON string (with modules, connections, etc.)",
            ),
        ),
    ),
    "stop_invention": _Tool("Stop the currently running invention and silence audio output."),
    "get_status": _Tool(
        "Get the current status: whether an invention is running, module count, "
        "connection count, and module IDs."
    ),
    "add_module": _Tool(
        "Add a module to the running invention. Use describe_module_types for full port "
        "and control details.",
        (
            _Param(
                "id",
                "string",
                "Unique module instance ID (e.g. 'clock1', 'osc_lead'). "
                "Use describe_module_types to see available types.",
            ),
            _Param("module_type", "string", "Module type name"),
            _Param(
                "config",
                None,
                "Optional JSON config object specific to the module type",
                required=False,
            ),
        ),
    ),
    "remove_module": _Tool(
        "Remove a module from the running invention. All its connections are also removed.",
        (_Param("id", "string", "Module instance ID to remove"),),
    ),
    "list_modules": _Tool("List all modules currently in the invention with their types."),
    "connect": _Tool(
        "Connect two modules by their ports. Signal flows from source output port to "
        "destination input port.",
        _CONNECTION_PARAMS,
    ),
    "disconnect": _Tool(
        "Disconnect two modules by removing the connection between specific ports.",
        _CONNECTION_PARAMS,
    ),
    "list_connections": _Tool("List all connections in the current invention."),
    "set_control": _Tool(
        "Set a control value on a module. Use list_controls to discover available controls "
        "and their valid ranges.",
        (
            _Param("module_id", "string", "Module instance ID"),
            _Param(
                "key",
                "string",
                "Control key (e.g. 'bpm', 'attack', 'type'). "
                "Use list_controls to see available keys.",
            ),
            _Param("value", None, "New value for the control"),
        ),
    ),
    "get_control": _Tool(
        "Get the current value of a control on a module.",
        (
            _Param("module_id", "string", "Module instance ID"),
            _Param("key", "string", "Control key"),
        ),
    ),
    "list_controls": _Tool(
        "List available controls for a module (or all modules if module_id is omitted).",
        (
            _Param(
                "module_id",
                "string",
                "Module instance ID. If omitted, lists controls for all modules.",
                required=False,
            ),
        ),
    ),
    "describe_module_types": _Tool(
        "Describe all available module types with their input ports, output ports, "
        "and controls."
    ),
}


_MISSING = object()


def _arg(args: Mapping[str, Any], name: str, kind: type | None = str, required: bool = True) -> Any:
    value = args.get(name, _MISSING)
    if value is _MISSING or (value is None and not required):
        if required:
            raise ToolError(f"missing required parameter `{name}`", INVALID_PARAMS)
        return None
    if kind is not None and not isinstance(value, kind):
        raise ToolError(f"parameter `{name}` must be a {kind.__name__}", INVALID_PARAMS)
    return value


class FugueMcp:
    """Tool server state: the running invention and a record of its modules and wiring."""

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        catalog: ModuleCatalog | None = None,
        backend_factory: Callable[[], AudioBackend] = OfflineBackend,
    ) -> None:
        self.sample_rate = sample_rate
        self.catalog = catalog if catalog is not None else ModuleCatalog()
        self._backend_factory = backend_factory
        self._lock = threading.Lock()
        self.running: RunningInvention | None = None
        self.modules: dict[str, _ModuleInfo] = {}
        self.connections: list[_ConnectionInfo] = []

    # -- helpers ------------------------------------------------------------

    def _stop_locked(self) -> None:
        if self.running is not None:
            running, self.running = self.running, None
            running.stop()
        self.modules.clear()
        self.connections.clear()

    def _start(self, invention: Invention) -> RunningInvention:
        builder = InventionBuilder(self.sample_rate, self.catalog)
        try:
            runtime, _handles = builder.build(invention)
            return runtime.start(self._backend_factory())
        except Exception as exc:
            raise ToolError(str(exc)) from exc

    def _require_running(self, message: str = "No invention is running.") -> RunningInvention:
        if self.running is None:
            raise ToolError(message)
        return self.running

    # -- lifecycle ----------------------------------------------------------

    def create_invention(self, title: str | None = None) -> str:
        """Start a new invention holding only a DAC."""
        with self._lock:
            self._stop_locked()
            invention = Invention(
                title=title, modules=[ModuleSpec("dac", "dac", None)], connections=[]
            )
            running = self._start(invention)
            self.modules["dac"] = _ModuleInfo("dac", "dac", None)
            self.running = running
        name = title if title is not None else "untitled"
        return (
            f"Created invention '{name}' with DAC. "
            "Add modules and connect them to make sound."
        )

    def load_invention(self, json_text: str) -> str:
        """Replace the current invention with one parsed from JSON and start it."""
        with self._lock:
            self._stop_locked()
            try:
                invention = Invention.from_json(json_text)
            except ValueError as exc:
                raise ToolError(str(exc)) from exc
            for spec in invention.modules:
                self.modules[spec.id] = _ModuleInfo(spec.id, spec.module_type, spec.config)
            for conn in invention.connections:
                self.connections.append(
                    _ConnectionInfo(
                        conn.from_module, conn.from_port or "", conn.to_module, conn.to_port or ""
                    )
                )
            title = invention.title if invention.title is not None else "untitled"
            module_count = len(invention.modules)
            conn_count = len(invention.connections)
            self.running = self._start(invention)
        return (
            f"Loaded invention '{title}' with {module_count} modules and "
            f"{conn_count} connections. Playback started."
        )

    def stop_invention(self) -> str:
        with self._lock:
            if self.running is None:
                return "No invention is running."
            self._stop_locked()
            return "Invention stopped."

    def get_status(self) -> str:
        with self._lock:
            return _json_result(
                {
                    "running": self.running is not None,
                    "module_count": len(self.modules),
                    "connection_count": len(self.connections),
                    "modules": list(self.modules),
                }
            )

    # -- modules ------------------------------------------------------------

    def add_module(self, module_id: str, module_type: str, config: Any = None) -> str:
        with self._lock:
            running = self._require_running(
                "No invention is running. Call create_invention first."
            )
            try:
                running.add_module(module_id, module_type, config)
            except GraphCommandError as exc:
                raise ToolError(str(exc)) from exc
            self.modules[module_id] = _ModuleInfo(module_id, module_type, config)
        return f"Added {module_type} module '{module_id}'."

    def remove_module(self, module_id: str) -> str:
        with self._lock:
            running = self._require_running()
            try:
                running.remove_module(module_id)
            except GraphCommandError as exc:
                raise ToolError(str(exc)) from exc
            self.modules.pop(module_id, None)
            self.connections = [
                c
                for c in self.connections
                if c.from_module != module_id and c.to_module != module_id
            ]
        return f"Removed module '{module_id}'."

    def list_modules(self) -> str:
        with self._lock:
            return _json_result([info.to_dict() for info in self.modules.values()])

    # -- connections --------------------------------------------------------

    def connect(self, from_module: str, from_port: str, to_module: str, to_port: str) -> str:
        with self._lock:
            running = self._require_running()
            try:
                running.connect(from_module, from_port, to_module, to_port)
            except GraphCommandError as exc:
                raise ToolError(str(exc)) from exc
            self.connections.append(_ConnectionInfo(from_module, from_port, to_module, to_port))
        return f"Connected {from_module}:{from_port} -> {to_module}:{to_port}"

    def disconnect(self, from_module: str, from_port: str, to_module: str, to_port: str) -> str:
        with self._lock:
            running = self._require_running()
            try:
                running.disconnect(from_module, from_port, to_module, to_port)
            except GraphCommandError as exc:
                raise ToolError(str(exc)) from exc
            target = _ConnectionInfo(from_module, from_port, to_module, to_port)
            self.connections = [c for c in self.connections if c != target]
        return f"Disconnected {from_module}:{from_port} -> {to_module}:{to_port}"

    def list_connections(self) -> str:
        with self._lock:
            return _json_result([c.to_dict() for c in self.connections])

    # -- controls -----------------------------------------------------------

    def set_control(self, module_id: str, key: str, value: Any) -> str:
        with self._lock:
            running = self._require_running()
            parsed = parse_control_value(value)
            try:
                running.set_control(module_id, key, parsed)
            except GraphCommandError as exc:
                raise ToolError(str(exc)) from exc
        return f"Set {module_id}.{key}"

    def get_control(self, module_id: str, key: str) -> str:
        with self._lock:
            running = self._require_running()
            try:
                value = running.get_control(module_id, key)
            except GraphCommandError as exc:
                raise ToolError(str(exc)) from exc
        try:
            rendered = json.dumps(value, default=_json_default)
        except (TypeError, ValueError) as exc:
            raise ToolError(str(exc)) from exc
        return f"{module_id}.{key} = {rendered}"

    def list_controls(self, module_id: str | None = None) -> str:
        with self._lock:
            running = self._require_running()
            if module_id is not None:
                try:
                    controls = running.list_controls(module_id)
                except GraphCommandError as exc:
                    raise ToolError(str(exc)) from exc
                entries = [{"module_id": module_id, "controls": controls}]
            else:
                entries = [
                    {"module_id": mid, "controls": controls}
                    for mid, controls in running.list_all_controls()
                ]
            return _json_result(entries)

    # -- discovery ----------------------------------------------------------

    def describe_module_types(self) -> str:
        """Ports and controls of every registered module type, sorted by name."""
        with self._lock:
            types = []
            for type_name in sorted(self.catalog.types()):
                is_sink = self.catalog.is_sink(type_name)
                try:
                    result = self.catalog.build(type_name, self.sample_rate, None)
                except Exception:
                    types.append(
                        {
                            "type_name": type_name,
                            "inputs": [],
                            "outputs": [],
                            "controls": [],
                            "is_sink": is_sink,
                        }
                    )
                    continue
                surface = result.control_surface
                types.append(
                    {
                        "type_name": type_name,
                        "inputs": [str(p) for p in result.module.inputs()],
                        "outputs": [str(p) for p in result.module.outputs()],
                        "controls": list(surface.controls()) if surface is not None else [],
                        "is_sink": is_sink,
                    }
                )
            return _json_result(types)

    # -- protocol -----------------------------------------------------------

    def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> str:
        """Run the tool ``name`` with JSON ``arguments`` and return its text output."""
        if arguments is not None and not isinstance(arguments, Mapping):
            raise ToolError("tool arguments must be an object", INVALID_PARAMS)
        args = dict(arguments or {})
        handlers: dict[str, Callable[[], str]] = {
            "create_invention": lambda: self.create_invention(
                _arg(args, "title", required=False)
            ),
            "load_invention": lambda: self.load_invention(_arg(args, "json")),
            "stop_invention": self.stop_invention,
            "get_status": self.get_status,
            "add_module": lambda: self.add_module(
                _arg(args, "id"),
                _arg(args, "module_type"),
                _arg(args, "config", None, required=False),
            ),
            "remove_module": lambda: self.remove_module(_arg(args, "id")),
            "list_modules": self.list_modules,
            "connect": lambda: self.connect(
                _arg(args, "from"), _arg(args, "from_port"), _arg(args, "to"), _arg(args, "to_port")
            ),
            "disconnect": lambda: self.disconnect(
                _arg(args, "from"), _arg(args, "from_port"), _arg(args, "to"), _arg(args, "to_port")
            ),
            "list_connections": self.list_connections,
            "set_control": lambda: self.set_control(
                _arg(args, "module_id"), _arg(args, "key"), _arg(args, "value", None)
            ),
            "get_control": lambda: self.get_control(_arg(args, "module_id"), _arg(args, "key")),
            "list_controls": lambda: self.list_controls(_arg(args, "module_id", required=False)),
            "describe_module_types": self.describe_module_types,
        }
        handler = handlers.get(name)
        if handler is None:
            raise ToolError(f"tool not found: {name}", INVALID_PARAMS)
        return handler()

    def handle_message(self, message: Any) -> dict[str, Any] | None:
        """Answer one JSON-RPC message; notifications get no answer (None)."""
        if not isinstance(message, Mapping):
            return _error_response(None, INVALID_REQUEST, "Invalid request")
        if "id" not in message:
            return None
        request_id = message["id"]
        method = message.get("method")
        params = message.get("params") or {}
        if not isinstance(params, Mapping):
            return _error_response(request_id, INVALID_PARAMS, "params must be an object")

        if method == "initialize":
            return _result_response(
                request_id,
                {
                    "protocolVersion": params.get("protocolVersion", DEFAULT_PROTOCOL_VERSION),
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                    "instructions": INSTRUCTIONS,
                },
            )
        if method == "ping":
            return _result_response(request_id, {})
        if method == "tools/list":
            tools = [
                {"name": name, "description": tool.description, "inputSchema": tool.input_schema()}
                for name, tool in TOOLS.items()
            ]
            return _result_response(request_id, {"tools": tools})
        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str):
                return _error_response(request_id, INVALID_PARAMS, "tool name must be a string")
            try:
                text = self.call_tool(name, params.get("arguments"))
            except ToolError as exc:
                return _error_response(request_id, exc.code, exc.message)
            return _result_response(
                request_id, {"content": [{"type": "text", "text": text}], "isError": False}
            )
        return _error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")


def _result_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def serve(server: FugueMcp, stdin: Iterable[str], stdout: TextIO) -> None:
    """Read newline-delimited JSON-RPC messages and write the answers, one per line."""
    for line in stdin:
        text = line.strip()
        if not text:
            continue
        try:
            message = json.loads(text)
        except json.JSONDecodeError as exc:
            response: dict[str, Any] | None = _error_response(
                None, PARSE_ERROR, f"Parse error: {exc}"
            )
        else:
            response = server.handle_message(message)
        if response is not None:
            stdout.write(json.dumps(response, default=_json_default) + "\n")
            stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Serve tools over standard input and output until input ends."""
    parser = argparse.ArgumentParser(prog="fugue-mcp", description="Modular synthesis tool server")
    parser.add_argument("--sample-rate", type=int, default=DEFAULT_SAMPLE_RATE)
    args = parser.parse_args(argv)
    logging.basicConfig(stream=sys.stderr, level=logging.INFO)
    server = FugueMcp(sample_rate=args.sample_rate)
    serve(server, sys.stdin, sys.stdout)
    with server._lock:
        server._stop_locked()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())