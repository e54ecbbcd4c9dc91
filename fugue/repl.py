"""Interactive shell for building, editing and playing inventions."""

from __future__ import annotations

import argparse
import json
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from .builder import InventionBuilder
from .factory import ModuleCatalog
from .format import Connection, Invention, ModuleSpec
from .runtime import AudioBackend, GraphCommandError, OfflineBackend, RunningInvention

DEV_STATE_ENV = "FUGUE_DEV_STATE"
DEFAULT_SAMPLE_RATE = 44100
PROMPT = "fugue> "

_NOT_RUNNING = "No invention is running. Use 'new' or 'load' first."


class ReplError(Exception):
    """A command failed; the message is shown to the user."""


class ReplExit(Exception):
    """The user asked to leave the shell."""


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _kind_name(kind: Any) -> str:
    if isinstance(kind, str):
        return kind.lower()
    if isinstance(kind, Enum):
        return str(kind.value if isinstance(kind.value, str) else kind.name).lower()
    name = _field(kind, "type")
    if name is None:
        name = type(kind).__name__
    return str(name).lower()


def _fmt_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_control(control: Any) -> str:
    """One line describing a control: key, kind, range or options, default and description."""
    default = json.dumps(_field(control, "default"))
    kind = _field(control, "kind")
    name = _kind_name(kind)
    if name == "number":
        low = _field(kind, "min", _field(control, "min"))
        high = _field(kind, "max", _field(control, "max"))
        details = f"range {_fmt_number(low)}..{_fmt_number(high)}, default {default}"
    elif name == "bool":
        details = f"bool, default {default}"
    else:
        options = _field(kind, "options", _field(control, "options"))
        listed = f" [{', '.join(options)}]" if options is not None else ""
        details = f"string{listed}, default {default}"
    key = _field(control, "key", "")
    description = _field(control, "description", "")
    return f"    {key:<14} {details:<28} {description}\n"


def help_text() -> str:
    """The usage summary printed by the ``help`` command."""
    return """\
Fugue REPL — interactive modular synthesis

Lifecycle:
  new [title]                        Create a new invention (DAC only)
  load <path>                        Load invention from JSON file
  load-json <json>                   Load invention from inline JSON
  save <path>                        Save invention to JSON file
  stop                               Stop playback
  status                             Show running state

Modules:
  add <id> <type> [config_json]      Add a module
  remove <id>                        Remove a module
  modules                            List all modules

Connections:
  connect <from> <port> <to> <port>  Wire two modules
  disconnect <from> <port> <to> <port>  Remove a connection
  connections                        List all connections

Controls:
  set <module> <key> <value>         Set a control value
  get <module> <key>                 Get a control value
  controls [module]                  List controls

Discovery:
  types                              Describe all module types

  help                               Show this help
  quit / exit                        Stop and exit"""


def _parse_control_value(text: str) -> Any:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ReplError(f"Invalid control value JSON: {exc}") from exc
    if isinstance(value, bool) or isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    raise ReplError(
        "Invalid control value JSON: expected a number, boolean, or string"
    )


class Repl:
    """Shell state: the running invention and a record of its modules and wiring."""

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        catalog: ModuleCatalog | None = None,
        backend_factory: Callable[[], AudioBackend] = OfflineBackend,
    ) -> None:
        self.sample_rate = sample_rate
        self.catalog = catalog if catalog is not None else ModuleCatalog()
        self._backend_factory = backend_factory
        self.running: RunningInvention | None = None
        self.modules: dict[str, ModuleSpec] = {}
        self.connections: list[Connection] = []
        self.title: str | None = None
        self._commands: dict[str, Callable[[str], str]] = {
            "new": self._cmd_new,
            "load": self._cmd_load,
            "load-json": self._cmd_load_json,
            "stop": lambda rest: self._cmd_stop(),
            "status": lambda rest: self._cmd_status(),
            "add": self._cmd_add,
            "remove": self._cmd_remove,
            "modules": lambda rest: self._cmd_modules(),
            "connect": self._cmd_connect,
            "disconnect": self._cmd_disconnect,
            "connections": lambda rest: self._cmd_connections(),
            "set": self._cmd_set,
            "get": self._cmd_get,
            "controls": self._cmd_controls,
            "save": self._cmd_save,
            "types": lambda rest: self._cmd_types(),
            "help": lambda rest: help_text(),
        }

    # -- state --------------------------------------------------------------

    def stop_current(self) -> None:
        """Stop any running invention and forget its modules, wiring and title."""
        if self.running is not None:
            running, self.running = self.running, None
            running.stop()
        self.modules.clear()
        self.connections.clear()
        self.title = None

    def to_invention(self) -> Invention:
        """The current state as an invention document."""
        return Invention(
            title=self.title,
            modules=[
                ModuleSpec(spec.id, spec.module_type, spec.config)
                for spec in self.modules.values()
            ],
            connections=[
                Connection(c.from_module, c.to_module, c.from_port, c.to_port)
                for c in self.connections
            ],
        )

    def _require_running(self) -> RunningInvention:
        if self.running is None:
            raise ReplError(_NOT_RUNNING)
        return self.running

    def _build_and_start(self, invention: Invention) -> RunningInvention:
        builder = InventionBuilder(self.sample_rate, self.catalog)
        try:
            runtime, _handles = builder.build(invention)
            return runtime.start(self._backend_factory())
        except Exception as exc:
            raise ReplError(str(exc)) from exc

    def start_invention(self, invention: Invention) -> str:
        """Replace the current invention with ``invention`` and start it."""
        self.stop_current()
        self.title = invention.title
        for spec in invention.modules:
            self.modules[spec.id] = ModuleSpec(spec.id, spec.module_type, spec.config)
        for conn in invention.connections:
            self.connections.append(
                Connection(conn.from_module, conn.to_module, conn.from_port or "", conn.to_port or "")
            )
        title = invention.title if invention.title is not None else "untitled"
        module_count = len(invention.modules)
        conn_count = len(invention.connections)
        self.running = self._build_and_start(invention)
        return f"Loaded '{title}' with {module_count} modules, {conn_count} connections."

    def save_dev_state(self) -> None:
        """Write the current state to the file named by FUGUE_DEV_STATE, if set."""
        path = os.environ.get(DEV_STATE_ENV)
        if not path or not self.modules:
            return
        try:
            Path(path).write_text(self.to_invention().to_json(), encoding="utf-8")
        except OSError as exc:
            print(f"[dev] Failed to save state: {exc}", file=sys.stderr)
        else:
            print(f"[dev] State saved to {path}", file=sys.stderr)

    # -- dispatch -----------------------------------------------------------

    def execute(self, line: str) -> str:
        """Run one command line and return its output; raise ReplError on failure."""
        line = line.strip()
        if not line:
            return ""
        parts = line.split(None, 1)
        cmd = parts[0]
        rest = parts[1].strip() if len(parts) > 1 else ""
        if cmd in ("quit", "exit"):
            self.save_dev_state()
            self.stop_current()
            raise ReplExit()
        handler = self._commands.get(cmd)
        if handler is None:
            raise ReplError(f"Unknown command: '{cmd}'. Type 'help' for usage.")
        return handler(rest)

    # -- lifecycle ----------------------------------------------------------

    def _cmd_new(self, rest: str) -> str:
        self.stop_current()
        title = rest or None
        invention = Invention(
            title=title,
            modules=[ModuleSpec("dac", "dac", None)],
            connections=[],
        )
        running = self._build_and_start(invention)
        self.modules["dac"] = ModuleSpec("dac", "dac", None)
        self.running = running
        self.title = title
        name = title if title is not None else "untitled"
        return f"Created invention '{name}' with DAC."

    def _cmd_load(self, rest: str) -> str:
        if not rest:
            raise ReplError("Usage: load <path>")
        try:
            invention = Invention.from_file(rest)
        except (OSError, ValueError) as exc:
            raise ReplError(str(exc)) from exc
        return self.start_invention(invention)

    def _cmd_load_json(self, rest: str) -> str:
        if not rest:
            raise ReplError("Usage: load-json <json>")
        try:
            invention = Invention.from_json(rest)
        except ValueError as exc:
            raise ReplError(str(exc)) from exc
        return self.start_invention(invention)

    def _cmd_stop(self) -> str:
        if self.running is None:
            return "No invention is running."
        self.stop_current()
        return "Stopped."

    def _cmd_status(self) -> str:
        if self.running is None:
            return "Not running."
        return f"Running: {len(self.modules)} modules, {len(self.connections)} connections"

    def _cmd_save(self, rest: str) -> str:
        if not rest:
            raise ReplError("Usage: save <path>")
        if not self.modules:
            raise ReplError("Nothing to save. No modules in current state.")
        try:
            Path(rest).write_text(self.to_invention().to_json(), encoding="utf-8")
        except OSError as exc:
            raise ReplError(str(exc)) from exc
        return f"Saved to {rest}."

    # -- modules ------------------------------------------------------------

    def _cmd_add(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split(None, 2)
        if len(parts) < 2:
            raise ReplError("Usage: add <id> <type> [config_json]")
        module_id, module_type = parts[0], parts[1]
        config = None
        if len(parts) > 2:
            try:
                config = json.loads(parts[2])
            except json.JSONDecodeError as exc:
                raise ReplError(f"Invalid config JSON: {exc}") from exc
        try:
            running.add_module(module_id, module_type, config)
        except GraphCommandError as exc:
            raise ReplError(str(exc)) from exc
        self.modules[module_id] = ModuleSpec(module_id, module_type, config)
        return f"Added {module_type} '{module_id}'."

    def _cmd_remove(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split()
        if not parts:
            raise ReplError("Usage: remove <id>")
        module_id = parts[0]
        try:
            running.remove_module(module_id)
        except GraphCommandError as exc:
            raise ReplError(str(exc)) from exc
        self.modules.pop(module_id, None)
        self.connections = [
            c for c in self.connections
            if c.from_module != module_id and c.to_module != module_id
        ]
        return f"Removed '{module_id}'."

    def _cmd_modules(self) -> str:
        if not self.modules:
            return "No modules."
        return "\n".join(
            f"  {spec.id:<16} {spec.module_type}" for spec in self.modules.values()
        ).rstrip()

    # -- connections --------------------------------------------------------

    def _cmd_connect(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split()
        if len(parts) != 4:
            raise ReplError("Usage: connect <from> <from_port> <to> <to_port>")
        src, src_port, dst, dst_port = parts
        try:
            running.connect(src, src_port, dst, dst_port)
        except GraphCommandError as exc:
            raise ReplError(str(exc)) from exc
        self.connections.append(Connection(src, dst, src_port, dst_port))
        return f"Connected {src}:{src_port} -> {dst}:{dst_port}"

    def _cmd_disconnect(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split()
        if len(parts) != 4:
            raise ReplError("Usage: disconnect <from> <from_port> <to> <to_port>")
        src, src_port, dst, dst_port = parts
        try:
            running.disconnect(src, src_port, dst, dst_port)
        except GraphCommandError as exc:
            raise ReplError(str(exc)) from exc
        self.connections = [
            c for c in self.connections
            if not (
                c.from_module == src
                and c.from_port == src_port
                and c.to_module == dst
                and c.to_port == dst_port
            )
        ]
        return f"Disconnected {src}:{src_port} -> {dst}:{dst_port}"

    def _cmd_connections(self) -> str:
        if not self.connections:
            return "No connections."
        return "\n".join(
            f"  {c.from_module}:{c.from_port} -> {c.to_module}:{c.to_port}"
            for c in self.connections
        ).rstrip()

    # -- controls -----------------------------------------------------------

    def _cmd_set(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split(None, 2)
        if len(parts) != 3:
            raise ReplError("Usage: set <module_id> <key> <value>")
        module_id, key, raw = parts
        value = _parse_control_value(raw)
        try:
            running.set_control(module_id, key, value)
        except GraphCommandError as exc:
            raise ReplError(str(exc)) from exc
        return f"{module_id}.{key} updated"

    def _cmd_get(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split()
        if len(parts) != 2:
            raise ReplError("Usage: get <module_id> <key>")
        module_id, key = parts
        try:
            value = running.get_control(module_id, key)
        except GraphCommandError as exc:
            raise ReplError(str(exc)) from exc
        return f"{module_id}.{key} = {json.dumps(value)}"

    def _cmd_controls(self, rest: str) -> str:
        running = self._require_running()
        parts = rest.split()
        if parts:
            module_id = parts[0]
            try:
                controls = running.list_controls(module_id)
            except GraphCommandError as exc:
                raise ReplError(str(exc)) from exc
            if not controls:
                return f"{module_id}: no controls"
            out = f"{module_id}:\n" + "".join(format_control(c) for c in controls)
            return out.rstrip()
        everything = running.list_all_controls()
        if not everything:
            return "No controls."
        out = "".join(
            f"{module_id}:\n" + "".join(format_control(c) for c in controls)
            for module_id, controls in everything
        )
        return out.rstrip()

    # -- discovery ----------------------------------------------------------

    def _cmd_types(self) -> str:
        sections = []
        for type_name in sorted(self.catalog.types()):
            try:
                result = self.catalog.build(type_name, self.sample_rate, None)
            except Exception:
                sections.append(f"{type_name}: (requires config to inspect)\n\n")
                continue
            inputs = list(result.module.inputs())
            outputs = list(result.module.outputs())
            surface = result.control_surface
            controls = list(surface.controls()) if surface is not None else []
            text = f"{type_name}:\n"
            if inputs:
                text += f"  inputs:   {', '.join(inputs)}\n"
            if outputs:
                text += f"  outputs:  {', '.join(outputs)}\n"
            if controls:
                text += "  controls:\n" + "".join(format_control(c) for c in controls)
            sections.append(text + "\n")
        return "".join(sections).rstrip()


def _history_path() -> Path | None:
    home = os.environ.get("HOME") or os.environ.get("USERPROFILE")
    return Path(home) / ".fugue_history" if home else None


def main(argv: list[str] | None = None) -> int:
    """Run the interactive shell until quit or end of input."""
    parser = argparse.ArgumentParser(prog="fugue-repl", description="Interactive modular synthesis")
    parser.add_argument("--sample-rate", type=int, default=DEFAULT_SAMPLE_RATE)
    args = parser.parse_args(argv)

    repl = Repl(sample_rate=args.sample_rate)

    try:
        import readline
    except ImportError:
        readline = None

    history = _history_path()
    if readline is not None and history is not None:
        try:
            readline.read_history_file(str(history))
        except OSError:
            pass

    dev_state = os.environ.get(DEV_STATE_ENV)
    if dev_state and Path(dev_state).exists():
        try:
            invention = Invention.from_file(dev_state)
        except (OSError, ValueError) as exc:
            print(f"[dev] Failed to read state file: {exc}", file=sys.stderr)
        else:
            try:
                print(f"[dev] Auto-restored: {repl.start_invention(invention)}")
            except ReplError as exc:
                print(f"[dev] Restore failed: {exc}", file=sys.stderr)

    print("Fugue REPL (type 'help' for commands, 'quit' to exit)")

    while True:
        try:
            line = input(PROMPT)
        except KeyboardInterrupt:
            print("^C (use 'quit' to exit)")
            continue
        except EOFError:
            repl.save_dev_state()
            repl.stop_current()
            break
        line = line.strip()
        if not line:
            continue
        try:
            output = repl.execute(line)
        except ReplExit:
            break
        except ReplError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            continue
        if output:
            print(output)

    if readline is not None and history is not None:
        try:
            readline.write_history_file(str(history))
        except OSError:
            pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())