# fugue

A modular synthesis engine driven by *inventions*: JSON documents that list
the modules to build and the named ports that connect them. An invention is
validated, built into a signal graph, and run sample by sample through an
audio backend, while its modules stay open to control at runtime.

## Installing

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## What the package does not include

fugue provides the invention format, the signal graph, the runtime and three
front ends. It does **not** ship any module types (no clock, oscillator,
envelope, filter, mixer, sequencer or output module) and it has no
sound-card backend. A fresh `fugue.factory.ModuleCatalog` is empty, and the
only backend is `fugue.runtime.OfflineBackend`, which renders frames when
asked and plays nothing.

So the installed commands start with no module types: in `fugue-repl`,
`new` answers `Error: unknown module type: dac`, and every invention that
names a module type fails to build. To do real work, write your own
factories (see below) and hand a catalog to `InventionBuilder`, `Repl` or
`FugueMcp` from Python.

## Inventions

An invention is plain JSON:

```json
{
  "version": "1.0.0",
  "title": "Constant into output",
  "modules": [
    {"id": "level", "type": "constant", "config": {"level": 0.5}},
    {"id": "dac", "type": "dac"}
  ],
  "connections": [
    {"from": "level", "from_port": "out", "to": "dac", "to_port": "audio"}
  ]
}
```

`version` defaults to `"1.0.0"`, `title` and `description` are optional,
`modules` and `connections` are required, and each module's `config` is
handed unchanged to the factory for its `type`. Malformed documents raise
`fugue.format.InventionFormatError` (a `ValueError`).

```python
from fugue.format import Invention

invention = Invention.from_file("my_invention.json")   # or Invention.from_json(text)
print(invention.title, len(invention.modules))
text = invention.to_json()                             # indented JSON
```

`Invention`, `ModuleSpec`, `Connection` and `TimeSignature` are dataclasses
with `from_dict` / `to_dict`. A `Connection` leaves out `from_port` and
`to_port` when they are `None`.

## Modules and factories

The graph needs these methods from a module (`fugue.graph.SignalModule`):
`inputs()`, `outputs()`, `set_input(port, value)`, `get_output(port)`,
`reset_inputs()`, `process()` and `mark_processed(sample)`. A sink
(`fugue.graph.SinkModule`) also has `sink_output()`, returning a
`fugue.graph.StereoFrame`. A control surface, if a module has one, offers
`controls()`, `get_control(key)` and `set_control(key, value)`.

A `fugue.factory.ModuleFactory` reports its `type_id()`, says whether it
`is_sink()`, and `build(sample_rate, config)`s a `ModuleBuildResult`
(`module`, `handles`, `control_surface`, `sink`).

```python
from fugue.builder import InventionBuilder
from fugue.factory import ModuleBuildResult, ModuleCatalog, ModuleFactory
from fugue.graph import StereoFrame
from fugue.runtime import OfflineBackend


class Constant:
    def __init__(self, level):
        self.level = level
    def inputs(self): return []
    def outputs(self): return ["out"]
    def set_input(self, port, value): raise KeyError(port)
    def get_output(self, port): return self.level if port == "out" else None
    def reset_inputs(self): pass
    def process(self): pass
    def mark_processed(self, sample): pass


class Dac:
    def __init__(self):
        self.value = 0.0
    def inputs(self): return ["audio"]
    def outputs(self): return []
    def set_input(self, port, value): self.value = value
    def get_output(self, port): return None
    def reset_inputs(self): self.value = 0.0
    def process(self): pass
    def mark_processed(self, sample): pass
    def sink_output(self): return StereoFrame(self.value, self.value)


class ConstantFactory(ModuleFactory):
    def type_id(self): return "constant"
    def build(self, sample_rate, config):
        return ModuleBuildResult(module=Constant((config or {}).get("level", 1.0)))


class DacFactory(ModuleFactory):
    def type_id(self): return "dac"
    def is_sink(self): return True
    def build(self, sample_rate, config):
        dac = Dac()
        return ModuleBuildResult(module=dac, sink=dac)


catalog = ModuleCatalog([ConstantFactory(), DacFactory()])
builder = InventionBuilder(44100, catalog)
runtime, handles = builder.build(invention)

backend = OfflineBackend()
running = runtime.start(backend)
frames = backend.render(512)   # 512 StereoFrame values
running.stop()
```

`ModuleCatalog` has `register`, `has_type`, `types`, `is_sink` and `build`;
`build` raises `UnknownFactoryError` for an unregistered type.

## Building and running

`InventionBuilder.build(invention)` checks that every connection names known
modules and both ports, builds each module through the catalog, checks that
the ports exist, and returns an `InventionRuntime` with the invention's
`fugue.handles.InventionHandles`. Any failure raises
`fugue.builder.InventionBuildError`. An invention without a sink builds,
with a logged warning that its output will be silent.

Handles are keyed `"module_id.handle_name"`; `get(key, kind)`,
`all(kind)`, `with_prefix(prefix)`, `keys()` and `merge(other)` look them
up.

`InventionRuntime.start(backend)` hands the graph's per-sample render
function to the backend and returns a `RunningInvention`, which can be
reshaped while it runs:

- `add_module(module_id, module_type, config)` (replaces a module with the
  same id; returns its handles) and `remove_module(module_id)`
- `connect(...)` and `disconnect(...)` with source and destination ports
- `list_controls(module_id)`, `list_all_controls()`,
  `get_control(module_id, key)` and `set_control(module_id, key, value)`
- `set_module_input(module_id, port, value)` to drive an input port directly
- `stop()`; later commands raise `AudioThreadStoppedError`

Changes are queued and applied at the start of the next sample. Failures
raise subclasses of `fugue.runtime.GraphCommandError`:
`AudioThreadStoppedError`, `UnknownModuleTypeError`,
`ModuleBuildFailedError`, `UnknownModuleError`, `InvalidPortError` and
`ControlError`. Your own backend subclasses `fugue.runtime.AudioBackend`
and implements `start(render)` and `stop()`.

The graph processes modules in a topological order recomputed only when the
topology changes, with ties broken by insertion order. Feedback loops are
allowed: the edge that closes a cycle reads its source's value from the
previous sample. With more than one sink, the summed output is scaled by
1/√(number of sinks).

## Commands

### `fugue-repl`

An interactive shell (`fugue.repl.Repl`, option `--sample-rate`, default
44100). Commands: `new [title]`, `load <path>`, `load-json <json>`,
`save <path>`, `stop`, `status`, `add <id> <type> [config_json]`,
`remove <id>`, `modules`, `connect <from> <port> <to> <port>`,
`disconnect <from> <port> <to> <port>`, `connections`,
`set <module> <key> <value>` (value as JSON: number, boolean or string),
`get <module> <key>`, `controls [module]`, `types`, `help`, `quit`/`exit`.

Line history is kept in `~/.fugue_history` when `readline` is available.
When `FUGUE_DEV_STATE` names a file, the session is saved there on exit and
restored from it on the next start.

From Python, `Repl(sample_rate, catalog, backend_factory)` takes your
catalog; `execute(line)` returns the command's output, raises `ReplError`
on failure and `ReplExit` on `quit`/`exit`.

### `fugue-mcp`

A JSON-RPC tool server over standard input and output, one message per line
(option `--sample-rate`). It answers `initialize`, `ping`, `tools/list` and
`tools/call`; its tools are `create_invention`, `load_invention`,
`stop_invention`, `get_status`, `add_module`, `remove_module`,
`list_modules`, `connect`, `disconnect`, `list_connections`, `set_control`,
`get_control`, `list_controls` and `describe_module_types`. Tool failures
come back as JSON-RPC errors.

From Python, `fugue.mcp.FugueMcp(sample_rate, catalog, backend_factory)`
exposes each tool as a method, plus `call_tool(name, arguments)` and
`handle_message(message)`; `fugue.mcp.serve(server, stdin, stdout)` runs
the line protocol over any streams.

### `fugue-mcp-dev`

A development proxy in front of the tool server. It forwards messages both
ways and watches for file changes; on a change it captures the running
invention, answers pending requests with an error, kills the server, runs
the build command, starts a new server, replays the client's `initialize`
and restores the invention. If the build fails it waits for the next change
and tries again.

Options: `--child-command` (default `python -m fugue.mcp`),
`--build-command` (default: byte-compile the package) and `--watch PATH`
(repeatable; by default the package directory plus `pyproject.toml`,
`examples` and `tests` where they exist).