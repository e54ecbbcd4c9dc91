"""Signal processing graph evaluated one sample at a time in topological order.

Modules are connected through named ports and every signal is a float. The
processing order is recomputed only when the topology changes; edges that
close a cycle are skipped by the sort and so read the value their source
produced on the previous sample.

Module order is the insertion order of the ``modules`` mapping, which keeps
tie-breaking between equally valid orders deterministic from run to run.
"""

from __future__ import annotations

import math
import queue
import threading
from contextlib import suppress
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence, Union, runtime_checkable


@dataclass(frozen=True)
class StereoFrame:
    """One stereo output sample."""

    left: float = 0.0
    right: float = 0.0


@runtime_checkable
class SignalModule(Protocol):
    """What the graph needs from a module."""

    def inputs(self) -> Sequence[str]: ...

    def outputs(self) -> Sequence[str]: ...

    def set_input(self, port: str, value: float) -> None: ...

    def get_output(self, port: str) -> float | None: ...

    def reset_inputs(self) -> None: ...

    def process(self) -> None: ...

    def mark_processed(self, sample: int) -> None: ...


@runtime_checkable
class SinkModule(SignalModule, Protocol):
    """A module at the end of the chain whose output leaves the graph."""

    def sink_output(self) -> StereoFrame: ...


@dataclass(frozen=True)
class RoutingConnection:
    """A wire from an output port of one module to an input port of another."""

    from_module: str
    from_port: str
    to_module: str
    to_port: str


@dataclass(frozen=True)
class SetModuleInput:
    """Set an input port of a module to a fixed value."""

    module_id: str
    port: str
    value: float


@dataclass(frozen=True)
class AddModule:
    """Add a module, replacing any module with the same id."""

    module_id: str
    module: SignalModule
    sink: SinkModule | None = None


@dataclass(frozen=True)
class RemoveModule:
    """Remove a module and every connection fed by it."""

    module_id: str


@dataclass(frozen=True)
class AddConnection:
    """Connect an output port to an input port."""

    from_module: str
    from_port: str
    to_module: str
    to_port: str


@dataclass(frozen=True)
class RemoveConnection:
    """Remove a connection between two ports."""

    from_module: str
    from_port: str
    to_module: str
    to_port: str


GraphCommand = Union[SetModuleInput, AddModule, RemoveModule, AddConnection, RemoveConnection]

_UNVISITED, _ON_STACK, _FINISHED = 0, 1, 2


def _swap_remove(items: dict, key: str) -> dict:
    """Remove ``key`` by moving the last entry into its place."""
    if key not in items:
        return items
    keys = list(items)
    index = keys.index(key)
    last = keys.pop()
    if last != key:
        keys[index] = last
    return {k: items[k] for k in keys}


class SignalGraph:
    """Modules, sinks and the connections between them, processed sample by sample."""

    def __init__(
        self,
        modules: Mapping[str, SignalModule] | None = None,
        sinks: Mapping[str, SinkModule] | None = None,
        routing: Iterable[RoutingConnection] = (),
    ) -> None:
        self.modules: dict[str, SignalModule] = dict(modules or {})
        self.sinks: dict[str, SinkModule] = dict(sinks or {})
        self.input_map: dict[str, list[RoutingConnection]] = {}
        for conn in routing:
            self.input_map.setdefault(conn.to_module, []).append(conn)
        self.current_sample = 0
        self.lock = threading.RLock()
        self._commands: queue.SimpleQueue[GraphCommand] = queue.SimpleQueue()
        self._process_order: list[str] = []
        self._topo_dirty = True

    def send(self, command: GraphCommand) -> None:
        """Queue a command; it takes effect at the start of the next sample."""
        self._commands.put(command)

    def drain_commands(self) -> None:
        """Apply every queued command in the order it was sent."""
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                return
            self.apply_command(command)

    def apply_command(self, command: GraphCommand) -> None:
        """Apply one command to the graph."""
        if isinstance(command, SetModuleInput):
            module = self.modules.get(command.module_id)
            if module is not None:
                with suppress(KeyError, ValueError):
                    module.set_input(command.port, command.value)
        elif isinstance(command, AddModule):
            self.modules[command.module_id] = command.module
            if command.sink is not None:
                self.sinks[command.module_id] = command.sink
            self._topo_dirty = True
        elif isinstance(command, RemoveModule):
            self.modules = _swap_remove(self.modules, command.module_id)
            self.sinks = _swap_remove(self.sinks, command.module_id)
            self.input_map.pop(command.module_id, None)
            for module_id, connections in self.input_map.items():
                self.input_map[module_id] = [
                    conn for conn in connections if conn.from_module != command.module_id
                ]
            self._topo_dirty = True
        elif isinstance(command, AddConnection):
            self.input_map.setdefault(command.to_module, []).append(
                RoutingConnection(
                    command.from_module, command.from_port, command.to_module, command.to_port
                )
            )
            self._topo_dirty = True
        elif isinstance(command, RemoveConnection):
            connections = self.input_map.get(command.to_module)
            if connections is not None:
                self.input_map[command.to_module] = [
                    conn
                    for conn in connections
                    if not (
                        conn.from_module == command.from_module
                        and conn.from_port == command.from_port
                        and conn.to_port == command.to_port
                    )
                ]
            self._topo_dirty = True
        else:
            raise TypeError(f"unknown graph command: {command!r}")

    def recompute_process_order(self) -> None:
        """Recompute the topological order with a depth-first search.

        The order is the reverse post-order of the search. Edges back onto a
        node still on the stack close a cycle and are skipped, so every module
        is visited and modules downstream of a cycle still follow their inputs.
        """
        downstream: dict[str, list[str]] = {}
        for connections in self.input_map.values():
            for conn in connections:
                if conn.to_module in self.modules and conn.from_module in self.modules:
                    downstream.setdefault(conn.from_module, []).append(conn.to_module)

        state = dict.fromkeys(self.modules, _UNVISITED)
        post_order: list[str] = []

        for start in self.modules:
            if state[start] != _UNVISITED:
                continue
            state[start] = _ON_STACK
            stack: list[tuple[str, Iterable[str]]] = [(start, iter(downstream.get(start, ())))]
            while stack:
                node, neighbours = stack[-1]
                nxt = next(neighbours, None)
                if nxt is None:
                    stack.pop()
                    state[node] = _FINISHED
                    post_order.append(node)
                elif state.get(nxt) == _UNVISITED:
                    state[nxt] = _ON_STACK
                    stack.append((nxt, iter(downstream.get(nxt, ()))))

        post_order.reverse()
        self._process_order = post_order
        self._topo_dirty = False

    def process_order(self) -> list[str]:
        """The order in which modules are processed, as last computed."""
        return list(self._process_order)

    def process_sample(self) -> StereoFrame:
        """Apply pending commands, process every module once and mix the sinks."""
        with self.lock:
            self.drain_commands()
            if self._topo_dirty:
                self.recompute_process_order()

            self.current_sample += 1

            for module in self.modules.values():
                module.reset_inputs()

            for module_id in self._process_order:
                module = self.modules.get(module_id)
                for conn in self.input_map.get(module_id, ()):
                    source = self.modules.get(conn.from_module)
                    value = source.get_output(conn.from_port) if source is not None else None
                    if module is not None:
                        with suppress(KeyError, ValueError):
                            module.set_input(conn.to_port, 0.0 if value is None else value)
                if module is not None:
                    module.process()
                    module.mark_processed(self.current_sample)

            if not self.sinks:
                return StereoFrame()

            left = right = 0.0
            for sink in self.sinks.values():
                frame = sink.sink_output()
                left += frame.left
                right += frame.right

            if len(self.sinks) > 1:
                gain = 1.0 / math.sqrt(len(self.sinks))
                left *= gain
                right *= gain
            return StereoFrame(left, right)