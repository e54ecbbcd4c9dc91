"""Running inventions: the audio backend contract and live graph editing."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .factory import ModuleCatalog
from .graph import (
    AddConnection,
    AddModule,
    GraphCommand,
    RemoveConnection,
    RemoveModule,
    RoutingConnection,
    SetModuleInput,
    SignalGraph,
    SignalModule,
    SinkModule,
    StereoFrame,
)
from .handles import InventionHandles

RenderCallback = Callable[[], StereoFrame]


class GraphCommandError(Exception):
    """Raised when a change to a running invention cannot be made."""

    _template = "graph command failed: {}"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(self._template.format(detail))


class AudioThreadStoppedError(GraphCommandError):
    """The invention has stopped, so commands can no longer be delivered."""

    _template = "audio thread has stopped; command not delivered"


class UnknownModuleTypeError(GraphCommandError):
    """The requested module type is not registered."""

    _template = "unknown module type: {}"


class ModuleBuildFailedError(GraphCommandError):
    """The module factory failed to build the module."""

    _template = "module build failed: {}"


class UnknownModuleError(GraphCommandError):
    """The referenced module does not exist in the graph."""

    _template = "unknown module: {}"


class InvalidPortError(GraphCommandError):
    """The referenced port does not exist on the module."""

    _template = "invalid port: {}"


class ControlError(GraphCommandError):
    """A module control operation failed."""

    _template = "control error: {}"


def _module_name(module: Any) -> str:
    name = getattr(module, "name", None)
    if callable(name):
        name = name()
    return name if isinstance(name, str) else type(module).__name__


def _port_list(ports: Sequence[str]) -> str:
    return "[" + ", ".join(f'"{port}"' for port in ports) + "]"


def validate_output_port(module: SignalModule, port: str) -> None:
    """Raise InvalidPortError unless ``module`` has the output ``port``."""
    outputs = list(module.outputs())
    if port not in outputs:
        raise InvalidPortError(
            f"Module '{_module_name(module)}' does not have output port '{port}'. "
            f"Available: {_port_list(outputs)}"
        )


def validate_input_port(module: SignalModule, port: str) -> None:
    """Raise InvalidPortError unless ``module`` has the input ``port``."""
    inputs = list(module.inputs())
    if port not in inputs:
        raise InvalidPortError(
            f"Module '{_module_name(module)}' does not have input port '{port}'. "
            f"Available: {_port_list(inputs)}"
        )


class AudioBackend(ABC):
    """Something that pulls stereo frames from a render callback."""

    @abstractmethod
    def start(self, render: RenderCallback) -> None:
        """Begin pulling frames from ``render``."""

    @abstractmethod
    def stop(self) -> None:
        """Stop pulling frames."""


class OfflineBackend(AudioBackend):
    """A backend that renders frames only when asked to."""

    def __init__(self) -> None:
        self._callback: RenderCallback | None = None
        self.running = False

    def start(self, render: RenderCallback) -> None:
        self._callback = render
        self.running = True

    def stop(self) -> None:
        self.running = False

    def render(self, frames: int) -> list[StereoFrame]:
        """Render ``frames`` consecutive stereo frames."""
        if not self.running or self._callback is None:
            raise RuntimeError("backend is not running")
        return [self._callback() for _ in range(frames)]


def _reason(exc: Exception) -> str:
    if exc.args and isinstance(exc.args[0], str):
        return exc.args[0]
    return str(exc)


@dataclass
class InventionRuntime:
    """A built invention, ready to be started on a backend."""

    modules: dict[str, SignalModule] = field(default_factory=dict)
    sinks: dict[str, SinkModule] = field(default_factory=dict)
    control_surfaces: dict[str, Any] = field(default_factory=dict)
    routing: list[RoutingConnection] = field(default_factory=list)
    catalog: ModuleCatalog = field(default_factory=ModuleCatalog)
    sample_rate: int = 44100

    def start(self, backend: AudioBackend) -> RunningInvention:
        """Hand the signal graph to ``backend`` and return the live invention."""
        graph = SignalGraph(self.modules, self.sinks, self.routing)
        backend.start(graph.process_sample)
        return RunningInvention(
            backend, graph, dict(self.control_surfaces), self.catalog, self.sample_rate
        )


class RunningInvention:
    """An invention whose graph is being rendered by a backend."""

    def __init__(
        self,
        backend: AudioBackend,
        graph: SignalGraph,
        control_surfaces: dict[str, Any],
        catalog: ModuleCatalog,
        sample_rate: int,
    ) -> None:
        self._backend = backend
        self._graph = graph
        self._control_surfaces = control_surfaces
        self._controls_lock = threading.Lock()
        self._catalog = catalog
        self._sample_rate = sample_rate
        self._stopped = False

    def stop(self) -> None:
        """Stop playback; later commands raise AudioThreadStoppedError."""
        self._backend.stop()
        self._stopped = True

    def _send(self, command: GraphCommand) -> None:
        if self._stopped:
            raise AudioThreadStoppedError()
        self._graph.send(command)

    def set_module_input(self, module_id: str, port: str, value: float) -> None:
        """Set an input port; ignored by the graph if the module or port is missing."""
        self._send(SetModuleInput(module_id, port, float(value)))

    def add_module(self, module_id: str, module_type: str, config: Any = None) -> InventionHandles:
        """Build a module and add it to the graph, replacing any module with that id."""
        if not self._catalog.has_type(module_type):
            raise UnknownModuleTypeError(module_type)
        try:
            result = self._catalog.build(module_type, self._sample_rate, config)
        except Exception as exc:
            raise ModuleBuildFailedError(str(exc)) from exc

        handles = {f"{module_id}.{name}": handle for name, handle in result.handles}
        if result.control_surface is not None:
            with self._controls_lock:
                self._control_surfaces[module_id] = result.control_surface

        self._send(AddModule(module_id, result.module, result.sink))
        return InventionHandles(handles)

    def connect(self, from_module: str, from_port: str, to_module: str, to_port: str) -> None:
        """Connect two ports after checking that both modules and ports exist.

        Pending graph commands are applied first, so modules added just before
        are visible to the check.
        """
        graph = self._graph
        with graph.lock:
            graph.drain_commands()
            source = graph.modules.get(from_module)
            if source is None:
                raise UnknownModuleError(from_module)
            outputs = list(source.outputs())
            if from_port not in outputs:
                raise InvalidPortError(
                    f"module '{from_module}' does not have output port '{from_port}' "
                    f"(available: {_port_list(outputs)})"
                )
            dest = graph.modules.get(to_module)
            if dest is None:
                raise UnknownModuleError(to_module)
            inputs = list(dest.inputs())
            if to_port not in inputs:
                raise InvalidPortError(
                    f"module '{to_module}' does not have input port '{to_port}' "
                    f"(available: {_port_list(inputs)})"
                )
        self._send(AddConnection(from_module, from_port, to_module, to_port))

    def disconnect(self, from_module: str, from_port: str, to_module: str, to_port: str) -> None:
        """Remove a connection; ignored by the graph if it does not exist."""
        self._send(RemoveConnection(from_module, from_port, to_module, to_port))

    def _surface(self, module_id: str) -> Any:
        surface = self._control_surfaces.get(module_id)
        if surface is None:
            raise UnknownModuleError(module_id)
        return surface

    def list_controls(self, module_id: str) -> list[Any]:
        """The controls a module exposes."""
        with self._controls_lock:
            return list(self._surface(module_id).controls())

    def list_all_controls(self) -> list[tuple[str, list[Any]]]:
        """(module_id, controls) for every module that has at least one control."""
        with self._controls_lock:
            result = []
            for module_id, surface in self._control_surfaces.items():
                controls = list(surface.controls())
                if controls:
                    result.append((module_id, controls))
            return result

    def get_control(self, module_id: str, key: str) -> Any:
        """The current value of a module control."""
        with self._controls_lock:
            surface = self._surface(module_id)
            try:
                return surface.get_control(key)
            except ControlError:
                raise
            except (KeyError, ValueError, TypeError) as exc:
                raise ControlError(_reason(exc)) from exc

    def set_control(self, module_id: str, key: str, value: Any) -> None:
        """Set a module control."""
        with self._controls_lock:
            surface = self._surface(module_id)
            try:
                surface.set_control(key, value)
            except ControlError:
                raise
            except (KeyError, ValueError, TypeError) as exc:
                raise ControlError(_reason(exc)) from exc

    def remove_module(self, module_id: str) -> None:
        """Remove a module and its connections; ignored by the graph if missing."""
        with self._controls_lock:
            self._control_surfaces.pop(module_id, None)
        self._send(RemoveModule(module_id))