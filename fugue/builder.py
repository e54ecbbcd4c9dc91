"""Turns invention documents into runtimes ready to start."""

from __future__ import annotations

import logging
from typing import Any

from .factory import ModuleCatalog
from .format import Invention
from .graph import RoutingConnection, SignalModule, SinkModule
from .handles import InventionHandles
from .runtime import InvalidPortError, InventionRuntime, validate_input_port, validate_output_port

logger = logging.getLogger(__name__)


class InventionBuildError(Exception):
    """Raised when an invention cannot be built."""


class InventionBuilder:
    """Builds inventions whose modules are wired through named ports."""

    def __init__(self, sample_rate: int, catalog: ModuleCatalog | None = None) -> None:
        self.sample_rate = sample_rate
        self.catalog = catalog if catalog is not None else ModuleCatalog()

    def build(self, invention: Invention) -> tuple[InventionRuntime, InventionHandles]:
        """Validate and build ``invention``; return its runtime and control handles."""
        self._validate(invention)
        modules, sinks, surfaces, handles = self._build_modules(invention)

        if not sinks:
            title = invention.title if invention.title is not None else "untitled"
            logger.warning(
                "Invention '%s' has no sink modules. Audio output will be silent.", title
            )

        routing = self._build_routing(invention, modules)
        runtime = InventionRuntime(
            modules=modules,
            sinks=sinks,
            control_surfaces=surfaces,
            routing=routing,
            catalog=self.catalog,
            sample_rate=self.sample_rate,
        )
        return runtime, handles

    @staticmethod
    def _validate(invention: Invention) -> None:
        module_ids = {spec.id for spec in invention.modules}
        for conn in invention.connections:
            if conn.from_module not in module_ids:
                raise InventionBuildError(f"Unknown source module: {conn.from_module}")
            if conn.to_module not in module_ids:
                raise InventionBuildError(f"Unknown destination module: {conn.to_module}")
            if conn.from_port is None:
                raise InventionBuildError(
                    f"Missing from_port in connection from {conn.from_module}"
                )
            if conn.to_port is None:
                raise InventionBuildError(f"Missing to_port in connection to {conn.to_module}")

    def _build_modules(
        self, invention: Invention
    ) -> tuple[dict[str, SignalModule], dict[str, SinkModule], dict[str, Any], InventionHandles]:
        modules: dict[str, SignalModule] = {}
        sinks: dict[str, SinkModule] = {}
        surfaces: dict[str, Any] = {}
        handles: dict[str, Any] = {}

        for spec in invention.modules:
            try:
                result = self.catalog.build(spec.module_type, self.sample_rate, spec.config)
            except Exception as exc:
                raise InventionBuildError(str(exc)) from exc
            modules[spec.id] = result.module
            if result.sink is not None:
                sinks[spec.id] = result.sink
            if result.control_surface is not None:
                surfaces[spec.id] = result.control_surface
            for name, handle in result.handles:
                handles[f"{spec.id}.{name}"] = handle

        return modules, sinks, surfaces, InventionHandles(handles)

    @staticmethod
    def _build_routing(
        invention: Invention, modules: dict[str, SignalModule]
    ) -> list[RoutingConnection]:
        routing = []
        for conn in invention.connections:
            if conn.from_port is None or conn.to_port is None:
                raise InventionBuildError("Missing port in connection")
            try:
                source = modules.get(conn.from_module)
                if source is not None:
                    validate_output_port(source, conn.from_port)
                dest = modules.get(conn.to_module)
                if dest is not None:
                    validate_input_port(dest, conn.to_port)
            except InvalidPortError as exc:
                raise InventionBuildError(exc.detail) from exc
            routing.append(
                RoutingConnection(conn.from_module, conn.from_port, conn.to_module, conn.to_port)
            )
        return routing