"""Declarative invention documents: the modules of a synthesis setup and how they connect."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

DEFAULT_VERSION = "1.0.0"


class InventionFormatError(ValueError):
    """Raised when an invention document does not have the expected shape."""


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise InventionFormatError(f"{what} must be a JSON object")
    return data


def _required(data: Mapping[str, Any], key: str, what: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise InventionFormatError(f"missing field `{key}` in {what}") from None


def _required_str(data: Mapping[str, Any], key: str, what: str) -> str:
    value = _required(data, key, what)
    if not isinstance(value, str):
        raise InventionFormatError(f"field `{key}` in {what} must be a string")
    return value


def _optional_str(data: Mapping[str, Any], key: str, what: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise InventionFormatError(f"field `{key}` in {what} must be a string or null")
    return value


def _required_uint(data: Mapping[str, Any], key: str, what: str) -> int:
    value = _required(data, key, what)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InventionFormatError(f"field `{key}` in {what} must be a non-negative integer")
    return value


@dataclass(frozen=True)
class TimeSignature:
    """Beats per measure over the note value that gets one beat."""

    beats_per_measure: int = 4
    beat_unit: int = 4

    @classmethod
    def from_dict(cls, data: Any) -> TimeSignature:
        data = _require_mapping(data, "time signature")
        return cls(
            beats_per_measure=_required_uint(data, "beats_per_measure", "time signature"),
            beat_unit=_required_uint(data, "beat_unit", "time signature"),
        )

    def to_dict(self) -> dict[str, int]:
        return {"beats_per_measure": self.beats_per_measure, "beat_unit": self.beat_unit}


@dataclass
class ModuleSpec:
    """One module instance: its id, its type name and its free-form configuration."""

    id: str
    module_type: str
    config: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> ModuleSpec:
        data = _require_mapping(data, "module")
        return cls(
            id=_required_str(data, "id", "module"),
            module_type=_required_str(data, "type", "module"),
            config=data.get("config"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.module_type, "config": self.config}


@dataclass
class Connection:
    """A wire from an output port of one module to an input port of another."""

    from_module: str
    to_module: str
    from_port: str | None = None
    to_port: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Connection:
        data = _require_mapping(data, "connection")
        return cls(
            from_module=_required_str(data, "from", "connection"),
            to_module=_required_str(data, "to", "connection"),
            from_port=_optional_str(data, "from_port", "connection"),
            to_port=_optional_str(data, "to_port", "connection"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"from": self.from_module, "to": self.to_module}
        if self.from_port is not None:
            result["from_port"] = self.from_port
        if self.to_port is not None:
            result["to_port"] = self.to_port
        return result


@dataclass
class Invention:
    """A complete invention document."""

    version: str = DEFAULT_VERSION
    title: str | None = None
    description: str | None = None
    modules: list[ModuleSpec] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Invention:
        data = _require_mapping(data, "invention")
        version = data.get("version", DEFAULT_VERSION)
        if not isinstance(version, str):
            raise InventionFormatError("field `version` in invention must be a string")
        modules = _required(data, "modules", "invention")
        connections = _required(data, "connections", "invention")
        if not isinstance(modules, list):
            raise InventionFormatError("field `modules` in invention must be an array")
        if not isinstance(connections, list):
            raise InventionFormatError("field `connections` in invention must be an array")
        return cls(
            version=version,
            title=_optional_str(data, "title", "invention"),
            description=_optional_str(data, "description", "invention"),
            modules=[ModuleSpec.from_dict(item) for item in modules],
            connections=[Connection.from_dict(item) for item in connections],
        )

    @classmethod
    def from_json(cls, text: str) -> Invention:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InventionFormatError(f"invalid JSON: {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: str | Path) -> Invention:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "title": self.title,
            "description": self.description,
            "modules": [spec.to_dict() for spec in self.modules],
            "connections": [conn.to_dict() for conn in self.connections],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)