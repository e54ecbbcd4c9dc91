"""Module factories and the catalog that builds modules by type name."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator


class UnknownFactoryError(LookupError):
    """Raised when no factory is registered for a module type."""

    def __init__(self, type_id: str) -> None:
        super().__init__(f"unknown module type: {type_id}")
        self.type_id = type_id


@dataclass
class ModuleBuildResult:
    """A freshly built module together with its runtime handles.

    ``handles`` holds (name, handle) pairs that are later keyed as
    "module_id.name". ``sink`` is the same object as ``module`` when the
    module is a final destination of the signal chain.
    """

    module: Any
    handles: list[tuple[str, Any]] = field(default_factory=list)
    control_surface: Any = None
    sink: Any = None


class ModuleFactory(ABC):
    """Builds instances of one module type from configuration."""

    @abstractmethod
    def type_id(self) -> str:
        """The type name used in the "type" field of invention documents."""

    @abstractmethod
    def build(self, sample_rate: int, config: Any) -> ModuleBuildResult:
        """Build a module for ``sample_rate`` from its JSON-like ``config``."""

    def is_sink(self) -> bool:
        """Whether this factory produces sink modules."""
        return False


class ModuleCatalog:
    """Looks up module factories by type name."""

    def __init__(self, factories: Iterable[ModuleFactory] = ()) -> None:
        self._factories: dict[str, ModuleFactory] = {}
        for factory in factories:
            self.register(factory)

    def register(self, factory: ModuleFactory) -> None:
        """Register ``factory``, replacing any factory with the same type name."""
        self._factories[factory.type_id()] = factory

    def has_type(self, type_id: str) -> bool:
        return type_id in self._factories

    def types(self) -> Iterator[str]:
        return iter(list(self._factories))

    def is_sink(self, type_id: str) -> bool:
        factory = self._factories.get(type_id)
        return factory is not None and factory.is_sink()

    def build(self, type_id: str, sample_rate: int, config: Any) -> ModuleBuildResult:
        try:
            factory = self._factories[type_id]
        except KeyError:
            raise UnknownFactoryError(type_id) from None
        return factory.build(sample_rate, config)

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._factories

    def __len__(self) -> int:
        return len(self._factories)