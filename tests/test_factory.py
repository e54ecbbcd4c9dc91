import pytest

from fugue.factory import (
    ModuleBuildResult,
    ModuleCatalog,
    ModuleFactory,
    UnknownFactoryError,
)


class Dummy:
    def __init__(self, sample_rate, config):
        self.sample_rate = sample_rate
        self.config = config


class DummyFactory(ModuleFactory):
    def __init__(self, name="dummy"):
        self._name = name

    def type_id(self):
        return self._name

    def build(self, sample_rate, config):
        module = Dummy(sample_rate, config)
        return ModuleBuildResult(module=module, handles=[("controls", module)])


class SinkFactory(DummyFactory):
    def is_sink(self):
        return True

    def build(self, sample_rate, config):
        module = Dummy(sample_rate, config)
        return ModuleBuildResult(module=module, sink=module)


def test_factory_is_abstract():
    with pytest.raises(TypeError):
        ModuleFactory()


def test_default_is_sink_false():
    assert ModuleFactory.is_sink(DummyFactory()) is False
    catalog = ModuleCatalog([DummyFactory()])
    assert catalog.is_sink("dummy") is False


def test_build_result_defaults():
    result = ModuleBuildResult(module="m")
    assert result.handles == []
    assert result.control_surface is None
    assert result.sink is None


def test_register_and_build():
    catalog = ModuleCatalog()
    catalog.register(DummyFactory())
    result = catalog.build("dummy", 44100, {"x": 1})
    assert result.module.sample_rate == 44100
    assert result.module.config == {"x": 1}
    assert result.handles == [("controls", result.module)]


def test_unknown_type_raises():
    catalog = ModuleCatalog([DummyFactory()])
    with pytest.raises(UnknownFactoryError) as info:
        catalog.build("nope", 44100, None)
    assert info.value.type_id == "nope"
    assert "nope" in str(info.value)


def test_has_type_and_types_order():
    catalog = ModuleCatalog([DummyFactory("b"), DummyFactory("a")])
    assert catalog.has_type("a")
    assert not catalog.has_type("c")
    assert list(catalog.types()) == ["b", "a"]
    assert len(catalog) == 2


def test_is_sink_lookup():
    catalog = ModuleCatalog([DummyFactory(), SinkFactory("dac")])
    assert catalog.is_sink("dac") is True
    assert catalog.is_sink("dummy") is False
    assert catalog.is_sink("missing") is False
    result = catalog.build("dac", 48000, None)
    assert result.sink is result.module


def test_register_replaces_same_type():
    catalog = ModuleCatalog([DummyFactory("dac")])
    catalog.register(SinkFactory("dac"))
    assert len(catalog) == 1
    assert catalog.is_sink("dac") is True