import json

import pytest

from fugue.format import (
    Connection,
    Invention,
    InventionFormatError,
    ModuleSpec,
    TimeSignature,
)


def test_parse_basic_invention():
    text = """
    {
        "version": "1.0.0",
        "title": "Test Invention",
        "modules": [
            {
                "id": "clock1",
                "type": "clock",
                "config": {
                    "bpm": 120.0,
                    "time_signature": {
                        "beats_per_measure": 4,
                        "beat_unit": 4
                    }
                }
            }
        ],
        "connections": []
    }
    """
    invention = Invention.from_json(text)
    assert invention.version == "1.0.0"
    assert invention.title == "Test Invention"
    assert len(invention.modules) == 1
    assert invention.modules[0].id == "clock1"
    assert invention.modules[0].module_type == "clock"
    assert invention.modules[0].config["bpm"] == 120.0


def test_parse_invention_with_empty_config():
    text = """
    {
        "modules": [
            {
                "id": "vca1",
                "type": "vca"
            }
        ],
        "connections": []
    }
    """
    invention = Invention.from_json(text)
    assert invention.modules[0].id == "vca1"
    assert invention.modules[0].config is None


def test_missing_version_defaults():
    invention = Invention.from_json('{"modules": [], "connections": []}')
    assert invention.version == "1.0.0"
    assert invention.title is None
    assert invention.description is None


@pytest.mark.parametrize("text", ['{"connections": []}', '{"modules": []}'])
def test_missing_required_arrays_is_error(text):
    with pytest.raises(InventionFormatError):
        Invention.from_json(text)


def test_invalid_json_is_error():
    with pytest.raises(InventionFormatError):
        Invention.from_json("{not json")


def test_module_without_type_is_error():
    with pytest.raises(InventionFormatError):
        Invention.from_json('{"modules": [{"id": "a"}], "connections": []}')


def test_connection_ports_are_optional_and_skipped():
    conn = Connection.from_dict({"from": "a", "to": "b"})
    assert conn.from_port is None
    assert conn.to_port is None
    assert conn.to_dict() == {"from": "a", "to": "b"}


def test_connection_with_ports_round_trip():
    data = {"from": "clock", "to": "adsr", "from_port": "gate", "to_port": "gate"}
    assert Connection.from_dict(data).to_dict() == data


def test_module_spec_serialises_type_key():
    spec = ModuleSpec(id="osc", module_type="oscillator", config={"frequency": 440.0})
    assert spec.to_dict() == {
        "id": "osc",
        "type": "oscillator",
        "config": {"frequency": 440.0},
    }


def test_json_round_trip():
    invention = Invention(
        title="Round",
        description="trip",
        modules=[
            ModuleSpec(id="osc", module_type="oscillator", config={"frequency": 440.0}),
            ModuleSpec(id="dac", module_type="dac"),
        ],
        connections=[Connection("osc", "dac", "audio", "audio")],
    )
    restored = Invention.from_json(invention.to_json())
    assert restored == invention


def test_to_json_keeps_null_title():
    data = json.loads(Invention().to_json())
    assert data["title"] is None
    assert data["modules"] == []
    assert list(data) == ["version", "title", "description", "modules", "connections"]


def test_from_file(tmp_path):
    path = tmp_path / "inv.json"
    path.write_text('{"title": "File", "modules": [], "connections": []}', encoding="utf-8")
    assert Invention.from_file(path).title == "File"
    assert Invention.from_file(str(path)).title == "File"


def test_from_file_missing_raises(tmp_path):
    with pytest.raises(OSError):
        Invention.from_file(tmp_path / "absent.json")


def test_time_signature_default_is_four_four():
    sig = TimeSignature()
    assert (sig.beats_per_measure, sig.beat_unit) == (4, 4)


def test_time_signature_round_trip():
    sig = TimeSignature.from_dict({"beats_per_measure": 3, "beat_unit": 8})
    assert sig.to_dict() == {"beats_per_measure": 3, "beat_unit": 8}
    with pytest.raises(InventionFormatError):
        TimeSignature.from_dict({"beats_per_measure": 3})