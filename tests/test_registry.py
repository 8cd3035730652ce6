"""Tests for registry module"""

import pytest

from sidecar_host.errors import RegistryError
from sidecar_host.registry import SidecarConfig, SidecarRegistry


# TEST058: Test register, get, list and remove
def test_register_and_lookup():
    registry = SidecarRegistry()
    registry.register(SidecarConfig("python", "python3", args=["hosts/python/host.py"]))
    registry.register(SidecarConfig("node", "node", args=["hosts/node/host.js"]))

    assert registry.list() == ["node", "python"]
    assert registry.get("python").args == ["hosts/python/host.py"]
    assert registry.get("missing") is None
    assert "node" in registry
    assert len(registry) == 2

    assert registry.remove("node")
    assert not registry.remove("node")
    assert registry.list() == ["python"]


# TEST059: Test duplicate names are rejected
def test_duplicate_rejected():
    registry = SidecarRegistry()
    registry.register(SidecarConfig("a", "cmd"))

    with pytest.raises(RegistryError) as exc_info:
        registry.register(SidecarConfig("a", "other"))
    assert "already registered" in str(exc_info.value)
    assert registry.get("a").command == "cmd"


# TEST060: Test configs with an empty name or command are rejected
@pytest.mark.parametrize("name,command", [("", "cmd"), ("a", "")])
def test_invalid_config_rejected(name, command):
    with pytest.raises(RegistryError):
        SidecarRegistry().register(SidecarConfig(name, command))


# TEST061: Test to_spec carries command, args, env and working directory
def test_to_spec():
    config = SidecarConfig("a", "node", args=["host.js"], env={"K": "V"}, working_dir="/tmp")
    spec = config.to_spec()

    assert spec.command == "node"
    assert spec.args == ["host.js"]
    assert spec.env == {"K": "V"}
    assert spec.cwd == "/tmp"
    assert spec.argv() == ["node", "host.js"]


# TEST062: Test to_dict and from_dict preserve every field
def test_config_dict():
    config = SidecarConfig("a", "node", args=["x"], env={"K": "V"}, working_dir="/w")
    assert SidecarConfig.from_dict(config.to_dict()) == config
    assert "working_dir" not in SidecarConfig("b", "c").to_dict()


# TEST063: Test discovery maps host scripts to interpreters and prefers host.js
def test_from_config_dir(tmp_path):
    (tmp_path / "node").mkdir()
    (tmp_path / "node" / "host.js").write_text("")
    (tmp_path / "python").mkdir()
    (tmp_path / "python" / "host.py").write_text("")
    (tmp_path / "shell").mkdir()
    (tmp_path / "shell" / "host.sh").write_text("")
    (tmp_path / "both").mkdir()
    (tmp_path / "both" / "host.py").write_text("")
    (tmp_path / "both" / "host.js").write_text("")
    (tmp_path / "empty").mkdir()
    (tmp_path / "README.md").write_text("not a sidecar")

    registry = SidecarRegistry.from_config_dir(tmp_path)

    assert registry.list() == ["both", "node", "python", "shell"]
    assert registry.get("node").command == "node"
    assert registry.get("python").command == "python"
    assert registry.get("shell").command == "bash"
    assert registry.get("both").command == "node"
    assert registry.get("python").args == [str(tmp_path / "python" / "host.py")]


# TEST064: Test discovery of a missing directory raises RegistryError
def test_from_config_dir_missing(tmp_path):
    with pytest.raises(RegistryError):
        SidecarRegistry.from_config_dir(tmp_path / "nope")
