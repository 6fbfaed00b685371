from dataclasses import dataclass

import pytest

from aivm.plugin.base import InstallEnv, Plugin


@dataclass
class DemoPlugin(Plugin):
    name: str

    def skip_if(self, env):
        return env.config_string("installed", "") == "yes"

    def setup(self, env):
        return None


def test_config_string_returns_value():
    env = InstallEnv(config={"version": "22"})
    assert env.config_string("version", "latest") == "22"


def test_config_string_falls_back_on_empty_missing_or_non_string():
    env = InstallEnv(config={"empty": "", "number": 7})
    assert env.config_string("empty", "latest") == "latest"
    assert env.config_string("number", "latest") == "latest"
    assert env.config_string("missing", "latest") == "latest"


def test_config_string_slice_direct_list():
    env = InstallEnv(config={"extra_versions": ["20", "18"]})
    assert env.config_string_slice("extra_versions") == ["20", "18"]


def test_config_string_slice_filters_non_strings():
    env = InstallEnv(config={"extra_versions": ["20", 5, None, "18"]})
    assert env.config_string_slice("extra_versions") == ["20", "18"]


def test_config_string_slice_absent_or_wrong_type():
    env = InstallEnv(config={"scalar": "20"})
    assert env.config_string_slice("missing") is None
    assert env.config_string_slice("scalar") is None


def test_install_env_defaults():
    env = InstallEnv()
    assert env.config == {}
    assert env.vm is None
    assert env.dry_run is False


def test_plugin_is_abstract():
    with pytest.raises(TypeError):
        Plugin()


def test_subclass_defaults_and_behaviour():
    plugin = DemoPlugin("demo")
    assert list(plugin.dependencies) == []
    assert list(plugin.path_entries) == []
    assert plugin.skip_if(InstallEnv(config={"installed": "yes"})) is True
    assert plugin.skip_if(InstallEnv()) is False