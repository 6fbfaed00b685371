import pytest

from aivm.plugin.base import InstallEnv
from aivm.plugin.yaml_plugin import (
    PluginDef,
    TemplateError,
    YAMLPlugin,
    load_plugin_defs,
    merge_plugin_def,
    render_template,
)


class RecordingVM:
    def __init__(self, fail=False):
        self.scripts = []
        self.fail = fail

    def run(self, script, env):
        self.scripts.append(script)
        if self.fail:
            raise RuntimeError("exit status 1")


def test_from_mapping_reads_all_fields():
    d = PluginDef.from_mapping(
        {
            "description": "AWS CLI",
            "dependencies": ["system"],
            "agents": ["claude"],
            "defaults": {"version": "2"},
            "path_entries": ["$HOME/.local/bin"],
            "skip_if": "command -v aws",
            "setup": "install aws",
        }
    )
    assert d.description == "AWS CLI"
    assert d.dependencies == ["system"]
    assert d.agents == ["claude"]
    assert d.defaults == {"version": "2"}
    assert d.path_entries == ["$HOME/.local/bin"]
    assert d.skip_if == "command -v aws"
    assert d.setup == "install aws"


def test_from_mapping_none_is_empty():
    assert PluginDef.from_mapping(None) == PluginDef()


def test_load_plugin_defs_parses_entries():
    text = (
        "mise:\n"
        "  description: mise\n"
        "  dependencies: [system]\n"
        "  setup: curl mise\n"
        "system:\n"
    )
    defs = load_plugin_defs(text)
    assert sorted(defs) == ["mise", "system"]
    assert defs["mise"].dependencies == ["system"]
    assert defs["mise"].setup == "curl mise"
    assert defs["system"] == PluginDef()


def test_load_plugin_defs_rejects_list_document():
    with pytest.raises(ValueError):
        load_plugin_defs("- a\n- b\n")


def test_load_plugin_defs_rejects_bad_field_type():
    with pytest.raises(ValueError):
        load_plugin_defs("x:\n  dependencies:\n    a: 1\n")


def test_merge_override_fields_win_and_defaults_merge():
    base = PluginDef(
        description="base",
        dependencies=["a"],
        defaults={"version": "1", "keep": "yes"},
        setup="base setup",
        skip_if="base skip",
    )
    override = PluginDef(description="over", defaults={"version": "2"}, setup="new")
    merged = merge_plugin_def(base, override)
    assert merged.description == "over"
    assert merged.dependencies == ["a"]
    assert merged.defaults == {"version": "2", "keep": "yes"}
    assert merged.setup == "new"
    assert merged.skip_if == "base skip"


def test_merge_empty_override_keeps_base():
    base = PluginDef(description="d", agents=["claude"], path_entries=["/x"])
    assert merge_plugin_def(base, PluginDef()) == base


def test_render_field():
    assert render_template("mise use node@{{.version}}", {"version": "22"}) == "mise use node@22"


def test_render_missing_key():
    assert render_template("{{.absent}}", {}) == "<no value>"


def test_render_if_else():
    src = "{{if .on}}yes{{else}}no{{end}}"
    assert render_template(src, {"on": True}) == "yes"
    assert render_template(src, {"on": False}) == "no"
    assert render_template(src, {}) == "no"


def test_render_range_and_root():
    src = "{{range .xs}}[{{.}}{{$.sep}}]{{end}}"
    assert render_template(src, {"xs": ["a", "b"], "sep": ";"}) == "[a;][b;]"


def test_render_trim_markers_and_comment():
    assert render_template("a  {{- .x -}}  b{{/* note */}}", {"x": "1"}) == "a1b"


def test_render_nested_field():
    assert render_template("{{.a.b}}", {"a": {"b": "deep"}}) == "deep"


def test_render_unclosed_action():
    with pytest.raises(TemplateError):
        render_template("{{.x", {"x": 1})


def test_render_unknown_function():
    with pytest.raises(TemplateError):
        render_template('{{eq .x "y"}}', {"x": "y"})


def test_render_unterminated_if():
    with pytest.raises(TemplateError):
        render_template("{{if .x}}open", {"x": True})


def test_effective_config_layers():
    plugin = YAMLPlugin("p", PluginDef(defaults={"version": "1", "flavour": "plain"}))
    env = InstallEnv(config={"version": "2"}, state_dir="/state")
    assert plugin.effective_config(env) == {
        "version": "2",
        "flavour": "plain",
        "state_dir": "/state",
    }


def test_properties_come_from_definition():
    plugin = YAMLPlugin("p", PluginDef(description="desc", dependencies=["a", "b"]))
    assert plugin.name == "p"
    assert plugin.description == "desc"
    assert list(plugin.dependencies) == ["a", "b"]


def test_skip_if_without_script_is_false():
    vm = RecordingVM()
    assert YAMLPlugin("p", PluginDef()).skip_if(InstallEnv(vm=vm)) is False
    assert vm.scripts == []


def test_skip_if_runs_rendered_script_on_vm():
    vm = RecordingVM()
    plugin = YAMLPlugin("p", PluginDef(skip_if="test -d {{.state_dir}}"))
    assert plugin.skip_if(InstallEnv(state_dir="/s", vm=vm)) is True
    assert vm.scripts == ["test -d /s"]


def test_skip_if_failure_is_false():
    plugin = YAMLPlugin("p", PluginDef(skip_if="false"))
    assert plugin.skip_if(InstallEnv(vm=RecordingVM(fail=True))) is False


def test_setup_runs_rendered_script_on_vm():
    vm = RecordingVM()
    plugin = YAMLPlugin("p", PluginDef(setup="install {{.version}}", defaults={"version": "3"}))
    plugin.setup(InstallEnv(vm=vm))
    assert vm.scripts == ["install 3"]


def test_setup_empty_does_nothing():
    vm = RecordingVM()
    YAMLPlugin("p", PluginDef()).setup(InstallEnv(vm=vm))
    assert vm.scripts == []


def test_setup_propagates_vm_failure():
    plugin = YAMLPlugin("p", PluginDef(setup="boom"))
    with pytest.raises(RuntimeError):
        plugin.setup(InstallEnv(vm=RecordingVM(fail=True)))


def test_setup_template_error():
    plugin = YAMLPlugin("p", PluginDef(setup="{{.x"))
    with pytest.raises(TemplateError):
        plugin.setup(InstallEnv(vm=RecordingVM()))