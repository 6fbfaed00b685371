"""Plugins defined entirely by inline scripts in YAML."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml

from aivm import run
from aivm.plugin.base import InstallEnv, Plugin


class TemplateError(ValueError):
    """Raised when a script template cannot be parsed or executed."""


@dataclass
class PluginDef:
    """A plugin definition as written in YAML."""

    description: str = ""
    dependencies: list[str] = field(default_factory=list)
    agents: list[str] = field(default_factory=list)
    defaults: dict[str, Any] = field(default_factory=dict)
    path_entries: list[str] = field(default_factory=list)
    skip_if: str = ""
    setup: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> PluginDef:
        """Build a definition from a parsed YAML mapping."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("plugin definition must be a mapping")
        defaults = data.get("defaults")
        if defaults is None:
            defaults = {}
        elif not isinstance(defaults, Mapping):
            raise ValueError("plugin field 'defaults' must be a mapping")
        return cls(
            description=_scalar(data, "description"),
            dependencies=_str_list(data, "dependencies"),
            agents=_str_list(data, "agents"),
            defaults=dict(defaults),
            path_entries=_str_list(data, "path_entries"),
            skip_if=_scalar(data, "skip_if"),
            setup=_scalar(data, "setup"),
        )


def _scalar(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, (Mapping, list, tuple)):
        raise ValueError(f"plugin field {key!r} must be a string")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _str_list(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"plugin field {key!r} must be a list")
    items = []
    for item in value:
        if isinstance(item, (Mapping, list, tuple)) or item is None:
            raise ValueError(f"plugin field {key!r} must hold strings")
        items.append("true" if item is True else "false" if item is False else str(item))
    return items


def load_plugin_defs(text: str) -> dict[str, PluginDef]:
    """Parse YAML text into plugin definitions keyed by name."""
    data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("plugin definitions must be a mapping of name to definition")
    return {str(name): PluginDef.from_mapping(body) for name, body in data.items()}


def merge_plugin_def(base: PluginDef, override: PluginDef) -> PluginDef:
    """Merge override into base; non-empty override fields win.

    The defaults mappings are merged key by key.
    """
    defaults = dict(base.defaults)
    if override.defaults:
        defaults.update(override.defaults)
    return PluginDef(
        description=override.description or base.description,
        dependencies=list(override.dependencies or base.dependencies),
        agents=list(override.agents or base.agents),
        defaults=defaults,
        path_entries=list(override.path_entries or base.path_entries),
        skip_if=override.skip_if or base.skip_if,
        setup=override.setup or base.setup,
    )


# ── templates ──────────────────────────────────────────────────────────────

_ACTION = re.compile(r"\{\{(-\s)?(.*?)(\s-)?\}\}", re.DOTALL)
_WHITESPACE = " \t\r\n"


class _Missing:
    def __repr__(self) -> str:
        return "<no value>"


_MISSING = _Missing()


@dataclass
class _Text:
    text: str


@dataclass
class _Print:
    expr: str


@dataclass
class _Branch:
    kind: str
    expr: str
    body: list
    alt: list


def _tokenize(src: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    trim_next = False
    for match in _ACTION.finditer(src):
        text = src[pos:match.start()]
        if trim_next:
            text = text.lstrip(_WHITESPACE)
        if match.group(1):
            text = text.rstrip(_WHITESPACE)
        if text:
            tokens.append(("text", text))
        tokens.append(("action", match.group(2).strip()))
        trim_next = bool(match.group(3))
        pos = match.end()
    tail = src[pos:]
    if trim_next:
        tail = tail.lstrip(_WHITESPACE)
    if "{{" in tail:
        raise TemplateError("unclosed action")
    if tail:
        tokens.append(("text", tail))
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self._tokens = tokens
        self._pos = 0

    def parse(self) -> list:
        nodes, _ = self._block(frozenset())
        return nodes

    def _block(self, stops: frozenset[str]) -> tuple[list, str | None]:
        nodes: list = []
        while self._pos < len(self._tokens):
            kind, value = self._tokens[self._pos]
            self._pos += 1
            if kind == "text":
                nodes.append(_Text(value))
                continue
            if value.startswith("/*"):
                if not value.endswith("*/"):
                    raise TemplateError("unclosed comment")
                continue
            if not value:
                raise TemplateError("missing value for command")
            word, _, rest = value.partition(" ")
            word = word.strip()
            if word in ("end", "else"):
                if word in stops:
                    return nodes, value
                raise TemplateError(f"unexpected {{{{{word}}}}}")
            if word in ("if", "range", "with"):
                rest = value[len(word):].strip()
                if not rest:
                    raise TemplateError(f"missing value for {word}")
                nodes.append(self._branch(word, rest))
            else:
                nodes.append(_Print(value))
        if stops:
            raise TemplateError("unexpected EOF")
        return nodes, None

    def _branch(self, kind: str, expr: str) -> _Branch:
        body, stop = self._block(frozenset({"end", "else"}))
        alt: list = []
        if stop is not None and stop.split(None, 1)[0] == "else":
            rest = stop[len("else"):].strip()
            if rest.startswith("if") and rest[2:3] in (" ", "\t", "\n"):
                alt = [self._branch("if", rest[2:].strip())]
            elif rest:
                raise TemplateError(f"unexpected {{{{else {rest}}}}}")
            else:
                alt, _ = self._block(frozenset({"end"}))
        return _Branch(kind, expr, body, alt)


def _field(value: Any, key: str) -> Any:
    if value is _MISSING or value is None:
        raise TemplateError(f"nil pointer evaluating field {key}")
    if isinstance(value, Mapping):
        return value.get(key, _MISSING)
    raise TemplateError(f"can't evaluate field {key} in type {type(value).__name__}")


def _path(base: Any, path: str) -> Any:
    value = base
    for key in path.split("."):
        if not key:
            raise TemplateError(f"bad field reference {path!r}")
        value = _field(value, key)
    return value


def _evaluate(expr: str, dot: Any, root: Any) -> Any:
    text = expr.strip()
    if not text:
        raise TemplateError("missing value for command")
    if text[0] == '"':
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise TemplateError(f"bad string literal {text}") from exc
    if text[0] == "`" and text.endswith("`") and len(text) > 1:
        return text[1:-1]
    words = text.split()
    if len(words) > 1:
        first = words[0]
        if first[0] in ".$":
            raise TemplateError(f"can't give argument to non-function {first}")
        raise TemplateError(f'function "{first}" not defined')
    if text == ".":
        return dot
    if text == "$":
        return root
    if text.startswith("$."):
        return _path(root, text[2:])
    if text.startswith("."):
        return _path(dot, text[1:])
    literals = {"true": True, "false": False, "nil": None}
    if text in literals:
        return literals[text]
    for convert in (int, float):
        try:
            return convert(text)
        except ValueError:
            pass
    raise TemplateError(f'function "{text}" not defined')


def _truthy(value: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    return bool(value)


def _format(value: Any) -> str:
    if value is _MISSING:
        return "<no value>"
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format(item) for item in value) + "]"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{k}:{_format(v)}" for k, v in items) + "]"
    return str(value)


def _execute(nodes: list, dot: Any, root: Any, out: list[str]) -> None:
    for node in nodes:
        if isinstance(node, _Text):
            out.append(node.text)
        elif isinstance(node, _Print):
            out.append(_format(_evaluate(node.expr, dot, root)))
        elif node.kind == "if":
            chosen = node.body if _truthy(_evaluate(node.expr, dot, root)) else node.alt
            _execute(chosen, dot, root, out)
        elif node.kind == "with":
            value = _evaluate(node.expr, dot, root)
            if _truthy(value):
                _execute(node.body, value, root, out)
            else:
                _execute(node.alt, dot, root, out)
        else:
            value = _evaluate(node.expr, dot, root)
            if value is _MISSING or value is None:
                items: list = []
            elif isinstance(value, Mapping):
                items = [value[k] for k in sorted(value, key=str)]
            elif isinstance(value, (list, tuple)):
                items = list(value)
            else:
                raise TemplateError(f"range can't iterate over {_format(value)}")
            if not items:
                _execute(node.alt, dot, root, out)
            for item in items:
                _execute(node.body, item, root, out)


def render_template(src: str, data: Mapping[str, Any]) -> str:
    """Render src with ``{{.key}}``, ``if``, ``range`` and ``with`` actions."""
    nodes = _Parser(_tokenize(src)).parse()
    out: list[str] = []
    _execute(nodes, data, data, out)
    return "".join(out)


# ── plugin ─────────────────────────────────────────────────────────────────


class YAMLPlugin(Plugin):
    """A plugin whose skip check and setup are templated shell scripts."""

    def __init__(self, name: str, definition: PluginDef) -> None:
        self.name = name
        self.definition = definition

    def __repr__(self) -> str:
        return f"YAMLPlugin({self.name!r})"

    @property
    def description(self) -> str:
        return self.definition.description

    @property
    def dependencies(self) -> list[str]:
        return self.definition.dependencies

    @property
    def agents(self) -> list[str]:
        return self.definition.agents

    @property
    def path_entries(self) -> list[str]:
        return self.definition.path_entries

    def effective_config(self, env: InstallEnv) -> dict[str, Any]:
        """Bundled defaults overlaid with user config, plus ``state_dir``."""
        config = dict(self.definition.defaults)
        config.update(env.config)
        if env.state_dir:
            config["state_dir"] = env.state_dir
        return config

    def skip_if(self, env: InstallEnv) -> bool:
        if not self.definition.skip_if:
            return False
        script = render_template(self.definition.skip_if, self.effective_config(env))
        if env.vm is not None:
            try:
                env.vm.run(script, None)
            except Exception:
                return False
            return True
        try:
            run.output(["bash", "-lc", script])
        except (OSError, run.subprocess.CalledProcessError):
            return False
        return True

    def setup(self, env: InstallEnv) -> None:
        if not self.definition.setup:
            return
        script = render_template(self.definition.setup, self.effective_config(env))
        if env.vm is not None:
            env.vm.run(script, None)
            return
        run.run(["bash", "-c", script], env.log)