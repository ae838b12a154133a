from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import enum
from pathlib import Path
import re
import shlex
import tomllib
from typing import Final, Literal, cast

from taskpilot.fields import (
    expand_template,
    has_unresolved_placeholders,
    regex_of_reference,
    template_references,
)
from taskpilot.models import Item
from taskpilot.presets import expand_github_shorthand, get_preset, list_presets, merge_preset
from taskpilot.readiness import ReadinessConfig
from taskpilot.state import DEFAULT_STATE_FILENAME


DEFAULT_CONFIG_PATH: Final[Path] = Path("~/.config/taskpilot/config.toml")
_DEFAULT_STATE_DIR: Final[str] = "~/.local/state/taskpilot"
_DEFAULT_TEMPLATES_DIR: Final[str] = "~/.config/taskpilot/templates"
_ACTION_KEYS: Final[tuple[str, ...]] = (
    "prompt",
    "working_dir",
    "agent",
    "model",
    "session_name",
    "worktree",
    "worktree_name",
)


class ConfigError(ValueError):
    pass


class _Unset(enum.Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = _Unset.UNSET


@dataclass(frozen=True)
class ToolDescriptor:
    mcp: str | None = None
    name: str | None = None
    command: tuple[str, ...] | None = None
    response_key: str | None = None

    @property
    def kind(self) -> Literal["command", "mcp"]:
        return "command" if self.command is not None else "mcp"

    @property
    def provider(self) -> str | None:
        if self.mcp is not None:
            return self.mcp
        if self.command and self.command[0] == "gh":
            return "github"
        return None

    def describe(self) -> str:
        if self.command is not None:
            return " ".join(self.command)
        return f"{self.mcp}:{self.name}"


@dataclass(frozen=True)
class ActionSettings:
    """Partial action settings from one configuration layer.

    ``UNSET`` marks a setting the layer does not configure, so that a
    configured ``False`` or empty value still takes precedence.
    """

    prompt: str | _Unset = UNSET
    working_dir: str | _Unset = UNSET
    agent: str | _Unset = UNSET
    model: str | _Unset = UNSET
    session_name: str | _Unset = UNSET
    worktree: str | _Unset = UNSET
    worktree_name: str | _Unset = UNSET
    reuse_sessions: bool | _Unset = UNSET


@dataclass(frozen=True)
class ActionConfig:
    prompt: str = "default"
    working_dir: str | None = None
    agent: str | None = None
    model: str | None = None
    session_name: str | None = None
    # None auto-detects; "none" forces the plain directory; "new" provisions one.
    worktree: str | None = None
    worktree_name: str | None = None
    reuse_sessions: bool = True


@dataclass(frozen=True)
class RepoConfig:
    key: str
    action: ActionSettings
    readiness: ReadinessConfig | None = None

    @property
    def path(self) -> Path | None:
        if isinstance(self.action.working_dir, _Unset):
            return None
        return Path(self.action.working_dir).expanduser()


@dataclass(frozen=True)
class SourceConfig:
    name: str
    tool: ToolDescriptor
    args: dict[str, object] = field(default_factory=dict, compare=False)
    mappings: dict[str, str] = field(default_factory=dict, compare=False)
    item_id: str | None = None
    readiness: ReadinessConfig | None = None
    repo: str | None = None
    repos: tuple[str, ...] = ()
    action: ActionSettings = ActionSettings()
    filter_bot_comments: bool = False
    enrich_mergeable: bool = False


@dataclass(frozen=True)
class ToolProviderConfig:
    mappings: dict[str, str] = field(default_factory=dict, compare=False)
    response_key: str | None = None


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path
    templates_dir: Path
    poll_interval_seconds: int = 300
    cleanup_ttl_days: int = 30
    missing_item_min_age_days: int = 1
    server_port: int | None = None
    request_timeout_seconds: int = 10
    tool_timeout_seconds: int = 60


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    sources: tuple[SourceConfig, ...]
    repos: tuple[RepoConfig, ...] = ()
    defaults: ActionSettings = ActionSettings()

    @property
    def state_path(self) -> Path:
        return self.runtime.state_dir / DEFAULT_STATE_FILENAME

    def repo_config(self, key: str) -> RepoConfig | None:
        for repo in self.repos:
            if repo.key == key:
                return repo
        return None

    def source(self, name: str) -> SourceConfig | None:
        for source in self.sources:
            if source.name == name:
                return source
        return None

    def resolve_repo_keys(self, source: SourceConfig, item: Item) -> tuple[str, ...]:
        if source.repos:
            return source.repos
        if source.repo is None:
            return ()
        expanded = expand_template(source.repo, item)
        if not expanded or has_unresolved_placeholders(expanded):
            return ()
        return (expanded,)

    def action_for_item(self, source: SourceConfig, item: Item) -> tuple[ActionConfig, str | None]:
        repo_key, repo = self._repo_for_item(source, item)
        repo_action = repo.action if repo is not None else ActionSettings()
        return merge_action_config(source.action, repo_action, self.defaults), repo_key

    def readiness_for_item(self, source: SourceConfig, item: Item) -> ReadinessConfig | None:
        _, repo = self._repo_for_item(source, item)
        repo_readiness = repo.readiness if repo is not None else None
        if repo_readiness is None:
            return source.readiness
        return repo_readiness.overlay(source.readiness)

    def _repo_for_item(
        self, source: SourceConfig, item: Item
    ) -> tuple[str | None, RepoConfig | None]:
        keys = self.resolve_repo_keys(source, item)
        if not keys:
            return None, None
        return keys[0], self.repo_config(keys[0])


def merge_action_config(
    source: ActionSettings, repo: ActionSettings, defaults: ActionSettings
) -> ActionConfig:
    """Resolve settings layer by layer: source, then repo, then defaults."""
    resolved: dict[str, object] = {}
    for setting in fields(ActionSettings):
        for layer in (source, repo, defaults):
            value = getattr(layer, setting.name)
            if value is not UNSET:
                resolved[setting.name] = value
                break
    return ActionConfig(**resolved)  # type: ignore[arg-type]


def load_config(path: Path) -> AppConfig:
    with path.expanduser().open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    runtime = RuntimeConfig(
        state_dir=Path(_str_with_default(runtime_data, "state_dir", _DEFAULT_STATE_DIR)).expanduser(),
        templates_dir=Path(
            _str_with_default(runtime_data, "templates_dir", _DEFAULT_TEMPLATES_DIR)
        ).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 300),
        cleanup_ttl_days=_int_with_default(runtime_data, "cleanup_ttl_days", 30),
        missing_item_min_age_days=_int_with_default(runtime_data, "missing_item_min_age_days", 1),
        server_port=_optional_int(runtime_data, "server_port"),
        request_timeout_seconds=_int_with_default(runtime_data, "request_timeout_seconds", 10),
        tool_timeout_seconds=_int_with_default(runtime_data, "tool_timeout_seconds", 60),
    )

    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.cleanup_ttl_days < 1:
        raise ConfigError("runtime.cleanup_ttl_days must be >= 1")
    if runtime.missing_item_min_age_days < 0:
        raise ConfigError("runtime.missing_item_min_age_days must be >= 0")
    if runtime.request_timeout_seconds < 1:
        raise ConfigError("runtime.request_timeout_seconds must be >= 1")
    if runtime.tool_timeout_seconds < 1:
        raise ConfigError("runtime.tool_timeout_seconds must be >= 1")

    defaults_data = _optional_table(data, "defaults") or {}
    providers = _load_tool_providers(_optional_table(data, "tools") or {})

    return AppConfig(
        runtime=runtime,
        sources=_load_sources(data.get("sources"), providers=providers),
        repos=_load_repos(_optional_table(data, "repos") or {}),
        defaults=_parse_action_settings(defaults_data),
    )


def parse_tool_descriptor(value: object, *, table_name: str) -> ToolDescriptor:
    tool_data = _require_table_value(value, table_name=table_name)
    raw_command = tool_data.get("command")
    mcp = _optional_str(tool_data, "mcp")
    response_key = _optional_str(tool_data, "response_key")

    if raw_command is not None:
        if mcp is not None:
            raise ConfigError(f"{table_name} cannot define both command and mcp")
        if isinstance(raw_command, str):
            command = tuple(shlex.split(raw_command))
        else:
            command = _tuple_of_str(tool_data, "command")
        if not command:
            raise ConfigError(f"{table_name}.command must not be empty")
        return ToolDescriptor(command=command, response_key=response_key)

    if mcp is None:
        raise ConfigError(f"{table_name} must define either command or mcp and name")
    name = _optional_str(tool_data, "name")
    if name is None:
        raise ConfigError(f"{table_name}.name is required for mcp tools")
    return ToolDescriptor(mcp=mcp, name=name, response_key=response_key)


def _load_tool_providers(tools_data: dict[str, object]) -> dict[str, ToolProviderConfig]:
    providers: dict[str, ToolProviderConfig] = {}
    for provider, raw_value in sorted(tools_data.items()):
        table_name = f"[tools.{provider}]"
        provider_data = _require_table_value(raw_value, table_name=table_name)
        providers[provider] = ToolProviderConfig(
            mappings=_str_mapping(provider_data, "mappings", table_name=table_name),
            response_key=_optional_str(provider_data, "response_key"),
        )
    return providers


def _load_sources(
    raw_sources: object, *, providers: dict[str, ToolProviderConfig]
) -> tuple[SourceConfig, ...]:
    if raw_sources is None:
        return ()
    if not isinstance(raw_sources, list):
        raise ConfigError("[[sources]] must be an array of tables")

    sources: list[SourceConfig] = []
    seen: set[str] = set()
    for index, raw_source in enumerate(raw_sources):
        table_name = f"[[sources]] #{index + 1}"
        source_data = _expand_source_presets(
            _require_table_value(raw_source, table_name=table_name), table_name=table_name
        )
        source = _parse_source(source_data, providers=providers, table_name=table_name)
        if source.name in seen:
            raise ConfigError(f"Duplicate source name {source.name!r}")
        seen.add(source.name)
        sources.append(source)
    return tuple(sources)


def _expand_source_presets(
    source_data: dict[str, object], *, table_name: str
) -> dict[str, object]:
    if "preset" in source_data:
        preset_name = _require_str(source_data, "preset")
        preset = get_preset(preset_name)
        if preset is None:
            available = ", ".join(list_presets())
            raise ConfigError(
                f"Unknown preset {preset_name!r} in {table_name}; expected one of: {available}"
            )
        source_data = merge_preset(preset, source_data)
        source_data.setdefault("name", preset_name)
    if "github" in source_data:
        query = _require_str(source_data, "github")
        source_data = expand_github_shorthand(query, source_data)
    return source_data


def _parse_source(
    source_data: dict[str, object],
    *,
    providers: dict[str, ToolProviderConfig],
    table_name: str,
) -> SourceConfig:
    name = _require_str(source_data, "name")
    if "tool" not in source_data:
        raise ConfigError(f"{table_name} ({name}) must define a tool, preset, or github query")
    tool = parse_tool_descriptor(source_data["tool"], table_name=f"{table_name}.tool")

    provider = providers.get(tool.provider or "")
    mappings = dict(provider.mappings) if provider is not None else {}
    mappings.update(_str_mapping(source_data, "mappings", table_name=table_name))
    if tool.response_key is None:
        response_key = _optional_str(source_data, "response_key")
        if response_key is None and provider is not None:
            response_key = provider.response_key
        tool = replace(tool, response_key=response_key)

    return SourceConfig(
        name=name,
        tool=tool,
        args=dict(_optional_table(source_data, "args") or {}),
        mappings=mappings,
        item_id=_optional_template(source_data, "item_id", table_name=table_name),
        readiness=_parse_readiness(source_data.get("readiness"), table_name=f"{table_name}.readiness"),
        repo=_optional_template(source_data, "repo", table_name=table_name),
        repos=_tuple_of_str(source_data, "repos"),
        action=_parse_action_settings(source_data),
        filter_bot_comments=_bool_with_default(source_data, "filter_bot_comments", False),
        enrich_mergeable=_bool_with_default(source_data, "enrich_mergeable", False),
    )


def _load_repos(repos_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    repos: list[RepoConfig] = []
    for key, raw_value in sorted(repos_data.items()):
        table_name = f'[repos."{key}"]'
        repo_data = _require_table_value(raw_value, table_name=table_name)
        action = _parse_action_settings(repo_data)
        repo_path = _optional_str(repo_data, "path")
        if repo_path is not None:
            action = replace(action, working_dir=repo_path)
        repos.append(
            RepoConfig(
                key=key,
                action=action,
                readiness=_parse_readiness(
                    repo_data.get("readiness"), table_name=f"{table_name}.readiness"
                ),
            )
        )
    return tuple(repos)


def _parse_action_settings(data: dict[str, object]) -> ActionSettings:
    values: dict[str, object] = {}
    for key in _ACTION_KEYS:
        if key in data:
            values[key] = _require_str(data, key)
    if "reuse_sessions" in data:
        values["reuse_sessions"] = _bool_with_default(data, "reuse_sessions", True)
    return ActionSettings(**values)  # type: ignore[arg-type]


def _parse_readiness(value: object, *, table_name: str) -> ReadinessConfig | None:
    if value is None:
        return None
    readiness_data = _require_table_value(value, table_name=table_name)
    labels_data = _optional_table(readiness_data, "labels") or {}
    fields_data = _optional_table(readiness_data, "fields")
    dependencies_data = _optional_table(readiness_data, "dependencies") or {}
    priority_data = _optional_table(readiness_data, "priority") or {}
    return ReadinessConfig(
        exclude_labels=_optional_tuple_of_str(labels_data, "exclude"),
        required_labels=_optional_tuple_of_str(labels_data, "required"),
        any_of_labels=_optional_tuple_of_str(labels_data, "any_of"),
        fields=dict(fields_data) if fields_data is not None else None,
        require_conflicts=_optional_bool(readiness_data, "require_conflicts"),
        require_attention=_optional_bool(readiness_data, "require_attention"),
        check_dependencies=_optional_bool(dependencies_data, "check_body_references"),
        priority_labels=_parse_priority_labels(priority_data, table_name=f"{table_name}.priority"),
        priority_age_weight=_optional_weight(priority_data, "age_weight"),
    )


def _parse_priority_labels(
    priority_data: dict[str, object], *, table_name: str
) -> tuple[tuple[str, float], ...] | None:
    raw_labels = priority_data.get("labels")
    if raw_labels is None:
        return None
    if not isinstance(raw_labels, list):
        raise ConfigError(f"{table_name}.labels must be a list of {{label, weight}} tables")
    weights: list[tuple[str, float]] = []
    for index, entry in enumerate(raw_labels):
        entry_data = _require_table_value(entry, table_name=f"{table_name}.labels[{index}]")
        weight = _optional_weight(entry_data, "weight")
        weights.append((_require_str(entry_data, "label"), weight if weight is not None else 0.0))
    return tuple(weights)


def _optional_weight(data: dict[str, object], key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_table_value(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"{key} must be a positive integer if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _optional_bool(data: dict[str, object], key: str) -> bool | None:
    if key not in data:
        return None
    return _bool_with_default(data, key, False)


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _optional_tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...] | None:
    if key not in data:
        return None
    return _tuple_of_str(data, key)


def _str_mapping(data: dict[str, object], key: str, *, table_name: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    mapping = _require_table_value(value, table_name=f"{table_name}.{key}")
    out: dict[str, str] = {}
    for dest, raw_path in mapping.items():
        if not isinstance(raw_path, str) or not raw_path:
            raise ConfigError(f"{table_name}.{key}.{dest} must be a non-empty string")
        _check_reference(raw_path, label=f"{table_name}.{key}.{dest}")
        out[dest] = raw_path
    return out


def _optional_template(data: dict[str, object], key: str, *, table_name: str) -> str | None:
    template = _optional_str(data, key)
    if template is not None:
        for reference in template_references(template):
            _check_reference(reference, label=f"{table_name}.{key}")
    return template


def _check_reference(path: str, *, label: str) -> None:
    pattern = regex_of_reference(path)
    if pattern is None:
        return
    try:
        re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"{label} has an invalid regex {pattern!r}: {exc}") from exc
