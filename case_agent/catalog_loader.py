from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Tuple

import yaml
from jsonschema import Draft7Validator, SchemaError

logger = logging.getLogger("case-agent")

# Prompt and tool catalogs live in the case_agent.catalog package (case_agent/catalog/*.yaml).
CATALOG_DIR = Path(__file__).parent / "catalog"


class CatalogLoadError(RuntimeError):
    """Raised when a catalog file cannot be loaded or validated."""


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: Mapping[str, Any]


@dataclass(frozen=True)
class ToolCatalog:
    version: str
    tools: Tuple[ToolDeclaration, ...]

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(t.name for t in self.tools)


@dataclass(frozen=True)
class PromptCatalog:
    version: str
    base: str
    prompts: Mapping[str, str]
    tool_enabled_actions: FrozenSet[str]


def _read_yaml(filename: str) -> Dict[str, Any]:
    path = CATALOG_DIR / filename
    if not path.exists():
        raise CatalogLoadError(f"Catalog file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise CatalogLoadError(f"{filename} must deserialize to a mapping")

    return data


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@lru_cache(maxsize=1)
def load_tool_catalog() -> ToolCatalog:
    """Load and validate tools.yaml once per process."""
    raw = _read_yaml("tools.yaml")
    entries = raw.get("tools")
    if not isinstance(entries, list) or not entries:
        raise CatalogLoadError("tools.yaml must define a non-empty 'tools' list")

    tools: List[ToolDeclaration] = []
    seen = set()
    for entry in entries:
        try:
            name = str(entry["name"])
            parameters = entry["parameters"]
        except (KeyError, TypeError) as exc:
            raise CatalogLoadError(f"Tool declaration missing field: {exc}") from exc
        if name in seen:
            raise CatalogLoadError(f"Duplicate tool declaration: {name}")
        seen.add(name)

        # Parameters must be a valid Draft-07 object schema.
        try:
            Draft7Validator.check_schema(parameters)
        except SchemaError as exc:
            raise CatalogLoadError(f"Invalid JSON schema for tool '{name}': {exc.message}") from exc
        if parameters.get("type") != "object":
            raise CatalogLoadError(f"Tool '{name}' parameters must be an object schema")

        tools.append(
            ToolDeclaration(
                name=name,
                description=str(entry.get("description", "")),
                parameters=_freeze(parameters),
            )
        )

    logger.info("loaded tool catalog version=%s tools=%d", raw.get("version"), len(tools))
    return ToolCatalog(version=str(raw.get("version", "0")), tools=tuple(tools))


@lru_cache(maxsize=1)
def load_prompt_catalog() -> PromptCatalog:
    """Load prompts.yaml once per process and pre-compose every action prompt."""
    raw = _read_yaml("prompts.yaml")
    base = raw.get("base")
    if not isinstance(base, str) or not base.strip():
        raise CatalogLoadError("prompts.yaml must define a non-empty 'base' prompt")

    actions = raw.get("actions") or {}
    if not isinstance(actions, dict):
        raise CatalogLoadError("prompts.yaml 'actions' must be a mapping")

    prompts: Dict[str, str] = {}
    for action, section in actions.items():
        if not isinstance(section, dict) or not isinstance(section.get("text"), str):
            raise CatalogLoadError(f"Prompt section for '{action}' must have a 'text' string")
        text = section["text"].strip()
        prompts[str(action)] = text if section.get("standalone") else f"{base}\n\n{text}"

    tool_actions = raw.get("tool_enabled_actions") or []
    if not isinstance(tool_actions, list):
        raise CatalogLoadError("prompts.yaml 'tool_enabled_actions' must be a list")

    return PromptCatalog(
        version=str(raw.get("version", "0")),
        base=base,
        prompts=MappingProxyType(prompts),
        tool_enabled_actions=frozenset(str(a) for a in tool_actions),
    )


def get_system_prompt(action: str) -> str:
    """Prompt for an action; unknown actions get the base instruction alone."""
    catalog = load_prompt_catalog()
    return catalog.prompts.get(action, catalog.base)


def is_tool_enabled(action: str) -> bool:
    return action in load_prompt_catalog().tool_enabled_actions


def tool_parameters(name: str) -> Dict[str, Any]:
    """Mutable copy of a tool's parameter schema."""
    for tool in load_tool_catalog().tools:
        if tool.name == name:
            return _thaw(tool.parameters)
    raise KeyError(name)


def tool_declarations() -> List[Dict[str, Any]]:
    """The `tools` payload advertised to the model."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": _thaw(t.parameters),
            },
        }
        for t in load_tool_catalog().tools
    ]
