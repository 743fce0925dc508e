from pathlib import Path

import pytest
import yaml
from jsonschema import Draft7Validator

from case_agent import catalog_loader
from case_agent.catalog_loader import (
    CatalogLoadError,
    get_system_prompt,
    is_tool_enabled,
    load_prompt_catalog,
    load_tool_catalog,
    tool_declarations,
)
from case_agent.tool_handlers import HANDLERS
from case_agent.tools import UnknownToolError, build_tool_registry, get_tool_registry


CATALOG_DIR = Path(__file__).parent.parent / "case_agent" / "catalog"


def test_catalog_files_are_valid_yaml():
    for name in ("tools.yaml", "prompts.yaml"):
        data = yaml.safe_load((CATALOG_DIR / name).read_text(encoding="utf-8"))
        assert isinstance(data, dict)
        assert data.get("version")


def test_every_tool_schema_is_valid_draft7():
    for tool in load_tool_catalog().tools:
        Draft7Validator.check_schema(catalog_loader.tool_parameters(tool.name))


def test_declarations_and_handlers_are_in_lock_step():
    assert load_tool_catalog().names == frozenset(HANDLERS)
    assert get_tool_registry().names == sorted(HANDLERS)


def test_registry_refuses_missing_handler():
    handlers = dict(HANDLERS)
    handlers.pop("trigger_ocr")

    with pytest.raises(CatalogLoadError) as exc:
        build_tool_registry(handlers)
    assert "trigger_ocr" in str(exc.value)


def test_registry_unknown_name():
    with pytest.raises(UnknownToolError):
        get_tool_registry().get("nope")


def test_declarations_are_copies():
    first = tool_declarations()
    first[0]["function"]["parameters"]["properties"].clear()
    assert tool_declarations()[0]["function"]["parameters"]["properties"]


def test_prompt_sections_extend_base():
    base = load_prompt_catalog().base
    prompt = get_system_prompt("researcher")
    assert prompt.startswith(base)
    assert "RESEARCHER AGENT" in prompt


def test_standalone_prompt_replaces_base():
    prompt = get_system_prompt("security_audit")
    assert not prompt.startswith(load_prompt_catalog().base)
    assert prompt.startswith("You are a security auditor")


def test_unknown_action_gets_base_prompt():
    assert get_system_prompt("made_up_action") == load_prompt_catalog().base


@pytest.mark.parametrize(
    "action,enabled",
    [
        ("researcher", True),
        ("comprehensive", True),
        ("document_intelligence", True),
        ("auto_populate_forms", True),
        ("task_suggest", True),
        ("form_populate", True),
        ("civil_acts_management", True),
        ("wsc_response_drafting", True),
        ("archive_request_management", True),
        ("eligibility_analysis", False),
        ("security_audit", False),
        ("translator", False),
    ],
)
def test_tool_allow_list(action, enabled):
    assert is_tool_enabled(action) is enabled
