import asyncio
import json
from typing import Any, Dict, List

import pytest

from case_agent.functions_client import FunctionInvokeError, FunctionsClient
from case_agent.models import ToolCall
from case_agent.storage import case_store
from case_agent.tool_executor import ToolExecutor


class RecordingFunctions(FunctionsClient):
    def __init__(self, fail: bool = False) -> None:
        super().__init__(base_url="http://functions.test")
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def invoke(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"name": name, "body": body})
        if self.fail:
            raise FunctionInvokeError(f"{name} returned 502: bad gateway")
        return {"pdfUrl": "https://files.test/poa.pdf"}


def _call(call_id: str, name: str, arguments: Any) -> ToolCall:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return ToolCall(id=call_id, name=name, arguments=arguments)


def _run(case_id: str, calls: List[ToolCall], functions: FunctionsClient = None):
    executor = ToolExecutor(case_id=case_id, actor="tester", functions=functions or RecordingFunctions())
    return asyncio.run(executor.execute_all(calls))


def test_results_align_with_calls_regardless_of_outcome(demo_case):
    calls = [
        _call("c1", "create_task", {"caseId": demo_case, "title": "A", "priority": "low"}),
        _call("c2", "create_task", "{\"caseId\": "),
        _call("c3", "create_task", {"caseId": demo_case, "title": "B", "priority": "high"}),
        _call("c4", "create_task", {"caseId": demo_case, "title": "C", "priority": "medium"}),
    ]

    results = _run(demo_case, calls)

    assert [r.tool_call_id for r in results] == ["c1", "c2", "c3", "c4"]
    assert [r.success for r in results] == [True, False, True, True]
    assert results[1].payload["error"] == "invalid_arguments"
    titles = {t["title"] for t in case_store.list_tasks(demo_case)}
    assert {"A", "B", "C"} <= titles


def test_schema_violation_is_a_failed_result(demo_case):
    results = _run(demo_case, [_call("c1", "create_task", {"caseId": demo_case, "title": "A", "priority": "whenever"})])

    assert results[0].success is False
    assert results[0].message.startswith("Invalid arguments for create_task")


def test_non_object_arguments_rejected(demo_case):
    results = _run(demo_case, [_call("c1", "create_task", "[1, 2]")])

    assert results[0].success is False
    assert results[0].message == "Arguments for create_task must be a JSON object"


def test_unknown_tool(demo_case):
    results = _run(demo_case, [_call("c1", "delete_everything", {})])

    assert results[0].to_wire() == {
        "tool_call_id": "c1",
        "name": "delete_everything",
        "result": {"success": False, "message": "Unknown tool: delete_everything", "error": "unknown_tool"},
    }


def test_other_case_is_rejected(demo_case):
    other = case_store.insert_case({"client_name": "Other"})

    results = _run(demo_case, [_call("c1", "create_task", {"caseId": other, "title": "X", "priority": "low"})])

    assert results[0].success is False
    assert case_store.list_tasks(other) == []


def test_create_oby_draft_twice_keeps_one_draft(demo_case):
    args = {"caseId": demo_case, "autoPopulatedFields": ["applicant_first_name", "applicant_last_name"]}

    first = _run(demo_case, [_call("c1", "create_oby_draft", args)])
    second = _run(demo_case, [_call("c2", "create_oby_draft", args)])

    assert first[0].message == "✅ OBY draft created with 2 auto-populated fields"
    assert second[0].message == "✅ OBY draft updated with 2 auto-populated fields"
    assert case_store.count_oby_drafts(demo_case) == 1
    draft = case_store.get_oby_draft(demo_case)
    assert draft["form_data"]["applicant_first_name"] == "Anna"
    assert draft["auto_populated_fields"] == ["applicant_first_name", "applicant_last_name"]


def test_update_master_data_drops_reserved_keys(demo_case):
    args = {"caseId": demo_case, "fields": {"id": "hijack", "applicant_dob": "1985-03-15"}, "reason": "OCR"}

    results = _run(demo_case, [_call("c1", "update_master_data", args)])

    assert results[0].success is True
    assert results[0].message == "✅ Updated 1 fields"
    master = case_store.get_master_data(demo_case)
    assert master["applicant_dob"] == "1985-03-15"
    assert master["id"] != "hijack"
    logs = [e for e in case_store.list_audit_logs(demo_case) if e["action_type"] == "master_data_updated"]
    assert logs[0]["metadata"] == {"updated_fields": {"applicant_dob": "1985-03-15"}}


def test_update_master_data_with_only_reserved_keys_fails(demo_case):
    results = _run(demo_case, [_call("c1", "update_master_data", {"caseId": demo_case, "fields": {"case_id": "x"}})])

    assert results[0].success is False
    assert results[0].payload["error"] == "execution_failed"


def test_generate_poa_pdf_uses_functions_client(demo_case):
    functions = RecordingFunctions()

    results = _run(demo_case, [_call("c1", "generate_poa_pdf", {"caseId": demo_case, "poaType": "minor"})], functions)

    assert results[0].success is True
    assert results[0].payload == {"pdfUrl": "https://files.test/poa.pdf"}
    assert functions.calls == [{"name": "generate-poa", "body": {"caseId": demo_case, "poaType": "minor"}}]


def test_function_failure_only_fails_that_call(demo_case):
    calls = [
        _call("c1", "trigger_ocr", {"documentId": "doc-1"}),
        _call("c2", "create_task", {"caseId": demo_case, "title": "Still works", "priority": "low"}),
    ]

    results = _run(demo_case, calls, RecordingFunctions(fail=True))

    assert results[0].success is False
    assert results[0].message == "Failed: ocr-document returned 502: bad gateway"
    assert results[1].success is True


def test_archive_and_civil_acts_requests(demo_case):
    calls = [
        _call(
            "c1",
            "generate_archive_request",
            {"caseId": demo_case, "personType": "PGF", "documentTypes": ["birth", "marriage"]},
        ),
        _call("c2", "generate_civil_acts_request", {"caseId": demo_case, "actType": "birth", "personType": "father"}),
    ]

    results = _run(demo_case, calls)

    assert results[0].message == "✅ Archive request created for PGF: birth, marriage"
    assert results[1].message == "✅ Civil acts birth request created"
    searches = case_store.list_archive_searches(demo_case)
    assert searches[0]["document_types"] == ["birth", "marriage"]
    assert searches[0]["archive_name"] == "To be determined"
    civil = [t for t in case_store.list_tasks(demo_case) if t["category"] == "civil_acts"]
    assert civil[0]["priority"] == "high"


def test_draft_wsc_response_records_strategy(demo_case):
    args = {"caseId": demo_case, "strategy": "PUSH", "keyPoints": ["deadline extension", "new evidence"], "wscLetterId": "w1"}

    results = _run(demo_case, [_call("c1", "draft_wsc_response", args)])

    assert results[0].message == "✅ WSC PUSH response strategy drafted"
    logs = [e for e in case_store.list_audit_logs(demo_case) if e["action_type"] == "wsc_response_push"]
    assert logs[0]["related_wsc_id"] == "w1"
    assert case_store.get_master_data(demo_case)["family_notes"].startswith("WSC Strategy (PUSH)")


def test_draft_wsc_response_without_master_data_leaves_no_audit(case_db):
    bare = case_store.insert_case({"client_name": "No Master"})
    args = {"caseId": bare, "strategy": "PUSH", "keyPoints": ["new evidence"], "wscLetterId": "w1"}

    results = _run(bare, [_call("c1", "draft_wsc_response", args)])

    assert results[0].success is False
    assert results[0].payload["error"] == "execution_failed"
    assert [e for e in case_store.list_audit_logs(bare) if e["action_type"] == "wsc_response_push"] == []


def test_empty_batch(case_db):
    assert _run("any", []) == []


@pytest.mark.parametrize("raw", ["", "   "])
def test_blank_arguments_are_an_empty_object(demo_case, raw):
    results = _run(demo_case, [_call("c1", "trigger_ocr", raw)])

    assert results[0].success is False
    assert "documentId" in results[0].message
