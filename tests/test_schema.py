from __future__ import annotations

import json

import pytest

from repo_agent.errors import GuardrailViolation
from repo_agent.schema import OperationKind, Plan, parse_plan


def test_parse_plan_accepts_camel_case_planner_output() -> None:
    payload = {
        "meta": {"goal": "add notes", "rationale": "docs", "confidence": 0.4, "mode": "default"},
        "scope": {"files": ["notes.md"], "totalOps": 1, "estimatedBytesChanged": 6},
        "ops": [
            {
                "file": "notes.md",
                "kind": "createFile",
                "startLine": None,
                "endLine": None,
                "patch": "hello\n",
                "beforeSummary": None,
                "afterSummary": "notes exist",
            }
        ],
        "expectedEffects": ["notes.md exists"],
        "verification": {"steps": [], "successCriteria": []},
    }

    plan = parse_plan(json.dumps(payload))

    assert plan.meta.goal == "add notes"
    assert plan.scope.total_ops == 1
    op = plan.ops[0]
    assert op.id == "op-1"
    assert op.kind is OperationKind.CREATE_FILE
    assert op.start_line == 1
    assert op.end_line is None
    assert op.content == "hello\n"
    assert op.reversible is True
    assert op.before_summary == ""
    assert plan.expected_effects == ("notes.md exists",)


def test_missing_reversible_defaults_to_true_but_explicit_false_is_kept() -> None:
    plan = parse_plan(
        {
            "ops": [
                {"file": "a.txt", "type": "replace_range", "start_line": 1, "end_line": 1, "patch": "x"},
                {
                    "file": "a.txt",
                    "type": "replace_range",
                    "start_line": 1,
                    "end_line": 1,
                    "patch": "x",
                    "reversible": False,
                },
            ]
        }
    )

    assert plan.ops[0].reversible is True
    assert plan.ops[1].reversible is False


def test_confidence_is_clamped() -> None:
    assert parse_plan({"meta": {"confidence": 7}}).meta.confidence == 1.0
    assert parse_plan({"meta": {"confidence": -2}}).meta.confidence == 0.0
    assert parse_plan({"meta": {"confidence": float("nan")}}).meta.confidence == 0.0


def test_unknown_operation_kind_is_a_schema_violation() -> None:
    with pytest.raises(GuardrailViolation) as excinfo:
        parse_plan({"ops": [{"file": "a.txt", "type": "renameFile"}]})

    assert excinfo.value.rule == "PLAN_SCHEMA"
    assert excinfo.value.details["errors"]


@pytest.mark.parametrize("payload", ["not json", "[1, 2]", b"\x00"])
def test_non_object_payloads_are_rejected(payload) -> None:
    with pytest.raises(GuardrailViolation) as excinfo:
        parse_plan(payload)
    assert excinfo.value.rule == "PLAN_SCHEMA"


def test_with_mode_returns_copy_and_payload_uses_wire_names() -> None:
    plan = parse_plan({"ops": [{"file": "a.txt", "type": "deleteRange", "startLine": 2, "endLine": 3}]})

    annotated = plan.with_mode("self_improve")
    payload = annotated.to_payload()

    assert plan.mode == ""
    assert annotated.mode == "self_improve"
    assert payload["ops"][0]["type"] == "delete_range"
    assert payload["ops"][0]["patch"] == ""
    assert parse_plan(payload) == annotated
    assert isinstance(parse_plan(annotated), Plan)
