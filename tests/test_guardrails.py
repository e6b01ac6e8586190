from __future__ import annotations

import pytest

from repo_agent.errors import GuardrailViolation
from repo_agent.policy.guardrails import (
    GUARDRAIL_RULES,
    GuardrailPolicy,
    RULE_SEQUENCE,
    check_plan,
    describe_guardrails,
    validate_plan,
)
from repo_agent.schema import parse_plan


def _plan(*ops: dict, mode: str = "", unlock: tuple[str, ...] = ()) -> object:
    return parse_plan({"meta": {"mode": mode, "unlock_path_prefixes": list(unlock)}, "ops": list(ops)})


def _create(path: str, content: str = "x\n") -> dict:
    return {"file": path, "type": "createFile", "patch": content}


def _rule(plan, policy: GuardrailPolicy | None = None) -> str | None:
    violation = check_plan(plan, policy or GuardrailPolicy())
    return violation.rule if violation else None


def test_valid_plan_passes() -> None:
    plan = _plan(
        _create("docs/notes.md"),
        {"file": "a.txt", "type": "replaceRange", "startLine": 2, "endLine": 2, "patch": "B\n"},
        {"file": "a.txt", "type": "insertAfter", "startLine": 1, "patch": "Z\n"},
        {"file": "a.txt", "type": "deleteRange", "startLine": 1, "endLine": 1},
    )
    validate_plan(plan, GuardrailPolicy())


def test_validation_is_idempotent() -> None:
    policy = GuardrailPolicy(denied_path_prefixes=("secrets/",))
    plans = [_plan(_create("ok.txt")), _plan(_create("secrets/key.pem")), _plan(_create("../x"))]
    for plan in plans:
        first = check_plan(plan, policy)
        second = check_plan(plan, policy)
        assert (first and (first.rule, first.message)) == (second and (second.rule, second.message))


def test_path_traversal_is_rejected() -> None:
    plan = _plan(_create("../secrets.env", "TOKEN=1\n"))

    with pytest.raises(GuardrailViolation) as excinfo:
        validate_plan(plan, GuardrailPolicy())

    assert excinfo.value.rule == "UNSAFE_PATH"
    assert "traversal" in excinfo.value.message
    assert excinfo.value.path == "../secrets.env"


@pytest.mark.parametrize(
    "path",
    ["", "   ", "/etc/passwd", "C:/Windows/system.ini", "c:\\temp\\x", "src/../../x", ".git/config", "./.git/HEAD"],
)
def test_unsafe_paths_are_rejected(path: str) -> None:
    assert _rule(_plan(_create(path))) == "UNSAFE_PATH"


def test_denied_prefix_is_rejected_even_when_unlocked() -> None:
    policy = GuardrailPolicy(denied_path_prefixes=("secrets/",))
    plan = _plan(_create("secrets/api.key"), unlock=("secrets/",))
    assert _rule(plan, policy) == "DENIED_PATH"


def test_with_denied_prefixes_extends_the_policy() -> None:
    base = GuardrailPolicy(denied_path_prefixes=("secrets/",))
    policy = base.with_denied_prefixes("agent_artifacts/", "secrets/", "")

    assert policy.denied_path_prefixes == ("secrets/", "agent_artifacts/")
    assert base.denied_path_prefixes == ("secrets/",)
    assert base.with_denied_prefixes("secrets/") is base
    assert _rule(_plan(_create("agent_artifacts/last_verification.json")), policy) == "DENIED_PATH"


def test_locked_prefix_requires_unlock() -> None:
    policy = GuardrailPolicy(locked_path_prefixes=("infra/",))

    assert _rule(_plan(_create("infra/main.tf")), policy) == "LOCKED_PATH"
    assert _rule(_plan(_create("infra/main.tf"), unlock=("infra/",)), policy) is None
    assert _rule(_plan(_create("./infra/main.tf"), unlock=("./infra/",)), policy) is None


def test_unlock_is_ignored_when_unlocks_are_disabled() -> None:
    policy = GuardrailPolicy(locked_path_prefixes=("infra/",), allow_unlocks=False)
    assert _rule(_plan(_create("infra/main.tf"), unlock=("infra/",)), policy) == "LOCKED_PATH"


def test_max_ops_is_checked_first() -> None:
    policy = GuardrailPolicy(max_ops=2)
    plan = _plan(_create("a"), _create("b"), _create("../c"))
    violation = check_plan(plan, policy)
    assert violation is not None
    assert violation.rule == "MAX_OPS"
    assert violation.details["ops"] == 3


def test_total_bytes_counts_utf8() -> None:
    policy = GuardrailPolicy(max_total_write_bytes=4)
    assert _rule(_plan(_create("a", "ab"), _create("b", "cd")), policy) is None
    # "é" is two bytes in UTF-8.
    assert _rule(_plan(_create("a", "abcé")), policy) == "MAX_BYTES"


@pytest.mark.parametrize(
    "op, rule",
    [
        ({"file": "a.txt", "type": "replaceRange", "startLine": 0, "endLine": 1}, "LINE_RANGE"),
        ({"file": "a.txt", "type": "replaceRange", "startLine": 3, "endLine": 2}, "LINE_RANGE"),
        ({"file": "a.txt", "type": "replaceRange", "startLine": 1}, "LINE_RANGE"),
        ({"file": "a.txt", "type": "insertAfter", "startLine": 1, "endLine": 2}, "LINE_RANGE"),
        ({"file": "a.txt", "type": "insertAfter"}, "LINE_RANGE"),
        ({"file": "a.txt", "type": "updateFile", "endLine": 4, "patch": "x"}, "LINE_RANGE"),
        ({"file": "a.txt", "type": "deleteRange", "startLine": 1, "endLine": 1, "patch": "x"}, "DELETE_CONTENT"),
        ({"file": "a.txt", "type": "updateFile", "patch": "x", "reversible": False}, "NOT_REVERSIBLE"),
    ],
)
def test_operation_shape_rules(op: dict, rule: str) -> None:
    assert _rule(_plan(op)) == rule


def test_privileged_mode_has_its_own_deny_list() -> None:
    policy = GuardrailPolicy(privileged_denied_prefixes=("src/repo_agent/lifecycle.py",))
    op = {"file": "src/repo_agent/lifecycle.py", "type": "updateFile", "patch": "x\n"}

    assert _rule(_plan(op, mode="default"), policy) is None
    violation = check_plan(_plan(op, mode="self_improve"), policy)
    assert violation is not None
    assert violation.rule == "PRIVILEGED_PATH"
    assert violation.op_id == "op-1"


def test_rule_registry_covers_every_checked_rule() -> None:
    assert {code for code, _handler in RULE_SEQUENCE} <= set(GUARDRAIL_RULES)
    text = describe_guardrails()
    for code in GUARDRAIL_RULES:
        assert code in text
