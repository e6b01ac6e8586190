"""Safety policy applied to planner output."""

from .guardrails import (
    GUARDRAIL_RULES,
    GuardrailPolicy,
    check_plan,
    describe_guardrails,
    validate_plan,
)

__all__ = [
    "GUARDRAIL_RULES",
    "GuardrailPolicy",
    "check_plan",
    "describe_guardrails",
    "validate_plan",
]
