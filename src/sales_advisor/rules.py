"""Acceptance rules for raw extraction payloads."""

from collections.abc import Callable, Iterable, Mapping
from typing import Any

Rule = Callable[[Mapping[str, Any]], None]


class RuleViolation(Exception):
    """Raised when a payload misses a field required for review."""


def _filled(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def require_complete(raw: Mapping[str, Any]) -> None:
    if raw.get("complete") not in (True, "true"):
        raise RuleViolation("Payload is not marked complete.")


def require_project_identity(raw: Mapping[str, Any]) -> None:
    for key in ("name", "clientName"):
        if not _filled(raw.get(key)):
            raise RuleViolation(f"Missing required field: {key}")


def require_objective(raw: Mapping[str, Any]) -> None:
    if not _filled(raw.get("objective")):
        raise RuleViolation("OKR suggestion needs an objective.")


def require_key_results(raw: Mapping[str, Any]) -> None:
    key_results = raw.get("keyResults")
    if not isinstance(key_results, list) or not any(_filled(kr) for kr in key_results):
        raise RuleViolation("OKR suggestion needs at least one key result.")


def require_task_content(raw: Mapping[str, Any]) -> None:
    if not _filled(raw.get("content")):
        raise RuleViolation("Task suggestion needs content.")


def require_task_date(raw: Mapping[str, Any]) -> None:
    if not _filled(raw.get("date")):
        raise RuleViolation("Task suggestion needs a date.")


def validate_payload(raw: Mapping[str, Any], rules: Iterable[Rule]) -> None:
    for rule in rules:
        rule(raw)


def passes(raw: Any, rules: Iterable[Rule]) -> bool:
    """Return whether ``raw`` is a mapping satisfying every rule."""
    if not isinstance(raw, Mapping):
        return False
    try:
        validate_payload(raw, rules)
    except RuleViolation:
        return False
    return True


def intake_rules() -> list:
    return [require_complete, require_project_identity]


def report_rules() -> list:
    return [require_complete]


def okr_suggestion_rules() -> list:
    return [require_objective, require_key_results]


def task_suggestion_rules() -> list:
    return [require_task_content, require_task_date]
