from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from serialdb.apps.serials.models import SerialStatusEnum

from .registry import NO_STATE, WORKFLOWS


@dataclass(eq=False)
class TransitionError(Exception):
    code: str
    detail: List[Dict[str, str]]


def allowed_operations(from_state: Optional[str], *, entity_type: str = "serial_item") -> List[str]:
    transitions = WORKFLOWS.get(entity_type, {}).get("transitions", {})
    return [str(getattr(op, "value", op)) for op in transitions.get(from_state or NO_STATE, {})]


def plan_transition(
    db: Session,
    *,
    operation: str,
    from_state: Optional[str],
    before_obj: Any,
    after_obj: Any,
    entity_type: str = "serial_item",
) -> SerialStatusEnum:
    """
    Check that ``operation`` may run from ``from_state`` and return the target status.

    ``from_state`` is None for a serial that has never been received.
    Raises TransitionError with code ``invalid_transition`` when the registry
    has no such edge and ``missing_requirements`` when a guard objects.
    """
    workflow = WORKFLOWS.get(entity_type)
    if not workflow:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "entity_type", "reason": f"No workflow registered for {entity_type}"}],
        )

    state_key = from_state or NO_STATE
    transitions = workflow.get("transitions", {})
    edge = transitions.get(state_key, {}).get(operation)
    if edge is None:
        shown = getattr(state_key, "value", state_key)
        requested = getattr(operation, "value", operation)
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "status", "reason": f"Cannot {requested} an item in state {shown}"}],
        )

    failures: List[Dict[str, str]] = []
    for guard in edge["guards"]:
        failures.extend(
            guard(
                db,
                before_obj=before_obj,
                after_obj=after_obj,
                operation=getattr(operation, "value", operation),
            )
        )

    if failures:
        raise TransitionError(code="missing_requirements", detail=failures)

    return edge["to"]
