from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

from serialdb.apps.serials.models import LOCATION_LOAN

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def guard_destination_required(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    operation: str,
) -> GuardResult:
    if not _get_value(after_obj, "location"):
        return [{"field": "to_location", "reason": f"destination location required for {operation}"}]
    return []


def guard_source_location_matches(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    operation: str,
) -> GuardResult:
    requested = _get_value(after_obj, "from_location")
    current = _get_value(before_obj, "location")
    if requested and requested != current:
        return [
            {
                "field": "from_location",
                "reason": f"item is at {current}, not {requested}",
            }
        ]
    return []


def guard_transfer_destination(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    operation: str,
) -> GuardResult:
    destination = _get_value(after_obj, "location")
    if not destination:
        return [{"field": "to_location", "reason": "destination location required for transfer"}]
    if destination == _get_value(before_obj, "location"):
        return [{"field": "to_location", "reason": "destination must differ from the current location"}]
    if destination == LOCATION_LOAN:
        return [{"field": "to_location", "reason": "use a loan to move an item to LOAN"}]
    return []


def guard_not_on_loan(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    operation: str,
) -> GuardResult:
    if _get_value(before_obj, "on_loan"):
        return [{"field": "status", "reason": "item is already on loan"}]
    return []


def guard_on_loan(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    operation: str,
) -> GuardResult:
    if not _get_value(before_obj, "on_loan"):
        return [{"field": "status", "reason": "item is not on loan"}]
    return []
