from .engine import TransitionError, allowed_operations, plan_transition
from .registry import NO_STATE, WORKFLOWS

__all__ = ["NO_STATE", "TransitionError", "WORKFLOWS", "allowed_operations", "plan_transition"]
