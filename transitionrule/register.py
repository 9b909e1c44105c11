"""Registry of stages, conditions, unavailability checks and default rule stages."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from transitionrule.models import RULE_DEFINITIONS, Pod, is_pod_ready, is_pod_terminal

Predicate = Callable[[Any], bool]
UnavailableFunc = Callable[[Pod], "tuple[bool, Optional[int]]"]


class FuncCache:
    """Thread-safe mapping from a key to a list of predicates."""

    def __init__(self) -> None:
        self._funcs: dict[str, list[Predicate]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> list[Predicate]:
        with self._lock:
            return list(self._funcs.get(key, ()))

    def put(self, key: str, *args: Predicate) -> None:
        with self._lock:
            self._funcs[key] = list(args)

    def add(self, key: str, *args: Predicate) -> None:
        with self._lock:
            self._funcs.setdefault(key, []).extend(args)


class StageRegistry:
    """Holds the registered stages and conditions and evaluates objects against them."""

    def __init__(self) -> None:
        self._stage_keys: dict[str, None] = {}
        self._stages: list[str] = []
        self._in_stage = FuncCache()
        self._condition_keys: dict[str, None] = {}
        self._conditions = FuncCache()
        self._lock = threading.Lock()

    def register_stage(self, stage: str, in_stage: Predicate) -> None:
        with self._lock:
            self._stages.append(stage)
            self._stage_keys[stage] = None
            self._in_stage.add(stage, in_stage)

    def register_condition(self, condition: str, in_condition: Predicate) -> None:
        with self._lock:
            self._condition_keys[condition] = None
            self._conditions.add(condition, in_condition)

    def stage(self, obj) -> str:
        """The first stage whose checks all accept the object, or ""."""
        with self._lock:
            keys = list(self._stage_keys)
        for key in keys:
            if all(check(obj) for check in self._in_stage.get(key)):
                return key
        return ""

    def get_stages(self) -> list[str]:
        with self._lock:
            return list(self._stages)

    def in_stage(self, obj, key: str) -> bool:
        """True only when the stage has exactly one check and it accepts the object."""
        checks = self._in_stage.get(key)
        return len(checks) == 1 and bool(checks[0](obj))

    def conditions(self, obj) -> list[str]:
        with self._lock:
            keys = list(self._condition_keys)
        matched = []
        for key in keys:
            if all([check(obj) for check in self._conditions.get(key)]):
                matched.append(key)
        return matched

    def match_conditions(self, obj, *args: str) -> list[str]:
        """The object's current conditions that are among the given ones."""
        wanted = set(args)
        return [cond for cond in self.conditions(obj) if cond in wanted]


_default = StageRegistry()

# Checks that tell whether a pod is unavailable, and optionally in how many
# seconds it may become available.  Mutate in place; other modules read it.
unavailable_funcs: list[UnavailableFunc] = []

_rule_stages: dict[str, str] = {}


def default_policy() -> StageRegistry:
    return _default


def default_register() -> StageRegistry:
    return _default


def _not_ready_or_terminal(pod: Pod) -> tuple[bool, Optional[int]]:
    return (not is_pod_ready(pod)) or is_pod_terminal(pod), None


def default_init() -> None:
    """Install the standard unavailability check: not ready or terminal."""
    unavailable_funcs.append(_not_ready_or_terminal)


def add_unavailable_func(func: UnavailableFunc) -> None:
    unavailable_funcs.append(func)


def get_rule_type(rule) -> str:
    """Type name of the first definition set on the rule, or ""."""
    return next(
        (type_name for type_name, attr in RULE_DEFINITIONS if getattr(rule, attr) is not None),
        "",
    )


def init_default_rule_stage(rule, stage: str) -> None:
    """Make ``stage`` the default for every rule of the same type as ``rule``."""
    _rule_stages[get_rule_type(rule)] = stage


def get_rule_stage(rule) -> str:
    """Default stage of the rule's type, falling back to the first registered stage."""
    stage = _rule_stages.get(get_rule_type(rule), "")
    if not stage:
        stages = _default.get_stages()
        if stages:
            stage = stages[0]
    return stage