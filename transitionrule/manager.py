"""Entry point for setting up and querying PodTransitionRule handling."""

from __future__ import annotations

from typing import Callable, Optional

from transitionrule import register
from transitionrule.checker import Checker, CheckState
from transitionrule.controller import InMemoryClient, Reconciler
from transitionrule.models import Pod


class RuleManager:
    """Registers stages and conditions, reads pod states and builds reconcilers."""

    def __init__(self, registry: Optional[register.StageRegistry] = None) -> None:
        self.registry = registry if registry is not None else register.default_register()
        self.checker = Checker(policy=self.registry)

    def register_stage(self, stage: str, in_stage: Callable[[object], bool]) -> None:
        """Register a stage before reconciling starts."""
        self.registry.register_stage(stage, in_stage)

    def register_condition(self, condition: str,
                           in_condition: Callable[[object], bool]) -> None:
        """Register a condition before reconciling starts."""
        self.registry.register_condition(condition, in_condition)

    def get_state(self, client: InMemoryClient, pod: Pod) -> CheckState:
        """The pod's check state from all rules of its namespace that target it."""
        return self.checker.get_state(client.list_rules(pod.namespace), pod)

    def new_reconciler(self, client: InMemoryClient) -> Reconciler:
        """A reconciler that works on ``client`` with this manager's stages."""
        return Reconciler(client, policy=self.registry)


_default_manager = RuleManager()


def rule_manager() -> RuleManager:
    """The process-wide manager, backed by the default registry."""
    return _default_manager


def add_unavailable_func(func: Callable[[Pod], "tuple[bool, Optional[int]]"]) -> None:
    """Add a check that tells whether a pod is unavailable."""
    register.add_unavailable_func(func)