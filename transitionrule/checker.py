"""Collecting a pod's check state from the transition rules that target it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from transitionrule.models import Detail, Pod
from transitionrule.register import StageRegistry, default_policy


def collect_info(rule_name: str, detail: Detail) -> str:
    """Summarise a detail's rejections for a message."""
    reasons = ", ".join(f"{rej.rule_name}:{rej.reason}" for rej in detail.reject_info)
    return f"[PodTransitionRule: {rule_name}, RejectInfo: {reasons}] "


@dataclass
class State:
    transition_rule_name: str
    detail: Detail
    message: str = ""


@dataclass
class CheckState:
    """A pod's current stage and what each of its transition rules says about it."""

    stage: str = ""
    states: list[State] = field(default_factory=list)
    message: str = ""

    def in_stage(self) -> bool:
        return all(state.detail.stage == self.stage for state in self.states)

    def in_stage_and_passed(self) -> bool:
        return all(state.detail.stage == self.stage and state.detail.passed
                   for state in self.states)


class Checker:
    """Reads pod states out of transition rule statuses."""

    def __init__(self, policy: Optional[StageRegistry] = None) -> None:
        self.policy = policy if policy is not None else default_policy()

    def get_state(self, transition_rules, pod: Pod) -> CheckState:
        """State of the pod from those of the given rules whose targets name it.

        Stages of the individual states are not guaranteed to be consistent.
        """
        result = CheckState(stage=self.policy.stage(pod))
        involved = [rule for rule in transition_rules if pod.name in rule.status.targets]
        for rule in involved:
            detail = next((d for d in rule.status.details if d.name == pod.name), None)
            if detail is None:
                result.states.append(State(transition_rule_name=rule.name,
                                           detail=Detail(passed=True)))
                result.message += f"[waiting for podtransitionrule {rule.name} processing. ]"
                continue
            if not detail.passed:
                result.message += collect_info(rule.name, detail)
            result.states.append(State(transition_rule_name=rule.name, detail=detail))
        if not involved:
            result.message = "No podTransitionRules found"
        return result