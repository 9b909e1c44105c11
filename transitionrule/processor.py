"""Running the rules of a PodTransitionRule for one stage over its target pods."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from transitionrule.annotations import has_skip_rule
from transitionrule.models import (
    RULE_DEFINITIONS,
    Pod,
    PodTransitionRule,
    RejectInfo,
    RuleState,
    TransitionRule,
    sort_rules,
)
from transitionrule.register import StageRegistry, default_policy, get_rule_stage
from transitionrule.rules import get_ruler

logger = logging.getLogger(__name__)

ENV_SKIP_TRANSITION_RULES = "SKIP_POD_TRANSITION_RULES"


def parse_skip_rules(value: Optional[str]) -> set[str]:
    """Parse a comma separated list of rule definition names, ignoring blanks."""
    if not value:
        return set()
    return {part.strip() for part in value.split(",") if part.strip()}


# Rule definition kinds (e.g. "availablePolicy", "webhook") switched off by the environment.
SKIP_TRANSITION_RULES: set[str] = parse_skip_rules(os.environ.get(ENV_SKIP_TRANSITION_RULES))


def _lower_first(name: str) -> str:
    return name[:1].lower() + name[1:]


def need_skip(rule: TransitionRule, skip_rules=None) -> bool:
    """Tell whether any definition set on the rule is of a skipped kind."""
    skipped = SKIP_TRANSITION_RULES if skip_rules is None else skip_rules
    return any(
        getattr(rule, attr) is not None and _lower_first(type_name) in skipped
        for type_name, attr in RULE_DEFINITIONS
    )


@dataclass
class ProcessResult:
    """Outcome of one stage: rejections and passed rules by pod, and retry hints."""

    rejected: dict[str, RejectInfo] = field(default_factory=dict)
    pass_rules: dict[str, set[str]] = field(default_factory=dict)
    retry: bool = False
    interval: Optional[float] = None
    rule_states: list[RuleState] = field(default_factory=list)


class RuleProcessor:
    """Applies the rules of one stage of a PodTransitionRule to the pods in that stage."""

    def __init__(self, stage: str, transition_rule: PodTransitionRule,
                 policy: Optional[StageRegistry] = None, skip_rules=None) -> None:
        self.stage = stage
        self.transition_rule = transition_rule
        self.policy = policy if policy is not None else default_policy()
        self.skip_rules = skip_rules

    def _effective_rules(self) -> list[TransitionRule]:
        rules = []
        for rule in self.transition_rule.rules:
            if rule.disabled or need_skip(rule, self.skip_rules):
                continue
            if rule.stage is None:
                if get_rule_stage(rule) == self.stage:
                    rules.append(rule)
            elif rule.stage == self.stage:
                rules.append(rule)
        return sort_rules(rules)

    def process(self, targets: dict[str, Pod]) -> ProcessResult:
        """Run the stage's rules in weight order; a rule sees only pods earlier rules passed."""
        rules = self._effective_rules()
        processing = {name for name, pod in targets.items() if self.policy.in_stage(pod, self.stage)}
        if not processing:
            return ProcessResult()

        pass_info: dict[str, set[str]] = {name: set() for name in processing}
        rejected: dict[str, RejectInfo] = {}
        rule_states: list[RuleState] = []
        skip_pods: set[str] = set()
        min_interval: Optional[float] = None
        retry = False

        for rule in rules:
            ruler = get_ruler(rule)
            if ruler is None:
                continue

            for name in sorted(processing):
                try:
                    skipped = has_skip_rule(targets[name], rule.name)
                except ValueError as exc:
                    logger.error("fail to get skip rule for pod %s: %s", name, exc)
                    continue
                if skipped:
                    skip_pods.add(name)
                    processing.discard(name)

            if rule.conditions:
                for name in sorted(processing):
                    if not self.policy.match_conditions(targets[name], *rule.conditions):
                        skip_pods.add(name)
                        processing.discard(name)

            if rule.label_filter is not None:
                for name in sorted(processing):
                    try:
                        matched = rule.label_filter.matches(targets[name].labels)
                    except ValueError:
                        matched = False
                    if not matched:
                        skip_pods.add(name)
                        processing.discard(name)

            result = ruler.filter(self.transition_rule, targets, set(processing))

            if result.rule_state is not None:
                rule_states.append(result.rule_state)
            if result.error is not None:
                retry = True
                logger.error("podtransitionrule %s process rule %s error: %s",
                             self.transition_rule.name, rule.name, result.error)
            if result.interval is not None and (min_interval is None
                                                or result.interval < min_interval):
                retry = True
                min_interval = result.interval

            for name in result.passed:
                pass_info.setdefault(name, set()).add(rule.name)
            for name, reason in result.rejected.items():
                rejected[name] = RejectInfo(rule_name=rule.name, reason=reason)

            processing = set(result.passed) | skip_pods
            if not processing:
                break

        return ProcessResult(
            rejected=rejected,
            pass_rules=pass_info,
            retry=retry,
            interval=min_interval,
            rule_states=rule_states,
        )