"""Rulers: the checks a transition rule applies to the pods in its stage."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from transitionrule import register
from transitionrule.models import (
    FilterResult,
    IntOrPercent,
    LabelSelector,
    Pod,
    PodTransitionRule,
    TransitionRule,
    is_pod_pass_rule,
    scaled_value_from_int_or_percent,
)
from transitionrule.webhook import get_webhooks

logger = logging.getLogger(__name__)


def _reject(subjects, passed: set, rejects: dict, reason: str) -> None:
    for name in subjects:
        if name in passed:
            continue
        rejects.setdefault(name, reason)


def _reject_all_with_error(subjects, passed: set, rejects: dict, message: str) -> FilterResult:
    _reject(subjects, passed, rejects, message)
    return FilterResult(passed=passed, rejected=rejects, error=ValueError(message))


def _min_optional(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def process_unavailable(pod: Pod) -> tuple[bool, Optional[int]]:
    """Run the registered unavailability checks on a pod.

    Returns whether any check finds it unavailable, and the smallest number of
    seconds any of those checks reported until it may become available.
    """
    unavailable = False
    min_interval: Optional[int] = None
    for check in register.unavailable_funcs:
        is_unavailable, interval = check(pod)
        if not is_unavailable:
            continue
        unavailable = True
        min_interval = _min_optional(min_interval, interval)
    return unavailable, min_interval


@dataclass
class AvailableRuler:
    """Passes pods while the max-unavailable and min-available budgets allow."""

    name: str
    min_available_value: Optional[IntOrPercent] = None
    max_unavailable_value: Optional[IntOrPercent] = None

    def filter(self, transition_rule: PodTransitionRule, targets: dict[str, Pod],
               subjects) -> FilterResult:
        passed: set[str] = set()
        rejects: dict[str, str] = {}
        effective = sorted({pod.name for pod in targets.values()})
        total = len(effective)

        max_unavailable_quota = total
        allow_unavailable = total
        min_available_quota = 0
        if self.max_unavailable_value is not None:
            try:
                quota = scaled_value_from_int_or_percent(self.max_unavailable_value, total, True)
            except ValueError as exc:
                return _reject_all_with_error(
                    subjects, passed, rejects,
                    f"[{self.name}] fail to get int value from raw max unavailable "
                    f"value({self.max_unavailable_value}), error: {exc}")
            max_unavailable_quota = quota
            allow_unavailable = quota

        if self.min_available_value is not None:
            try:
                min_available_quota = scaled_value_from_int_or_percent(
                    self.min_available_value, total, False)
            except ValueError as exc:
                return _reject_all_with_error(
                    subjects, passed, rejects,
                    f"[{self.name}] fail to get int value from raw min available "
                    f"value({self.min_available_value}), error: {exc}")

        all_available = 0
        min_time_left: Optional[int] = None
        for name in effective:
            pod = targets[name]
            if is_pod_pass_rule(pod, transition_rule, self.name):
                allow_unavailable -= 1
                continue
            unavailable, time_left = process_unavailable(pod)
            if unavailable:
                allow_unavailable -= 1
                min_time_left = _min_optional(min_time_left, time_left)
                continue
            all_available += 1

        blocked_by_max: list[str] = []
        blocked_by_min: list[str] = []
        for name in sorted(subjects):
            pod = targets[name]
            if is_pod_pass_rule(pod, transition_rule, self.name):
                passed.add(pod.name)
                continue
            unavailable, _ = process_unavailable(pod)
            if unavailable:
                passed.add(name)
                continue
            if allow_unavailable > 0:
                if all_available - min_available_quota < 1:
                    blocked_by_min.append(name)
                    continue
                all_available -= 1
                passed.add(name)
                allow_unavailable -= 1
                continue
            blocked_by_max.append(name)

        for name in blocked_by_min:
            rejects[name] = (
                f"blocked by min available policy: [min available]={min_available_quota}/{total}, "
                f"[current keep available]={all_available}/{total}")
        for name in blocked_by_max:
            rejects[name] = (
                f"[{self.name}] blocked by max unavailable policy: "
                f"[max unavailable]={max_unavailable_quota}/{total}, "
                f"[current unavailable]={total - all_available}/{total}")

        if min_time_left is not None:
            return FilterResult(
                passed=passed, rejected=rejects, interval=float(min_time_left),
                error=RuntimeError(
                    f"[{self.name}] pods not finish warm up until {min_time_left} seconds later"))
        return FilterResult(passed=passed, rejected=rejects)


@dataclass
class LabelCheckRuler:
    """Passes pods whose labels satisfy the required selector."""

    name: str
    selector: Optional[LabelSelector] = None

    def filter(self, transition_rule: PodTransitionRule, targets: dict[str, Pod],
               subjects) -> FilterResult:
        passed: set[str] = set()
        rejected: dict[str, str] = {}
        if self.selector is not None:
            try:
                self.selector.matches({})
            except ValueError as exc:
                return _reject_all_with_error(subjects, passed, rejected,
                                              f"labelCheck error: {exc}")
        rendered = "" if self.selector is None else str(self.selector)
        for name in subjects:
            pod = targets[name]
            if self.selector is not None and self.selector.matches(pod.labels):
                passed.add(name)
            else:
                rejected[name] = (
                    f"block by label check policy, pod {pod.namespace}/{pod.name} "
                    f"labels not match {rendered}")
        logger.info("finish do label check, passed: %d, rejected: %d",
                    len(passed), len(rejected))
        return FilterResult(passed=passed, rejected=rejected)


@dataclass
class ManualRuler:
    """Passes or blocks every pod, as set by hand."""

    name: str
    approve: bool = False

    def filter(self, transition_rule: PodTransitionRule, targets: dict[str, Pod],
               subjects) -> FilterResult:
        if self.approve:
            return FilterResult(passed=set(subjects), rejected={})
        return FilterResult(
            passed=set(),
            rejected={name: "blocked by manual policy, manual rejected" for name in subjects})


@dataclass
class WebhookRuler:
    """Delegates to the webhook rule of the same name."""

    name: str

    def filter(self, transition_rule: PodTransitionRule, targets: dict[str, Pod],
               subjects) -> FilterResult:
        webhooks = get_webhooks(transition_rule, self.name)
        if not webhooks:
            raise ValueError(
                f"no webhook rule {self.name!r} in {transition_rule.namespace}/"
                f"{transition_rule.name}")
        return webhooks[0].do(targets, subjects)


Ruler = Union[AvailableRuler, LabelCheckRuler, ManualRuler, WebhookRuler]


def get_ruler(rule: TransitionRule) -> Optional[Ruler]:
    """The ruler for a rule's definition, or None when it has none."""
    if rule.available_policy is not None:
        return AvailableRuler(
            name=rule.name,
            min_available_value=rule.available_policy.min_available_value,
            max_unavailable_value=rule.available_policy.max_unavailable_value,
        )
    if rule.label_check is not None:
        return LabelCheckRuler(name=rule.name, selector=rule.label_check.requires)
    if rule.webhook is not None:
        return WebhookRuler(name=rule.name)
    return None