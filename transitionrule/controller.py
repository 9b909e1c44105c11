"""Reconciling PodTransitionRules against the pods they select."""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from transitionrule.annotations import detail_annotation_key, remove_all_rule_info
from transitionrule.models import (
    Detail,
    LabelSelector,
    Pod,
    PodTransitionRule,
    PodTransitionRuleStatus,
    RejectInfo,
    RuleState,
)
from transitionrule.processor import ProcessResult, RuleProcessor
from transitionrule.register import StageRegistry, default_policy

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "podtransitionrule-controller"
CLEAN_UP_FINALIZER = "podtransitionrule.kusionstack.io/need-clean-up"
DEFAULT_RETRY_ATTEMPTS = 5

T = TypeVar("T")


class NotFoundError(LookupError):
    """The requested object does not exist."""


class ConflictError(Exception):
    """The object was changed since it was read."""


def retry_on_conflict(func: Callable[[], T], attempts: int = DEFAULT_RETRY_ATTEMPTS) -> T:
    """Call ``func`` until it stops raising ConflictError, at most ``attempts`` times."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    last: Optional[ConflictError] = None
    for _ in range(attempts):
        try:
            return func()
        except ConflictError as exc:
            last = exc
    assert last is not None
    raise last


class InMemoryClient:
    """A small object store for pods and transition rules with optimistic concurrency.

    Objects are stored and handed out as copies; updates must carry the
    resource version they were read with, or an empty one to skip the check.
    """

    def __init__(self) -> None:
        self._pods: dict[tuple[str, str], Pod] = {}
        self._rules: dict[tuple[str, str], PodTransitionRule] = {}
        self._version = 0
        self._lock = threading.RLock()

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _create(self, store: dict, obj, kind: str) -> None:
        key = (obj.namespace, obj.name)
        with self._lock:
            if key in store:
                raise ValueError(f"{kind} {obj.namespace}/{obj.name} already exists")
            obj.resource_version = self._next_version()
            store[key] = copy.deepcopy(obj)

    def _get(self, store: dict, namespace: str, name: str, kind: str):
        with self._lock:
            try:
                return copy.deepcopy(store[(namespace, name)])
            except KeyError:
                raise NotFoundError(f"{kind} {namespace}/{name} not found") from None

    def _update(self, store: dict, obj, kind: str) -> None:
        key = (obj.namespace, obj.name)
        with self._lock:
            current = store.get(key)
            if current is None:
                raise NotFoundError(f"{kind} {obj.namespace}/{obj.name} not found")
            if obj.resource_version and obj.resource_version != current.resource_version:
                raise ConflictError(
                    f"{kind} {obj.namespace}/{obj.name} has been modified; "
                    "apply your changes to the latest version and try again")
            obj.resource_version = self._next_version()
            store[key] = copy.deepcopy(obj)

    def add_pod(self, pod: Pod) -> None:
        self._create(self._pods, pod, "pod")

    def get_pod(self, namespace: str, name: str) -> Pod:
        return self._get(self._pods, namespace, name, "pod")

    def list_pods(self, namespace: str, selector: Optional[LabelSelector] = None) -> list[Pod]:
        """Pods of the namespace, sorted by name; no selector means all of them."""
        with self._lock:
            pods = [copy.deepcopy(pod) for (ns, _), pod in self._pods.items() if ns == namespace]
        if selector is not None:
            pods = [pod for pod in pods if selector.matches(pod.labels)]
        return sorted(pods, key=lambda pod: pod.name)

    def update_pod(self, pod: Pod) -> None:
        self._update(self._pods, pod, "pod")

    def delete_pod(self, namespace: str, name: str) -> None:
        with self._lock:
            if self._pods.pop((namespace, name), None) is None:
                raise NotFoundError(f"pod {namespace}/{name} not found")

    def add_rule(self, transition_rule: PodTransitionRule) -> None:
        self._create(self._rules, transition_rule, "podtransitionrule")

    def get_rule(self, namespace: str, name: str) -> PodTransitionRule:
        return self._get(self._rules, namespace, name, "podtransitionrule")

    def list_rules(self, namespace: str) -> list[PodTransitionRule]:
        with self._lock:
            rules = [copy.deepcopy(rule) for (ns, _), rule in self._rules.items()
                     if ns == namespace]
        return sorted(rules, key=lambda rule: rule.name)

    def update_rule(self, transition_rule: PodTransitionRule) -> None:
        """Store the rule; a rule being deleted goes away once it has no finalizers."""
        with self._lock:
            self._update(self._rules, transition_rule, "podtransitionrule")
            if transition_rule.deletion_timestamp is not None and not transition_rule.finalizers:
                del self._rules[(transition_rule.namespace, transition_rule.name)]

    def delete_rule(self, namespace: str, name: str) -> None:
        """Remove the rule, or mark it deleted while finalizers remain."""
        with self._lock:
            rule = self._rules.get((namespace, name))
            if rule is None:
                raise NotFoundError(f"podtransitionrule {namespace}/{name} not found")
            if not rule.finalizers:
                del self._rules[(namespace, name)]
                return
            if rule.deletion_timestamp is None:
                rule.deletion_timestamp = datetime.now(timezone.utc)
                rule.resource_version = self._next_version()


@dataclass
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None


def update_detail(details: dict[str, Detail], result: ProcessResult, stage: str) -> None:
    """Fold one stage's result into the per-pod details."""
    for pod_name, rules in result.pass_rules.items():
        rejection = result.rejected.get(pod_name)
        detail = details.get(pod_name)
        if detail is None:
            detail = Detail(name=pod_name, stage=stage)
        detail.passed_rules.extend(sorted(rules))
        if rejection is not None:
            detail.reject_info.append(
                RejectInfo(rule_name=rejection.rule_name, reason=rejection.reason))
        detail.passed = not detail.reject_info
        details[pod_name] = detail


def equal_status(updated: PodTransitionRuleStatus, current: PodTransitionRuleStatus) -> bool:
    """Compare two statuses, ignoring their update times."""
    return (updated.targets == current.targets
            and updated.details == current.details
            and updated.rule_states == current.rule_states
            and updated.observed_generation == current.observed_generation)


def _dump_detail(detail: Optional[Detail]) -> str:
    if detail is None:
        data = {"stage": "Unknown", "passed": True}
    else:
        data = {"stage": detail.stage, "passed": detail.passed}
    return json.dumps(data, separators=(",", ":"))


class Reconciler:
    """Brings a PodTransitionRule's status and its pods' annotations up to date."""

    def __init__(self, client: InMemoryClient, policy: Optional[StageRegistry] = None,
                 skip_rules=None) -> None:
        self.client = client
        self.policy = policy if policy is not None else default_policy()
        self.skip_rules = skip_rules

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            rule = self.client.get_rule(namespace, name)
        except NotFoundError:
            return ReconcileResult()

        pods = self._selected_pods(rule)

        if rule.deletion_timestamp is not None:
            self._clean_up_pods(rule)
            if CLEAN_UP_FINALIZER in rule.finalizers:
                self._remove_finalizer(namespace, name)
            return ReconcileResult()
        if CLEAN_UP_FINALIZER not in rule.finalizers:
            try:
                rule = self._add_finalizer(namespace, name)
            except (ConflictError, NotFoundError) as exc:
                raise RuntimeError(
                    f"fail to add finalizer on PodTransitionRule {namespace}/{name}: {exc}"
                ) from exc

        targets = {pod.name: pod for pod in pods}
        for target in rule.status.targets:
            if target not in targets:
                self._update_rule_on_pod(rule.name, target, rule.namespace)

        retry, interval, details, rule_states = self._process(rule, targets)
        result = ReconcileResult(requeue=retry, requeue_after=interval)

        new_status = PodTransitionRuleStatus(
            targets=sorted(targets),
            observed_generation=rule.generation,
            details=[details[key] for key in sorted(details)],
            rule_states=rule_states,
            update_time=datetime.now(timezone.utc),
        )
        if not equal_status(new_status, rule.status):
            rule.status = new_status
            try:
                self.client.update_rule(rule)
            except (ConflictError, NotFoundError):
                logger.error("failed to update podtransitionrule %s/%s status", namespace, name)
                raise

        for pod in sorted(targets.values(), key=lambda p: p.name):
            self._update_pod_detail(pod, rule.name, details.get(pod.name))
        return result

    def _selected_pods(self, rule: PodTransitionRule) -> list[Pod]:
        if rule.selector is None:
            return []
        try:
            return self.client.list_pods(rule.namespace, rule.selector)
        except ValueError:
            # An unusable selector lists without a label filter.
            return self.client.list_pods(rule.namespace, None)

    def _process(self, rule: PodTransitionRule, targets: dict[str, Pod]):
        retry = False
        interval: Optional[float] = None
        details: dict[str, Detail] = {}
        rule_states: list[RuleState] = []
        for stage in self.policy.get_stages():
            res = RuleProcessor(stage, rule, policy=self.policy,
                                skip_rules=self.skip_rules).process(targets)
            if res.interval is not None and (interval is None or interval > res.interval):
                interval = res.interval
            rule_states.extend(res.rule_states)
            retry = retry or res.retry
            update_detail(details, res, stage)
        return retry, interval, details, rule_states

    def _add_finalizer(self, namespace: str, name: str) -> PodTransitionRule:
        def attempt() -> PodTransitionRule:
            rule = self.client.get_rule(namespace, name)
            if CLEAN_UP_FINALIZER not in rule.finalizers:
                rule.finalizers.append(CLEAN_UP_FINALIZER)
                self.client.update_rule(rule)
            return rule

        return retry_on_conflict(attempt)

    def _remove_finalizer(self, namespace: str, name: str) -> None:
        def attempt() -> None:
            try:
                rule = self.client.get_rule(namespace, name)
            except NotFoundError:
                return
            if CLEAN_UP_FINALIZER in rule.finalizers:
                rule.finalizers.remove(CLEAN_UP_FINALIZER)
                self.client.update_rule(rule)

        retry_on_conflict(attempt)

    def _clean_up_pods(self, rule: PodTransitionRule) -> None:
        for target in rule.status.targets:
            try:
                self._update_rule_on_pod(rule.name, target, rule.namespace)
            except ConflictError as exc:
                raise RuntimeError(
                    f"fail to remove PodTransitionRule {rule.namespace}/{rule.name} "
                    f"on pod {target}: {exc}") from exc

    def _update_rule_on_pod(self, rule_name: str, pod_name: str, namespace: str) -> None:
        def attempt() -> None:
            try:
                pod = self.client.get_pod(namespace, pod_name)
            except NotFoundError:
                return
            if remove_all_rule_info(pod, rule_name):
                self.client.update_pod(pod)

        retry_on_conflict(attempt)

    def _update_pod_detail(self, pod: Pod, rule_name: str, detail: Optional[Detail]) -> None:
        key = detail_annotation_key(rule_name)
        value = _dump_detail(detail)
        if pod.annotations.get(key) == value:
            return

        def attempt() -> None:
            fresh = self.client.get_pod(pod.namespace, pod.name)
            fresh.annotations[key] = value
            self.client.update_pod(fresh)

        retry_on_conflict(attempt)