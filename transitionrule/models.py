"""Pods, pod transition rules and the small helpers that work on them."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

IntOrPercent = Union[int, str]

# Label selector operators.
IN = "In"
NOT_IN = "NotIn"
EXISTS = "Exists"
DOES_NOT_EXIST = "DoesNotExist"

# Pod phases.
POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
POD_READY = "Ready"

# The kinds of rule definition, in the order they are inspected:
# (type name, attribute of TransitionRule).
RULE_DEFINITIONS = (
    ("AvailablePolicy", "available_policy"),
    ("LabelCheck", "label_check"),
    ("Webhook", "webhook"),
)

_PERCENT = re.compile(r"[+-]?\d+")


@dataclass
class LabelSelectorRequirement:
    """One expression of a label selector."""

    key: str
    operator: str
    values: list[str] = field(default_factory=list)

    def _validate(self) -> None:
        if self.operator in (IN, NOT_IN):
            if not self.values:
                raise ValueError(
                    f"invalid requirement on {self.key!r}: "
                    "for 'in', 'notin' operators, values set can't be empty"
                )
        elif self.operator in (EXISTS, DOES_NOT_EXIST):
            if self.values:
                raise ValueError(
                    f"invalid requirement on {self.key!r}: "
                    "values set must be empty for exists and does not exist"
                )
        else:
            raise ValueError(f"{self.operator!r} is not a valid pod selector operator")

    def _matches(self, labels: dict[str, str]) -> bool:
        if self.operator == IN:
            return self.key in labels and labels[self.key] in self.values
        if self.operator == NOT_IN:
            return self.key not in labels or labels[self.key] not in self.values
        if self.operator == EXISTS:
            return self.key in labels
        return self.key not in labels

    def _render(self) -> str:
        values = ",".join(sorted(self.values))
        if self.operator == IN:
            return f"{self.key} in ({values})"
        if self.operator == NOT_IN:
            return f"{self.key} notin ({values})"
        if self.operator == EXISTS:
            return self.key
        return f"!{self.key}"


@dataclass
class LabelSelector:
    """Selects objects by their labels; an empty selector selects everything."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)

    def matches(self, labels) -> bool:
        """Tell whether a label mapping satisfies the selector.

        Raises ValueError when an expression is malformed.
        """
        for requirement in self.match_expressions:
            requirement._validate()
        labels = labels or {}
        if any(labels.get(key) != value for key, value in self.match_labels.items()):
            return False
        return all(req._matches(labels) for req in self.match_expressions)

    def __str__(self) -> str:
        parts = [(key, f"{key}={value}") for key, value in self.match_labels.items()]
        parts.extend((req.key, req._render()) for req in self.match_expressions)
        parts.sort(key=lambda item: item[0])
        return ",".join(text for _, text in parts)


@dataclass
class PodCondition:
    type: str
    status: str = CONDITION_FALSE


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Pod:
    """The parts of a pod that transition rules look at."""

    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    uid: str = ""
    resource_version: str = ""
    deletion_timestamp: Optional[datetime] = None
    node_name: str = ""
    service_account_name: str = ""
    phase: str = ""
    pod_ip: str = ""
    host_ip: str = ""
    conditions: list[PodCondition] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Render the pod as its JSON object, leaving out empty fields."""
        metadata: dict = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.deletion_timestamp is not None:
            metadata["deletionTimestamp"] = _format_time(self.deletion_timestamp)
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)

        spec: dict = {}
        if self.node_name:
            spec["nodeName"] = self.node_name
        if self.service_account_name:
            spec["serviceAccountName"] = self.service_account_name

        status: dict = {}
        if self.phase:
            status["phase"] = self.phase
        if self.conditions:
            status["conditions"] = [
                {"type": cond.type, "status": cond.status} for cond in self.conditions
            ]
        if self.host_ip:
            status["hostIP"] = self.host_ip
        if self.pod_ip:
            status["podIP"] = self.pod_ip
        return {"metadata": metadata, "spec": spec, "status": status}


@dataclass
class AvailableRule:
    min_available_value: Optional[IntOrPercent] = None
    max_unavailable_value: Optional[IntOrPercent] = None


@dataclass
class LabelCheckRule:
    requires: Optional[LabelSelector] = None


@dataclass
class ClientConfig:
    url: str = ""
    ca_bundle: Optional[bytes] = None
    trace_timeout_seconds: Optional[int] = None
    interval_seconds: Optional[int] = None


@dataclass
class Parameter:
    """A webhook parameter: a literal value or a field path of the pod."""

    key: str = ""
    value: str = ""
    field_path: Optional[str] = None


@dataclass
class TransitionRuleWebhook:
    client_config: ClientConfig = field(default_factory=ClientConfig)
    parameters: list[Parameter] = field(default_factory=list)
    failure_policy: Optional[str] = None


@dataclass
class TransitionRule:
    """One rule of a PodTransitionRule; exactly one definition is expected."""

    name: str
    stage: Optional[str] = None
    disabled: bool = False
    conditions: list[str] = field(default_factory=list)
    label_filter: Optional[LabelSelector] = None
    available_policy: Optional[AvailableRule] = None
    label_check: Optional[LabelCheckRule] = None
    webhook: Optional[TransitionRuleWebhook] = None


@dataclass
class RejectInfo:
    rule_name: str = ""
    reason: str = ""


@dataclass
class Detail:
    name: str = ""
    stage: str = ""
    passed: bool = False
    passed_rules: list[str] = field(default_factory=list)
    reject_info: list[RejectInfo] = field(default_factory=list)


@dataclass
class ItemStatus:
    name: str = ""
    webhook_checked: bool = False
    trace_id: str = ""


@dataclass
class TraceInfo:
    trace_id: str = ""
    begin_time: Optional[datetime] = None
    last_time: Optional[datetime] = None
    message: str = ""


@dataclass
class WebhookStatus:
    item_status: list[ItemStatus] = field(default_factory=list)
    trace_states: list[TraceInfo] = field(default_factory=list)


@dataclass
class RuleState:
    name: str = ""
    webhook_status: Optional[WebhookStatus] = None


@dataclass
class PodTransitionRuleStatus:
    targets: list[str] = field(default_factory=list)
    observed_generation: int = 0
    details: list[Detail] = field(default_factory=list)
    rule_states: list[RuleState] = field(default_factory=list)
    update_time: Optional[datetime] = None


@dataclass
class PodTransitionRule:
    name: str
    namespace: str = ""
    selector: Optional[LabelSelector] = None
    rules: list[TransitionRule] = field(default_factory=list)
    status: PodTransitionRuleStatus = field(default_factory=PodTransitionRuleStatus)
    generation: int = 0
    resource_version: str = ""
    deletion_timestamp: Optional[datetime] = None
    finalizers: list[str] = field(default_factory=list)


@dataclass
class FilterResult:
    """Outcome of one rule: passed pod names, rejections by pod, retry hints."""

    passed: set[str] = field(default_factory=set)
    rejected: dict[str, str] = field(default_factory=dict)
    interval: Optional[float] = None
    error: Optional[Exception] = None
    rule_state: Optional[RuleState] = None


def is_pod_ready(pod: Pod) -> bool:
    """A pod is ready when its Ready condition is True."""
    return any(
        cond.type == POD_READY and cond.status == CONDITION_TRUE for cond in pod.conditions
    )


def is_pod_terminal(pod: Pod) -> bool:
    """A pod is terminal once it has failed or succeeded."""
    return pod.phase in (POD_FAILED, POD_SUCCEEDED)


def scaled_value_from_int_or_percent(value, total: int, round_up: bool) -> int:
    """Resolve an integer or an "N%" string against a total."""
    if value is None:
        raise ValueError("nil value for IntOrString")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.endswith("%"):
            raise ValueError(
                f"invalid value for IntOrString {value!r}: string is not a percentage"
            )
        number = value[:-1]
        if not _PERCENT.fullmatch(number):
            raise ValueError(f"invalid value {value!r}: not a percentage")
        product = int(number) * total
        return -((-product) // 100) if round_up else product // 100
    raise ValueError(f"invalid type for IntOrString: {type(value).__name__}")


def rule_weight(rule: TransitionRule) -> int:
    """Ordering weight of a rule: cheap checks come first."""
    if rule.available_policy is not None:
        return 1
    if rule.label_check is not None:
        return 3
    if rule.webhook is not None:
        return 5
    return 100


def sort_rules(rules) -> list[TransitionRule]:
    """Return the rules ordered by weight."""
    return sorted(rules, key=rule_weight)


def pod_passed_rules(pod: Pod, transition_rule: PodTransitionRule) -> set[str]:
    """Names of the rules the pod has already passed, from the rule's status."""
    passed: set[str] = set()
    for detail in transition_rule.status.details:
        if detail.name == pod.name:
            passed.update(detail.passed_rules)
    return passed


def is_pod_pass_rule(pod: Pod, transition_rule: PodTransitionRule, rule_name: str) -> bool:
    return rule_name in pod_passed_rules(pod, transition_rule)