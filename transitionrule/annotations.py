"""Pod annotations read and written by transition rules."""

from __future__ import annotations

import json

from transitionrule.models import Pod

DETAIL_ANNOTATION_PREFIX = "detail.podtransitionrule.kusionstack.io"
SKIP_RULE_ANNOTATION = "podtransitionrule.kusionstack.io/skip-rule-conditions"


def detail_annotation_key(rule_name: str) -> str:
    """Annotation key that holds a transition rule's detail on a pod."""
    return f"{DETAIL_ANNOTATION_PREFIX}/{rule_name}"


def has_skip_rule(pod: Pod, rule_name: str) -> bool:
    """Tell whether the pod's skip annotation names the rule.

    Raises ValueError when the annotation is not valid JSON of the expected shape.
    """
    raw = pod.annotations.get(SKIP_RULE_ANNOTATION, "")
    if not raw:
        return False
    data = json.loads(raw)
    if data is None:
        return False
    if not isinstance(data, dict):
        raise ValueError(f"skip rule annotation must be a JSON object, got {raw!r}")
    skip_rules = data.get("skipRules")
    if skip_rules is None:
        return False
    if not isinstance(skip_rules, list) or not all(isinstance(r, str) for r in skip_rules):
        raise ValueError(f"skipRules must be a list of strings, got {skip_rules!r}")
    return rule_name in skip_rules


def remove_detail_annotation(pod: Pod, rule_name: str) -> bool:
    """Drop the rule's detail annotation; True if one was there."""
    return pod.annotations.pop(detail_annotation_key(rule_name), None) is not None


def remove_all_rule_info(pod: Pod, rule_name: str) -> bool:
    """Drop everything the rule left on the pod; True if anything changed."""
    return remove_detail_annotation(pod, rule_name)