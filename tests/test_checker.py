import pytest

from transitionrule.checker import CheckState, Checker, State, collect_info
from transitionrule.models import (
    Detail,
    Pod,
    PodTransitionRule,
    PodTransitionRuleStatus,
    RejectInfo,
)
from transitionrule.register import StageRegistry

STAGE_LABEL = "test.kafe.io/stage"
STAGE = "PreTrafficOff"


@pytest.fixture
def checker():
    reg = StageRegistry()
    reg.register_stage(STAGE, lambda obj: obj.labels.get(STAGE_LABEL) == STAGE)
    return Checker(reg)


def staged_pod(name="pod-a"):
    return Pod(name=name, namespace="default", labels={STAGE_LABEL: STAGE})


def rule_with(name, targets, details):
    return PodTransitionRule(name=name, namespace="default",
                             status=PodTransitionRuleStatus(targets=targets, details=details))


def test_collect_info_format():
    detail = Detail(reject_info=[RejectInfo("a", "x"), RejectInfo("b", "y")])
    assert collect_info("r", detail) == "[PodTransitionRule: r, RejectInfo: a:x, b:y] "


def test_collect_info_without_rejections():
    assert collect_info("r", Detail()) == "[PodTransitionRule: r, RejectInfo: ] "


def test_no_rules(checker):
    state = checker.get_state([], staged_pod())
    assert state.message == "No podTransitionRules found"
    assert state.states == []
    assert state.stage == STAGE


def test_rule_not_targeting_pod_is_ignored(checker):
    rule = rule_with("rs", ["other"], [Detail(name="other", stage=STAGE, passed=False)])
    state = checker.get_state([rule], staged_pod())
    assert state.states == []
    assert state.message == "No podTransitionRules found"


def test_passed_detail(checker):
    detail = Detail(name="pod-a", stage=STAGE, passed=True, passed_rules=["r1"])
    state = checker.get_state([rule_with("rs", ["pod-a"], [detail])], staged_pod())
    assert state.states == [State(transition_rule_name="rs", detail=detail)]
    assert state.message == ""
    assert state.in_stage_and_passed() is True


def test_rejected_detail_adds_message(checker):
    detail = Detail(name="pod-a", stage=STAGE, passed=False,
                    reject_info=[RejectInfo("r1", "blocked")])
    state = checker.get_state([rule_with("rs", ["pod-a"], [detail])], staged_pod())
    assert state.message == collect_info("rs", detail)
    assert state.in_stage() is True
    assert state.in_stage_and_passed() is False


def test_missing_detail_waits(checker):
    state = checker.get_state([rule_with("rs", ["pod-a"], [])], staged_pod())
    assert state.message == "[waiting for podtransitionrule rs processing. ]"
    assert len(state.states) == 1
    assert state.states[0].detail.passed is True
    assert state.in_stage() is False


def test_check_state_in_stage():
    passed = Detail(stage=STAGE, passed=True)
    other = Detail(stage="Other", passed=True)
    assert CheckState(stage=STAGE, states=[State("a", passed)]).in_stage() is True
    assert CheckState(stage=STAGE, states=[State("a", passed), State("b", other)]).in_stage() is False
    assert CheckState(stage=STAGE).in_stage_and_passed() is True