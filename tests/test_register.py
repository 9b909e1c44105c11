import pytest

from transitionrule import register
from transitionrule.models import (
    POD_FAILED,
    POD_RUNNING,
    AvailableRule,
    LabelCheckRule,
    Pod,
    PodCondition,
    TransitionRule,
    TransitionRuleWebhook,
)
from transitionrule.register import (
    FuncCache,
    StageRegistry,
    add_unavailable_func,
    default_init,
    default_policy,
    default_register,
    get_rule_stage,
    get_rule_type,
    init_default_rule_stage,
)

STAGE_LABEL = "test.kafe.io/stage"
CONDITION_LABEL = "test.kafe.io/condition"
PRE_TRAFFIC_OFF = "PreTrafficOff"
DELETE_POD = "DeletePod"


def _label_is(label, value):
    return lambda obj: obj.labels.get(label) == value


@pytest.fixture
def registry():
    reg = StageRegistry()
    reg.register_stage(PRE_TRAFFIC_OFF, _label_is(STAGE_LABEL, PRE_TRAFFIC_OFF))
    reg.register_condition(DELETE_POD, _label_is(CONDITION_LABEL, DELETE_POD))
    return reg


@pytest.fixture
def saved_unavailable_funcs():
    saved = list(register.unavailable_funcs)
    register.unavailable_funcs.clear()
    yield register.unavailable_funcs
    register.unavailable_funcs[:] = saved


def test_rule_stage_from_source():
    rule = TransitionRule("avail", available_policy=AvailableRule())
    init_default_rule_stage(rule, "test-stage")
    assert get_rule_stage(rule) == "test-stage"
    assert get_rule_type(rule) == "AvailablePolicy"


def test_rule_type_names():
    assert get_rule_type(TransitionRule("l", label_check=LabelCheckRule())) == "LabelCheck"
    assert get_rule_type(TransitionRule("w", webhook=TransitionRuleWebhook())) == "Webhook"
    assert get_rule_type(TransitionRule("n")) == ""


def test_func_cache_add_put_get():
    cache = FuncCache()
    assert cache.get("k") == []
    first = lambda obj: True  # noqa: E731
    second = lambda obj: False  # noqa: E731
    cache.add("k", first)
    cache.add("k", second)
    assert cache.get("k") == [first, second]
    cache.put("k", second)
    assert cache.get("k") == [second]


def test_stage_of_object(registry):
    on_stage = Pod("a", labels={STAGE_LABEL: PRE_TRAFFIC_OFF})
    off_stage = Pod("b", labels={STAGE_LABEL: "Other"})
    assert registry.stage(on_stage) == PRE_TRAFFIC_OFF
    assert registry.stage(off_stage) == ""
    assert registry.in_stage(on_stage, PRE_TRAFFIC_OFF) is True
    assert registry.in_stage(off_stage, PRE_TRAFFIC_OFF) is False
    assert registry.in_stage(on_stage, "Unknown") is False


def test_in_stage_needs_exactly_one_check(registry):
    registry.register_stage(PRE_TRAFFIC_OFF, lambda obj: True)
    pod = Pod("a", labels={STAGE_LABEL: PRE_TRAFFIC_OFF})
    assert registry.in_stage(pod, PRE_TRAFFIC_OFF) is False
    assert registry.get_stages() == [PRE_TRAFFIC_OFF, PRE_TRAFFIC_OFF]


def test_get_stages_keeps_order_and_is_a_copy(registry):
    registry.register_stage("Second", lambda obj: False)
    stages = registry.get_stages()
    stages.append("mutated")
    assert registry.get_stages() == [PRE_TRAFFIC_OFF, "Second"]


def test_conditions_and_match(registry):
    deleting = Pod("a", labels={CONDITION_LABEL: DELETE_POD})
    idle = Pod("b")
    assert registry.conditions(deleting) == [DELETE_POD]
    assert registry.conditions(idle) == []
    assert registry.match_conditions(deleting, DELETE_POD, "Other") == [DELETE_POD]
    assert registry.match_conditions(deleting, "Other") == []
    assert registry.match_conditions(idle, DELETE_POD) == []


def test_default_policy_and_register_are_shared():
    assert default_policy() is default_register()


def test_default_init_flags_unready_or_terminal(saved_unavailable_funcs):
    default_init()
    assert len(saved_unavailable_funcs) == 1
    check = saved_unavailable_funcs[0]
    ready = Pod("r", phase=POD_RUNNING, conditions=[PodCondition("Ready", "True")])
    not_ready = Pod("n", phase=POD_RUNNING, conditions=[PodCondition("Ready", "False")])
    terminal = Pod("t", phase=POD_FAILED, conditions=[PodCondition("Ready", "True")])
    assert check(ready) == (False, None)
    assert check(not_ready) == (True, None)
    assert check(terminal) == (True, None)


def test_add_unavailable_func(saved_unavailable_funcs):
    def by_label(pod):
        return "test.kafe.io/unavailable" in pod.labels, None

    add_unavailable_func(by_label)
    assert saved_unavailable_funcs == [by_label]