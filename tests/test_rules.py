import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from transitionrule import register
from transitionrule.models import (
    AvailableRule,
    ClientConfig,
    Detail,
    LabelCheckRule,
    LabelSelector,
    LabelSelectorRequirement,
    Pod,
    PodTransitionRule,
    TransitionRule,
    TransitionRuleWebhook,
)
from transitionrule.rules import (
    AvailableRuler,
    LabelCheckRuler,
    ManualRuler,
    WebhookRuler,
    get_ruler,
    process_unavailable,
)

UNAVAILABLE_LABEL = "test.kafe.io/unavailable"


@pytest.fixture(autouse=True)
def label_unavailability():
    saved = list(register.unavailable_funcs)
    register.unavailable_funcs[:] = [
        lambda pod: (UNAVAILABLE_LABEL in pod.labels, None)
    ]
    yield
    register.unavailable_funcs[:] = saved


def gen_pod(name, unavailable=False):
    labels = {"test": "gen"}
    if unavailable:
        labels[UNAVAILABLE_LABEL] = "true"
    return Pod(name=name, namespace="default", labels=labels)


def four_pods(unavailable=()):
    names = ["pod-test-1", "pod-test-2", "pod-test-3", "pod-test-4"]
    return {n: gen_pod(n, n in unavailable) for n in names}


def empty_rule():
    return PodTransitionRule(name="podtransitionrule-default", namespace="default")


def test_max_unavailable_half_passes_unavailable_pods():
    targets = four_pods(unavailable=("pod-test-1", "pod-test-2"))
    ruler = AvailableRuler(name="serviceAvailable", max_unavailable_value="50%")
    result = ruler.filter(empty_rule(), targets, set(targets))
    assert result.passed == {"pod-test-1", "pod-test-2"}
    assert set(result.rejected) == {"pod-test-3", "pod-test-4"}
    assert result.rejected["pod-test-3"].startswith(
        "[serviceAvailable] blocked by max unavailable policy")
    assert result.error is None


def test_newly_unavailable_pod_passes():
    targets = four_pods(unavailable=("pod-test-1", "pod-test-2", "pod-test-3"))
    ruler = AvailableRuler(name="serviceAvailable", max_unavailable_value="50%")
    result = ruler.filter(empty_rule(), targets, set(targets))
    assert "pod-test-3" in result.passed
    assert "pod-test-4" in result.rejected


def test_available_pods_use_remaining_budget():
    targets = four_pods()
    ruler = AvailableRuler(name="serviceAvailable", max_unavailable_value="50%")
    result = ruler.filter(empty_rule(), targets, set(targets))
    assert len(result.passed) == 2
    assert result.passed | set(result.rejected) == set(targets)
    assert not result.passed & set(result.rejected)


def test_already_passed_pod_counts_against_budget():
    rule = empty_rule()
    rule.status.details = [Detail(name="pod-test-1", passed_rules=["serviceAvailable"])]
    targets = four_pods()
    ruler = AvailableRuler(name="serviceAvailable", max_unavailable_value=1)
    result = ruler.filter(rule, targets, set(targets))
    assert result.passed == {"pod-test-1"}
    assert set(result.rejected) == {"pod-test-2", "pod-test-3", "pod-test-4"}


def test_min_available_blocks():
    targets = four_pods()
    ruler = AvailableRuler(name="keep", min_available_value=len(targets) - 1)
    result = ruler.filter(empty_rule(), targets, set(targets))
    assert len(result.passed) == 1
    assert all(reason.startswith("blocked by min available policy")
               for reason in result.rejected.values())
    assert result.passed | set(result.rejected) == set(targets)


def test_invalid_percentage_rejects_all_with_error():
    targets = four_pods()
    ruler = AvailableRuler(name="bad", max_unavailable_value="half")
    result = ruler.filter(empty_rule(), targets, {"pod-test-1", "pod-test-2"})
    assert result.error is not None
    assert result.passed == set()
    assert set(result.rejected) == {"pod-test-1", "pod-test-2"}
    assert result.rejected["pod-test-1"] == str(result.error)


def test_warm_up_sets_interval_and_error():
    register.unavailable_funcs[:] = [lambda pod: (pod.name == "pod-test-1", 30)]
    targets = four_pods()
    ruler = AvailableRuler(name="warm")
    result = ruler.filter(empty_rule(), targets, set(targets))
    assert result.interval == 30.0
    assert isinstance(result.error, RuntimeError)
    assert "pod-test-1" in result.passed


def test_process_unavailable_takes_smallest_interval():
    register.unavailable_funcs[:] = [
        lambda pod: (True, 20),
        lambda pod: (True, 7),
        lambda pod: (False, 1),
        lambda pod: (True, None),
    ]
    assert process_unavailable(gen_pod("p")) == (True, 7)


def test_process_unavailable_available_pod():
    assert process_unavailable(gen_pod("p")) == (False, None)


def test_label_check_pass_and_reject():
    targets = {"a": Pod(name="a", namespace="ns", labels={"ready": "yes"}),
               "b": Pod(name="b", namespace="ns", labels={})}
    ruler = LabelCheckRuler(name="lc", selector=LabelSelector(match_labels={"ready": "yes"}))
    result = ruler.filter(empty_rule(), targets, {"a", "b"})
    assert result.passed == {"a"}
    assert result.rejected["b"] == (
        "block by label check policy, pod ns/b labels not match ready=yes")


def test_label_check_without_selector_rejects_everything():
    targets = {"a": Pod(name="a", labels={"x": "y"})}
    result = LabelCheckRuler(name="lc").filter(empty_rule(), targets, {"a"})
    assert result.passed == set()
    assert set(result.rejected) == {"a"}


def test_label_check_bad_selector_is_error():
    selector = LabelSelector(match_expressions=[LabelSelectorRequirement(key="k", operator="In")])
    targets = {"a": Pod(name="a")}
    result = LabelCheckRuler(name="lc", selector=selector).filter(empty_rule(), targets, {"a"})
    assert result.error is not None
    assert result.rejected["a"].startswith("labelCheck error:")


def test_manual_ruler():
    targets = {"a": Pod(name="a"), "b": Pod(name="b")}
    approved = ManualRuler(name="m", approve=True).filter(empty_rule(), targets, {"a", "b"})
    assert approved.passed == {"a", "b"}
    assert approved.rejected == {}
    blocked = ManualRuler(name="m").filter(empty_rule(), targets, {"a"})
    assert blocked.passed == set()
    assert blocked.rejected == {"a": "blocked by manual policy, manual rejected"}


def test_get_ruler_picks_by_definition():
    available = get_ruler(TransitionRule(
        name="av", available_policy=AvailableRule(max_unavailable_value="50%")))
    assert available == AvailableRuler(name="av", max_unavailable_value="50%")
    selector = LabelSelector(match_labels={"k": "v"})
    label = get_ruler(TransitionRule(name="lc", label_check=LabelCheckRule(requires=selector)))
    assert label == LabelCheckRuler(name="lc", selector=selector)
    hook = get_ruler(TransitionRule(name="wh", webhook=TransitionRuleWebhook()))
    assert hook == WebhookRuler(name="wh")
    assert get_ruler(TransitionRule(name="none")) is None


class _SuccessHandler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        json.loads(self.rfile.read(length))
        body = json.dumps({"success": True, "message": "test success"}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


@pytest.fixture
def success_server():
    server = HTTPServer(("127.0.0.1", 0), _SuccessHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def webhook_rule(url):
    return PodTransitionRule(
        name="podtransitionrule-test",
        namespace="default",
        rules=[TransitionRule(
            name="test-webhook",
            stage="PreTrafficOff",
            webhook=TransitionRuleWebhook(client_config=ClientConfig(url=url)),
        )],
    )


def test_webhook_ruler_success(success_server):
    targets = {n: Pod(name=n, namespace="default")
               for n in ("test-pod-a", "test-pod-b", "test-pod-c")}
    result = WebhookRuler(name="test-webhook").filter(
        webhook_rule(success_server), targets, {"test-pod-a", "test-pod-b"})
    assert result.passed == {"test-pod-a", "test-pod-b"}
    assert result.rejected == {}
    assert result.rule_state.name == "test-webhook"


def test_webhook_ruler_missing_rule():
    with pytest.raises(ValueError):
        WebhookRuler(name="absent").filter(webhook_rule("http://127.0.0.1:1"), {}, set())