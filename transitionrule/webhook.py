"""Webhook transition rules: asking an HTTP endpoint whether pods may proceed."""

from __future__ import annotations

import copy
import json
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from transitionrule.fieldpath import extract_value_from_pod, new_trace
from transitionrule.models import (
    FilterResult,
    ItemStatus,
    Parameter,
    Pod,
    PodTransitionRule,
    RuleState,
    TraceInfo,
    TransitionRuleWebhook,
    WebhookStatus,
)

DEFAULT_TRACE_TIMEOUT = 60.0
DEFAULT_INTERVAL = 5.0
HTTP_TIMEOUT = 30.0


class WebhookError(Exception):
    """The webhook endpoint could not be reached or gave an unusable answer."""


@dataclass
class ResourceParameter:
    name: str = ""
    api_version: str = "core/v1"
    kind: str = "Pod"
    parameters: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: dict = {"apiVersion": self.api_version, "kind": self.kind}
        if self.name:
            data["name"] = self.name
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        return data


@dataclass
class WebhookRequest:
    """Body posted to the webhook endpoint."""

    trace_id: str = ""
    retry_by_trace: bool = False
    rule_name: str = ""
    stage: Optional[str] = None
    resources: list[ResourceParameter] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: dict = {}
        if self.trace_id:
            data["traceId"] = self.trace_id
        if self.retry_by_trace:
            data["retryByTrace"] = True
        if self.rule_name:
            data["ruleName"] = self.rule_name
        if self.stage is not None:
            data["stage"] = self.stage
        if self.resources:
            data["resources"] = [res.to_dict() for res in self.resources]
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        return data


@dataclass
class WebhookResponse:
    """Answer of the webhook endpoint."""

    success: bool = False
    message: str = ""
    retry_by_trace: bool = False
    passed: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookResponse":
        return cls(
            success=bool(data.get("success", False)),
            message=str(data.get("message") or ""),
            retry_by_trace=bool(data.get("retryByTrace", False)),
            passed=[str(name) for name in data.get("finishedNames") or []],
        )


def post_json(url: str, payload: dict, ca_bundle: Optional[bytes] = None,
              timeout: float = HTTP_TIMEOUT) -> dict:
    """POST a JSON payload and return the decoded JSON object that comes back.

    Raises WebhookError on transport failures, non-2xx statuses and bad bodies.
    """
    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    context = None
    if ca_bundle and url.lower().startswith("https"):
        try:
            context = ssl.create_default_context(cadata=ca_bundle.decode("ascii"))
        except (ssl.SSLError, ValueError) as exc:
            raise WebhookError(f"invalid CA bundle: {exc}") from exc
    try:
        with urllib.request.urlopen(request, timeout=timeout, context=context) as response:
            raw = response.read()
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise WebhookError(f"unexpected status {exc.code} from {url}: {detail}") from exc
    except OSError as exc:
        raise WebhookError(f"request to {url} failed: {exc}") from exc
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise WebhookError(f"invalid JSON response from {url}: {exc}") from exc
    if not isinstance(data, dict):
        raise WebhookError(f"response from {url} is not a JSON object")
    return data


def _seconds(value: float) -> str:
    return f"{value:.3f}s"


def _append_status(items: list[ItemStatus], names, check: Callable[[str], bool],
                   trace_id: str) -> None:
    for name in sorted(names):
        items.append(ItemStatus(name=name, webhook_checked=check(name), trace_id=trace_id))


@dataclass
class Webhook:
    """One webhook rule of a PodTransitionRule, with the state it carried over."""

    key: str
    rule_name: str
    stage: Optional[str]
    webhook: TransitionRuleWebhook
    state: RuleState
    _targets: dict = field(default_factory=dict, init=False, repr=False)
    _subjects: set = field(default_factory=set, init=False, repr=False)
    _retry_interval: Optional[float] = field(default=None, init=False, repr=False)
    _trace_info: dict = field(default_factory=dict, init=False, repr=False)

    def do(self, targets: dict[str, Pod], subjects) -> FilterResult:
        """Check the subject pods against the webhook, following open traces."""
        self._targets = dict(targets)
        self._subjects = set(subjects)
        self._trace_info = {}
        effective = set(self._subjects)
        rejected: dict[str, str] = {}
        new_state = WebhookStatus(item_status=[], trace_states=[])
        try:
            return self._run(effective, rejected, new_state)
        finally:
            new_state.trace_states = list(self._trace_info.values())
            self.state.webhook_status = new_state

    def _run(self, effective: set, rejected: dict, new_state: WebhookStatus) -> FilterResult:
        checked: set[str] = set()
        trace_pods: dict[str, set[str]] = {}
        all_tracing: set[str] = set()
        processing_trace: set[str] = set()

        old_status = self.state.webhook_status or WebhookStatus()
        for item in old_status.item_status:
            if item.name not in effective:
                continue
            trace_pods.setdefault(item.trace_id, set()).add(item.name)
            if item.trace_id:
                all_tracing.add(item.name)
            if item.webhook_checked:
                checked.add(item.name)
            else:
                processing_trace.add(item.trace_id)

        for trace_id in sorted(processing_trace):
            if not trace_id:
                continue
            pods = trace_pods[trace_id]
            self._follow_trace(trace_id, pods, checked, all_tracing, rejected, new_state)

        effective -= all_tracing
        rule_state = RuleState(name=self.rule_name, webhook_status=new_state)
        if not effective:
            return FilterResult(passed=checked, rejected=rejected,
                                interval=self._retry_interval, rule_state=rule_state)

        trace_id = ""
        try:
            request = self._build_request(effective, None)
            trace_id = request.trace_id
            response = self._do_http(request)
        except (WebhookError, ValueError) as exc:
            for name in effective:
                rejected[name] = f"fail to do webhook [{self.key}], {exc}, trace {trace_id}"
            return FilterResult(passed=checked, rejected=rejected, error=exc,
                                rule_state=rule_state)

        self._record_time(trace_id, response.message)
        finished = set(response.passed)
        if response.success:
            def accept(name: str) -> bool:
                checked.add(name)
                return True

            _append_status(new_state.item_status, effective, accept, trace_id)
        elif response.retry_by_trace:
            _append_status(new_state.item_status, effective, self._checker(
                checked, finished, rejected,
                f"will retry by traceId {trace_id}, msg: {response.message}", "rejected, "),
                trace_id)
        else:
            _append_status(new_state.item_status, effective, self._checker(
                checked, finished, rejected,
                f"traceId {trace_id}, msg: {response.message}", "rejected, "), "")

        return FilterResult(passed=checked, rejected=rejected,
                            interval=self._retry_interval, rule_state=rule_state)

    def _checker(self, checked: set, finished: set, rejected: dict, tail: str,
                 verdict: str) -> Callable[[str], bool]:
        def check(name: str) -> bool:
            if name in finished:
                checked.add(name)
            if name not in checked:
                rejected[name] = f"webhook check [{self.key}] {verdict}{tail}"
            return name in checked

        return check

    def _follow_trace(self, trace_id: str, pods: set, checked: set, all_tracing: set,
                      rejected: dict, new_state: WebhookStatus) -> None:
        if self._timed_out(trace_id):
            for name in sorted(pods):
                if name in checked:
                    new_state.item_status.append(
                        ItemStatus(name=name, webhook_checked=True, trace_id=trace_id))
                else:
                    all_tracing.discard(name)
                    rejected[name] = f"webhook check [{self.key}] timeout, trace {trace_id}"
            return

        due, wait, cost = self._out_interval(trace_id)
        if not due:
            info = self._get_trace_info(trace_id)
            last_msg = info.message if info is not None else ""

            def waiting(name: str) -> bool:
                if name not in checked:
                    rejected[name] = (
                        f"webhook check [{self.key}], traceId {trace_id} is waiting for next "
                        f"interval, msg: {last_msg} ,cost time {_seconds(cost)}"
                    )
                return name in checked

            _append_status(new_state.item_status, pods, waiting, trace_id)
            self._record_time_old(trace_id)
            self._update_interval(float(int(wait)))
            return

        try:
            response = self._do_http(self._build_request(set(), trace_id))
        except (WebhookError, ValueError) as exc:
            self._record_time(trace_id, "")

            def failed(name: str) -> bool:
                if name not in checked:
                    rejected[name] = (
                        f"webhook check [{self.key}] error, traceId {trace_id}, err: {exc}")
                return name in checked

            _append_status(new_state.item_status, pods, failed, trace_id)
            return

        self._record_time(trace_id, response.message)
        if response.success:
            def accept(name: str) -> bool:
                checked.add(name)
                return True

            _append_status(new_state.item_status, pods, accept, trace_id)
            return

        finished = set(response.passed)
        if response.retry_by_trace:
            _append_status(new_state.item_status, pods, self._checker(
                checked, finished, rejected,
                f"will retry by traceId {trace_id}, msg: {response.message}", "rejected, "),
                trace_id)
            return
        _append_status(new_state.item_status, pods, self._checker(
            checked, finished, rejected,
            f"traceId {trace_id}, msg: {response.message}", "rejected by finish trace, "),
            "")

    def _update_interval(self, interval: float) -> None:
        if self._retry_interval is None:
            if interval >= 0:
                self._retry_interval = interval
        elif self._retry_interval > interval:
            self._retry_interval = interval

    def _get_trace_info(self, trace_id: str) -> Optional[TraceInfo]:
        status = self.state.webhook_status
        if status is None:
            return None
        return next((info for info in status.trace_states if info.trace_id == trace_id), None)

    def _record_time(self, trace_id: str, message: str) -> None:
        now = datetime.now(timezone.utc)
        record = TraceInfo(trace_id=trace_id, begin_time=now, last_time=now, message=message)
        old = self._get_trace_info(trace_id)
        if old is not None and old.begin_time is not None:
            record.begin_time = old.begin_time
        self._trace_info[trace_id] = record

    def _record_time_old(self, trace_id: str) -> None:
        old = self._get_trace_info(trace_id)
        if old is not None:
            self._trace_info[trace_id] = TraceInfo(
                trace_id=trace_id, begin_time=old.begin_time,
                last_time=old.last_time, message=old.message)

    def _timed_out(self, trace_id: str) -> bool:
        info = self._get_trace_info(trace_id)
        if info is None or info.begin_time is None:
            return False
        limit = DEFAULT_TRACE_TIMEOUT
        if self.webhook.client_config.trace_timeout_seconds is not None:
            limit = float(self.webhook.client_config.trace_timeout_seconds)
        elapsed = (datetime.now(timezone.utc) - info.begin_time).total_seconds()
        return elapsed > limit

    def _out_interval(self, trace_id: str) -> tuple[bool, float, float]:
        info = self._get_trace_info(trace_id)
        if info is None or info.last_time is None:
            return True, 0.0, 0.0
        interval = DEFAULT_INTERVAL
        if self.webhook.client_config.interval_seconds is not None:
            interval = float(self.webhook.client_config.interval_seconds)
        now = datetime.now(timezone.utc)
        cost = (now - info.begin_time).total_seconds() if info.begin_time else 0.0
        since_last = (now - info.last_time).total_seconds()
        return since_last > interval, interval - since_last, cost

    def _parse_parameter(self, parameter: Parameter, pod: Pod) -> str:
        if parameter.value:
            value = parameter.value
        elif parameter.field_path is None:
            raise ValueError(f"unexpected empty parameter {parameter.key}")
        else:
            value = extract_value_from_pod(pod, parameter.key, parameter.field_path)
        return "" if value == "null" else value

    def _build_request(self, pods, old_trace: Optional[str]) -> WebhookRequest:
        request = WebhookRequest(rule_name=self.rule_name, stage=self.stage)
        if old_trace is not None:
            request.trace_id = old_trace
            request.retry_by_trace = True
            return request
        resources = []
        for name in sorted(pods):
            values = {}
            for parameter in self.webhook.parameters:
                try:
                    values[parameter.key] = self._parse_parameter(parameter, self._targets[name])
                except ValueError as exc:
                    raise ValueError(f"{self.key} failed to parse parameter, {exc}") from exc
            resources.append(ResourceParameter(name=name, parameters=values))
        request.trace_id = new_trace()
        request.resources = resources
        return request

    def _do_http(self, request: WebhookRequest) -> WebhookResponse:
        config = self.webhook.client_config
        data = post_json(config.url, request.to_dict(), config.ca_bundle, HTTP_TIMEOUT)
        return WebhookResponse.from_dict(data)


def get_webhooks(transition_rule: PodTransitionRule, *args: str) -> list[Webhook]:
    """Webhooks for the rule's webhook rules, limited to the given names if any."""
    names = set(args)
    webhooks = []
    for rule in transition_rule.rules:
        if rule.webhook is None:
            continue
        if names and rule.name not in names:
            continue
        state = next(
            (copy.deepcopy(s) for s in transition_rule.status.rule_states if s.name == rule.name),
            RuleState(name=rule.name),
        )
        if state.webhook_status is None:
            state.webhook_status = WebhookStatus()
        webhooks.append(Webhook(
            key=f"{transition_rule.namespace}/{transition_rule.name}/{rule.name}",
            rule_name=rule.name,
            stage=rule.stage,
            webhook=rule.webhook,
            state=state,
        ))
    return webhooks