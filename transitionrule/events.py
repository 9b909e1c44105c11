"""Event handlers that turn pod and transition rule changes into reconcile requests.

A queue is any object with an ``add`` method, such as a ``set``; each request
added to it is a ``(namespace, name)`` tuple naming a PodTransitionRule.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from transitionrule.controller import InMemoryClient
from transitionrule.models import Pod, PodTransitionRule

logger = logging.getLogger(__name__)


class RequestQueue(Protocol):
    def add(self, item: tuple[str, str]) -> None: ...


def involved_rules(client: InMemoryClient, pod: Pod) -> list[PodTransitionRule]:
    """Rules of the pod's namespace that select it or already list it as a target.

    Raises ValueError when a rule's selector cannot be evaluated.
    """
    involved = []
    for rule in client.list_rules(pod.namespace):
        if rule.selector is not None and rule.selector.matches(pod.labels):
            involved.append(rule)
            continue
        if pod.name in rule.status.targets:
            involved.append(rule)
    return involved


class PodEventHandler:
    """Enqueues the transition rules a changed pod is involved in."""

    def __init__(self, client: InMemoryClient) -> None:
        self.client = client

    def _enqueue_involved(self, pod: Pod, queue: RequestQueue) -> None:
        try:
            rules = involved_rules(self.client, pod)
        except ValueError as exc:
            logger.error("failed to get involved podtransitionrules for pod %s/%s: %s",
                         pod.namespace, pod.name, exc)
            return
        for rule in rules:
            queue.add((rule.namespace, rule.name))

    def create(self, pod: Pod, queue: RequestQueue) -> None:
        self._enqueue_involved(pod, queue)

    def update(self, old: Pod, new: Pod, queue: RequestQueue) -> None:
        self._enqueue_involved(new, queue)

    def delete(self, pod: Pod, queue: RequestQueue) -> None:
        self._enqueue_involved(pod, queue)

    def generic(self, pod: Pod, queue: RequestQueue) -> None:
        """Generic events carry nothing to act on."""


class RuleEventHandler:
    """Enqueues transition rules whose own definition changed."""

    def create(self, transition_rule: PodTransitionRule, queue: RequestQueue) -> None:
        queue.add((transition_rule.namespace, transition_rule.name))

    def update(self, old: PodTransitionRule, new: PodTransitionRule,
               queue: RequestQueue) -> None:
        same_spec = old.selector == new.selector and old.rules == new.rules
        if same_spec and new.deletion_timestamp is None:
            return
        queue.add((new.namespace, new.name))

    def delete(self, transition_rule: Optional[PodTransitionRule],
               queue: RequestQueue) -> None:
        if transition_rule is None:
            return
        queue.add((transition_rule.namespace, transition_rule.name))

    def generic(self, transition_rule: PodTransitionRule, queue: RequestQueue) -> None:
        """Generic events carry nothing to act on."""