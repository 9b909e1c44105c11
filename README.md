# transitionrule

Gate pods through lifecycle stages with declarative transition rules.

A *pod transition rule* (`transitionrule.models.PodTransitionRule`)
selects pods by label and holds a list of rules (`TransitionRule`).
When a pod is in a registered stage, the rules for that stage run
against it in a fixed order: availability policies first, then label
checks, then webhooks. Each rule only sees the pods the earlier rules
let through. A pod's detail reports that it passed once no rule has
rejected it.

## Kinds of rule

- **Availability policy** (`AvailableRule`): limits how many pods may
  be unavailable at the same time through `max_unavailable_value`, and
  keeps a minimum available through `min_available_value`. Each value
  is an integer or a percentage string such as `"50%"`.
- **Label check** (`LabelCheckRule`): the pod's labels must match the
  `requires` label selector.
- **Webhook** (`TransitionRuleWebhook`): an HTTP endpoint is sent a
  JSON POST and approves the pods. It can answer at once, or ask to be
  polled again by trace id. The poll interval (`interval_seconds`,
  default 5) and the trace timeout (`trace_timeout_seconds`, default
  60) are set on its `ClientConfig`.
- **Manual** (`transitionrule.rules.ManualRuler`): approves or rejects
  every pod it is given.

A rule without an explicit `stage` runs in the stage set for its kind
by `transitionrule.register.init_default_rule_stage`. If no stage is
set for its kind, it runs in the first registered stage.

## Installation

```
pip install transitionrule
```

The package has no dependencies outside the standard library. To run
the test suite:

```
pip install "transitionrule[test]"
pytest
```

## Usage

Register stages and conditions on the shared manager. Each predicate
takes a pod and returns a bool. The manager is backed by one
process-wide registry. Register each stage once: a stage that has more
than one check never counts a pod as in that stage.

```python
from transitionrule.manager import rule_manager, add_unavailable_func

manager = rule_manager()
manager.register_stage(
    "PreTrafficOff",
    lambda pod: pod.labels.get("stage") == "PreTrafficOff",
)
manager.register_condition(
    "DeletePod",
    lambda pod: pod.labels.get("condition") == "DeletePod",
)

# Report whether a pod counts as unavailable, and optionally in how many
# seconds it may become available.
add_unavailable_func(lambda pod: ("unavailable" in pod.labels, None))
```

`transitionrule.register.default_init()` installs the standard check
instead: a pod is unavailable when it is not Ready or has finished.

Put pods and rules into a client. Run a reconciler over a rule, then
ask the manager for the state of a pod.

```python
from transitionrule.controller import InMemoryClient
from transitionrule.models import (
    AvailableRule,
    LabelSelector,
    Pod,
    PodTransitionRule,
    TransitionRule,
)

client = InMemoryClient()
client.add_pod(Pod(
    name="pod-1",
    namespace="default",
    labels={"app": "web", "stage": "PreTrafficOff"},
))
client.add_rule(
    PodTransitionRule(
        name="web-rules",
        namespace="default",
        selector=LabelSelector(match_labels={"app": "web"}),
        rules=[
            TransitionRule(
                name="serviceAvailable",
                stage="PreTrafficOff",
                available_policy=AvailableRule(max_unavailable_value="50%"),
            )
        ],
    )
)

reconciler = manager.new_reconciler(client)
result = reconciler.reconcile("default", "web-rules")

state = manager.get_state(client, client.get_pod("default", "pod-1"))
print(state.in_stage_and_passed(), state.message)
```

`reconcile` does the following:

- adds a clean-up finalizer to the rule;
- records the selected pods as the rule's targets;
- strips the rule's annotations from pods it no longer selects;
- writes the new status to the rule;
- stores a small JSON detail (`stage`, `passed`) on each target pod,
  under the key from `transitionrule.annotations.detail_annotation_key`.

It returns a `ReconcileResult`. Its `requeue` flag and `requeue_after`
delay, in seconds, say whether to run the rule again and when.

When a rule that carries the finalizer is deleted with
`InMemoryClient.delete_rule`, it is only marked as deleted. The next
`reconcile` then removes its annotations from the pods and drops the
finalizer, and the rule goes away.

`InMemoryClient` stores copies of objects and checks resource versions.
An update made with a stale copy raises `ConflictError`, and
`transitionrule.controller.retry_on_conflict` retries such updates.

## Skipping rules

- **Per pod**: put a JSON object `{"skipRules": ["<rule name>", ...]}`
  in the pod's annotation
  `podtransitionrule.kusionstack.io/skip-rule-conditions`. Those rules
  then pass the pod over.
- **By kind**: set `SKIP_POD_TRANSITION_RULES` to a comma-separated
  list of rule kinds, for example `availablePolicy,labelCheck,webhook`.
  This turns those kinds off. The variable is read once, when
  `transitionrule.processor` is imported.

## Events

`transitionrule.events.PodEventHandler` and
`transitionrule.events.RuleEventHandler` turn pod and rule changes into
`(namespace, name)` reconcile requests. They accept any queue that has
an `add` method, a `set` for example.

- A pod event enqueues every rule in the pod's namespace that selects
  the pod or already lists it as a target.
- A rule update is enqueued only when its selector or rules changed, or
  when it is being deleted.

## What the package does not do

- It does not talk to a cluster API server and does not watch for
  changes. Objects live in `InMemoryClient`, and you call the event
  handlers and `Reconciler.reconcile` yourself.
- It has no work queue, no worker loop and no command-line program.