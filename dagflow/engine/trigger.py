"""
Trigger Filter.

Decides whether an inbound event should start a workflow. Matching is
exact equality on both the source and the status labels.
"""

from typing import Iterable, Iterator, Tuple

from dagflow.engine.models import Event, Trigger, Workflow


def matches(trigger: Trigger, event: Event) -> bool:
    """Return True if the event fires the trigger."""
    if not trigger.enabled:
        return False
    return event.source == trigger.source and event.status == trigger.status


def find_matching_triggers(
    workflows: Iterable[Workflow],
    event: Event,
) -> Iterator[Tuple[Workflow, Trigger]]:
    """
    Yield (workflow, trigger) pairs fired by the event.

    A workflow with several matching triggers is yielded once, with the
    first trigger that matched.
    """
    for workflow in workflows:
        for trigger in workflow.triggers:
            if matches(trigger, event):
                yield workflow, trigger
                break
