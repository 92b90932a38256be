"""Threshold evaluation. Pure functions, no I/O."""

from dataclasses import replace

from inventory.models import InventoryFact, TrackedItem


def is_stale(item: TrackedItem, fact: InventoryFact) -> bool:
    """
    True when an absolute fact is older than the newest one already applied.

    Facts without an observed_at (or items that never saw one) are never
    stale: last applied wins, and the next poll sweep corrects drift.
    """
    if fact.observed_at is None or item.last_observed_at is None:
        return False
    return fact.observed_at < item.last_observed_at


def evaluate(old: TrackedItem, fact: InventoryFact) -> tuple[TrackedItem, bool]:
    """
    Apply an absolute fact to a tracked item.

    Returns (new_item, crossed_into_below). The crossing flag is set only on
    the transition from at/above threshold to below it, so an item that
    stays below does not re-trigger instant alerts on every fact.
    """
    observed_at = old.last_observed_at
    if fact.observed_at is not None and (observed_at is None or fact.observed_at > observed_at):
        observed_at = fact.observed_at

    new = replace(
        old,
        current_inventory=fact.quantity,
        last_checked_at=fact.received_at,
        last_observed_at=observed_at,
    )
    crossed = not old.is_below_threshold() and new.is_below_threshold()
    return new, crossed
