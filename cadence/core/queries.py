"""Named, composable predicates over order items.

Each factory returns a plain ``OrderItem -> bool`` function. Predicates
combine through ``all_of`` (AND) and ``any_of`` (OR) and never touch the
items they inspect, so the order they are combined in does not matter.
"""

from collections.abc import Callable, Iterable
from datetime import datetime

from .models import OrderItem, OrderItemCollection, OrderItemKind

Predicate = Callable[[OrderItem], bool]


def processed(flag: bool = True) -> Predicate:
    """Items folded into an order (``flag=False`` selects the opposite)."""

    def predicate(item: OrderItem) -> bool:
        return item.is_processed(flag)

    return predicate


def unprocessed(flag: bool = True) -> Predicate:
    """Inverse of ``processed``."""
    return processed(not flag)


def due(now: datetime) -> Predicate:
    """Items whose ``process_at`` has been reached, processed or not."""

    def predicate(item: OrderItem) -> bool:
        return item.process_at <= now

    return predicate


def should_process(now: datetime) -> Predicate:
    """Unprocessed items that are due. What a billing run picks up."""
    return all_of(unprocessed(), due(now))


def for_owner(owner_id: str) -> Predicate:
    def predicate(item: OrderItem) -> bool:
        return item.owner_id == owner_id

    return predicate


def for_subscription(subscription_id: str) -> Predicate:
    def predicate(item: OrderItem) -> bool:
        return item.subscription_id == subscription_id

    return predicate


def of_kind(*kinds: OrderItemKind) -> Predicate:
    wanted = frozenset(kinds)

    def predicate(item: OrderItem) -> bool:
        return item.kind in wanted

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    def predicate(item: OrderItem) -> bool:
        return all(p(item) for p in predicates)

    return predicate


def any_of(*predicates: Predicate) -> Predicate:
    def predicate(item: OrderItem) -> bool:
        return any(p(item) for p in predicates)

    return predicate


def select(items: Iterable[OrderItem], *predicates: Predicate) -> OrderItemCollection:
    """Filter items by every predicate, preserving their order."""
    matches = all_of(*predicates)
    return OrderItemCollection(item for item in items if matches(item))
