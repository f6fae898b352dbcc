"""Unit tests for order item predicates."""

from datetime import timedelta
from decimal import Decimal

import pytest

from cadence.core import queries
from cadence.core.models import OrderItem, OrderItemKind
from cadence.tests.fakes import DEFAULT_NOW

NOW = DEFAULT_NOW


def _item(item_id: str, days: int, order_id: str | None = None, **kwargs) -> OrderItem:
    defaults = dict(
        owner_id="owner-1",
        currency="EUR",
        unit_price=1000,
        quantity=1,
        tax_percentage=Decimal("0"),
    )
    defaults.update(kwargs)
    return OrderItem(
        id=item_id,
        process_at=NOW + timedelta(days=days),
        order_id=order_id,
        **defaults,
    )


@pytest.fixture
def items() -> list[OrderItem]:
    return [
        _item("past-open", -2),
        _item("past-done", -5, order_id="order-1"),
        _item("future-open", 3),
        _item("now-open", 0, owner_id="owner-2"),
        _item("discount", -1, kind=OrderItemKind.DISCOUNT, unit_price=-100),
    ]


class TestQueries:
    def test_processed_and_unprocessed_partition_items(self, items):
        processed = queries.select(items, queries.processed())
        unprocessed = queries.select(items, queries.unprocessed())

        assert len(processed) + len(unprocessed) == len(items)
        assert not {i.id for i in processed} & {i.id for i in unprocessed}

    def test_flag_inverts_predicate(self, items):
        assert queries.select(items, queries.processed(False)) == queries.select(
            items, queries.unprocessed()
        )
        assert queries.select(items, queries.unprocessed(False)) == queries.select(
            items, queries.processed()
        )

    def test_should_process_selects_due_unprocessed_items(self, items):
        selected = queries.select(items, queries.should_process(NOW))

        assert [i.id for i in selected] == ["past-open", "now-open", "discount"]

    def test_due_ignores_processed_state(self, items):
        selected = queries.select(items, queries.due(NOW))

        assert "past-done" in {i.id for i in selected}
        assert "future-open" not in {i.id for i in selected}

    def test_predicates_compose_in_any_order(self, items):
        a = queries.select(items, queries.for_owner("owner-1"), queries.unprocessed())
        b = queries.select(items, queries.unprocessed(), queries.for_owner("owner-1"))

        assert a == b
        assert [i.id for i in a] == ["past-open", "future-open", "discount"]

    def test_any_of_and_of_kind(self, items):
        selected = queries.select(
            items,
            queries.any_of(
                queries.of_kind(OrderItemKind.DISCOUNT),
                queries.for_owner("owner-2"),
            ),
        )

        assert {i.id for i in selected} == {"discount", "now-open"}

    def test_selection_does_not_mutate_items(self, items):
        before = [(i.id, i.order_id) for i in items]
        queries.select(items, queries.should_process(NOW))

        assert [(i.id, i.order_id) for i in items] == before

    def test_collection_aggregates(self, items):
        selected = queries.select(items, queries.should_process(NOW))

        assert selected.total() == 1900
        assert selected.owner_ids() == {"owner-1", "owner-2"}
        assert selected.where(queries.for_owner("owner-2")).subtotal() == 1000
