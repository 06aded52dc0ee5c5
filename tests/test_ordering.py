import asyncio
from decimal import Decimal

import pytest

from services.catalog import Catalog
from services.errors import FulfillmentUnavailable, InsufficientBalance, NotWhitelisted, ParseFailure
from services.fulfillment import RemoteStatus
from services.ledger import Ledger
from services.ordering import Dispatcher, order_status_lines, place_order
from services.store import ShopStore


class FakeClient:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.calls = []
        self._next = 100

    def place_order(self, external_id, link, quantity):
        self.calls.append((external_id, link, quantity))
        if external_id in self.fail_ids:
            raise FulfillmentUnavailable("Fulfillment API error: Incorrect service")
        self._next += 1
        return str(self._next)

    def get_status(self, order_id):
        if order_id == "404":
            raise FulfillmentUnavailable("Fulfillment API error: Incorrect order ID")
        return RemoteStatus(order_id=order_id, status="Completed", charge=Decimal("0.5"))


def _run(coro):
    return asyncio.run(coro)


def _order_rows(store, party_id=None):
    query = "SELECT * FROM orders"
    params = ()
    if party_id is not None:
        query += " WHERE party_id = ?"
        params = (party_id,)
    with store.read() as con:
        return [dict(row) for row in con.execute(query + " ORDER BY id ASC", params)]


@pytest.fixture
def store(tmp_path):
    shop_store = ShopStore(tmp_path / "orders.db")
    shop_store.init_db()
    return shop_store


@pytest.fixture
def catalog(store):
    cat = Catalog(store)
    cat.load_presets(
        [
            {"name": "view", "service_id": "258", "price": 50},
            {"name": "like", "service_id": "182", "price": 1000},
        ]
    )
    return cat


def _place(body, party_id, *, catalog, ledger, dispatcher, is_operator=False):
    return _run(
        place_order(body, party_id, is_operator=is_operator, catalog=catalog, ledger=ledger, dispatcher=dispatcher)
    )


def test_scenario_a_end_to_end(store, catalog):
    ledger = Ledger(store)
    _run(ledger.credit(7, Decimal(5000), actor_id=1, reason="manual_adjustment"))
    client = FakeClient()
    dispatcher = Dispatcher(store, client, ledger)

    result = _place("http://x.test view 10000 like 500", 7, catalog=catalog, ledger=ledger, dispatcher=dispatcher)

    assert client.calls == [("258", "http://x.test", 10000), ("182", "http://x.test", 500)]
    assert result.charge.total == Decimal(1000)
    assert ledger.balance(7) == Decimal(4000)
    assert all(o.ok for o in result.outcomes)

    receipt = result.receipt("MMK", "Thanks!")
    assert "view x10000 | Order ID: 101 | Cost: 500 MMK" in receipt
    assert "like x500 | Order ID: 102 | Cost: 500 MMK" in receipt
    assert "Link used: http://x.test" in receipt
    assert "Total cost: 1000 MMK" in receipt
    assert receipt.endswith("Thanks!")

    records = _order_rows(store, 7)
    assert len(records) == 2
    assert {r["remote_order_id"] for r in records} == {"101", "102"}


def test_insufficient_balance_places_nothing(store, catalog):
    ledger = Ledger(store)
    _run(ledger.credit(7, Decimal(999), actor_id=1, reason="manual_adjustment"))
    client = FakeClient()
    dispatcher = Dispatcher(store, client, ledger)

    with pytest.raises(InsufficientBalance):
        _place("http://x.test view 10000 like 500", 7, catalog=catalog, ledger=ledger, dispatcher=dispatcher)

    assert client.calls == []
    assert _order_rows(store) == []
    assert ledger.balance(7) == Decimal(999)


def test_parse_failure_places_nothing(store, catalog):
    ledger = Ledger(store)
    client = FakeClient()
    with pytest.raises(ParseFailure):
        _place("http://x.test", 7, catalog=catalog, ledger=ledger, dispatcher=Dispatcher(store, client, ledger))
    assert client.calls == []


def test_failed_line_does_not_abort_batch_and_keeps_debit(store, catalog):
    ledger = Ledger(store)
    _run(ledger.credit(7, Decimal(1000), actor_id=1, reason="manual_adjustment"))
    client = FakeClient(fail_ids={"258"})
    dispatcher = Dispatcher(store, client, ledger)

    result = _place("http://x.test view 10000 like 500", 7, catalog=catalog, ledger=ledger, dispatcher=dispatcher)

    assert len(client.calls) == 2
    failed, placed = result.outcomes
    assert not failed.ok and "Incorrect service" in failed.error
    assert placed.ok
    assert failed.refunded is False
    assert ledger.balance(7) == Decimal(0)
    assert len(_order_rows(store, 7)) == 2
    assert "❌ Failed" in result.receipt("MMK")


def test_failed_line_is_refunded_when_enabled(store, catalog):
    ledger = Ledger(store)
    _run(ledger.credit(7, Decimal(1000), actor_id=1, reason="manual_adjustment"))
    dispatcher = Dispatcher(store, FakeClient(fail_ids={"258"}), ledger, refund_failed_items=True)

    result = _place("http://x.test view 10000 like 500", 7, catalog=catalog, ledger=ledger, dispatcher=dispatcher)

    assert result.outcomes[0].refunded is True
    assert ledger.balance(7) == Decimal(500)
    assert "(refunded)" in result.receipt("MMK")


def test_unset_service_id_is_charged_but_not_dispatched(store, catalog):
    catalog.upsert_price("comment", 2000)
    catalog.set_whitelisted("comment", True)
    ledger = Ledger(store)
    _run(ledger.credit(7, Decimal(100), actor_id=1, reason="manual_adjustment"))
    client = FakeClient()

    result = _place("link comment 10", 7, catalog=catalog, ledger=ledger, dispatcher=Dispatcher(store, client, ledger))

    assert client.calls == []
    assert result.outcomes[0].error == "service id not set"
    assert ledger.balance(7) == Decimal(80)
    assert _order_rows(store, 7)[0]["error"] == "service id not set"


def test_unset_price_is_free_but_dispatched(store, catalog):
    catalog.upsert_identifier("share", "300")
    catalog.set_whitelisted("share", True)
    ledger = Ledger(store)
    client = FakeClient()

    result = _place("link share 5000", 7, catalog=catalog, ledger=ledger, dispatcher=Dispatcher(store, client, ledger))

    assert result.charge.total == Decimal(0)
    assert client.calls == [("300", "link", 5000)]
    assert ledger.balance(7) == Decimal(0)


def test_unlisted_service_rejects_whole_order(store, catalog):
    catalog.set_whitelisted("like", False)
    ledger = Ledger(store)
    _run(ledger.credit(7, Decimal(5000), actor_id=1, reason="manual_adjustment"))
    client = FakeClient()

    with pytest.raises(NotWhitelisted) as exc:
        _place("link view 1000 like 10", 7, catalog=catalog, ledger=ledger, dispatcher=Dispatcher(store, client, ledger))

    assert exc.value.names == ["like"]
    assert client.calls == []
    assert ledger.balance(7) == Decimal(5000)


def test_operator_orders_unlisted_services_for_free(store, catalog):
    catalog.set_whitelisted("like", False)
    ledger = Ledger(store)
    client = FakeClient()

    result = _place(
        "link like 10",
        1,
        catalog=catalog,
        ledger=ledger,
        dispatcher=Dispatcher(store, client, ledger),
        is_operator=True,
    )

    assert result.charge.charged is False
    assert client.calls == [("182", "link", 10)]
    assert ledger.account(1) is None


def test_order_status_lines_convert_and_report_failures():
    lines = _run(order_status_lines(FakeClient(), ["11", " ", "404"], rate=Decimal(2100), currency="MMK"))
    assert lines == ["ID 11: Completed, 1050 MMK", "ID 404: Error fetching status"]
