from decimal import Decimal

import pytest
import requests

import services.retry as retry
from services.errors import FulfillmentUnavailable
from services.fulfillment import FulfillmentClient


class FakeResponse:
    def __init__(self, payload=None, *, status_code=200, bad_json=False):
        self.payload = payload
        self.status_code = status_code
        self.bad_json = bad_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.bad_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.headers = {}
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(retry.time, "sleep", delays.append)
    return delays


def _client(*responses):
    session = FakeSession(*responses)
    return FulfillmentClient(api_key="k-123", base_url="https://panel.test/api/v2", timeout_seconds=5, session=session), session


def test_place_order_posts_key_and_action():
    client, session = _client(FakeResponse({"order": 23501}))
    assert client.place_order("258", "http://x.test", 10000) == "23501"
    assert session.posts == [
        {
            "url": "https://panel.test/api/v2",
            "json": {"key": "k-123", "action": "add", "service": "258", "link": "http://x.test", "quantity": 10000},
            "timeout": 5.0,
        }
    ]
    assert session.headers["Content-Type"] == "application/json"


def test_error_body_is_unavailable():
    client, _ = _client(FakeResponse({"error": "Incorrect service ID"}))
    with pytest.raises(FulfillmentUnavailable) as exc:
        client.place_order("999", "link", 10)
    assert "Incorrect service ID" in str(exc.value)


def test_non_json_is_unavailable():
    client, _ = _client(FakeResponse(bad_json=True))
    with pytest.raises(FulfillmentUnavailable):
        client.place_order("258", "link", 10)


def test_non_object_json_is_unavailable():
    client, _ = _client(FakeResponse(["unexpected"]))
    with pytest.raises(FulfillmentUnavailable):
        client.get_account_balance()


def test_http_error_is_unavailable():
    client, _ = _client(FakeResponse({}, status_code=502))
    with pytest.raises(FulfillmentUnavailable):
        client.place_order("258", "link", 10)


def test_missing_order_id_is_unavailable():
    client, _ = _client(FakeResponse({"status": "ok"}))
    with pytest.raises(FulfillmentUnavailable):
        client.place_order("258", "link", 10)


def test_place_order_is_never_retried(no_sleep):
    client, session = _client(requests.ConnectionError("reset"), FakeResponse({"order": 1}))
    with pytest.raises(FulfillmentUnavailable):
        client.place_order("258", "link", 10)
    assert len(session.posts) == 1
    assert no_sleep == []


def test_status_lookup_retries_transient_errors(no_sleep):
    client, session = _client(
        requests.Timeout("slow"),
        FakeResponse({"status": "In progress", "charge": "0.25", "currency": "USD"}),
    )
    status = client.get_status("77")
    assert status.status == "In progress"
    assert status.charge == Decimal("0.25")
    assert len(session.posts) == 2
    assert session.posts[0]["json"] == {"key": "k-123", "action": "status", "order": "77"}
    assert len(no_sleep) == 1


def test_status_lookup_gives_up_after_retries(no_sleep):
    client, session = _client(*[requests.ConnectionError("down") for _ in range(3)])
    with pytest.raises(FulfillmentUnavailable):
        client.get_status("77")
    assert len(session.posts) == 3
    assert len(no_sleep) == 2


def test_account_balance():
    client, _ = _client(FakeResponse({"balance": "12.5", "currency": "USD"}))
    balance = client.get_account_balance()
    assert balance.balance == Decimal("12.5")
    assert balance.currency == "USD"


def test_malformed_charge_is_unavailable():
    client, _ = _client(FakeResponse({"status": "Completed", "charge": "n/a"}))
    with pytest.raises(FulfillmentUnavailable):
        client.get_status("1")
