import pytest
import requests

from loofinder.http import HttpClient, SearchMetrics


class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.content = b"" if payload is None else b"{}"

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, data=None, params=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "data": data, "params": params, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(responses, retry_max=3):
    client = HttpClient(headers={"apikey": "k"}, timeout=1, retry_max=retry_max, backoff_base=0.0, backoff_max=0.0)
    client.session = FakeSession(responses)
    return client


def test_retries_on_server_errors_then_succeeds():
    client = make_client([FakeResponse(503, {}), FakeResponse(429, {}), FakeResponse(200, {"ok": True})])

    assert client.post_json("https://example.test/x", {"a": 1}) == {"ok": True}
    assert len(client.session.calls) == 3
    call = client.session.calls[0]
    assert call["method"] == "POST"
    assert call["data"] == '{"a": 1}'
    assert call["headers"]["apikey"] == "k"
    assert call["headers"]["Content-Type"] == "application/json"


def test_gives_up_after_retry_max():
    client = make_client([FakeResponse(500, {}), FakeResponse(500, {})], retry_max=2)

    with pytest.raises(requests.HTTPError):
        client.get_json("https://example.test/x")


def test_client_errors_are_not_retried():
    client = make_client([FakeResponse(404, {})])

    with pytest.raises(requests.HTTPError):
        client.get_json("https://example.test/x", params={"near": "1,2"})
    assert client.session.calls[0]["params"] == {"near": "1,2"}


def test_network_errors_retry_then_raise():
    client = make_client([requests.ConnectionError("down"), requests.ConnectionError("down")], retry_max=2)

    with pytest.raises(requests.ConnectionError):
        client.get_json("https://example.test/x")
    assert len(client.session.calls) == 2


def test_empty_body_returns_none():
    client = make_client([FakeResponse(204)])

    assert client.post_json("https://example.test/x", {}, extra_headers={"Prefer": "return=minimal"}) is None
    assert client.session.calls[0]["headers"]["Prefer"] == "return=minimal"


def test_metrics_counters():
    metrics = SearchMetrics()
    metrics.inc("provider_queries")
    metrics.inc("provider_queries", 2)

    assert metrics.as_dict()["provider_queries"] == 3
    with pytest.raises(ValueError):
        metrics.inc("_lock")
    with pytest.raises(ValueError):
        metrics.inc("nope")
