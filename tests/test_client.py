import io
import json
from datetime import date
from http.client import parse_headers
from urllib.parse import urlparse
from urllib.request import BaseHandler, HTTPCookieProcessor, build_opener
from urllib.response import addinfourl

import pytest

from client import ApiError, FinanceClient, SessionExpired


class ScriptedClient(FinanceClient):
    """Replays canned (status, body) replies and records each call."""

    def __init__(self, replies):
        super().__init__("http://api.test/api")
        self.replies = list(replies)
        self.calls = []

    def _send(self, method, endpoint, payload=None):
        self.calls.append((method, endpoint, payload))
        status, body = self.replies.pop(0)
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode("utf-8")
        return status, body


def test_successful_request_is_decoded():
    client = ScriptedClient([(200, [{"id": 1, "name": "Food"}])])
    assert client.categories() == [{"id": 1, "name": "Food"}]
    assert client.calls == [("GET", "/categories", None)]


def test_401_refreshes_once_then_retries():
    client = ScriptedClient(
        [
            (401, {"statusCode": 401, "message": "Invalid or expired access token"}),
            (200, {"tokens": {}}),
            (200, {"user": {"id": 3, "email": "ana@example.com"}}),
        ]
    )
    assert client.me() == {"id": 3, "email": "ana@example.com"}
    assert [call[1] for call in client.calls] == ["/user/me", "/auth/refresh", "/user/me"]


def test_failed_refresh_raises_session_expired():
    client = ScriptedClient(
        [
            (401, {"message": "Invalid or expired access token"}),
            (401, {"message": "Refresh token not found or expired"}),
        ]
    )
    with pytest.raises(SessionExpired) as excinfo:
        client.categories()
    assert excinfo.value.status == 401
    assert excinfo.value.message == "Session expired. Please log in again."
    assert len(client.calls) == 2


def test_retry_happens_only_once():
    client = ScriptedClient(
        [
            (401, {"message": "Invalid or expired access token"}),
            (200, {}),
            (401, {"message": "Invalid or expired access token"}),
        ]
    )
    with pytest.raises(ApiError) as excinfo:
        client.budgets()
    assert excinfo.value.status == 401
    assert len(client.calls) == 3


def test_error_message_joins_validation_messages():
    client = ScriptedClient(
        [(422, {"statusCode": 422, "message": ["body.amount: bad", "body.type: bad"]})]
    )
    with pytest.raises(ApiError, match="body.amount: bad, body.type: bad"):
        client.create_transaction(1, "EXPENSE")


def test_error_without_message_falls_back_to_status():
    client = ScriptedClient([(502, b"")])
    with pytest.raises(ApiError, match="Request failed with status 502"):
        client.summary()


def test_empty_body_decodes_to_empty_dict():
    client = ScriptedClient([(204, b"")])
    assert client.request("DELETE", "/budgets/1") == {}


def test_logout_sends_refresh_token_and_forgets_tokens():
    client = ScriptedClient(
        [
            (
                200,
                {"user": {"id": 1}, "tokens": {"accessToken": "a1", "refreshToken": "r1"}},
            ),
            (200, {"message": "Logged out successfully"}),
        ]
    )
    client.login("ana@example.com", "secret1")
    assert (client.access_token, client.refresh_token) == ("a1", "r1")

    client.logout()
    assert client.calls[-1] == ("POST", "/auth/logout", {"refreshToken": "r1"})
    assert client.access_token is None
    assert client.refresh_token is None


def test_transaction_query_uses_camel_case_and_skips_none():
    client = ScriptedClient([(200, {"data": [], "total": 0, "limit": 5, "offset": 0})])
    client.transactions(category_id=4, start_date=date(2026, 1, 1), limit=5)
    method, endpoint, _ = client.calls[0]
    assert method == "GET"
    assert endpoint == "/transactions?categoryId=4&startDate=2026-01-01&limit=5"


def test_dashboard_fetches_month_views():
    client = ScriptedClient(
        [
            (200, {"totalIncome": 10, "totalExpense": 4, "balance": 6}),
            (200, {"data": [{"id": 1}], "total": 1, "limit": 10, "offset": 0}),
            (200, []),
            (200, [{"name": "Week 1", "income": 10, "expense": 4}]),
        ]
    )
    view = client.dashboard(2026, 2)
    assert view["summary"]["balance"] == 6
    assert view["recent"] == [{"id": 1}]
    assert view["budgets"] == []
    assert view["chart"][0]["name"] == "Week 1"
    assert [call[1] for call in client.calls] == [
        "/transactions/summary?startDate=2026-02-01&endDate=2026-02-28",
        "/transactions?startDate=2026-02-01&endDate=2026-02-28&limit=10",
        "/budgets?month=2&year=2026",
        "/transactions/chart-data?startDate=2026-02-01&endDate=2026-02-28",
    ]


class FakeServer(BaseHandler):
    """Answers http requests in-process and sets cookies the way the API does."""

    handler_order = 50  # ahead of urllib's proxy and HTTP handlers

    def __init__(self):
        self.issued = 0
        self.access_tokens = set()
        self.refresh_tokens = set()
        self.seen = []

    def _reply(self, req, status, payload, cookies=()):
        body = json.dumps(payload).encode("utf-8")
        lines = ["Content-Type: application/json", f"Content-Length: {len(body)}"]
        lines += [f"Set-Cookie: {cookie}" for cookie in cookies]
        raw = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
        headers = parse_headers(io.BytesIO(raw))
        resp = addinfourl(io.BytesIO(body), headers, req.full_url, status)
        resp.msg = "OK" if status < 400 else "Unauthorized"
        return resp

    def _issue(self, req, payload):
        self.issued += 1
        access, refresh = f"access-{self.issued}", f"refresh-{self.issued}"
        self.access_tokens = {access}
        self.refresh_tokens = {refresh}
        payload["tokens"] = {"accessToken": access, "refreshToken": refresh}
        cookies = [
            f"accessToken={access}; HttpOnly; Path=/; SameSite=none; Secure",
            f"refreshToken={refresh}; HttpOnly; Path=/; SameSite=none; Secure",
        ]
        return self._reply(req, 200, payload, cookies)

    def http_open(self, req):
        path = urlparse(req.full_url).path
        body = json.loads(req.data) if req.data else {}
        self.seen.append((path, req.get_header("Authorization"), req.get_header("Cookie")))

        if path == "/api/auth/login":
            return self._issue(req, {"user": {"id": 1, "email": body["email"]}})
        if path == "/api/auth/refresh":
            if body.get("refreshToken") in self.refresh_tokens:
                return self._issue(req, {})
            return self._reply(req, 401, {"message": "Invalid refresh token"})

        bearer = (req.get_header("Authorization") or "")[len("Bearer ") :]
        if bearer not in self.access_tokens:
            return self._reply(req, 401, {"message": "Access token not provided"})
        return self._reply(req, 200, {"user": {"id": 1, "email": "ana@example.com"}})


def make_live_client():
    client = FinanceClient("http://api.test/api")
    server = FakeServer()
    client.opener = build_opener(HTTPCookieProcessor(client.cookies), server)
    return client, server


def test_secure_cookies_over_http_fall_back_to_explicit_tokens():
    client, server = make_live_client()
    client.login("ana@example.com", "secret1")

    # The jar keeps the Secure cookies but never sends them over plain http.
    assert sorted(cookie.name for cookie in client.cookies) == [
        "accessToken",
        "refreshToken",
    ]
    assert client.me()["email"] == "ana@example.com"
    assert server.seen[-1] == ("/api/user/me", "Bearer access-1", None)


def test_expired_access_token_is_refreshed_with_body_token():
    client, server = make_live_client()
    client.login("ana@example.com", "secret1")
    server.access_tokens = set()

    assert client.me()["email"] == "ana@example.com"
    assert [entry[0] for entry in server.seen[1:]] == [
        "/api/user/me",
        "/api/auth/refresh",
        "/api/user/me",
    ]
    assert server.seen[-1][1] == "Bearer access-2"
    assert client.refresh_token == "refresh-2"


def test_rejected_refresh_over_real_transport_expires_session():
    client, server = make_live_client()
    client.login("ana@example.com", "secret1")
    server.access_tokens = set()
    server.refresh_tokens = set()

    with pytest.raises(SessionExpired):
        client.me()
