"""HTTP client for the finance API.

Cookies set by the server (``accessToken`` / ``refreshToken``) live in the
client's cookie jar. The server marks them ``Secure`` by default, and a
cookie jar never sends those over plain http, so the tokens from the last
auth response are also kept and sent explicitly: the access token as an
``Authorization: Bearer`` header and the refresh token as the
``refreshToken`` body of ``/auth/refresh``. A request answered with 401
triggers one refresh attempt; when the refresh succeeds the original
request is retried exactly once.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from http.cookiejar import CookieJar
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import HTTPCookieProcessor, OpenerDirector, Request, build_opener

from periods import month_period

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000/api"


class ApiError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


class SessionExpired(ApiError):
    def __init__(self) -> None:
        super().__init__(401, "Session expired. Please log in again.")


def _json_default(value: object) -> object:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _error_message(body: bytes, status: int) -> str:
    try:
        payload = json.loads(body.decode("utf-8")) if body else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = {}
    message = payload.get("message") if isinstance(payload, dict) else None
    if isinstance(message, list):
        return ", ".join(str(part) for part in message)
    if message:
        return str(message)
    return f"Request failed with status {status}"


def _query(params: dict[str, Any]) -> str:
    clean = {
        key: value.isoformat() if isinstance(value, date) else value
        for key, value in params.items()
        if value is not None
    }
    return f"?{urlencode(clean)}" if clean else ""


class FinanceClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 10.0,
        opener: Optional[OpenerDirector] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cookies = CookieJar()
        self.opener = opener or build_opener(HTTPCookieProcessor(self.cookies))
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None

    def _send(
        self, method: str, endpoint: str, payload: Optional[dict] = None
    ) -> tuple[int, bytes]:
        data = None
        if payload is not None:
            data = json.dumps(payload, default=_json_default).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        req = Request(
            f"{self.base_url}{endpoint}", data=data, method=method, headers=headers
        )
        try:
            with self.opener.open(req, timeout=self.timeout) as resp:
                return resp.status, resp.read()
        except HTTPError as exc:
            return exc.code, exc.read()
        except URLError as exc:
            raise ApiError(0, f"Could not reach {self.base_url}") from exc

    @staticmethod
    def _decode(status: int, body: bytes) -> Any:
        if status >= 400:
            raise ApiError(status, _error_message(body, status))
        if not body:
            return {}
        return json.loads(body.decode("utf-8"))

    def _remember_tokens(self, result: Any) -> None:
        tokens = result.get("tokens") if isinstance(result, dict) else None
        if isinstance(tokens, dict):
            self.access_token = tokens.get("accessToken") or self.access_token
            self.refresh_token = tokens.get("refreshToken") or self.refresh_token

    def _forget_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None

    def _refresh(self) -> bool:
        payload = {"refreshToken": self.refresh_token} if self.refresh_token else None
        try:
            status, body = self._send("POST", "/auth/refresh", payload)
            if status >= 400:
                return False
            self._remember_tokens(self._decode(status, body))
        except (ApiError, ValueError):
            return False
        return True

    def request(
        self, method: str, endpoint: str, payload: Optional[dict] = None
    ) -> Any:
        status, body = self._send(method, endpoint, payload)
        if status == 401:
            if not self._refresh():
                raise SessionExpired()
            logger.debug(f"client_retry: method={method} endpoint={endpoint}")
            status, body = self._send(method, endpoint, payload)
        result = self._decode(status, body)
        self._remember_tokens(result)
        return result

    def register(self, email: str, password: str, name: Optional[str] = None) -> dict:
        return self.request(
            "POST",
            "/auth/register",
            {"name": name, "email": email, "password": password},
        )

    def login(self, email: str, password: str) -> dict:
        return self.request("POST", "/auth/login", {"email": email, "password": password})

    def demo(self) -> dict:
        return self.request("GET", "/auth/demo")

    def logout(self) -> None:
        payload = {"refreshToken": self.refresh_token} if self.refresh_token else None
        try:
            self.request("POST", "/auth/logout", payload)
        finally:
            self._forget_tokens()

    def logout_all(self) -> None:
        self.request("POST", "/auth/logout-all")
        self._forget_tokens()

    def me(self) -> dict:
        return self.request("GET", "/user/me")["user"]

    def categories(self) -> list[dict]:
        return self.request("GET", "/categories")

    def category(self, category_id: int) -> dict:
        return self.request("GET", f"/categories/{category_id}")

    def create_category(
        self,
        name: str,
        type: str,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> dict:
        return self.request(
            "POST",
            "/categories",
            {"name": name, "type": type, "icon": icon, "color": color},
        )

    def update_category(self, category_id: int, **changes: Any) -> dict:
        return self.request("PATCH", f"/categories/{category_id}", changes)

    def delete_category(self, category_id: int) -> None:
        self.request("DELETE", f"/categories/{category_id}")

    def transactions(
        self,
        *,
        type: Optional[str] = None,
        category_id: Optional[int] = None,
        on_date: Optional[date] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> dict:
        query = _query(
            {
                "type": type,
                "categoryId": category_id,
                "date": on_date,
                "startDate": start_date,
                "endDate": end_date,
                "limit": limit,
                "offset": offset,
            }
        )
        return self.request("GET", f"/transactions{query}")

    def transaction(self, transaction_id: int) -> dict:
        return self.request("GET", f"/transactions/{transaction_id}")

    def create_transaction(
        self,
        amount: Decimal,
        type: str,
        *,
        description: Optional[str] = None,
        on_date: Optional[date] = None,
        category_id: Optional[int] = None,
    ) -> dict:
        payload: dict[str, Any] = {"amount": amount, "type": type}
        if description is not None:
            payload["description"] = description
        if on_date is not None:
            payload["date"] = on_date
        if category_id is not None:
            payload["categoryId"] = category_id
        return self.request("POST", "/transactions", payload)

    def update_transaction(self, transaction_id: int, **changes: Any) -> dict:
        return self.request("PATCH", f"/transactions/{transaction_id}", changes)

    def delete_transaction(self, transaction_id: int) -> None:
        self.request("DELETE", f"/transactions/{transaction_id}")

    def summary(
        self, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> dict:
        query = _query({"startDate": start_date, "endDate": end_date})
        return self.request("GET", f"/transactions/summary{query}")

    def chart_data(self, start_date: date, end_date: date) -> list[dict]:
        query = _query({"startDate": start_date, "endDate": end_date})
        return self.request("GET", f"/transactions/chart-data{query}")

    def budgets(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[dict]:
        return self.request("GET", f"/budgets{_query({'month': month, 'year': year})}")

    def budget(self, budget_id: int) -> dict:
        return self.request("GET", f"/budgets/{budget_id}")

    def create_budget(
        self, amount: Decimal, month: int, year: int, category_id: int
    ) -> dict:
        return self.request(
            "POST",
            "/budgets",
            {"amount": amount, "month": month, "year": year, "categoryId": category_id},
        )

    def update_budget(self, budget_id: int, amount: Decimal) -> dict:
        return self.request("PATCH", f"/budgets/{budget_id}", {"amount": amount})

    def delete_budget(self, budget_id: int) -> None:
        self.request("DELETE", f"/budgets/{budget_id}")

    def dashboard(self, year: int, month: int) -> dict:
        period = month_period(year, month)
        return {
            "summary": self.summary(period.start, period.end),
            "recent": self.transactions(
                start_date=period.start, end_date=period.end, limit=10
            )["data"],
            "budgets": self.budgets(month=month, year=year),
            "chart": self.chart_data(period.start, period.end),
        }
