from __future__ import annotations

import http.client
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from dca_tracker.coins import COINS, normalize_coin
from dca_tracker.portfolio_engine import (
    CoinSummary,
    ContributionRecord,
    PortfolioSummary,
    contribution_profit,
    contribution_profit_percentage,
    summarize_coin,
    summarize_portfolio,
)
from dca_tracker.price_feed import get_current_prices

QUANTITY_PLACES = Decimal("0.00000001")


class ApiError(RuntimeError):
    """Raised when the contributions API answers with an error or is unreachable."""

    def __init__(self, status_code: int | None, detail: str) -> None:
        super().__init__(f"{status_code or 'unreachable'}: {detail}")
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    name: str | None
    avatar: str | None
    contributions: list[ContributionRecord]


@dataclass
class ContributionsClient:
    base_url: str
    access_token: str | None = None
    timeout: float = 10

    def list_contributions(self) -> list[ContributionRecord]:
        payload = self._request("GET", "/api/contributions")
        return [record_from_json(item) for item in payload.get("contributions") or []]

    def create_contribution(
        self,
        coin: str,
        coin_price: Decimal,
        contribution_amount: Decimal,
        coin_quantity: Decimal | None = None,
        date: datetime | None = None,
    ) -> ContributionRecord:
        if coin_quantity is None:
            coin_quantity = compute_quantity(contribution_amount, coin_price)
        body = {
            "coin": normalize_coin(coin),
            "coinPrice": str(coin_price),
            "contributionAmount": str(contribution_amount),
            "coinQuantity": str(coin_quantity),
        }
        if date is not None:
            body["date"] = date.isoformat()
        payload = self._request("POST", "/api/contributions", body)
        return record_from_json(payload["contribution"])

    def delete_contribution(self, contribution_id: str) -> None:
        self._request("DELETE", "/api/contributions", {"id": contribution_id})

    def get_profile(self) -> UserProfile:
        user = self._request("GET", "/api/user")["user"]
        return UserProfile(
            id=user["id"],
            email=user["email"],
            name=user.get("name"),
            avatar=user.get("avatar"),
            contributions=[record_from_json(item) for item in user.get("contributions") or []],
        )

    def _request(self, method: str, path: str, body: dict | None = None) -> dict:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = Request(
            f"{self.base_url.rstrip('/')}{path}",
            data=data,
            headers=headers,
            method=method,
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                return json.load(response)
        except HTTPError as exc:
            raise ApiError(exc.code, _error_detail(exc)) from exc
        except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
            raise ApiError(None, f"API unavailable at {self.base_url}") from exc
        except ValueError as exc:
            raise ApiError(None, "API returned invalid JSON") from exc


@dataclass(frozen=True)
class Dashboard:
    contributions: list[ContributionRecord]
    prices: dict[str, Decimal]
    summary: PortfolioSummary


@dataclass(frozen=True)
class ContributionRow:
    record: ContributionRecord
    current_value: Decimal
    profit: Decimal
    profit_percentage: Decimal


@dataclass(frozen=True)
class CoinDetail:
    coin: str
    current_price: Decimal
    summary: CoinSummary | None
    rows: list[ContributionRow] = field(default_factory=list)


def load_dashboard(client, price_provider, coins: Iterable[str] = COINS) -> Dashboard:
    """Fetch records and prices concurrently, then aggregate them."""
    coins = [normalize_coin(coin) for coin in coins]
    with ThreadPoolExecutor(max_workers=2) as executor:
        records_future = executor.submit(client.list_contributions)
        prices_future = executor.submit(get_current_prices, price_provider, coins)
        records = records_future.result()
        prices = prices_future.result()
    return Dashboard(
        contributions=records,
        prices=prices,
        summary=summarize_portfolio(records, prices),
    )


def load_coin_detail(client, price_provider, coin: str) -> CoinDetail:
    coin = normalize_coin(coin)
    with ThreadPoolExecutor(max_workers=2) as executor:
        records_future = executor.submit(client.list_contributions)
        prices_future = executor.submit(get_current_prices, price_provider, [coin])
        records = [record for record in records_future.result() if record.coin == coin]
        current_price = prices_future.result()[coin]

    rows = [
        ContributionRow(
            record=record,
            current_value=record.quantity * current_price,
            profit=contribution_profit(record, current_price),
            profit_percentage=contribution_profit_percentage(record, current_price),
        )
        for record in records
    ]
    return CoinDetail(
        coin=coin,
        current_price=current_price,
        summary=summarize_coin(records, coin, current_price),
        rows=rows,
    )


def compute_quantity(amount: Decimal, price: Decimal) -> Decimal:
    if price <= 0:
        raise ValueError("Coin price must be greater than zero.")
    return (Decimal(amount) / Decimal(price)).quantize(QUANTITY_PLACES)


def record_from_json(item: Mapping) -> ContributionRecord:
    raw_date = item.get("date")
    return ContributionRecord(
        id=item.get("id"),
        coin=item["coin"],
        amount=_to_decimal(item["contributionAmount"]),
        quantity=_to_decimal(item["coinQuantity"]),
        price=_to_decimal(item["coinPrice"]) if item.get("coinPrice") is not None else None,
        date=datetime.fromisoformat(raw_date) if raw_date else None,
    )


def _to_decimal(value) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ApiError(None, f"API returned a non-numeric value: {value!r}") from exc


def _error_detail(exc: HTTPError) -> str:
    try:
        payload = json.loads(exc.read() or b"{}")
    except (json.JSONDecodeError, OSError):
        return str(exc.reason or "Request failed")
    if isinstance(payload, dict) and payload.get("detail"):
        return str(payload["detail"])
    return str(exc.reason or "Request failed")
