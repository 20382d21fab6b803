from __future__ import annotations

import http.client
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from dca_tracker.coins import COINS, normalize_coin

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PriceFeedUnavailable(RuntimeError):
    """Raised when the market-data endpoint cannot return a spot price."""


@dataclass(frozen=True)
class StaticPriceProvider:
    """Deterministic, in-memory spot prices.

    Coins without a configured price resolve to ``default``.
    """

    prices: Mapping[str, Decimal] = None
    default: Decimal = ZERO

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "prices",
            {normalize_coin(coin): _coerce_price(value) for coin, value in (self.prices or {}).items()},
        )

    def get_price(self, coin: str) -> Decimal:
        return self.prices.get(normalize_coin(coin), self.default)

    def get_prices(self, coins: Iterable[str]) -> dict[str, Decimal]:
        return {normalize_coin(coin): self.get_price(coin) for coin in coins}


@dataclass
class CoinGeckoPriceProvider:
    base_url: str = "https://api.coingecko.com/api/v3"
    vs_currency: str = "brl"
    timeout: float = 8

    def get_price(self, coin: str) -> Decimal:
        normalized = normalize_coin(coin)
        return self.get_prices([normalized])[normalized]

    def get_prices(self, coins: Iterable[str]) -> dict[str, Decimal]:
        requested = [normalize_coin(coin) for coin in coins]
        if not requested:
            return {}
        payload = self._fetch(requested)

        prices: dict[str, Decimal] = {}
        for coin in requested:
            quote = payload.get(coin)
            if not isinstance(quote, dict) or self.vs_currency not in quote:
                raise PriceFeedUnavailable(f"Price feed response missing {coin}/{self.vs_currency}")
            try:
                prices[coin] = _coerce_price(quote[self.vs_currency])
            except (InvalidOperation, ValueError) as exc:
                raise PriceFeedUnavailable(f"Price feed returned an invalid price for {coin}") from exc
        return prices

    def _fetch(self, coins: list[str]) -> dict:
        query = urlencode({"ids": ",".join(coins), "vs_currencies": self.vs_currency})
        url = f"{self.base_url.rstrip('/')}/simple/price?{query}"
        request = Request(url, headers={"Accept": "application/json"})
        try:
            with urlopen(request, timeout=self.timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, OSError, http.client.HTTPException, ValueError) as exc:
            raise PriceFeedUnavailable("Price feed unavailable") from exc
        if not isinstance(payload, dict):
            raise PriceFeedUnavailable("Price feed returned an unexpected payload")
        return payload


@dataclass(frozen=True)
class CompositePriceProvider:
    primary: StaticPriceProvider | CoinGeckoPriceProvider
    fallback: StaticPriceProvider

    def get_price(self, coin: str) -> Decimal:
        try:
            return self.primary.get_price(coin)
        except PriceFeedUnavailable:
            return self.fallback.get_price(coin)

    def get_prices(self, coins: Iterable[str]) -> dict[str, Decimal]:
        requested = list(coins)
        try:
            return self.primary.get_prices(requested)
        except PriceFeedUnavailable:
            return self.fallback.get_prices(requested)


def get_price(provider, coin: str) -> Decimal:
    """Best-effort spot price for ``coin``; 0 when the feed fails."""
    return get_current_prices(provider, [coin]).get(normalize_coin(coin), ZERO)


def get_current_prices(provider, coins: Iterable[str] = COINS) -> dict[str, Decimal]:
    requested = [normalize_coin(coin) for coin in coins]
    try:
        prices = provider.get_prices(requested)
    except PriceFeedUnavailable as exc:
        logger.warning("Price feed failed, using zero prices for %s: %s", ", ".join(requested), exc)
        return {coin: ZERO for coin in requested}
    return {coin: prices.get(coin, ZERO) for coin in requested}


def _coerce_price(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        price = value
    else:
        price = Decimal(str(value))
    if not price.is_finite():
        raise ValueError("Price must be a finite number.")
    return price
