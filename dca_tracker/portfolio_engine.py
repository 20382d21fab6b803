from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from dca_tracker.coins import COIN_METADATA

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ContributionRecord:
    coin: str
    amount: Decimal
    quantity: Decimal
    price: Optional[Decimal] = None
    date: Optional[datetime] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class CoinSummary:
    coin: str
    name: str
    symbol: str
    contribution_count: int
    total_contributed: Decimal
    total_quantity: Decimal
    average_price: Decimal
    current_price: Decimal
    balance: Decimal
    profit: Decimal
    profit_percentage: Decimal


@dataclass(frozen=True)
class PortfolioSummary:
    coins: dict[str, CoinSummary] = field(default_factory=dict)
    total_contributed: Decimal = ZERO
    total_balance: Decimal = ZERO
    total_profit: Decimal = ZERO
    total_profit_percentage: Decimal = ZERO


def summarize_portfolio(
    records: Iterable[ContributionRecord],
    current_prices: Mapping[str, Decimal],
) -> PortfolioSummary:
    """Aggregate contributions into per-coin and portfolio-wide metrics.

    Coins without records get no entry. A coin missing from ``current_prices``
    is valued at zero.
    """
    totals: dict[str, list] = {}
    for record in records:
        entry = totals.setdefault(record.coin, [0, ZERO, ZERO])
        entry[0] += 1
        entry[1] += _coerce_amount(record.amount)
        entry[2] += _coerce_amount(record.quantity)

    coins: dict[str, CoinSummary] = {}
    for coin in sorted(totals):
        count, contributed, quantity = totals[coin]
        coins[coin] = _build_summary(
            coin,
            count,
            contributed,
            quantity,
            _price_for(current_prices, coin),
        )

    total_contributed = sum((item.total_contributed for item in coins.values()), ZERO)
    total_balance = sum((item.balance for item in coins.values()), ZERO)
    total_profit = total_balance - total_contributed
    return PortfolioSummary(
        coins=coins,
        total_contributed=total_contributed,
        total_balance=total_balance,
        total_profit=total_profit,
        total_profit_percentage=_percentage(total_profit, total_contributed),
    )


def summarize_coin(
    records: Iterable[ContributionRecord],
    coin: str,
    current_price: Decimal | None,
) -> CoinSummary | None:
    matching = [record for record in records if record.coin == coin]
    if not matching:
        return None
    summary = summarize_portfolio(matching, {coin: current_price} if current_price is not None else {})
    return summary.coins[coin]


def contribution_profit(record: ContributionRecord, current_price: Decimal | None) -> Decimal:
    price = _coerce_amount(current_price) if current_price is not None else ZERO
    return _coerce_amount(record.quantity) * price - _coerce_amount(record.amount)


def contribution_profit_percentage(
    record: ContributionRecord, current_price: Decimal | None
) -> Decimal:
    return _percentage(
        contribution_profit(record, current_price),
        _coerce_amount(record.amount),
    )


def _build_summary(
    coin: str,
    count: int,
    contributed: Decimal,
    quantity: Decimal,
    current_price: Decimal,
) -> CoinSummary:
    average_price = contributed / quantity if quantity > ZERO else ZERO
    balance = quantity * current_price
    profit = balance - contributed
    metadata = COIN_METADATA.get(coin)
    return CoinSummary(
        coin=coin,
        name=metadata.name if metadata else coin,
        symbol=metadata.symbol if metadata else coin.upper(),
        contribution_count=count,
        total_contributed=contributed,
        total_quantity=quantity,
        average_price=average_price,
        current_price=current_price,
        balance=balance,
        profit=profit,
        profit_percentage=_percentage(profit, contributed),
    )


def _percentage(profit: Decimal, contributed: Decimal) -> Decimal:
    if contributed > ZERO:
        return profit / contributed * HUNDRED
    return ZERO


def _price_for(current_prices: Mapping[str, Decimal], coin: str) -> Decimal:
    price = current_prices.get(coin)
    if price is None:
        return ZERO
    return _coerce_amount(price)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
