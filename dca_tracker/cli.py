"""Command-line interface for the DCA tracker.

Usage:
  dca-tracker serve --port 8000
  dca-tracker add --coin bitcoin --amount 100
  dca-tracker summary

API commands read ``DCA_API_URL`` and ``DCA_ACCESS_TOKEN`` from the
environment unless ``--api-url``/``--token`` are given.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dca_tracker.client import ApiError, ContributionsClient, load_coin_detail, load_dashboard
from dca_tracker.coins import COIN_METADATA, COINS
from dca_tracker.config import Settings, configure_logging
from dca_tracker.portfolio_engine import CoinSummary, PortfolioSummary
from dca_tracker.price_feed import (
    CoinGeckoPriceProvider,
    CompositePriceProvider,
    StaticPriceProvider,
    get_current_prices,
    get_price,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000"


def _decimal(value: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {value}")
    return parsed


def _datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value}") from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Track recurring crypto contributions")
    p.add_argument("--api-url", default=os.getenv("DCA_API_URL", DEFAULT_API_URL), help="Base URL of the API")
    p.add_argument("--token", default=os.getenv("DCA_ACCESS_TOKEN"), help="Access token issued by the identity provider")
    p.add_argument("--json", action="store_true", help="Print JSON instead of text")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")

    sub.add_parser("list", help="List your contributions, newest first")

    add = sub.add_parser("add", help="Record a contribution")
    add.add_argument("--coin", choices=COINS, required=True)
    add.add_argument("--amount", type=_decimal, required=True, help="Fiat amount spent")
    add.add_argument("--price", type=_decimal, help="Unit price paid (defaults to the current price)")
    add.add_argument("--quantity", type=_decimal, help="Coin quantity (defaults to amount / price)")
    add.add_argument("--date", type=_datetime, help="Purchase date, ISO format")

    delete = sub.add_parser("delete", help="Delete a contribution by id")
    delete.add_argument("id")

    summary = sub.add_parser("summary", help="Show cost basis and profit")
    summary.add_argument("--coin", choices=COINS, help="Show one coin with per-contribution rows")

    sub.add_parser("prices", help="Show current prices")
    return p.parse_args(argv)


def build_price_provider(settings: Settings):
    return CompositePriceProvider(
        primary=CoinGeckoPriceProvider(base_url=settings.price_api_url, vs_currency=settings.price_currency),
        fallback=StaticPriceProvider(),
    )


def fmt_amount(value: Decimal, places: int = 2) -> str:
    return f"{value:,.{places}f}"


def format_coin_summary(item: CoinSummary, currency: str) -> List[str]:
    unit = currency.upper()
    return [
        f"{item.name} ({item.symbol}) - {item.contribution_count} contribution(s)",
        f"  Contributed:   {fmt_amount(item.total_contributed)} {unit}",
        f"  Quantity:      {fmt_amount(item.total_quantity, 8)} {item.symbol}",
        f"  Average price: {fmt_amount(item.average_price)} {unit}",
        f"  Current price: {fmt_amount(item.current_price)} {unit}",
        f"  Balance:       {fmt_amount(item.balance)} {unit}",
        f"  Profit:        {fmt_amount(item.profit)} {unit} ({fmt_amount(item.profit_percentage)}%)",
    ]


def format_portfolio(summary: PortfolioSummary, currency: str) -> str:
    if not summary.coins:
        return "No contributions yet."
    lines: List[str] = []
    for item in summary.coins.values():
        lines.extend(format_coin_summary(item, currency))
        lines.append("")
    unit = currency.upper()
    lines.append(f"Total contributed: {fmt_amount(summary.total_contributed)} {unit}")
    lines.append(f"Total balance:     {fmt_amount(summary.total_balance)} {unit}")
    lines.append(
        f"Total profit:      {fmt_amount(summary.total_profit)} {unit} "
        f"({fmt_amount(summary.total_profit_percentage)}%)"
    )
    return "\n".join(lines)


def summary_to_dict(summary: PortfolioSummary) -> dict:
    return {
        "coins": {
            coin: {
                "name": item.name,
                "symbol": item.symbol,
                "totalContributed": str(item.total_contributed),
                "totalQuantity": str(item.total_quantity),
                "averagePrice": str(item.average_price),
                "currentPrice": str(item.current_price),
                "balance": str(item.balance),
                "profit": str(item.profit),
                "profitPercentage": str(item.profit_percentage),
            }
            for coin, item in summary.coins.items()
        },
        "totalContributed": str(summary.total_contributed),
        "totalBalance": str(summary.total_balance),
        "totalProfit": str(summary.total_profit),
        "totalProfitPercentage": str(summary.total_profit_percentage),
    }


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    logger.info("Starting API on http://%s:%s", args.host, args.port)
    uvicorn.run("dca_tracker.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _list(args: argparse.Namespace, client: ContributionsClient) -> int:
    records = client.list_contributions()
    if args.json:
        print(json.dumps([
            {
                "id": record.id,
                "coin": record.coin,
                "coinPrice": str(record.price) if record.price is not None else None,
                "contributionAmount": str(record.amount),
                "coinQuantity": str(record.quantity),
                "date": record.date.isoformat() if record.date else None,
            }
            for record in records
        ], indent=2))
        return 0
    if not records:
        print("No contributions yet.")
        return 0
    for record in records:
        when = record.date.date().isoformat() if record.date else "-"
        symbol = COIN_METADATA[record.coin].symbol if record.coin in COIN_METADATA else record.coin
        print(f"{record.id}  {when}  {symbol:<4} {fmt_amount(record.amount):>12}  {fmt_amount(record.quantity, 8)}")
    return 0


def _add(args: argparse.Namespace, client: ContributionsClient, settings: Settings) -> int:
    price = args.price
    if price is None:
        price = get_price(build_price_provider(settings), args.coin)
        if price <= 0:
            print("Could not fetch the current price; pass --price.", file=sys.stderr)
            return 1
    record = client.create_contribution(
        args.coin,
        coin_price=price,
        contribution_amount=args.amount,
        coin_quantity=args.quantity,
        date=args.date,
    )
    print(f"Created {record.id}: {fmt_amount(record.quantity, 8)} {args.coin} for {fmt_amount(record.amount)}")
    return 0


def _summary(args: argparse.Namespace, client: ContributionsClient, settings: Settings) -> int:
    provider = build_price_provider(settings)
    if args.coin:
        detail = load_coin_detail(client, provider, args.coin)
        if detail.summary is None:
            print(f"No {COIN_METADATA[detail.coin].name} contributions yet.")
            return 0
        print("\n".join(format_coin_summary(detail.summary, settings.price_currency)))
        for row in detail.rows:
            when = row.record.date.date().isoformat() if row.record.date else "-"
            print(
                f"  {when}  {fmt_amount(row.record.amount):>12} -> {fmt_amount(row.current_value):>12}"
                f"  {fmt_amount(row.profit):>12} ({fmt_amount(row.profit_percentage)}%)"
            )
        return 0

    dashboard = load_dashboard(client, provider)
    if args.json:
        print(json.dumps(summary_to_dict(dashboard.summary), indent=2))
    else:
        print(format_portfolio(dashboard.summary, settings.price_currency))
    return 0


def _prices(args: argparse.Namespace, settings: Settings) -> int:
    prices = get_current_prices(build_price_provider(settings), COINS)
    if args.json:
        print(json.dumps({coin: str(value) for coin, value in prices.items()}, indent=2))
        return 0
    for coin, value in prices.items():
        print(f"{COIN_METADATA[coin].symbol}: {fmt_amount(value)} {settings.price_currency.upper()}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "serve":
        return _serve(args)
    if args.command == "prices":
        return _prices(args, settings)

    client = ContributionsClient(base_url=args.api_url, access_token=args.token)
    try:
        if args.command == "list":
            return _list(args, client)
        if args.command == "add":
            return _add(args, client, settings)
        if args.command == "delete":
            client.delete_contribution(args.id)
            print(f"Deleted {args.id}")
            return 0
        return _summary(args, client, settings)
    except ApiError as exc:
        print(f"Error: {exc.detail}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
