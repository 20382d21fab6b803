import io
import json
import threading
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime
from decimal import Decimal
from unittest import mock
from urllib.error import HTTPError

from dca_tracker import cli
from dca_tracker.client import (
    ApiError,
    ContributionsClient,
    compute_quantity,
    load_coin_detail,
    load_dashboard,
    record_from_json,
)
from dca_tracker.portfolio_engine import ContributionRecord
from dca_tracker.price_feed import PriceFeedUnavailable, StaticPriceProvider

RECORDS = [
    ContributionRecord(
        id="c-1",
        coin="bitcoin",
        amount=Decimal("100"),
        price=Decimal("50"),
        quantity=Decimal("2"),
        date=datetime(2024, 2, 1),
    ),
    ContributionRecord(
        id="c-2",
        coin="bitcoin",
        amount=Decimal("200"),
        price=Decimal("40"),
        quantity=Decimal("5"),
        date=datetime(2024, 1, 1),
    ),
]


class FakeClient:
    def __init__(self, records) -> None:
        self.records = list(records)
        self.created = []
        self.deleted = []

    def list_contributions(self):
        return list(self.records)

    def create_contribution(self, coin, coin_price, contribution_amount, coin_quantity=None, date=None):
        record = ContributionRecord(
            id="c-new",
            coin=coin,
            amount=contribution_amount,
            price=coin_price,
            quantity=coin_quantity or compute_quantity(contribution_amount, coin_price),
            date=date,
        )
        self.created.append(record)
        return record

    def delete_contribution(self, contribution_id):
        self.deleted.append(contribution_id)


class FailingFeed:
    def get_prices(self, coins):
        raise PriceFeedUnavailable("Down")


def fake_response(payload) -> mock.MagicMock:
    response = mock.MagicMock()
    response.__enter__.return_value = io.BytesIO(json.dumps(payload).encode("utf-8"))
    return response


class DashboardTests(unittest.TestCase):
    def test_dashboard_aggregates_records_with_prices(self) -> None:
        dashboard = load_dashboard(
            FakeClient(RECORDS), StaticPriceProvider(prices={"bitcoin": Decimal("60")})
        )

        self.assertEqual(dashboard.prices, {"bitcoin": Decimal("60"), "ethereum": Decimal("0")})
        self.assertEqual(list(dashboard.summary.coins), ["bitcoin"])
        self.assertEqual(dashboard.summary.total_balance, Decimal("420"))
        self.assertEqual(dashboard.summary.total_profit_percentage, Decimal("40"))

    def test_dashboard_fetches_concurrently(self) -> None:
        both_started = threading.Barrier(2, timeout=5)

        class BarrierClient(FakeClient):
            def list_contributions(self):
                both_started.wait()
                return super().list_contributions()

        class BarrierFeed(StaticPriceProvider):
            def get_prices(self, coins):
                both_started.wait()
                return super().get_prices(coins)

        dashboard = load_dashboard(
            BarrierClient(RECORDS), BarrierFeed(prices={"bitcoin": Decimal("60")})
        )

        self.assertEqual(dashboard.summary.total_contributed, Decimal("300"))

    def test_price_failure_degrades_to_zero(self) -> None:
        with self.assertLogs("dca_tracker.price_feed", level="WARNING"):
            dashboard = load_dashboard(FakeClient(RECORDS), FailingFeed())

        self.assertEqual(dashboard.summary.total_balance, Decimal("0"))
        self.assertEqual(dashboard.summary.total_profit, Decimal("-300"))

    def test_record_failure_propagates(self) -> None:
        class BrokenClient(FakeClient):
            def list_contributions(self):
                raise ApiError(401, "Not authenticated.")

        with self.assertRaises(ApiError):
            load_dashboard(BrokenClient([]), StaticPriceProvider())

    def test_coin_detail_has_per_record_profit(self) -> None:
        detail = load_coin_detail(
            FakeClient(RECORDS), StaticPriceProvider(prices={"bitcoin": Decimal("60")}), "bitcoin"
        )

        self.assertEqual(detail.current_price, Decimal("60"))
        self.assertEqual(detail.summary.average_price, Decimal("300") / Decimal("7"))
        self.assertEqual([row.profit for row in detail.rows], [Decimal("20"), Decimal("100")])
        self.assertEqual([row.current_value for row in detail.rows], [Decimal("120"), Decimal("300")])

    def test_coin_detail_without_records(self) -> None:
        detail = load_coin_detail(
            FakeClient(RECORDS), StaticPriceProvider(prices={"ethereum": Decimal("10")}), "ethereum"
        )

        self.assertIsNone(detail.summary)
        self.assertEqual(detail.rows, [])


class ContributionsClientTests(unittest.TestCase):
    def test_compute_quantity_rounds_to_eight_places(self) -> None:
        self.assertEqual(compute_quantity(Decimal("100"), Decimal("350000")), Decimal("0.00028571"))

    def test_record_from_json(self) -> None:
        record = record_from_json(
            {
                "id": "c-9",
                "coin": "ethereum",
                "coinPrice": "10.00000000",
                "contributionAmount": "100.00",
                "coinQuantity": "10.00000000",
                "date": "2024-03-01T10:30:00",
            }
        )

        self.assertEqual(record.amount, Decimal("100"))
        self.assertEqual(record.quantity, Decimal("10"))
        self.assertEqual(record.price, Decimal("10"))
        self.assertEqual(record.date, datetime(2024, 3, 1, 10, 30))

    def test_create_sends_computed_quantity(self) -> None:
        client = ContributionsClient(base_url="http://api.test/", access_token="token-1")
        payload = {
            "contribution": {
                "id": "c-3",
                "coin": "bitcoin",
                "coinPrice": "50",
                "contributionAmount": "100",
                "coinQuantity": "2.00000000",
                "date": "2024-05-01T00:00:00",
            }
        }

        with mock.patch("dca_tracker.client.urlopen", return_value=fake_response(payload)) as urlopen:
            record = client.create_contribution("bitcoin", Decimal("50"), Decimal("100"))

        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "http://api.test/api/contributions")
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.get_header("Authorization"), "Bearer token-1")
        self.assertEqual(json.loads(request.data)["coinQuantity"], "2.00000000")
        self.assertEqual(record.id, "c-3")

    def test_http_error_raises_api_error_with_detail(self) -> None:
        client = ContributionsClient(base_url="http://api.test")
        error = HTTPError(
            "http://api.test/api/contributions",
            404,
            "Not Found",
            {},
            io.BytesIO(b'{"detail": "Contribution not found."}'),
        )

        with mock.patch("dca_tracker.client.urlopen", side_effect=error):
            with self.assertRaises(ApiError) as ctx:
                client.delete_contribution("missing")

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.detail, "Contribution not found.")


class CliTests(unittest.TestCase):
    def run_cli(self, argv, client):
        stdout = io.StringIO()
        stderr = io.StringIO()
        provider = StaticPriceProvider(prices={"bitcoin": Decimal("60")})
        with mock.patch.object(cli, "ContributionsClient", return_value=client), mock.patch.object(
            cli, "build_price_provider", return_value=provider
        ), redirect_stdout(stdout), redirect_stderr(stderr):
            code = cli.main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_summary_prints_totals(self) -> None:
        code, out, _ = self.run_cli(["summary"], FakeClient(RECORDS))

        self.assertEqual(code, 0)
        self.assertIn("Bitcoin (BTC)", out)
        self.assertIn("Total profit:      120.00 BRL (40.00%)", out)

    def test_summary_json(self) -> None:
        code, out, _ = self.run_cli(["--json", "summary"], FakeClient(RECORDS))

        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(Decimal(payload["coins"]["bitcoin"]["balance"]), Decimal("420"))
        self.assertEqual(Decimal(payload["totalProfitPercentage"]), Decimal("40"))

    def test_summary_for_coin_without_records(self) -> None:
        code, out, _ = self.run_cli(["summary", "--coin", "ethereum"], FakeClient(RECORDS))

        self.assertEqual(code, 0)
        self.assertIn("No Ethereum contributions yet.", out)

    def test_add_uses_current_price(self) -> None:
        client = FakeClient([])

        code, out, _ = self.run_cli(["add", "--coin", "bitcoin", "--amount", "120"], client)

        self.assertEqual(code, 0)
        self.assertEqual(client.created[0].price, Decimal("60"))
        self.assertEqual(client.created[0].quantity, Decimal("2"))
        self.assertIn("Created c-new", out)

    def test_add_without_price_fails_when_feed_is_down(self) -> None:
        client = FakeClient([])
        stderr = io.StringIO()
        with mock.patch.object(cli, "ContributionsClient", return_value=client), mock.patch.object(
            cli, "build_price_provider", return_value=FailingFeed()
        ), redirect_stdout(io.StringIO()), redirect_stderr(stderr):
            code = cli.main(["add", "--coin", "bitcoin", "--amount", "120"])

        self.assertEqual(code, 1)
        self.assertEqual(client.created, [])
        self.assertIn("pass --price", stderr.getvalue())

    def test_api_error_sets_exit_code(self) -> None:
        class BrokenClient(FakeClient):
            def delete_contribution(self, contribution_id):
                raise ApiError(404, "Contribution not found.")

        code, _, err = self.run_cli(["delete", "c-404"], BrokenClient([]))

        self.assertEqual(code, 1)
        self.assertIn("Contribution not found.", err)


if __name__ == "__main__":
    unittest.main()
