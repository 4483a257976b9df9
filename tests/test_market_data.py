"""
Tests for session-aware pricing, prior-session volume walk-back and the
alternate-hours price file.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from core.exceptions import TransientCallError
from core.market_data import AltHoursPriceFile, FmpPriceClient, MarketDataService
from infra.market_hours import EXCHANGE_TZ, in_window, is_session_hours, parse_clock, previous_weekdays
from tests.helpers import make_position

# Wednesday 2026-01-07
IN_SESSION = datetime(2026, 1, 7, 10, 0, tzinfo=EXCHANGE_TZ)
AFTER_HOURS = datetime(2026, 1, 7, 17, 0, tzinfo=EXCHANGE_TZ)


def _service(clock_value, alt_file=None):
    alpaca = Mock()
    alt_prices = Mock()
    return MarketDataService(
        alpaca=alpaca,
        alt_prices=alt_prices,
        alt_hours_file=alt_file or Mock(),
        clock=lambda: clock_value,
    ), alpaca, alt_prices


class TestSessionClock:

    def test_session_bounds(self):
        assert is_session_hours(datetime(2026, 1, 7, 9, 30, tzinfo=EXCHANGE_TZ))
        assert is_session_hours(datetime(2026, 1, 7, 15, 59, tzinfo=EXCHANGE_TZ))
        assert not is_session_hours(datetime(2026, 1, 7, 16, 0, tzinfo=EXCHANGE_TZ))
        assert not is_session_hours(datetime(2026, 1, 7, 9, 29, tzinfo=EXCHANGE_TZ))

    def test_utc_converted_to_exchange_time(self):
        # 15:00 UTC is 10:00 in New York during standard time
        assert is_session_hours(datetime(2026, 1, 7, 15, 0, tzinfo=timezone.utc))

    def test_order_window(self):
        start, end = parse_clock("04:00"), parse_clock("20:00")
        assert in_window(datetime(2026, 1, 7, 4, 0, tzinfo=EXCHANGE_TZ), start, end)
        assert not in_window(datetime(2026, 1, 7, 20, 0, tzinfo=EXCHANGE_TZ), start, end)

    def test_previous_weekdays_skip_weekend(self):
        # Monday 2026-01-05: walk back Fri, Thu, ...
        days = list(previous_weekdays(datetime(2026, 1, 5, 12, 0, tzinfo=EXCHANGE_TZ), max_days_back=4))
        assert [d.isoformat() for d in days] == ["2026-01-02", "2026-01-01"]


class TestCurrentPrice:

    def test_in_session_uses_alpaca(self):
        service, alpaca, alt_prices = _service(IN_SESSION)
        alpaca.latest_trade_price.return_value = 101.25

        assert service.current_price("AAPL") == 101.25
        alt_prices.extended_hours_price.assert_not_called()

    def test_outside_session_uses_alternate_source(self):
        service, alpaca, alt_prices = _service(AFTER_HOURS)
        alt_prices.extended_hours_price.return_value = 99.5

        assert service.current_price("AAPL") == 99.5
        alpaca.latest_trade_price.assert_not_called()

    def test_transient_failure_yields_none(self):
        service, alpaca, _ = _service(IN_SESSION)
        alpaca.latest_trade_price.side_effect = TransientCallError("/trades/latest", 503)
        assert service.current_price("AAPL") is None


class TestPriorSessionVolume:

    def test_walks_back_to_first_day_with_volume(self):
        service, alpaca, _ = _service(IN_SESSION)
        # Tue (holiday-like, empty), then Mon has a bar
        alpaca.daily_volume.side_effect = [0.0, 1_250_000.0]

        assert service.prior_session_volume("AAPL") == 1_250_000.0
        assert alpaca.daily_volume.call_count == 2

    def test_no_bars_means_zero(self):
        service, alpaca, _ = _service(IN_SESSION)
        alpaca.daily_volume.return_value = 0.0
        assert service.prior_session_volume("ZZZZ") == 0.0


class TestValuation:

    def test_after_hours_uses_price_file_and_drops_missing(self, tmp_path):
        price_file = tmp_path / "alt.txt"
        price_file.write_text("AAPL: 105.5\nbad line\nMSFT: not-a-price\n")
        service, _, _ = _service(AFTER_HOURS, alt_file=AltHoursPriceFile(price_file))

        valued = service.value_positions([
            make_position("AAPL", 10, 100.0, 101.0),
            make_position("MSFT", 5, 300.0, 310.0),
        ])

        assert list(valued) == ["AAPL"]
        assert valued["AAPL"].current_price == 105.5
        assert valued["AAPL"].market_value == pytest.approx(1055.0)

    def test_in_session_uses_reported_prices(self):
        service, _, _ = _service(IN_SESSION)
        valued = service.value_positions([make_position("AAPL", 10, 100.0, 101.0)])
        assert valued["AAPL"].current_price == 101.0

    def test_missing_price_file_is_empty(self, tmp_path):
        assert AltHoursPriceFile(tmp_path / "missing.txt").read() == {}

    def test_undecodable_bytes_only_drop_their_line(self, tmp_path):
        price_file = tmp_path / "alt.txt"
        price_file.write_bytes(b"AAPL: 100.5\n\xff: 3\nMS\xfeFT: 310\nTSLA: 250\n")

        assert AltHoursPriceFile(price_file).read() == {"AAPL": 100.5, "TSLA": 250.0}

    def test_after_hours_valuation_survives_bad_bytes(self, tmp_path):
        price_file = tmp_path / "alt.txt"
        price_file.write_bytes(b"AAPL: 100.5\n\xff: 3\n")
        evening = datetime(2026, 1, 7, 20, 0, tzinfo=EXCHANGE_TZ)
        service, _, _ = _service(evening, alt_file=AltHoursPriceFile(price_file))

        valued = service.value_positions([make_position("AAPL", 10, 90.0, 95.0)])

        assert valued["AAPL"].current_price == 100.5


def test_fmp_accepts_list_payload():
    client = FmpPriceClient(api_key="k")
    client.http = Mock()
    client.http.get.return_value = [{"symbol": "AAPL", "price": 187.3}]

    assert client.extended_hours_price("AAPL") == 187.3
    assert client.http.get.call_args.kwargs["query"] == {"apikey": "k"}
