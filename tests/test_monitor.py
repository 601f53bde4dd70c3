from unittest.mock import MagicMock, patch

import monitor
from services.assets import STATUS_ERROR, STATUS_NO_DATA, STATUS_UPDATED, PriceRefreshReport, PriceUpdate
from services.common import ServiceResult


def test_refresh_all_prices_reports_failures(caplog):
    service = MagicMock()
    service.update_all_prices.return_value = ServiceResult.ok(PriceRefreshReport(results=[
        PriceUpdate(symbol="AAPL", status=STATUS_UPDATED, price=200.0),
        PriceUpdate(symbol="GONE", status=STATUS_NO_DATA),
        PriceUpdate(symbol="MSFT", status=STATUS_ERROR, error="timeout"),
    ]))

    result = monitor.refresh_all_prices(service)

    assert result.data.updated_count == 1
    assert "GONE" in caplog.text
    assert "MSFT" in caplog.text


def test_refresh_all_prices_failed_result():
    service = MagicMock()
    service.update_all_prices.return_value = ServiceResult.fail("Failed to update prices")

    assert not monitor.refresh_all_prices(service).success


@patch("monitor.refresh_all_prices")
@patch("monitor.BackgroundScheduler")
def test_scheduler_registers_weekday_job(mock_scheduler_cls, mock_refresh):
    scheduler = monitor.start_price_scheduler()

    assert scheduler is mock_scheduler_cls.return_value
    mock_refresh.assert_called_once_with()
    scheduler.start.assert_called_once()
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == "price_refresh"
    assert "mon-fri" in str(kwargs["trigger"])
