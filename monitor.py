"""
Background price refresh script using APScheduler.
Periodically refreshes the stored price and FX snapshot of every asset.
"""

import sys
import time
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from config import get_settings
from db_engine import init_db
from services.assets import AssetService, STATUS_ERROR, STATUS_NO_DATA

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=get_settings().log_level_value,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def refresh_all_prices(service: AssetService = None):
    """
    Refresh every stored asset.
    Called by the scheduler at configured intervals.
    """
    service = service or AssetService()

    logger.info("=" * 60)
    logger.info("Starting price refresh...")

    result = service.update_all_prices()
    if not result.success:
        logger.error(f"Price refresh failed: {result.error}")
        return result

    report = result.data
    for status in (STATUS_NO_DATA, STATUS_ERROR):
        symbols = report.by_status(status)
        if symbols:
            logger.warning(f"{len(symbols)} symbols with status {status}: {', '.join(symbols)}")

    logger.info(f"Price refresh complete. Updated: {report.updated_count}/{len(report.results)}")
    logger.info("=" * 60)
    return result


def start_price_scheduler():
    """
    Start the background scheduler for price refreshes.
    Runs every hour of settings.price_refresh_cron_hours on weekdays.
    """
    settings = get_settings()
    scheduler = BackgroundScheduler()

    scheduler.add_job(
        refresh_all_prices,
        trigger=CronTrigger(day_of_week='mon-fri', hour=settings.price_refresh_cron_hours, minute='0'),
        id='price_refresh',
        name='Price Refresh',
        replace_existing=True
    )

    logger.info("Running initial price refresh on startup...")
    refresh_all_prices()

    scheduler.start()
    logger.info(f"Price scheduler started. Running hourly ({settings.price_refresh_cron_hours}) on weekdays.")

    return scheduler


if __name__ == "__main__":
    init_db()

    if len(sys.argv) > 1 and sys.argv[1] == "--once":
        refresh_all_prices()
    else:
        scheduler = None
        try:
            scheduler = start_price_scheduler()
            print("\n" + "=" * 60)
            print("FolioLedger price refresh is running...")
            print("Press Ctrl+C to stop.")
            print("=" * 60 + "\n")

            while True:
                time.sleep(1)

        except (KeyboardInterrupt, SystemExit):
            logger.info("Shutting down price scheduler...")
            if scheduler is not None:
                scheduler.shutdown()
            logger.info("Price scheduler stopped.")
