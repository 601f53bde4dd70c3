"""
Manual price adjustments from a broker "portfolio summary" JSON export.

Expected shape:
    {"portfolio_summary": [{"asset_name", "current_price", "net_value",
                            "total_investment_units", "positions": [...]}]}

Each recognised asset gets its current price overwritten, and when the
summary's net value implies an exchange rate (net_value / (units x price))
that rate becomes the asset's USD snapshot.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from db_engine import get_session
from repositories import AssetRepository, PortfolioRepository
from services.common import ServiceResult

logger = logging.getLogger(__name__)

SYMBOL_DASH_PREFIX = re.compile(r"^([A-Z0-9.]+)\s-")
SYMBOL_PAREN_SUFFIX = re.compile(r"\(([A-Z0-9.]+)\)$")
MAX_BARE_SYMBOL_LENGTH = 10


@dataclass
class AdjustmentResult:
    updated: int = 0
    skipped: List[str] = field(default_factory=list)


def parse_symbol(asset_name: Optional[str]) -> Optional[str]:
    """
    Ticker from an asset label: "AAPL - Apple Inc", "Apple Inc (AAPL)" or a bare "AAPL".
    """
    if not asset_name:
        return None
    name = asset_name.strip()

    match = SYMBOL_DASH_PREFIX.match(name)
    if match:
        return match.group(1).strip()

    match = SYMBOL_PAREN_SUFFIX.search(name)
    if match:
        return match.group(1).strip()

    if " " not in name and len(name) < MAX_BARE_SYMBOL_LENGTH:
        return name
    return None


def parse_units(units: Any) -> float:
    """Numeric units; strings such as "<0.01" count as zero."""
    if isinstance(units, bool):
        return 0.0
    if isinstance(units, (int, float)):
        return float(units)
    if isinstance(units, str) and "<" not in units:
        try:
            return float(units)
        except ValueError:
            return 0.0
    return 0.0


def implied_exchange_rate(net_value: Any, units: float, price: Any) -> Optional[float]:
    """net_value / (units x price) when that is a positive finite number."""
    try:
        price = float(price)
        net_value = float(net_value)
    except (TypeError, ValueError):
        return None
    if units <= 0 or price <= 0:
        return None
    rate = net_value / (units * price)
    if rate > 0 and math.isfinite(rate):
        return rate
    return None


def apply_adjustments(portfolio_id: int, json_content: str) -> ServiceResult[AdjustmentResult]:
    """
    Apply a summary JSON to the stored asset prices.

    Returns:
        ServiceResult carrying how many assets were updated and which labels were skipped
    """
    if PortfolioRepository.get_by_id(portfolio_id) is None:
        return ServiceResult.fail("Portfolio not found")

    try:
        data = json.loads(json_content)
    except (TypeError, ValueError) as e:
        return ServiceResult.fail(f"Invalid JSON: {e}")

    items = data.get("portfolio_summary") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return ServiceResult.fail("Invalid JSON format: missing 'portfolio_summary' array.")

    result = AdjustmentResult()
    with get_session() as session:
        for item in items:
            if not isinstance(item, dict):
                continue
            label = item.get("asset_name")
            symbol = parse_symbol(label)
            if symbol is None or AssetRepository.get_by_symbol(symbol, session=session) is None:
                result.skipped.append(str(label))
                continue

            try:
                price = float(item["current_price"])
            except (KeyError, TypeError, ValueError):
                result.skipped.append(str(label))
                continue
            units = parse_units(item.get("total_investment_units"))
            rate = implied_exchange_rate(item.get("net_value"), units, price)

            AssetRepository.update_market_data(
                symbol,
                current_price=price,
                exchange_rate_to_usd=rate,
                session=session,
            )
            result.updated += 1

    logger.info(f"Applied adjustments to portfolio {portfolio_id}: {result.updated} assets updated")
    return ServiceResult.ok(result)
