"""
Daily portfolio history.

Replays the accounting fold one calendar day at a time and values the open
positions with that day's close, carrying the last known close forward over
weekends and holidays. Prices are converted with each asset's current FX
snapshot, not the rate that applied on the day; long-lived foreign-currency
positions are therefore only approximately valued in the past.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from models import Asset, Transaction
from services.accounting import (
    AccountingPolicy,
    DEFAULT_POLICY,
    FxRateFn,
    Ledger,
    index_assets,
    order_transactions,
    price_in_base,
)

logger = logging.getLogger(__name__)

# symbol -> {"YYYY-MM-DD": close in quote currency}
PriceSeries = Mapping[str, Mapping[Union[str, date], float]]


@dataclass
class HistoryPoint:
    """Portfolio state at the end of one day."""
    date: date
    invested: float
    value: float


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def build_price_frame(price_series: PriceSeries, start: date, end: date) -> pd.DataFrame:
    """
    Daily close matrix (rows = calendar days start..end, columns = symbols).

    Each column is forward-filled from the last known close, including closes
    dated before start; days before a symbol's first close stay NaN.
    """
    days = pd.date_range(start=start, end=end, freq="D")
    columns: Dict[str, pd.Series] = {}

    for symbol, series in price_series.items():
        if not series:
            continue
        closes = pd.Series(
            {pd.Timestamp(day).normalize(): float(close) for day, close in series.items() if close is not None},
            dtype="float64"
        )
        if closes.empty:
            continue
        closes = closes[~closes.index.duplicated(keep="last")].sort_index()
        columns[symbol] = closes

    if not columns:
        return pd.DataFrame(index=days)

    frame = pd.DataFrame(columns)
    frame = frame.reindex(frame.index.union(days)).sort_index().ffill()
    return frame.reindex(days)


def build_history(
    transactions: Iterable[Transaction],
    price_series: PriceSeries,
    assets: Union[Mapping[str, Asset], Iterable[Asset], None],
    base_currency: str,
    fx_rate: Optional[FxRateFn] = None,
    today: Optional[date] = None,
    policy: AccountingPolicy = DEFAULT_POLICY
) -> List[HistoryPoint]:
    """
    One point per calendar day from the first transaction through today.

    invested is the cumulative net contribution (deposits, gifts and credited
    units minus withdrawals); value is cash plus open positions, so the last point
    agrees with compute_summary for the same ledger and prices. It
    uses each asset's live current_price when one is stored.

    Args:
        transactions: Ledger rows of one portfolio
        price_series: Historical closes per symbol, keyed by ISO date
        assets: Asset metadata (quote currency, FX snapshot, live price)
        base_currency: The portfolio currency
        fx_rate: Callable (from, to) -> rate for pairs without a stored snapshot
        today: Last day of the series (defaults to the current UTC date)
        policy: Fold configuration

    Returns:
        List of HistoryPoint in date order; empty for an empty ledger
    """
    ordered = order_transactions(transactions)
    if not ordered:
        return []

    start = ordered[0].transaction_date.date()
    end = today or utc_today()
    if end < start:
        end = start

    frame = build_price_frame(price_series, start, end)
    asset_map = index_assets(assets)
    ledger = Ledger(base_currency, policy)

    # Quote-currency -> base-currency multiplier per symbol, from current FX snapshots
    unit_factors: Dict[str, float] = {}

    def unit_factor(symbol: str) -> float:
        if symbol not in unit_factors:
            asset = asset_map.get(symbol)
            if asset is None:
                unit_factors[symbol] = 1.0
            else:
                unit_factors[symbol] = price_in_base(1.0, asset, base_currency, fx_rate, policy)[0]
        return unit_factors[symbol]

    points = []
    next_index = 0
    for day in frame.index:
        current_day = day.date()
        while next_index < len(ordered) and ordered[next_index].transaction_date.date() <= current_day:
            ledger.apply(ordered[next_index])
            next_index += 1

        is_last_day = current_day == end
        value = ledger.cash
        for position in ledger.open_positions():
            price = None
            asset = asset_map.get(position.symbol)
            if is_last_day and asset is not None and asset.current_price is not None:
                price = asset.current_price
            elif position.symbol in frame.columns:
                close = frame.at[day, position.symbol]
                if not pd.isna(close):
                    price = float(close)
            if price is None:
                continue
            value += position.quantity * price * unit_factor(position.symbol)

        points.append(HistoryPoint(date=current_day, invested=ledger.net_contributions, value=value))

    return points
