"""
Portfolio accounting engine.

A single left-to-right fold over a date-ordered ledger maintains cash, per-asset
holdings (quantity and weighted-average cost basis), realized gains, dividends,
fees and net invested capital. The summary, the per-asset breakdown and the
daily history all run this same fold; broker and currency quirks are expressed
through AccountingPolicy rather than separate code paths.

Cost basis is a single average cost per asset, not FIFO lots: a SELL relieves
avg_cost x quantity and the remaining units keep the same average.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from models import Asset, Transaction, TransactionType
from services.common import PENCE_CURRENCIES, QUANTITY_EPSILON

logger = logging.getLogger(__name__)

FxRateFn = Callable[[str, str], float]

# Cash in, counted as money the user contributed
CONTRIBUTION_TYPES = (TransactionType.DEPOSIT, TransactionType.GIFT)
# Units credited without a cash debit (rewards, round-ups)
CREDITED_UNIT_TYPES = (TransactionType.SAVEBACK, TransactionType.ROUNDUP)
# Types that open or add to a position
ACQUISITION_TYPES = (TransactionType.BUY, TransactionType.SAVEBACK, TransactionType.ROUNDUP)


@dataclass(frozen=True)
class AccountingPolicy:
    """
    Knobs for the ledger fold.

    Attributes:
        quantity_epsilon: Quantities with a smaller magnitude count as zero
        pence_currencies: Quote currencies whose prices are divided by 100
        implicit_deposits: When a BUY would push cash below zero, book the
            shortage as an implicit contribution and clamp cash at zero
        invested_currencies: Source currencies tracked in the invested split
    """
    quantity_epsilon: float = QUANTITY_EPSILON
    pence_currencies: frozenset = PENCE_CURRENCIES
    implicit_deposits: bool = False
    invested_currencies: Tuple[str, ...] = ("EUR", "USD")


DEFAULT_POLICY = AccountingPolicy()


@dataclass
class Holding:
    """Running position in one asset."""
    symbol: str
    quantity: float = 0.0
    cost: float = 0.0
    realized_gain: float = 0.0
    dividends: float = 0.0
    first_purchase_date: Optional[datetime] = None

    @property
    def avg_cost(self) -> float:
        return self.cost / self.quantity if self.quantity > 0 else 0.0


@dataclass
class PortfolioSummary:
    """Headline figures of a portfolio, all in its base currency."""
    currency: str
    cash_balance: float = 0.0
    assets_value: float = 0.0
    current_value: float = 0.0
    total_invested: float = 0.0
    total_gain: float = 0.0
    total_gain_percent: float = 0.0
    realized_gains: float = 0.0
    total_dividends: float = 0.0
    total_interest: float = 0.0
    total_fees: float = 0.0
    total_invested_eur: float = 0.0
    total_invested_usd: float = 0.0
    implicit_deposits: float = 0.0
    degraded_rates: List[str] = field(default_factory=list)


@dataclass
class AssetBreakdownRow:
    """Per-asset view of a portfolio."""
    symbol: str
    name: str
    asset_class: str
    quantity: float
    current_price: float
    current_price_converted: float
    quote_currency: str
    exchange_rate: float
    avg_cost_per_share: float
    total_cost: float
    current_value: float
    unrealized_gain: float
    unrealized_gain_percent: float
    realized_gain: float
    dividends: float
    total_gain: float
    first_purchase_date: Optional[datetime]
    allocation_percent: float = 0.0


def _num(value) -> float:
    """Missing optional numbers count as zero."""
    return float(value) if value is not None else 0.0


def _transaction_type(tx) -> Optional[TransactionType]:
    raw = tx.transaction_type
    if isinstance(raw, str) and not isinstance(raw, TransactionType):
        raw = raw.strip().upper()
    try:
        return TransactionType(raw)
    except ValueError:
        return None


def order_transactions(transactions: Iterable) -> List:
    """Sort by date; equal dates keep their incoming (insertion/id) order."""
    return sorted(transactions, key=lambda tx: tx.transaction_date)


def index_assets(assets: Union[Mapping[str, Asset], Iterable[Asset], None]) -> Dict[str, Asset]:
    """Accept either a symbol->Asset mapping or a plain list of assets."""
    if assets is None:
        return {}
    if isinstance(assets, Mapping):
        return dict(assets)
    return {asset.symbol: asset for asset in assets}


def _degraded(from_currency: str, to_currency: str, reason: str) -> float:
    logger.warning(
        f"FX lookup {from_currency}->{to_currency} {reason}; using 1.0",
        extra={"event": "fx_rate_degraded", "from_currency": from_currency, "to_currency": to_currency}
    )
    return 1.0


def _safe_rate(fx_rate: Optional[FxRateFn], from_currency: str, to_currency: str) -> float:
    if fx_rate is None:
        logger.warning(f"No FX source for {from_currency}->{to_currency}; using 1.0")
        return 1.0
    try:
        rate = fx_rate(from_currency, to_currency)
    except Exception as e:
        return _degraded(from_currency, to_currency, f"failed: {e}")
    if not rate or rate <= 0:
        return _degraded(from_currency, to_currency, f"returned {rate!r}")
    return float(rate)


def conversion_rate(
    asset: Asset,
    base_currency: str,
    fx_rate: Optional[FxRateFn],
    policy: AccountingPolicy = DEFAULT_POLICY
) -> float:
    """
    Rate turning one unit of the asset's (pence-normalized) quote currency into base currency.

    Order of preference: same currency, a stored snapshot rate that matches the
    base currency, the stored USD rate pivoted through USD->base, then a live
    quote->base lookup.
    """
    base = base_currency.upper()
    quote = asset.quote_currency or base
    if quote in policy.pence_currencies:
        quote = "GBP"
    quote = quote.upper()

    if quote == base:
        return 1.0
    if base == "USD" and asset.exchange_rate_to_usd:
        return float(asset.exchange_rate_to_usd)
    if base == "EUR" and asset.exchange_rate_to_eur:
        return float(asset.exchange_rate_to_eur)
    if asset.exchange_rate_to_usd:
        return float(asset.exchange_rate_to_usd) * _safe_rate(fx_rate, "USD", base)
    return _safe_rate(fx_rate, quote, base)


def price_in_base(
    price: Optional[float],
    asset: Asset,
    base_currency: str,
    fx_rate: Optional[FxRateFn],
    policy: AccountingPolicy = DEFAULT_POLICY
) -> Tuple[float, float]:
    """
    Convert a quote-currency price to base currency.

    Returns:
        Tuple of (converted price, rate applied after pence rescaling)
    """
    effective = _num(price)
    if asset.quote_currency in policy.pence_currencies:
        effective /= 100.0
    rate = conversion_rate(asset, base_currency, fx_rate, policy)
    return effective * rate, rate


class Ledger:
    """
    Mutable fold state. Feed transactions in date order through apply().

    Never raises on malformed rows: unknown types are skipped and counted,
    missing quantity/fee are treated as zero.
    """

    def __init__(self, base_currency: str, policy: AccountingPolicy = DEFAULT_POLICY):
        self.base_currency = base_currency.upper()
        self.policy = policy
        self.cash = 0.0
        self.explicit_invested = 0.0
        self.implicit_deposits = 0.0
        self.realized_gains = 0.0
        self.total_dividends = 0.0
        self.total_interest = 0.0
        self.total_fees = 0.0
        self.invested_by_currency: Dict[str, float] = {c: 0.0 for c in policy.invested_currencies}
        self.holdings: Dict[str, Holding] = {}
        self.skipped = 0

    @property
    def net_contributions(self) -> float:
        """Money put in by the user, including inferred implicit deposits."""
        return self.explicit_invested + self.implicit_deposits

    def holding(self, symbol: str) -> Holding:
        if symbol not in self.holdings:
            self.holdings[symbol] = Holding(symbol=symbol)
        return self.holdings[symbol]

    def apply_all(self, transactions: Iterable) -> "Ledger":
        for tx in order_transactions(transactions):
            self.apply(tx)
        return self

    def apply(self, tx) -> None:
        tx_type = _transaction_type(tx)
        if tx_type is None:
            self.skipped += 1
            logger.warning(f"Skipping transaction {getattr(tx, 'id', None)} with unknown type {tx.transaction_type!r}")
            return

        amount = _num(tx.amount)
        fee = _num(tx.fee)
        quantity = _num(tx.quantity)
        symbol = tx.asset_symbol
        self.total_fees += fee

        if tx_type in CONTRIBUTION_TYPES:
            self.cash += amount
            self.explicit_invested += amount
            self._attribute(tx, amount)

        elif tx_type == TransactionType.WITHDRAWAL:
            self.cash -= amount
            self.explicit_invested -= amount
            self._attribute(tx, -amount)

        elif tx_type == TransactionType.BUY:
            self.cash -= amount + fee
            if symbol:
                position = self.holding(symbol)
                position.quantity += quantity
                position.cost += amount + fee
                if quantity > 0:
                    self._mark_purchase(position, tx.transaction_date)
            if self.policy.implicit_deposits and self.cash < 0:
                self.implicit_deposits += -self.cash
                self.cash = 0.0

        elif tx_type == TransactionType.SELL:
            proceeds = amount - fee
            self.cash += proceeds
            if symbol:
                self._sell(self.holding(symbol), quantity, proceeds)
            else:
                self.realized_gains += proceeds

        elif tx_type == TransactionType.DIVIDEND:
            self.cash += amount
            self.total_dividends += amount
            if symbol:
                self.holding(symbol).dividends += amount

        elif tx_type == TransactionType.INTEREST:
            self.cash += amount
            self.total_interest += amount

        elif tx_type in CREDITED_UNIT_TYPES:
            # Cash-neutral: units arrive as an external credit
            self.explicit_invested += amount
            self._attribute(tx, amount)
            if symbol:
                position = self.holding(symbol)
                position.quantity += quantity
                position.cost += amount
                if quantity > 0:
                    self._mark_purchase(position, tx.transaction_date)

    def _sell(self, position: Holding, quantity: float, proceeds: float) -> None:
        held = position.quantity
        sold = min(quantity, held) if held > 0 else 0.0
        cost_of_sold = position.avg_cost * sold
        gain = proceeds - cost_of_sold

        position.realized_gain += gain
        self.realized_gains += gain
        position.quantity = held - quantity
        position.cost = max(position.cost - cost_of_sold, 0.0)

        if position.quantity < self.policy.quantity_epsilon:
            position.quantity = 0.0
            position.cost = 0.0

    @staticmethod
    def _mark_purchase(position: Holding, when: datetime) -> None:
        if position.first_purchase_date is None or when < position.first_purchase_date:
            position.first_purchase_date = when

    def _attribute(self, tx, amount: float) -> None:
        """Add a contribution to the source-currency split."""
        if tx.original_amount is not None:
            currency = (tx.original_currency or self.base_currency).upper()
            value = abs(float(tx.original_amount))
            signed = value if amount >= 0 else -value
        else:
            currency = self.base_currency
            rate = _num(tx.exchange_rate) or 1.0
            signed = amount / rate

        if currency in self.invested_by_currency or currency == self.base_currency:
            self.invested_by_currency[currency] = self.invested_by_currency.get(currency, 0.0) + signed

    def invested_split(self) -> Dict[str, float]:
        """
        Source-currency split of invested capital.
        Any capital the split does not account for (legacy rows, implicit
        deposits) is reconciled into the base-currency bucket.
        """
        split = dict(self.invested_by_currency)
        gap = self.net_contributions - sum(split.values())
        if gap > 1e-6:
            split[self.base_currency] = split.get(self.base_currency, 0.0) + gap
        return split

    def open_positions(self) -> List[Holding]:
        eps = self.policy.quantity_epsilon
        return [h for h in self.holdings.values() if h.quantity > eps]

    def assets_value(self, prices: Mapping[str, float]) -> float:
        """Value of open positions given base-currency unit prices."""
        return sum(h.quantity * prices.get(h.symbol, 0.0) for h in self.open_positions())


def compute_summary(
    transactions: Iterable[Transaction],
    assets: Union[Mapping[str, Asset], Iterable[Asset], None],
    base_currency: str,
    fx_rate: Optional[FxRateFn] = None,
    policy: AccountingPolicy = DEFAULT_POLICY
) -> PortfolioSummary:
    """
    Fold a ledger into the portfolio's headline figures.

    Args:
        transactions: Ledger rows of one portfolio (any order; sorted by date here)
        assets: Asset metadata for the symbols referenced by the ledger
        base_currency: The portfolio currency
        fx_rate: Callable (from, to) -> rate, used when stored snapshot rates don't apply
        policy: Fold configuration

    Returns:
        PortfolioSummary; an empty ledger yields all zeros
    """
    asset_map = index_assets(assets)
    ledger = Ledger(base_currency, policy).apply_all(transactions)

    assets_value = 0.0
    for position in ledger.open_positions():
        asset = asset_map.get(position.symbol)
        if asset is None:
            logger.debug(f"No metadata for {position.symbol}; valued at 0")
            continue
        unit_price, _ = price_in_base(asset.current_price, asset, base_currency, fx_rate, policy)
        assets_value += position.quantity * unit_price

    total_invested = ledger.net_contributions
    current_value = ledger.cash + assets_value
    total_gain = current_value - total_invested
    split = ledger.invested_split()

    return PortfolioSummary(
        currency=ledger.base_currency,
        cash_balance=ledger.cash,
        assets_value=assets_value,
        current_value=current_value,
        total_invested=total_invested,
        total_gain=total_gain,
        total_gain_percent=(total_gain / total_invested * 100) if total_invested > 0 else 0.0,
        realized_gains=ledger.realized_gains,
        total_dividends=ledger.total_dividends,
        total_interest=ledger.total_interest,
        total_fees=ledger.total_fees,
        total_invested_eur=split.get("EUR", 0.0),
        total_invested_usd=split.get("USD", 0.0),
        implicit_deposits=ledger.implicit_deposits,
    )


def compute_asset_breakdown(
    transactions: Iterable[Transaction],
    assets: Union[Mapping[str, Asset], Iterable[Asset], None],
    base_currency: str,
    fx_rate: Optional[FxRateFn] = None,
    include_closed: bool = False,
    policy: AccountingPolicy = DEFAULT_POLICY
) -> List[AssetBreakdownRow]:
    """
    Per-asset rows of the same fold, sorted by current value (largest first).

    Positions that are fully exited and never produced a realized gain or a
    dividend are dropped unless include_closed is set.
    """
    asset_map = index_assets(assets)
    ledger = Ledger(base_currency, policy).apply_all(transactions)
    eps = policy.quantity_epsilon

    rows = []
    for symbol, position in ledger.holdings.items():
        is_open = abs(position.quantity) >= eps
        if not include_closed and not is_open and position.realized_gain == 0 and position.dividends == 0:
            continue

        asset = asset_map.get(symbol) or Asset(symbol=symbol, name=symbol, quote_currency=base_currency)
        converted, rate = price_in_base(asset.current_price, asset, base_currency, fx_rate, policy)

        quantity = position.quantity if is_open else 0.0
        current_value = quantity * converted
        total_cost = position.cost if is_open else 0.0
        unrealized = current_value - total_cost if is_open else 0.0

        rows.append(AssetBreakdownRow(
            symbol=symbol,
            name=asset.name or symbol,
            asset_class=asset.asset_class or "EQUITY",
            quantity=quantity,
            current_price=_num(asset.current_price),
            current_price_converted=converted,
            quote_currency=asset.quote_currency or base_currency,
            exchange_rate=rate,
            avg_cost_per_share=total_cost / quantity if is_open else 0.0,
            total_cost=total_cost,
            current_value=current_value,
            unrealized_gain=unrealized,
            unrealized_gain_percent=(unrealized / total_cost * 100) if total_cost > 0 else 0.0,
            realized_gain=position.realized_gain,
            dividends=position.dividends,
            total_gain=unrealized + position.realized_gain + position.dividends,
            first_purchase_date=position.first_purchase_date,
        ))

    total_value = sum(row.current_value for row in rows)
    for row in rows:
        row.allocation_percent = (row.current_value / total_value * 100) if total_value > 0 else 0.0

    rows.sort(key=lambda row: row.current_value, reverse=True)
    return rows
