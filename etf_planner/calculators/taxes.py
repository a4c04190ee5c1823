"""German flat-rate taxation of fund sales and the lot ledger behind it.

Every purchase creates a :class:`Lot` with its own cost basis.  Sales consume
lots first-in-first-out (or last-in-first-out) and tax the realized gain:

* only ``taxable_fraction`` of a gain is taxable (partial exemption by fund
  type: 70 % for equity funds, 85 % for mixed funds, 100 % for bond funds);
* taxable gains are offset by the loss pot first, then by the remaining annual
  allowance, and the rest is taxed at the flat rate;
* realized losses feed the loss pot, which carries over between years.

Accumulating funds are additionally taxed on a deemed distribution each year.
The amount is computed in December from the baseline rate and the year's
actual gain, raises the cost basis of the lots, and becomes payable at the
start of the next tax year.  That obligation is represented by an explicit
:class:`PendingDeemedTax` record.

Example
-------

>>> ledger = TaxLedger(capital_gains_tax_rate(), annual_allowance=0.0)
>>> _ = ledger.buy(1000.0, price=100.0, month=1)
>>> sale = ledger.sell_to_cover_net(500.0, price=200.0)
>>> round(sale.tax_paid, 2), round(sale.gross_proceeds, 2)
(50.85, 550.85)
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional

from ..config import (
    BASE_TAX_RATE,
    CHURCH_TAX_RATES,
    CONSOLIDATION_TOLERANCE,
    COVERAGE_EPSILON,
    DEEMED_RETURN_FACTOR,
    MONTHS_PER_YEAR,
    SOLIDARITY_SURCHARGE,
    ScenarioValidationError,
)

# Combined rates published for church tax members (church tax reduces the
# capital gains tax base, so the rates are not simply additive).
_CHURCH_TAX_COMBINED = {"8": 0.27818, "9": 0.27995}


def capital_gains_tax_rate(church_tax: str = "none") -> float:
    """Flat tax rate including solidarity surcharge and church tax.

    >>> round(capital_gains_tax_rate(), 5)
    0.26375
    """
    if church_tax not in CHURCH_TAX_RATES:
        raise ScenarioValidationError([f"unknown church_tax {church_tax!r}"])
    base = BASE_TAX_RATE * (1 + SOLIDARITY_SURCHARGE)
    if church_tax == "none":
        return base
    return _CHURCH_TAX_COMBINED.get(church_tax, base + BASE_TAX_RATE * CHURCH_TAX_RATES[church_tax])


@dataclass
class Lot:
    shares: float
    price: float
    month: int


@dataclass(frozen=True)
class SaleResult:
    amount_still_needed: float
    tax_paid: float
    gross_proceeds: float
    taxable_gain: float


@dataclass(frozen=True)
class GrossSaleResult:
    net_proceeds: float
    tax_paid: float
    shortfall: float
    gross_proceeds: float


@dataclass(frozen=True)
class TaxCoverResult:
    cash: float
    # part of the original obligation that was paid
    tax_covered: float
    # tax triggered by the sales needed to pay it
    sale_tax: float
    shortfall: float

    @property
    def total_tax(self) -> float:
        return self.tax_covered + self.sale_tax


@dataclass(frozen=True)
class PendingDeemedTax:
    """Taxable deemed distribution of ``tax_year``, payable one year later."""

    tax_year: int
    taxable_amount: float


def consolidate_lots(lots: Iterable[Lot], tolerance: float = CONSOLIDATION_TOLERANCE) -> List[Lot]:
    """Merge lots whose cost basis rounds to the same ``tolerance`` bucket.

    Merged lots carry the share-weighted average price and the earliest
    acquisition month.  Total shares are preserved, empty lots are dropped and
    the result is ordered by acquisition month.
    """
    grouped = {}
    for lot in lots:
        if lot.shares <= 0:
            continue
        key = f"{math.floor(lot.price / tolerance + 0.5) * tolerance:.4f}"
        existing = grouped.get(key)
        if existing is None:
            grouped[key] = Lot(lot.shares, lot.price, lot.month)
            continue
        shares = existing.shares + lot.shares
        existing.price = (existing.price * existing.shares + lot.price * lot.shares) / shares
        existing.shares = shares
        existing.month = min(existing.month, lot.month)
    return sorted(grouped.values(), key=lambda lot: lot.month)


class TaxLedger:
    """Lots, loss pot and allowance usage of one simulated investor.

    Parameters
    ----------
    tax_rate : float
        Flat tax rate applied to taxable gains.
    taxable_fraction : float
        Share of a gain that is taxable after the partial exemption.
    annual_allowance : float
        Tax-free amount per calendar year.
    loss_pot : float
        Loss carryforward at the start.
    use_fifo : bool
        Sell the oldest lots first; ``False`` sells the newest lots first.
    """

    def __init__(
        self,
        tax_rate: float,
        taxable_fraction: float = 0.7,
        annual_allowance: float = 1000.0,
        loss_pot: float = 0.0,
        use_fifo: bool = True,
    ):
        self.tax_rate = tax_rate
        self.taxable_fraction = taxable_fraction
        self.annual_allowance = annual_allowance
        self.loss_pot = loss_pot
        self.allowance_used = 0.0
        self.use_fifo = use_fifo
        self.lots: Deque[Lot] = deque()

    @classmethod
    def for_scenario(cls, params) -> "TaxLedger":
        return cls(
            0.0 if params.tax_exempt else capital_gains_tax_rate(params.church_tax),
            taxable_fraction=params.taxable_fraction,
            annual_allowance=params.annual_allowance,
            loss_pot=params.initial_loss_pot,
            use_fifo=not params.use_lifo,
        )

    # --- positions -----------------------------------------------------
    @property
    def shares(self) -> float:
        return sum(lot.shares for lot in self.lots)

    def value(self, price: float) -> float:
        return self.shares * price

    @property
    def remaining_allowance(self) -> float:
        return max(0.0, self.annual_allowance - self.allowance_used)

    def buy(self, amount: float, price: float, month: int) -> Optional[Lot]:
        if amount <= 0:
            return None
        lot = Lot(amount / price, price, month)
        self.lots.append(lot)
        return lot

    def start_tax_year(self) -> None:
        self.allowance_used = 0.0

    def consolidate(self, tolerance: float = CONSOLIDATION_TOLERANCE) -> None:
        self.lots = deque(consolidate_lots(self.lots, tolerance))

    # --- taxation ------------------------------------------------------
    def shelter(self, taxable: float) -> float:
        """Offset ``taxable`` by the loss pot, then the allowance.

        Returns the amount that remains taxable.
        """
        if taxable <= 0:
            return 0.0
        from_pot = min(taxable, self.loss_pot)
        self.loss_pot -= from_pot
        taxable -= from_pot
        from_allowance = min(taxable, self.remaining_allowance)
        self.allowance_used += from_allowance
        return max(0.0, taxable - from_allowance)

    def _realize(self, taxable_gain: float) -> float:
        if taxable_gain > 0:
            return self.shelter(taxable_gain) * self.tax_rate
        if taxable_gain < 0:
            self.loss_pot += -taxable_gain
        return 0.0

    def _current_lot(self) -> Lot:
        return self.lots[0] if self.use_fifo else self.lots[-1]

    def _drop_current_lot(self) -> None:
        if self.use_fifo:
            self.lots.popleft()
        else:
            self.lots.pop()

    def _take(self, lot: Lot, shares_needed: float) -> float:
        shares = min(shares_needed, lot.shares)
        if shares_needed >= lot.shares:
            self._drop_current_lot()
        else:
            lot.shares -= shares
        return shares

    def sell_to_cover_net(self, amount: float, price: float) -> SaleResult:
        """Sell just enough shares to raise ``amount`` after taxes.

        For each lot the shares whose gain is covered by the loss pot or the
        allowance are sold tax free first; any further shares are sized in
        closed form from the net proceeds per taxed share.
        """
        remaining = amount
        tax_paid = 0.0
        gross = 0.0
        taxable_total = 0.0
        if price <= 0:
            return SaleResult(remaining, 0.0, 0.0, 0.0)

        while remaining > COVERAGE_EPSILON and self.lots:
            lot = self._current_lot()
            gain_per_share = price - lot.price
            if gain_per_share > 0:
                taxable_per_share = gain_per_share * self.taxable_fraction
                if taxable_per_share > 0:
                    pot_shares = min(self.loss_pot / taxable_per_share, lot.shares)
                    allowance_shares = min(
                        self.remaining_allowance / taxable_per_share, lot.shares - pot_shares
                    )
                else:
                    pot_shares, allowance_shares = lot.shares, 0.0
                tax_free_shares = pot_shares + allowance_shares
                if remaining / price <= tax_free_shares:
                    shares_needed = remaining / price
                else:
                    net_per_taxed_share = price - taxable_per_share * self.tax_rate
                    if net_per_taxed_share <= 0:
                        break
                    still_needed = remaining - tax_free_shares * price
                    shares_needed = tax_free_shares + still_needed / net_per_taxed_share
            else:
                shares_needed = remaining / price

            shares = self._take(lot, shares_needed)
            proceeds = shares * price
            taxable_gain = shares * gain_per_share * self.taxable_fraction
            tax = self._realize(taxable_gain)
            gross += proceeds
            taxable_total += taxable_gain
            tax_paid += tax
            remaining -= proceeds - tax

        return SaleResult(remaining, tax_paid, gross, taxable_total)

    def sell_gross(self, amount: float, price: float) -> GrossSaleResult:
        """Sell shares worth ``amount`` before taxes."""
        remaining = amount
        net = 0.0
        tax_paid = 0.0
        if price > 0:
            while remaining > COVERAGE_EPSILON and self.lots:
                lot = self._current_lot()
                gain_per_share = price - lot.price
                shares = self._take(lot, remaining / price)
                proceeds = shares * price
                tax = self._realize(shares * gain_per_share * self.taxable_fraction)
                net += proceeds - tax
                tax_paid += tax
                remaining -= proceeds
        shortfall = remaining if remaining > COVERAGE_EPSILON else 0.0
        return GrossSaleResult(net, tax_paid, shortfall, amount - remaining)

    def cover_tax(self, tax_due: float, cash: float, price: float) -> TaxCoverResult:
        """Pay ``tax_due`` from cash, selling shares for any remainder.

        Proceeds beyond the obligation are returned to cash.
        """
        if tax_due <= 0:
            return TaxCoverResult(cash, 0.0, 0.0, 0.0)
        from_cash = min(max(cash, 0.0), tax_due)
        cash -= from_cash
        remaining = tax_due - from_cash
        sale_tax = 0.0
        if remaining > COVERAGE_EPSILON and self.lots:
            sale = self.sell_to_cover_net(remaining, price)
            remaining = sale.amount_still_needed
            sale_tax = sale.tax_paid
        if remaining < 0:
            cash += -remaining
            remaining = 0.0
        shortfall = remaining if remaining > COVERAGE_EPSILON else 0.0
        return TaxCoverResult(cash, tax_due - remaining, sale_tax, shortfall)

    # --- deemed distribution --------------------------------------------
    def accrue_deemed_distribution(
        self, tax_year: int, price: float, price_at_year_start: float, baseline_rate: float
    ) -> Optional[PendingDeemedTax]:
        """Compute the deemed distribution of ``tax_year`` (0-based) in December.

        Per lot the notional return is ``value at year start x baseline rate x
        0.7``, pro-rated by months held for lots bought during the year and
        capped by the lot's actual gain.  The amount raises the lot's cost basis
        so the same gain is not taxed again on sale.
        """
        if baseline_rate <= 0:
            return None
        year_start_month = tax_year * MONTHS_PER_YEAR
        total = 0.0
        for lot in self.lots:
            if lot.shares <= 0:
                continue
            bought_this_year = lot.month > year_start_month
            if bought_this_year:
                start_value = lot.shares * lot.price
                month_in_year = (lot.month - 1) % MONTHS_PER_YEAR + 1
                time_share = (MONTHS_PER_YEAR - month_in_year + 1) / MONTHS_PER_YEAR
            else:
                start_value = lot.shares * price_at_year_start
                time_share = 1.0
            notional = start_value * baseline_rate * DEEMED_RETURN_FACTOR * time_share
            actual_gain = max(0.0, lot.shares * price - start_value)
            amount = min(notional, actual_gain)
            if amount > 0:
                total += amount
                lot.price += amount / lot.shares
        if total <= 0:
            return None
        return PendingDeemedTax(tax_year, total * self.taxable_fraction)

    def settle_deemed_distribution(self, pending: PendingDeemedTax, cash: float, price: float) -> TaxCoverResult:
        taxable = self.shelter(pending.taxable_amount)
        return self.cover_tax(taxable * self.tax_rate, cash, price)
