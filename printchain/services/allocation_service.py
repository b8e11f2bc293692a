from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable

from printchain.errors import AllocationError, InvalidOverride, InvalidQuantity
from printchain.models import AllocationMode

PRECISION = Decimal('0.0001')
CENT = Decimal('0.01')
SUPPLIES_PAPER_MARGIN_SHARE = Decimal('0.10')
ZERO = Decimal('0')


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(PRECISION, rounding=ROUND_HALF_UP)


def quantize_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateEntry:
    size_name: str
    manufacturer_cpm: Decimal
    paper_cost_cpm: Decimal
    paper_charged_cpm: Decimal
    customer_cpm: Decimal
    paper_weight_per_1000: Decimal | None = None
    intermediary_invoice_per_m: Decimal | None = None


@dataclass(frozen=True)
class AllocationOverrides:
    customer_cpm: Decimal | None = None


@dataclass(frozen=True)
class AllocationResult:
    mode: AllocationMode
    quantity: int
    quantity_in_thousands: Decimal
    customer_cpm: Decimal
    standard_customer_cpm: Decimal
    customer_total: Decimal
    broker_margin_cpm: Decimal
    broker_margin_total: Decimal
    intermediary_print_margin_cpm: Decimal
    intermediary_print_margin_total: Decimal
    intermediary_paper_margin_cpm: Decimal
    intermediary_paper_margin_total: Decimal
    intermediary_total_margin_cpm: Decimal
    intermediary_total_margin_total: Decimal
    intermediary_total_cpm: Decimal
    intermediary_total: Decimal
    manufacturer_cpm: Decimal
    manufacturer_total: Decimal
    paper_cost_cpm: Decimal
    paper_cost_total: Decimal
    paper_charged_cpm: Decimal
    paper_charged_total: Decimal
    paper_weight_per_1000: Decimal | None
    paper_weight_total: Decimal | None
    requires_approval: bool
    undercharge_amount: Decimal
    is_custom_pricing: bool

    def as_job_fields(self) -> dict[str, object]:
        skip = {'mode', 'quantity', 'quantity_in_thousands'}
        values = {f.name: getattr(self, f.name) for f in fields(self) if f.name not in skip}
        values['allocation_mode'] = self.mode
        return values


@dataclass(frozen=True)
class _Split:
    """Per-thousand split for one mode.

    ``balance`` names the CPM that takes the remainder after the others are
    quantized, so the party CPMs add back to the customer CPM exactly.
    """

    broker_margin_cpm: Decimal
    intermediary_print_margin_cpm: Decimal
    manufacturer_cpm: Decimal
    paper_cost_cpm: Decimal
    paper_charged_cpm: Decimal
    balance: str


def _normal_split(rate: RateEntry, customer_cpm: Decimal) -> _Split:
    pool = customer_cpm - rate.manufacturer_cpm - rate.paper_charged_cpm
    return _Split(
        broker_margin_cpm=pool / 2,
        intermediary_print_margin_cpm=pool / 2,
        manufacturer_cpm=rate.manufacturer_cpm,
        paper_cost_cpm=rate.paper_cost_cpm,
        paper_charged_cpm=rate.paper_charged_cpm,
        balance='intermediary_print_margin',
    )


def _manufacturer_supplies_paper_split(rate: RateEntry, customer_cpm: Decimal) -> _Split:
    # The manufacturer buys the stock, so no paper flows through the intermediary.
    margin = customer_cpm * SUPPLIES_PAPER_MARGIN_SHARE
    return _Split(
        broker_margin_cpm=margin,
        intermediary_print_margin_cpm=margin,
        manufacturer_cpm=customer_cpm - (margin * 2),
        paper_cost_cpm=ZERO,
        paper_charged_cpm=ZERO,
        balance='manufacturer',
    )


def _intermediary_waives_paper_margin_split(rate: RateEntry, customer_cpm: Decimal) -> _Split:
    pool = customer_cpm - rate.manufacturer_cpm - rate.paper_cost_cpm
    return _Split(
        broker_margin_cpm=pool / 2,
        intermediary_print_margin_cpm=pool / 2,
        manufacturer_cpm=rate.manufacturer_cpm,
        paper_cost_cpm=rate.paper_cost_cpm,
        paper_charged_cpm=rate.paper_cost_cpm,
        balance='intermediary_print_margin',
    )


_MODE_RULES: dict[AllocationMode, Callable[[RateEntry, Decimal], _Split]] = {
    AllocationMode.NORMAL: _normal_split,
    AllocationMode.MANUFACTURER_SUPPLIES_PAPER: _manufacturer_supplies_paper_split,
    AllocationMode.INTERMEDIARY_WAIVES_PAPER_MARGIN: _intermediary_waives_paper_margin_split,
}


def _resolve_mode(mode: AllocationMode | str) -> AllocationMode:
    try:
        return AllocationMode(mode)
    except ValueError as exc:
        raise AllocationError(f'Unknown allocation mode: {mode}') from exc


def quantity_in_thousands(quantity: object) -> Decimal:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(quantity)
    return Decimal(quantity) / Decimal(1000)


def _resolve_customer_cpm(rate: RateEntry, overrides: AllocationOverrides | None) -> Decimal:
    if overrides is None or overrides.customer_cpm is None:
        return rate.customer_cpm
    try:
        value = Decimal(overrides.customer_cpm)
    except (InvalidOperation, TypeError) as exc:
        raise InvalidOverride(f'Invalid customer CPM override: {overrides.customer_cpm!r}') from exc
    if not value.is_finite() or value <= 0:
        raise InvalidOverride('Customer CPM override must be greater than zero')
    return value


def extend(cpm: Decimal, qty_k: Decimal) -> Decimal:
    """Total for a per-thousand rate.

    A four-place CPM times a three-place quantity in thousands is exact, so
    no rounding happens here; amounts are taken to cents once, on the PO or
    invoice.
    """
    return cpm * qty_k


def allocate(
    rate: RateEntry,
    quantity: int,
    mode: AllocationMode | str,
    overrides: AllocationOverrides | None = None,
) -> AllocationResult:
    resolved_mode = _resolve_mode(mode)
    qty_k = quantity_in_thousands(quantity)
    customer_cpm = quantize_amount(_resolve_customer_cpm(rate, overrides))
    standard_cpm = quantize_amount(rate.customer_cpm)

    split = _MODE_RULES[resolved_mode](rate, customer_cpm)
    cpms = {
        'broker_margin': quantize_amount(split.broker_margin_cpm),
        'intermediary_print_margin': quantize_amount(split.intermediary_print_margin_cpm),
        'manufacturer': quantize_amount(split.manufacturer_cpm),
    }
    paper_cost_cpm = quantize_amount(split.paper_cost_cpm)
    paper_charged_cpm = quantize_amount(split.paper_charged_cpm)
    others = sum((value for key, value in cpms.items() if key != split.balance), ZERO)
    cpms[split.balance] = customer_cpm - others - paper_charged_cpm

    broker_margin_cpm = cpms['broker_margin']
    print_margin_cpm = cpms['intermediary_print_margin']
    paper_margin_cpm = paper_charged_cpm - paper_cost_cpm
    total_margin_cpm = print_margin_cpm + paper_margin_cpm
    intermediary_total_cpm = customer_cpm - broker_margin_cpm

    undercharge = ZERO
    if customer_cpm < standard_cpm:
        undercharge = extend(standard_cpm - customer_cpm, qty_k)

    weight_per_1000 = rate.paper_weight_per_1000
    weight_total = extend(weight_per_1000, qty_k) if weight_per_1000 is not None else None

    return AllocationResult(
        mode=resolved_mode,
        quantity=quantity,
        quantity_in_thousands=qty_k,
        customer_cpm=customer_cpm,
        standard_customer_cpm=standard_cpm,
        customer_total=extend(customer_cpm, qty_k),
        broker_margin_cpm=broker_margin_cpm,
        broker_margin_total=extend(broker_margin_cpm, qty_k),
        intermediary_print_margin_cpm=print_margin_cpm,
        intermediary_print_margin_total=extend(print_margin_cpm, qty_k),
        intermediary_paper_margin_cpm=paper_margin_cpm,
        intermediary_paper_margin_total=extend(paper_margin_cpm, qty_k),
        intermediary_total_margin_cpm=total_margin_cpm,
        intermediary_total_margin_total=extend(total_margin_cpm, qty_k),
        intermediary_total_cpm=intermediary_total_cpm,
        intermediary_total=extend(intermediary_total_cpm, qty_k),
        manufacturer_cpm=cpms['manufacturer'],
        manufacturer_total=extend(cpms['manufacturer'], qty_k),
        paper_cost_cpm=paper_cost_cpm,
        paper_cost_total=extend(paper_cost_cpm, qty_k),
        paper_charged_cpm=paper_charged_cpm,
        paper_charged_total=extend(paper_charged_cpm, qty_k),
        paper_weight_per_1000=weight_per_1000,
        paper_weight_total=weight_total,
        requires_approval=customer_cpm < standard_cpm,
        undercharge_amount=undercharge,
        is_custom_pricing=customer_cpm != standard_cpm,
    )


def overrides_from_customer_total(customer_total: Decimal, quantity: int) -> AllocationOverrides:
    """Derive a customer CPM override from a quoted job total."""
    qty_k = quantity_in_thousands(quantity)
    try:
        total = Decimal(customer_total)
    except (InvalidOperation, TypeError) as exc:
        raise InvalidOverride(f'Invalid customer total: {customer_total!r}') from exc
    if not total.is_finite() or total <= 0:
        raise InvalidOverride('Customer total must be greater than zero')
    return AllocationOverrides(customer_cpm=quantize_amount(total / qty_k))


def pricing_warnings(result: AllocationResult, rate: RateEntry | None = None) -> list[str]:
    warnings: list[str] = []
    if (
        rate is not None
        and rate.intermediary_invoice_per_m is not None
        and result.mode == AllocationMode.NORMAL
        and not result.is_custom_pricing
        and abs(result.intermediary_total_cpm - rate.intermediary_invoice_per_m) > CENT
    ):
        warnings.append(
            f'Intermediary CPM {result.intermediary_total_cpm} differs from rate card '
            f'{rate.intermediary_invoice_per_m} for {rate.size_name}'
        )
    if result.broker_margin_total < 0:
        warnings.append(f'Broker margin is negative ({quantize_cents(result.broker_margin_total)})')
    if result.intermediary_print_margin_total < 0:
        warnings.append(
            f'Intermediary print margin is negative ({quantize_cents(result.intermediary_print_margin_total)})'
        )
    if result.intermediary_paper_margin_total < 0:
        warnings.append(
            f'Intermediary paper margin is negative ({quantize_cents(result.intermediary_paper_margin_total)})'
        )
    if result.requires_approval:
        warnings.append(
            f'Customer CPM {result.customer_cpm} is below standard {result.standard_customer_cpm}; '
            f'undercharge {quantize_cents(result.undercharge_amount)} requires approval'
        )
    return warnings
