from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from printchain.errors import UnknownSize
from printchain.models import RateCardEntry
from printchain.services.allocation_service import RateEntry


def normalize_size_name(size_name: str) -> str:
    return ' '.join((size_name or '').split())


def rate_entry_from_model(entry: RateCardEntry) -> RateEntry:
    return RateEntry(
        size_name=entry.size_name,
        manufacturer_cpm=entry.manufacturer_cpm,
        paper_cost_cpm=entry.paper_cost_cpm,
        paper_charged_cpm=entry.paper_charged_cpm,
        customer_cpm=entry.broker_invoice_per_m,
        paper_weight_per_1000=entry.paper_weight_per_1000,
        intermediary_invoice_per_m=entry.intermediary_invoice_per_m,
    )


def lookup_rate_entry(db: Session, size_name: str) -> RateEntry:
    normalized = normalize_size_name(size_name)
    entry = db.execute(
        select(RateCardEntry).where(RateCardEntry.size_name == normalized, RateCardEntry.active.is_(True))
    ).scalar_one_or_none()
    if entry is None:
        raise UnknownSize(normalized or size_name)
    return rate_entry_from_model(entry)


def list_rate_entries(db: Session, *, include_inactive: bool = False) -> list[RateCardEntry]:
    stmt = select(RateCardEntry).order_by(RateCardEntry.size_name.asc())
    if not include_inactive:
        stmt = stmt.where(RateCardEntry.active.is_(True))
    return db.execute(stmt).scalars().all()
