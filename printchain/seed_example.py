from decimal import Decimal

from sqlalchemy import select

from printchain.config import settings
from printchain.db import SessionLocal
from printchain.models import Company, CompanyKind, RateCardEntry

SAMPLE_RATE_CARD = [
    # size, manufacturer CPM, paper cost CPM, paper charged CPM, paper lbs per M, intermediary per M, customer CPM
    ('7 1/4 x 16 3/8', '34.74', '15.46', '18.55', '11.5', '60.43', '67.56'),
    ('8 1/2 x 17 1/2', '37.10', '16.80', '20.16', '13.0', '65.05', '72.96'),
    ('9 3/4 x 22 1/8', '44.87', '23.10', '27.72', '17.9', '80.34', '90.92'),
]


def _ensure_company(db, company_id: str, name: str, kind: CompanyKind, **extra) -> None:
    company = db.get(Company, company_id)
    if not company:
        db.add(Company(id=company_id, name=name, kind=kind, active=True, **extra))


def seed(session_factory=SessionLocal) -> None:
    with session_factory() as db:
        _ensure_company(db, settings.broker_company_id, 'Impact Direct', CompanyKind.BROKER)
        _ensure_company(db, settings.intermediary_company_id, 'Bradford', CompanyKind.INTERMEDIARY)
        _ensure_company(db, settings.manufacturer_company_id, 'JD Graphic', CompanyKind.MANUFACTURER)

        codes_by_customer = {customer_id: code for code, customer_id in settings.webhook_customer_codes.items()}
        for customer_id, name in (('jjsa', 'JJS Advertising'), ('ballantine', 'Ballantine')):
            _ensure_company(
                db,
                customer_id,
                name,
                CompanyKind.CUSTOMER,
                customer_code=codes_by_customer.get(customer_id),
            )

        for size, manufacturer, paper_cost, paper_charged, weight, intermediary, customer in SAMPLE_RATE_CARD:
            entry = db.execute(select(RateCardEntry).where(RateCardEntry.size_name == size)).scalar_one_or_none()
            if entry:
                continue
            db.add(
                RateCardEntry(
                    size_name=size,
                    manufacturer_cpm=Decimal(manufacturer),
                    paper_cost_cpm=Decimal(paper_cost),
                    paper_charged_cpm=Decimal(paper_charged),
                    paper_weight_per_1000=Decimal(weight),
                    intermediary_invoice_per_m=Decimal(intermediary),
                    broker_invoice_per_m=Decimal(customer),
                    active=True,
                )
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed complete.')
