from __future__ import annotations

from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printchain.config import settings
from printchain.models import Base, Company, CompanyKind, RateCardEntry
from printchain.services.po_extraction_service import ExtractedPO

SIZE_NAME = '7 1/4 x 16 3/8'
CUSTOMER_ID = 'jjsa'


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside a real transaction.
    @event.listens_for(engine, 'connect')
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin(connection):
        connection.exec_driver_sql('BEGIN')

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)


def seed_reference_data(db: Session) -> None:
    db.add_all(
        [
            Company(id=settings.broker_company_id, name='Impact Direct', kind=CompanyKind.BROKER, active=True),
            Company(id=settings.intermediary_company_id, name='Bradford', kind=CompanyKind.INTERMEDIARY, active=True),
            Company(id=settings.manufacturer_company_id, name='JD Graphic', kind=CompanyKind.MANUFACTURER, active=True),
            Company(id=CUSTOMER_ID, name='JJS Advertising', kind=CompanyKind.CUSTOMER, customer_code='JJSG', active=True),
            Company(id='ballantine', name='Ballantine', kind=CompanyKind.CUSTOMER, customer_code='BALSG', active=True),
            RateCardEntry(
                size_name=SIZE_NAME,
                manufacturer_cpm=Decimal('34.74'),
                paper_cost_cpm=Decimal('15.46'),
                paper_charged_cpm=Decimal('18.55'),
                paper_weight_per_1000=Decimal('11.5'),
                intermediary_invoice_per_m=Decimal('60.43'),
                broker_invoice_per_m=Decimal('67.56'),
                active=True,
            ),
        ]
    )
    db.commit()


class FakeExtractor:
    def __init__(self, result: ExtractedPO | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = 0

    def extract(self, content: bytes) -> ExtractedPO:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def extracted(
    *,
    customer_code: str | None = 'JJSG',
    amount: str | None = '1250.00',
    po_number: str | None = '45120',
) -> ExtractedPO:
    return ExtractedPO(
        customer_code=customer_code,
        amount=Decimal(amount) if amount is not None else None,
        po_number=po_number,
        description='Bradford purchase order',
        raw_text='',
    )
