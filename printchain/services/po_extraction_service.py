from __future__ import annotations

import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Iterable, Protocol

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from printchain.config import settings
from printchain.errors import ExtractionTimeout, ParseValidationFailed

logger = logging.getLogger(__name__)

_DOLLAR_AMOUNT = re.compile(r'\$\s*(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)')
_DECIMAL_AMOUNT = re.compile(r'(?<![\d.])(\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})(?![\d.])')
_PO_NUMBER_PATTERNS = (
    re.compile(r'Purchase Order[\s#:]*(\d+)', re.IGNORECASE),
    re.compile(r'P\.O\.[\s#:]*(\d+)', re.IGNORECASE),
    re.compile(r'\bPO[\s#:]*(\d+)', re.IGNORECASE),
    re.compile(r'\bOrder[\s#:]*(\d+)', re.IGNORECASE),
)

_extractor_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix='po-extract')


@dataclass(frozen=True)
class ExtractedPO:
    customer_code: str | None
    amount: Decimal | None
    po_number: str | None
    description: str
    raw_text: str


class POExtractor(Protocol):
    def extract(self, content: bytes) -> ExtractedPO: ...


def find_customer_code(text: str, codes: Iterable[str]) -> str | None:
    for code in codes:
        if re.search(rf'(?<![A-Za-z]){re.escape(code)}(?![A-Za-z])', text or '', flags=re.IGNORECASE):
            return code
    return None


def _to_decimal(raw: str) -> Decimal | None:
    try:
        return Decimal(raw.replace(',', ''))
    except InvalidOperation:
        return None


def find_amount(text: str) -> Decimal | None:
    """Largest dollar figure in the text; bare figures with cents are used when none carry a dollar sign."""
    matches = _DOLLAR_AMOUNT.findall(text) or _DECIMAL_AMOUNT.findall(text)
    amounts = [value for value in (_to_decimal(raw) for raw in matches) if value is not None]
    return max(amounts) if amounts else None


def find_po_number(text: str) -> str | None:
    for pattern in _PO_NUMBER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _description(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if len(line.strip()) > 10]
    return ' '.join(lines[:3])[:100].strip()


def parse_po_text(text: str, codes: Iterable[str]) -> ExtractedPO:
    return ExtractedPO(
        customer_code=find_customer_code(text, codes),
        amount=find_amount(text),
        po_number=find_po_number(text),
        description=_description(text) or 'Intermediary PO',
        raw_text=text,
    )


def pdf_text(content: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(content))
        return '\n'.join((page.extract_text() or '') for page in reader.pages)
    except (PdfReadError, ValueError) as exc:
        raise ParseValidationFailed(f'Unreadable PDF: {exc}') from exc


class PdfTextExtractor:
    def __init__(self, customer_codes: Iterable[str] | None = None):
        self.customer_codes = list(customer_codes if customer_codes is not None else settings.webhook_customer_codes)

    def extract(self, content: bytes) -> ExtractedPO:
        return parse_po_text(pdf_text(content), self.customer_codes)


@lru_cache(maxsize=1)
def get_po_extractor() -> POExtractor:
    return PdfTextExtractor()


def extract_with_timeout(extractor: POExtractor, content: bytes, timeout: float | None = None) -> ExtractedPO:
    limit = settings.extractor_timeout_seconds if timeout is None else timeout
    future = _extractor_pool.submit(extractor.extract, content)
    try:
        return future.result(timeout=limit)
    except FutureTimeout as exc:
        future.cancel()
        logger.warning('extraction.timeout limit=%.1fs', limit)
        raise ExtractionTimeout(f'PO extraction exceeded {limit:.1f}s') from exc
