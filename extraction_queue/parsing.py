"""Turn a model's free-form answer into an ExtractedRecord."""

import json
import logging
import re
from datetime import date, datetime
from typing import Any, Optional

from pydantic import ValidationError

from .errors import ExtractionError, ExtractionErrorKind
from .models import Address, ExtractedRecord, LineItem

logger = logging.getLogger(__name__)

JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
CURRENCY_SYMBOLS_RE = re.compile(r"[₱¥€£]")
TERMS_AGENT_RE = re.compile(
    r"terms/agent[:\s]*(\d+)\s*days?\s*(?:\(([^)]+)\)|([a-z][a-z ]*))", re.IGNORECASE
)

CURRENCY_HINTS = {
    "₱": "PHP",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "$": "USD",
}

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d %B %Y", "%B %d, %Y", "%d %b %Y", "%b %d, %Y")


def to_number(value: Any) -> Optional[float]:
    """Coerce a model-provided amount into a float.

    Handles plain numbers and strings such as "13,365", "₱1,234.50" or
    "38.00 PHP". Returns None when nothing numeric can be read.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    cleaned = re.sub(r"[^0-9.,\-]", "", value)
    # Commas are thousands separators in every format we receive
    cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def to_iso_date(value: Any, today: Optional[date] = None) -> str:
    """Normalize a date string to YYYY-MM-DD, defaulting to today."""
    fallback = (today or date.today()).isoformat()
    if not isinstance(value, str) or not value.strip():
        return fallback

    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue

    # US style month/day/year, two-digit years are 20xx
    parts = re.split(r"[/\-.]", text)
    if len(parts) == 3 and all(p.strip().isdigit() for p in parts):
        month, day, year = (p.strip() for p in parts)
        if len(year) == 2:
            year = f"20{year}"
        try:
            return date(int(year), int(month), int(day)).isoformat()
        except ValueError:
            pass

    return fallback


def _first(parsed: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = parsed.get(key)
        if value not in (None, ""):
            return value
    return None


def _address(value: Any) -> Optional[Address]:
    if isinstance(value, dict):
        return Address(
            street=value.get("street"),
            city=value.get("city"),
            state=value.get("state"),
            zip_code=value.get("zipCode") or value.get("zip_code"),
            country=value.get("country"),
        )
    if isinstance(value, str) and value.strip():
        return Address(street=value.strip())
    return None


def _line_items(raw_items: Any) -> list[LineItem]:
    if not isinstance(raw_items, list):
        return []

    items = []
    for index, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            continue
        quantity = to_number(_first(raw, "quantity", "qty"))
        quantity = 1 if quantity is None else quantity
        unit_price = to_number(_first(raw, "unitPrice", "unit_price", "price")) or 0
        total_price = to_number(_first(raw, "totalPrice", "total_price", "total"))
        if total_price is None:
            total_price = quantity * unit_price

        items.append(LineItem(
            id=f"item_{index}",
            name=raw.get("name") or raw.get("description") or f"Item {index}",
            description=raw.get("description"),
            quantity=quantity,
            unit_price=unit_price,
            total_price=total_price,
            category=raw.get("category"),
        ))
    return items


def _detect_currency(parsed: dict[str, Any], text: str) -> str:
    code = _first(parsed, "currency", "currencyCode", "currency_code")
    if isinstance(code, str) and code.strip():
        return code.strip().upper()
    for symbol, currency in CURRENCY_HINTS.items():
        if symbol in text:
            return currency
    return "PHP"


def parse_model_response(text: str, provider: Optional[str] = None) -> ExtractedRecord:
    """Build an ExtractedRecord from a model's text answer.

    Args:
        text: Raw model output, possibly wrapped in prose or markdown fences
        provider: Name of the provider that produced the text

    Returns:
        ExtractedRecord with normalized fields

    Raises:
        ExtractionError: MALFORMED_RESPONSE if no JSON object can be read
    """
    if not isinstance(text, str) or not text.strip():
        raise ExtractionError(ExtractionErrorKind.MALFORMED_RESPONSE, "Model returned an empty response")

    match = JSON_OBJECT_RE.search(text)
    if not match:
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_RESPONSE, "No JSON object found in model response"
        )

    try:
        parsed = json.loads(CURRENCY_SYMBOLS_RE.sub("", match.group(0)))
    except ValueError as e:
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_RESPONSE, f"Model response is not valid JSON: {e}"
        ) from e

    if not isinstance(parsed, dict):
        raise ExtractionError(ExtractionErrorKind.MALFORMED_RESPONSE, "Model response is not a JSON object")

    try:
        return _build_record(parsed, text, provider)
    except (ValidationError, ValueError, TypeError, OverflowError) as e:
        # Wrong field types, NaN or Infinity anywhere in the answer
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_RESPONSE, f"Model response has invalid fields: {e}"
        ) from e


def _build_record(parsed: dict[str, Any], text: str, provider: Optional[str]) -> ExtractedRecord:
    items = _line_items(parsed.get("items"))
    total = to_number(_first(parsed, "total", "totalAmount", "amount_due"))
    if total is None:
        total = sum(item.total_price for item in items)

    confidence = to_number(parsed.get("confidence"))
    confidence = 0.5 if confidence is None else min(max(confidence, 0.0), 1.0)

    calculated = sum(item.total_price for item in items)
    if items and abs(calculated - total) > 100:
        # Printed totals win over item sums, but the mismatch costs confidence
        logger.warning(f"Item total {calculated} differs from document total {total}")
        confidence = max(0.1, confidence - 0.2)

    terms = parsed.get("terms")
    terms_days = to_number(parsed.get("termsDays"))
    agent_name = _first(parsed, "agentName", "agent", "salesAgent", "salesperson", "cashier")

    if terms is None or terms_days is None or agent_name is None:
        terms_match = TERMS_AGENT_RE.search(text)
        if terms_match:
            days = terms_match.group(1)
            terms = terms or f"{days} DAYS"
            terms_days = terms_days if terms_days is not None else float(days)
            agent_name = agent_name or (terms_match.group(2) or terms_match.group(3)).strip()

    return ExtractedRecord(
        merchant_name=_first(parsed, "merchantName", "merchant", "vendor") or "Unknown Merchant",
        merchant_address=_address(parsed.get("merchantAddress")),
        invoice_number=_stringify(_first(parsed, "invoiceNumber", "invoice_number", "invoice_no")),
        date=to_iso_date(_first(parsed, "date", "invoice_date", "transaction_date")),
        time=parsed.get("time"),
        items=items,
        subtotal=to_number(parsed.get("subtotal")),
        tax=to_number(_first(parsed, "tax", "sales_tax")),
        total=total,
        currency=_detect_currency(parsed, text),
        payment_method=_first(parsed, "paymentMethod", "payment_method", "payment_type"),
        agent_name=agent_name,
        terms=terms,
        terms_days=int(terms_days) if terms_days is not None else None,
        phone_number=_stringify(parsed.get("phoneNumber")),
        email=parsed.get("email"),
        website=parsed.get("website"),
        notes=parsed.get("notes"),
        confidence=confidence,
        provider=provider,
    )


def _stringify(value: Any) -> Optional[str]:
    return None if value is None else str(value)
