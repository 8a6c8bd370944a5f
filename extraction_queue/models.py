"""Data models for the extraction queue."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class Address(BaseModel):
    """Postal address printed on a document."""
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class LineItem(BaseModel):
    """A single line of an invoice."""
    id: str
    name: str
    description: Optional[str] = None
    quantity: float = 1
    unit_price: float = 0
    total_price: float = 0
    category: Optional[str] = None


class ExtractedRecord(BaseModel):
    """Structured data extracted from one document image."""
    merchant_name: str = "Unknown Merchant"
    merchant_address: Optional[Address] = None
    invoice_number: Optional[str] = None
    date: str
    time: Optional[str] = None
    items: list[LineItem] = []
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    total: float = 0
    currency: str = "PHP"
    payment_method: Optional[str] = None
    agent_name: Optional[str] = None
    terms: Optional[str] = None
    terms_days: Optional[int] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    notes: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0, le=1)
    provider: Optional[str] = None
    extracted_at: Optional[float] = None
    processing_time: Optional[float] = None


class RawInput(BaseModel):
    """A file handed to the queue for extraction."""
    data: bytes
    name: str
    mime_type: str = "application/octet-stream"
    id: Optional[str] = None


class QueueStats(BaseModel):
    """Queue statistics."""
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


class ProviderUpdate(BaseModel):
    """Request to switch the extraction provider."""
    use_remote: bool
    credential: Optional[str] = None


class ProviderStatus(BaseModel):
    """Currently selected provider and whether it can take work."""
    use_remote: bool
    has_credential: bool
    provider: str
    available: bool


class SyncStatus(BaseModel):
    """State of the backup retry queue."""
    waiting: int
    entries: list[dict[str, Any]]
    permanent_failures: list[dict[str, Any]]
