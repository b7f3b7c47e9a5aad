import pytest

from invoice_memory.models import Invoice, InvoiceFields, LineItem
from invoice_memory.state_store import SqliteAuditLog, SqliteMemoryStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    db = tmp_path / "memory.db"
    monkeypatch.setenv("INVOICE_MEMORY_DB", str(db))
    return str(db)


@pytest.fixture
def store(db_path):
    return SqliteMemoryStore()


@pytest.fixture
def audit(db_path):
    return SqliteAuditLog()


def build_invoice(
    invoice_id="INV-A-001",
    vendor="Supplier GmbH",
    raw_text="Rechnung INV-A-001 Betrag in EUR",
    confidence=0.9,
    **overrides,
):
    fields = {
        "invoice_number": invoice_id,
        "invoice_date": "2024-03-10",
        "net_total": 1000.0,
        "tax_rate": 0.19,
        "tax_total": 190.0,
        "gross_total": 1190.0,
        "currency": "EUR",
        "line_items": [LineItem(sku="WIDGET-001", description="Widget", qty=10, unit_price=100.0)],
    }
    fields.update(overrides)
    return Invoice(
        invoice_id=invoice_id,
        vendor=vendor,
        fields=InvoiceFields(**fields),
        confidence=confidence,
        raw_text=raw_text,
    )


@pytest.fixture
def make_invoice():
    return build_invoice
