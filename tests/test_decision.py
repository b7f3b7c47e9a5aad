import pytest

from invoice_memory.decision import integrity_issues, make_decision
from invoice_memory.models import AUTO_ACCEPT, AUTO_CORRECT, ESCALATE


def test_auto_accept_high_confidence_without_corrections(store, make_invoice):
    decision = make_decision(store, make_invoice(), [], 0.85)

    assert decision.action == AUTO_ACCEPT
    assert decision.requires_human_review is False
    assert decision.duplicate is False


def test_auto_correct_requires_review(store, make_invoice):
    decision = make_decision(store, make_invoice(), ["Recovered currency EUR from rawText"], 0.6)

    assert decision.action == AUTO_CORRECT
    assert decision.requires_human_review is True
    assert "1 correction(s)" in decision.reasoning


def test_low_confidence_escalates(store, make_invoice):
    no_corrections = make_decision(store, make_invoice(), [], 0.79)
    very_low = make_decision(store, make_invoice(), ["x"], 0.4)

    assert no_corrections.action == ESCALATE
    assert very_low.action == ESCALATE
    assert "Low confidence" in very_low.reasoning


def test_duplicate_escalates_regardless_of_confidence(store, make_invoice):
    store.mark_processed("INV-A-003", "Supplier GmbH", "INV-A-003", "2024-03-10")
    invoice = make_invoice(invoice_id="INV-A-004", invoice_number="INV-A-003")

    decision = make_decision(store, invoice, [], 0.99)

    assert decision.action == ESCALATE
    assert decision.duplicate is True
    assert decision.reasoning.startswith("DUPLICATE DETECTED")


def test_integrity_issues_listed(store, make_invoice):
    invoice = make_invoice(currency=None, gross_total=-5.0)

    decision = make_decision(store, invoice, [], 0.99)

    assert decision.action == ESCALATE
    assert "missing currency" in decision.reasoning
    assert "negative grossTotal" in decision.reasoning


@pytest.mark.parametrize(
    "overrides,issue",
    [
        ({"invoice_number": ""}, "missing invoiceNumber"),
        ({"gross_total": None}, "missing grossTotal"),
        ({"gross_total": 0}, "missing grossTotal"),
        ({"tax_total": 250.0}, "tax calculation discrepancy"),
    ],
)
def test_integrity_checks(make_invoice, overrides, issue):
    issues = integrity_issues(make_invoice(**overrides))
    assert any(i.startswith(issue) for i in issues)


def test_zero_tax_rate_is_issue_not_crash(make_invoice):
    issues = integrity_issues(make_invoice(tax_rate=0.0, tax_total=0.0))
    assert any("cannot verify tax" in i for i in issues)


def test_small_tax_difference_tolerated(make_invoice):
    assert integrity_issues(make_invoice(tax_total=195.0)) == []


def test_thresholds_from_config(store, make_invoice):
    cfg = {"thresholds": {"auto_accept": 0.95}}
    decision = make_decision(store, make_invoice(), [], 0.9, cfg)
    assert decision.action == ESCALATE
