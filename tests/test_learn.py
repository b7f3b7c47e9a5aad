import pytest

from invoice_memory.learn import learn_from_correction
from invoice_memory.models import (
    BEHAVIOR,
    CORRECTION,
    RESOLUTION,
    VENDOR,
    FieldCorrection,
    HumanCorrection,
)


def _correction(*fixes, vendor="Supplier GmbH", decision="approved", invoice_id="INV-A-001"):
    return HumanCorrection(
        invoice_id=invoice_id,
        vendor=vendor,
        corrections=[FieldCorrection(field=f, from_value=a, to_value=b, reason=r) for f, a, b, r in fixes],
        final_decision=decision,
    )


LEISTUNGSDATUM_FIX = ("serviceDate", None, "2024-03-05", "Leistungsdatum on invoice is the service date")


def test_learns_leistungsdatum_mapping(store):
    updates = learn_from_correction(store, _correction(LEISTUNGSDATUM_FIX))

    memory = store.find_by_key(VENDOR, "Supplier GmbH", "Leistungsdatum")
    assert memory.pattern_value == "serviceDate"
    assert memory.confidence == pytest.approx(0.7)
    assert memory.usage_count == 1
    assert updates == ["Learned: Supplier GmbH - Leistungsdatum maps to serviceDate", "Stored resolution: approved"]


def test_repeated_correction_reinforces_until_cap(store):
    confidences = []
    for _ in range(5):
        learn_from_correction(store, _correction(LEISTUNGSDATUM_FIX))
        confidences.append(store.find_by_key(VENDOR, "Supplier GmbH", "Leistungsdatum").confidence)

    assert confidences == pytest.approx([0.7, 0.8, 0.9, 0.95, 0.95])
    assert all(b >= a for a, b in zip(confidences, confidences[1:]))
    memory = store.find_by_key(VENDOR, "Supplier GmbH", "Leistungsdatum")
    assert memory.usage_count == 5
    assert len(store.list_all(VENDOR)) == 1


def test_reinforcement_message(store):
    learn_from_correction(store, _correction(LEISTUNGSDATUM_FIX))
    updates = learn_from_correction(store, _correction(LEISTUNGSDATUM_FIX))
    assert updates[0] == "Reinforced: Supplier GmbH - Leistungsdatum pattern (confidence: 0.80)"


def test_vendor_memories_are_scoped(store):
    learn_from_correction(store, _correction(LEISTUNGSDATUM_FIX))
    learn_from_correction(store, _correction(LEISTUNGSDATUM_FIX, vendor="Parts AG"))

    assert store.find_by_key(VENDOR, "Parts AG", "Leistungsdatum").confidence == pytest.approx(0.7)
    assert store.find_by_key(VENDOR, "Supplier GmbH", "Leistungsdatum").confidence == pytest.approx(0.7)


def test_tax_included_is_global_correction_memory(store):
    fix = ("taxTotal", 452.2, 380.0, "Prices are VAT included")
    learn_from_correction(store, _correction(fix, vendor="Parts AG"))
    learn_from_correction(store, _correction(fix, vendor="Other AG"))

    memories = store.list_global(CORRECTION)
    assert len(memories) == 1
    assert memories[0].correction_type == "tax_included"
    assert memories[0].confidence == pytest.approx(0.85)


@pytest.mark.parametrize(
    "fix,key,value,confidence",
    [
        (("currency", None, "EUR", "EUR found in rawText"), "currency_extraction", "EUR", 0.8),
        (("lineItems[1].sku", None, "FREIGHT", "Seefracht is freight"), "Seefracht", "FREIGHT", 0.7),
        (("discountTerms", None, "2% Skonto within 10 days", "Skonto"), "skonto_terms", "2% Skonto within 10 days", 0.8),
    ],
)
def test_field_mapping_recognizers(store, fix, key, value, confidence):
    learn_from_correction(store, _correction(fix, vendor="Freight & Co"))

    memory = store.find_by_key(VENDOR, "Freight & Co", key)
    assert memory.pattern_type == "field_mapping"
    assert memory.pattern_value == value
    assert memory.confidence == pytest.approx(confidence)


def test_changed_skonto_terms_replace_old_value(store):
    learn_from_correction(store, _correction(("discountTerms", None, "2% Skonto within 10 days", "Skonto")))
    learn_from_correction(store, _correction(("discountTerms", None, "2% Skonto within 10 days", "Skonto")))
    updates = learn_from_correction(store, _correction(("discountTerms", None, "3% Skonto within 14 days", "Skonto")))

    memory = store.find_by_key(VENDOR, "Supplier GmbH", "skonto_terms")
    assert memory.pattern_value == "3% Skonto within 14 days"
    assert memory.confidence == pytest.approx(0.8)
    assert memory.usage_count == 3
    assert len(store.list_all(VENDOR)) == 1
    assert updates[0] == "Learned: Supplier GmbH - Skonto terms pattern"


def test_same_skonto_terms_reinforce(store):
    learn_from_correction(store, _correction(("discountTerms", None, "2% Skonto within 10 days", "Skonto")))
    updates = learn_from_correction(store, _correction(("discountTerms", None, "2% Skonto within 10 days", "Skonto")))

    memory = store.find_by_key(VENDOR, "Supplier GmbH", "skonto_terms")
    assert memory.pattern_value == "2% Skonto within 10 days"
    assert memory.confidence == pytest.approx(0.9)
    assert updates[0] == "Reinforced: Supplier GmbH - skonto_terms pattern (confidence: 0.90)"


def test_po_matching_behavior_requires_new_value(store):
    learn_from_correction(store, _correction(("poNumber", None, None, "no PO")))
    assert store.find_by_key(VENDOR, "Supplier GmbH", "po_matching") is None

    learn_from_correction(store, _correction(("poNumber", None, "PO-A-051", "single matching PO")))
    memory = store.find_by_key(VENDOR, "Supplier GmbH", "po_matching")
    assert memory.pattern_type == BEHAVIOR
    assert memory.confidence == pytest.approx(0.65)


def test_unrecognized_correction_only_stores_resolution(store):
    updates = learn_from_correction(store, _correction(("invoiceDate", "x", "y", "typo"), decision="rejected"))

    assert updates == ["Stored resolution: rejected"]
    assert store.list_all(VENDOR) == []


def test_exactly_one_resolution_per_correction(store):
    learn_from_correction(
        store,
        _correction(LEISTUNGSDATUM_FIX, ("currency", None, "EUR", "EUR in rawText")),
    )

    resolutions = store.list_all(RESOLUTION)
    assert len(resolutions) == 1
    assert resolutions[0].issue_type == "serviceDate, currency"
    assert resolutions[0].resolution == "Leistungsdatum on invoice is the service date; EUR in rawText"
    assert resolutions[0].human_approved is True
    assert resolutions[0].confidence == pytest.approx(0.7)


def test_invalid_final_decision_rejected():
    with pytest.raises(ValueError):
        _correction(LEISTUNGSDATUM_FIX, decision="maybe")
