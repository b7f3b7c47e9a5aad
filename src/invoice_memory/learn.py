"""
人手による修正から取引先パターンを学習する

同じ取引先・同じパターンキーのメモリがあれば信頼度を強化し、
なければ初期信頼度で新規作成する。値が変わった場合は初期信頼度で差し替える。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config_loader import DEFAULTS, section
from .logging_config import get_logger
from .models import (
    APPROVED,
    BEHAVIOR,
    CORRECTION,
    FIELD_MAPPING,
    RESOLUTION,
    VENDOR,
    CorrectionMemory,
    FieldCorrection,
    HumanCorrection,
    ResolutionMemory,
    VendorMemory,
)
from .state_store import MemoryStore

logger = get_logger("invoice_memory.learn")


@dataclass(frozen=True)
class Recognizer:
    key: str  # パターンキー（補正メモリの場合は correction_type）
    kind: str
    matches: Callable[[FieldCorrection], bool]
    pattern_type: str = FIELD_MAPPING
    value: Callable[[FieldCorrection], str] = lambda c: ""
    learned: str = ""  # 新規作成時のメッセージ
    condition: str = ""
    action: str = ""


RECOGNIZERS = (
    Recognizer(
        key="Leistungsdatum",
        kind=VENDOR,
        matches=lambda c: c.field == "serviceDate" and "Leistungsdatum" in c.reason,
        value=lambda c: "serviceDate",
        learned="Leistungsdatum maps to serviceDate",
    ),
    Recognizer(
        key="tax_included",
        kind=CORRECTION,
        matches=lambda c: c.field in ("taxTotal", "grossTotal") and "VAT included" in c.reason,
        learned="VAT included correction pattern",
        condition="MwSt. inkl. OR incl. VAT in rawText",
        action="recalculate tax from gross total",
    ),
    Recognizer(
        key="currency_extraction",
        kind=VENDOR,
        matches=lambda c: c.field == "currency" and "rawText" in c.reason,
        value=lambda c: "EUR",
        learned="currency extraction from rawText",
    ),
    Recognizer(
        key="Seefracht",
        kind=VENDOR,
        matches=lambda c: "sku" in c.field.lower() and "Seefracht" in c.reason,
        value=lambda c: "FREIGHT",
        learned="Seefracht/Shipping maps to FREIGHT SKU",
    ),
    Recognizer(
        key="po_matching",
        kind=VENDOR,
        matches=lambda c: c.field == "poNumber" and bool(c.to_value),
        pattern_type=BEHAVIOR,
        value=lambda c: "infer from items and date",
        learned="PO matching pattern",
    ),
    Recognizer(
        key="skonto_terms",
        kind=VENDOR,
        matches=lambda c: c.field == "discountTerms",
        value=lambda c: "" if c.to_value is None else str(c.to_value),
        learned="Skonto terms pattern",
    ),
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _reinforced(confidence: float, cfg: Optional[dict]) -> float:
    lcfg = section(cfg, "learning")
    return round(min(lcfg["max_confidence"], confidence + lcfg["reinforcement_step"]), 4)


def _initial_confidence(key: str, cfg: Optional[dict]) -> float:
    initial = dict(DEFAULTS["learning"]["initial_confidence"])
    initial.update(section(cfg, "learning").get("initial_confidence") or {})
    return initial[key]


def _learn_pattern(
    store: MemoryStore,
    recognizer: Recognizer,
    correction: HumanCorrection,
    cor: FieldCorrection,
    cfg: Optional[dict],
) -> str:
    origin = correction.vendor if recognizer.kind == VENDOR else None
    existing = store.find_by_key(recognizer.kind, origin, recognizer.key)
    label = f"{correction.vendor} - {recognizer.key}" if recognizer.kind == VENDOR else recognizer.key

    value = recognizer.value(cor)
    if existing and recognizer.kind == VENDOR and existing.pattern_value != value:
        # 値が変わった場合は古い値を強化せず、初期信頼度で差し替える
        confidence = _initial_confidence(recognizer.key, cfg)
        store.replace_value(existing.id, value, confidence)
        logger.info("replaced %s memory %s value %r -> %r", recognizer.kind, label, existing.pattern_value, value)
        return f"Learned: {correction.vendor} - {recognizer.learned}"

    if existing:
        new_confidence = _reinforced(existing.confidence, cfg)
        store.reinforce(recognizer.kind, existing.id, new_confidence, bump_usage=True)
        logger.info("reinforced %s memory %s -> %.2f", recognizer.kind, label, new_confidence)
        return f"Reinforced: {label} pattern (confidence: {new_confidence:.2f})"

    now = _now()
    confidence = _initial_confidence(recognizer.key, cfg)
    if recognizer.kind == VENDOR:
        memory = VendorMemory(
            vendor_name=correction.vendor,
            pattern_type=recognizer.pattern_type,
            pattern_key=recognizer.key,
            pattern_value=value,
            confidence=confidence,
            usage_count=1,
            last_used=now,
            created_at=now,
        )
        message = f"Learned: {correction.vendor} - {recognizer.learned}"
    else:
        memory = CorrectionMemory(
            correction_type=recognizer.key,
            condition=recognizer.condition,
            action=recognizer.action,
            confidence=confidence,
            usage_count=1,
            last_used=now,
            created_at=now,
        )
        message = f"Learned: {recognizer.learned}"
    store.create(recognizer.kind, memory)
    logger.info("created %s memory %s (confidence %.2f)", recognizer.kind, label, confidence)
    return message


def learn_from_correction(store: MemoryStore, correction: HumanCorrection, cfg: Optional[dict] = None) -> List[str]:
    """人手の修正を学習し、メモリ更新内容の一覧を返す"""
    memory_updates: List[str] = []

    for cor in correction.corrections:
        for recognizer in RECOGNIZERS:
            if recognizer.matches(cor):
                memory_updates.append(_learn_pattern(store, recognizer, correction, cor, cfg))

    # 解決履歴は修正1件につき必ず1つ残す
    now = _now()
    store.create(
        RESOLUTION,
        ResolutionMemory(
            issue_type=", ".join(c.field for c in correction.corrections),
            resolution="; ".join(c.reason for c in correction.corrections),
            human_approved=correction.final_decision == APPROVED,
            confidence=section(cfg, "learning")["resolution_confidence"],
            usage_count=1,
            last_used=now,
            created_at=now,
        ),
    )
    memory_updates.append(f"Stored resolution: {correction.final_decision}")
    return memory_updates
