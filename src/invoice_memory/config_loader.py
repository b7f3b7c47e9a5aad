import os
from typing import Optional

import yaml


DEFAULTS = {
    "recall": {"limit": 10, "confidence_floor": 0.3},
    "thresholds": {
        "auto_accept": 0.8,
        "auto_correct": 0.5,
        "tax_discrepancy_pct": 5.0,
        "tax_recalc_tolerance": 1.0,
    },
    "detectors": {"tax_included": 0.7, "currency": 0.8, "po_match": 0.75, "skonto": 0.8},
    "learning": {
        "reinforcement_step": 0.1,
        "max_confidence": 0.95,
        "resolution_confidence": 0.7,
        "initial_confidence": {
            "Leistungsdatum": 0.7,
            "tax_included": 0.75,
            "currency_extraction": 0.8,
            "Seefracht": 0.7,
            "po_matching": 0.65,
            "skonto_terms": 0.8,
        },
    },
}


def _default_config_path() -> str:
    # src/invoice_memory/config_loader.py -> <repo>/config/pipeline.yml
    root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.getenv("INVOICE_MEMORY_CONFIG", os.path.join(root, "config", "pipeline.yml"))


def load_pipeline_config(path: Optional[str] = None) -> dict:
    path = path or _default_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return merge_config({})

    return merge_config(cfg)


def merge_config(cfg: dict) -> dict:
    """セクション単位でデフォルトに上書きマージ"""
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in DEFAULTS.items()}
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v

    # 初期信頼度は認識器ごとに個別指定できるよう一段深くマージ
    learning = merged["learning"]
    initial = dict(DEFAULTS["learning"]["initial_confidence"])
    initial.update(learning.get("initial_confidence") or {})
    learning["initial_confidence"] = initial
    return merged


def section(cfg: Optional[dict], name: str) -> dict:
    """設定の1セクションを取得（未指定キーはデフォルト値）"""
    merged = dict(DEFAULTS[name])
    merged.update((cfg or {}).get(name) or {})
    return merged
