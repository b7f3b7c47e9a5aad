"""
請求書メモリパイプラインのコマンドライン

  invoice-memory process data/invoices_extracted.json --purchase-orders data/purchase_orders.json
  invoice-memory correct data/human_corrections.json --invoice-id INV-A-001
  invoice-memory memories --vendor "Supplier GmbH"
"""

import argparse
import json
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config_loader import load_pipeline_config, section
from .models import (
    AUTO_ACCEPT,
    AUTO_CORRECT,
    CORRECTION,
    RESOLUTION,
    VENDOR,
    HumanCorrection,
    Invoice,
    ProcessingResult,
    PurchaseOrder,
)
from .processor import InvoiceProcessor
from .state_store import SqliteAuditLog, SqliteMemoryStore

ACTION_ICONS = {AUTO_ACCEPT: "✅", AUTO_CORRECT: "✏️"}


def _load_json_list(path: str) -> list:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def _select(items: list, invoice_id: Optional[str]) -> list:
    if not invoice_id:
        return items
    selected = [i for i in items if i.invoice_id == invoice_id]
    if not selected:
        raise ValueError(f"invoice id not found: {invoice_id}")
    return selected


def _print_result(result: ProcessingResult):
    icon = ACTION_ICONS.get(result.action, "⚠️")
    print(f"{icon} {result.normalized_invoice.invoice_id}: {result.action.upper()}")
    print(f"   要レビュー: {'YES' if result.requires_human_review else 'NO'}")
    print(f"   信頼度: {result.confidence_score:.2f}")
    print(f"   理由: {result.reasoning}")
    for c in result.proposed_corrections:
        print(f"   - {c}")
    for entry in result.audit_trail:
        print(f"   [{entry.step.upper()}] {entry.details}")


def _build_processor(args) -> InvoiceProcessor:
    cfg = load_pipeline_config(args.config)
    floor = section(cfg, "recall")["confidence_floor"]
    store = SqliteMemoryStore(args.db, confidence_floor=floor)
    return InvoiceProcessor(store, SqliteAuditLog(args.db), cfg)


def cmd_process(args) -> int:
    processor = _build_processor(args)
    invoices = _select([Invoice.from_dict(d) for d in _load_json_list(args.invoices)], args.invoice_id)
    purchase_orders = []
    if args.purchase_orders:
        purchase_orders = [PurchaseOrder.from_dict(d) for d in _load_json_list(args.purchase_orders)]

    results = []
    for invoice in invoices:
        result = processor.process_invoice(invoice, purchase_orders)
        results.append(result)
        if not args.json:
            _print_result(result)
            print()
    if args.json:
        print(json.dumps([r.to_dict() for r in results], ensure_ascii=False, indent=2))
    return 0


def cmd_correct(args) -> int:
    processor = _build_processor(args)
    corrections = _select([HumanCorrection.from_dict(d) for d in _load_json_list(args.corrections)], args.invoice_id)
    for correction in corrections:
        print(f"📚 {correction.invoice_id} の修正を学習")
        for update in processor.apply_human_correction(correction):
            print(f"  ✓ {update}")
    return 0


def cmd_memories(args) -> int:
    store = SqliteMemoryStore(args.db)
    for m in store.list_all(VENDOR, args.vendor):
        print(f"[vendor] {m.vendor_name}: {m.pattern_key} -> {m.pattern_value} "
              f"(信頼度: {m.confidence:.2f}, 使用回数: {m.usage_count})")
    if args.vendor:
        return 0
    for m in store.list_all(CORRECTION):
        print(f"[correction] {m.correction_type}: {m.action} (信頼度: {m.confidence:.2f})")
    for m in store.list_all(RESOLUTION):
        status = "approved" if m.human_approved else "rejected"
        print(f"[resolution] {m.issue_type}: {status} (信頼度: {m.confidence:.2f})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="invoice-memory", description="請求書の学習型補正パイプライン")
    parser.add_argument("--db", default=None, help="SQLiteファイル（既定: $INVOICE_MEMORY_DB）")
    parser.add_argument("--config", default=None, help="パイプライン設定YAML")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("process", help="請求書を処理")
    p.add_argument("invoices", help="抽出済み請求書のJSON")
    p.add_argument("--purchase-orders", help="発注書のJSON")
    p.add_argument("--invoice-id", help="指定した請求書のみ処理")
    p.add_argument("--json", action="store_true", help="結果をJSONで出力")
    p.set_defaults(func=cmd_process)

    c = sub.add_parser("correct", help="人手の修正を学習")
    c.add_argument("corrections", help="修正内容のJSON")
    c.add_argument("--invoice-id", help="指定した請求書の修正のみ適用")
    c.set_defaults(func=cmd_correct)

    m = sub.add_parser("memories", help="学習済みメモリを表示")
    m.add_argument("--vendor", help="取引先で絞り込み")
    m.set_defaults(func=cmd_memories)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (OSError, ValueError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
