import os
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from .logging_config import get_logger
from .models import (
    CORRECTION,
    RESOLUTION,
    VENDOR,
    CorrectionMemory,
    ResolutionMemory,
    VendorMemory,
)

Memory = Union[VendorMemory, CorrectionMemory, ResolutionMemory]

logger = get_logger("invoice_memory.state_store")

_TABLES = {
    VENDOR: "vendor_memory",
    CORRECTION: "correction_memory",
    RESOLUTION: "resolution_memory",
}

# 想起時の並び順: 信頼度 → 最終利用日時（未使用は最後）→ 作成順
_RECALL_ORDER = "ORDER BY confidence DESC, last_used IS NULL, last_used DESC, id ASC"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _vendor_key(name: str) -> str:
    return (name or "").strip().casefold()


def _table(kind: str) -> str:
    try:
        return _TABLES[kind]
    except KeyError:
        raise ValueError(f"unknown memory kind: {kind!r}") from None


def _get_db_path(db_path: Optional[str] = None) -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return db_path or os.getenv("INVOICE_MEMORY_DB", "invoice_memory.db")


@contextmanager
def _conn(db_path: Optional[str] = None):
    con = sqlite3.connect(_get_db_path(db_path))
    con.row_factory = sqlite3.Row
    try:
        yield con
        con.commit()
    finally:
        con.close()


def init_db(db_path: Optional[str] = None):
    with _conn(db_path) as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS vendor_memory (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              vendor_name TEXT NOT NULL,
              vendor_key TEXT NOT NULL,
              pattern_type TEXT NOT NULL,
              pattern_key TEXT NOT NULL,
              pattern_value TEXT,
              confidence REAL NOT NULL,
              usage_count INTEGER NOT NULL DEFAULT 0,
              last_used TEXT,
              created_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS correction_memory (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              correction_type TEXT NOT NULL,
              condition TEXT,
              action TEXT,
              confidence REAL NOT NULL,
              usage_count INTEGER NOT NULL DEFAULT 0,
              last_used TEXT,
              created_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS resolution_memory (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              issue_type TEXT NOT NULL,
              resolution TEXT,
              human_approved INTEGER NOT NULL,
              confidence REAL NOT NULL,
              usage_count INTEGER NOT NULL DEFAULT 0,
              last_used TEXT,
              created_at TEXT
            );
            """
        )
        # 重複請求書検出用
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_invoices (
              invoice_id TEXT PRIMARY KEY,
              vendor TEXT,
              vendor_key TEXT,
              invoice_number TEXT,
              invoice_date TEXT,
              processed_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              target_id TEXT,
              step TEXT,
              ts TEXT,
              details TEXT
            );
            """
        )


def _row_to_memory(kind: str, row: sqlite3.Row) -> Memory:
    if kind == VENDOR:
        return VendorMemory(
            id=row["id"],
            vendor_name=row["vendor_name"],
            pattern_type=row["pattern_type"],
            pattern_key=row["pattern_key"],
            pattern_value=row["pattern_value"],
            confidence=row["confidence"],
            usage_count=row["usage_count"],
            last_used=row["last_used"],
            created_at=row["created_at"],
        )
    if kind == CORRECTION:
        return CorrectionMemory(
            id=row["id"],
            correction_type=row["correction_type"],
            condition=row["condition"],
            action=row["action"],
            confidence=row["confidence"],
            usage_count=row["usage_count"],
            last_used=row["last_used"],
            created_at=row["created_at"],
        )
    return ResolutionMemory(
        id=row["id"],
        issue_type=row["issue_type"],
        resolution=row["resolution"],
        human_approved=bool(row["human_approved"]),
        confidence=row["confidence"],
        usage_count=row["usage_count"],
        last_used=row["last_used"],
        created_at=row["created_at"],
    )


class MemoryStore(ABC):
    """学習メモリと処理済み請求書の永続化インターフェース"""

    @abstractmethod
    def list_by_origin(self, kind: str, origin: str) -> List[Memory]:
        """取引先スコープのメモリ（信頼度下限超のみ、想起順）"""

    @abstractmethod
    def list_global(self, kind: str) -> List[Memory]:
        """グローバルなメモリ（信頼度下限超のみ、想起順）"""

    @abstractmethod
    def create(self, kind: str, memory: Memory) -> int:
        pass

    @abstractmethod
    def reinforce(self, kind: str, memory_id: int, new_confidence: float, bump_usage: bool = True):
        pass

    @abstractmethod
    def replace_value(self, memory_id: int, pattern_value: str, new_confidence: float):
        """取引先メモリの値を差し替える（使用回数 +1）"""

    @abstractmethod
    def find_by_key(self, kind: str, origin: Optional[str], pattern_key: str) -> Optional[Memory]:
        pass

    @abstractmethod
    def exists_by_origin_and_doc_number(self, origin: str, doc_number: str) -> bool:
        pass

    @abstractmethod
    def mark_processed(self, record_id: str, origin: str, doc_number: str, doc_date: str):
        pass


class AuditSink(ABC):
    @abstractmethod
    def append(self, target_id: str, stage: str, details: str):
        pass


class SqliteMemoryStore(MemoryStore):
    """sqlite3 によるメモリストア"""

    def __init__(self, db_path: Optional[str] = None, confidence_floor: float = 0.3):
        self.db_path = db_path
        self.confidence_floor = confidence_floor
        init_db(self.db_path)

    def list_by_origin(self, kind: str, origin: str) -> List[Memory]:
        if kind != VENDOR:
            raise ValueError(f"{kind!r} memories are not scoped by origin")
        with _conn(self.db_path) as con:
            rows = con.execute(
                f"SELECT * FROM vendor_memory WHERE vendor_key=? AND confidence > ? {_RECALL_ORDER}",
                (_vendor_key(origin), self.confidence_floor),
            ).fetchall()
        return [_row_to_memory(kind, r) for r in rows]

    def list_global(self, kind: str) -> List[Memory]:
        if kind == VENDOR:
            raise ValueError("vendor memories are scoped by origin, use list_by_origin")
        table = _table(kind)
        with _conn(self.db_path) as con:
            rows = con.execute(
                f"SELECT * FROM {table} WHERE confidence > ? {_RECALL_ORDER}",
                (self.confidence_floor,),
            ).fetchall()
        return [_row_to_memory(kind, r) for r in rows]

    def list_all(self, kind: str, origin: Optional[str] = None) -> List[Memory]:
        """下限フィルタなしの一覧（CLI・確認用）"""
        table = _table(kind)
        sql = f"SELECT * FROM {table}"
        params = ()
        if kind == VENDOR and origin:
            sql += " WHERE vendor_key=?"
            params = (_vendor_key(origin),)
        with _conn(self.db_path) as con:
            rows = con.execute(f"{sql} {_RECALL_ORDER}", params).fetchall()
        return [_row_to_memory(kind, r) for r in rows]

    def create(self, kind: str, memory: Memory) -> int:
        now = _now()
        confidence = min(1.0, max(0.0, memory.confidence))
        last_used = memory.last_used
        created_at = memory.created_at or now
        with _conn(self.db_path) as con:
            if kind == VENDOR:
                cur = con.execute(
                    "INSERT INTO vendor_memory(vendor_name, vendor_key, pattern_type, pattern_key, pattern_value, confidence, usage_count, last_used, created_at) VALUES (?,?,?,?,?,?,?,?,?)",
                    (
                        memory.vendor_name,
                        _vendor_key(memory.vendor_name),
                        memory.pattern_type,
                        memory.pattern_key,
                        memory.pattern_value,
                        confidence,
                        memory.usage_count,
                        last_used,
                        created_at,
                    ),
                )
            elif kind == CORRECTION:
                cur = con.execute(
                    "INSERT INTO correction_memory(correction_type, condition, action, confidence, usage_count, last_used, created_at) VALUES (?,?,?,?,?,?,?)",
                    (
                        memory.correction_type,
                        memory.condition,
                        memory.action,
                        confidence,
                        memory.usage_count,
                        last_used,
                        created_at,
                    ),
                )
            elif kind == RESOLUTION:
                cur = con.execute(
                    "INSERT INTO resolution_memory(issue_type, resolution, human_approved, confidence, usage_count, last_used, created_at) VALUES (?,?,?,?,?,?,?)",
                    (
                        memory.issue_type,
                        memory.resolution,
                        int(bool(memory.human_approved)),
                        confidence,
                        memory.usage_count,
                        last_used,
                        created_at,
                    ),
                )
            else:
                raise ValueError(f"unknown memory kind: {kind!r}")
            memory_id = cur.lastrowid
        logger.debug("created %s memory id=%s confidence=%.2f", kind, memory_id, confidence)
        return memory_id

    def reinforce(self, kind: str, memory_id: int, new_confidence: float, bump_usage: bool = True):
        table = _table(kind)
        confidence = min(1.0, max(0.0, new_confidence))
        with _conn(self.db_path) as con:
            cur = con.execute(
                f"UPDATE {table} SET confidence=?, usage_count=usage_count+?, last_used=? WHERE id=?",
                (confidence, 1 if bump_usage else 0, _now(), memory_id),
            )
            if cur.rowcount == 0:
                raise KeyError(f"{kind} memory {memory_id} not found")
        logger.debug("reinforced %s memory id=%s confidence=%.2f", kind, memory_id, confidence)

    def replace_value(self, memory_id: int, pattern_value: str, new_confidence: float):
        confidence = min(1.0, max(0.0, new_confidence))
        with _conn(self.db_path) as con:
            cur = con.execute(
                "UPDATE vendor_memory SET pattern_value=?, confidence=?, usage_count=usage_count+1, last_used=? "
                "WHERE id=?",
                (pattern_value, confidence, _now(), memory_id),
            )
            if cur.rowcount == 0:
                raise KeyError(f"{VENDOR} memory {memory_id} not found")
        logger.debug("replaced vendor memory id=%s value=%r confidence=%.2f", memory_id, pattern_value, confidence)

    def find_by_key(self, kind: str, origin: Optional[str], pattern_key: str) -> Optional[Memory]:
        # 下限フィルタはかけない（減衰したメモリも再強化できる）
        if kind == VENDOR:
            sql = "SELECT * FROM vendor_memory WHERE vendor_key=? AND pattern_key=?"
            params = (_vendor_key(origin), pattern_key)
        elif kind == CORRECTION:
            sql = "SELECT * FROM correction_memory WHERE correction_type=?"
            params = (pattern_key,)
        elif kind == RESOLUTION:
            sql = "SELECT * FROM resolution_memory WHERE issue_type=?"
            params = (pattern_key,)
        else:
            raise ValueError(f"unknown memory kind: {kind!r}")
        with _conn(self.db_path) as con:
            row = con.execute(f"{sql} ORDER BY confidence DESC, id ASC LIMIT 1", params).fetchone()
        return _row_to_memory(kind, row) if row else None

    def exists_by_origin_and_doc_number(self, origin: str, doc_number: str) -> bool:
        with _conn(self.db_path) as con:
            cur = con.execute(
                "SELECT 1 FROM processed_invoices WHERE vendor_key=? AND invoice_number=?",
                (_vendor_key(origin), doc_number),
            )
            return cur.fetchone() is not None

    def mark_processed(self, record_id: str, origin: str, doc_number: str, doc_date: str):
        with _conn(self.db_path) as con:
            con.execute(
                "INSERT OR IGNORE INTO processed_invoices(invoice_id, vendor, vendor_key, invoice_number, invoice_date, processed_at) VALUES (?,?,?,?,?,?)",
                (record_id, origin, _vendor_key(origin), doc_number, doc_date, _now()),
            )


class SqliteAuditLog(AuditSink):
    """監査ログ（処理ステップごとに1行）"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        init_db(self.db_path)

    def append(self, target_id: str, stage: str, details: str):
        with _conn(self.db_path) as con:
            con.execute(
                "INSERT INTO audit_log(target_id, step, ts, details) VALUES (?,?,?,?)",
                (target_id, stage, _now(), details),
            )

    def entries(self, target_id: Optional[str] = None) -> List[Dict]:
        sql = "SELECT target_id, step, ts, details FROM audit_log"
        params = ()
        if target_id is not None:
            sql += " WHERE target_id=?"
            params = (target_id,)
        with _conn(self.db_path) as con:
            rows = con.execute(sql + " ORDER BY id ASC", params).fetchall()
        return [dict(r) for r in rows]
