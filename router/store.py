"""
Skill Router — Instance Store

Persistence for workflow instances and the action ledger. Supports
resume across process restarts.

  InMemoryInstanceStore   tests and embedded use
  SQLiteInstanceStore     single-file SQLite (WAL), the CLI default

Instances are never deleted. Terminal instances are archived by
stamping archived_at; they stay queryable.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from router.types import WorkflowInstance, WorkflowStatus


class InstanceStore:
    """Interface shared by both backends."""

    def save_instance(self, inst: WorkflowInstance):
        raise NotImplementedError

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        raise NotImplementedError

    def list_instances(
        self,
        status: WorkflowStatus | None = None,
        limit: int = 500,
    ) -> list[WorkflowInstance]:
        raise NotImplementedError

    def log_action(
        self,
        instance_id: str,
        action_type: str,
        details: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> bool:
        raise NotImplementedError

    def get_ledger(self, instance_id: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def stats(self) -> dict[str, Any]:
        raise NotImplementedError

    def close(self):
        pass


# ═══════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════

class InMemoryInstanceStore(InstanceStore):
    """Dict-backed store. Round-trips through to_dict() like SQLite does."""

    def __init__(self):
        self._instances: dict[str, dict[str, Any]] = {}
        self._ledger: list[dict[str, Any]] = []
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def save_instance(self, inst: WorkflowInstance):
        with self._lock:
            self._instances[inst.instance_id] = copy.deepcopy(inst.to_dict())

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            data = self._instances.get(instance_id)
            return WorkflowInstance.from_dict(copy.deepcopy(data)) if data else None

    def list_instances(self, status=None, limit=500):
        with self._lock:
            rows = list(self._instances.values())
        if status:
            rows = [r for r in rows if r["status"] == status.value]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [WorkflowInstance.from_dict(copy.deepcopy(r)) for r in rows[:limit]]

    def log_action(self, instance_id, action_type, details, idempotency_key=None):
        with self._lock:
            if idempotency_key:
                if idempotency_key in self._keys:
                    return False
                self._keys.add(idempotency_key)
            self._ledger.append({
                "id": len(self._ledger) + 1,
                "instance_id": instance_id,
                "action_type": action_type,
                "details": copy.deepcopy(details),
                "idempotency_key": idempotency_key,
                "created_at": time.time(),
            })
            return True

    def get_ledger(self, instance_id=None):
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._ledger
                if instance_id is None or e["instance_id"] == instance_id
            ]

    def stats(self):
        counts: dict[str, int] = {}
        with self._lock:
            for r in self._instances.values():
                counts[r["status"]] = counts.get(r["status"], 0) + 1
            return {"instances": counts, "action_ledger_entries": len(self._ledger)}


# ═══════════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════════

class _Transaction:
    """
    SQLite transaction context manager.

    While active, individual save_*/log_action commits become no-ops.
    The real COMMIT happens when the context manager exits cleanly.
    """
    def __init__(self, conn, store):
        self.conn = conn
        self.store = store

    def __enter__(self):
        self.conn.execute("BEGIN IMMEDIATE")
        self.store._in_transaction = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.store._in_transaction = False
        if exc_type is None:
            self.conn.commit()
        else:
            self.conn.rollback()
        return False


class SQLiteInstanceStore(InstanceStore):
    """SQLite-backed store for workflow instances."""

    def __init__(self, db_path: str | Path = "router.db"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._in_transaction = False
        self._create_tables()

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self._in_transaction:
            self.conn.commit()

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.save_instance(inst)
                store.log_action(inst.instance_id, "advance", {...})
        """
        return _Transaction(self.conn, self)

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                intent TEXT NOT NULL,
                sequence TEXT NOT NULL DEFAULT '[]',
                current_index INTEGER NOT NULL DEFAULT 0,
                history TEXT NOT NULL DEFAULT '[]',
                criteria_results TEXT NOT NULL DEFAULT '[]',
                loop_back_count INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                request_text TEXT DEFAULT '',
                error TEXT,
                archived_at REAL
            );

            CREATE TABLE IF NOT EXISTS action_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                details TEXT NOT NULL,
                idempotency_key TEXT UNIQUE,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_instances_status ON instances(status);
            CREATE INDEX IF NOT EXISTS idx_ledger_instance ON action_ledger(instance_id);
        """)
        self._commit()

    # ─── Instance CRUD ───────────────────────────────────────────────

    def save_instance(self, inst: WorkflowInstance):
        data = inst.to_dict()
        self.conn.execute("""
            INSERT OR REPLACE INTO instances
            (instance_id, intent, sequence, current_index, history,
             criteria_results, loop_back_count, status,
             created_at, updated_at, request_text, error, archived_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            data["instance_id"],
            json.dumps(data["intent"]),
            json.dumps(data["sequence"]),
            data["current_index"],
            json.dumps(data["history"]),
            json.dumps(data["criteria_results"]),
            data["loop_back_count"],
            data["status"],
            data["created_at"], data["updated_at"],
            data["request_text"], data["error"], data["archived_at"],
        ))
        self._commit()

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = self.conn.execute(
            "SELECT * FROM instances WHERE instance_id = ?", (instance_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_instance(row)

    def list_instances(self, status=None, limit=500):
        query = "SELECT * FROM instances WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def _row_to_instance(self, row) -> WorkflowInstance:
        return WorkflowInstance.from_dict({
            "instance_id": row["instance_id"],
            "intent": json.loads(row["intent"]),
            "sequence": json.loads(row["sequence"]),
            "current_index": row["current_index"],
            "history": json.loads(row["history"]),
            "criteria_results": json.loads(row["criteria_results"]),
            "loop_back_count": row["loop_back_count"],
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "request_text": row["request_text"],
            "error": row["error"],
            "archived_at": row["archived_at"],
        })

    # ─── Action Ledger ───────────────────────────────────────────────

    def log_action(self, instance_id, action_type, details, idempotency_key=None):
        """
        Log an action to the ledger. Returns False if the idempotency
        key already exists.
        """
        try:
            self.conn.execute("""
                INSERT INTO action_ledger
                (instance_id, action_type, details, idempotency_key, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                instance_id, action_type,
                json.dumps(details, default=str),
                idempotency_key, time.time(),
            ))
            self._commit()
            return True
        except sqlite3.IntegrityError:
            return False

    def get_ledger(self, instance_id=None):
        query = "SELECT * FROM action_ledger WHERE 1=1"
        params = []
        if instance_id:
            query += " AND instance_id = ?"
            params.append(instance_id)
        query += " ORDER BY id"
        rows = self.conn.execute(query, params).fetchall()
        return [
            {
                "id": r["id"],
                "instance_id": r["instance_id"],
                "action_type": r["action_type"],
                "details": json.loads(r["details"]),
                "idempotency_key": r["idempotency_key"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self):
        instances = self.conn.execute(
            "SELECT status, COUNT(*) as cnt FROM instances GROUP BY status"
        ).fetchall()
        ledger_count = self.conn.execute(
            "SELECT COUNT(*) as cnt FROM action_ledger"
        ).fetchone()["cnt"]
        return {
            "instances": {r["status"]: r["cnt"] for r in instances},
            "action_ledger_entries": ledger_count,
        }

    def close(self):
        self.conn.close()
