"""
SQLite-based approval storage for production use.

Provides persistent storage of flows, instances, step instances, decisions
and step delegates. Every state change is a conditional UPDATE whose
affected-row count is checked inside one write transaction, so concurrent
deciders on the same step cannot both succeed.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Iterator, Optional

from loguru import logger

from ...models.approval import (
    ApprovalDecision,
    ApprovalFlow,
    ApprovalFlowStep,
    ApprovalInstance,
    ApprovalStepInstance,
    DecisionAction,
    InstanceStatus,
    InstanceTransition,
)
from ..errors import DuplicateInstance
from .approval_store_base import ApprovalStoreBase, MUTABLE_FLOW_FIELDS, MUTABLE_INSTANCE_FIELDS


SCHEMA = """
CREATE TABLE IF NOT EXISTS approval_flows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT,
    target_type TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    branch_id TEXT,
    region_id TEXT,
    department_id TEXT,
    position_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS approval_flow_steps (
    flow_id INTEGER NOT NULL REFERENCES approval_flows(id) ON DELETE CASCADE,
    step_order INTEGER NOT NULL,
    name TEXT NOT NULL,
    approver_type TEXT NOT NULL,
    approver_role_code TEXT,
    specific_approver_id TEXT,
    approver_level INTEGER,
    is_final INTEGER NOT NULL DEFAULT 0,
    can_skip INTEGER NOT NULL DEFAULT 0,
    escalation_role_code TEXT,
    escalation_hours INTEGER NOT NULL DEFAULT 0,
    instructions TEXT
);

CREATE TABLE IF NOT EXISTS approval_instances (
    id TEXT PRIMARY KEY,
    flow_id INTEGER NOT NULL REFERENCES approval_flows(id),
    flow_version INTEGER NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    requester_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    current_step_order INTEGER NOT NULL,
    is_urgent INTEGER NOT NULL DEFAULT 0,
    halt_reason TEXT,
    resolved_by TEXT,
    final_comment TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED'))
);

CREATE TABLE IF NOT EXISTS approval_step_instances (
    instance_id TEXT NOT NULL REFERENCES approval_instances(id) ON DELETE CASCADE,
    step_order INTEGER NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    decided_by TEXT,
    decided_at TEXT,
    comment TEXT,
    activated_at TEXT,
    PRIMARY KEY (instance_id, step_order),
    CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED', 'SKIPPED'))
);

CREATE TABLE IF NOT EXISTS approval_decisions (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    instance_id TEXT NOT NULL REFERENCES approval_instances(id),
    step_order INTEGER NOT NULL,
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    comment TEXT,
    delegate_to TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS approval_step_delegates (
    instance_id TEXT NOT NULL REFERENCES approval_instances(id) ON DELETE CASCADE,
    step_order INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    PRIMARY KEY (instance_id, step_order, user_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_flow_step_order
    ON approval_flow_steps(flow_id, step_order);

CREATE UNIQUE INDEX IF NOT EXISTS idx_one_active_instance_per_target
    ON approval_instances(target_type, target_id) WHERE status = 'PENDING';

CREATE INDEX IF NOT EXISTS idx_instances_status ON approval_instances(status);
CREATE INDEX IF NOT EXISTS idx_instances_requester ON approval_instances(requester_id);
CREATE INDEX IF NOT EXISTS idx_instances_created_at ON approval_instances(created_at);
CREATE INDEX IF NOT EXISTS idx_decisions_instance ON approval_decisions(instance_id);
CREATE INDEX IF NOT EXISTS idx_decisions_created_at ON approval_decisions(created_at);
"""

# Write triggers that keep the decision log append-only
APPEND_ONLY_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS trg_decisions_no_update
BEFORE UPDATE ON approval_decisions
BEGIN
    SELECT RAISE(ABORT, 'approval_decisions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_decisions_no_delete
BEFORE DELETE ON approval_decisions
BEGIN
    SELECT RAISE(ABORT, 'approval_decisions is append-only');
END;
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):
        return value.value
    return value


class SQLiteApprovalStore(ApprovalStoreBase):
    """
    SQLite-backed approval store with persistent storage.

    Features:
    - Persistent storage across application restarts
    - Partial unique index enforcing one PENDING instance per target
    - Conditional updates with row-count checks for decisions
    - Writers serialised with BEGIN IMMEDIATE (SQLite's database write lock)
    - Append-only decision log guarded by triggers
    """

    def __init__(self, db_path: str = "approvals.db", timeout: float = 30.0):
        """
        Initialize store with database path.

        Args:
            db_path: Path to SQLite database file (default: approvals.db)
            timeout: Seconds a writer waits for the database lock
        """
        self.db_path = db_path
        self.timeout = timeout
        self._init_database()

    def _init_database(self):
        """Create tables, indexes and triggers if they don't exist"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.executescript(SCHEMA)
        conn.executescript(APPEND_ONLY_TRIGGERS)
        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory (autocommit mode)"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the first statement"""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    # ------------------------------------------------------------------ flows

    @staticmethod
    def _row_to_flow(row: sqlite3.Row) -> ApprovalFlow:
        return ApprovalFlow(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            description=row["description"],
            target_type=row["target_type"],
            is_active=bool(row["is_active"]),
            priority=row["priority"],
            version=row["version"],
            branch_id=row["branch_id"],
            region_id=row["region_id"],
            department_id=row["department_id"],
            position_id=row["position_id"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_flow_step(row: sqlite3.Row) -> ApprovalFlowStep:
        return ApprovalFlowStep(
            flow_id=row["flow_id"],
            step_order=row["step_order"],
            name=row["name"],
            approver_type=row["approver_type"],
            approver_role_code=row["approver_role_code"],
            specific_approver_id=row["specific_approver_id"],
            approver_level=row["approver_level"],
            is_final=bool(row["is_final"]),
            can_skip=bool(row["can_skip"]),
            escalation_role_code=row["escalation_role_code"],
            escalation_hours=row["escalation_hours"],
            instructions=row["instructions"],
        )

    @staticmethod
    def _insert_flow_steps(conn: sqlite3.Connection, flow_id: int, steps: list[ApprovalFlowStep]) -> None:
        conn.executemany("""
            INSERT INTO approval_flow_steps (
                flow_id, step_order, name, approver_type, approver_role_code,
                specific_approver_id, approver_level, is_final, can_skip,
                escalation_role_code, escalation_hours, instructions
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                flow_id, s.step_order, s.name, s.approver_type.value, s.approver_role_code,
                s.specific_approver_id, s.approver_level, int(s.is_final), int(s.can_skip),
                s.escalation_role_code, s.escalation_hours, s.instructions,
            )
            for s in steps
        ])

    def add_flow(self, flow: ApprovalFlow, steps: list[ApprovalFlowStep]) -> ApprovalFlow:
        now = datetime.now(UTC).isoformat()
        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO approval_flows (
                    code, name, description, target_type, is_active, priority, version,
                    branch_id, region_id, department_id, position_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                flow.code, flow.name, flow.description, flow.target_type, int(flow.is_active),
                flow.priority, flow.version, flow.branch_id, flow.region_id,
                flow.department_id, flow.position_id, now, now,
            ))
            flow_id = cursor.lastrowid
            self._insert_flow_steps(conn, flow_id, steps)
        return self.get_flow(flow_id)

    def get_flow(self, flow_id: int) -> Optional[ApprovalFlow]:
        rows = self._query("SELECT * FROM approval_flows WHERE id = ?", (flow_id,))
        return self._row_to_flow(rows[0]) if rows else None

    def get_flow_by_code(self, code: str) -> Optional[ApprovalFlow]:
        rows = self._query("SELECT * FROM approval_flows WHERE code = ?", (code,))
        return self._row_to_flow(rows[0]) if rows else None

    def list_flows(self, target_type: Optional[str] = None, active_only: bool = False) -> list[ApprovalFlow]:
        sql = "SELECT * FROM approval_flows WHERE 1 = 1"
        params: list[Any] = []
        if target_type is not None:
            sql += " AND target_type = ?"
            params.append(target_type)
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY id"
        return [self._row_to_flow(row) for row in self._query(sql, tuple(params))]

    def get_flow_steps(self, flow_id: int) -> list[ApprovalFlowStep]:
        rows = self._query("""
            SELECT * FROM approval_flow_steps
            WHERE flow_id = ?
            ORDER BY step_order
        """, (flow_id,))
        return [self._row_to_flow_step(row) for row in rows]

    def update_flow(self, flow_id: int, changes: dict[str, Any]) -> Optional[ApprovalFlow]:
        updates = {k: _to_db(v) for k, v in changes.items() if k in MUTABLE_FLOW_FIELDS}
        updates["updated_at"] = datetime.now(UTC).isoformat()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE approval_flows SET {assignments} WHERE id = ?",
                (*updates.values(), flow_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_flow(flow_id)

    def replace_flow_steps(self, flow_id: int, steps: list[ApprovalFlowStep]) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM approval_flow_steps WHERE flow_id = ?", (flow_id,))
            self._insert_flow_steps(conn, flow_id, steps)

    def delete_flow(self, flow_id: int) -> bool:
        with self._transaction() as conn:
            conn.execute("DELETE FROM approval_flow_steps WHERE flow_id = ?", (flow_id,))
            cursor = conn.execute("DELETE FROM approval_flows WHERE id = ?", (flow_id,))
            return cursor.rowcount > 0

    def count_flow_references(self, flow_id: int) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM approval_instances WHERE flow_id = ?", (flow_id,))
        return rows[0]["n"]

    # -------------------------------------------------------------- instances

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> ApprovalInstance:
        return ApprovalInstance(
            id=row["id"],
            flow_id=row["flow_id"],
            flow_version=row["flow_version"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            requester_id=row["requester_id"],
            status=row["status"],
            current_step_order=row["current_step_order"],
            is_urgent=bool(row["is_urgent"]),
            halt_reason=row["halt_reason"],
            resolved_by=row["resolved_by"],
            final_comment=row["final_comment"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> ApprovalStepInstance:
        return ApprovalStepInstance(
            instance_id=row["instance_id"],
            step_order=row["step_order"],
            name=row["name"],
            status=row["status"],
            decided_by=row["decided_by"],
            decided_at=_parse_ts(row["decided_at"]),
            comment=row["comment"],
            activated_at=_parse_ts(row["activated_at"]),
        )

    @staticmethod
    def _row_to_decision(row: sqlite3.Row) -> ApprovalDecision:
        return ApprovalDecision(
            id=row["id"],
            instance_id=row["instance_id"],
            step_order=row["step_order"],
            actor_id=row["actor_id"],
            action=row["action"],
            comment=row["comment"],
            delegate_to=json.loads(row["delegate_to"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def create_instance(self, instance: ApprovalInstance, steps: list[ApprovalStepInstance]) -> None:
        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO approval_instances (
                        id, flow_id, flow_version, target_type, target_id, requester_id,
                        status, current_step_order, is_urgent, halt_reason, resolved_by,
                        final_comment, created_at, updated_at, completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    instance.id, instance.flow_id, instance.flow_version, instance.target_type,
                    instance.target_id, instance.requester_id, instance.status.value,
                    instance.current_step_order, int(instance.is_urgent), instance.halt_reason,
                    instance.resolved_by, instance.final_comment, _ts(instance.created_at),
                    _ts(instance.updated_at), _ts(instance.completed_at),
                ))
                conn.executemany("""
                    INSERT INTO approval_step_instances (
                        instance_id, step_order, name, status, decided_by, decided_at, comment, activated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    (
                        s.instance_id, s.step_order, s.name, s.status.value, s.decided_by,
                        _ts(s.decided_at), s.comment, _ts(s.activated_at),
                    )
                    for s in steps
                ])
        except sqlite3.IntegrityError as e:
            existing = self.find_active_instance(instance.target_type, instance.target_id)
            if existing is None:
                raise
            raise DuplicateInstance(
                f"Active approval {existing.id} already exists for "
                f"{instance.target_type}/{instance.target_id}",
                existing_id=existing.id,
            ) from e

    def apply_transition(self, transition: InstanceTransition) -> bool:
        """
        Apply a transition as conditional updates inside one write transaction.

        Returns:
            True if every guarded UPDATE affected exactly one row, otherwise
            False with the transaction rolled back
        """
        changes = {k: _to_db(v) for k, v in transition.changes.items() if k in MUTABLE_INSTANCE_FIELDS}
        changes["updated_at"] = datetime.now(UTC).isoformat()
        assignments = ", ".join(f"{column} = ?" for column in changes)

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")

            cursor = conn.execute(
                f"""
                UPDATE approval_instances SET {assignments}
                WHERE id = ? AND status = ? AND current_step_order = ?
                """,
                (
                    *changes.values(),
                    transition.instance_id,
                    transition.expected_status.value,
                    transition.expected_step_order,
                ),
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                logger.debug("Instance guard failed", instance_id=transition.instance_id)
                return False

            for update in transition.step_updates:
                cursor = conn.execute("""
                    UPDATE approval_step_instances
                    SET status = ?, decided_by = ?, decided_at = ?, comment = ?
                    WHERE instance_id = ? AND step_order = ? AND status = 'PENDING'
                """, (
                    update.status.value, update.decided_by, _ts(update.decided_at), update.comment,
                    transition.instance_id, update.step_order,
                ))
                if cursor.rowcount != 1:
                    conn.execute("ROLLBACK")
                    logger.debug(
                        "Step guard failed",
                        instance_id=transition.instance_id,
                        step_order=update.step_order,
                    )
                    return False

            for step_order, activated_at in transition.activated_steps.items():
                conn.execute("""
                    UPDATE approval_step_instances SET activated_at = ?
                    WHERE instance_id = ? AND step_order = ?
                """, (_ts(activated_at), transition.instance_id, step_order))

            if transition.decision is not None:
                d = transition.decision
                conn.execute("""
                    INSERT INTO approval_decisions (
                        id, seq, instance_id, step_order, actor_id, action, comment, delegate_to, created_at
                    ) VALUES (
                        ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM approval_decisions), ?, ?, ?, ?, ?, ?, ?
                    )
                """, (
                    d.id, d.instance_id, d.step_order, d.actor_id, d.action.value,
                    d.comment, json.dumps(d.delegate_to), _ts(d.created_at),
                ))

            if transition.delegates:
                step_order = transition.delegate_step_order or transition.expected_step_order
                conn.executemany("""
                    INSERT OR IGNORE INTO approval_step_delegates (instance_id, step_order, user_id)
                    VALUES (?, ?, ?)
                """, [(transition.instance_id, step_order, user_id) for user_id in transition.delegates])

            conn.execute("COMMIT")
            return True
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        rows = self._query("SELECT * FROM approval_instances WHERE id = ?", (instance_id,))
        return self._row_to_instance(rows[0]) if rows else None

    def get_step_instances(self, instance_id: str) -> list[ApprovalStepInstance]:
        rows = self._query("""
            SELECT * FROM approval_step_instances
            WHERE instance_id = ?
            ORDER BY step_order
        """, (instance_id,))
        return [self._row_to_step(row) for row in rows]

    def get_decisions(self, instance_id: str) -> list[ApprovalDecision]:
        rows = self._query("""
            SELECT * FROM approval_decisions
            WHERE instance_id = ?
            ORDER BY seq
        """, (instance_id,))
        return [self._row_to_decision(row) for row in rows]

    def get_delegates(self, instance_id: str, step_order: int) -> set[str]:
        rows = self._query("""
            SELECT user_id FROM approval_step_delegates
            WHERE instance_id = ? AND step_order = ?
        """, (instance_id, step_order))
        return {row["user_id"] for row in rows}

    def find_instances(
        self,
        *,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        flow_id: Optional[int] = None,
    ) -> list[ApprovalInstance]:
        filters = {
            "target_type": target_type,
            "target_id": target_id,
            "requester_id": requester_id,
            "status": status.value if status is not None else None,
            "flow_id": flow_id,
        }
        sql = "SELECT * FROM approval_instances WHERE 1 = 1"
        params: list[Any] = []
        for column, value in filters.items():
            if value is not None:
                sql += f" AND {column} = ?"
                params.append(value)
        sql += " ORDER BY created_at ASC"
        return [self._row_to_instance(row) for row in self._query(sql, tuple(params))]

    def list_decisions(
        self,
        *,
        since: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        action: Optional[DecisionAction] = None,
    ) -> list[ApprovalDecision]:
        sql = "SELECT * FROM approval_decisions WHERE 1 = 1"
        params: list[Any] = []
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since.isoformat())
        if actor_id is not None:
            sql += " AND actor_id = ?"
            params.append(actor_id)
        if action is not None:
            sql += " AND action = ?"
            params.append(action.value)
        sql += " ORDER BY seq"
        return [self._row_to_decision(row) for row in self._query(sql, tuple(params))]
