"""Append-only audit log of work loop activity (work_loop_runs)."""

import json
import sqlite3

from work_loop.db.models import AuditEntry, parse_dt


class AuditLog:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def log(
        self,
        project_id: str,
        cycle: int,
        phase: str,
        action: str,
        task_id: str | None = None,
        session_key: str | None = None,
        details: dict | None = None,
        duration_ms: int | None = None,
    ) -> None:
        self.db.execute(
            """INSERT INTO work_loop_runs
               (project_id, cycle, phase, action, task_id, session_key, details, duration_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                project_id, cycle, phase, action, task_id, session_key,
                json.dumps(details) if details is not None else None,
                duration_ms,
            ),
        )
        self.db.commit()

    def list_runs(
        self,
        project_id: str,
        limit: int = 50,
        action: str | None = None,
    ) -> list[AuditEntry]:
        """Most recent entries first."""
        query = "SELECT * FROM work_loop_runs WHERE project_id = ?"
        params: list = [project_id]
        if action:
            query += " AND action = ?"
            params.append(action)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self.db.execute(query, params).fetchall()
        return [_row_to_entry(r) for r in rows]

    def next_cycle_number(self) -> int:
        row = self.db.execute("SELECT MAX(cycle) AS c FROM work_loop_runs").fetchone()
        return (row["c"] or 0) + 1


def entry_to_dict(entry: AuditEntry) -> dict:
    return {
        "id": entry.id,
        "project_id": entry.project_id,
        "cycle": entry.cycle,
        "phase": entry.phase,
        "action": entry.action,
        "task_id": entry.task_id,
        "session_key": entry.session_key,
        "details": entry.details,
        "duration_ms": entry.duration_ms,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        project_id=row["project_id"],
        cycle=row["cycle"],
        phase=row["phase"],
        action=row["action"],
        task_id=row["task_id"],
        session_key=row["session_key"],
        details=json.loads(row["details"]) if row["details"] else None,
        duration_ms=row["duration_ms"],
        created_at=parse_dt(row["created_at"]),
    )
