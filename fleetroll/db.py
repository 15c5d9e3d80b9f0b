from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .runtime import (
    FleetSnapshot,
    Health,
    Lifecycle,
    Replica,
    ReplicaSpec,
    ScalingPolicy,
    UpdateStatus,
    utc_now,
)
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet) the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "fleetroll.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS fleets (
              name TEXT PRIMARY KEY,
              desired_capacity INTEGER NOT NULL,
              launch_spec TEXT, -- json ReplicaSpec
              version INTEGER NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS replicas (
              id TEXT PRIMARY KEY,
              fleet TEXT NOT NULL,
              zone TEXT NOT NULL,
              spec TEXT NOT NULL, -- json ReplicaSpec
              lifecycle TEXT NOT NULL, -- launching|in_service|draining|terminated
              health TEXT NOT NULL, -- unknown|healthy|unhealthy
              created_at REAL NOT NULL,
              address TEXT,
              update_id TEXT
            );

            CREATE TABLE IF NOT EXISTS updates (
              id TEXT PRIMARY KEY,
              fleet TEXT NOT NULL,
              state TEXT NOT NULL,
              body TEXT NOT NULL, -- json UpdateStatus
              started_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scaling_policies (
              fleet TEXT PRIMARY KEY,
              body TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              fleet TEXT,
              update_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_replicas_fleet ON replicas(fleet);
            CREATE INDEX IF NOT EXISTS idx_updates_fleet ON updates(fleet);
            """
        )


def log_event(level: str, message: str, fleet: str | None = None, update_id: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, fleet, update_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), fleet, update_id, message),
        )


def latest_events(limit: int = 100, update_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if update_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE update_id=? ORDER BY id DESC LIMIT ?", (update_id, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def save_fleet(snap: FleetSnapshot) -> None:
    """Replace the stored fleet record and its membership in one transaction."""
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO fleets (name, desired_capacity, launch_spec, version, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              desired_capacity=excluded.desired_capacity,
              launch_spec=excluded.launch_spec,
              version=excluded.version,
              updated_at=excluded.updated_at
            """,
            (
                snap.name,
                snap.desired_capacity,
                json.dumps(snap.launch_spec.to_dict()) if snap.launch_spec else None,
                snap.version,
                utc_now(),
            ),
        )
        conn.execute("DELETE FROM replicas WHERE fleet=?", (snap.name,))
        conn.executemany(
            """
            INSERT INTO replicas (id, fleet, zone, spec, lifecycle, health, created_at, address, update_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    r.id,
                    snap.name,
                    r.zone,
                    json.dumps(r.spec.to_dict()),
                    r.lifecycle.value,
                    r.health.value,
                    r.created_at,
                    r.address,
                    r.update_id,
                )
                for r in snap.replicas
            ],
        )


def load_fleet(name: str) -> FleetSnapshot | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM fleets WHERE name=?", (name,)).fetchone()
        if not row:
            return None
        rows = conn.execute("SELECT * FROM replicas WHERE fleet=? ORDER BY created_at, id", (name,)).fetchall()
    replicas = tuple(
        Replica(
            id=r["id"],
            zone=r["zone"],
            spec=ReplicaSpec.from_dict(json.loads(r["spec"])),
            lifecycle=Lifecycle(r["lifecycle"]),
            health=Health(r["health"]),
            created_at=r["created_at"],
            address=r["address"],
            update_id=r["update_id"],
        )
        for r in rows
    )
    return FleetSnapshot(
        name=row["name"],
        version=row["version"],
        desired_capacity=row["desired_capacity"],
        launch_spec=ReplicaSpec.from_dict(json.loads(row["launch_spec"])) if row["launch_spec"] else None,
        replicas=replicas,
    )


def save_update(st: UpdateStatus) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO updates (id, fleet, state, body, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              state=excluded.state,
              body=excluded.body,
              updated_at=excluded.updated_at
            """,
            (st.id, st.fleet, st.state.value, json.dumps(st.to_dict()), st.started_at, st.updated_at),
        )


def load_updates(fleet: str) -> list[UpdateStatus]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT body FROM updates WHERE fleet=? ORDER BY started_at, rowid", (fleet,)
        ).fetchall()
    return [UpdateStatus.from_dict(json.loads(r["body"])) for r in rows]


def save_scaling_policy(fleet: str, policy: ScalingPolicy) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO scaling_policies (fleet, body, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(fleet) DO UPDATE SET body=excluded.body, updated_at=excluded.updated_at
            """,
            (fleet, json.dumps(policy.to_dict()), utc_now()),
        )


def load_scaling_policy(fleet: str) -> ScalingPolicy | None:
    with connect() as conn:
        row = conn.execute("SELECT body FROM scaling_policies WHERE fleet=?", (fleet,)).fetchone()
    return ScalingPolicy.from_dict(json.loads(row["body"])) if row else None
