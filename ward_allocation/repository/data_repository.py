"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Optional, Sequence

from ward_allocation.domain.errors import PersistenceFailure
from ward_allocation.domain.models import (
    TEAMS,
    PCAPreference,
    RosterSnapshot,
    SlotModes,
    SpecialProgram,
    SPTAllocation,
    Staff,
    StaffRank,
    Team,
    TeamAllocationLog,
    Ward,
)
from ward_allocation.repository.codec import (
    decode_roster,
    decode_saved_state,
    encode_roster,
    encode_saved_state,
)
from ward_allocation.services.schedule_state import SavedState
from ward_allocation.utils.config import Settings, get_settings
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)


_DEMO_WARDS = (
    ("R7A", {Team.FO: 18, Team.SMM: 14}),
    ("R7B", {Team.SFM: 16, Team.CPPC: 12}),
    ("R8A", {Team.MC: 20, Team.GMC: 15}),
    ("R8B", {Team.NSM: 17, Team.DRO: 16}),
)


def demo_roster() -> RosterSnapshot:
    """A small deterministic roster covering every team and staff role."""
    staff: list[Staff] = []
    for index, team in enumerate(TEAMS, start=1):
        staff.append(Staff(staff_id=f"T{index:02d}A", name=f"{team.value} team head", rank=StaffRank.APPT, team=team))
        staff.append(Staff(staff_id=f"T{index:02d}R", name=f"{team.value} therapist", rank=StaffRank.RPT, team=team))
        staff.append(Staff(staff_id=f"P{index:02d}", name=f"{team.value} PCA", rank=StaffRank.PCA, team=team))
    for index in range(1, 7):
        staff.append(
            Staff(
                staff_id=f"F{index:02d}",
                name=f"Floating PCA {index}",
                rank=StaffRank.PCA,
                floating=True,
            )
        )
    staff.append(Staff(staff_id="S01", name="Special program therapist", rank=StaffRank.SPT))

    wards = tuple(
        Ward(name=name, total_beds=sum(team_beds.values()), team_beds=team_beds)
        for name, team_beds in _DEMO_WARDS
    )
    weekdays = ("mon", "tue", "wed", "thu", "fri")
    return RosterSnapshot(
        staff=tuple(staff),
        wards=wards,
        special_programs=(
            SpecialProgram(
                program_id="CRP",
                name="Cardiac rehab",
                staff_ids=("T01R", "T01A"),
                weekdays=("mon", "wed"),
                fte_subtraction={"T01R": {"mon": 0.25, "wed": 0.25}, "T01A": {"mon": 0.25}},
                therapist_preference_order={Team.FO: ("T01R", "T01A")},
            ),
        ),
        spt_allocations=(
            SPTAllocation(
                allocation_id="SPT-S01",
                staff_id="S01",
                teams=(Team.SMM, Team.DRO),
                weekdays=weekdays,
                slots={day: (1, 2) for day in weekdays},
                fte_addon=0.5,
                slot_modes={day: SlotModes() for day in weekdays},
            ),
        ),
        pca_preferences=(
            PCAPreference(team=Team.FO, preferred_pca_ids=("F01",), preferred_slots=(1,)),
            PCAPreference(team=Team.GMC, avoid_gym_schedule=True, gym_slot=4),
        ),
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS RosterDocuments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        payload TEXT NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Schedules (
                        date_key TEXT PRIMARY KEY,
                        revision INTEGER NOT NULL CHECK (revision >= 0),
                        step TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        saved_at TEXT
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AllocationAuditLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        date_key TEXT NOT NULL,
                        revision INTEGER NOT NULL,
                        team TEXT NOT NULL,
                        slot INTEGER,
                        pca_id TEXT,
                        phase TEXT NOT NULL,
                        outcome TEXT NOT NULL,
                        reason TEXT NOT NULL,
                        allocation_order INTEGER NOT NULL,
                        was_preferred_pca INTEGER NOT NULL DEFAULT 0,
                        was_preferred_slot INTEGER NOT NULL DEFAULT 0,
                        FOREIGN KEY (date_key) REFERENCES Schedules(date_key)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_audit_date_revision
                    ON AllocationAuditLogs (date_key, revision);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_roster(self) -> None:
        """Store the demo roster only when no roster exists yet."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM RosterDocuments;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Roster already present; skipping seed")
                    return
                roster = demo_roster()
                cursor.execute(
                    "INSERT INTO RosterDocuments (payload) VALUES (?);",
                    (encode_roster(roster),),
                )
                conn.commit()
            logger.info("Demo roster seeded with %s staff", len(roster.staff))
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo roster seeding failed: {exc}") from exc

    def save_roster(self, roster: RosterSnapshot) -> int:
        """Store a new roster version; the latest one is the active roster."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO RosterDocuments (payload) VALUES (?);",
                (encode_roster(roster),),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def load_roster(self) -> RosterSnapshot:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload FROM RosterDocuments ORDER BY id DESC LIMIT 1;")
            row = cursor.fetchone()
        if row is None:
            return RosterSnapshot()
        return decode_roster(str(row["payload"]))

    def load_schedule(self, date_key: str) -> Optional[SavedState]:
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT payload FROM Schedules WHERE date_key = ?;",
                    (date_key,),
                )
                row = cursor.fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Schedule load failed for {date_key}: {exc}") from exc
        if row is None:
            return None
        return decode_saved_state(str(row["payload"]))

    def save_schedule(
        self,
        date_key: str,
        state: SavedState,
        team_logs: Sequence[TeamAllocationLog] = (),
    ) -> None:
        """Upsert one schedule row and its audit rows in a single transaction.

        Nothing is written when either part fails; the failure raises
        ``PersistenceFailure``.
        """
        payload = encode_saved_state(state)
        rows = _audit_rows(date_key, state.revision, team_logs)
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    INSERT INTO Schedules (date_key, revision, step, payload, saved_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(date_key) DO UPDATE SET
                        revision = excluded.revision,
                        step = excluded.step,
                        payload = excluded.payload,
                        saved_at = excluded.saved_at;
                    """,
                    (date_key, state.revision, state.step, payload, state.saved_at),
                )
                if rows:
                    cursor.executemany(
                        """
                        INSERT INTO AllocationAuditLogs (
                            date_key,
                            revision,
                            team,
                            slot,
                            pca_id,
                            phase,
                            outcome,
                            reason,
                            allocation_order,
                            was_preferred_pca,
                            was_preferred_slot
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                        """,
                        rows,
                    )
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Schedule save failed for {date_key}: {exc}") from exc

    def list_audit_logs(self, date_key: str, revision: Optional[int] = None) -> list[dict[str, Any]]:
        """Audit rows of one revision (the latest saved one by default)."""
        with self._connect() as conn:
            cursor = conn.cursor()
            if revision is None:
                cursor.execute(
                    "SELECT MAX(revision) AS revision FROM AllocationAuditLogs WHERE date_key = ?;",
                    (date_key,),
                )
                latest = cursor.fetchone()["revision"]
                if latest is None:
                    return []
                revision = int(latest)
            cursor.execute(
                """
                SELECT team, slot, pca_id, phase, outcome, reason, allocation_order,
                       was_preferred_pca, was_preferred_slot
                FROM AllocationAuditLogs
                WHERE date_key = ? AND revision = ?
                ORDER BY allocation_order ASC;
                """,
                (date_key, revision),
            )
            return [
                {
                    "revision": revision,
                    "team": str(row["team"]),
                    "slot": row["slot"],
                    "pca_id": row["pca_id"],
                    "phase": str(row["phase"]),
                    "outcome": str(row["outcome"]),
                    "reason": str(row["reason"]),
                    "allocation_order": int(row["allocation_order"]),
                    "was_preferred_pca": bool(row["was_preferred_pca"]),
                    "was_preferred_slot": bool(row["was_preferred_slot"]),
                }
                for row in cursor.fetchall()
            ]

    def count_schedules(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Schedules;")
            return int(cursor.fetchone()["count"])


def _audit_rows(
    date_key: str,
    revision: int,
    team_logs: Sequence[TeamAllocationLog],
) -> list[tuple[Any, ...]]:
    return [
        (
            date_key,
            revision,
            entry.team.value,
            entry.slot,
            entry.pca_id,
            entry.phase.value,
            entry.outcome.value,
            entry.reason,
            entry.allocation_order,
            int(entry.was_preferred_pca),
            int(entry.was_preferred_slot),
        )
        for log in team_logs
        for entry in log.assignments
    ]
