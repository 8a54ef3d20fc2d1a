"""
Local SQLite Entity Store

Gateways, data points and readings. The readings table carries
UNIQUE(data_point_id, read_at); insert_reading relies on it to persist
each (point, nominal timestamp) exactly once no matter how many pollers
race for it.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from gateway_poller.common.config import (
    ByteOrder,
    DataPoint,
    DataType,
    Gateway,
    Quality,
    Reading,
)
from gateway_poller.common.exceptions import StoreError
from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.common.timestamp import parse_iso, to_iso, utc_now

logger = get_service_logger("storage.local_db")

# Default database path
DEFAULT_DB_PATH = Path("/var/lib/gateway-poller/poller.db")


class SqliteStore:
    """Shared connection handling for the SQLite-backed stores"""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        raise NotImplementedError

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with context manager"""
        # timeout=10.0: fail fast on lock contention instead of blocking forever
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield conn
        finally:
            conn.close()


class EntityStore(SqliteStore):
    """
    SQLite store for gateways, data points and readings.

    Features:
    - UNIQUE(host, port, unit_id) on gateways
    - UNIQUE(data_point_id, read_at) on readings (duplicate guard)
    - Atomic health counter updates
    - Config sync (upsert by gateway name / point label)
    """

    def _init_db(self) -> None:
        """Initialize database schema"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS gateways (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL DEFAULT 502,
                    unit_id INTEGER NOT NULL DEFAULT 1,
                    poll_interval INTEGER NOT NULL DEFAULT 10,
                    is_active INTEGER NOT NULL DEFAULT 1,

                    -- Health counters (mutated only by polls)
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    consecutive_failures INTEGER NOT NULL DEFAULT 0,
                    last_seen_at TEXT,
                    last_error TEXT,

                    created_at TEXT DEFAULT (datetime('now')),
                    updated_at TEXT DEFAULT (datetime('now')),

                    UNIQUE (host, port, unit_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS data_points (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    gateway_id INTEGER NOT NULL REFERENCES gateways(id),
                    label TEXT NOT NULL,
                    function_code INTEGER NOT NULL DEFAULT 3,
                    register_address INTEGER NOT NULL,
                    register_count INTEGER NOT NULL,
                    data_type TEXT NOT NULL,
                    byte_order TEXT NOT NULL DEFAULT 'big_endian',
                    scale_factor REAL NOT NULL DEFAULT 1.0,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    swap_bytes INTEGER NOT NULL DEFAULT 0,
                    unit TEXT DEFAULT '',
                    group_name TEXT DEFAULT '',

                    UNIQUE (gateway_id, label)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    data_point_id INTEGER NOT NULL REFERENCES data_points(id),
                    raw_registers TEXT,
                    scaled_value REAL,
                    quality TEXT NOT NULL CHECK (quality IN ('good', 'bad', 'uncertain')),
                    read_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,

                    UNIQUE (data_point_id, read_at)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_readings_read_at
                ON readings(read_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_gateways_active
                ON gateways(is_active, last_seen_at)
            """)

            conn.commit()

        logger.info(f"Database initialized: {self.db_path}")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_point(row: sqlite3.Row) -> DataPoint:
        return DataPoint(
            id=row["id"],
            gateway_id=row["gateway_id"],
            label=row["label"],
            function_code=row["function_code"],
            register_address=row["register_address"],
            register_count=row["register_count"],
            data_type=DataType(row["data_type"]),
            byte_order=ByteOrder(row["byte_order"]),
            scale_factor=row["scale_factor"],
            is_enabled=bool(row["is_enabled"]),
            swap_bytes=bool(row["swap_bytes"]),
            unit=row["unit"] or "",
            group_name=row["group_name"] or "",
        )

    @staticmethod
    def _row_to_gateway(row: sqlite3.Row, points: list[DataPoint] | None = None) -> Gateway:
        return Gateway(
            id=row["id"],
            name=row["name"],
            host=row["host"],
            port=row["port"],
            unit_id=row["unit_id"],
            poll_interval=row["poll_interval"],
            is_active=bool(row["is_active"]),
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            consecutive_failures=row["consecutive_failures"],
            last_seen_at=parse_iso(row["last_seen_at"]),
            last_error=row["last_error"],
            data_points=points or [],
        )

    @staticmethod
    def _row_to_reading(row: sqlite3.Row) -> Reading:
        raw = row["raw_registers"]
        return Reading(
            id=row["id"],
            data_point_id=row["data_point_id"],
            raw_registers=json.loads(raw) if raw else None,
            scaled_value=row["scaled_value"],
            quality=Quality(row["quality"]),
            read_at=parse_iso(row["read_at"]),
            created_at=parse_iso(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Gateways
    # ------------------------------------------------------------------

    def _load_points(self, conn: sqlite3.Connection, gateway_id: int) -> list[DataPoint]:
        rows = conn.execute(
            "SELECT * FROM data_points WHERE gateway_id = ? ORDER BY register_address, id",
            (gateway_id,),
        ).fetchall()
        return [self._row_to_point(r) for r in rows]

    def get_gateway(self, gateway_id: int) -> Gateway | None:
        """Get a gateway with its data points"""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM gateways WHERE id = ?", (gateway_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_gateway(row, self._load_points(conn, gateway_id))

    def get_gateway_by_name(self, name: str) -> Gateway | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM gateways WHERE name = ?", (name,)).fetchone()
            if row is None:
                return None
            return self._row_to_gateway(row, self._load_points(conn, row["id"]))

    def list_gateways(self, active_only: bool = False) -> list[Gateway]:
        """List gateways (with data points), ordered by id"""
        query = "SELECT * FROM gateways"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id"

        with self._get_connection() as conn:
            rows = conn.execute(query).fetchall()
            return [self._row_to_gateway(r, self._load_points(conn, r["id"])) for r in rows]

    def _insert_gateway(self, conn: sqlite3.Connection, gateway: Gateway) -> int:
        cursor = conn.execute("""
            INSERT INTO gateways (name, host, port, unit_id, poll_interval, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            gateway.name,
            gateway.host,
            gateway.port,
            gateway.unit_id,
            gateway.poll_interval,
            1 if gateway.is_active else 0,
        ))
        return cursor.lastrowid

    def _insert_point(self, conn: sqlite3.Connection, gateway_id: int, point: DataPoint) -> int:
        cursor = conn.execute("""
            INSERT INTO data_points (
                gateway_id, label, function_code, register_address, register_count,
                data_type, byte_order, scale_factor, is_enabled, swap_bytes,
                unit, group_name
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            gateway_id,
            point.label,
            int(point.function_code),
            point.register_address,
            point.register_count,
            DataType(point.data_type).value,
            ByteOrder(point.byte_order).value,
            point.scale_factor,
            1 if point.is_enabled else 0,
            1 if point.swap_bytes else 0,
            point.unit,
            point.group_name,
        ))
        return cursor.lastrowid

    def _update_point(self, conn: sqlite3.Connection, point_id: int, point: DataPoint) -> None:
        conn.execute("""
            UPDATE data_points SET
                function_code = ?, register_address = ?, register_count = ?,
                data_type = ?, byte_order = ?, scale_factor = ?, is_enabled = ?,
                swap_bytes = ?, unit = ?, group_name = ?
            WHERE id = ?
        """, (
            int(point.function_code),
            point.register_address,
            point.register_count,
            DataType(point.data_type).value,
            ByteOrder(point.byte_order).value,
            point.scale_factor,
            1 if point.is_enabled else 0,
            1 if point.swap_bytes else 0,
            point.unit,
            point.group_name,
            point_id,
        ))

    def sync_config(self, gateways: list[Gateway], apply_active: bool = False) -> dict[str, int]:
        """
        Upsert configured gateways (by name) and their points (by label).

        Gateways missing from the config are deactivated and points missing
        from a gateway are disabled; nothing is deleted, so readings keep
        their parents. is_active is taken from the config for new gateways,
        for gateways the config deactivates, and for every gateway when
        apply_active is set (explicit operator sync). Otherwise a gateway
        tripped by the circuit breaker stays disabled.

        Returns:
            Counts of created/updated/deactivated gateways and points
        """
        counts = {
            "gateways_created": 0,
            "gateways_updated": 0,
            "gateways_deactivated": 0,
            "points_created": 0,
            "points_updated": 0,
            "points_disabled": 0,
        }
        configured_names = {g.name for g in gateways}

        with self._get_connection() as conn:
            try:
                for gateway in gateways:
                    row = conn.execute(
                        "SELECT id, is_active FROM gateways WHERE name = ?", (gateway.name,)
                    ).fetchone()

                    if row is None:
                        gateway_id = self._insert_gateway(conn, gateway)
                        counts["gateways_created"] += 1
                    else:
                        gateway_id = row["id"]
                        is_active = bool(row["is_active"])
                        if apply_active or not gateway.is_active:
                            is_active = gateway.is_active
                        conn.execute("""
                            UPDATE gateways SET
                                host = ?, port = ?, unit_id = ?, poll_interval = ?,
                                is_active = ?, updated_at = datetime('now')
                            WHERE id = ?
                        """, (
                            gateway.host,
                            gateway.port,
                            gateway.unit_id,
                            gateway.poll_interval,
                            1 if is_active else 0,
                            gateway_id,
                        ))
                        if is_active and not row["is_active"]:
                            conn.execute(
                                "UPDATE gateways SET consecutive_failures = 0 WHERE id = ?",
                                (gateway_id,),
                            )
                        counts["gateways_updated"] += 1

                    existing = {
                        r["label"]: r["id"]
                        for r in conn.execute(
                            "SELECT id, label FROM data_points WHERE gateway_id = ?",
                            (gateway_id,),
                        ).fetchall()
                    }
                    for point in gateway.data_points:
                        if point.label in existing:
                            self._update_point(conn, existing.pop(point.label), point)
                            counts["points_updated"] += 1
                        else:
                            self._insert_point(conn, gateway_id, point)
                            counts["points_created"] += 1

                    for point_id in existing.values():
                        cursor = conn.execute(
                            "UPDATE data_points SET is_enabled = 0 WHERE id = ? AND is_enabled = 1",
                            (point_id,),
                        )
                        counts["points_disabled"] += cursor.rowcount

                for row in conn.execute("SELECT id, name FROM gateways WHERE is_active = 1").fetchall():
                    if row["name"] not in configured_names:
                        conn.execute(
                            "UPDATE gateways SET is_active = 0, updated_at = datetime('now') WHERE id = ?",
                            (row["id"],),
                        )
                        counts["gateways_deactivated"] += 1

                conn.commit()

            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise StoreError(f"Config sync violates a uniqueness constraint: {e}", operation="sync_config") from e

        logger.info(f"Config synced: {counts}", extra=counts)
        return counts

    def set_gateway_active(self, gateway_id: int, is_active: bool) -> bool:
        """
        Set desired polling state.

        Re-enabling resets consecutive_failures so the circuit breaker
        starts from zero.

        Returns:
            True if the gateway exists
        """
        with self._get_connection() as conn:
            if is_active:
                cursor = conn.execute("""
                    UPDATE gateways
                    SET is_active = 1, consecutive_failures = 0, updated_at = datetime('now')
                    WHERE id = ?
                """, (gateway_id,))
            else:
                cursor = conn.execute("""
                    UPDATE gateways
                    SET is_active = 0, updated_at = datetime('now')
                    WHERE id = ?
                """, (gateway_id,))
            conn.commit()
            return cursor.rowcount == 1

    def record_poll_outcome(
        self,
        gateway_id: int,
        poll_ok: bool,
        connected: bool,
        seen_at: datetime | None = None,
        last_error: str | None = None,
    ) -> Gateway | None:
        """
        Atomically update health counters after a poll.

        Args:
            gateway_id: Gateway polled
            poll_ok: Poll finished without any point error; resets
                consecutive_failures, otherwise the run grows by one
            connected: The TCP session was established; advances
                last_seen_at
            seen_at: Contact time (defaults to now)
            last_error: Summary of the last error, None clears it

        Returns:
            Refreshed gateway, or None if it no longer exists
        """
        seen_at = seen_at or utc_now()

        with self._get_connection() as conn:
            conn.execute("""
                UPDATE gateways SET
                    success_count = success_count + ?,
                    failure_count = failure_count + ?,
                    consecutive_failures = CASE WHEN ? THEN 0 ELSE consecutive_failures + 1 END,
                    last_seen_at = CASE WHEN ? THEN ? ELSE last_seen_at END,
                    last_error = ?,
                    updated_at = datetime('now')
                WHERE id = ?
            """, (
                1 if poll_ok else 0,
                0 if poll_ok else 1,
                1 if poll_ok else 0,
                1 if connected else 0,
                to_iso(seen_at),
                last_error,
                gateway_id,
            ))
            conn.commit()

        return self.get_gateway(gateway_id)

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def insert_reading(
        self,
        data_point_id: int,
        read_at: datetime,
        quality: Quality,
        raw_registers: list[int] | None = None,
        scaled_value: float | None = None,
    ) -> tuple[Reading, bool]:
        """
        Persist a reading exactly once per (data_point_id, read_at).

        A plain INSERT; when the uniqueness constraint rejects it the
        already-stored reading is returned instead.

        Returns:
            (reading, created) - created is False when another writer got
            there first
        """
        read_at_iso = to_iso(read_at)
        created_at = to_iso(utc_now())

        with self._get_connection() as conn:
            try:
                cursor = conn.execute("""
                    INSERT INTO readings (
                        data_point_id, raw_registers, scaled_value, quality, read_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    data_point_id,
                    json.dumps(raw_registers) if raw_registers is not None else None,
                    scaled_value,
                    Quality(quality).value,
                    read_at_iso,
                    created_at,
                ))
                conn.commit()
                reading_id = cursor.lastrowid

            except sqlite3.IntegrityError as e:
                conn.rollback()
                if "UNIQUE" not in str(e).upper():
                    raise StoreError(f"Reading rejected: {e}", operation="insert_reading") from e

                existing = self._fetch_reading(conn, data_point_id, read_at_iso)
                if existing is None:
                    raise StoreError(
                        f"Reading for point {data_point_id} at {read_at_iso} conflicted but was not found",
                        operation="insert_reading",
                    ) from e

                logger.info(
                    f"Duplicate reading for point {data_point_id} at {read_at_iso}, using existing #{existing.id}",
                    extra={"data_point_id": data_point_id, "read_at": read_at_iso},
                )
                return existing, False

        return Reading(
            id=reading_id,
            data_point_id=data_point_id,
            raw_registers=list(raw_registers) if raw_registers is not None else None,
            scaled_value=scaled_value,
            quality=Quality(quality),
            read_at=parse_iso(read_at_iso),
            created_at=parse_iso(created_at),
        ), True

    def _fetch_reading(self, conn: sqlite3.Connection, data_point_id: int, read_at_iso: str) -> Reading | None:
        row = conn.execute(
            "SELECT * FROM readings WHERE data_point_id = ? AND read_at = ?",
            (data_point_id, read_at_iso),
        ).fetchone()
        return self._row_to_reading(row) if row else None

    def get_reading(self, data_point_id: int, read_at: datetime) -> Reading | None:
        with self._get_connection() as conn:
            return self._fetch_reading(conn, data_point_id, to_iso(read_at))

    def list_readings(self, data_point_id: int, limit: int = 100) -> list[Reading]:
        """Most recent readings for a point, newest first"""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM readings
                WHERE data_point_id = ?
                ORDER BY read_at DESC
                LIMIT ?
            """, (data_point_id, limit)).fetchall()
            return [self._row_to_reading(r) for r in rows]

    def count_readings(self, data_point_id: int | None = None) -> int:
        with self._get_connection() as conn:
            if data_point_id is None:
                return conn.execute("SELECT COUNT(*) FROM readings").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM readings WHERE data_point_id = ?", (data_point_id,)
            ).fetchone()[0]

    def get_stats(self) -> dict[str, Any]:
        """Get database statistics"""
        with self._get_connection() as conn:
            gateways = conn.execute("SELECT COUNT(*) FROM gateways").fetchone()[0]
            active = conn.execute("SELECT COUNT(*) FROM gateways WHERE is_active = 1").fetchone()[0]
            points = conn.execute("SELECT COUNT(*) FROM data_points WHERE is_enabled = 1").fetchone()[0]
            readings = conn.execute("SELECT COUNT(*) FROM readings").fetchone()[0]
            by_quality = {
                row["quality"]: row["n"]
                for row in conn.execute(
                    "SELECT quality, COUNT(*) AS n FROM readings GROUP BY quality"
                ).fetchall()
            }

        return {
            "gateways": gateways,
            "active_gateways": active,
            "enabled_points": points,
            "readings": readings,
            "readings_by_quality": by_quality,
            "db_size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
        }
