from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Protocol

import psycopg2

from ..models.property import ExistingProperty, NormalizedProperty, UserProfile
from ..models.session import ImportSession, SessionStatus
from ..services.duplicates import bounding_box
from .batch_insert import BatchInsertError, BatchMetrics, batch_insert

"""Persistence for the property importer.

PropertyStore is the narrow interface the orchestrator and the ledger talk to.
PostgresPropertyStore implements it over one psycopg2 connection with
explicit transaction boundaries: the caller runs ``begin()`` then ``commit()``
or ``rollback()`` around every unit of work (one batch, one ledger update).

Each property is created through ``create_property_profile`` under its own
SAVEPOINT, so a row rejected by the database is rolled back alone and the
rest of the batch survives.
"""

logger = logging.getLogger(__name__)

__all__ = [
    "StoreError",
    "StoreConnectionError",
    "PropertyRejectedError",
    "CommitUncertainError",
    "PropertyStore",
    "PostgresPropertyStore",
    "connect",
]

SESSIONS_TABLE = "import_sessions"
SESSION_LINKS_TABLE = "import_session_properties"

_SESSION_COLUMNS = (
    "import_session_id, user_id, created_at, total_properties, "
    "success_count, error_count, skipped_count, status"
)


class StoreError(Exception):
    """Base class for persistence failures."""


class StoreConnectionError(StoreError):
    """Connection to the database lost or unusable."""


class PropertyRejectedError(StoreError):
    """The database refused one property; only that row is affected."""


class CommitUncertainError(StoreError):
    """Connection dropped while COMMIT was in flight; outcome unknown."""


class PropertyStore(Protocol):
    def begin(self) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...
    def close(self) -> None: ...

    def get_user_profile(self, user_id: str) -> UserProfile | None: ...
    def get_teams_by_battalion(self, batalhao: str) -> list[str]: ...

    def find_duplicate_candidates(
        self, name: str, latitude: float, longitude: float, radius_m: float
    ) -> list[ExistingProperty]: ...
    def create_property(self, prop: NormalizedProperty, created_by: UserProfile) -> str: ...

    def try_acquire_lock(self, scope: str) -> bool: ...
    def release_lock(self, scope: str) -> None: ...

    def insert_session(self, session: ImportSession) -> None: ...
    def fetch_session(self, session_id: str) -> ImportSession | None: ...
    def lock_session(self, session_id: str) -> ImportSession | None: ...
    def fetch_sessions(self, user_id: str | None = None) -> list[ImportSession]: ...
    def add_session_counts(
        self, session_id: str, success: int = 0, error: int = 0, skipped: int = 0
    ) -> None: ...
    def set_session_status(self, session_id: str, status: SessionStatus) -> None: ...
    def link_session_properties(self, session_id: str, property_ids: Iterable[str]) -> int: ...
    def session_property_ids(self, session_id: str) -> list[str]: ...
    def count_active_session_properties(self, session_id: str) -> int: ...
    def soft_delete_session_properties(self, session_id: str) -> int: ...


def _is_connection_error(exc: BaseException) -> bool:
    return isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError))


def _log_link_metrics(metrics: BatchMetrics) -> None:
    logger.debug(
        "linked %d properties in %.3fs", metrics.batch_size, metrics.elapsed_seconds
    )


def _row_to_session(row: tuple[Any, ...]) -> ImportSession:
    return ImportSession(
        session_id=str(row[0]),
        user_id=str(row[1]),
        created_at=row[2],
        total_properties=int(row[3] or 0),
        success_count=int(row[4] or 0),
        error_count=int(row[5] or 0),
        skipped_count=int(row[6] or 0),
        status=SessionStatus(row[7]),
    )


class PostgresPropertyStore:
    """PropertyStore over a psycopg2 connection in autocommit mode with explicit BEGIN/COMMIT."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self.cursor = conn.cursor()

    @contextmanager
    def _translate(self, action: str) -> Iterator[None]:
        try:
            yield
        except StoreError:
            raise
        except BatchInsertError as e:
            if e.__cause__ is not None and _is_connection_error(e.__cause__):
                raise StoreConnectionError(f"{action}: {e}") from e
            raise StoreError(f"{action}: {e}") from e
        except psycopg2.Error as e:
            if _is_connection_error(e):
                raise StoreConnectionError(f"{action}: {e}") from e
            raise StoreError(f"{action}: {e}") from e

    # --- transaction -------------------------------------------------

    def begin(self) -> None:
        with self._translate("begin"):
            self.cursor.execute("BEGIN")

    def commit(self) -> None:
        try:
            self.cursor.execute("COMMIT")
        except psycopg2.Error as e:
            if _is_connection_error(e):
                # COMMIT がサーバに届いたか不明
                raise CommitUncertainError(f"commit: {e}") from e
            raise StoreError(f"commit: {e}") from e

    def rollback(self) -> None:
        if getattr(self.conn, "closed", 0):
            return
        try:
            self.cursor.execute("ROLLBACK")
        except psycopg2.Error as e:
            logger.warning("rollback failed: %s", e)

    def close(self) -> None:
        try:
            self.cursor.close()
        finally:
            self.conn.close()

    # --- collaborators -----------------------------------------------

    def get_user_profile(self, user_id: str) -> UserProfile | None:
        with self._translate("get_user_profile"):
            self.cursor.execute(
                "SELECT id, full_name, role, crpm, batalhao, cia FROM users WHERE id = %s",
                (user_id,),
            )
            row = self.cursor.fetchone()
        if row is None:
            return None
        return UserProfile(
            id=str(row[0]),
            full_name=row[1] or "",
            role=row[2] or "",
            crpm=row[3],
            batalhao=row[4],
            cia=row[5],
        )

    def get_teams_by_battalion(self, batalhao: str) -> list[str]:
        with self._translate("get_teams_by_battalion"):
            self.cursor.execute("SELECT * FROM get_teams_by_battalion(%s)", (batalhao,))
            rows = self.cursor.fetchall()
        return [str(r[0]) for r in rows if r and r[0] is not None]

    # --- properties --------------------------------------------------

    def find_duplicate_candidates(
        self, name: str, latitude: float, longitude: float, radius_m: float
    ) -> list[ExistingProperty]:
        min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_m)
        # 日付変更線をまたぐ場合は経度範囲が折り返す
        lng_op = "AND" if min_lng <= max_lng else "OR"
        with self._translate("find_duplicate_candidates"):
            self.cursor.execute(
                "SELECT id, name, latitude, longitude FROM properties "
                "WHERE deleted_at IS NULL AND ("
                " lower(trim(name)) = lower(trim(%s))"
                " OR (latitude BETWEEN %s AND %s"
                f" AND (longitude >= %s {lng_op} longitude <= %s))"
                ") ORDER BY created_at, id",
                (name, min_lat, max_lat, min_lng, max_lng),
            )
            rows = self.cursor.fetchall()
        return [
            ExistingProperty(id=str(r[0]), name=r[1] or "", latitude=float(r[2]), longitude=float(r[3]))
            for r in rows
        ]

    def create_property(self, prop: NormalizedProperty, created_by: UserProfile) -> str:
        params = {
            "property_name": prop.name,
            "property_latitude": prop.latitude,
            "property_longitude": prop.longitude,
            "property_cidade": prop.cidade,
            "property_bairro": prop.bairro,
            "property_owner_name": prop.owner_name,
            "property_owner_phone": prop.owner_phone,
            "property_owner_rg": prop.owner_rg,
            "property_equipe": prop.equipe,
            "property_numero_placa": prop.numero_placa,
            "property_description": prop.description,
            "property_contact_name": prop.contact_name,
            "property_contact_phone": prop.contact_phone,
            "property_contact_observations": prop.contact_observations,
            "property_observations": prop.observations,
            "property_activity": prop.activity,
            "property_has_cameras": prop.has_cameras,
            "property_cameras_count": prop.cameras_count,
            "property_has_wifi": prop.has_wifi,
            "property_wifi_password": prop.wifi_password,
            "property_residents_count": prop.residents_count,
            "property_created_by": created_by.id,
            "property_cadastro_date": prop.cadastro_date,
            "property_crpm": created_by.crpm,
            "property_batalhao": created_by.batalhao,
            "property_cia": created_by.cia,
            "property_type": "rural",
            "property_bou": None,
        }
        args_sql = ", ".join(f"{k} => %({k})s" for k in params)
        with self._translate("create_property"):
            self.cursor.execute("SAVEPOINT import_row")
            try:
                self.cursor.execute(f"SELECT create_property_profile({args_sql})", params)
                row = self.cursor.fetchone()
            except psycopg2.Error as e:
                if _is_connection_error(e):
                    raise
                self.cursor.execute("ROLLBACK TO SAVEPOINT import_row")
                raise PropertyRejectedError(getattr(e, "pgerror", None) or str(e)) from e
            self.cursor.execute("RELEASE SAVEPOINT import_row")
        if row is None or row[0] is None:
            raise PropertyRejectedError("create_property_profile returned no id")
        return str(row[0])

    # --- lock --------------------------------------------------------

    def try_acquire_lock(self, scope: str) -> bool:
        # セッションレベル: 接続が切れれば自動解放
        with self._translate("try_acquire_lock"):
            self.cursor.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (scope,))
            row = self.cursor.fetchone()
        return bool(row and row[0])

    def release_lock(self, scope: str) -> None:
        if getattr(self.conn, "closed", 0):
            return
        with self._translate("release_lock"):
            self.cursor.execute("SELECT pg_advisory_unlock(hashtext(%s))", (scope,))

    # --- sessions ----------------------------------------------------

    def insert_session(self, session: ImportSession) -> None:
        with self._translate("insert_session"):
            self.cursor.execute(
                f"INSERT INTO {SESSIONS_TABLE} ({_SESSION_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    session.session_id,
                    session.user_id,
                    session.created_at,
                    session.total_properties,
                    session.success_count,
                    session.error_count,
                    session.skipped_count,
                    session.status.value,
                ),
            )

    def fetch_session(self, session_id: str) -> ImportSession | None:
        with self._translate("fetch_session"):
            self.cursor.execute(
                f"SELECT {_SESSION_COLUMNS} FROM {SESSIONS_TABLE} WHERE import_session_id = %s",
                (session_id,),
            )
            row = self.cursor.fetchone()
        return _row_to_session(row) if row else None

    def lock_session(self, session_id: str) -> ImportSession | None:
        """Re-read a session row under FOR UPDATE; call inside begin()/commit()."""
        with self._translate("lock_session"):
            self.cursor.execute(
                f"SELECT {_SESSION_COLUMNS} FROM {SESSIONS_TABLE} WHERE import_session_id = %s FOR UPDATE",
                (session_id,),
            )
            row = self.cursor.fetchone()
        return _row_to_session(row) if row else None

    def fetch_sessions(self, user_id: str | None = None) -> list[ImportSession]:
        sql = f"SELECT {_SESSION_COLUMNS} FROM {SESSIONS_TABLE}"
        params: tuple[Any, ...] = ()
        if user_id is not None:
            sql += " WHERE user_id = %s"
            params = (user_id,)
        sql += " ORDER BY created_at DESC"
        with self._translate("fetch_sessions"):
            self.cursor.execute(sql, params)
            rows = self.cursor.fetchall()
        return [_row_to_session(r) for r in rows]

    def add_session_counts(
        self, session_id: str, success: int = 0, error: int = 0, skipped: int = 0
    ) -> None:
        with self._translate("add_session_counts"):
            self.cursor.execute(
                f"UPDATE {SESSIONS_TABLE} SET success_count = success_count + %s, "
                "error_count = error_count + %s, skipped_count = skipped_count + %s "
                "WHERE import_session_id = %s",
                (success, error, skipped, session_id),
            )

    def set_session_status(self, session_id: str, status: SessionStatus) -> None:
        with self._translate("set_session_status"):
            self.cursor.execute(
                f"UPDATE {SESSIONS_TABLE} SET status = %s WHERE import_session_id = %s",
                (status.value, session_id),
            )

    def link_session_properties(self, session_id: str, property_ids: Iterable[str]) -> int:
        with self._translate("link_session_properties"):
            result = batch_insert(
                self.cursor,
                table=SESSION_LINKS_TABLE,
                columns=["import_session_id", "property_id"],
                rows=[(session_id, pid) for pid in property_ids],
                ignore_conflicts=True,
                metrics_callback=_log_link_metrics,
            )
        return result.inserted_rows

    def session_property_ids(self, session_id: str) -> list[str]:
        with self._translate("session_property_ids"):
            self.cursor.execute(
                f"SELECT property_id FROM {SESSION_LINKS_TABLE} WHERE import_session_id = %s",
                (session_id,),
            )
            rows = self.cursor.fetchall()
        return [str(r[0]) for r in rows]

    def count_active_session_properties(self, session_id: str) -> int:
        with self._translate("count_active_session_properties"):
            self.cursor.execute(
                f"SELECT count(*) FROM properties p JOIN {SESSION_LINKS_TABLE} l "
                "ON l.property_id = p.id "
                "WHERE l.import_session_id = %s AND p.deleted_at IS NULL",
                (session_id,),
            )
            row = self.cursor.fetchone()
        return int(row[0]) if row else 0

    def soft_delete_session_properties(self, session_id: str) -> int:
        with self._translate("soft_delete_session_properties"):
            self.cursor.execute(
                "UPDATE properties SET deleted_at = %s "
                f"WHERE deleted_at IS NULL AND id IN ("
                f"SELECT property_id FROM {SESSION_LINKS_TABLE} WHERE import_session_id = %s)",
                (datetime.now(UTC), session_id),
            )
            return int(self.cursor.rowcount or 0)


def connect(dsn: str) -> PostgresPropertyStore:
    """Open a connection; transactions are opened with explicit BEGIN by the caller."""
    try:
        conn = psycopg2.connect(dsn)
    except psycopg2.Error as e:
        raise StoreConnectionError(f"connect: {e}") from e
    conn.autocommit = True  # BEGIN/COMMIT をこちらで明示発行
    return PostgresPropertyStore(conn)
