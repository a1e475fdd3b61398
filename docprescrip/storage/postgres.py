from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from docprescrip.logging import get_logger
from docprescrip.storage.errors import ConstraintViolation
from docprescrip.storage.models import (
    DOCTOR_UPDATABLE_FIELDS,
    AccessKey,
    Doctor,
    new_doctor_id,
)

_DOCTOR_COLUMNS = (
    "id, email, name, password_hash, google_id, is_federated, is_active, "
    "profile_complete, phone, hospital_name, hospital_address, degree, "
    "registration_number, access_type, created_at, updated_at"
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", "") or ""
    if "phone" in constraint:
        return "phone"
    if "access_key" in constraint:
        return "key"
    return "email"


class PostgresStore:
    """Postgres-backed credential store.

    Duplicate email/phone checks happen in the service before insert; the
    unique indexes created here catch the race between check and insert.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS doctor (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    password_hash TEXT,
                    google_id TEXT,
                    is_federated BOOLEAN NOT NULL DEFAULT FALSE,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    profile_complete BOOLEAN NOT NULL DEFAULT TRUE,
                    phone TEXT,
                    hospital_name TEXT,
                    hospital_address TEXT,
                    degree TEXT,
                    registration_number TEXT,
                    access_type TEXT NOT NULL DEFAULT 'doctor',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS doctor_email_key ON doctor (email)"
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS doctor_phone_key
                ON doctor (phone) WHERE phone IS NOT NULL
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS access_key (
                    key TEXT PRIMARY KEY,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    used_at TIMESTAMPTZ,
                    used_by TEXT
                )
                """
            )

    @staticmethod
    def _row_to_doctor(row: Dict[str, Any]) -> Doctor:
        return Doctor(**row)

    def _find_one(self, column: str, value: str) -> Optional[Doctor]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_DOCTOR_COLUMNS} FROM doctor WHERE {column} = %s",
                (value,),
            ).fetchone()
        return self._row_to_doctor(row) if row else None

    def find_by_email(self, email: str) -> Optional[Doctor]:
        return self._find_one("email", email)

    def find_by_id(self, doctor_id: str) -> Optional[Doctor]:
        return self._find_one("id", doctor_id)

    def find_by_phone(self, phone: str) -> Optional[Doctor]:
        if not phone:
            return None
        return self._find_one("phone", phone)

    def create_account(self, fields: Dict[str, Any]) -> Doctor:
        values = {k: v for k, v in fields.items() if k in DOCTOR_UPDATABLE_FIELDS}
        values["phone"] = fields.get("phone") or None
        doctor = Doctor(
            id=fields.get("id") or new_doctor_id(), email=fields["email"], **values
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO doctor ({_DOCTOR_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        doctor.id,
                        doctor.email,
                        doctor.name,
                        doctor.password_hash,
                        doctor.google_id,
                        doctor.is_federated,
                        doctor.is_active,
                        doctor.profile_complete,
                        doctor.phone,
                        doctor.hospital_name,
                        doctor.hospital_address,
                        doctor.degree,
                        doctor.registration_number,
                        doctor.access_type,
                        doctor.created_at,
                        doctor.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        self.logger.info("doctor_created", doctor_id=doctor.id)
        return doctor

    def update_fields(self, doctor_id: str, partial: Dict[str, Any]) -> Optional[Doctor]:
        unknown = set(partial) - DOCTOR_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported fields: {sorted(unknown)}")
        if not partial:
            return self.find_by_id(doctor_id)
        # column names come from the allow-list above
        assignments = ", ".join(f"{name} = %s" for name in partial)
        params = [*partial.values(), datetime.utcnow(), doctor_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE doctor SET {assignments}, updated_at = %s
                    WHERE id = %s
                    RETURNING {_DOCTOR_COLUMNS}
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_doctor(row) if row else None

    def create_access_key(self, key: str) -> AccessKey:
        record = AccessKey(key=key)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO access_key (key, created_at) VALUES (%s, %s)",
                    (record.key, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("access key already exists", {"field": "key"})
        return record

    def get_access_key(self, key: str) -> Optional[AccessKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, created_at, used_at, used_by FROM access_key WHERE key = %s",
                (key,),
            ).fetchone()
        return AccessKey(**row) if row else None

    def consume_access_key(self, key: str, doctor_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE access_key SET used_at = now(), used_by = %s
                WHERE key = %s AND used_at IS NULL
                RETURNING key
                """,
                (doctor_id, key),
            ).fetchone()
        return row is not None

    def release_access_key(self, key: str, doctor_id: str) -> bool:
        """Undo a claim made by ``doctor_id`` whose account was never created."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE access_key SET used_at = NULL, used_by = NULL
                WHERE key = %s AND used_by = %s
                RETURNING key
                """,
                (key, doctor_id),
            ).fetchone()
        return row is not None
