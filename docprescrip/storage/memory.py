from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from docprescrip.logging import get_logger
from docprescrip.storage.errors import ConstraintViolation
from docprescrip.storage.models import (
    DOCTOR_UPDATABLE_FIELDS,
    AccessKey,
    Doctor,
    new_doctor_id,
)

logger = get_logger(__name__)


class MemoryStore:
    """In-process credential store used by tests and local development.

    Uniqueness of email and phone is checked under the same lock as the
    insert, which gives the in-memory store the guarantee that Postgres gets
    from its unique indexes.
    """

    def __init__(self) -> None:
        self.doctors: Dict[str, Doctor] = {}
        self.access_keys: Dict[str, AccessKey] = {}
        self._data_lock = threading.RLock()

    def find_by_email(self, email: str) -> Optional[Doctor]:
        with self._data_lock:
            return next((d for d in self.doctors.values() if d.email == email), None)

    def find_by_id(self, doctor_id: str) -> Optional[Doctor]:
        with self._data_lock:
            return self.doctors.get(doctor_id)

    def find_by_phone(self, phone: str) -> Optional[Doctor]:
        if not phone:
            return None
        with self._data_lock:
            return next((d for d in self.doctors.values() if d.phone == phone), None)

    def create_account(self, fields: Dict[str, Any]) -> Doctor:
        email = fields["email"]
        phone = fields.get("phone") or None
        with self._data_lock:
            if self.find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and self.find_by_phone(phone):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            values = {k: v for k, v in fields.items() if k in DOCTOR_UPDATABLE_FIELDS}
            values["phone"] = phone
            doctor = Doctor(id=fields.get("id") or new_doctor_id(), email=email, **values)
            self.doctors[doctor.id] = doctor
        logger.info("doctor_created", doctor_id=doctor.id)
        return doctor

    def update_fields(self, doctor_id: str, partial: Dict[str, Any]) -> Optional[Doctor]:
        unknown = set(partial) - DOCTOR_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported fields: {sorted(unknown)}")
        with self._data_lock:
            current = self.doctors.get(doctor_id)
            if not current:
                return None
            phone = partial.get("phone")
            if phone:
                owner = self.find_by_phone(phone)
                if owner and owner.id != doctor_id:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            updated = replace(current, **partial, updated_at=datetime.utcnow())
            self.doctors[doctor_id] = updated
            return updated

    def create_access_key(self, key: str) -> AccessKey:
        with self._data_lock:
            if key in self.access_keys:
                raise ConstraintViolation("access key already exists", {"field": "key"})
            record = AccessKey(key=key)
            self.access_keys[key] = record
            return record

    def get_access_key(self, key: str) -> Optional[AccessKey]:
        with self._data_lock:
            return self.access_keys.get(key)

    def consume_access_key(self, key: str, doctor_id: str) -> bool:
        with self._data_lock:
            record = self.access_keys.get(key)
            if not record or record.is_used:
                return False
            self.access_keys[key] = replace(
                record, used_at=datetime.utcnow(), used_by=doctor_id
            )
            return True

    def release_access_key(self, key: str, doctor_id: str) -> bool:
        with self._data_lock:
            record = self.access_keys.get(key)
            if not record or record.used_by != doctor_id:
                return False
            self.access_keys[key] = replace(record, used_at=None, used_by=None)
            return True
