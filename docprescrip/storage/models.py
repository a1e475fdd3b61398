from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, Optional


def new_doctor_id() -> str:
    return f"dr_{uuid.uuid4().hex}"


@dataclass
class Doctor:
    """Identity record for a practitioner account.

    A record may carry a password hash, a Google subject id, both, or
    transiently neither while registration is still in progress. Each login
    path only works when its own method is present.
    """

    id: str
    email: str
    name: str = ""
    password_hash: Optional[str] = None
    google_id: Optional[str] = None
    is_federated: bool = False
    is_active: bool = True
    profile_complete: bool = True
    phone: Optional[str] = None
    hospital_name: Optional[str] = None
    hospital_address: Optional[str] = None
    degree: Optional[str] = None
    registration_number: Optional[str] = None
    access_type: str = "doctor"
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def public_view(self) -> Dict:
        data = asdict(self)
        data.pop("password_hash", None)
        data["has_password"] = self.has_password
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


DOCTOR_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "password_hash",
        "google_id",
        "is_federated",
        "is_active",
        "profile_complete",
        "phone",
        "hospital_name",
        "hospital_address",
        "degree",
        "registration_number",
        "access_type",
    }
)


@dataclass
class AccessKey:
    """Single-use key an administrator hands out to allow a registration."""

    key: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None
