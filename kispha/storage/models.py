from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Closed set of principal roles; fixed once a record is created."""

    STANDARD = "standard"
    ADMINISTRATOR = "administrator"


@dataclass
class IdentityRecord:
    handle: str
    contact: str
    secret: str
    role: str = Role.STANDARD.value
    # 0 until the store assigns an id on first insert
    subject_id: int = 0
    current_token: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_administrator(self) -> bool:
        return self.role == Role.ADMINISTRATOR.value
