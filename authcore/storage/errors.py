from __future__ import annotations

from typing import Dict, Optional

ACCOUNT_FIELDS = frozenset({"email", "username"})


class ConstraintViolation(Exception):
    """A write rejected because it would duplicate or orphan a record.

    ``field`` names the column at fault (``email``, ``username``,
    ``token_hash`` or ``user_id``). ``constraint`` carries the database
    constraint name when Postgres reported one.
    """

    def __init__(
        self,
        field: str,
        message: Optional[str] = None,
        *,
        constraint: Optional[str] = None,
    ):
        self.field = field
        self.constraint = constraint
        self.message = message or f"{field} already exists"
        super().__init__(self.message)

    @property
    def is_account_conflict(self) -> bool:
        """True when the write collided with an existing account's identity."""
        return self.field in ACCOUNT_FIELDS

    @property
    def detail(self) -> Dict[str, str]:
        return {"field": self.field}


__all__ = ["ACCOUNT_FIELDS", "ConstraintViolation"]
