"""Errors raised by the storage backends.

Both stores raise ``ConstraintViolation`` when a write would duplicate a unique
value (username, email, token, session id, catalog name) or reference a row
that does not exist. Services translate it into ``ConflictError``; ``detail``
only ever names the offending field or id, never credential material.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def field(self) -> Optional[str]:
        """Name of the duplicated column, when the violation is a uniqueness one."""
        return self.detail.get("field")
