"""State-transition rules shared by the memory and Postgres stores.

Both backends lock the row first and then ask these helpers what the new state
should be, so the two implementations cannot drift apart.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple

from reportguard.storage.models import PermissionGrant


def next_mfa_failure_state(
    failed_attempts: int,
    locked_until: Optional[datetime],
    *,
    now: datetime,
    threshold: int,
    lockout: timedelta,
) -> Tuple[int, Optional[datetime]]:
    """Return ``(failed_attempts, locked_until)`` after one more failure.

    An elapsed lock starts a fresh counting window.
    """
    if locked_until is not None and locked_until <= now:
        failed_attempts = 0
        locked_until = None
    failed_attempts += 1
    if failed_attempts >= threshold:
        locked_until = now + lockout
    return failed_attempts, locked_until


def grant_needs_change(
    existing: Optional[PermissionGrant],
    *,
    is_granted: bool,
    expires_at: Optional[datetime],
) -> bool:
    """Whether moving ``existing`` to the requested state changes anything.

    Revoking an absent grant is a no-op: there is nothing to preserve.
    """
    if existing is None:
        return is_granted
    if is_granted:
        return not existing.is_granted or existing.expires_at != expires_at
    return existing.is_granted
