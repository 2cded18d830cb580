"""Security audit hand-off.

Audit persistence lives outside this package; the core only emits events into
an ``AuditSink``. Auditing is fire-and-forget: ``SecurityAuditor`` delivers each
event on a background task with a timeout and turns sink failures into a local
error log, so a slow or failing sink never delays or fails the audited operation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol, Set

from reportguard.logging import get_logger

logger = get_logger(__name__)


class Severity:
    INFO = "Info"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class AuditSink(Protocol):
    async def log_security_event(
        self,
        action: str,
        resource: str,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        severity: str = Severity.INFO,
    ) -> None: ...


class LoggingAuditSink:
    """Writes security events as structured log lines on a dedicated logger."""

    def __init__(self, logger_name: str = "reportguard.audit") -> None:
        self._logger = get_logger(logger_name)

    async def log_security_event(
        self,
        action: str,
        resource: str,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        severity: str = Severity.INFO,
    ) -> None:
        log = self._logger.info if success else self._logger.warning
        if severity in (Severity.HIGH, Severity.CRITICAL):
            log = self._logger.error
        log(
            "security_event",
            action=action,
            resource=resource,
            user_id=user_id,
            success=success,
            failure_reason=failure_reason,
            details=details or {},
            ip_address=ip_address,
            severity=severity,
        )


class SecurityAuditor:
    """Service-side wrapper that never lets the sink break or slow the caller.

    ``record`` hands the event to a background task and returns at once. Each
    delivery is bounded by ``timeout_seconds``; failures end up in the local
    ``audit_sink_failed`` log. Strong references to in-flight deliveries are
    kept until they finish, and ``drain`` waits for them on shutdown.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        *,
        timeout_seconds: float = 2.0,
        max_pending: int = 1000,
    ) -> None:
        self.sink: AuditSink = sink or LoggingAuditSink()
        self.timeout_seconds = timeout_seconds
        self.max_pending = max_pending
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def record(
        self,
        action: str,
        resource: str,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        severity: str = Severity.INFO,
    ) -> None:
        event: Dict[str, Any] = {
            "user_id": user_id,
            "success": success,
            "failure_reason": failure_reason,
            "details": details,
            "ip_address": ip_address,
            "severity": severity,
        }
        if len(self._pending) >= self.max_pending:
            logger.error(
                "audit_sink_failed",
                action=action,
                resource=resource,
                user_id=user_id,
                success=success,
                error="audit backlog full",
                error_type="BacklogFull",
            )
            return
        task = asyncio.get_running_loop().create_task(self._deliver(action, resource, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, action: str, resource: str, event: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                self.sink.log_security_event(action, resource, **event),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "audit_sink_failed",
                action=action,
                resource=resource,
                user_id=event["user_id"],
                success=event["success"],
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for deliveries started on the running loop to finish."""
        loop = asyncio.get_running_loop()
        waiting = [task for task in list(self._pending) if task.get_loop() is loop]
        if not waiting:
            return
        _, still_pending = await asyncio.wait(waiting, timeout=timeout)
        if still_pending:
            logger.warning("audit_drain_timeout", pending=len(still_pending))
