"""
core/collaborators.py -- Narrow interfaces to the services this core does not own.

Email delivery and audit-log persistence live outside TeamGuard. The
orchestrators depend only on the two Protocols below; the logging-backed
defaults keep a single-process deployment working (and observable) until a
real mailer or audit store is wired in at app assembly time.

Risk levels follow one rule: the action decides the base level (high, medium,
low) and a failed outcome escalates it by one step.

Layer rule: imports only core/errors; nothing from api/, auth/, teams/, or cache/.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

from core.errors import AppError

logger = logging.getLogger("teamguard.collaborators")
audit_logger = logging.getLogger("teamguard.audit")

HIGH_RISK_ACTIONS = frozenset(
    {
        "change_user_role",
        "reset_user_password",
        "delete_team",
        "transfer_ownership",
        "remove_member",
        "change_user_status",
    }
)

MEDIUM_RISK_ACTIONS = frozenset(
    {
        "login",
        "logout",
        "create_user",
        "change_password",
        "invite_member",
        "update_team",
        "leave_team",
    }
)


class Recipient(Protocol):
    username: str
    email: str


class EmailSender(Protocol):
    def send_verification_email(self, user: Recipient, token: str) -> None: ...

    def send_password_reset_email(self, user: Recipient, token: str) -> None: ...

    def send_welcome_email(self, user: Recipient, temp_password: Optional[str] = None) -> None: ...


@dataclass(frozen=True)
class AuditEvent:
    actor_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    result: str  # "success" | "failure"
    risk_level: str  # "low" | "medium" | "high"
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


def calculate_risk_level(action: str, result: str) -> str:
    """Return "low" | "medium" | "high" for an action outcome."""
    if action in HIGH_RISK_ACTIONS:
        level = "high"
    elif action in MEDIUM_RISK_ACTIONS:
        level = "medium"
    else:
        level = "low"
    if result == "failure":
        return {"low": "medium", "medium": "high", "high": "high"}[level]
    return level


def make_audit_event(
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    result: str = "success",
) -> AuditEvent:
    return AuditEvent(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        result=result,
        risk_level=calculate_risk_level(action, result),
    )


class LoggingEmailSender:
    """Default EmailSender: records the intent to send, never the token itself."""

    def send_verification_email(self, user: Recipient, token: str) -> None:
        logger.info("Verification email queued for %s", user.email)

    def send_password_reset_email(self, user: Recipient, token: str) -> None:
        logger.info("Password reset email queued for %s", user.email)

    def send_welcome_email(self, user: Recipient, temp_password: Optional[str] = None) -> None:
        logger.info("Welcome email queued for %s (temp_password=%s)", user.email, temp_password is not None)


class LoggingAuditSink:
    """Default AuditSink: one structured log line per event on teamguard.audit."""

    def record(self, event: AuditEvent) -> None:
        audit_logger.info(
            "actor=%s action=%s resource=%s/%s result=%s risk=%s",
            event.actor_id or "-",
            event.action,
            event.resource_type,
            event.resource_id or "-",
            event.result,
            event.risk_level,
        )


@contextmanager
def audited(
    sink: AuditSink,
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str],
) -> Iterator[None]:
    """Record one audit event for the wrapped call: success, or failure on any AppError.

    The AppError propagates unchanged. Unexpected exceptions are not audited
    here; they surface as InternalError and are logged by the API layer.
    """
    try:
        yield
    except AppError:
        sink.record(make_audit_event(actor_id, action, resource_type, resource_id, result="failure"))
        raise
    sink.record(make_audit_event(actor_id, action, resource_type, resource_id))
