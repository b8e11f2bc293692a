from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from printchain.models import AuditLog

security_logger = logging.getLogger('printchain.security')


def log_audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )


def log_security_event(
    db: Session,
    *,
    action: str,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    security_logger.warning('%s ip=%s details=%s', action.lower(), ip, metadata or {})
    log_audit(db, actor=None, action=action, ip=ip, metadata=metadata)
