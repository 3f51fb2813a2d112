from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .logging_utils import get_logger

Severity = Literal["INFO", "WARN", "CRITICAL"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    category: str
    action: str
    organization_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    severity: Severity = "INFO"
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditSink:
    """Writes audit events to the log and, when an engine is given, to audit_logs.

    Recording never raises: a failed write is logged and the caller carries on.
    """

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    def record(self, event: AuditEvent) -> None:
        log = logger.warning if event.severity != "INFO" else logger.info
        log(
            "audit.%s.%s org=%s target=%s:%s metadata=%s",
            event.category.lower(),
            event.action.lower(),
            event.organization_id or "-",
            event.target_type or "-",
            event.target_id or "-",
            json.dumps(event.metadata, default=str, sort_keys=True),
        )
        if self._engine is None:
            return
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO audit_logs (
                          organization_id, actor_user_id, category, action,
                          target_type, target_id, severity, metadata
                        )
                        VALUES (
                          :organization_id, :actor_user_id, :category, :action,
                          :target_type, :target_id, :severity, CAST(:metadata AS jsonb)
                        )
                        """
                    ),
                    {
                        "organization_id": event.organization_id,
                        "actor_user_id": event.actor_user_id,
                        "category": event.category,
                        "action": event.action,
                        "target_type": event.target_type,
                        "target_id": event.target_id,
                        "severity": event.severity,
                        "metadata": json.dumps(event.metadata, default=str),
                    },
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "audit.write_failed category=%s action=%s error=%s",
                event.category,
                event.action,
                str(exc),
            )

