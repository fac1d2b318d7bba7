"""
Audit logger.

每一次状态变化和每一次外部访问都追加一条 AuditLogEntry。
写入失败 → AuditWriteFailure：外层操作不能被视为完成（事务回滚 / 任务重投）。
"""

import logging

from django.db import DatabaseError, transaction

from .actors import SYSTEM_ACTOR, Actor
from .exceptions import AuditWriteFailure
from .jsonvalue import normalize_object
from .models import AuditLogEntry

logger = logging.getLogger(__name__)

# ── Action 名称 ────────────────────────────────────────────────────────────
RAW_RECEIVED = 'raw_message.received'
RAW_DUPLICATE = 'raw_message.duplicate'
RAW_VALIDATION_FAILED = 'raw_message.validation_failed'
RAW_DEAD_LETTERED = 'raw_message.dead_lettered'
RESULT_MAPPED = 'result.mapped'
RESULT_MAPPING_FAILED = 'result.mapping_failed'
RESULT_PERSISTED = 'result.persisted'
RESULT_DUPLICATE_PERSISTED = 'result.duplicate_persisted'
RESULT_DOWNLOADED = 'result.downloaded'
ADMIN_QUEUE_VIEWED = 'admin.queue_viewed'
ADMIN_RAW_MESSAGE_VIEWED = 'admin.raw_message_viewed'
ADMIN_IDENTIFIERS_CORRECTED = 'admin.identifiers_corrected'
ADMIN_MAPPING_ASSIGNED = 'admin.mapping_assigned'
ADMIN_RESULT_RETRACTED = 'admin.result_retracted'
ADMIN_RESULT_SUPERSEDED = 'admin.result_superseded'
ADMIN_REPORT_ATTACHED = 'admin.report_attached'


def record(action: str, target_type: str, target_id, actor: Actor = SYSTEM_ACTOR, details=None) -> AuditLogEntry:
    """
    Append one entry. Runs in a savepoint so a failed insert can be reported
    without poisoning the caller's transaction; the caller still aborts because
    AuditWriteFailure propagates.
    """
    try:
        payload = normalize_object(details)
    except (TypeError, ValueError) as exc:
        raise AuditWriteFailure(
            message=f"Audit details for {action} are not serializable: {exc}",
            detail={'action': action},
        ) from exc

    try:
        with transaction.atomic():
            entry = AuditLogEntry.objects.create(
                actor_type=actor.kind,
                actor_id=actor.identifier,
                action=action,
                target_type=target_type,
                target_id=str(target_id),
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
                details=payload,
            )
    except DatabaseError as exc:
        logger.error("[audit] failed to write %s for %s %s: %s", action, target_type, target_id, exc)
        raise AuditWriteFailure(
            message=f"Audit entry {action} could not be recorded.",
            detail={'action': action, 'target_type': target_type, 'target_id': str(target_id)},
        ) from exc

    logger.debug("[audit] %s %s=%s by %s:%s", action, target_type, target_id, actor.kind, actor.identifier)
    return entry


def entries_for(target_type: str, target_id):
    return AuditLogEntry.objects.filter(target_type=target_type, target_id=str(target_id)).order_by('id')
