"""
管理端与访问类操作。

所有修正都走和 pipeline 相同的路径（validator → 重新入队 → mapper / persister），
不存在旁路写入。每个操作都写审计；审计写失败则整个操作回滚。
"""

import logging
from functools import partial

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from . import audit, storage
from .actors import Actor
from .exceptions import BlockError, PermissionDenied, ValidationError
from .mapping import RULE_MANUAL
from .models import Patient, RawMessage, Result, User
from .validation import validate_identifiers

logger = logging.getLogger(__name__)

QUEUE_LIMIT = 100


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise PermissionDenied(message='Administrator access required', detail={'actor_id': actor.identifier})


def _first_or_none(queryset, pk):
    # 请求体里的 id 可能不是合法 UUID
    try:
        return queryset.filter(id=pk).first()
    except (DjangoValidationError, ValueError):
        return None


def get_raw_message(raw_id) -> RawMessage:
    try:
        return RawMessage.objects.get(id=raw_id)
    except (RawMessage.DoesNotExist, DjangoValidationError, ValueError):
        raise BlockError(
            message='Raw message not found',
            code='RAW_MESSAGE_NOT_FOUND',
            detail={'raw_message_id': str(raw_id)},
            http_status=404,
        )


def get_result(result_id, for_update=False) -> Result:
    qs = Result.objects.select_related('patient', 'doctor', 'practice')
    if for_update:
        qs = qs.select_for_update()
    try:
        return qs.get(id=result_id)
    except (Result.DoesNotExist, DjangoValidationError, ValueError):
        raise BlockError(
            message='Result not found',
            code='RESULT_NOT_FOUND',
            detail={'result_id': str(result_id)},
            http_status=404,
        )


# ── Remediation queue ──────────────────────────────────────────────────────

def remediation_queue(actor: Actor) -> dict:
    """VALIDATION_FAILED / DLQ 的 RawMessage + PENDING_MAPPING 的 Result。"""
    require_admin(actor)

    raw_messages = list(
        RawMessage.objects.filter(status__in=[RawMessage.VALIDATION_FAILED, RawMessage.DLQ])
        .order_by('received_at')[:QUEUE_LIMIT]
    )
    pending = list(
        Result.objects.filter(status=Result.PENDING_MAPPING, duplicate_of__isnull=True)
        .select_related('raw_message')
        .order_by('created_at')[:QUEUE_LIMIT]
    )

    with transaction.atomic():
        audit.record(
            audit.ADMIN_QUEUE_VIEWED,
            'queue',
            'remediation',
            actor=actor,
            details={'raw_messages': len(raw_messages), 'pending_results': len(pending)},
        )
    return {'raw_messages': raw_messages, 'pending_results': pending}


def view_raw_message(raw_id, actor: Actor) -> RawMessage:
    """pipeline 状态 + 错误详情只给管理端，每次查看都写审计。"""
    require_admin(actor)
    raw = get_raw_message(raw_id)
    with transaction.atomic():
        audit.record(
            audit.ADMIN_RAW_MESSAGE_VIEWED,
            'raw_message',
            raw.id,
            actor=actor,
            details={'status': raw.status},
        )
    return raw


# ── Identifier corrections ─────────────────────────────────────────────────

def correct_identifiers(raw_id, data: dict, actor: Actor) -> RawMessage:
    """
    VALIDATION_FAILED → PARSED，然后重新入队。
    修正值同样要通过 validator，不合法直接 400。
    """
    from .tasks import enqueue_raw_message

    require_admin(actor)
    if not isinstance(data, dict) or 'lanr' not in data:
        raise ValidationError(message="'lanr' is required.", code='MISSING_FIELDS', detail={'missing': ['lanr']})

    lanr = data.get('lanr')
    if isinstance(lanr, str):
        lanr = lanr.strip()
    bsnr = data.get('bsnr')
    if isinstance(bsnr, str):
        bsnr = bsnr.strip() or None

    verdict = validate_identifiers(lanr, bsnr)
    if not verdict.accepted:
        error = verdict.to_error(lanr_value=lanr, bsnr_value=bsnr)
        raise ValidationError(message=error.message, code=error.code, detail=error.detail)

    with transaction.atomic():
        raw = get_raw_message(raw_id)
        if raw.status != RawMessage.VALIDATION_FAILED:
            raise BlockError(
                message=f"Only VALIDATION_FAILED messages can be corrected (current: {raw.status}).",
                code='INVALID_RAW_STATE',
                detail={'raw_message_id': str(raw.id), 'status': raw.status},
            )

        parsed = dict(raw.parsed_data or {})
        previous = {'lanr': raw.lanr, 'bsnr': raw.bsnr}
        parsed['lanr'] = lanr
        parsed['bsnr'] = bsnr

        moved = RawMessage.objects.transition(
            raw.pk,
            [RawMessage.VALIDATION_FAILED],
            RawMessage.PARSED,
            lanr=lanr,
            bsnr=bsnr,
            parsed_data=parsed,
            error_detail='',
            updated_at=timezone.now(),
        )
        if not moved:
            raise BlockError(message='Raw message changed concurrently, retry.', code='CONCURRENT_UPDATE')

        audit.record(
            audit.ADMIN_IDENTIFIERS_CORRECTED,
            'raw_message',
            raw.id,
            actor=actor,
            details={'previous': previous, 'corrected': {'lanr': lanr, 'bsnr': bsnr}},
        )
        transaction.on_commit(partial(enqueue_raw_message, raw.id))

    raw.refresh_from_db()
    logger.info("[admin] raw=%s identifiers corrected by %s", raw.id, actor.identifier)
    return raw


# ── Manual mapping ─────────────────────────────────────────────────────────

def assign_mapping(result_id, data: dict, actor: Actor) -> Result:
    """PENDING_MAPPING → AVAILABLE，由管理员确认 patient + doctor。"""
    require_admin(actor)
    if not isinstance(data, dict):
        data = {}
    missing = [key for key in ('patient_id', 'doctor_id') if not data.get(key)]
    if missing:
        raise ValidationError(
            message=f"Missing required fields: {', '.join(missing)}.",
            code='MISSING_FIELDS',
            detail={'missing': missing},
        )

    patient = _first_or_none(Patient.objects.all(), data['patient_id'])
    doctor = _first_or_none(
        User.objects.filter(role=User.ROLE_DOCTOR, is_active=True).select_related('practice'),
        data['doctor_id'],
    )
    if patient is None or doctor is None:
        raise ValidationError(
            message='Unknown patient or inactive doctor.',
            code='UNKNOWN_MAPPING_TARGET',
            detail={'patient_found': patient is not None, 'doctor_found': doctor is not None},
        )

    with transaction.atomic():
        result = get_result(result_id, for_update=True)
        if not result.is_canonical:
            raise BlockError(message='Duplicate results cannot be mapped.', code='RESULT_IS_DUPLICATE',
                             detail={'duplicate_of': str(result.duplicate_of_id)})
        if result.status != Result.PENDING_MAPPING:
            raise BlockError(
                message=f"Only PENDING_MAPPING results can be assigned (current: {result.status}).",
                code='INVALID_RESULT_TRANSITION',
                detail={'result_id': str(result.id), 'status': result.status},
            )

        # 人工分配可以偏离消息里的 LANR / BSNR，偏离要在审计里看得见
        identifiers = {
            'ordering_lanr': result.ordering_lanr or None,
            'assigned_lanr': doctor.lanr,
            'ordering_bsnr': result.ordering_bsnr or None,
            'assigned_bsnr': doctor.practice.bsnr if doctor.practice_id else None,
        }
        override = (
            identifiers['ordering_lanr'] != identifiers['assigned_lanr']
            or (identifiers['ordering_bsnr'] is not None
                and identifiers['ordering_bsnr'] != identifiers['assigned_bsnr'])
        )

        result.patient = patient
        result.doctor = doctor
        result.practice = doctor.practice
        result.transition_to(Result.AVAILABLE)
        result.mapping_detail = {
            **(result.mapping_detail or {}),
            'doctor_rule': RULE_MANUAL,
            'patient_rule': RULE_MANUAL,
            'assigned_by': actor.identifier,
            'identifier_override': override,
        }
        result.save(update_fields=['patient', 'doctor', 'practice', 'status', 'mapping_detail', 'updated_at'])

        audit.record(
            audit.ADMIN_MAPPING_ASSIGNED,
            'result',
            result.id,
            actor=actor,
            details={
                'patient_id': str(patient.id),
                'doctor_id': str(doctor.id),
                'practice_id': str(doctor.practice_id) if doctor.practice_id else None,
                **identifiers,
                'identifier_override': override,
            },
        )
    if override:
        logger.warning("[admin] result=%s assigned to lanr=%s (message ordered by lanr=%s) by %s",
                       result.id, identifiers['assigned_lanr'], identifiers['ordering_lanr'], actor.identifier)
    return result


# ── Retraction / supersession ──────────────────────────────────────────────

def retract_result(result_id, data: dict, actor: Actor) -> Result:
    require_admin(actor)
    reason = (data or {}).get('reason')
    reason = reason.strip() if isinstance(reason, str) else ''
    if not reason:
        raise ValidationError(message="'reason' is required.", code='MISSING_FIELDS', detail={'missing': ['reason']})

    with transaction.atomic():
        result = get_result(result_id, for_update=True)
        previous = result.status
        result.transition_to(Result.RETRACTED)
        result.save(update_fields=['status', 'updated_at'])
        audit.record(
            audit.ADMIN_RESULT_RETRACTED,
            'result',
            result.id,
            actor=actor,
            details={'reason': reason, 'previous_status': previous},
        )
    return result


def supersede_result(result_id, data: dict, actor: Actor) -> Result:
    """旧结果 AVAILABLE → UPDATED，replacement.supersedes 指向旧结果。返回 replacement。"""
    require_admin(actor)
    replacement_id = (data or {}).get('replacement_id')
    if not replacement_id:
        raise ValidationError(message="'replacement_id' is required.", code='MISSING_FIELDS',
                              detail={'missing': ['replacement_id']})
    if str(replacement_id) == str(result_id):
        raise ValidationError(message='A result cannot supersede itself.', code='INVALID_REPLACEMENT')

    with transaction.atomic():
        previous = get_result(result_id, for_update=True)
        replacement = get_result(replacement_id, for_update=True)
        if not replacement.is_canonical or replacement.status not in (Result.NEW, Result.AVAILABLE):
            raise BlockError(
                message='Replacement must be a canonical NEW or AVAILABLE result.',
                code='INVALID_REPLACEMENT',
                detail={'replacement_id': str(replacement.id), 'status': replacement.status},
            )

        previous.transition_to(Result.UPDATED)
        previous.save(update_fields=['status', 'updated_at'])
        replacement.supersedes = previous
        replacement.save(update_fields=['supersedes', 'updated_at'])

        audit.record(
            audit.ADMIN_RESULT_SUPERSEDED,
            'result',
            previous.id,
            actor=actor,
            details={'replacement_id': str(replacement.id)},
        )
    return replacement


# ── Reports ────────────────────────────────────────────────────────────────

def attach_report(result_id, content: bytes, actor: Actor) -> Result:
    require_admin(actor)
    if not content:
        raise ValidationError(message='Report content must not be empty.', code='EMPTY_PAYLOAD')

    result = get_result(result_id)
    if not result.is_canonical:
        raise BlockError(message='Reports attach to canonical results only.', code='RESULT_IS_DUPLICATE')

    ref = storage.put(f"reports/{result.id}.pdf", content)
    with transaction.atomic():
        Result.objects.filter(pk=result.pk).update(report_ref=ref, updated_at=timezone.now())
        audit.record(
            audit.ADMIN_REPORT_ATTACHED,
            'result',
            result.id,
            actor=actor,
            details={'report_ref': ref, 'size': len(content)},
        )
    result.refresh_from_db()
    return result


def can_view_result(actor: Actor, result: Result) -> bool:
    if actor.is_admin:
        return True
    if result.status != Result.AVAILABLE:
        return False
    if actor.role == 'doctor' and actor.lanr and result.doctor_id and result.doctor.lanr == actor.lanr:
        return True
    if result.practice_id and result.practice.bsnr in actor.practices:
        return True
    if actor.role == 'patient' and actor.patient_ref and result.patient_id:
        return result.patient.external_ref == actor.patient_ref
    return False


def download_report(result_id, actor: Actor) -> tuple[Result, bytes]:
    result = get_result(result_id)
    if not can_view_result(actor, result):
        raise PermissionDenied(
            message='You are not allowed to access this result',
            detail={'result_id': str(result.id)},
        )
    if not result.report_ref:
        raise BlockError(
            message='No report attached to this result',
            code='REPORT_NOT_FOUND',
            detail={'result_id': str(result.id)},
            http_status=404,
        )

    content = storage.get(result.report_ref)
    with transaction.atomic():
        audit.record(
            audit.RESULT_DOWNLOADED,
            'result',
            result.id,
            actor=actor,
            details={'report_ref': result.report_ref, 'role': actor.role or None},
        )
    return result, content
