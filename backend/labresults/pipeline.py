"""
Pipeline orchestrator：parse → validate → map → persist → finalize。

RawMessage 状态机：
  RECEIVED → PARSED → VALIDATION_FAILED | PROCESSED
  RECEIVED → DLQ                      （结构性 ParseError，或重试预算耗尽）
  PARSED   → DLQ                      （重试预算耗尽）

所有迁移都是条件更新（filter(status=expected)），重复投递时：
  - 终态直接跳过
  - PARSED 从已存的 candidate 继续，不重新解析

这里不依赖 Celery：run_pipeline() 返回 PipelineOutcome，
需要重试时 outcome.retry_in 给出退避秒数，由 tasks.py 负责 re-queue。
"""

import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from . import audit
from .exceptions import ParseError, PipelineError, TransientStorageFailure
from .mapping import map_candidate
from .models import RawMessage, Result
from .parsers import CandidateResult, get_parser
from .persistence import persist_result
from .validation import validate_identifiers

logger = logging.getLogger(__name__)

RAW_TARGET = 'raw_message'
RESULT_TARGET = 'result'

# 可以继续推进的状态；其余都是终态
ACTIVE_STATUSES = (RawMessage.RECEIVED, RawMessage.PARSED)


@dataclass
class PipelineOutcome:
    raw_message_id: str
    status: str | None
    retry_in: float | None = None
    result_id: str | None = None

    @property
    def needs_retry(self) -> bool:
        return self.retry_in is not None


def retry_delay(failure_number: int) -> float:
    """第 n 次失败（从 1 开始）后的退避：min(base * 2^(n-1), max)。"""
    base = float(settings.PIPELINE_RETRY_BASE_DELAY)
    ceiling = float(settings.PIPELINE_RETRY_MAX_DELAY)
    return min(base * (2 ** max(failure_number - 1, 0)), ceiling)


def _clip(value, length=64):
    if value is None:
        return None
    return str(value).strip()[:length] or None


# ── Stages ─────────────────────────────────────────────────────────────────

def parse_stage(raw: RawMessage) -> CandidateResult:
    """RECEIVED → PARSED。结构性错误抛 ParseError(transient=False)。"""
    parser = get_parser(raw.content_type, bytes(raw.payload))
    candidate = parser.process()

    moved = RawMessage.objects.transition(
        raw.pk,
        [RawMessage.RECEIVED],
        RawMessage.PARSED,
        parsed_data=candidate.to_dict(),
        lanr=_clip(candidate.lanr),
        bsnr=_clip(candidate.bsnr),
        error_detail='',
        updated_at=timezone.now(),
    )
    if moved:
        logger.info("[pipeline] raw=%s parsed (%s)", raw.id, raw.content_type)
    raw.refresh_from_db()
    return candidate


def validate_stage(raw: RawMessage) -> bool:
    """PARSED → VALIDATION_FAILED（不通过时）。返回 True 表示可以继续 mapping。"""
    verdict = validate_identifiers(raw.lanr, raw.bsnr)
    if verdict.accepted:
        return True

    error = verdict.to_error(lanr_value=raw.lanr, bsnr_value=raw.bsnr)
    with transaction.atomic():
        moved = RawMessage.objects.transition(
            raw.pk,
            [RawMessage.PARSED],
            RawMessage.VALIDATION_FAILED,
            error_detail=error.message,
            updated_at=timezone.now(),
        )
        if moved:
            audit.record(
                audit.RAW_VALIDATION_FAILED,
                RAW_TARGET,
                raw.id,
                details={'code': error.code, 'message': error.message, 'identifiers': error.detail},
            )
    logger.info("[pipeline] raw=%s validation failed: %s", raw.id, error.message)
    return False


def map_and_persist_stage(raw: RawMessage, candidate: CandidateResult) -> Result:
    """PARSED → PROCESSED。mapping 失败也会落一条 PENDING_MAPPING 的 Result。"""
    lanr = raw.lanr.strip()
    bsnr = (raw.bsnr or '').strip() or None

    with transaction.atomic():
        mapping = map_candidate(candidate, lanr, bsnr)
        persisted = persist_result(raw, candidate, mapping)
        result = persisted.result

        if persisted.created:
            _audit_new_result(raw, result, mapping)

        RawMessage.objects.transition(
            raw.pk,
            [RawMessage.PARSED],
            RawMessage.PROCESSED,
            error_detail='',
            processed_at=timezone.now(),
            updated_at=timezone.now(),
        )

    logger.info("[pipeline] raw=%s processed → result=%s (%s)", raw.id, result.id, result.status)
    return result


def _audit_new_result(raw: RawMessage, result: Result, mapping) -> None:
    base = {'raw_message_id': str(raw.id), 'content_hash': result.content_hash}

    if not result.is_canonical:
        audit.record(
            audit.RESULT_DUPLICATE_PERSISTED,
            RESULT_TARGET,
            result.id,
            details={**base, 'duplicate_of': str(result.duplicate_of_id)},
        )
        return

    if mapping.resolved:
        audit.record(
            audit.RESULT_MAPPED,
            RESULT_TARGET,
            result.id,
            details={
                **mapping.detail,
                'patient_id': str(mapping.patient.id),
                'doctor_id': str(mapping.doctor.id),
                'practice_id': str(mapping.practice.id) if mapping.practice else None,
            },
        )
        result.transition_to(Result.AVAILABLE)
        result.save(update_fields=['status', 'updated_at'])
    else:
        audit.record(audit.RESULT_MAPPING_FAILED, RESULT_TARGET, result.id, details=mapping.detail)

    audit.record(audit.RESULT_PERSISTED, RESULT_TARGET, result.id, details={**base, 'status': result.status})


# ── Failure handling ───────────────────────────────────────────────────────

def dead_letter(raw_id, reason: str, error: PipelineError | None = None, count_attempt=True) -> bool:
    fields = {
        'error_detail': error.message if error is not None else reason,
        'processed_at': timezone.now(),
        'updated_at': timezone.now(),
    }
    if count_attempt:
        fields['attempts'] = F('attempts') + 1

    with transaction.atomic():
        moved = RawMessage.objects.transition(raw_id, ACTIVE_STATUSES, RawMessage.DLQ, **fields)
        if moved:
            raw = RawMessage.objects.get(pk=raw_id)
            audit.record(
                audit.RAW_DEAD_LETTERED,
                RAW_TARGET,
                raw_id,
                details={
                    'reason': reason,
                    'code': error.code if error is not None else None,
                    'message': fields['error_detail'],
                    'attempts': raw.attempts,
                },
            )
    if moved:
        logger.warning("[pipeline] raw=%s dead-lettered (%s)", raw_id, reason)
    return moved


def record_transient_failure(raw_id, error: PipelineError) -> PipelineOutcome:
    """
    attempts + 1（持久化）。达到 PIPELINE_MAX_ATTEMPTS → DLQ，否则返回退避时间。
    """
    with transaction.atomic():
        updated = RawMessage.objects.filter(pk=raw_id, status__in=ACTIVE_STATUSES).update(
            attempts=F('attempts') + 1,
            error_detail=error.message,
            updated_at=timezone.now(),
        )
        raw = RawMessage.objects.get(pk=raw_id)

    if not updated:
        return PipelineOutcome(raw_message_id=str(raw_id), status=raw.status)

    if raw.attempts >= settings.PIPELINE_MAX_ATTEMPTS:
        dead_letter(raw_id, 'retry_budget_exhausted', error, count_attempt=False)
        return PipelineOutcome(raw_message_id=str(raw_id), status=RawMessage.DLQ)

    delay = retry_delay(raw.attempts)
    logger.warning(
        "[pipeline] raw=%s transient failure %d/%d, retry in %ss: %s",
        raw_id, raw.attempts, settings.PIPELINE_MAX_ATTEMPTS, delay, error.message,
    )
    return PipelineOutcome(raw_message_id=str(raw_id), status=raw.status, retry_in=delay)


# ── 对外入口 ───────────────────────────────────────────────────────────────

def run_pipeline(raw_id) -> PipelineOutcome:
    """
    处理一条 RawMessage，直到终态或需要重试。

    AuditWriteFailure 不在这里处理：外层事务已回滚，交给 task 层重新投递。
    """
    raw = RawMessage.objects.filter(pk=raw_id).first()
    if raw is None:
        logger.error("[pipeline] raw=%s does not exist, skipping", raw_id)
        return PipelineOutcome(raw_message_id=str(raw_id), status=None)

    if raw.status not in ACTIVE_STATUSES:
        logger.info("[pipeline] raw=%s already %s, skipping redelivery", raw.id, raw.status)
        return PipelineOutcome(
            raw_message_id=str(raw.id),
            status=raw.status,
            result_id=_result_id(raw),
        )

    try:
        if raw.status == RawMessage.RECEIVED:
            candidate = parse_stage(raw)
        else:
            candidate = CandidateResult.from_dict(raw.parsed_data)

        if raw.status != RawMessage.PARSED:
            # 并发 worker 已经推进了状态
            return PipelineOutcome(raw_message_id=str(raw.id), status=raw.status)

        if not validate_stage(raw):
            return PipelineOutcome(raw_message_id=str(raw.id), status=RawMessage.VALIDATION_FAILED)

        result = map_and_persist_stage(raw, candidate)
        return PipelineOutcome(raw_message_id=str(raw.id), status=RawMessage.PROCESSED, result_id=str(result.id))

    except ParseError as exc:
        if exc.transient:
            return record_transient_failure(raw.id, exc)
        dead_letter(raw.id, 'parse_error', exc)
        return PipelineOutcome(raw_message_id=str(raw.id), status=RawMessage.DLQ)

    except TransientStorageFailure as exc:
        return record_transient_failure(raw.id, exc)

    except DatabaseError as exc:
        return record_transient_failure(
            raw.id, TransientStorageFailure(message=f"Database error during pipeline run: {exc}")
        )


def _result_id(raw: RawMessage) -> str | None:
    result = Result.objects.filter(raw_message=raw).only('id').first()
    return str(result.id) if result else None
