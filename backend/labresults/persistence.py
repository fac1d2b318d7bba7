"""
Idempotent persister：每个逻辑消息只落一条 canonical Result。

一个事务内：
  1. 这条 RawMessage 已经有 Result → 直接返回
  2. resolve canonical：同 message_uid 或同 content_hash 的 canonical 行
     → 插一条 DUPLICATE，duplicate_of 指向它（永远指向 canonical，链长 ≤ 1）
  3. 否则插 canonical 行

并发：不加锁。步骤 3 撞上唯一约束 = 别人先写成功了，
回滚 savepoint 再查一次，本次结果挂成 duplicate。
"""

import logging
from dataclasses import dataclass
from datetime import date

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q

from .exceptions import TransientStorageFailure
from .hashing import content_hash
from .jsonvalue import normalize, normalize_object
from .mapping import MappingOutcome
from .models import RawMessage, Result
from .parsers.types import CandidateResult

logger = logging.getLogger(__name__)

# 插入 canonical 撞约束后重新 resolve 的次数上限
MAX_RESOLVE_ROUNDS = 3


@dataclass
class PersistOutcome:
    result: Result
    created: bool

    @property
    def duplicate(self) -> bool:
        return not self.result.is_canonical


def find_canonical(message_uid: str | None, digest: str) -> Result | None:
    match = Q(content_hash=digest)
    if message_uid:
        match |= Q(message_uid=message_uid)
    # message_uid 命中优先于 content_hash 命中
    candidates = list(Result.objects.filter(match, duplicate_of__isnull=True).order_by('created_at'))
    if not candidates:
        return None
    for row in candidates:
        if message_uid and row.message_uid == message_uid:
            return row
    return candidates[0]


def _result_date(value: str | None):
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _build_result(raw: RawMessage, candidate: CandidateResult, mapping: MappingOutcome, digest: str) -> Result:
    status = Result.NEW if mapping.resolved else Result.PENDING_MAPPING
    return Result(
        raw_message=raw,
        patient=mapping.patient,
        doctor=mapping.doctor,
        practice=mapping.practice,
        ordering_lanr=(candidate.lanr or '').strip()[:9],
        ordering_bsnr=(candidate.bsnr or '').strip()[:9],
        message_uid=candidate.message_uid or None,
        content_hash=digest,
        result_date=_result_date(candidate.result_date),
        status=status,
        observations=normalize(candidate.to_dict()['observations']),
        mapping_detail=normalize_object(mapping.detail),
    )


def persist_result(raw: RawMessage, candidate: CandidateResult, mapping: MappingOutcome) -> PersistOutcome:
    """
    Raises:
        TransientStorageFailure: 数据库暂时不可用，或 resolve 轮数用尽
    """
    digest = content_hash(candidate.to_dict())

    try:
        with transaction.atomic():
            existing = Result.objects.filter(raw_message=raw).first()
            if existing is not None:
                return PersistOutcome(result=existing, created=False)

            for _ in range(MAX_RESOLVE_ROUNDS):
                row = _build_result(raw, candidate, mapping, digest)
                canonical = find_canonical(row.message_uid, digest)
                if canonical is not None:
                    row.status = Result.DUPLICATE
                    row.duplicate_of = canonical

                try:
                    with transaction.atomic():
                        row.save(force_insert=True)
                except IntegrityError:
                    # 可能是同一条 RawMessage 被并发处理，也可能是别人抢先写了 canonical
                    existing = Result.objects.filter(raw_message=raw).first()
                    if existing is not None:
                        return PersistOutcome(result=existing, created=False)
                    logger.info("[persist] raw=%s lost canonical race, resolving again", raw.id)
                    continue

                return PersistOutcome(result=row, created=True)
    except IntegrityError as exc:
        raise TransientStorageFailure(
            message=f"Result for raw message {raw.id} could not be persisted: {exc}",
        ) from exc
    except DatabaseError as exc:
        raise TransientStorageFailure(
            message=f"Database unavailable while persisting raw message {raw.id}: {exc}",
        ) from exc

    raise TransientStorageFailure(
        message=f"Could not resolve a canonical result for raw message {raw.id}.",
        detail={'content_hash': digest},
    )
