"""
Raw intake + hash/dedup guard。

流程：
  1. parse_ingest_request() 校验请求形状（source_id / content_type / base64 payload ...）
  2. receive() 服务端计算 sha256，原子 insert RawMessage(status=RECEIVED)
     - 唯一约束（sha256 / source+external id / source+idempotency key）冲突
       = 已经收过 → accepted-duplicate，本次 bytes 丢弃，写一条 raw_message.duplicate
  3. 事务提交后把 raw id 投给 Celery

客户端传来的 hash 永远不参与判断。
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from functools import partial

from django.conf import settings
from django.db import IntegrityError, transaction

from . import audit
from .actors import SYSTEM_ACTOR, Actor
from .exceptions import TransientStorageFailure, ValidationError
from .hashing import fingerprint
from .jsonvalue import normalize_object
from .models import RawMessage
from .parsers import SUPPORTED_CONTENT_TYPES

logger = logging.getLogger(__name__)

OUTCOME_NEW = 'accepted-new'
OUTCOME_DUPLICATE = 'accepted-duplicate'


@dataclass
class IngestRequest:
    source_id: str
    content_type: str
    payload: bytes
    external_message_id: str | None = None
    idempotency_key: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class IntakeOutcome:
    raw_message: RawMessage
    duplicate: bool
    matched_on: str | None = None

    @property
    def outcome(self) -> str:
        return OUTCOME_DUPLICATE if self.duplicate else OUTCOME_NEW


# ── 请求校验 ───────────────────────────────────────────────────────────────

def _optional_text(data: dict, key: str, max_length: int) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(message=f"'{key}' must be a string.", code='INVALID_FIELD', detail={'field': key})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(
            message=f"'{key}' must be at most {max_length} characters.",
            code='INVALID_FIELD',
            detail={'field': key},
        )
    return value or None


def parse_ingest_request(data) -> IngestRequest:
    """
    Raises:
        ValidationError: 请求形状不合法（rejected-malformed-request）
    """
    if not isinstance(data, dict):
        raise ValidationError(message='Request body must be a JSON object.', code='INVALID_BODY')

    missing = [key for key in ('source_id', 'content_type', 'payload') if not data.get(key)]
    if missing:
        raise ValidationError(
            message=f"Missing required fields: {', '.join(missing)}.",
            code='MISSING_FIELDS',
            detail={'missing': missing},
        )

    source_id = _optional_text(data, 'source_id', 100)
    if not source_id:
        raise ValidationError(message="'source_id' must not be blank.", code='MISSING_FIELDS',
                              detail={'missing': ['source_id']})

    content_type = data['content_type']
    if not isinstance(content_type, str) or content_type.strip().upper() not in SUPPORTED_CONTENT_TYPES:
        raise ValidationError(
            message=f"Unknown content type: {content_type!r}.",
            code='UNKNOWN_CONTENT_TYPE',
            detail={'known_content_types': list(SUPPORTED_CONTENT_TYPES)},
        )
    content_type = content_type.strip().upper()

    encoded = data['payload']
    if not isinstance(encoded, str):
        raise ValidationError(message="'payload' must be a base64 string.", code='INVALID_PAYLOAD_ENCODING')
    try:
        payload = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(message="'payload' is not valid base64.", code='INVALID_PAYLOAD_ENCODING') from exc

    if not payload:
        raise ValidationError(message='Payload must not be empty.', code='EMPTY_PAYLOAD')
    if len(payload) > settings.INGEST_MAX_PAYLOAD_BYTES:
        raise ValidationError(
            message='Payload exceeds the maximum accepted size.',
            code='PAYLOAD_TOO_LARGE',
            detail={'max_bytes': settings.INGEST_MAX_PAYLOAD_BYTES, 'size': len(payload)},
            http_status=413,
        )

    try:
        metadata = normalize_object(data.get('metadata'))
    except (TypeError, ValueError) as exc:
        raise ValidationError(message=f"'metadata' is not a valid object: {exc}", code='INVALID_METADATA') from exc

    return IngestRequest(
        source_id=source_id,
        content_type=content_type,
        payload=payload,
        external_message_id=_optional_text(data, 'external_message_id', 255),
        idempotency_key=_optional_text(data, 'idempotency_key', 255),
        metadata=metadata,
    )


# ── Dedup guard ────────────────────────────────────────────────────────────

def find_existing(request: IngestRequest, digest: str) -> tuple[RawMessage | None, str | None]:
    """按 sha256 → (source, external id) → (source, idempotency key) 的顺序查已有记录。"""
    existing = RawMessage.objects.filter(sha256=digest).first()
    if existing is not None:
        return existing, 'sha256'

    if request.external_message_id:
        existing = RawMessage.objects.filter(
            source_id=request.source_id, external_message_id=request.external_message_id
        ).first()
        if existing is not None:
            return existing, 'external_message_id'

    if request.idempotency_key:
        existing = RawMessage.objects.filter(
            source_id=request.source_id, idempotency_key=request.idempotency_key
        ).first()
        if existing is not None:
            return existing, 'idempotency_key'

    return None, None


def _record_duplicate(existing: RawMessage, request: IngestRequest, digest: str,
                      matched_on: str, actor: Actor) -> IntakeOutcome:
    with transaction.atomic():
        audit.record(
            audit.RAW_DUPLICATE,
            'raw_message',
            existing.id,
            actor=actor,
            details={
                'source_id': request.source_id,
                'sha256': digest,
                'matched_on': matched_on,
                'payload_size': len(request.payload),
            },
        )
    logger.info("[intake] duplicate of raw=%s (matched on %s, sha256=%s…)", existing.id, matched_on, digest[:12])
    return IntakeOutcome(raw_message=existing, duplicate=True, matched_on=matched_on)


def receive(request: IngestRequest, actor: Actor = SYSTEM_ACTOR) -> IntakeOutcome:
    """
    存储一条 RawMessage 或识别为重复。

    并发的相同提交：唯一约束保证只有一个调用者看到 accepted-new，
    其余的 insert 失败后回查到赢家，按 duplicate 返回。
    """
    from .tasks import enqueue_raw_message

    digest = fingerprint(request.payload)

    existing, matched_on = find_existing(request, digest)
    if existing is not None:
        return _record_duplicate(existing, request, digest, matched_on, actor)

    try:
        with transaction.atomic():
            raw = RawMessage.objects.create(
                source_id=request.source_id,
                content_type=request.content_type,
                payload=request.payload,
                payload_size=len(request.payload),
                sha256=digest,
                external_message_id=request.external_message_id,
                idempotency_key=request.idempotency_key,
                metadata=request.metadata,
                status=RawMessage.RECEIVED,
            )
            audit.record(
                audit.RAW_RECEIVED,
                'raw_message',
                raw.id,
                actor=actor,
                details={
                    'source_id': request.source_id,
                    'content_type': request.content_type,
                    'sha256': digest,
                    'payload_size': len(request.payload),
                    'external_message_id': request.external_message_id,
                },
            )
            transaction.on_commit(partial(enqueue_raw_message, raw.id))
    except IntegrityError as exc:
        existing, matched_on = find_existing(request, digest)
        if existing is None:
            raise TransientStorageFailure(message=f"Raw message could not be stored: {exc}") from exc
        return _record_duplicate(existing, request, digest, matched_on, actor)

    logger.info("[intake] stored raw=%s source=%s type=%s sha256=%s…",
                raw.id, request.source_id, request.content_type, digest[:12])
    return IntakeOutcome(raw_message=raw, duplicate=False)
