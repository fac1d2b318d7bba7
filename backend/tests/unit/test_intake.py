"""
Raw intake + hash/dedup guard：
- parse_ingest_request() 请求形状校验
- receive()：新消息 / 重复（sha256、external id、idempotency key）
- 并发冲突：insert 撞约束 → 回查赢家，按 duplicate 返回
- 事务提交后才投递 Celery
"""
from unittest.mock import patch

import pytest

from labresults import audit
from labresults.exceptions import ValidationError
from labresults.hashing import fingerprint
from labresults.intake import (
    OUTCOME_DUPLICATE,
    OUTCOME_NEW,
    IngestRequest,
    parse_ingest_request,
    receive,
)
from labresults.models import AuditLogEntry, RawMessage
from tests.conftest import RawMessageFactory, build_ldt, ingest_body


# ── parse_ingest_request ─────────────────────────────────────────────────

class TestParseIngestRequest:

    def test_valid_request(self):
        payload = build_ldt()
        request = parse_ingest_request(ingest_body(payload, external_message_id=' EXT-1 ', sha256='ignored'))

        assert request.source_id == 'lab-potsdam'
        assert request.content_type == 'LDT'
        assert request.payload == payload
        assert request.external_message_id == 'EXT-1'
        assert request.idempotency_key is None

    def test_content_type_case_insensitive(self):
        assert parse_ingest_request(ingest_body(b'x', content_type='hl7')).content_type == 'HL7'

    @pytest.mark.parametrize('missing', ['source_id', 'content_type', 'payload'])
    def test_missing_fields(self, missing):
        body = ingest_body(b'x')
        del body[missing]
        with pytest.raises(ValidationError) as exc_info:
            parse_ingest_request(body)
        assert exc_info.value.code == 'MISSING_FIELDS'
        assert missing in exc_info.value.detail['missing']

    def test_unknown_content_type(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_ingest_request(ingest_body(b'x', content_type='PDF'))
        assert exc_info.value.code == 'UNKNOWN_CONTENT_TYPE'

    def test_invalid_base64(self):
        body = ingest_body(b'x')
        body['payload'] = 'not base64!!'
        with pytest.raises(ValidationError) as exc_info:
            parse_ingest_request(body)
        assert exc_info.value.code == 'INVALID_PAYLOAD_ENCODING'

    def test_empty_payload(self):
        body = ingest_body(b'x')
        body['payload'] = ''
        with pytest.raises(ValidationError) as exc_info:
            parse_ingest_request(body)
        assert exc_info.value.code == 'MISSING_FIELDS'

    def test_payload_too_large(self, settings):
        settings.INGEST_MAX_PAYLOAD_BYTES = 10
        with pytest.raises(ValidationError) as exc_info:
            parse_ingest_request(ingest_body(b'x' * 11))
        assert exc_info.value.code == 'PAYLOAD_TOO_LARGE'
        assert exc_info.value.http_status == 413

    def test_metadata_must_be_object(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_ingest_request(ingest_body(b'x', metadata=['a']))
        assert exc_info.value.code == 'INVALID_METADATA'

    def test_body_must_be_object(self):
        with pytest.raises(ValidationError):
            parse_ingest_request(['not', 'a', 'dict'])


# ── receive ───────────────────────────────────────────────────────────────

def request_for(payload=b'01380008218\r\n', **kwargs):
    return IngestRequest(source_id='lab-potsdam', content_type='LDT', payload=payload, **kwargs)


@pytest.mark.django_db
class TestReceive:

    @patch('labresults.tasks.enqueue_raw_message')
    def test_new_message_stored_as_received(self, enqueue, django_capture_on_commit_callbacks):
        payload = build_ldt()
        with django_capture_on_commit_callbacks(execute=True):
            outcome = receive(request_for(payload))

        raw = outcome.raw_message
        assert outcome.outcome == OUTCOME_NEW
        assert raw.status == RawMessage.RECEIVED
        assert raw.sha256 == fingerprint(payload)
        assert raw.payload_size == len(payload)
        assert bytes(RawMessage.objects.get(id=raw.id).payload) == payload
        enqueue.assert_called_once_with(raw.id)

        entry = AuditLogEntry.objects.get(target_id=str(raw.id))
        assert entry.action == audit.RAW_RECEIVED
        assert entry.details['sha256'] == raw.sha256

    @patch('labresults.tasks.enqueue_raw_message')
    def test_task_not_dispatched_before_commit(self, enqueue, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            receive(request_for())
        assert len(callbacks) == 1
        enqueue.assert_not_called()

    @patch('labresults.tasks.enqueue_raw_message')
    def test_same_bytes_twice_is_duplicate(self, enqueue, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            first = receive(request_for())
            second = receive(request_for())

        assert second.outcome == OUTCOME_DUPLICATE
        assert second.matched_on == 'sha256'
        assert second.raw_message.id == first.raw_message.id
        assert RawMessage.objects.count() == 1
        enqueue.assert_called_once()
        assert AuditLogEntry.objects.filter(action=audit.RAW_DUPLICATE).count() == 1

    @patch('labresults.tasks.enqueue_raw_message')
    def test_same_external_id_different_bytes(self, enqueue):
        first = receive(request_for(b'version-1', external_message_id='EXT-1'))
        second = receive(request_for(b'version-2', external_message_id='EXT-1'))

        assert second.duplicate
        assert second.matched_on == 'external_message_id'
        assert second.raw_message.id == first.raw_message.id

    @patch('labresults.tasks.enqueue_raw_message')
    def test_same_external_id_other_source_is_new(self, enqueue):
        receive(request_for(b'version-1', external_message_id='EXT-1'))
        other = IngestRequest(source_id='lab-berlin', content_type='LDT', payload=b'version-2',
                              external_message_id='EXT-1')

        assert not receive(other).duplicate

    @patch('labresults.tasks.enqueue_raw_message')
    def test_same_idempotency_key(self, enqueue):
        receive(request_for(b'a', idempotency_key='key-1'))
        second = receive(request_for(b'b', idempotency_key='key-1'))
        assert second.matched_on == 'idempotency_key'

    @patch('labresults.tasks.enqueue_raw_message')
    def test_concurrent_insert_resolves_to_duplicate(self, enqueue):
        """另一个 worker 在查重之后、insert 之前写入了同一条消息。"""
        winner = RawMessageFactory(payload=b'01380008218\r\n')

        with patch('labresults.intake.find_existing', side_effect=[(None, None), (winner, 'sha256')]):
            outcome = receive(request_for(b'01380008218\r\n'))

        assert outcome.duplicate
        assert outcome.raw_message.id == winner.id
        assert RawMessage.objects.count() == 1
        assert not AuditLogEntry.objects.filter(action=audit.RAW_RECEIVED).exists()
        enqueue.assert_not_called()
