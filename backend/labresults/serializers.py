"""
Response serializers: ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入校验在 intake.parse_ingest_request() / services 里。
病人姓名等 PII 不出现在 pipeline 状态接口里。
"""


def _iso(value):
    return value.isoformat() if value else None


def serialize_intake(outcome):
    raw = outcome.raw_message
    response = {
        'outcome': outcome.outcome,
        'raw_message_id': str(raw.id),
        'sha256': raw.sha256,
        'status': raw.status,
        'received_at': _iso(raw.received_at),
    }
    if outcome.duplicate:
        response['matched_on'] = outcome.matched_on
    return response


def serialize_raw_message(raw):
    # reverse one-to-one 不存在时抛 RelatedObjectDoesNotExist（AttributeError 子类）
    result = getattr(raw, 'result', None)
    return {
        'raw_message_id': str(raw.id),
        'source_id': raw.source_id,
        'content_type': raw.content_type,
        'sha256': raw.sha256,
        'external_message_id': raw.external_message_id,
        'status': raw.status,
        'attempts': raw.attempts,
        'error_detail': raw.error_detail or None,
        'lanr': raw.lanr,
        'bsnr': raw.bsnr,
        'received_at': _iso(raw.received_at),
        'processed_at': _iso(raw.processed_at),
        'result_id': str(result.id) if result else None,
    }


def serialize_result(result):
    return {
        'result_id': str(result.id),
        'raw_message_id': str(result.raw_message_id),
        'status': result.status,
        'message_uid': result.message_uid,
        'content_hash': result.content_hash,
        'ordering_lanr': result.ordering_lanr,
        'ordering_bsnr': result.ordering_bsnr,
        'result_date': _iso(result.result_date),
        'patient_id': str(result.patient_id) if result.patient_id else None,
        'doctor_id': str(result.doctor_id) if result.doctor_id else None,
        'practice_id': str(result.practice_id) if result.practice_id else None,
        'duplicate_of': str(result.duplicate_of_id) if result.duplicate_of_id else None,
        'supersedes': str(result.supersedes_id) if result.supersedes_id else None,
        'has_report': bool(result.report_ref),
        'mapping_detail': result.mapping_detail,
        'created_at': _iso(result.created_at),
        'updated_at': _iso(result.updated_at),
    }


def serialize_queue(queue):
    raw_messages = [serialize_raw_message(raw) for raw in queue['raw_messages']]
    pending = [serialize_result(result) for result in queue['pending_results']]
    return {
        'validation_failed': [r for r in raw_messages if r['status'] == 'VALIDATION_FAILED'],
        'dead_letter': [r for r in raw_messages if r['status'] == 'DLQ'],
        'pending_mapping': pending,
        'count': len(raw_messages) + len(pending),
    }
