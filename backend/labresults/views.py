"""
HTTP 层：只做「取参数 → 调 service → 序列化」。

所有错误都是 raise，由 labresults.exception_handler 统一格式化。
"""

import base64
import binascii

from django.http import HttpResponse, JsonResponse
from rest_framework.views import APIView

from . import intake, services, webhooks
from .actors import actor_from_request
from .exceptions import ValidationError
from .serializers import serialize_intake, serialize_queue, serialize_raw_message, serialize_result


class IngestView(APIView):
    """POST /api/ingest/ - 接收一条 LDT / HL7 / FHIR 消息"""

    def post(self, request):
        # 签名覆盖原始 body，必须在 request.data 之前检查
        webhooks.verify_request(request)

        ingest_request = intake.parse_ingest_request(request.data)
        outcome = intake.receive(ingest_request, actor=actor_from_request(request))

        status = 200 if outcome.duplicate else 202
        return JsonResponse(serialize_intake(outcome), status=status)


class RawMessageDetailView(APIView):
    """GET /api/raw-messages/<id>/ - pipeline 状态（仅管理端，不含 payload / PII）"""

    def get(self, request, raw_id):
        raw = services.view_raw_message(raw_id, actor_from_request(request))
        return JsonResponse(serialize_raw_message(raw))


class RemediationQueueView(APIView):
    """GET /api/admin/queue/"""

    def get(self, request):
        queue = services.remediation_queue(actor_from_request(request))
        return JsonResponse(serialize_queue(queue))


class IdentifierCorrectionView(APIView):
    """POST /api/admin/raw-messages/<id>/corrections/"""

    def post(self, request, raw_id):
        raw = services.correct_identifiers(raw_id, request.data, actor_from_request(request))
        return JsonResponse(serialize_raw_message(raw), status=202)


class AssignMappingView(APIView):
    """POST /api/admin/results/<id>/assign/"""

    def post(self, request, result_id):
        result = services.assign_mapping(result_id, request.data, actor_from_request(request))
        return JsonResponse(serialize_result(result))


class RetractResultView(APIView):
    """POST /api/admin/results/<id>/retract/"""

    def post(self, request, result_id):
        result = services.retract_result(result_id, request.data, actor_from_request(request))
        return JsonResponse(serialize_result(result))


class SupersedeResultView(APIView):
    """POST /api/admin/results/<id>/supersede/"""

    def post(self, request, result_id):
        result = services.supersede_result(result_id, request.data, actor_from_request(request))
        return JsonResponse(serialize_result(result))


class AttachReportView(APIView):
    """POST /api/admin/results/<id>/report/ - body: {"content": "<base64 PDF>"}"""

    def post(self, request, result_id):
        encoded = request.data.get('content') if isinstance(request.data, dict) else None
        if not isinstance(encoded, str):
            raise ValidationError(message="'content' must be a base64 string.", code='INVALID_PAYLOAD_ENCODING')
        try:
            content = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(message="'content' is not valid base64.", code='INVALID_PAYLOAD_ENCODING')

        result = services.attach_report(result_id, content, actor_from_request(request))
        return JsonResponse(serialize_result(result), status=201)


class ResultDownloadView(APIView):
    """GET /api/results/<id>/download - 下载报告（每次访问都写审计）"""

    def get(self, request, result_id):
        result, content = services.download_report(result_id, actor_from_request(request))
        response = HttpResponse(content, content_type='application/pdf')
        response['Content-Disposition'] = f'attachment; filename="result_{result.id}.pdf"'
        return response
