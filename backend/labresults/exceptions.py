"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / block / pipeline / ...）
- code:        业务错误码（INVALID_CONTENT_TYPE / MAPPING_AMBIGUOUS / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

两类异常：
- HTTP 层异常（ValidationError / BlockError / PermissionDenied / SignatureError）：
  View 层只需 raise，exception_handler 统一格式化响应。
- Pipeline 异常（ParseError / IdentifierInvalid / Mapping* / TransientStorageFailure /
  AuditWriteFailure）：由 orchestrator 捕获，转换成状态迁移 + 审计记录，
  ingest 调用方永远看不到它们。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


# ── HTTP 层 ────────────────────────────────────────────────────────────────

class ValidationError(BaseAppException):
    """输入验证失败（rejected-malformed-request），400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class BlockError(BaseAppException):
    """业务规则阻止操作（非法状态迁移、记录不存在等），409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class PermissionDenied(BaseAppException):
    """Actor 无权访问目标资源，403。"""

    type = 'forbidden'
    code = 'PERMISSION_DENIED'
    http_status = 403


class SignatureError(BaseAppException):
    """Webhook 签名缺失或不匹配，401。"""

    type = 'unauthorized'
    code = 'INVALID_SIGNATURE'
    http_status = 401


# ── Pipeline 层 ────────────────────────────────────────────────────────────

class PipelineError(BaseAppException):
    """Pipeline 内部错误的基类。transient=True 的错误由 orchestrator 重试。"""

    type = 'pipeline'
    code = 'PIPELINE_ERROR'
    transient = False


class ParseError(PipelineError):
    """
    Payload 无法解析。

    结构性错误（transient=False）直接进入 DLQ；
    I/O 类错误（transient=True）在重试预算内重试。
    """

    code = 'PARSE_ERROR'

    def __init__(self, message, code=None, detail=None, transient=False):
        super().__init__(message, code=code, detail=detail)
        self.transient = transient


class IdentifierInvalid(PipelineError):
    """LANR / BSNR 缺失或格式错误 → VALIDATION_FAILED，只能人工修正。"""

    code = 'IDENTIFIER_INVALID'


class MappingError(PipelineError):
    """Mapper 无法唯一确定 patient / doctor → 结果进入 PENDING_MAPPING。"""

    code = 'MAPPING_ERROR'


class MappingAmbiguous(MappingError):
    code = 'MAPPING_AMBIGUOUS'


class MappingNotFound(MappingError):
    code = 'MAPPING_NOT_FOUND'


class TransientStorageFailure(PipelineError):
    """存储暂时不可用。指数退避重试，超出预算后进入 DLQ。"""

    code = 'TRANSIENT_STORAGE_FAILURE'
    transient = True
    http_status = 503


class AuditWriteFailure(PipelineError):
    """
    审计记录写入失败。致命错误：外层操作必须整体中止，
    事务回滚，任务不 ack，由 broker 重新投递。
    """

    code = 'AUDIT_WRITE_FAILURE'
    http_status = 503
