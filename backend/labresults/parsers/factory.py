"""
工厂函数：根据 RawMessage.content_type 返回对应 Parser。

新增格式只需：
  1. 在 formats.py 新建 Parser 类
  2. 在此处 _REGISTRY 加一行
  不需要修改任何 pipeline 代码。
"""

from ..exceptions import ValidationError
from .base import BaseFormatParser
from .formats import FhirParser, Hl7Parser, LdtParser

# ── 注册表 ──────────────────────────────────────────────────────────────────
# key: content type（与 RawMessage.CONTENT_TYPE_CHOICES 一致）
# value: Parser 类（未实例化）
_REGISTRY: dict[str, type[BaseFormatParser]] = {
    "LDT":  LdtParser,
    "HL7":  Hl7Parser,
    "FHIR": FhirParser,
}

SUPPORTED_CONTENT_TYPES = tuple(_REGISTRY)


def get_parser(content_type: str, payload: bytes) -> BaseFormatParser:
    """
    根据 content_type 返回已实例化的 Parser。

    Raises:
        ValidationError: 未知的 content type
    """
    parser_cls = _REGISTRY.get(content_type)

    if parser_cls is None:
        raise ValidationError(
            message=f"Unknown content type: {content_type!r}.",
            code="UNKNOWN_CONTENT_TYPE",
            detail={"known_content_types": list(SUPPORTED_CONTENT_TYPES)},
        )

    return parser_cls(payload=payload)
