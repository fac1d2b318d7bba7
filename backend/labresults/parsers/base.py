"""
BaseFormatParser: 所有格式 Parser 的抽象基类。

每个新格式只需：
1. 继承 BaseFormatParser
2. 实现 parse() 和 extract()
3. 在 factory.py 的 _REGISTRY 注册一行

Pipeline 代码无需任何改动。
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from ..exceptions import ParseError
from .types import CandidateResult

logger = logging.getLogger(__name__)


def normalize_date(raw: str | None) -> str | None:
    """
    各种来源的日期 → ISO "YYYY-MM-DD"。

    支持：YYYYMMDD[HHMM[SS]]、DDMMYYYY（LDT 2.x）、YYYY-MM-DD[Thh:mm...]。
    识别不了返回 None（parser 不做校验）。
    """
    value = (raw or '').strip()
    if not value:
        return None

    if len(value) >= 10 and value[4] == '-' and value[7] == '-':
        candidates = [(value[:10], '%Y-%m-%d')]
    else:
        digits = value[:8]
        if len(digits) != 8 or not digits.isdigit():
            return None
        candidates = [(digits, '%Y%m%d'), (digits, '%d%m%Y')]

    for text, fmt in candidates:
        try:
            parsed = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        if parsed.year >= 1900:
            return parsed.isoformat()
    return None


class BaseFormatParser(ABC):
    """
    两步流水线：parse → extract

    子类必须实现 parse() 和 extract()。
    process() 把子类里零散的异常统一成 ParseError。
    """

    # 子类声明自己对应的 content type（与 factory 注册键一致）
    content_type: str = ''

    def __init__(self, payload: bytes):
        self._payload = payload
        self._parsed: Any = None

    # ── 必须实现 ───────────────────────────────────────────────────────────

    @abstractmethod
    def parse(self) -> Any:
        """
        原始 bytes → 中间结构（记录列表 / hl7apy Message / dict）。
        应将解析结果赋值给 self._parsed 以便 extract() 使用。
        结构性错误抛 ParseError(transient=False)。
        """

    @abstractmethod
    def extract(self) -> CandidateResult:
        """从 self._parsed 抽取候选字段。"""

    # ── 共用工具 ───────────────────────────────────────────────────────────

    def decode_text(self) -> str:
        """UTF-8 优先；LDT 常见 ISO-8859-15 编码，作为回退。"""
        try:
            return self._payload.decode('utf-8')
        except UnicodeDecodeError:
            return self._payload.decode('iso-8859-15')

    # ── 对外统一入口 ───────────────────────────────────────────────────────

    def process(self) -> CandidateResult:
        try:
            self.parse()
            return self.extract()
        except ParseError:
            raise
        except OSError as exc:
            # I/O 类问题可能是暂时的，交给 orchestrator 重试
            raise ParseError(
                message=f"I/O error while parsing {self.content_type} payload: {exc}",
                transient=True,
            ) from exc
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            logger.info("[parser] %s payload rejected: %s", self.content_type, exc)
            raise ParseError(
                message=f"Malformed {self.content_type} payload: {exc}",
                code='MALFORMED_PAYLOAD',
            ) from exc
