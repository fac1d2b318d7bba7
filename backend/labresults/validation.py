"""
Identifier validator：LANR / BSNR 语法校验。

只做格式判断，不查库，永远不抛异常。
  valid           恰好 9 个 ASCII 数字
  missing         None / 空串 / 纯空白
  invalid-format  其他（包括全角数字等非 ASCII 数字）
"""

from dataclasses import dataclass

from .exceptions import IdentifierInvalid

VALID = 'valid'
MISSING = 'missing'
INVALID_FORMAT = 'invalid-format'

IDENTIFIER_LENGTH = 9
_ASCII_DIGITS = frozenset('0123456789')


def check_identifier(value) -> str:
    if value is None:
        return MISSING
    if not isinstance(value, str):
        return INVALID_FORMAT

    text = value.strip()
    if not text:
        return MISSING
    # str.isdigit() 会接受 '１２３' 之类的 Unicode 数字，这里只认 ASCII
    if len(text) == IDENTIFIER_LENGTH and all(ch in _ASCII_DIGITS for ch in text):
        return VALID
    return INVALID_FORMAT


def validate_lanr(value) -> str:
    return check_identifier(value)


def validate_bsnr(value) -> str:
    return check_identifier(value)


@dataclass(frozen=True)
class IdentifierVerdict:
    lanr: str
    bsnr: str

    @property
    def accepted(self) -> bool:
        # BSNR 可以缺失（mapper 把它当可选的消歧信号），但出现了就必须合法
        return self.lanr == VALID and self.bsnr != INVALID_FORMAT

    def to_error(self, lanr_value=None, bsnr_value=None) -> IdentifierInvalid:
        problems = []
        if self.lanr != VALID:
            problems.append(f"LANR {self.lanr}")
        if self.bsnr == INVALID_FORMAT:
            problems.append(f"BSNR {self.bsnr}")
        return IdentifierInvalid(
            message=f"Identifier check failed: {', '.join(problems)}.",
            detail={
                'lanr': {'value': lanr_value, 'verdict': self.lanr},
                'bsnr': {'value': bsnr_value, 'verdict': self.bsnr},
            },
        )


def validate_identifiers(lanr, bsnr) -> IdentifierVerdict:
    return IdentifierVerdict(lanr=validate_lanr(lanr), bsnr=validate_bsnr(bsnr))
