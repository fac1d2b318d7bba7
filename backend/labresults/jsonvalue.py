"""
半结构化值（metadata / details 字段）的显式类型。

JSONField 本身什么都能存，这里把允许的形状收窄到：
  str / int / float / bool / None / list[JsonValue] / dict[str, JsonValue]

normalize() 负责把常见的 Python 值转换成上述形状，遇到无法表示的值直接报错，
保证审计记录序列化结果是确定的。
"""

import math
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Union

JsonScalar = Union[str, int, float, bool, None]
JsonValue = Union[JsonScalar, List['JsonValue'], Dict[str, 'JsonValue']]
JsonObject = Dict[str, JsonValue]

MAX_DEPTH = 16


def normalize(value: Any, _depth: int = 0) -> JsonValue:
    """Convert *value* into a JsonValue or raise TypeError / ValueError."""
    if _depth > MAX_DEPTH:
        raise ValueError("value nested too deeply")

    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-finite float {value!r} is not representable")
        return value
    # datetime 是 date 的子类，先判断
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, bytes):
        raise TypeError("raw bytes are not allowed in semi-structured values")
    if isinstance(value, dict):
        out = {}
        for key in sorted(value, key=str):
            if not isinstance(key, str):
                raise TypeError(f"object keys must be strings, got {type(key).__name__}")
            out[key] = normalize(value[key], _depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [normalize(item, _depth + 1) for item in value]

    raise TypeError(f"unsupported value type {type(value).__name__}")


def normalize_object(value: Any) -> JsonObject:
    """Like normalize() but the top level must be a mapping; None becomes {}."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"expected a mapping, got {type(value).__name__}")
    return normalize(value)
