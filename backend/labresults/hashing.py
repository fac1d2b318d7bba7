"""
Content fingerprints.

- fingerprint():    SHA-256 over the exact raw payload bytes → RawMessage.sha256
- content_hash():   SHA-256 over the canonical JSON of a parsed candidate → Result.content_hash
- pii_hash():       SHA-256 over normalized patient demographics → Patient.pii_hash

全部返回 64 位小写 hex。客户端传来的 hash 永远不参与去重判断。
"""

import hashlib
import json
import unicodedata

from .jsonvalue import normalize

HEX_DIGEST_LENGTH = 64


def fingerprint(payload: bytes) -> str:
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError("payload must be bytes")
    return hashlib.sha256(bytes(payload)).hexdigest()


def canonical_json(value) -> bytes:
    """Sorted keys, compact separators, UTF-8. Same input → same bytes."""
    return json.dumps(
        normalize(value),
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
    ).encode('utf-8')


def content_hash(candidate_dict: dict) -> str:
    return hashlib.sha256(canonical_json(candidate_dict)).hexdigest()


def _normalize_name(name: str) -> str:
    folded = unicodedata.normalize('NFKC', name or '').casefold()
    return ' '.join(folded.split())


def pii_hash(last_name: str, first_name: str, birth_date: str) -> str:
    """birth_date is ISO 'YYYY-MM-DD'. Empty parts still hash, so callers decide if that's enough."""
    key = '|'.join([_normalize_name(last_name), _normalize_name(first_name), (birth_date or '').strip()])
    return hashlib.sha256(key.encode('utf-8')).hexdigest()
