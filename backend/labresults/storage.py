"""
Object storage 边界：put(key, bytes) -> ref，get(key) -> bytes。

底层走 Django default_storage（生产是 FileSystemStorage / S3 等，测试是 InMemoryStorage），
pipeline 不关心具体引擎。
"""

import logging

from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

from .exceptions import BlockError, TransientStorageFailure

logger = logging.getLogger(__name__)


def put(key: str, data: bytes) -> str:
    """保存并返回 storage ref（引擎可能改名以避免覆盖）。"""
    try:
        ref = default_storage.save(key, ContentFile(data))
    except OSError as exc:
        logger.error("[storage] put %s failed: %s", key, exc)
        raise TransientStorageFailure(message=f"Object storage unavailable: {exc}") from exc
    logger.info("[storage] stored %s (%d bytes)", ref, len(data))
    return ref


def get(key: str) -> bytes:
    try:
        with default_storage.open(key, 'rb') as fh:
            return fh.read()
    except FileNotFoundError as exc:
        raise BlockError(
            message='Report not found in storage',
            code='REPORT_NOT_FOUND',
            detail={'report_ref': key},
            http_status=404,
        ) from exc
    except OSError as exc:
        logger.error("[storage] get %s failed: %s", key, exc)
        raise TransientStorageFailure(message=f"Object storage unavailable: {exc}") from exc
