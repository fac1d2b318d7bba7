"""
Ingest webhook 安全检查（Mirth Connect 等上游接口引擎）。

  1. IP allow-list：INGEST_ALLOWED_IPS 为空时不限制；支持单个地址和 CIDR。
  2. HMAC-SHA256 签名：配置了 INGEST_WEBHOOK_SECRET 才检查。
       X-Timestamp: unix 时间戳（秒或毫秒）
       X-Signature: "sha256=" + hex(HMAC(secret, f"{timestamp}." + raw body))
     时间戳与服务器时间相差超过 INGEST_SIGNATURE_TOLERANCE 秒视为重放。
"""

import hashlib
import hmac
import ipaddress
import logging
import time

from django.conf import settings

from .exceptions import PermissionDenied, SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ('X-Signature', 'X-Hub-Signature-256')
TIMESTAMP_HEADER = 'X-Timestamp'
SIGNATURE_PREFIX = 'sha256='


def client_ip(request) -> str:
    ip = request.META.get('REMOTE_ADDR') or '0.0.0.0'
    # IPv4-mapped IPv6
    if ip.startswith('::ffff:'):
        ip = ip[len('::ffff:'):]
    return ip


def ip_allowed(ip: str, allowed: list[str]) -> bool:
    if not allowed:
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False

    for entry in allowed:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("[webhook] ignoring malformed allow-list entry %r", entry)
    return False


def sign(body: bytes, timestamp: str, secret: str) -> str:
    message = f"{timestamp}.".encode('utf-8') + body
    digest = hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def _timestamp_seconds(raw: str) -> float:
    value = float(raw)
    # 毫秒时间戳
    if value > 1e11:
        value = value / 1000.0
    return value


def verify_signature(body: bytes, signature: str | None, timestamp: str | None,
                     secret: str, tolerance: int, now: float | None = None) -> None:
    """
    Raises:
        SignatureError: 缺少签名 / 时间戳、时间窗外、签名不匹配
    """
    if not signature or not timestamp:
        raise SignatureError(message='Missing webhook signature', code='MISSING_SIGNATURE')

    try:
        sent_at = _timestamp_seconds(timestamp)
    except ValueError:
        raise SignatureError(message='Malformed signature timestamp', code='INVALID_SIGNATURE_TIMESTAMP')

    now = time.time() if now is None else now
    if tolerance and abs(now - sent_at) > tolerance:
        raise SignatureError(
            message='Signature timestamp outside the allowed window',
            code='SIGNATURE_EXPIRED',
            detail={'tolerance_seconds': tolerance},
        )

    expected = sign(body, timestamp, secret)
    if not hmac.compare_digest(signature.strip().encode('utf-8'), expected.encode('utf-8')):
        raise SignatureError(message='Invalid webhook signature')


def verify_request(request) -> None:
    """在读取 request.data 之前调用：签名覆盖的是原始 body。"""
    ip = client_ip(request)
    if not ip_allowed(ip, settings.INGEST_ALLOWED_IPS):
        logger.warning("[webhook] access denied for ip=%s", ip)
        raise PermissionDenied(
            message='Access denied - IP not allowed',
            code='IP_NOT_ALLOWED',
            detail={'ip': ip},
        )

    secret = settings.INGEST_WEBHOOK_SECRET
    if not secret:
        return

    signature = next((request.headers.get(h) for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    try:
        verify_signature(
            request.body,
            signature,
            request.headers.get(TIMESTAMP_HEADER),
            secret,
            settings.INGEST_SIGNATURE_TOLERANCE,
        )
    except SignatureError as exc:
        logger.warning("[webhook] rejected signature from ip=%s: %s", ip, exc.code)
        raise
