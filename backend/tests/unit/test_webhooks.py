"""
Webhook 安全检查：HMAC 签名 + 时间窗 + IP allow-list。
"""
import time

import pytest
from django.test import RequestFactory

from labresults.exceptions import PermissionDenied, SignatureError
from labresults.webhooks import client_ip, ip_allowed, sign, verify_request, verify_signature

SECRET = 'webhook-secret'
BODY = b'{"source_id": "lab-potsdam"}'


class TestSign:

    def test_known_vector(self):
        signature = sign(b'body', '1700000000', 'key')
        assert signature.startswith('sha256=')
        assert len(signature) == len('sha256=') + 64

    def test_timestamp_is_part_of_signature(self):
        assert sign(BODY, '1700000000', SECRET) != sign(BODY, '1700000001', SECRET)


class TestVerifySignature:

    def test_valid_signature(self):
        now = 1_700_000_000
        verify_signature(BODY, sign(BODY, str(now), SECRET), str(now), SECRET, tolerance=300, now=now)

    def test_millisecond_timestamp(self):
        now = 1_700_000_000
        ts = str(now * 1000)
        verify_signature(BODY, sign(BODY, ts, SECRET), ts, SECRET, tolerance=300, now=now + 10)

    @pytest.mark.parametrize('signature, timestamp', [(None, '1700000000'), ('sha256=abc', None), ('', '')])
    def test_missing_headers(self, signature, timestamp):
        with pytest.raises(SignatureError) as exc_info:
            verify_signature(BODY, signature, timestamp, SECRET, tolerance=300, now=1_700_000_000)
        assert exc_info.value.code == 'MISSING_SIGNATURE'

    def test_malformed_timestamp(self):
        with pytest.raises(SignatureError) as exc_info:
            verify_signature(BODY, 'sha256=abc', 'yesterday', SECRET, tolerance=300)
        assert exc_info.value.code == 'INVALID_SIGNATURE_TIMESTAMP'

    def test_expired_timestamp(self):
        ts = '1700000000'
        with pytest.raises(SignatureError) as exc_info:
            verify_signature(BODY, sign(BODY, ts, SECRET), ts, SECRET, tolerance=300, now=1_700_000_301)
        assert exc_info.value.code == 'SIGNATURE_EXPIRED'
        assert exc_info.value.http_status == 401

    def test_tampered_body(self):
        ts = '1700000000'
        with pytest.raises(SignatureError) as exc_info:
            verify_signature(BODY + b' ', sign(BODY, ts, SECRET), ts, SECRET, tolerance=300, now=1_700_000_000)
        assert exc_info.value.code == 'INVALID_SIGNATURE'

    def test_wrong_secret(self):
        ts = '1700000000'
        with pytest.raises(SignatureError):
            verify_signature(BODY, sign(BODY, ts, 'other'), ts, SECRET, tolerance=300, now=1_700_000_000)


class TestIpAllowList:

    def test_empty_list_allows_everyone(self):
        assert ip_allowed('203.0.113.9', [])

    def test_exact_address(self):
        assert ip_allowed('10.1.2.3', ['10.1.2.3'])
        assert not ip_allowed('10.1.2.4', ['10.1.2.3'])

    def test_cidr(self):
        assert ip_allowed('10.1.2.200', ['10.1.2.0/24'])
        assert not ip_allowed('10.1.3.1', ['10.1.2.0/24'])

    def test_malformed_entry_is_ignored(self):
        assert ip_allowed('10.1.2.3', ['not-an-ip', '10.1.2.3'])

    def test_malformed_client_ip(self):
        assert not ip_allowed('garbage', ['10.0.0.0/8'])

    def test_ipv4_mapped_ipv6(self):
        request = RequestFactory().post('/api/ingest/', REMOTE_ADDR='::ffff:10.1.2.3')
        assert client_ip(request) == '10.1.2.3'


class TestVerifyRequest:

    def _request(self, body=BODY, **headers):
        return RequestFactory().post('/api/ingest/', data=body, content_type='application/json', **headers)

    def test_no_secret_no_check(self, settings):
        settings.INGEST_WEBHOOK_SECRET = ''
        verify_request(self._request())

    def test_signed_request_accepted(self, settings):
        settings.INGEST_WEBHOOK_SECRET = SECRET
        ts = str(int(time.time()))
        verify_request(self._request(HTTP_X_SIGNATURE=sign(BODY, ts, SECRET), HTTP_X_TIMESTAMP=ts))

    def test_github_style_header_accepted(self, settings):
        settings.INGEST_WEBHOOK_SECRET = SECRET
        ts = str(int(time.time()))
        verify_request(self._request(HTTP_X_HUB_SIGNATURE_256=sign(BODY, ts, SECRET), HTTP_X_TIMESTAMP=ts))

    def test_unsigned_request_rejected(self, settings):
        settings.INGEST_WEBHOOK_SECRET = SECRET
        with pytest.raises(SignatureError) as exc_info:
            verify_request(self._request())
        assert exc_info.value.code == 'MISSING_SIGNATURE'

    def test_ip_not_allowed(self, settings):
        settings.INGEST_ALLOWED_IPS = ['192.168.0.0/16']
        with pytest.raises(PermissionDenied) as exc_info:
            verify_request(self._request(REMOTE_ADDR='10.0.0.1'))
        assert exc_info.value.code == 'IP_NOT_ALLOWED'
