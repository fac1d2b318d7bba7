"""
Actor: 已经由上游网关认证过的调用者身份。

本服务不签发也不校验凭证。网关在请求头里注入：
  X-Actor-Type       user | admin_token        （缺省 user）
  X-Actor-Id         用户 id / token id
  X-Actor-Role       doctor | admin | lab_technician | viewer | patient
  X-Actor-Lanr       doctor 的 LANR
  X-Actor-Practices  逗号分隔的 BSNR 列表
  X-Actor-Patient    patient 角色对应的 Patient.external_ref

Pipeline 自己写审计时使用 SYSTEM_ACTOR。
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Actor:
    kind: str                                   # user / system / admin_token
    identifier: str = ''
    role: str = ''
    lanr: str | None = None
    practices: frozenset = field(default_factory=frozenset)
    patient_ref: str | None = None
    ip_address: str | None = None
    user_agent: str = ''

    @property
    def is_admin(self) -> bool:
        return self.kind == 'admin_token' or self.role == 'admin'


SYSTEM_ACTOR = Actor(kind='system', identifier='pipeline')


def actor_from_request(request) -> Actor:
    headers = request.headers
    kind = (headers.get('X-Actor-Type') or 'user').strip()
    if kind not in ('user', 'admin_token'):
        kind = 'user'

    practices = frozenset(
        p.strip() for p in (headers.get('X-Actor-Practices') or '').split(',') if p.strip()
    )

    return Actor(
        kind=kind,
        identifier=(headers.get('X-Actor-Id') or '').strip(),
        role=(headers.get('X-Actor-Role') or '').strip(),
        lanr=(headers.get('X-Actor-Lanr') or '').strip() or None,
        practices=practices,
        patient_ref=(headers.get('X-Actor-Patient') or '').strip() or None,
        ip_address=request.META.get('REMOTE_ADDR') or None,
        user_agent=(headers.get('User-Agent') or '')[:255],
    )
