import uuid

from django.db import models
from django.db.models import F, Q

from .exceptions import BlockError
from .hashing import pii_hash


class Practice(models.Model):
    """BSNR 标识的诊所 / 机构。由外部系统维护，pipeline 只读。"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bsnr = models.CharField(max_length=9, unique=True)
    name = models.CharField(max_length=200)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'practices'


class User(models.Model):
    """
    Portal 用户。role=doctor 时可以持有 LANR。
    同一个 LANR 最多属于一个 active doctor（数据库条件唯一约束保证）。
    pipeline 只读。
    """

    ROLE_DOCTOR = 'doctor'
    ROLE_ADMIN = 'admin'
    ROLE_LAB_TECHNICIAN = 'lab_technician'
    ROLE_VIEWER = 'viewer'
    ROLE_CHOICES = [
        (ROLE_DOCTOR, 'Doctor'),
        (ROLE_ADMIN, 'Admin'),
        (ROLE_LAB_TECHNICIAN, 'Lab technician'),
        (ROLE_VIEWER, 'Viewer'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_DOCTOR)
    lanr = models.CharField(max_length=9, blank=True, null=True)
    practice = models.ForeignKey(
        Practice, on_delete=models.PROTECT, blank=True, null=True, related_name='members'
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'
        constraints = [
            models.UniqueConstraint(
                fields=['lanr'],
                condition=Q(role='doctor', is_active=True, lanr__isnull=False),
                name='uq_active_doctor_lanr',
            ),
        ]


class Patient(models.Model):
    """稳定的患者身份记录。人口学信息由外部系统维护，pipeline 只做查找。"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    external_ref = models.CharField(max_length=64, unique=True)
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)
    birth_date = models.DateField(blank=True, null=True)
    insurance_number = models.CharField(max_length=32, blank=True)
    pii_hash = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'

    def save(self, *args, **kwargs):
        if not self.pii_hash and self.last_name and self.birth_date:
            self.pii_hash = pii_hash(self.last_name, self.first_name, str(self.birth_date))
        super().save(*args, **kwargs)


class RawMessageQuerySet(models.QuerySet):

    def transition(self, pk, from_statuses, to_status, **fields):
        """
        条件更新：只有当前状态在 from_statuses 里才迁移。
        返回 True 表示本次调用完成了迁移（单调推进，重复投递时为 False）。
        """
        updated = self.filter(pk=pk, status__in=list(from_statuses)).update(status=to_status, **fields)
        return updated == 1


class RawMessage(models.Model):
    RECEIVED = 'RECEIVED'
    PARSED = 'PARSED'
    VALIDATION_FAILED = 'VALIDATION_FAILED'
    PROCESSED = 'PROCESSED'
    DLQ = 'DLQ'
    STATUS_CHOICES = [
        (RECEIVED, 'Received'),
        (PARSED, 'Parsed'),
        (VALIDATION_FAILED, 'Validation failed'),
        (PROCESSED, 'Processed'),
        (DLQ, 'Dead letter'),
    ]
    TERMINAL_STATUSES = frozenset({VALIDATION_FAILED, PROCESSED, DLQ})
    IMMUTABLE_STATUSES = frozenset({PROCESSED, DLQ})

    LDT = 'LDT'
    HL7 = 'HL7'
    FHIR = 'FHIR'
    CONTENT_TYPE_CHOICES = [
        (LDT, 'LDT'),
        (HL7, 'HL7 v2'),
        (FHIR, 'FHIR'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    source_id = models.CharField(max_length=100)
    content_type = models.CharField(max_length=8, choices=CONTENT_TYPE_CHOICES)
    payload = models.BinaryField()
    payload_size = models.PositiveIntegerField()
    sha256 = models.CharField(max_length=64, unique=True)
    external_message_id = models.CharField(max_length=255, blank=True, null=True)
    idempotency_key = models.CharField(max_length=255, blank=True, null=True)
    lanr = models.CharField(max_length=64, blank=True, null=True)
    bsnr = models.CharField(max_length=64, blank=True, null=True)
    parsed_data = models.JSONField(blank=True, null=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=RECEIVED)
    error_detail = models.TextField(blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)
    # 持久化的重试计数：进程重启不会丢失重试预算
    attempts = models.PositiveIntegerField(default=0)
    received_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    processed_at = models.DateTimeField(blank=True, null=True)

    objects = RawMessageQuerySet.as_manager()

    class Meta:
        db_table = 'raw_messages'
        constraints = [
            models.UniqueConstraint(
                fields=['source_id', 'external_message_id'],
                condition=Q(external_message_id__isnull=False),
                name='uq_raw_source_external_id',
            ),
            models.UniqueConstraint(
                fields=['source_id', 'idempotency_key'],
                condition=Q(idempotency_key__isnull=False),
                name='uq_raw_source_idempotency_key',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'received_at'], name='idx_raw_status_received'),
        ]


class Result(models.Model):
    NEW = 'NEW'
    AVAILABLE = 'AVAILABLE'
    RETRACTED = 'RETRACTED'
    UPDATED = 'UPDATED'
    PENDING_MAPPING = 'PENDING_MAPPING'
    DUPLICATE = 'DUPLICATE'
    STATUS_CHOICES = [
        (NEW, 'New'),
        (AVAILABLE, 'Available'),
        (RETRACTED, 'Retracted'),
        (UPDATED, 'Updated'),
        (PENDING_MAPPING, 'Pending mapping'),
        (DUPLICATE, 'Duplicate'),
    ]

    # AVAILABLE 只能从 NEW（自动 mapping 成功）或 PENDING_MAPPING（人工确认）进入
    ALLOWED_TRANSITIONS = {
        NEW: frozenset({AVAILABLE, RETRACTED}),
        PENDING_MAPPING: frozenset({AVAILABLE, RETRACTED}),
        AVAILABLE: frozenset({RETRACTED, UPDATED}),
        RETRACTED: frozenset(),
        UPDATED: frozenset(),
        DUPLICATE: frozenset(),
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    raw_message = models.OneToOneField(RawMessage, on_delete=models.PROTECT, related_name='result')
    patient = models.ForeignKey(
        Patient, on_delete=models.PROTECT, blank=True, null=True, related_name='results'
    )
    practice = models.ForeignKey(
        Practice, on_delete=models.PROTECT, blank=True, null=True, related_name='results'
    )
    doctor = models.ForeignKey(
        User, on_delete=models.PROTECT, blank=True, null=True, related_name='ordered_results'
    )
    ordering_lanr = models.CharField(max_length=9, blank=True, default='')
    ordering_bsnr = models.CharField(max_length=9, blank=True, default='')
    message_uid = models.CharField(max_length=255, blank=True, null=True)
    content_hash = models.CharField(max_length=64)
    result_date = models.DateField(blank=True, null=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=NEW)
    duplicate_of = models.ForeignKey(
        'self', on_delete=models.PROTECT, blank=True, null=True, related_name='duplicates'
    )
    supersedes = models.ForeignKey(
        'self', on_delete=models.PROTECT, blank=True, null=True, related_name='superseded_by'
    )
    observations = models.JSONField(default=list, blank=True)
    mapping_detail = models.JSONField(default=dict, blank=True)
    report_ref = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'results'
        constraints = [
            # 只约束 canonical 行；duplicate 行带着相同的 message_uid / content_hash
            models.UniqueConstraint(
                fields=['message_uid'],
                condition=Q(duplicate_of__isnull=True, message_uid__isnull=False),
                name='uq_result_canonical_message_uid',
            ),
            models.UniqueConstraint(
                fields=['content_hash'],
                condition=Q(duplicate_of__isnull=True),
                name='uq_result_canonical_content_hash',
            ),
            models.CheckConstraint(
                condition=~Q(duplicate_of=F('id')),
                name='ck_result_not_self_duplicate',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'created_at'], name='idx_result_status_created'),
            models.Index(fields=['ordering_bsnr', 'ordering_lanr'], name='idx_result_bsnr_lanr'),
        ]

    @property
    def is_canonical(self):
        return self.duplicate_of_id is None

    def transition_to(self, new_status):
        allowed = self.ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise BlockError(
                message=f"Result cannot move from {self.status} to {new_status}.",
                code='INVALID_RESULT_TRANSITION',
                detail={'result_id': str(self.id), 'from': self.status, 'to': new_status},
            )
        self.status = new_status


class AuditLogQuerySet(models.QuerySet):
    """Append-only：禁止批量 update / delete。"""

    def update(self, **kwargs):
        raise BlockError(message='Audit log entries are immutable.', code='AUDIT_LOG_IMMUTABLE')

    def delete(self):
        raise BlockError(message='Audit log entries cannot be deleted.', code='AUDIT_LOG_IMMUTABLE')


class AuditLogEntry(models.Model):
    ACTOR_USER = 'user'
    ACTOR_SYSTEM = 'system'
    ACTOR_ADMIN_TOKEN = 'admin_token'
    ACTOR_TYPE_CHOICES = [
        (ACTOR_USER, 'User'),
        (ACTOR_SYSTEM, 'System'),
        (ACTOR_ADMIN_TOKEN, 'Admin token'),
    ]

    actor_type = models.CharField(max_length=20, choices=ACTOR_TYPE_CHOICES)
    actor_id = models.CharField(max_length=100, blank=True, default='')
    action = models.CharField(max_length=64, db_index=True)
    target_type = models.CharField(max_length=32)
    target_id = models.CharField(max_length=64)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.CharField(max_length=255, blank=True, default='')
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    objects = AuditLogQuerySet.as_manager()

    class Meta:
        db_table = 'audit_logs'
        indexes = [
            models.Index(fields=['target_type', 'target_id'], name='idx_audit_target'),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise BlockError(message='Audit log entries are immutable.', code='AUDIT_LOG_IMMUTABLE')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise BlockError(message='Audit log entries cannot be deleted.', code='AUDIT_LOG_IMMUTABLE')
