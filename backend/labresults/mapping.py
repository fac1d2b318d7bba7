"""
Mapper：候选结果 → (patient, doctor, practice)。

规则按顺序执行，第一个命中的生效：
  1. exact LANR：恰好一个 active doctor 持有该 LANR。
     如果同时给了 BSNR，必须与 doctor 所在 practice 一致，否则视为 ambiguous。
  2. BSNR 消歧：LANR 命中多个 → 只保留 practice.bsnr 相同的，恰好一个才分配。
     BSNR 只用来缩小 LANR 的命中范围，从不引入 LANR 以外的 doctor。
  3. 其余情况（包括 LANR 零命中）→ unresolved。

Default deny：任何不确定都走人工队列，绝不猜。
"""

import logging
from dataclasses import dataclass, field

from .exceptions import MappingAmbiguous, MappingError, MappingNotFound
from .hashing import pii_hash
from .models import Patient, Practice, User
from .parsers.types import CandidateResult, PatientFields

logger = logging.getLogger(__name__)

RULE_EXACT_LANR = 'exact_lanr'
RULE_BSNR_DISAMBIGUATION = 'bsnr_disambiguation'
RULE_EXTERNAL_REF = 'external_ref'
RULE_PII_HASH = 'pii_hash'
RULE_MANUAL = 'manual'


@dataclass
class MappingOutcome:
    patient: Patient | None = None
    doctor: User | None = None
    practice: Practice | None = None
    detail: dict = field(default_factory=dict)
    error: MappingError | None = None

    @property
    def resolved(self) -> bool:
        return self.error is None and self.patient is not None and self.doctor is not None


# ── Doctor / practice ─────────────────────────────────────────────────────

def active_doctors_with_lanr(lanr: str) -> list[User]:
    return list(
        User.objects.filter(role=User.ROLE_DOCTOR, is_active=True, lanr=lanr).select_related('practice')
    )


def active_practice(bsnr: str | None) -> Practice | None:
    if not bsnr:
        return None
    return Practice.objects.filter(bsnr=bsnr, is_active=True).first()


def resolve_doctor(lanr: str, bsnr: str | None = None) -> tuple[User, Practice | None, str]:
    """
    返回 (doctor, practice, rule)。
    Raises:
        MappingAmbiguous: 多个候选，或 LANR 与 BSNR 指向不同 practice
        MappingNotFound:  没有任何候选
    """
    doctors = active_doctors_with_lanr(lanr)
    practice = active_practice(bsnr)
    detail = {'lanr': lanr, 'bsnr': bsnr, 'lanr_matches': len(doctors)}

    if len(doctors) == 1:
        doctor = doctors[0]
        if not bsnr:
            return doctor, doctor.practice, RULE_EXACT_LANR
        if practice is not None and doctor.practice_id == practice.id:
            return doctor, practice, RULE_EXACT_LANR
        raise MappingAmbiguous(
            message=f"LANR {lanr} belongs to a doctor outside practice {bsnr}.",
            code='LANR_BSNR_CONFLICT',
            detail={**detail, 'bsnr_known': practice is not None},
        )

    if not doctors:
        raise MappingNotFound(message=f"No active doctor with LANR {lanr}.", detail=detail)

    if not bsnr:
        raise MappingAmbiguous(
            message=f"LANR {lanr} matches {len(doctors)} active doctors and no BSNR was given.",
            detail=detail,
        )

    if practice is None:
        raise MappingAmbiguous(
            message=f"LANR {lanr} is ambiguous and BSNR {bsnr} is unknown.",
            detail=detail,
        )

    candidates = [d for d in doctors if d.practice_id == practice.id]

    detail['bsnr_matches'] = len(candidates)
    if len(candidates) == 1:
        return candidates[0], practice, RULE_BSNR_DISAMBIGUATION
    if not candidates:
        raise MappingNotFound(
            message=f"No active doctor matches LANR {lanr} within practice {bsnr}.",
            detail=detail,
        )
    raise MappingAmbiguous(
        message=f"{len(candidates)} doctors remain after BSNR disambiguation.",
        detail=detail,
    )


# ── Patient ───────────────────────────────────────────────────────────────

def resolve_patient(fields: PatientFields) -> tuple[Patient, str]:
    """先按 external_ref 精确匹配，再按 PII hash 唯一匹配。"""
    external_ref = (fields.external_ref or '').strip()
    if external_ref:
        patient = Patient.objects.filter(external_ref=external_ref).first()
        if patient is not None:
            return patient, RULE_EXTERNAL_REF

    if not (fields.last_name and fields.birth_date):
        raise MappingNotFound(
            message="Patient could not be identified: no known reference and incomplete demographics.",
            code='PATIENT_NOT_FOUND',
            detail={'external_ref': external_ref or None},
        )

    digest = pii_hash(fields.last_name, fields.first_name, fields.birth_date)
    matches = list(Patient.objects.filter(pii_hash=digest)[:2])
    if len(matches) == 1:
        return matches[0], RULE_PII_HASH
    if not matches:
        raise MappingNotFound(
            message="No patient matches the supplied demographics.",
            code='PATIENT_NOT_FOUND',
            detail={'external_ref': external_ref or None},
        )
    raise MappingAmbiguous(
        message="Several patients match the supplied demographics.",
        code='PATIENT_AMBIGUOUS',
        detail={'external_ref': external_ref or None},
    )


# ── 对外入口 ───────────────────────────────────────────────────────────────

def map_candidate(candidate: CandidateResult, lanr: str, bsnr: str | None = None) -> MappingOutcome:
    """
    lanr / bsnr 是已经通过 validator 的值。
    MappingError 不向外抛，作为 outcome.error 返回，由 orchestrator 决定 PENDING_MAPPING。
    """
    outcome = MappingOutcome()

    try:
        doctor, practice, doctor_rule = resolve_doctor(lanr, bsnr)
        patient, patient_rule = resolve_patient(candidate.patient)
    except MappingError as exc:
        logger.info("[mapping] unresolved lanr=%s bsnr=%s: %s", lanr, bsnr, exc.code)
        outcome.error = exc
        outcome.detail = {
            'error': {'code': exc.code, 'message': exc.message, 'detail': exc.detail},
        }
        return outcome

    outcome.patient = patient
    outcome.doctor = doctor
    outcome.practice = practice
    outcome.detail = {'doctor_rule': doctor_rule, 'patient_rule': patient_rule}
    return outcome
