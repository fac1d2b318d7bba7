"""
Mapper：exact LANR → BSNR 消歧 → unresolved（default deny）。
"""
from unittest.mock import patch

import pytest

from labresults.exceptions import MappingAmbiguous, MappingNotFound
from labresults.mapping import (
    RULE_BSNR_DISAMBIGUATION,
    RULE_EXACT_LANR,
    RULE_EXTERNAL_REF,
    RULE_PII_HASH,
    map_candidate,
    resolve_doctor,
    resolve_patient,
)
from labresults.parsers import CandidateResult, PatientFields
from tests.conftest import DoctorFactory, PatientFactory, PracticeFactory


def make_candidate(lanr='987654321', bsnr=None, patient_ref='P-1001', **patient):
    fields = {'external_ref': patient_ref, 'last_name': 'Krause', 'first_name': 'Noreen',
              'birth_date': '1980-08-20'}
    fields.update(patient)
    return CandidateResult(content_type='LDT', lanr=lanr, bsnr=bsnr, patient=PatientFields(**fields))


@pytest.mark.django_db
class TestResolveDoctor:

    def test_exact_lanr(self, doctor):
        found, practice, rule = resolve_doctor('987654321')
        assert found == doctor
        assert practice == doctor.practice
        assert rule == RULE_EXACT_LANR

    def test_exact_lanr_with_agreeing_bsnr(self, doctor):
        found, practice, rule = resolve_doctor('987654321', '123456789')
        assert found == doctor
        assert practice.bsnr == '123456789'

    def test_exact_lanr_conflicting_bsnr_is_ambiguous(self, doctor):
        PracticeFactory(bsnr='222222222')
        with pytest.raises(MappingAmbiguous) as exc_info:
            resolve_doctor('987654321', '222222222')
        assert exc_info.value.code == 'LANR_BSNR_CONFLICT'

    def test_exact_lanr_unknown_bsnr_is_ambiguous(self, doctor):
        with pytest.raises(MappingAmbiguous):
            resolve_doctor('987654321', '999999999')

    def test_inactive_doctor_ignored(self):
        DoctorFactory(lanr='987654321', is_active=False)
        with pytest.raises(MappingNotFound):
            resolve_doctor('987654321')

    def test_unknown_lanr(self):
        with pytest.raises(MappingNotFound):
            resolve_doctor('111111111')

    def test_unknown_lanr_never_falls_back_to_bsnr_practice(self):
        """practice 里唯一的 doctor 持有别的 LANR：不能替代。"""
        practice = PracticeFactory(bsnr='123456789')
        DoctorFactory(practice=practice, lanr='555555555')

        with pytest.raises(MappingNotFound):
            resolve_doctor('987654321', '123456789')

    def test_unknown_lanr_several_doctors_in_practice(self):
        practice = PracticeFactory(bsnr='123456789')
        DoctorFactory(practice=practice)
        DoctorFactory(practice=practice)

        with pytest.raises(MappingNotFound):
            resolve_doctor('111111111', '123456789')

    def test_two_active_doctors_same_lanr_never_guessed(self):
        """唯一约束被绕过时：两个 active doctor 同 LANR → ambiguous。"""
        first = DoctorFactory()
        second = DoctorFactory()
        with patch('labresults.mapping.active_doctors_with_lanr', return_value=[first, second]):
            with pytest.raises(MappingAmbiguous):
                resolve_doctor('987654321')

    def test_two_doctors_narrowed_by_bsnr(self):
        target_practice = PracticeFactory(bsnr='123456789')
        first = DoctorFactory(practice=target_practice)
        second = DoctorFactory()
        with patch('labresults.mapping.active_doctors_with_lanr', return_value=[first, second]):
            found, practice, rule = resolve_doctor('987654321', '123456789')
        assert found == first
        assert rule == RULE_BSNR_DISAMBIGUATION


@pytest.mark.django_db
class TestResolvePatient:

    def test_external_ref(self, patient):
        found, rule = resolve_patient(PatientFields(external_ref='P-1001'))
        assert found == patient
        assert rule == RULE_EXTERNAL_REF

    def test_pii_hash_fallback(self):
        patient = PatientFactory(external_ref='OTHER-REF')
        found, rule = resolve_patient(PatientFields(
            external_ref='UNKNOWN', last_name='KRAUSE', first_name='noreen', birth_date='1980-08-20',
        ))
        assert found == patient
        assert rule == RULE_PII_HASH

    def test_several_pii_matches_are_ambiguous(self):
        PatientFactory()
        PatientFactory()
        with pytest.raises(MappingAmbiguous):
            resolve_patient(PatientFields(last_name='Krause', first_name='Noreen', birth_date='1980-08-20'))

    def test_incomplete_demographics(self):
        with pytest.raises(MappingNotFound):
            resolve_patient(PatientFields(last_name='Krause'))


@pytest.mark.django_db
class TestMapCandidate:

    def test_resolved(self, doctor, patient):
        outcome = map_candidate(make_candidate(), '987654321')

        assert outcome.resolved
        assert outcome.doctor == doctor
        assert outcome.patient == patient
        assert outcome.practice == doctor.practice
        assert outcome.detail == {'doctor_rule': RULE_EXACT_LANR, 'patient_rule': RULE_EXTERNAL_REF}

    def test_unknown_patient_leaves_everything_unassigned(self, doctor):
        outcome = map_candidate(make_candidate(patient_ref='NOBODY', last_name='Nobody'), '987654321')

        assert not outcome.resolved
        assert outcome.doctor is None
        assert outcome.patient is None
        assert isinstance(outcome.error, MappingNotFound)
        assert outcome.detail['error']['code'] == 'PATIENT_NOT_FOUND'

    def test_zero_doctors_is_unresolved(self, patient):
        outcome = map_candidate(make_candidate(), '987654321')
        assert not outcome.resolved
        assert outcome.detail['error']['code'] == 'MAPPING_NOT_FOUND'
