"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
Payload builders produce small but structurally valid LDT / HL7 / FHIR messages.
"""
import base64
import json
from datetime import date

import factory
import pytest
from django.test import Client

from labresults.actors import Actor
from labresults.hashing import fingerprint
from labresults.models import Patient, Practice, RawMessage, Result, User


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class PracticeFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Practice

    bsnr = factory.Sequence(lambda n: f'{100000000 + n}')
    name = factory.Sequence(lambda n: f'Praxis {n}')


class DoctorFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    email = factory.Sequence(lambda n: f'doctor{n}@praxis.example')
    first_name = 'Priya'
    last_name = 'Nair'
    role = User.ROLE_DOCTOR
    lanr = factory.Sequence(lambda n: f'{500000000 + n}')
    practice = factory.SubFactory(PracticeFactory)


class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    external_ref = factory.Sequence(lambda n: f'P-{1000 + n}')
    first_name = 'Noreen'
    last_name = 'Krause'
    birth_date = date(1980, 8, 20)
    insurance_number = 'A123456789'


class RawMessageFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = RawMessage

    source_id = 'lab-potsdam'
    content_type = RawMessage.LDT
    payload = factory.Sequence(lambda n: f'payload-{n}'.encode())
    payload_size = factory.LazyAttribute(lambda o: len(o.payload))
    sha256 = factory.LazyAttribute(lambda o: fingerprint(o.payload))
    status = RawMessage.RECEIVED


class ResultFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Result

    raw_message = factory.SubFactory(RawMessageFactory, status=RawMessage.PROCESSED)
    content_hash = factory.Sequence(lambda n: f'{n:064x}')
    message_uid = factory.Sequence(lambda n: f'UID-{n}')
    status = Result.NEW


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def ldt_line(field_id, content):
    body = f'{field_id}{content}'
    return f'{len(body) + 5:03d}{body}'


def build_ldt(lanr='987654321', bsnr=None, request_id='00598252', patient_ref='P-1001',
              last_name='Krause', first_name='Noreen', birth_date='20081980', tests=(('HBA1C', 'HbA1c', '5.4', '%'),)):
    lines = [ldt_line('8000', '8218')]
    if request_id:
        lines.append(ldt_line('8310', request_id))
    if patient_ref:
        lines.append(ldt_line('3000', patient_ref))
    lines.append(ldt_line('3101', last_name))
    lines.append(ldt_line('3102', first_name))
    lines.append(ldt_line('3103', birth_date))
    if bsnr is not None:
        lines.append(ldt_line('4218', bsnr))
    if lanr is not None:
        lines.append(ldt_line('4242', lanr))
    lines.append(ldt_line('8432', '20250430'))
    for code, name, value, unit in tests:
        lines.append(ldt_line('8410', code))
        lines.append(ldt_line('8411', name))
        lines.append(ldt_line('8420', value))
        lines.append(ldt_line('8421', unit))
    return ('\r\n'.join(lines) + '\r\n').encode('iso-8859-15')


def hl7_segment(name, fields):
    """fields: {index: value}，1-based 字段序号（MSH 除外）。"""
    count = max(fields)
    return name + ''.join('|' + fields.get(i, '') for i in range(1, count + 1))


def build_hl7(lanr='987654321', bsnr='123456789', control_id='MSG00001', patient_ref='P-1001'):
    msh = 'MSH|^~\\&|LAB|POTSDAM|PORTAL|PRAXIS|20250430120000||ORU^R01|{}|P|2.5'.format(control_id)
    segments = [
        msh,
        hl7_segment('PID', {1: '1', 3: f'{patient_ref}^^^LAB^MR', 5: 'Krause^Noreen', 7: '19800820', 8: 'F'}),
        hl7_segment('ORC', {1: 'RE', 12: f'{lanr}^Nair^Priya', 21: f'Praxis Nord^^^^^^^^^{bsnr}'}),
        hl7_segment('OBR', {1: '1', 3: '00598252', 4: 'HBA1C^HbA1c', 7: '20250430', 16: f'{lanr}^Nair^Priya'}),
        hl7_segment('OBX', {1: '1', 2: 'NM', 3: 'HBA1C^HbA1c', 5: '5.4', 6: '%', 11: 'F'}),
    ]
    return '\r'.join(segments).encode('utf-8')


def build_fhir(lanr='987654321', bsnr='123456789', report_id='DR-0001', patient_ref='P-1001'):
    bundle = {
        'resourceType': 'Bundle',
        'type': 'collection',
        'entry': [
            {'resource': {
                'resourceType': 'Patient',
                'identifier': [
                    {'system': 'https://lab.example/patients', 'value': patient_ref},
                    {'system': 'http://fhir.de/sid/gkv/kvid-10', 'value': 'A123456789'},
                ],
                'name': [{'family': 'Krause', 'given': ['Noreen']}],
                'birthDate': '1980-08-20',
            }},
            {'resource': {
                'resourceType': 'Practitioner',
                'identifier': [{'system': 'https://fhir.kbv.de/NamingSystem/KBV_NS_Base_ANR', 'value': lanr}],
            }},
            {'resource': {
                'resourceType': 'Organization',
                'identifier': [{'system': 'https://fhir.kbv.de/NamingSystem/KBV_NS_Base_BSNR', 'value': bsnr}],
            }},
            {'resource': {
                'resourceType': 'DiagnosticReport',
                'identifier': [{'value': report_id}],
                'status': 'final',
                'issued': '2025-04-30T12:00:00+02:00',
            }},
            {'resource': {
                'resourceType': 'Observation',
                'code': {'coding': [{'system': 'http://loinc.org', 'code': '4548-4', 'display': 'HbA1c'}]},
                'valueQuantity': {'value': 5.4, 'unit': '%'},
            }},
        ],
    }
    return json.dumps(bundle).encode('utf-8')


def ingest_body(payload, content_type='LDT', source_id='lab-potsdam', **extra):
    body = {
        'source_id': source_id,
        'content_type': content_type,
        'payload': base64.b64encode(payload).decode('ascii'),
    }
    body.update(extra)
    return body


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def admin_actor():
    return Actor(kind='user', identifier='admin-1', role='admin')


@pytest.fixture
def admin_headers():
    return {'HTTP_X_ACTOR_TYPE': 'user', 'HTTP_X_ACTOR_ID': 'admin-1', 'HTTP_X_ACTOR_ROLE': 'admin'}


@pytest.fixture
def doctor():
    """Exactly one active doctor with LANR 987654321 in practice 123456789."""
    practice = PracticeFactory(bsnr='123456789', name='Praxis Nord')
    return DoctorFactory(lanr='987654321', practice=practice)


@pytest.fixture
def patient():
    return PatientFactory(external_ref='P-1001')
