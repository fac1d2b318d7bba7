"""
具体 Parser 实现。

新增格式：在此文件添加一个类，然后在 factory.py 注册即可。

已注册格式：
  LDT   - LdtParser    (LDT 2.x / 3.x 行格式，可被 Mirth Connect XML 包裹)
  HL7   - Hl7Parser    (HL7 v2 ORU，hl7apy 解析)
  FHIR  - FhirParser   (FHIR R4 JSON Bundle / DiagnosticReport)
"""

import json
import re
from typing import Any

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as ET
from hl7apy.consts import VALIDATION_LEVEL
from hl7apy.core import Group, Segment
from hl7apy.exceptions import HL7apyException
from hl7apy.parser import parse_message

from ..exceptions import ParseError
from .base import BaseFormatParser, normalize_date
from .types import CandidateResult, Observation, PatientFields


# ── LdtParser ──────────────────────────────────────────────────────────────
#
# 每行一个字段：3 位长度 + 4 位字段标识（FK）+ 内容，CRLF 结尾。
# 长度 = 整行字节数（含 CRLF）。示例：
#
#   01380008218          FK 8000 Satzart 8218 (Befundbericht)
#   017831000598252      FK 8310 Anforderungs-Ident → message_uid
#   0133101Bohr          FK 3101 Nachname
#   0133102Anke          FK 3102 Vorname
#   017310319630624      FK 3103 Geburtsdatum
#   0184218793860200     FK 4218 BSNR des Überweisers
#   0184242772720053     FK 4242 LANR des Überweisers
#   017843220250430      FK 8432 Abnahmedatum
#   0148410HBA1C         FK 8410 Test-Ident
#
# Mirth Connect 转发时会把每行包成 <column1>...</column1>。

LDT_LINE_RE = re.compile(r'^(\d{3})(\d{4})(.*)$')

FK_RECORD_TYPE = '8000'
FK_PATIENT_NUMBER = '3000'
FK_LAST_NAME = '3101'
FK_FIRST_NAME = '3102'
FK_BIRTH_DATE = '3103'
FK_INSURANCE_NUMBER = '3105'
FK_ORDERING_LANR = '4242'
FK_ORDERING_BSNR = '4218'
FK_SENDER_LANR = '0212'
FK_SENDER_BSNR = '0201'
FK_REQUEST_ID = '8310'
FK_COLLECTION_DATE = '8432'
FK_CREATION_DATE = '9103'
FK_TEST_IDENT = '8410'
FK_TEST_NAME = '8411'
FK_TEST_VALUE = '8420'
FK_TEST_UNIT = '8421'


class LdtParser(BaseFormatParser):
    content_type = 'LDT'

    def _lines(self) -> list[str]:
        text = self.decode_text().lstrip('\ufeff')
        if text.lstrip().startswith('<'):
            try:
                # Mirth 包装来自外部：禁止 DTD / 实体
                root = ET.fromstring(text.strip(), forbid_dtd=True)
            except (ET.ParseError, DefusedXmlException) as exc:
                raise ParseError(message=f"LDT XML wrapper is not well-formed: {exc}", code='MALFORMED_PAYLOAD') from exc
            return [(el.text or '').strip() for el in root.iter('column1') if (el.text or '').strip()]
        return [line.strip('\r') for line in text.split('\n') if line.strip()]

    def parse(self) -> Any:
        records = []
        for number, line in enumerate(self._lines(), start=1):
            match = LDT_LINE_RE.match(line)
            if match is None:
                raise ParseError(
                    message=f"LDT line {number} is not '<length><field id><content>'.",
                    code='MALFORMED_PAYLOAD',
                    detail={'line': number},
                )
            declared, field_id, content = match.groups()
            # 长度按原始编码字节数计算；UTF-8 下变音字母占两个字节，两种都接受
            if int(declared) not in (len(line) + 2, len(line.encode('utf-8')) + 2):
                raise ParseError(
                    message=f"LDT line {number} declares length {declared} but has {len(line) + 2}.",
                    code='MALFORMED_PAYLOAD',
                    detail={'line': number, 'field_id': field_id},
                )
            records.append((field_id, content.strip()))

        if not any(field_id == FK_RECORD_TYPE for field_id, _ in records):
            raise ParseError(message='LDT payload contains no record (FK 8000).', code='MALFORMED_PAYLOAD')

        self._parsed = records
        return records

    def _first(self, *field_ids: str) -> str | None:
        for wanted in field_ids:
            for field_id, content in self._parsed:
                if field_id == wanted and content:
                    return content
        return None

    def _observations(self) -> list[Observation]:
        observations = []
        current = None
        for field_id, content in self._parsed:
            if field_id == FK_TEST_IDENT:
                current = Observation(code=content)
                observations.append(current)
            elif current is not None and field_id == FK_TEST_NAME:
                current.name = content
            elif current is not None and field_id == FK_TEST_VALUE:
                current.value = content
            elif current is not None and field_id == FK_TEST_UNIT:
                current.unit = content
        return observations

    def extract(self) -> CandidateResult:
        return CandidateResult(
            content_type=self.content_type,
            patient=PatientFields(
                external_ref=self._first(FK_PATIENT_NUMBER) or '',
                first_name=self._first(FK_FIRST_NAME) or '',
                last_name=self._first(FK_LAST_NAME) or '',
                birth_date=normalize_date(self._first(FK_BIRTH_DATE)) or '',
                insurance_number=self._first(FK_INSURANCE_NUMBER) or '',
            ),
            lanr=self._first(FK_ORDERING_LANR, FK_SENDER_LANR),
            bsnr=self._first(FK_ORDERING_BSNR, FK_SENDER_BSNR),
            message_uid=self._first(FK_REQUEST_ID),
            result_date=normalize_date(self._first(FK_COLLECTION_DATE, FK_CREATION_DATE)),
            observations=self._observations(),
        )


# ── Hl7Parser ──────────────────────────────────────────────────────────────
#
# HL7 v2 ORU^R01，例如：
#
#   MSH|^~\&|LAB|POTSDAM|PORTAL|PRAXIS|20250430120000||ORU^R01|MSG00001|P|2.5
#   PID|1||P-1001^^^LAB^MR||Krause^Noreen||19800820|F
#   ORC|RE|||||||||||987654321^Nair^Priya|||||||||Praxis Nord^^^^^^^^^123456789
#   OBR|1||00598252|HBA1C^HbA1c|||20250430|||||||||987654321^Nair^Priya||||||20250430
#   OBX|1|NM|HBA1C^HbA1c||5.4|%|||||F
#
# 字段来源：
#   MSH-10 → message_uid      PID-3.1 → patient external_ref
#   PID-5  → family^given     PID-7   → birth date
#   ORC-12.1 / OBR-16.1 → ordering LANR
#   ORC-21.10 / ORC-21.3 → BSNR
#   OBR-22 / OBR-7 / MSH-7 → result date

class Hl7Parser(BaseFormatParser):
    content_type = 'HL7'

    COMPONENT_SEPARATOR = '^'
    REPETITION_SEPARATOR = '~'

    def parse(self) -> Any:
        text = self.decode_text().replace('\r\n', '\r').replace('\n', '\r').strip()
        if not text.startswith('MSH'):
            raise ParseError(message='HL7 payload must start with an MSH segment.', code='MALFORMED_PAYLOAD')
        try:
            message = parse_message(text, validation_level=VALIDATION_LEVEL.TOLERANT, find_groups=False)
        except HL7apyException as exc:
            raise ParseError(message=f"HL7 payload rejected: {exc}", code='MALFORMED_PAYLOAD') from exc

        self._parsed = message
        return message

    def _segments(self, name: str) -> list:
        """递归遍历 message / group，返回所有同名 segment。"""
        found = []
        stack = [self._parsed]
        while stack:
            node = stack.pop()
            for child in node.children:
                if isinstance(child, Segment):
                    if child.name == name:
                        found.append(child)
                elif isinstance(child, Group):
                    stack.append(child)
        return found

    def _components(self, segment, field_name: str) -> list[str]:
        """第一次重复的各 component（按 '^' 切分）；字段不存在时返回 []。"""
        if segment is None:
            return []
        for child in segment.children:
            if child.name == field_name:
                first_repetition = child.to_er7().split(self.REPETITION_SEPARATOR)[0]
                return first_repetition.split(self.COMPONENT_SEPARATOR)
        return []

    def _component(self, segment, field_name: str, index: int) -> str:
        components = self._components(segment, field_name)
        if index < len(components):
            return components[index].strip()
        return ''

    def _first_segment(self, name: str):
        segments = self._segments(name)
        return segments[0] if segments else None

    def extract(self) -> CandidateResult:
        msh = self._first_segment('MSH')
        pid = self._first_segment('PID')
        orc = self._first_segment('ORC')
        obr = self._first_segment('OBR')

        if pid is None:
            raise ParseError(message='HL7 payload has no PID segment.', code='MALFORMED_PAYLOAD')

        lanr = self._component(orc, 'ORC_12', 0) or self._component(obr, 'OBR_16', 0)
        bsnr = self._component(orc, 'ORC_21', 9) or self._component(orc, 'ORC_21', 2)
        result_date = (
            self._component(obr, 'OBR_22', 0)
            or self._component(obr, 'OBR_7', 0)
            or self._component(msh, 'MSH_7', 0)
        )

        observations = []
        for obx in self._segments('OBX'):
            observations.append(Observation(
                code=self._component(obx, 'OBX_3', 0),
                name=self._component(obx, 'OBX_3', 1),
                value=self._component(obx, 'OBX_5', 0),
                unit=self._component(obx, 'OBX_6', 0) or self._component(obx, 'OBX_6', 1),
            ))

        return CandidateResult(
            content_type=self.content_type,
            patient=PatientFields(
                external_ref=self._component(pid, 'PID_3', 0),
                first_name=self._component(pid, 'PID_5', 1),
                last_name=self._component(pid, 'PID_5', 0),
                birth_date=normalize_date(self._component(pid, 'PID_7', 0)) or '',
                insurance_number=self._component(pid, 'PID_19', 0),
            ),
            lanr=lanr or None,
            bsnr=bsnr or None,
            message_uid=self._component(msh, 'MSH_10', 0) or None,
            result_date=normalize_date(result_date),
            observations=observations,
        )


# ── FhirParser ─────────────────────────────────────────────────────────────
#
# FHIR R4 JSON。接受 Bundle（entry[].resource）或单个 DiagnosticReport（contained[]）。
#
#   Patient.identifier[0].value          → external_ref
#   Patient.identifier(system ~ kvid)    → insurance_number
#   Practitioner.identifier(system ~ lanr / _ANR) → LANR
#   Organization.identifier(system ~ bsnr)        → BSNR
#   DiagnosticReport.identifier[0].value → message_uid
#   DiagnosticReport.issued / effectiveDateTime → result_date
#   Observation.code / valueQuantity / valueString → observations

LANR_SYSTEM_SUFFIXES = ('lanr', '_anr')
BSNR_SYSTEM_SUFFIXES = ('bsnr',)


class FhirParser(BaseFormatParser):
    content_type = 'FHIR'

    def parse(self) -> Any:
        try:
            document = json.loads(self.decode_text())
        except json.JSONDecodeError as exc:
            raise ParseError(message=f"FHIR payload is not valid JSON: {exc.msg}", code='MALFORMED_PAYLOAD') from exc

        if not isinstance(document, dict) or 'resourceType' not in document:
            raise ParseError(message='FHIR payload must be a resource object.', code='MALFORMED_PAYLOAD')

        resource_type = document['resourceType']
        if resource_type == 'Bundle':
            resources = [e['resource'] for e in document.get('entry') or [] if isinstance(e, dict) and e.get('resource')]
        elif resource_type == 'DiagnosticReport':
            resources = [document] + list(document.get('contained') or [])
        else:
            raise ParseError(
                message=f"Unsupported FHIR resource type {resource_type!r}.",
                code='UNSUPPORTED_RESOURCE',
            )

        by_type: dict[str, list[dict]] = {}
        for resource in resources:
            if isinstance(resource, dict):
                by_type.setdefault(resource.get('resourceType', ''), []).append(resource)

        if not by_type.get('DiagnosticReport'):
            raise ParseError(message='FHIR payload contains no DiagnosticReport.', code='MALFORMED_PAYLOAD')

        self._parsed = by_type
        return by_type

    def _first(self, resource_type: str) -> dict:
        resources = self._parsed.get(resource_type) or []
        return resources[0] if resources else {}

    @staticmethod
    def _identifier(resource: dict, suffixes: tuple[str, ...] | None = None) -> str:
        for identifier in resource.get('identifier') or []:
            system = (identifier.get('system') or '').lower()
            if suffixes is None or system.endswith(suffixes):
                value = identifier.get('value')
                if value:
                    return str(value).strip()
        return ''

    def _identifier_any(self, resource_type: str, suffixes: tuple[str, ...]) -> str:
        for resource in self._parsed.get(resource_type) or []:
            value = self._identifier(resource, suffixes)
            if value:
                return value
        return ''

    @staticmethod
    def _observation(resource: dict) -> Observation:
        code = resource.get('code') or {}
        coding = (code.get('coding') or [{}])[0]
        quantity = resource.get('valueQuantity')
        if quantity:
            value = str(quantity.get('value', ''))
            unit = quantity.get('unit') or quantity.get('code') or ''
        else:
            value = str(resource.get('valueString') or '')
            unit = ''
        return Observation(
            code=coding.get('code') or '',
            name=code.get('text') or coding.get('display') or '',
            value=value,
            unit=unit,
        )

    def extract(self) -> CandidateResult:
        patient = self._first('Patient')
        report = self._first('DiagnosticReport')

        names = patient.get('name') or [{}]
        name = names[0]
        given = name.get('given') or ['']

        insurance = ''
        for identifier in patient.get('identifier') or []:
            if 'kvid' in (identifier.get('system') or '').lower():
                insurance = identifier.get('value') or ''
                break

        return CandidateResult(
            content_type=self.content_type,
            patient=PatientFields(
                external_ref=self._identifier(patient),
                first_name=(given[0] or '').strip(),
                last_name=(name.get('family') or '').strip(),
                birth_date=normalize_date(patient.get('birthDate')) or '',
                insurance_number=insurance,
            ),
            lanr=self._identifier_any('Practitioner', LANR_SYSTEM_SUFFIXES) or None,
            bsnr=self._identifier_any('Organization', BSNR_SYSTEM_SUFFIXES) or None,
            message_uid=self._identifier(report) or None,
            result_date=normalize_date(report.get('issued') or report.get('effectiveDateTime')),
            observations=[self._observation(o) for o in self._parsed.get('Observation') or []],
        )
