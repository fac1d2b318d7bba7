"""
CandidateResult dataclass: 解析器输出的唯一标准格式。

所有 Parser 的 extract() 必须返回这个结构。
Parser 只负责抽取候选字段，不做校验也不做 mapping；
下游（validation / mapping / persistence）只消费这个结构，永远不碰原始 payload。
"""

from dataclasses import asdict, dataclass, field


@dataclass
class PatientFields:
    external_ref: str = ''
    first_name: str = ''
    last_name: str = ''
    birth_date: str = ''        # ISO 8601: "YYYY-MM-DD"，无法识别时为空
    insurance_number: str = ''


@dataclass
class Observation:
    code: str
    name: str = ''
    value: str = ''
    unit: str = ''


@dataclass
class CandidateResult:
    """
    lanr / bsnr     原样抽取的候选值（可能缺失、可能格式错误）。
    message_uid     格式自带的消息唯一 id（LDT 8310 / HL7 MSH-10 / FHIR identifier）。
    result_date     ISO 日期。
    """

    content_type: str
    patient: PatientFields = field(default_factory=PatientFields)
    lanr: str | None = None
    bsnr: str | None = None
    message_uid: str | None = None
    result_date: str | None = None
    observations: list[Observation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'CandidateResult':
        return cls(
            content_type=data['content_type'],
            patient=PatientFields(**(data.get('patient') or {})),
            lanr=data.get('lanr'),
            bsnr=data.get('bsnr'),
            message_uid=data.get('message_uid'),
            result_date=data.get('result_date'),
            observations=[Observation(**o) for o in data.get('observations') or []],
        )
