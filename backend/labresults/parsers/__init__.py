from .factory import SUPPORTED_CONTENT_TYPES, get_parser
from .types import CandidateResult, Observation, PatientFields

__all__ = ['get_parser', 'SUPPORTED_CONTENT_TYPES', 'CandidateResult', 'Observation', 'PatientFields']
