from taskloop.specialists.base import SpecialistAgent, SpecialistResponse
from taskloop.specialists.planner import PlannerAgent
from taskloop.specialists.verifier import AcceptanceReport, CriteriaVerifier, parse_boolean_reply

__all__ = [
    "AcceptanceReport",
    "CriteriaVerifier",
    "PlannerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "parse_boolean_reply",
]
