from foreman.specialists.base import SpecialistAgent, SpecialistResponse
from foreman.specialists.coder import CoderAgent
from foreman.specialists.critic import CriticAgent
from foreman.specialists.documenter import DocumenterAgent
from foreman.specialists.planner import PlannerAgent
from foreman.specialists.tester import TesterAgent

__all__ = [
    "CoderAgent",
    "CriticAgent",
    "DocumenterAgent",
    "PlannerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "TesterAgent",
]
