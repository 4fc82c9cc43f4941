from foreman.runners.agent import AgentRunner, extract_json_objects, parse_artifact
from foreman.runners.base import PHASE_INSTRUCTIONS, PHASE_TOOLS, PhaseContext, Runner

__all__ = [
    "AgentRunner",
    "PHASE_INSTRUCTIONS",
    "PHASE_TOOLS",
    "PhaseContext",
    "Runner",
    "extract_json_objects",
    "parse_artifact",
]
