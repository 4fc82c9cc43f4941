from __future__ import annotations

from foreman.specialists.base import SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = "planner"
    system_prompt = """
You are the Planner/Architect specialist.
Analyze requirements, define interfaces, propose implementation steps,
and provide risks with alternatives.
You produce plans, not code. Only plan changes inside the allowed paths.
""".strip()
    output_schema = {
        "steps": ["ordered implementation step"],
        "files": ["path/that/will/change"],
        "risks": ["risk and its mitigation"],
        "test_strategy": "how the change will be verified",
    }
