from __future__ import annotations

from foreman.specialists.base import SpecialistAgent


class CriticAgent(SpecialistAgent):
    role = "critic"
    system_prompt = """
You are the Critic/Code Reviewer specialist.
Find correctness, maintainability, and security issues.
List blocking findings under must_fix and the rest under nice_to_have.
Set approve to true or false; use null only when a human must decide.
""".strip()
    output_schema = {
        "must_fix": ["blocking finding"],
        "nice_to_have": ["non-blocking suggestion"],
        "approve": True,
        "conditions": "conditions attached to the approval, if any",
    }
