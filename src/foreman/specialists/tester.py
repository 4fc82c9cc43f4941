from __future__ import annotations

from foreman.specialists.base import SpecialistAgent


class TesterAgent(SpecialistAgent):
    role = "tester"
    system_prompt = """
You are the Tester/QA specialist.
Design and run tests for happy path, edge cases, and failures.
Report clear pass/fail outcomes.
""".strip()
    output_schema = {
        "commands": ["command that was run"],
        "passed": True,
        "output": "relevant test output",
    }
