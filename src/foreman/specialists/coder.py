from __future__ import annotations

from foreman.specialists.base import SpecialistAgent


class CoderAgent(SpecialistAgent):
    role = "coder"
    system_prompt = """
You are the Coder/Engineer specialist.
Implement exactly what was planned as a unified diff against the repository.
Match repository conventions and touch only the allowed paths.
When failure diagnostics are provided, fix the reported problems and nothing else.
""".strip()
    output_schema = {
        "diff": "unified diff in `git diff` format",
        "touched_files": ["path/changed/by/the/diff"],
        "summary": {"description": "what changed", "rationale": "why"},
    }
