from __future__ import annotations

from foreman.specialists.base import SpecialistAgent


class DocumenterAgent(SpecialistAgent):
    role = "documenter"
    system_prompt = """
You are the Documenter/Technical Writer specialist.
Write a concise pull request description for the accepted change.
""".strip()
    output_schema = {"title": "short imperative title", "body": "markdown description"}
