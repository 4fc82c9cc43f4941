from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

DIFF_GIT_PATTERN = re.compile(r'^diff --git ("(?:[^"\\]|\\.)*"|\S+) ("(?:[^"\\]|\\.)*"|\S+)$')
DIFF_FILE_PATTERN = re.compile(r"^(?:---|\+\+\+) (.+)$")
DIFF_RENAME_PATTERN = re.compile(r"^(?:rename|copy) (?:from|to) (.+)$")


def _unquote_path(token: str) -> str:
    """Decode a path git quoted because of special characters (``"a/caf\\303\\251.py"``)."""
    token = token.strip()
    if len(token) < 2 or not (token.startswith('"') and token.endswith('"')):
        return token
    raw = token[1:-1].encode("utf-8").decode("unicode_escape")
    return raw.encode("latin-1").decode("utf-8", errors="replace")


def _strip_prefix(path: str) -> str:
    # git apply strips one leading component (-p1) from header paths.
    if path == "/dev/null" or "/" not in path:
        return path
    return path.split("/", 1)[1]


def _is_file_header(lines: list[str], index: int) -> bool:
    # "---" and "+++" headers come as a pair; a lone one is hunk content.
    if lines[index].startswith("--- "):
        return index + 1 < len(lines) and lines[index + 1].startswith("+++ ")
    return index > 0 and lines[index - 1].startswith("--- ")


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        raise ValueError(f"Expected a list of strings, got {type(value).__name__}")
    return [str(item) for item in value]


def _require(payload: dict[str, Any], key: str, kind: str) -> Any:
    if key not in payload:
        raise ValueError(f"{kind} artifact is missing required field '{key}'")
    return payload[key]


@dataclass(frozen=True, slots=True)
class Plan:
    kind: ClassVar[str] = "Plan"

    steps: list[str]
    files: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    test_strategy: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "steps": list(self.steps),
            "files": list(self.files),
            "risks": list(self.risks),
            "test_strategy": self.test_strategy,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Plan:
        return cls(
            steps=_str_list(_require(payload, "steps", cls.kind)),
            files=_str_list(payload.get("files")),
            risks=_str_list(payload.get("risks")),
            test_strategy=str(payload.get("test_strategy") or ""),
        )


@dataclass(frozen=True, slots=True)
class ChangeSummary:
    kind: ClassVar[str] = "ChangeSummary"

    description: str
    rationale: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "rationale": self.rationale,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChangeSummary:
        return cls(
            description=str(_require(payload, "description", cls.kind)),
            rationale=str(payload.get("rationale") or ""),
        )


@dataclass(frozen=True, slots=True)
class Patch:
    kind: ClassVar[str] = "Patch"

    diff: str
    touched_files: list[str] = field(default_factory=list)
    summary: ChangeSummary | None = None

    def diff_paths(self) -> list[str]:
        """Paths named in the diff headers, as ``git apply`` would resolve them."""
        paths: list[str] = []
        lines = self.diff.splitlines()
        for index, line in enumerate(lines):
            if line.startswith("diff --git "):
                git_match = DIFF_GIT_PATTERN.match(line)
                if git_match:
                    names = [git_match.group(1), git_match.group(2)]
                else:
                    rest = line[len("diff --git ") :]
                    split = rest.rfind(" b/")
                    names = [rest[:split], rest[split + 1 :]] if split > 0 else [rest]
                paths.extend(_strip_prefix(_unquote_path(name)) for name in names)
                continue
            rename_match = DIFF_RENAME_PATTERN.match(line)
            if rename_match:
                paths.append(_unquote_path(rename_match.group(1)))
                continue
            file_match = DIFF_FILE_PATTERN.match(line)
            if file_match and _is_file_header(lines, index):
                name = _unquote_path(file_match.group(1).split("\t", 1)[0])
                if name != "/dev/null":
                    paths.append(_strip_prefix(name))
        return paths

    def all_paths(self) -> list[str]:
        seen: dict[str, None] = {}
        for path in [*self.touched_files, *self.diff_paths()]:
            normalized = path.replace("\\", "/").strip()
            if normalized:
                seen.setdefault(normalized, None)
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "diff": self.diff,
            "touched_files": list(self.touched_files),
            "summary": self.summary.to_dict() if self.summary else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Patch:
        summary_payload = payload.get("summary")
        summary = None
        if isinstance(summary_payload, dict):
            summary = ChangeSummary.from_dict(summary_payload)
        return cls(
            diff=str(_require(payload, "diff", cls.kind)),
            touched_files=_str_list(payload.get("touched_files")),
            summary=summary,
        )


@dataclass(frozen=True, slots=True)
class TestReport:
    kind: ClassVar[str] = "TestReport"
    __test__: ClassVar[bool] = False

    commands: list[str]
    passed: bool
    output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "commands": list(self.commands),
            "passed": self.passed,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TestReport:
        passed = _require(payload, "passed", cls.kind)
        if not isinstance(passed, bool):
            raise ValueError("TestReport field 'passed' must be a boolean")
        return cls(
            commands=_str_list(payload.get("commands")),
            passed=passed,
            output=str(payload.get("output") or ""),
        )


@dataclass(frozen=True, slots=True)
class Review:
    kind: ClassVar[str] = "Review"

    must_fix: list[str] = field(default_factory=list)
    nice_to_have: list[str] = field(default_factory=list)
    approve: bool | None = None
    conditions: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "must_fix": list(self.must_fix),
            "nice_to_have": list(self.nice_to_have),
            "approve": self.approve,
            "conditions": self.conditions,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Review:
        approve = payload.get("approve")
        if approve is not None and not isinstance(approve, bool):
            raise ValueError("Review field 'approve' must be a boolean or null")
        return cls(
            must_fix=_str_list(payload.get("must_fix")),
            nice_to_have=_str_list(payload.get("nice_to_have")),
            approve=approve,
            conditions=str(payload.get("conditions") or ""),
        )


@dataclass(frozen=True, slots=True)
class PRDescription:
    kind: ClassVar[str] = "PRDescription"

    title: str
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "title": self.title, "body": self.body}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PRDescription:
        return cls(
            title=str(_require(payload, "title", cls.kind)),
            body=str(payload.get("body") or ""),
        )


@dataclass(frozen=True, slots=True)
class RunnerFailure:
    """Recorded in place of an artifact when a Runner call fails."""

    kind: ClassVar[str] = "RunnerFailure"

    error_kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "error_kind": self.error_kind, "message": self.message}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunnerFailure:
        return cls(
            error_kind=str(_require(payload, "error_kind", cls.kind)),
            message=str(payload.get("message") or ""),
        )


Artifact = Plan | Patch | TestReport | Review | PRDescription | RunnerFailure

ARTIFACT_TYPES: dict[str, type] = {
    "Plan": Plan,
    "Patch": Patch,
    "TestReport": TestReport,
    "Review": Review,
    "PRDescription": PRDescription,
    "RunnerFailure": RunnerFailure,
}

# Artifact kind each phase is expected to produce.
PHASE_ARTIFACTS: dict[str, str] = {
    "PLAN": "Plan",
    "CODE": "Patch",
    "FIX": "Patch",
    "TEST": "TestReport",
    "REVIEW": "Review",
    "DONE": "PRDescription",
}


def artifact_from_dict(payload: dict[str, Any]) -> Artifact:
    kind = payload.get("kind")
    artifact_type = ARTIFACT_TYPES.get(str(kind))
    if artifact_type is None:
        raise ValueError(f"Unknown artifact kind: {kind!r}")
    return artifact_type.from_dict(payload)


def encode_artifact(artifact: Artifact) -> bytes:
    """Canonical byte encoding used by the store."""
    return json.dumps(
        artifact.to_dict(),
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


def decode_artifact(raw: bytes) -> Artifact:
    payload = json.loads(raw.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Artifact document must be a JSON object")
    return artifact_from_dict(payload)
