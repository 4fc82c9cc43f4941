from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from foreman.artifacts import Artifact, decode_artifact, encode_artifact
from foreman.errors import (
    ConcurrentUpdateError,
    DuplicateArtifactError,
    LeaseError,
    StoreError,
    WorkflowNotFoundError,
)
from foreman.models import WorkflowState, artifact_key, utcnow_iso

logger = logging.getLogger(__name__)

WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
ARTIFACT_FILE_PATTERN = re.compile(r"^([A-Z]+)-(\d+)\.json$")
# A lock file older than this is left over from a crashed process.
LOCK_STALE_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class ArtifactRecord:
    phase: str
    attempt: int
    kind: str
    sha256: str
    written_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "attempt": self.attempt,
            "kind": self.kind,
            "sha256": self.sha256,
            "written_at": self.written_at,
        }


def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # Signal 0 terminates the process on Windows; rely on the age bound there.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _lock_is_stale(lock_file: Path, stale_seconds: float) -> bool:
    """A lock is stale when its holder on this host is gone or it outlived ``stale_seconds``."""
    try:
        raw = lock_file.read_text(encoding="utf-8")
        modified = lock_file.stat().st_mtime
    except FileNotFoundError:
        return False
    try:
        holder = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        holder = {}
    if isinstance(holder, int):
        holder = {"pid": holder}
    if not isinstance(holder, dict):
        holder = {}

    created = holder.get("created_epoch")
    created_epoch = float(created) if isinstance(created, int | float) else modified
    if time.time() - created_epoch > stale_seconds:
        return True
    pid = holder.get("pid")
    same_host = holder.get("host") in (None, socket.gethostname())
    return isinstance(pid, int) and same_host and not _pid_alive(pid)


class ArtifactStore:
    """Filesystem store for workflow state and versioned phase artifacts.

    Every workflow owns a directory under ``<root>/workflows``; nothing is
    shared between workflow ids except the parent directory, so concurrent
    controllers for different workflows never contend on the same files.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.workflows_dir = self.root / "workflows"
        self.workflows_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _validate_workflow_id(workflow_id: str) -> None:
        if not WORKFLOW_ID_PATTERN.match(workflow_id):
            raise StoreError(f"Invalid workflow id: {workflow_id!r}")

    def _workflow_dir(self, workflow_id: str) -> Path:
        self._validate_workflow_id(workflow_id)
        return self.workflows_dir / workflow_id

    def _artifacts_dir(self, workflow_id: str) -> Path:
        return self._workflow_dir(workflow_id) / "artifacts"

    def _artifact_path(self, workflow_id: str, phase: str, attempt: int) -> Path:
        if attempt < 1:
            raise StoreError(f"Artifact attempt must be positive, got {attempt}")
        return self._artifacts_dir(workflow_id) / f"{artifact_key(phase, attempt)}.json"

    @contextmanager
    def _lock(
        self,
        workflow_id: str,
        timeout_seconds: float = 5.0,
        stale_seconds: float = LOCK_STALE_SECONDS,
    ) -> Iterator[None]:
        workflow_dir = self._workflow_dir(workflow_id)
        workflow_dir.mkdir(parents=True, exist_ok=True)
        lock_file = workflow_dir / ".lock"
        holder = {"pid": os.getpid(), "host": socket.gethostname(), "created_epoch": time.time()}
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, json.dumps(holder).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if _lock_is_stale(lock_file, stale_seconds):
                    logger.warning("Breaking stale store lock of workflow %s", workflow_id)
                    lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StoreError(
                        f"Timed out waiting for store lock of workflow {workflow_id}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        with open(tmp_path, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt store document: {path}") from exc

    # Artifacts

    def put(self, workflow_id: str, phase: str, attempt: int, artifact: Artifact) -> bytes:
        """Write an artifact version; durable on return, never overwrites."""
        path = self._artifact_path(workflow_id, phase, attempt)
        path.parent.mkdir(parents=True, exist_ok=True)
        raw = encode_artifact(artifact)
        with self._lock(workflow_id):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError as exc:
                raise DuplicateArtifactError(
                    f"Artifact {artifact_key(phase, attempt)} already exists "
                    f"for workflow {workflow_id}."
                ) from exc
            try:
                os.write(fd, raw)
                os.fsync(fd)
            finally:
                os.close(fd)
            _fsync_dir(path.parent)
            record = ArtifactRecord(
                phase=phase,
                attempt=attempt,
                kind=artifact.kind,
                sha256=hashlib.sha256(raw).hexdigest(),
                written_at=utcnow_iso(),
            )
            log_path = self._workflow_dir(workflow_id) / "artifacts.log"
            with open(log_path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        logger.debug(
            "Stored %s artifact %s for workflow %s",
            artifact.kind,
            artifact_key(phase, attempt),
            workflow_id,
        )
        return raw

    def get_raw(self, workflow_id: str, phase: str, attempt: int) -> bytes | None:
        path = self._artifact_path(workflow_id, phase, attempt)
        if not path.exists():
            return None
        return path.read_bytes()

    def get(self, workflow_id: str, phase: str, attempt: int) -> Artifact | None:
        raw = self.get_raw(workflow_id, phase, attempt)
        if raw is None:
            return None
        try:
            return decode_artifact(raw)
        except ValueError as exc:
            raise StoreError(
                f"Corrupt artifact {artifact_key(phase, attempt)} in workflow {workflow_id}"
            ) from exc

    def _attempts_on_disk(self, workflow_id: str, phase: str) -> list[int]:
        artifacts_dir = self._artifacts_dir(workflow_id)
        if not artifacts_dir.exists():
            return []
        attempts: list[int] = []
        for path in artifacts_dir.iterdir():
            match = ARTIFACT_FILE_PATTERN.match(path.name)
            if match and match.group(1) == phase:
                attempts.append(int(match.group(2)))
        return sorted(attempts)

    def latest(self, workflow_id: str, phase: str) -> tuple[int, Artifact] | None:
        attempts = self._attempts_on_disk(workflow_id, phase)
        if not attempts:
            return None
        attempt = attempts[-1]
        artifact = self.get(workflow_id, phase, attempt)
        if artifact is None:
            return None
        return attempt, artifact

    def history(self, workflow_id: str) -> list[ArtifactRecord]:
        """Artifact records in write order."""
        log_path = self._workflow_dir(workflow_id) / "artifacts.log"
        records: list[ArtifactRecord] = []
        seen: set[str] = set()
        if log_path.exists():
            for line in log_path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    # A torn final line after a crash; the artifact file is reconciled below.
                    continue
                record = ArtifactRecord(
                    phase=str(payload["phase"]),
                    attempt=int(payload["attempt"]),
                    kind=str(payload["kind"]),
                    sha256=str(payload["sha256"]),
                    written_at=str(payload["written_at"]),
                )
                seen.add(artifact_key(record.phase, record.attempt))
                records.append(record)

        artifacts_dir = self._artifacts_dir(workflow_id)
        if artifacts_dir.exists():
            for path in sorted(artifacts_dir.iterdir(), key=lambda item: item.stat().st_mtime_ns):
                match = ARTIFACT_FILE_PATTERN.match(path.name)
                if not match or path.stem in seen:
                    continue
                raw = path.read_bytes()
                try:
                    kind = decode_artifact(raw).kind
                except ValueError:
                    kind = "unknown"
                records.append(
                    ArtifactRecord(
                        phase=match.group(1),
                        attempt=int(match.group(2)),
                        kind=kind,
                        sha256=hashlib.sha256(raw).hexdigest(),
                        written_at="",
                    )
                )
        return records

    # Workflow state

    def _state_path(self, workflow_id: str) -> Path:
        return self._workflow_dir(workflow_id) / "state.json"

    def get_envelope(self, workflow_id: str) -> dict[str, Any] | None:
        payload = self._read_json(self._state_path(workflow_id))
        if not isinstance(payload, dict) or "data" not in payload:
            return None
        return payload

    def save_state(self, state: WorkflowState, expected_revision: int | None = None) -> int:
        """Persist state; returns the new revision."""
        workflow_id = state.workflow_id
        with self._lock(workflow_id):
            current = self.get_envelope(workflow_id)
            current_revision = int(current.get("revision", 0)) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(
                    f"Concurrent state update detected for workflow '{workflow_id}'."
                )
            state.updated_at = utcnow_iso()
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": state.updated_at,
                "data": state.to_dict(),
            }
            serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
            self._atomic_write(self._state_path(workflow_id), serialized.encode("utf-8"))
        return current_revision + 1

    def load_state(self, workflow_id: str) -> WorkflowState:
        envelope = self.get_envelope(workflow_id)
        if envelope is None:
            raise WorkflowNotFoundError(f"Unknown workflow: {workflow_id}")
        return WorkflowState.from_dict(envelope["data"])

    def state_revision(self, workflow_id: str) -> int:
        envelope = self.get_envelope(workflow_id)
        return int(envelope.get("revision", 0)) if envelope else 0

    def update_state(
        self,
        workflow_id: str,
        updater: Callable[[WorkflowState], WorkflowState],
    ) -> WorkflowState:
        last_error: Exception | None = None
        for _ in range(4):
            revision = self.state_revision(workflow_id)
            updated = updater(self.load_state(workflow_id))
            try:
                self.save_state(updated, expected_revision=revision)
                return updated
            except ConcurrentUpdateError as exc:
                last_error = exc
                time.sleep(0.01)
        raise StoreError(str(last_error) if last_error else "State update failed.")

    def list_workflows(self) -> list[str]:
        if not self.workflows_dir.exists():
            return []
        return sorted(
            path.name
            for path in self.workflows_dir.iterdir()
            if path.is_dir() and (path / "state.json").exists()
        )

    def record_event(self, event: dict[str, Any], *, keep: int = 200) -> None:
        """Append a backend telemetry event, keeping only the most recent ones."""
        events_path = self.root / "backend_events.json"
        events = self._read_json(events_path)
        if not isinstance(events, list):
            events = []
        payload = dict(event)
        payload["at"] = utcnow_iso()
        events.append(payload)
        self._atomic_write(
            events_path, json.dumps(events[-keep:], ensure_ascii=False).encode("utf-8")
        )

    def backend_events(self) -> list[dict[str, Any]]:
        events = self._read_json(self.root / "backend_events.json")
        if not isinstance(events, list):
            return []
        return [item for item in events if isinstance(item, dict)]

    # Leases

    def acquire_lease(self, workflow_id: str, owner: str, ttl_seconds: float = 120.0) -> None:
        now_epoch = time.time()
        lease_path = self._workflow_dir(workflow_id) / "lease.json"
        with self._lock(workflow_id):
            active = self._read_json(lease_path)
            if isinstance(active, dict):
                active_owner = str(active.get("owner", ""))
                active_expiry = float(active.get("expires_epoch", 0))
                if active_owner and active_owner != owner and active_expiry > now_epoch:
                    raise LeaseError(
                        f"Workflow {workflow_id} is being driven by {active_owner}; "
                        "wait for it to finish or for the lease to expire."
                    )
            lease = {
                "owner": owner,
                "heartbeat_at": utcnow_iso(),
                "expires_epoch": now_epoch + max(1.0, ttl_seconds),
            }
            self._atomic_write(lease_path, json.dumps(lease).encode("utf-8"))

    def release_lease(self, workflow_id: str, owner: str) -> None:
        lease_path = self._workflow_dir(workflow_id) / "lease.json"
        with self._lock(workflow_id):
            active = self._read_json(lease_path)
            if isinstance(active, dict) and str(active.get("owner", "")) == owner:
                lease_path.unlink(missing_ok=True)

    def get_lease(self, workflow_id: str) -> dict[str, Any] | None:
        active = self._read_json(self._workflow_dir(workflow_id) / "lease.json")
        return active if isinstance(active, dict) else None

    # Applied patch ledger

    def mark_applied(self, workflow_id: str, key: str, detail: dict[str, Any]) -> None:
        ledger_path = self._workflow_dir(workflow_id) / "applied.json"
        with self._lock(workflow_id):
            ledger = self._read_json(ledger_path)
            if not isinstance(ledger, list):
                ledger = []
            ledger.append({"key": key, "applied_at": utcnow_iso(), **detail})
            self._atomic_write(
                ledger_path,
                json.dumps(ledger, ensure_ascii=False, indent=2).encode("utf-8"),
            )

    def applied_patches(self, workflow_id: str) -> list[dict[str, Any]]:
        ledger = self._read_json(self._workflow_dir(workflow_id) / "applied.json")
        if not isinstance(ledger, list):
            return []
        return [item for item in ledger if isinstance(item, dict)]
