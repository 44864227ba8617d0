"""
Key generation for the object store.
All keys are relative to the store root / bucket.
"""

import uuid

RUNS_PREFIX = "runs"
EVENTS_PREFIX = "events"
ARTIFACTS_PREFIX = "artifacts"
HITL_PREFIX = "hitl"
LOGS_PREFIX = "logs"
SYSTEM_PREFIX = "system"
UPLOADS_PREFIX = "uploads"


def run_key(run_id: str) -> str:
    return f"{RUNS_PREFIX}/{run_id}.json"


def events_key(run_id: str) -> str:
    """Append-only stage event list for a run."""
    return f"{EVENTS_PREFIX}/{run_id}.json"


def artifacts_key(run_id: str) -> str:
    """Artifact map for a run, keyed "stage:kind"."""
    return f"{ARTIFACTS_PREFIX}/{run_id}.json"


def hitl_key(packet_id: str) -> str:
    return f"{HITL_PREFIX}/{packet_id}.json"


def run_log_key(run_id: str) -> str:
    return f"{LOGS_PREFIX}/{run_id}.json"


def session_lock_key() -> str:
    return f"{SYSTEM_PREFIX}/session-lock.json"


def upload_key(file_name: str) -> str:
    """Fresh key for an uploaded source document, keeping its extension."""
    ext = ""
    if "." in file_name:
        ext = file_name.rsplit(".", 1)[1].lower()
    name = str(uuid.uuid4())
    return f"{UPLOADS_PREFIX}/{name}.{ext}" if ext else f"{UPLOADS_PREFIX}/{name}"


def artifact_slot(stage: str, kind: str) -> str:
    """Map key inside the per-run artifact record."""
    return f"{stage}:{kind}"


def id_from_key(key: str) -> str:
    """runs/abc.json -> abc"""
    name = key.rsplit("/", 1)[-1]
    return name[:-5] if name.endswith(".json") else name
