"""
Error taxonomy for the register audit pipeline.
Every error carries a human-readable message and a machine-checkable code.
"""

from typing import Optional


class PipelineError(Exception):
    """Base pipeline error."""

    error_code = "ERR_PIPELINE"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class StructuralRejection(PipelineError):
    """Document is not a shareholder register. Terminal, never retried."""
    error_code = "ERR_STRUCTURAL_REJECTION"


class CollaboratorError(PipelineError):
    """Reasoning call failed or returned malformed output."""
    error_code = "ERR_COLLABORATOR"


class RasterizationError(PipelineError):
    error_code = "ERR_RASTERIZATION"


class StorageError(PipelineError):
    error_code = "ERR_STORAGE"


class SessionLockedError(PipelineError):
    """Another run holds the global session lock."""

    error_code = "ERR_SESSION_LOCKED"

    def __init__(self, current_run_id: Optional[str]):
        self.current_run_id = current_run_id
        super().__init__(f"Session locked by run {current_run_id}")


class RunAlreadyExecuting(PipelineError):
    error_code = "ERR_RUN_IN_PROGRESS"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is already executing")


class RunCancelled(PipelineError):
    error_code = "ERR_CANCELLED"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} cancelled by user")


class RunNotFoundError(PipelineError):
    error_code = "ERR_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class HITLPacketNotFoundError(PipelineError):
    error_code = "ERR_NOT_FOUND"

    def __init__(self, packet_id: str):
        self.packet_id = packet_id
        super().__init__(f"HITL packet {packet_id} not found")


class HITLAlreadyResolvedError(PipelineError):
    error_code = "ERR_HITL_RESOLVED"

    def __init__(self, packet_id: str):
        self.packet_id = packet_id
        super().__init__(f"HITL packet {packet_id} is already resolved")


class InvalidRunState(PipelineError):
    error_code = "ERR_INVALID_STATE"
