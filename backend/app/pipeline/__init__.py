from app.pipeline.base_generation import (
    BaseGenerationOutcome,
    generate_base_output,
    process_pending_base_outputs,
    run_base_generation,
)
from app.pipeline.client_customization import ClientGenerationResult, generate_client_outputs
from app.pipeline.conversion import process_conversion_job, process_next_conversion_job, submit_conversion_job
from app.pipeline.status import (
    ArtifactConflictError,
    ArtifactNotFoundError,
    ArtifactStatus,
    BaseOutputNotReadyError,
)

__all__ = [
    "ArtifactConflictError",
    "ArtifactNotFoundError",
    "ArtifactStatus",
    "BaseGenerationOutcome",
    "BaseOutputNotReadyError",
    "ClientGenerationResult",
    "generate_base_output",
    "generate_client_outputs",
    "process_conversion_job",
    "process_next_conversion_job",
    "process_pending_base_outputs",
    "run_base_generation",
    "submit_conversion_job",
]
