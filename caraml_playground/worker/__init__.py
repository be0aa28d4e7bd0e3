from caraml_playground.worker.pipeline import CompilationPipeline, ExecutionResult, PipelineError
from caraml_playground.worker.pool import SlotState, WorkerPool
from caraml_playground.worker.unit import ExecutionUnit, OutcomeKind, UnitOutcome

__all__ = [
    "CompilationPipeline",
    "ExecutionResult",
    "PipelineError",
    "ExecutionUnit",
    "OutcomeKind",
    "UnitOutcome",
    "WorkerPool",
    "SlotState",
]
