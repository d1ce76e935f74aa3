"""Compile image/text/vision workflow graphs into pipelines and run them."""

from imgflow.core.artifacts import DataResult, ImageArtifact, SaveResult
from imgflow.core.compiler import CompileResult, compile_graph, compile_workflow
from imgflow.core.errors import ErrorCategory, FlowError
from imgflow.core.events import EventChannel
from imgflow.core.model import GraphEdge, GraphNode, WorkflowGraph
from imgflow.core.registry import CapabilityRegistry
from imgflow.core.scheduler import ExecutionResult, Scheduler, StepStatus
from imgflow.core.steps import Pipeline

__all__ = [
    "CapabilityRegistry",
    "CompileResult",
    "DataResult",
    "ErrorCategory",
    "EventChannel",
    "ExecutionResult",
    "FlowError",
    "GraphEdge",
    "GraphNode",
    "ImageArtifact",
    "Pipeline",
    "SaveResult",
    "Scheduler",
    "StepStatus",
    "WorkflowGraph",
    "compile_graph",
    "compile_workflow",
]
