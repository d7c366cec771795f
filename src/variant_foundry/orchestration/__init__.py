"""Bounded worker pool (process supervision, output capture, events)."""

from .events import EventChannel, EventKind, TaskEvent
from .instructions import build_instruction_payload
from .models import PoolStats, TaskResult, TaskStatus, WorkerTask
from .output_parser import CompositeOutputParser, JsonLineStrategy, MarkerStrategy, ParseOutcome
from .pool import ProcessOrchestrator, TaskHandle
from .process import ProcessRegistry, WorkerProcess, terminate_process_group

__all__ = [
    "CompositeOutputParser",
    "EventChannel",
    "EventKind",
    "JsonLineStrategy",
    "MarkerStrategy",
    "ParseOutcome",
    "PoolStats",
    "ProcessOrchestrator",
    "ProcessRegistry",
    "TaskEvent",
    "TaskHandle",
    "TaskResult",
    "TaskStatus",
    "WorkerProcess",
    "WorkerTask",
    "build_instruction_payload",
    "terminate_process_group",
]
