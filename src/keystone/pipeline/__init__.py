"""Request pipeline — Intent → Cache → Plan → Execute → Recover → Envelope.

Components:
- OrchestrationEngine: per-request state machine and public entry point
- ExecutionCoordinator: concurrent, deadline-bounded adapter calls
- ErrorRecoveryController: retry / fallback / degrade policy
- PerformanceRecorder: stage timings, cache hit ratio, SLA checks
"""

from keystone.pipeline.coordinator import ExecutionCoordinator, ExecutionReport
from keystone.pipeline.monitor import LoggingSink, MetricsSink, PerformanceRecorder, RequestMetrics
from keystone.pipeline.orchestrator import OrchestrationEngine, RequestContext, RequestState
from keystone.pipeline.recovery import ErrorRecoveryController, RecoveryAction, RecoveryDecision

__all__ = [
    "ErrorRecoveryController",
    "ExecutionCoordinator",
    "ExecutionReport",
    "LoggingSink",
    "MetricsSink",
    "OrchestrationEngine",
    "PerformanceRecorder",
    "RecoveryAction",
    "RecoveryDecision",
    "RequestContext",
    "RequestMetrics",
    "RequestState",
]
