"""Planning engine for KEYSTONE.

Pure, per-request components between the intent and the adapters:
    StrategyPlanner → QueryConstructor → QueryOptimizer → SecurityValidator
and, after execution, the ResultAggregator.
"""

from keystone.engine.aggregator import ResultAggregator
from keystone.engine.constructor import QueryConstructor
from keystone.engine.optimizer import QueryOptimizer
from keystone.engine.payloads import ApiPayload, Predicate, SelectItem, SqlPayload, StreamPayload
from keystone.engine.security import SecurityValidator
from keystone.engine.strategy import StrategyPlanner

__all__ = [
    "ApiPayload",
    "Predicate",
    "QueryConstructor",
    "QueryOptimizer",
    "ResultAggregator",
    "SecurityValidator",
    "SelectItem",
    "SqlPayload",
    "StrategyPlanner",
    "StreamPayload",
]
