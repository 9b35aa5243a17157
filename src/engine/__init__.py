"""Provisioning engine: state, dependency graph, planning and execution."""

from engine.executor import ApplyReport, Executor, NodeOutcome, NodeStatus
from engine.graph import DependencyGraph, GraphBuilder, GraphNode
from engine.orchestrator import CycleResult, Orchestrator
from engine.plan import Action, AttributeChange, Plan, PlanEngine, PlanNode, ReplaceOrder
from engine.refresh import Refresher, RefreshResult
from engine.state import StateLock, StateRecord, StateStore

__all__ = [
    'Action',
    'ApplyReport',
    'AttributeChange',
    'CycleResult',
    'DependencyGraph',
    'Executor',
    'GraphBuilder',
    'GraphNode',
    'NodeOutcome',
    'NodeStatus',
    'Orchestrator',
    'Plan',
    'PlanEngine',
    'PlanNode',
    'RefreshResult',
    'Refresher',
    'ReplaceOrder',
    'StateLock',
    'StateRecord',
    'StateStore',
]
