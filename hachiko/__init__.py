"""Hachiko: reconcile agent-driven code migrations from pull request signals."""

from .config import HachikoConfig, load_config
from .contracts import AgentResult, HachikoPR, PRSignal
from .orchestrator import DispatchDecision, Orchestrator
from .persistence import ControlState, MigrationProgress, StepState, get_store
from .policy import PolicyContext, PolicyEngine, PolicyEvaluationResult, PolicyRule
from .reconcile import InferredMigrationState, MigrationStateInfo, StateReconciler
from .signals import detect_hachiko_pr, extract_migration_id, validate_hachiko_pr
from .state import MigrationStateMachine

__version__ = "0.1.0"
__all__ = [
    "AgentResult",
    "ControlState",
    "DispatchDecision",
    "HachikoConfig",
    "HachikoPR",
    "InferredMigrationState",
    "MigrationProgress",
    "MigrationStateInfo",
    "MigrationStateMachine",
    "Orchestrator",
    "PRSignal",
    "PolicyContext",
    "PolicyEngine",
    "PolicyEvaluationResult",
    "PolicyRule",
    "StateReconciler",
    "StepState",
    "detect_hachiko_pr",
    "extract_migration_id",
    "get_store",
    "load_config",
    "validate_hachiko_pr",
]
