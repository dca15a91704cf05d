"""Deterministic IOS-style CLI simulator.

Mode state machine and grammar, per-device configuration model, topology
convergence and a session orchestrator that ties them together. The
generative fallback for unknown commands lives in ``labai``.
"""

from .state import DeviceConfig, Mode, default_config
from .cli import CLIEngine, CommandResult
from .topology import Topology, converge
from .session import SessionOrchestrator, SessionResult, handle, merge_result, render_prompt

__all__ = [
    "DeviceConfig",
    "Mode",
    "default_config",
    "CLIEngine",
    "CommandResult",
    "Topology",
    "converge",
    "SessionOrchestrator",
    "SessionResult",
    "handle",
    "merge_result",
    "render_prompt",
]
