from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union
import logging

from .cli import CLIEngine, CommandResult
from .state import DeviceConfig, Mode, context_matches, valid_hostname
from .topology import Topology, converge


_LOGGER = logging.getLogger(__name__)


PROMPT_SUFFIXES = {
    Mode.USER: ">",
    Mode.PRIVILEGED: "#",
    Mode.GLOBAL_CONFIG: "(config)#",
    Mode.INTERFACE_CONFIG: "(config-if)#",
    Mode.VLAN_CONFIG: "(config-vlan)#",
    Mode.ROUTER_CONFIG: "(config-router)#",
}


def render_prompt(hostname: str, mode: Union[Mode, str]) -> str:
    return f"{hostname}{PROMPT_SUFFIXES[Mode.parse(mode)]}"


def merge_result(state: DeviceConfig, result: CommandResult) -> DeviceConfig:
    """Fold a command result into a device state.

    Full state wins: when ``result.new_state`` is present it replaces the
    state wholesale and the incremental fields are ignored. Otherwise
    ``mode_change`` and ``hostname_change`` are applied on a copy. Either way
    the prompt is recomputed from the merged hostname and mode.
    """
    if result.new_state is not None:
        merged = result.new_state.copy()
    else:
        merged = state.copy()
        if result.mode_change is not None:
            mode = Mode.parse(result.mode_change)
            if context_matches(mode, merged.context):
                merged.mode = mode
            elif context_matches(mode, None):
                merged.mode, merged.context = mode, None
            else:
                _LOGGER.warning("Ignoring mode change to %s without its sub-state", mode.value)
        if result.hostname_change is not None:
            if valid_hostname(result.hostname_change):
                merged.hostname = result.hostname_change
            else:
                _LOGGER.warning("Ignoring illegal hostname %r", result.hostname_change)
    merged.prompt = render_prompt(merged.hostname, merged.mode)
    return merged


@dataclass
class SessionResult:
    result: CommandResult
    state: DeviceConfig
    topology: Optional[Topology] = None

    @property
    def prompt(self) -> str:
        return self.state.prompt


def _default_engine() -> CLIEngine:
    from labai.fallback import default_resolver

    return CLIEngine(resolver=default_resolver())


class SessionOrchestrator:
    """Runs one command end to end: interpret, merge, converge."""

    def __init__(self, engine: Optional[CLIEngine] = None, log=None):
        self.engine = engine if engine is not None else _default_engine()
        self.log = log  # session_log.SessionLogger

    def handle(
        self,
        state: Union[DeviceConfig, dict],
        line: str,
        topology: Optional[Topology] = None,
        device_id: Optional[str] = None,
    ) -> SessionResult:
        if isinstance(state, dict):
            state = DeviceConfig.from_dict(state)
        if topology is not None:
            if not device_id:
                raise ValueError("device_id is required when a topology is given")
            if device_id not in topology.devices:
                raise KeyError(device_id)

        result = self.engine.interpret(state, line, topology=topology, device_id=device_id)
        merged = merge_result(state, result)

        converged: Optional[Topology] = None
        if topology is not None:
            staged = topology.copy()
            staged.devices[device_id] = merged
            converged = converge(staged)
            merged = converged.devices[device_id].copy()
            result.warnings.extend(converged.warnings)

        if self.log is not None:
            self.log.command(device_id, merged.mode.value, line, result.valid, merged.prompt, result.warnings)
        return SessionResult(result=result, state=merged, topology=converged)


_DEFAULT: Optional[SessionOrchestrator] = None


def handle(
    state: Union[DeviceConfig, dict],
    line: str,
    topology: Optional[Topology] = None,
    device_id: Optional[str] = None,
) -> SessionResult:
    """Module-level entry point using a shared orchestrator with the default fallback."""
    global _DEFAULT
    if _DEFAULT is None:
        _DEFAULT = SessionOrchestrator()
    return _DEFAULT.handle(state, line, topology=topology, device_id=device_id)
