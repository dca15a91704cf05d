from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Protocol
import json
import logging

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field

from labsim.cli import SYSTEM_ERROR, CommandResult, applied, rejected
from labsim.grammar import INVALID_INPUT, is_legal_transition, normalize_ifname
from labsim.state import (
    AddressError,
    DeviceConfig,
    InterfaceContext,
    Mode,
    Route,
    RouterContext,
    RoutingProcess,
    VlanContext,
    check_interface_address,
    check_next_hop,
    check_route_prefix,
    valid_hostname,
    valid_vlan_id,
)
from labsim.topology import refresh_local_routes

from .config import FallbackSettings


_LOGGER = logging.getLogger(__name__)


# Structured Outputs rejects open-ended objects, so every model forbids extra
# keys and collections are lists of records rather than dicts.


class InterfaceDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Existing interface name (e.g., GigabitEthernet0/0)")
    ip: Optional[str] = Field(default=None, description="New IPv4 address; requires mask")
    mask: Optional[str] = Field(default=None, description="Dotted netmask for ip")
    clear_ip: bool = Field(default=False, description="Remove the interface address")
    admin_up: Optional[bool] = Field(default=None, description="true = no shutdown, false = shutdown")
    description: Optional[str] = Field(default=None)


class VlanDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vlan_id: int = Field(..., description="VLAN id 1-4094")
    name: Optional[str] = Field(default=None)
    remove: bool = Field(default=False)


class RouteDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    network: str
    mask: str
    next_hop: Optional[str] = Field(default=None, description="Next-hop IPv4 address")
    interface: Optional[str] = Field(default=None, description="Exit interface, when no next hop")
    remove: bool = Field(default=False)


class StateDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interfaces: List[InterfaceDelta] = Field(default_factory=list)
    vlans: List[VlanDelta] = Field(default_factory=list)
    static_routes: List[RouteDelta] = Field(default_factory=list)


class ModeTarget(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["user", "privileged", "global-config", "interface-config", "vlan-config", "router-config"]
    interface: Optional[str] = Field(default=None, description="Required for interface-config")
    vlan_id: Optional[int] = Field(default=None, description="Required for vlan-config")
    protocol: Optional[Literal["ospf", "rip", "eigrp"]] = Field(default=None, description="Required for router-config")
    process_id: Optional[str] = Field(default=None, description="OSPF process id / EIGRP AS number")


class FallbackReply(BaseModel):
    model_config = ConfigDict(extra="forbid")

    """Structured reply for one command the deterministic grammar does not know.

    - valid: whether a real IOS device would accept the command in this mode
    - output: exact text the device would print (may be empty)
    - error: short reason when valid is false
    - mode_change / hostname_change / delta: optional state effects
    """

    valid: bool = Field(..., description="True if the command is accepted in the current mode.")
    output: str = Field(default="", description="Text the device prints.")
    error: Optional[str] = Field(default=None)
    mode_change: Optional[ModeTarget] = Field(default=None)
    hostname_change: Optional[str] = Field(default=None)
    delta: Optional[StateDelta] = Field(default=None)


SYSTEM_PROMPT = """\
You are the command interpreter of a simulated Cisco IOS device (router or switch).

You will receive:
- the CURRENT_MODE of the CLI (user, privileged, global-config, interface-config, vlan-config, router-config)
- a compact JSON summary of the device configuration
- one COMMAND the simulator's own parser did not recognize

Your job:
1) Decide whether a real IOS 15.x device accepts COMMAND in CURRENT_MODE.
2) Produce the exact text the device would print. Show commands print realistic tables
   consistent with the configuration summary. Configuration commands usually print nothing.
3) Rejected commands: valid=false, output "% Invalid input detected at '^' marker."
   (or the IOS error the device would print), and a short error.

State effects (only when the command really changes configuration):
- mode_change: only legal IOS transitions; interface-config needs interface,
  vlan-config needs vlan_id, router-config needs protocol (and process_id for ospf/eigrp).
- hostname_change: only for the hostname command.
- delta: interface, VLAN and static-route edits. Interfaces must already exist.
  VLAN ids are 1-4094. Addresses and masks are dotted-quad IPv4.
- Never invent state that the command does not imply.

Always return JSON matching the FallbackReply schema (no extra keys).\
"""


@dataclass(frozen=True)
class FallbackContext:
    mode: Mode
    hostname: str
    kind: str
    summary: Dict[str, Any]
    command: str


class Synthesizer(Protocol):
    def synthesize(self, context: FallbackContext) -> FallbackReply: ...


def summarize(state: DeviceConfig) -> Dict[str, Any]:
    """Compact view of a device for the request; routes are limited to non-dynamic ones."""
    data = state.to_dict()
    data.pop("prompt", None)
    data["routes"] = [r for r in data["routes"] if r["source"] != "dynamic"]
    # Unconfigured switchports add noise without information.
    data["interfaces"] = {
        ifn: {k: v for k, v in icfg.items() if v not in (None, False)}
        for ifn, icfg in data["interfaces"].items()
    }
    return data


class OpenAISynthesizer:
    """Structured completion over the OpenAI Responses API."""

    def __init__(self, settings: FallbackSettings, client: Optional[OpenAI] = None):
        self.settings = settings
        # One attempt only; the caller reports a system error on any failure.
        self.client = client or OpenAI(
            api_key=settings.api_key,
            timeout=settings.timeout,
            max_retries=0,
        )

    def synthesize(self, context: FallbackContext) -> FallbackReply:
        summary = json.dumps(context.summary, ensure_ascii=False, sort_keys=True)

        # NOTE (Responses API): content parts must use type="input_text".
        input_messages: List[Dict[str, Any]] = [
            {"role": "system", "content": [{"type": "input_text", "text": SYSTEM_PROMPT}]},
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": f"DEVICE: {context.hostname} ({context.kind})"},
                    {"type": "input_text", "text": f"CURRENT_MODE: {context.mode.value}"},
                    {"type": "input_text", "text": f"CONFIGURATION_JSON:\n{summary}"},
                    {"type": "input_text", "text": f"COMMAND:\n{context.command}"},
                ],
            },
        ]

        resp = self.client.responses.parse(
            model=self.settings.model,
            input=input_messages,
            text_format=FallbackReply,
            temperature=0.1,
        )
        return resp.output_parsed


class DeltaRejected(Exception):
    """A proposed state effect violates a configuration invariant."""


class FallbackResolver:
    """Resolve commands outside the grammar through a synthesizer.

    The reply is never trusted: mode changes must follow the transition table,
    the hostname must be legal, and the delta is applied all-or-nothing after
    validation. Any failure talking to the synthesizer fails closed.
    """

    def __init__(self, synthesizer: Optional[Synthesizer] = None):
        self.synthesizer = synthesizer

    def resolve(self, state: DeviceConfig, line: str) -> CommandResult:
        if self.synthesizer is None:
            return rejected(INVALID_INPUT, "Fallback resolver is not configured (OPENAI_API_KEY is not set)")

        context = FallbackContext(
            mode=state.mode,
            hostname=state.hostname,
            kind=state.kind,
            summary=summarize(state),
            command=line,
        )
        try:
            reply = self.synthesizer.synthesize(context)
        except Exception as e:
            _LOGGER.warning("Fallback synthesis failed for %r: %s", line, e)
            return rejected(SYSTEM_ERROR, f"Fallback request failed: {type(e).__name__}")

        if not isinstance(reply, FallbackReply):
            _LOGGER.warning("Fallback returned no parsed reply for %r", line)
            return rejected(SYSTEM_ERROR, "Fallback returned no structured reply")

        if not reply.valid:
            return CommandResult(
                valid=False,
                output=reply.output or INVALID_INPUT,
                error=reply.error or "Rejected by fallback",
            )

        work = state.copy()
        warnings: List[str] = []

        if reply.delta is not None:
            try:
                staged = work.copy()
                apply_delta(staged, reply.delta)
            except DeltaRejected as e:
                _LOGGER.warning("Discarding fallback delta for %r: %s", line, e)
                warnings.append(f"Proposed configuration change discarded: {e}")
            else:
                work = staged

        if reply.hostname_change is not None:
            if valid_hostname(reply.hostname_change) and state.mode == Mode.GLOBAL_CONFIG:
                work.hostname = reply.hostname_change
            else:
                warnings.append(f"Proposed hostname {reply.hostname_change!r} discarded")

        if reply.mode_change is not None:
            try:
                apply_mode(work, reply.mode_change)
            except DeltaRejected as e:
                _LOGGER.warning("Discarding fallback mode change for %r: %s", line, e)
                warnings.append(f"Proposed mode change discarded: {e}")

        res = applied(state, work, reply.output)
        res.warnings.extend(warnings)
        return res


def apply_mode(state: DeviceConfig, target: ModeTarget) -> None:
    dst = Mode.parse(target.mode)
    if not is_legal_transition(state.mode, dst):
        raise DeltaRejected(f"{state.mode.value} -> {dst.value} is not a legal transition")

    if dst == Mode.INTERFACE_CONFIG:
        name = normalize_ifname(target.interface or "")
        if name is None or name not in state.interfaces:
            raise DeltaRejected(f"unknown interface {target.interface!r}")
        state.mode, state.context = dst, InterfaceContext(name)
    elif dst == Mode.VLAN_CONFIG:
        if target.vlan_id is None or not valid_vlan_id(target.vlan_id):
            raise DeltaRejected(f"bad VLAN id {target.vlan_id!r}")
        state.ensure_vlan(int(target.vlan_id))
        state.mode, state.context = dst, VlanContext(int(target.vlan_id))
    elif dst == Mode.ROUTER_CONFIG:
        if target.protocol is None:
            raise DeltaRejected("router-config needs a protocol")
        pid = None
        if target.protocol != "rip":
            if not (target.process_id or "").isdigit():
                raise DeltaRejected(f"bad process id {target.process_id!r}")
            pid = str(int(target.process_id))
        proc = RoutingProcess(protocol=target.protocol, process_id=pid)
        state.routing.setdefault(proc.key(), proc)
        state.mode, state.context = dst, RouterContext(target.protocol, pid)
    elif dst != state.mode:
        state.mode, state.context = dst, None


def _run_check(check, *args) -> None:
    """Run one of the CLI address checks, reporting failure as DeltaRejected."""
    try:
        check(*args)
    except AddressError as e:
        raise DeltaRejected(str(e)) from e


def apply_delta(state: DeviceConfig, delta: StateDelta) -> None:
    """Apply a delta in place; raises DeltaRejected on the first violation."""
    for d in delta.interfaces:
        name = normalize_ifname(d.name)
        if name is None or name not in state.interfaces:
            raise DeltaRejected(f"unknown interface {d.name!r}")
        itf = state.interfaces[name]
        if d.clear_ip:
            itf.ip, itf.mask = None, None
        if d.ip is not None or d.mask is not None:
            if itf.switchport_mode:
                raise DeltaRejected(f"{name} is a switchport")
            _run_check(check_interface_address, state, name, d.ip or "", d.mask or "")
            itf.ip, itf.mask = d.ip, d.mask
        if d.admin_up is not None:
            itf.admin_up = d.admin_up
        if d.description is not None:
            itf.description = d.description or None

    for v in delta.vlans:
        if not valid_vlan_id(v.vlan_id):
            raise DeltaRejected(f"VLAN id {v.vlan_id} out of range")
        if v.remove:
            if v.vlan_id == 1:
                raise DeltaRejected("VLAN 1 cannot be removed")
            state.vlans.pop(v.vlan_id, None)
            continue
        vlan = state.ensure_vlan(v.vlan_id)
        if v.name:
            vlan.name = v.name

    for r in delta.static_routes:
        _run_check(check_route_prefix, r.network, r.mask)
        exit_if = None
        if r.interface is not None:
            exit_if = normalize_ifname(r.interface)
            if exit_if is None or exit_if not in state.interfaces:
                raise DeltaRejected(f"unknown interface {r.interface!r}")
        if r.remove:
            state.routes = [
                x
                for x in state.routes
                if not (x.source == "static" and x.network == r.network and x.mask == r.mask)
            ]
            continue
        if r.next_hop is None and exit_if is None:
            raise DeltaRejected(f"route {r.network} {r.mask} has neither next hop nor interface")
        if r.next_hop is not None:
            _run_check(check_next_hop, state, r.next_hop)
        route = Route(network=r.network, mask=r.mask, source="static", next_hop=r.next_hop, interface=exit_if)
        if not any(x.source == "static" and x.key() == route.key() for x in state.routes):
            state.routes.append(route)

    refresh_local_routes(state)
    problems = state.check_invariants()
    if problems:
        raise DeltaRejected("; ".join(problems))


def default_resolver(settings: Optional[FallbackSettings] = None) -> FallbackResolver:
    settings = settings or FallbackSettings.from_env()
    if not settings.enabled:
        _LOGGER.info("OPENAI_API_KEY is not set; generative fallback disabled")
        return FallbackResolver(None)
    return FallbackResolver(OpenAISynthesizer(settings))
