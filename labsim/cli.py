from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol
import logging
import shlex

from . import show
from .grammar import (
    INCOMPLETE_COMMAND,
    INVALID_INPUT,
    LOGICAL_TYPES,
    CLIError,
    NoMatch,
    expand_unique_prefix,
    match,
    next_mode,
    normalize_ifname,
    recognized_elsewhere,
    split_subinterface,
    usages,
)
from .state import (
    AclEntry,
    AddressError,
    DeviceConfig,
    Interface,
    InterfaceContext,
    Mode,
    ModeContext,
    Route,
    RouterContext,
    RoutingProcess,
    VlanContext,
    check_interface_address,
    check_next_hop,
    check_route_prefix,
    mask_prefixlen,
    parse_ipv4,
    valid_hostname,
    valid_vlan_id,
)
from .topology import Topology, refresh_local_routes, sort_routes


_LOGGER = logging.getLogger(__name__)

SYSTEM_ERROR = "% System error - please try again"


@dataclass
class CommandResult:
    valid: bool = True
    output: str = ""
    error: Optional[str] = None
    mode_change: Optional[Mode] = None
    hostname_change: Optional[str] = None
    # Full replacement state; when present it supersedes mode_change/hostname_change.
    new_state: Optional[DeviceConfig] = None
    warnings: List[str] = field(default_factory=list)


def rejected(message: str, error: Optional[str] = None) -> CommandResult:
    return CommandResult(valid=False, output=message, error=error or message)


def applied(before: DeviceConfig, after: DeviceConfig, output: str = "") -> CommandResult:
    """Successful result; carries the new state only when something changed."""
    res = CommandResult(valid=True, output=output or "")
    if after != before:
        res.new_state = after
        if after.mode != before.mode:
            res.mode_change = after.mode
        if after.hostname != before.hostname:
            res.hostname_change = after.hostname
    return res


class Resolver(Protocol):
    def resolve(self, state: DeviceConfig, line: str) -> CommandResult: ...


@dataclass
class _Exec:
    state: DeviceConfig  # working copy, mutated by handlers
    topology: Optional[Topology] = None
    device_id: Optional[str] = None


class CLIEngine:
    """Cisco-like CLI interpreter.

    Matches a line against the grammar of the device's current mode, applies
    the command to a copy of the configuration and returns a CommandResult.
    Lines outside the grammar go to the injected fallback resolver.
    """

    def __init__(self, resolver: Optional[Resolver] = None):
        self.resolver = resolver

    def interpret(
        self,
        state: DeviceConfig,
        line: str,
        topology: Optional[Topology] = None,
        device_id: Optional[str] = None,
    ) -> CommandResult:
        stripped = (line or "").rstrip("\n").strip()
        if stripped == "":
            return CommandResult()

        # Help
        if stripped == "?" or stripped.endswith(" ?"):
            prefix = stripped[:-1].strip()
            lines = usages(state.mode, prefix)
            return CommandResult(output="\n".join(lines) if lines else INVALID_INPUT, valid=bool(lines))

        try:
            argv = shlex.split(stripped)
        except ValueError:
            argv = stripped.split()

        ctx = _Exec(state=state.copy(), topology=topology, device_id=device_id)
        try:
            m = match(state.mode, argv)
        except NoMatch:
            if recognized_elsewhere(state.mode, argv):
                return rejected(INVALID_INPUT)
            return self._fallback(state, stripped)
        except CLIError as e:
            return rejected(str(e))

        handler = getattr(self, f"_cmd_{m.rule.handler}")
        try:
            out = handler(ctx, m.args)
        except NoMatch:
            return self._fallback(state, stripped)
        except CLIError as e:
            return rejected(str(e))
        except Exception:
            _LOGGER.exception("Handler %s failed for %r", m.rule.handler, stripped)
            return rejected(INVALID_INPUT)

        return applied(state, ctx.state, out)

    def _fallback(self, state: DeviceConfig, line: str) -> CommandResult:
        if self.resolver is None:
            return rejected(INVALID_INPUT, "Unrecognized command")
        try:
            return self.resolver.resolve(state, line)
        except Exception as e:
            _LOGGER.exception("Fallback resolver raised for %r", line)
            return rejected(SYSTEM_ERROR, f"Fallback resolver failed: {e}")

    # ───────────────────────────── Helpers ─────────────────────────────

    def _transition(self, ctx: _Exec, trigger: str, context: Optional[ModeContext] = None):
        ctx.state.mode = next_mode(ctx.state.mode, trigger)
        ctx.state.context = context

    def _no_args(self, args: List[str]):
        if args:
            raise CLIError(INVALID_INPUT)

    def _arity(self, args: List[str], n: int):
        if len(args) < n:
            raise CLIError(INCOMPLETE_COMMAND)
        if len(args) > n:
            raise CLIError(INVALID_INPUT)

    def _iface(self, ctx: _Exec) -> Interface:
        itf = ctx.state.current_interface
        if itf is None:
            raise CLIError(INVALID_INPUT)
        return itf

    def _process(self, ctx: _Exec) -> RoutingProcess:
        rc = ctx.state.context
        if not isinstance(rc, RouterContext):
            raise CLIError(INVALID_INPUT)
        key = f"{rc.protocol} {rc.process_id}" if rc.process_id else rc.protocol
        proc = ctx.state.routing.get(key)
        if proc is None:
            raise CLIError(INVALID_INPUT)
        return proc

    # ───────────────────────────── EXEC ─────────────────────────────

    def _cmd_enable(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._transition(ctx, "enable")
        return ""

    def _cmd_disable(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._transition(ctx, "disable")
        return ""

    def _cmd_configure_terminal(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._transition(ctx, "configure terminal")
        return "Enter configuration commands, one per line.  End with CNTL/Z."

    def _cmd_show_ip_interface_brief(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_ip_interface_brief(ctx.state)

    def _cmd_show_ip_route(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_ip_route(ctx.state)

    def _cmd_show_version(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_version(ctx.state)

    def _cmd_show_cdp_neighbors(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_cdp_neighbors(ctx.state, ctx.topology, ctx.device_id)

    def _cmd_show_running_config(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_running_config(ctx.state)

    def _cmd_show_vlan_brief(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_vlan_brief(ctx.state)

    def _cmd_show_access_lists(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        return show.show_access_lists(ctx.state)

    def _cmd_show_interfaces(self, ctx: _Exec, args: List[str]) -> str:
        if not args:
            return show.show_interfaces(ctx.state)
        name = normalize_ifname("".join(args))
        if name is None or name not in ctx.state.interfaces:
            raise CLIError(INVALID_INPUT)
        return show.show_interfaces(ctx.state, name)

    # ───────────────────────────── Nested-mode navigation ─────────────────────────────

    def _cmd_exit(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._transition(ctx, "exit")
        return ""

    def _cmd_end(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._transition(ctx, "end")
        return ""

    def _cmd_do(self, ctx: _Exec, args: List[str]) -> str:
        """IOS-like: run a show command from any config mode without leaving it."""
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        try:
            m = match(Mode.PRIVILEGED, args)
        except NoMatch:
            raise CLIError(INVALID_INPUT) from None
        if m.rule.keywords[0] != "show":
            raise CLIError(INVALID_INPUT)
        return getattr(self, f"_cmd_{m.rule.handler}")(ctx, m.args)

    # ───────────────────────────── Global config ─────────────────────────────

    def _cmd_hostname(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        name = args[0]
        if not valid_hostname(name):
            raise CLIError("% Hostname contains one or more illegal characters.")
        ctx.state.hostname = name
        return ""

    def _cmd_interface(self, ctx: _Exec, args: List[str]) -> str:
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        # "interface gig 0/0" is as valid as "interface gig0/0"
        name = normalize_ifname("".join(args))
        if name is None:
            raise CLIError(INVALID_INPUT)

        dev = ctx.state
        if name not in dev.interfaces:
            parent, sub = split_subinterface(name)
            if sub is not None:
                if parent not in dev.interfaces or dev.interfaces[parent].switchport_mode:
                    raise CLIError(INVALID_INPUT)
                dev.interfaces[name] = Interface(name=name, admin_up=True)
            elif name.startswith(LOGICAL_TYPES):
                # Loopbacks come up on creation; SVIs start shut.
                dev.interfaces[name] = Interface(name=name, admin_up=name.startswith("Loopback"))
            else:
                raise CLIError(INVALID_INPUT)

        self._transition(ctx, "interface", InterfaceContext(name))
        return ""

    def _parse_vlan_id(self, token: str) -> int:
        if not token.isdigit() or not valid_vlan_id(token):
            raise CLIError(INVALID_INPUT)
        return int(token)

    def _cmd_vlan(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        vid = self._parse_vlan_id(args[0])
        ctx.state.ensure_vlan(vid)
        self._transition(ctx, "vlan", VlanContext(vid))
        return ""

    def _cmd_no_vlan(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        vid = self._parse_vlan_id(args[0])
        if vid == 1:
            raise CLIError("%Default VLAN 1 may not be deleted.")
        ctx.state.vlans.pop(vid, None)
        return ""

    def _parse_router_args(self, args: List[str]) -> RouterContext:
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        proto = expand_unique_prefix(args[0], ["ospf", "rip", "eigrp"])
        if proto is None:
            # bgp, isis, ... are outside the simulated grammar
            raise NoMatch(" ".join(args))
        if proto == "rip":
            self._arity(args, 1)
            return RouterContext("rip")
        self._arity(args, 2)
        if not args[1].isdigit() or not 1 <= int(args[1]) <= 65535:
            raise CLIError(INVALID_INPUT)
        return RouterContext(proto, str(int(args[1])))

    def _cmd_router(self, ctx: _Exec, args: List[str]) -> str:
        rc = self._parse_router_args(args)
        proc = RoutingProcess(protocol=rc.protocol, process_id=rc.process_id)
        ctx.state.routing.setdefault(proc.key(), proc)
        self._transition(ctx, "router", rc)
        return ""

    def _cmd_no_router(self, ctx: _Exec, args: List[str]) -> str:
        rc = self._parse_router_args(args)
        key = f"{rc.protocol} {rc.process_id}" if rc.process_id else rc.protocol
        ctx.state.routing.pop(key, None)
        return ""

    def _parse_route_target(self, ctx: _Exec, token: str):
        """Return (next_hop, exit_interface) for the last token of ``ip route``."""
        if parse_ipv4(token) is not None:
            try:
                check_next_hop(ctx.state, token)
            except AddressError as e:
                raise CLIError(str(e)) from e
            return token, None
        name = normalize_ifname(token)
        if name is None or name not in ctx.state.interfaces:
            raise CLIError(INVALID_INPUT)
        return None, name

    def _parse_prefix(self, network: str, mask: str) -> None:
        if parse_ipv4(network) is None or mask_prefixlen(mask) is None:
            raise CLIError(INVALID_INPUT)
        try:
            check_route_prefix(network, mask)
        except AddressError as e:
            raise CLIError(str(e)) from e

    def _cmd_ip_route(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 3)
        network, mask, target = args
        self._parse_prefix(network, mask)
        next_hop, exit_if = self._parse_route_target(ctx, target)

        route = Route(network=network, mask=mask, source="static", next_hop=next_hop, interface=exit_if)
        if any(r.source == "static" and r.key() == route.key() for r in ctx.state.routes):
            return ""
        # A static route replaces a dynamic one for the same prefix.
        ctx.state.routes = [
            r
            for r in ctx.state.routes
            if not (r.source == "dynamic" and r.network == network and r.mask == mask)
        ]
        ctx.state.routes.append(route)
        sort_routes(ctx.state)
        return ""

    def _cmd_no_ip_route(self, ctx: _Exec, args: List[str]) -> str:
        if len(args) < 2:
            raise CLIError(INCOMPLETE_COMMAND)
        if len(args) > 3:
            raise CLIError(INVALID_INPUT)
        network, mask = args[0], args[1]
        self._parse_prefix(network, mask)
        target = args[2] if len(args) == 3 else None

        def doomed(r: Route) -> bool:
            if r.source != "static" or r.network != network or r.mask != mask:
                return False
            if target is None:
                return True
            return target in (r.next_hop, r.interface) or normalize_ifname(target) == r.interface

        kept = [r for r in ctx.state.routes if not doomed(r)]
        if len(kept) == len(ctx.state.routes):
            return "%No matching route to delete"
        ctx.state.routes = kept
        return ""

    def _parse_acl_address(self, tokens: List[str], i: int):
        """Consume an ACL address match at ``tokens[i]``; return (text, next_index)."""
        if i >= len(tokens):
            raise CLIError(INCOMPLETE_COMMAND)
        tok = tokens[i].lower()
        if tok == "any":
            return "any", i + 1
        if tok == "host":
            if i + 1 >= len(tokens):
                raise CLIError(INCOMPLETE_COMMAND)
            if parse_ipv4(tokens[i + 1]) is None:
                raise CLIError(INVALID_INPUT)
            return f"host {tokens[i + 1]}", i + 2
        if parse_ipv4(tokens[i]) is None:
            raise CLIError(INVALID_INPUT)
        if i + 1 < len(tokens) and parse_ipv4(tokens[i + 1]) is not None:
            return f"{tokens[i]} {tokens[i + 1]}", i + 2
        return f"host {tokens[i]}", i + 1

    def _cmd_access_list(self, ctx: _Exec, args: List[str]) -> str:
        if len(args) < 3:
            raise CLIError(INCOMPLETE_COMMAND)
        acl_id, action = args[0], args[1].lower()
        if not acl_id.isdigit() or not 1 <= int(acl_id) <= 199:
            raise CLIError(INVALID_INPUT)
        if action not in ("permit", "deny"):
            raise CLIError(INVALID_INPUT)

        extended = int(acl_id) >= 100
        if not extended:
            source, i = self._parse_acl_address(args, 2)
            if i != len(args):
                raise CLIError(INVALID_INPUT)
            entry = AclEntry(acl_id=acl_id, action=action, protocol="ip", source=source)
        else:
            proto = args[2].lower()
            if proto not in ("ip", "icmp", "tcp", "udp"):
                raise CLIError(INVALID_INPUT)
            source, i = self._parse_acl_address(args, 3)
            destination, i = self._parse_acl_address(args, i)
            rest = args[i:]
            if rest:
                if proto not in ("tcp", "udp") or len(rest) != 2 or rest[0].lower() != "eq":
                    raise CLIError(INVALID_INPUT)
                destination = f"{destination} eq {rest[1]}"
            entry = AclEntry(acl_id=acl_id, action=action, protocol=proto, source=source, destination=destination)

        existing = [e for e in ctx.state.acl_entries if e.acl_id == acl_id]
        if existing and (existing[0].destination is None) != (entry.destination is None):
            raise CLIError(INVALID_INPUT)
        ctx.state.acl_entries.append(entry)
        return ""

    def _cmd_no_access_list(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        ctx.state.acl_entries = [e for e in ctx.state.acl_entries if e.acl_id != args[0]]
        return ""

    # ───────────────────────────── Interface config ─────────────────────────────

    def _cmd_ip_address(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 2)
        itf = self._iface(ctx)
        if itf.switchport_mode:
            raise CLIError(INVALID_INPUT)
        ip, mask = args
        if parse_ipv4(ip) is None or parse_ipv4(mask) is None:
            raise CLIError(INVALID_INPUT)
        try:
            check_interface_address(ctx.state, itf.name, ip, mask)
        except AddressError as e:
            raise CLIError(str(e)) from e

        itf.ip, itf.mask = ip, mask
        refresh_local_routes(ctx.state)
        return ""

    def _cmd_no_ip_address(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        itf = self._iface(ctx)
        itf.ip, itf.mask = None, None
        refresh_local_routes(ctx.state)
        return ""

    def _cmd_shutdown(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        itf = self._iface(ctx)
        if not itf.admin_up:
            return ""
        itf.admin_up = False
        refresh_local_routes(ctx.state)
        return (
            f"%LINK-5-CHANGED: Interface {itf.name}, changed state to administratively down\n"
            f"%LINEPROTO-5-UPDOWN: Line protocol on Interface {itf.name}, changed state to down"
        )

    def _cmd_no_shutdown(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        itf = self._iface(ctx)
        if itf.admin_up:
            return ""
        itf.admin_up = True
        refresh_local_routes(ctx.state)
        return (
            f"%LINK-3-UPDOWN: Interface {itf.name}, changed state to up\n"
            f"%LINEPROTO-5-UPDOWN: Line protocol on Interface {itf.name}, changed state to up"
        )

    def _cmd_description(self, ctx: _Exec, args: List[str]) -> str:
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        self._iface(ctx).description = " ".join(args)
        return ""

    def _cmd_no_description(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._iface(ctx).description = None
        return ""

    def _switchport(self, ctx: _Exec) -> Interface:
        itf = self._iface(ctx)
        if ctx.state.kind != "switch" or itf.name.startswith(LOGICAL_TYPES):
            raise CLIError(INVALID_INPUT)
        return itf

    def _cmd_switchport_mode(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        itf = self._switchport(ctx)
        mode = expand_unique_prefix(args[0], ["access", "trunk"])
        if mode is None:
            raise CLIError(INVALID_INPUT)
        itf.switchport_mode = mode
        if mode == "access" and itf.vlan is None:
            itf.vlan = 1
        return ""

    def _cmd_switchport_access_vlan(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        itf = self._switchport(ctx)
        vid = self._parse_vlan_id(args[0])
        out = ""
        if vid not in ctx.state.vlans:
            ctx.state.ensure_vlan(vid)
            out = f"% Access VLAN does not exist. Creating vlan {vid}"
        itf.switchport_mode = itf.switchport_mode or "access"
        itf.vlan = vid
        return out

    def _cmd_ip_access_group(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 2)
        itf = self._iface(ctx)
        acl, direction = args[0], args[1].lower()
        if direction not in ("in", "out"):
            raise CLIError(INVALID_INPUT)
        if acl not in ctx.state.acl_ids():
            raise CLIError("% Access list not found")
        if direction == "in":
            itf.acl_in = acl
        else:
            itf.acl_out = acl
        return ""

    def _cmd_no_ip_access_group(self, ctx: _Exec, args: List[str]) -> str:
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        if len(args) > 2:
            raise CLIError(INVALID_INPUT)
        itf = self._iface(ctx)
        direction = args[-1].lower()
        if direction == "in":
            itf.acl_in = None
        elif direction == "out":
            itf.acl_out = None
        else:
            raise CLIError(INVALID_INPUT)
        return ""

    # ───────────────────────────── VLAN config ─────────────────────────────

    def _vlan(self, ctx: _Exec):
        vc = ctx.state.context
        if not isinstance(vc, VlanContext):
            raise CLIError(INVALID_INPUT)
        return ctx.state.ensure_vlan(vc.vlan_id)

    def _cmd_vlan_name(self, ctx: _Exec, args: List[str]) -> str:
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        vlan = self._vlan(ctx)
        name = " ".join(args)
        if vlan.vlan_id == 1:
            raise CLIError("%Default VLAN 1 may not have its name changed.")
        if len(name) > 32:
            raise CLIError(INVALID_INPUT)
        vlan.name = name
        return ""

    def _cmd_vlan_shutdown(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        vlan = self._vlan(ctx)
        if vlan.vlan_id == 1:
            raise CLIError("%Default VLAN 1 may not be shutdown.")
        vlan.active = False
        return ""

    def _cmd_vlan_no_shutdown(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        self._vlan(ctx).active = True
        return ""

    # ───────────────────────────── Router config ─────────────────────────────

    def _network_statement(self, proc: RoutingProcess, args: List[str]) -> str:
        if not args:
            raise CLIError(INCOMPLETE_COMMAND)
        if parse_ipv4(args[0]) is None:
            raise CLIError(INVALID_INPUT)
        if proc.protocol == "ospf":
            if len(args) < 4:
                raise CLIError(INCOMPLETE_COMMAND)
            if len(args) > 4 or parse_ipv4(args[1]) is None or args[2].lower() != "area":
                raise CLIError(INVALID_INPUT)
            if not args[3].isdigit() and parse_ipv4(args[3]) is None:
                raise CLIError(INVALID_INPUT)
            return f"{args[0]} {args[1]} area {args[3]}"
        if proc.protocol == "eigrp":
            if len(args) > 2 or (len(args) == 2 and parse_ipv4(args[1]) is None):
                raise CLIError(INVALID_INPUT)
            return " ".join(args)
        self._arity(args, 1)
        return args[0]

    def _cmd_network(self, ctx: _Exec, args: List[str]) -> str:
        proc = self._process(ctx)
        stmt = self._network_statement(proc, args)
        if stmt not in proc.networks:
            proc.networks.append(stmt)
        return ""

    def _cmd_no_network(self, ctx: _Exec, args: List[str]) -> str:
        proc = self._process(ctx)
        stmt = self._network_statement(proc, args)
        if stmt in proc.networks:
            proc.networks.remove(stmt)
        return ""

    def _cmd_router_id(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        proc = self._process(ctx)
        if proc.protocol == "rip" or parse_ipv4(args[0]) is None:
            raise CLIError(INVALID_INPUT)
        proc.router_id = args[0]
        return ""

    def _cmd_version(self, ctx: _Exec, args: List[str]) -> str:
        self._arity(args, 1)
        proc = self._process(ctx)
        if proc.protocol != "rip" or args[0] not in ("1", "2"):
            raise CLIError(INVALID_INPUT)
        proc.version = int(args[0])
        return ""

    def _cmd_auto_summary(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        proc = self._process(ctx)
        if proc.protocol == "ospf":
            raise CLIError(INVALID_INPUT)
        proc.auto_summary = True
        return ""

    def _cmd_no_auto_summary(self, ctx: _Exec, args: List[str]) -> str:
        self._no_args(args)
        proc = self._process(ctx)
        if proc.protocol == "ospf":
            raise CLIError(INVALID_INPUT)
        proc.auto_summary = False
        return ""
