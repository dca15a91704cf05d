from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union
import copy
import ipaddress
import re


class Mode(str, Enum):
    USER = "user"
    PRIVILEGED = "privileged"
    GLOBAL_CONFIG = "global-config"
    INTERFACE_CONFIG = "interface-config"
    VLAN_CONFIG = "vlan-config"
    ROUTER_CONFIG = "router-config"

    @classmethod
    def parse(cls, value) -> "Mode":
        if isinstance(value, Mode):
            return value
        text = str(value or "").strip().lower().replace("_", "-")
        for m in cls:
            if m.value == text:
                return m
        raise ValueError(f"Unknown mode: {value!r}")


ROUTE_SOURCES = ("static", "connected", "dynamic")
ROUTING_PROTOCOLS = ("ospf", "rip", "eigrp")

VLAN_MIN = 1
VLAN_MAX = 4094


def norm_hostname(name: str) -> str:
    return (name or "").strip()


def valid_hostname(name: str) -> bool:
    # IOS: letters, digits, hyphens; must start with a letter; max 63 chars.
    return bool(re.match(r"^[A-Za-z][A-Za-z0-9_-]{0,62}$", name or ""))


def valid_vlan_id(vid) -> bool:
    try:
        v = int(vid)
    except (TypeError, ValueError):
        return False
    return VLAN_MIN <= v <= VLAN_MAX


def parse_ipv4(text: str) -> Optional[ipaddress.IPv4Address]:
    try:
        return ipaddress.IPv4Address((text or "").strip())
    except (ipaddress.AddressValueError, ValueError):
        return None


def mask_prefixlen(mask: str) -> Optional[int]:
    """Prefix length for a dotted netmask, or None if it is not contiguous."""
    if parse_ipv4(mask) is None:
        return None
    try:
        return ipaddress.IPv4Network(f"0.0.0.0/{mask}").prefixlen
    except (ipaddress.NetmaskValueError, ValueError):
        return None


def network_of(ip: str, mask: str) -> Optional[ipaddress.IPv4Network]:
    try:
        return ipaddress.IPv4Interface(f"{ip}/{mask}").network
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError):
        return None


class AddressError(ValueError):
    """An address or prefix the device refuses; the message is the IOS error text."""


def check_route_prefix(network: str, mask: str) -> ipaddress.IPv4Network:
    if parse_ipv4(network) is None or mask_prefixlen(mask) is None:
        raise AddressError(f"bad prefix {network!r} {mask!r}")
    net = ipaddress.IPv4Network(f"{network}/{mask}", strict=False)
    if str(net.network_address) != network:
        raise AddressError("%Inconsistent address and mask")
    return net


def check_next_hop(cfg: "DeviceConfig", next_hop: str) -> None:
    if parse_ipv4(next_hop) is None:
        raise AddressError(f"bad next hop {next_hop!r}")
    if any(itf.ip == next_hop for itf in cfg.interfaces.values()):
        raise AddressError("%Invalid next hop address (it's this router)")


def check_interface_address(cfg: "DeviceConfig", ifname: str, ip: str, mask: str) -> ipaddress.IPv4Network:
    """Validate ``ip mask`` for ``ifname`` against the rest of the device."""
    if parse_ipv4(ip) is None or parse_ipv4(mask) is None:
        raise AddressError(f"bad address {ip!r} {mask!r}")
    plen = mask_prefixlen(mask)
    if plen is None:
        raise AddressError(f"Bad mask 0x{int(ipaddress.IPv4Address(mask)):08X} for address {ip}")
    if plen == 0:
        raise AddressError(f"Bad mask /0 for address {ip}")
    net = ipaddress.IPv4Interface(f"{ip}/{mask}").network
    if plen < 31 and ipaddress.IPv4Address(ip) in (net.network_address, net.broadcast_address):
        raise AddressError(f"Bad mask /{plen} for address {ip}")
    for other in cfg.interfaces.values():
        if other.name == ifname:
            continue
        onet = other.network()
        if onet is not None and onet.overlaps(net):
            raise AddressError(f"% {net.network_address} overlaps with {other.name}")
    return net


# ───────────────────────────── Mode sub-states ─────────────────────────────


@dataclass(frozen=True)
class InterfaceContext:
    name: str


@dataclass(frozen=True)
class VlanContext:
    vlan_id: int


@dataclass(frozen=True)
class RouterContext:
    protocol: str  # ospf|rip|eigrp
    process_id: Optional[str] = None


ModeContext = Union[InterfaceContext, VlanContext, RouterContext]

_CONTEXT_FOR_MODE = {
    Mode.INTERFACE_CONFIG: InterfaceContext,
    Mode.VLAN_CONFIG: VlanContext,
    Mode.ROUTER_CONFIG: RouterContext,
}


def context_matches(mode: Mode, context: Optional[ModeContext]) -> bool:
    expected = _CONTEXT_FOR_MODE.get(mode)
    if expected is None:
        return context is None
    return isinstance(context, expected)


# ───────────────────────────── Config records ─────────────────────────────


@dataclass
class Interface:
    name: str
    admin_up: bool = False
    ip: Optional[str] = None
    mask: Optional[str] = None
    description: Optional[str] = None

    # L2
    switchport_mode: Optional[str] = None  # access|trunk
    vlan: Optional[int] = None

    # ACL
    acl_in: Optional[str] = None
    acl_out: Optional[str] = None

    def has_ip(self) -> bool:
        return bool(self.ip and self.mask)

    def network(self) -> Optional[ipaddress.IPv4Network]:
        if not self.has_ip():
            return None
        return network_of(self.ip, self.mask)


@dataclass
class Vlan:
    vlan_id: int
    name: str
    active: bool = True


@dataclass
class Route:
    network: str
    mask: str
    source: str  # static|connected|dynamic
    next_hop: Optional[str] = None
    interface: Optional[str] = None
    hops: int = 0
    via: Optional[str] = None  # advertising device id (dynamic only)

    def prefix(self) -> Optional[ipaddress.IPv4Network]:
        try:
            return ipaddress.IPv4Network(f"{self.network}/{self.mask}", strict=False)
        except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError):
            return None

    def key(self) -> Tuple[str, str, Optional[str], Optional[str]]:
        return (self.network, self.mask, self.next_hop, self.interface)


@dataclass
class AclEntry:
    acl_id: str
    action: str  # permit|deny
    protocol: str  # ip|icmp|tcp|udp ("ip" for standard lists)
    source: str  # any | host x.x.x.x | x.x.x.x wildcard
    destination: Optional[str] = None  # extended lists only

    def render(self) -> str:
        parts = [f"access-list {self.acl_id}", self.action]
        if self.destination is not None:
            parts.extend([self.protocol, self.source, self.destination])
        else:
            parts.append(self.source)
        return " ".join(parts)


@dataclass
class RoutingProcess:
    protocol: str
    process_id: Optional[str] = None
    networks: List[str] = field(default_factory=list)
    router_id: Optional[str] = None
    version: Optional[int] = None
    auto_summary: bool = False

    def key(self) -> str:
        return f"{self.protocol} {self.process_id}" if self.process_id else self.protocol


# ───────────────────────────── Device configuration ─────────────────────────────


ROUTER_INTERFACES = [
    "GigabitEthernet0/0",
    "GigabitEthernet0/1",
    "GigabitEthernet0/2",
    "Serial0/0/0",
    "Serial0/0/1",
]

SWITCH_INTERFACES = [f"FastEthernet0/{n}" for n in range(1, 25)] + [
    "GigabitEthernet0/1",
    "GigabitEthernet0/2",
]


@dataclass
class DeviceConfig:
    hostname: str = "Router"
    kind: str = "router"  # router|switch
    mode: Mode = Mode.USER
    context: Optional[ModeContext] = None
    interfaces: Dict[str, Interface] = field(default_factory=dict)
    vlans: Dict[int, Vlan] = field(default_factory=lambda: {1: Vlan(1, "default")})
    routes: List[Route] = field(default_factory=list)
    acl_entries: List[AclEntry] = field(default_factory=list)
    routing: Dict[str, RoutingProcess] = field(default_factory=dict)
    prompt: str = ""

    def __post_init__(self):
        self.mode = Mode.parse(self.mode)
        if not norm_hostname(self.hostname):
            raise ValueError("hostname must be a non-empty string")
        if not context_matches(self.mode, self.context):
            raise ValueError(f"Mode {self.mode.value} does not accept context {self.context!r}")

    def copy(self) -> "DeviceConfig":
        return copy.deepcopy(self)

    @property
    def current_interface(self) -> Optional[Interface]:
        if isinstance(self.context, InterfaceContext):
            return self.interfaces.get(self.context.name)
        return None

    def ensure_vlan(self, vid: int) -> Vlan:
        if vid not in self.vlans:
            self.vlans[vid] = Vlan(vid, f"VLAN{vid:04d}")
        return self.vlans[vid]

    def routes_by_source(self, source: str) -> List[Route]:
        return [r for r in self.routes if r.source == source]

    def acl_ids(self) -> List[str]:
        seen: List[str] = []
        for e in self.acl_entries:
            if e.acl_id not in seen:
                seen.append(e.acl_id)
        return seen

    def check_invariants(self) -> List[str]:
        """Return a list of invariant violations (empty when the config is consistent)."""
        problems: List[str] = []
        for r in self.routes:
            if r.source not in ROUTE_SOURCES:
                problems.append(f"route {r.network}/{r.mask} has unknown source {r.source!r}")
            if r.interface is not None and r.interface not in self.interfaces:
                problems.append(f"route {r.network}/{r.mask} references missing interface {r.interface}")
        for vid in self.vlans:
            if not valid_vlan_id(vid):
                problems.append(f"VLAN id {vid} out of range")
        if isinstance(self.context, InterfaceContext) and self.context.name not in self.interfaces:
            problems.append(f"current interface {self.context.name} does not exist")
        return problems

    # ───────────────────────────── Serialization ─────────────────────────────

    def to_dict(self) -> dict:
        ctx = None
        if isinstance(self.context, InterfaceContext):
            ctx = {"type": "interface", "name": self.context.name}
        elif isinstance(self.context, VlanContext):
            ctx = {"type": "vlan", "vlan_id": self.context.vlan_id}
        elif isinstance(self.context, RouterContext):
            ctx = {"type": "router", "protocol": self.context.protocol, "process_id": self.context.process_id}
        return {
            "hostname": self.hostname,
            "kind": self.kind,
            "mode": self.mode.value,
            "context": ctx,
            "prompt": self.prompt,
            "interfaces": {
                ifn: {
                    "admin_up": i.admin_up,
                    "ip": i.ip,
                    "mask": i.mask,
                    "description": i.description,
                    "switchport_mode": i.switchport_mode,
                    "vlan": i.vlan,
                    "acl_in": i.acl_in,
                    "acl_out": i.acl_out,
                }
                for ifn, i in self.interfaces.items()
            },
            "vlans": {str(vid): {"name": v.name, "active": v.active} for vid, v in sorted(self.vlans.items())},
            "routes": [
                {
                    "network": r.network,
                    "mask": r.mask,
                    "source": r.source,
                    "next_hop": r.next_hop,
                    "interface": r.interface,
                    "hops": r.hops,
                    "via": r.via,
                }
                for r in self.routes
            ],
            "acl_entries": [
                {
                    "acl_id": e.acl_id,
                    "action": e.action,
                    "protocol": e.protocol,
                    "source": e.source,
                    "destination": e.destination,
                }
                for e in self.acl_entries
            ],
            "routing": [
                {
                    "protocol": p.protocol,
                    "process_id": p.process_id,
                    "networks": list(p.networks),
                    "router_id": p.router_id,
                    "version": p.version,
                    "auto_summary": p.auto_summary,
                }
                for p in self.routing.values()
            ],
        }

    @classmethod
    def from_dict(cls, cfg: dict) -> "DeviceConfig":
        if not isinstance(cfg, dict):
            raise ValueError("device config must be a mapping")

        kind = cfg.get("kind") if cfg.get("kind") in ("router", "switch") else "router"
        hostname = norm_hostname(str(cfg.get("hostname") or "")) or ("Switch" if kind == "switch" else "Router")

        interfaces: Dict[str, Interface] = {}
        raw_ifs = cfg.get("interfaces", {})
        if isinstance(raw_ifs, dict):
            for ifn, icfg in raw_ifs.items():
                if not isinstance(icfg, dict):
                    continue
                vlan = icfg.get("vlan")
                interfaces[str(ifn)] = Interface(
                    name=str(ifn),
                    admin_up=bool(icfg.get("admin_up", False)),
                    ip=icfg.get("ip") or None,
                    mask=icfg.get("mask") or None,
                    description=icfg.get("description") or None,
                    switchport_mode=icfg.get("switchport_mode") or None,
                    vlan=int(vlan) if vlan is not None else None,
                    acl_in=icfg.get("acl_in") or None,
                    acl_out=icfg.get("acl_out") or None,
                )

        vlans: Dict[int, Vlan] = {1: Vlan(1, "default")}
        raw_vlans = cfg.get("vlans")
        if isinstance(raw_vlans, dict):
            for k, v in raw_vlans.items():
                if not valid_vlan_id(k):
                    continue
                vid = int(k)
                if isinstance(v, dict):
                    vlans[vid] = Vlan(vid, str(v.get("name") or f"VLAN{vid:04d}"), bool(v.get("active", True)))
                else:
                    vlans[vid] = Vlan(vid, str(v))

        routes: List[Route] = []
        for r in cfg.get("routes") or []:
            if not isinstance(r, dict) or r.get("source") not in ROUTE_SOURCES:
                continue
            ifn = r.get("interface")
            if ifn is not None and ifn not in interfaces:
                continue
            routes.append(
                Route(
                    network=str(r.get("network")),
                    mask=str(r.get("mask")),
                    source=r["source"],
                    next_hop=r.get("next_hop"),
                    interface=ifn,
                    hops=int(r.get("hops", 0)),
                    via=r.get("via"),
                )
            )

        acl_entries: List[AclEntry] = []
        for e in cfg.get("acl_entries") or []:
            if not isinstance(e, dict):
                continue
            acl_entries.append(
                AclEntry(
                    acl_id=str(e.get("acl_id")),
                    action=str(e.get("action", "deny")),
                    protocol=str(e.get("protocol", "ip")),
                    source=str(e.get("source", "any")),
                    destination=e.get("destination"),
                )
            )

        routing: Dict[str, RoutingProcess] = {}
        for p in cfg.get("routing") or []:
            if not isinstance(p, dict) or p.get("protocol") not in ROUTING_PROTOCOLS:
                continue
            proc = RoutingProcess(
                protocol=p["protocol"],
                process_id=p.get("process_id"),
                networks=[str(n) for n in p.get("networks") or []],
                router_id=p.get("router_id"),
                version=p.get("version"),
                auto_summary=bool(p.get("auto_summary", False)),
            )
            routing[proc.key()] = proc

        mode = Mode.parse(cfg.get("mode") or Mode.USER)
        context = _context_from_dict(cfg.get("context"))
        if not context_matches(mode, context):
            # A stale nested mode without its sub-state cannot be resumed.
            mode, context = Mode.GLOBAL_CONFIG if mode in _CONTEXT_FOR_MODE else mode, None
        if isinstance(context, InterfaceContext) and context.name not in interfaces:
            mode, context = Mode.GLOBAL_CONFIG, None

        return cls(
            hostname=hostname,
            kind=kind,
            mode=mode,
            context=context,
            interfaces=interfaces,
            vlans=vlans,
            routes=routes,
            acl_entries=acl_entries,
            routing=routing,
            prompt=str(cfg.get("prompt") or ""),
        )


def _context_from_dict(raw) -> Optional[ModeContext]:
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "interface" and raw.get("name"):
        return InterfaceContext(str(raw["name"]))
    if kind == "vlan" and valid_vlan_id(raw.get("vlan_id")):
        return VlanContext(int(raw["vlan_id"]))
    if kind == "router" and raw.get("protocol") in ROUTING_PROTOCOLS:
        pid = raw.get("process_id")
        return RouterContext(str(raw["protocol"]), str(pid) if pid is not None else None)
    return None


def default_config(kind: str = "router", hostname: Optional[str] = None) -> DeviceConfig:
    """Factory-fresh device: user mode, all hardware interfaces shut and unaddressed."""
    kind = (kind or "router").lower()
    if kind not in ("router", "switch"):
        kind = "router"
    names = SWITCH_INTERFACES if kind == "switch" else ROUTER_INTERFACES
    cfg = DeviceConfig(
        hostname=norm_hostname(hostname or "") or ("Switch" if kind == "switch" else "Router"),
        kind=kind,
    )
    for n in names:
        itf = Interface(name=n)
        if kind == "switch" and n.startswith("FastEthernet"):
            # Switchports ship enabled in access VLAN 1.
            itf.admin_up = True
            itf.switchport_mode = "access"
            itf.vlan = 1
        cfg.interfaces[n] = itf
    return cfg
