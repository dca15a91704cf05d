from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import copy
import ipaddress
import logging

from .grammar import normalize_ifname
from .state import DeviceConfig, Route, default_config


_LOGGER = logging.getLogger(__name__)


def _norm_uid(uid: str) -> str:
    return (uid or "").strip()


@dataclass(frozen=True)
class LinkEnd:
    device: str
    interface: str


@dataclass
class Link:
    link_id: str
    a: LinkEnd
    b: LinkEnd
    up: bool = False

    def end_for(self, uid: str) -> Optional[LinkEnd]:
        if self.a.device == uid:
            return self.a
        if self.b.device == uid:
            return self.b
        return None

    def other(self, end: LinkEnd) -> LinkEnd:
        return self.b if end == self.a else self.a


@dataclass
class Topology:
    """Arena of device configurations indexed by id, plus an undirected edge list.

    Devices never hold references to links or to each other; adjacency is
    always derived from ``links``.
    """

    devices: Dict[str, DeviceConfig] = field(default_factory=dict)
    links: List[Link] = field(default_factory=list)

    # Outcome of the last convergence run.
    converged: bool = True
    iterations: int = 0
    warnings: List[str] = field(default_factory=list)

    def copy(self) -> "Topology":
        return copy.deepcopy(self)

    # ───────────────────────────── Devices / Links ─────────────────────────────

    def add_device(self, uid: str, config: Optional[DeviceConfig] = None, kind: str = "router") -> DeviceConfig:
        uid = _norm_uid(uid)
        if not uid:
            raise ValueError("device id must be non-empty")
        if uid in self.devices:
            raise ValueError(f"Duplicate device id: {uid}")
        self.devices[uid] = config if config is not None else default_config(kind, hostname=uid)
        return self.devices[uid]

    def connect(self, a_uid: str, a_if: str, b_uid: str, b_if: str) -> str:
        a_uid = _norm_uid(a_uid)
        b_uid = _norm_uid(b_uid)
        if a_uid not in self.devices or b_uid not in self.devices:
            raise KeyError("Unknown device")

        a_name = normalize_ifname(a_if) or a_if
        b_name = normalize_ifname(b_if) or b_if
        for uid, ifn in ((a_uid, a_name), (b_uid, b_name)):
            if ifn not in self.devices[uid].interfaces:
                raise KeyError(f"Unknown interface {ifn} on {uid}")
            if self.link_for(uid, ifn) is not None:
                raise ValueError(f"{uid} {ifn} is already connected")

        n = 1
        existing = {l.link_id for l in self.links}
        while f"L{n}" in existing:
            n += 1
        link_id = f"L{n}"
        self.links.append(Link(link_id=link_id, a=LinkEnd(a_uid, a_name), b=LinkEnd(b_uid, b_name)))
        return link_id

    def remove_link(self, link_id: str):
        self.links = [l for l in self.links if l.link_id != link_id]

    def link_for(self, uid: str, ifname: str) -> Optional[Link]:
        for l in self.links:
            if (l.a.device == uid and l.a.interface == ifname) or (l.b.device == uid and l.b.interface == ifname):
                return l
        return None

    def neighbors(self, uid: str) -> List[Tuple[str, LinkEnd, LinkEnd, bool]]:
        """(link_id, local_end, remote_end, up) for every link touching ``uid``, sorted by local interface."""
        out = []
        for l in self.links:
            local = l.end_for(uid)
            if local is None:
                continue
            out.append((l.link_id, local, l.other(local), l.up))
        out.sort(key=lambda t: (t[1].interface, t[2].device, t[2].interface))
        return out

    # ───────────────────────────── Serialization ─────────────────────────────

    def to_dict(self) -> dict:
        return {
            "devices": {uid: cfg.to_dict() for uid, cfg in self.devices.items()},
            "links": [
                {
                    "id": l.link_id,
                    "a": {"device": l.a.device, "interface": l.a.interface},
                    "b": {"device": l.b.device, "interface": l.b.interface},
                    "up": l.up,
                }
                for l in self.links
            ],
            "converged": self.converged,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Topology":
        if not isinstance(data, dict):
            raise ValueError("topology must be a mapping")
        topo = cls()
        for uid, cfg in (data.get("devices") or {}).items():
            topo.devices[_norm_uid(uid)] = DeviceConfig.from_dict(cfg)
        for i, raw in enumerate(data.get("links") or []):
            if not isinstance(raw, dict):
                continue
            a, b = raw.get("a") or {}, raw.get("b") or {}
            try:
                a_end = LinkEnd(_norm_uid(a["device"]), str(a["interface"]))
                b_end = LinkEnd(_norm_uid(b["device"]), str(b["interface"]))
            except (KeyError, TypeError):
                _LOGGER.warning("Dropping malformed link #%d", i)
                continue
            if a_end.device not in topo.devices or b_end.device not in topo.devices:
                _LOGGER.warning("Dropping link #%d to unknown device", i)
                continue
            topo.links.append(Link(str(raw.get("id") or f"L{i + 1}"), a_end, b_end, bool(raw.get("up", False))))
        topo.converged = bool(data.get("converged", True))
        topo.warnings = [str(w) for w in data.get("warnings") or []]
        return topo


# ───────────────────────────── Convergence ─────────────────────────────


def _interface_network(cfg: DeviceConfig, ifname: str) -> Optional[ipaddress.IPv4Network]:
    itf = cfg.interfaces.get(ifname)
    if itf is None or not itf.admin_up:
        return None
    return itf.network()


def _link_is_up(topology: Topology, link: Link) -> bool:
    a_cfg = topology.devices.get(link.a.device)
    b_cfg = topology.devices.get(link.b.device)
    if a_cfg is None or b_cfg is None:
        return False
    a_net = _interface_network(a_cfg, link.a.interface)
    b_net = _interface_network(b_cfg, link.b.interface)
    if a_net is None or b_net is None or a_net != b_net:
        return False
    # Duplicate address on both ends never forms an adjacency.
    return a_cfg.interfaces[link.a.interface].ip != b_cfg.interfaces[link.b.interface].ip


def connected_routes(cfg: DeviceConfig) -> List[Route]:
    out: List[Route] = []
    for ifn in sorted(cfg.interfaces):
        net = _interface_network(cfg, ifn)
        if net is None:
            continue
        out.append(
            Route(
                network=str(net.network_address),
                mask=str(net.netmask),
                source="connected",
                interface=ifn,
            )
        )
    return out


def refresh_local_routes(cfg: DeviceConfig) -> None:
    """Recompute connected routes of a single device in place.

    Dynamic routes survive only while their exit interface is still up and
    addressed; static routes are never touched.
    """
    live = {r.interface for r in connected_routes(cfg)}
    kept = [
        r
        for r in cfg.routes
        if r.source == "static" or (r.source == "dynamic" and r.interface in live)
    ]
    cfg.routes = connected_routes(cfg) + kept
    sort_routes(cfg)


def sort_routes(cfg: DeviceConfig) -> None:
    order = {"connected": 0, "static": 1, "dynamic": 2}

    def key(r: Route):
        pfx = r.prefix()
        return (
            int(pfx.network_address) if pfx else 0,
            -(pfx.prefixlen if pfx else 0),
            order.get(r.source, 3),
            r.next_hop or "",
            r.interface or "",
        )

    cfg.routes.sort(key=key)


# Candidate dynamic route: (hops, via_device, local_if, next_hop_ip)
_Candidate = Tuple[int, str, str, str]


def _advertised(cfg: DeviceConfig, table: Dict[Tuple[str, str], _Candidate]) -> Dict[Tuple[str, str], int]:
    """Prefixes a device announces to its neighbors with their hop count."""
    adv: Dict[Tuple[str, str], int] = {}
    for r in connected_routes(cfg):
        adv[(r.network, r.mask)] = 0
    for pfx, cand in table.items():
        adv.setdefault(pfx, cand[0])
    return adv


def converge(topology: Topology, max_iterations: Optional[int] = None) -> Topology:
    """Recompute link state and connected/dynamic routes for every device.

    Returns a new Topology; the input is not modified. Static routes, the
    device set and the link set are carried over unchanged.
    """
    topo = topology.copy()
    uids = sorted(topo.devices)
    bound = max_iterations if max_iterations is not None else max(1, len(uids))

    # 1. Link status.
    for link in topo.links:
        link.up = _link_is_up(topo, link)

    # 2-3. Clean slate: static routes plus fresh connected routes.
    owned: Dict[str, set] = {}
    blocked: Dict[str, set] = {}
    for uid in uids:
        cfg = topo.devices[uid]
        static = cfg.routes_by_source("static")
        conn = connected_routes(cfg)
        cfg.routes = conn + static
        owned[uid] = {(r.network, r.mask) for r in conn}
        blocked[uid] = owned[uid] | {(r.network, r.mask) for r in static}

    # Up adjacencies: uid -> [(local_if, neighbor_uid, neighbor_ip)]
    adjacency: Dict[str, List[Tuple[str, str, str]]] = {uid: [] for uid in uids}
    for link in topo.links:
        if not link.up:
            continue
        a_ip = topo.devices[link.a.device].interfaces[link.a.interface].ip
        b_ip = topo.devices[link.b.device].interfaces[link.b.interface].ip
        adjacency[link.a.device].append((link.a.interface, link.b.device, b_ip))
        adjacency[link.b.device].append((link.b.interface, link.a.device, a_ip))

    # 4. Synchronous distance-vector rounds.
    tables: Dict[str, Dict[Tuple[str, str], _Candidate]] = {uid: {} for uid in uids}
    converged = False
    iterations = 0
    while iterations < bound:
        iterations += 1
        adverts = {uid: _advertised(topo.devices[uid], tables[uid]) for uid in uids}
        new_tables: Dict[str, Dict[Tuple[str, str], _Candidate]] = {}
        for uid in uids:
            best: Dict[Tuple[str, str], _Candidate] = {}
            for local_if, nb_uid, nb_ip in adjacency[uid]:
                for pfx, hops in adverts[nb_uid].items():
                    if pfx in blocked[uid]:
                        continue
                    cand = (hops + 1, nb_uid, local_if, nb_ip)
                    # 5. Fewest hops, then next-hop device id, then local interface.
                    if pfx not in best or cand < best[pfx]:
                        best[pfx] = cand
            new_tables[uid] = best
        if new_tables == tables:
            converged = True
            break
        tables = new_tables

    for uid in uids:
        cfg = topo.devices[uid]
        for (network, mask), (hops, via, local_if, nh) in tables[uid].items():
            cfg.routes.append(
                Route(
                    network=network,
                    mask=mask,
                    source="dynamic",
                    next_hop=nh,
                    interface=local_if,
                    hops=hops,
                    via=via,
                )
            )
        sort_routes(cfg)

    topo.converged = converged
    topo.iterations = iterations
    topo.warnings = []
    if not converged:
        msg = f"% Routing did not converge within {bound} iterations; routes may be incomplete"
        topo.warnings.append(msg)
        _LOGGER.warning("Convergence bound of %d iterations reached over %d devices", bound, len(uids))
    return topo
