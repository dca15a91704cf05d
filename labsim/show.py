from __future__ import annotations

from typing import List, Optional

from .state import DeviceConfig, Route, mask_prefixlen
from .topology import Topology


_DYNAMIC_CODES = {"ospf": "O", "rip": "R", "eigrp": "D"}
_AD = {"ospf": 110, "rip": 120, "eigrp": 90}


def _dynamic_protocol(cfg: DeviceConfig) -> str:
    for proto in ("ospf", "eigrp", "rip"):
        if any(p.protocol == proto for p in cfg.routing.values()):
            return proto
    return "rip"


def _cidr(r: Route) -> str:
    plen = mask_prefixlen(r.mask)
    return f"{r.network}/{plen if plen is not None else r.mask}"


def show_ip_interface_brief(cfg: DeviceConfig) -> str:
    lines = ["Interface                  IP-Address      OK? Method Status                Protocol"]
    for ifn in sorted(cfg.interfaces):
        itf = cfg.interfaces[ifn]
        ip = itf.ip if itf.ip else "unassigned"
        ok = "YES"
        method = "manual" if itf.ip else "unset"
        status = "up" if itf.admin_up else "administratively down"
        proto = "up" if itf.admin_up else "down"
        lines.append(f"{ifn:<26} {ip:<15} {ok:<3} {method:<6} {status:<21} {proto}")
    return "\n".join(lines)


def show_ip_route(cfg: DeviceConfig) -> str:
    proto = _dynamic_protocol(cfg)
    code = _DYNAMIC_CODES[proto]
    lines = [
        "Codes: C - connected, S - static, R - RIP, D - EIGRP, O - OSPF",
        "",
    ]
    default = next((r for r in cfg.routes if r.network == "0.0.0.0" and r.mask == "0.0.0.0"), None)
    if default is not None and default.next_hop:
        lines.append(f"Gateway of last resort is {default.next_hop} to network 0.0.0.0")
    else:
        lines.append("Gateway of last resort is not set")
    lines.append("")
    for r in cfg.routes:
        if r.source == "connected":
            lines.append(f"C        {_cidr(r)} is directly connected, {r.interface}")
        elif r.source == "static":
            star = "*" if r.network == "0.0.0.0" and r.mask == "0.0.0.0" else " "
            if r.next_hop:
                lines.append(f"S{star}       {_cidr(r)} [1/0] via {r.next_hop}")
            else:
                lines.append(f"S{star}       {_cidr(r)} is directly connected, {r.interface}")
        else:
            lines.append(f"{code}        {_cidr(r)} [{_AD[proto]}/{r.hops}] via {r.next_hop}, {r.interface}")
    return "\n".join(lines)


def show_version(cfg: DeviceConfig) -> str:
    platform = "C2960" if cfg.kind == "switch" else "C2900"
    return "\n".join(
        [
            f"Cisco IOS Software, {platform} Software, Version 15.1(4)M4, RELEASE SOFTWARE (fc1)",
            "",
            f"{cfg.hostname} uptime is 1 hour, 0 minutes",
            f"cisco {platform} processor with 491520K/32768K bytes of memory.",
            f"{len(cfg.interfaces)} interfaces",
            "Configuration register is 0x2102",
        ]
    )


def show_cdp_neighbors(cfg: DeviceConfig, topology: Optional[Topology] = None, device_id: Optional[str] = None) -> str:
    lines = [
        "Capability Codes: R - Router, S - Switch",
        "",
        "Device ID        Local Intrfce     Holdtme    Capability  Platform  Port ID",
    ]
    if topology is None or device_id is None:
        return "\n".join(lines)
    for _lid, local, remote, _up in topology.neighbors(device_id):
        local_itf = cfg.interfaces.get(local.interface)
        peer = topology.devices.get(remote.device)
        peer_itf = peer.interfaces.get(remote.interface) if peer else None
        # CDP needs the physical layer up on both ends, not an L3 adjacency.
        if peer is None or local_itf is None or peer_itf is None:
            continue
        if not (local_itf.admin_up and peer_itf.admin_up):
            continue
        cap = "S" if peer.kind == "switch" else "R"
        platform = "C2960" if peer.kind == "switch" else "C2900"
        lines.append(
            f"{peer.hostname:<16} {_short_ifname(local.interface):<17} {'150':<10} {cap:<11} {platform:<9} {_short_ifname(remote.interface)}"
        )
    return "\n".join(lines)


def _short_ifname(ifname: str) -> str:
    for full, short in (
        ("GigabitEthernet", "Gig "),
        ("FastEthernet", "Fas "),
        ("Serial", "Ser "),
        ("Loopback", "Lo"),
    ):
        if ifname.startswith(full):
            return short + ifname[len(full):]
    return ifname


def _port_name(ifname: str) -> str:
    for full, short in (("GigabitEthernet", "Gi"), ("FastEthernet", "Fa")):
        if ifname.startswith(full):
            return short + ifname[len(full):]
    return ifname


def show_vlan_brief(cfg: DeviceConfig) -> str:
    lines = [
        "VLAN Name                             Status    Ports",
        "---- -------------------------------- --------- -------------------------------",
    ]
    for vid in sorted(cfg.vlans):
        vlan = cfg.vlans[vid]
        ports = sorted(
            _port_name(ifn)
            for ifn, itf in cfg.interfaces.items()
            if itf.switchport_mode == "access" and itf.vlan == vid
        )
        status = "active" if vlan.active else "act/lshut"
        lines.append(f"{vid:<4} {vlan.name:<32} {status:<9} {', '.join(ports)}")
    return "\n".join(lines)


def show_access_lists(cfg: DeviceConfig) -> str:
    lines: List[str] = []
    for acl_id in cfg.acl_ids():
        entries = [e for e in cfg.acl_entries if e.acl_id == acl_id]
        kind = "Extended" if entries and entries[0].destination is not None else "Standard"
        lines.append(f"{kind} IP access list {acl_id}")
        for idx, e in enumerate(entries, start=1):
            if e.destination is not None:
                lines.append(f"    {idx * 10} {e.action} {e.protocol} {e.source} {e.destination}")
            else:
                lines.append(f"    {idx * 10} {e.action} {e.source}")
    return "\n".join(lines)


def show_interfaces(cfg: DeviceConfig, ifname: Optional[str] = None) -> str:
    names = [ifname] if ifname else sorted(cfg.interfaces)
    blocks: List[str] = []
    for ifn in names:
        itf = cfg.interfaces[ifn]
        state = "up" if itf.admin_up else "administratively down"
        proto = "up" if itf.admin_up else "down"
        block = [f"{ifn} is {state}, line protocol is {proto}"]
        if itf.description:
            block.append(f"  Description: {itf.description}")
        if itf.has_ip():
            block.append(f"  Internet address is {itf.ip}/{mask_prefixlen(itf.mask)}")
        if itf.switchport_mode:
            block.append(f"  Switchport mode {itf.switchport_mode}, VLAN {itf.vlan or 1}")
        block.append("  MTU 1500 bytes, BW 1000000 Kbit/sec, DLY 10 usec")
        blocks.append("\n".join(block))
    return "\n".join(blocks)


def show_running_config(cfg: DeviceConfig) -> str:
    lines: List[str] = [
        "Building configuration...",
        "",
        "Current configuration:",
        "!",
        "version 15.1",
        f"hostname {cfg.hostname}",
        "!",
    ]

    for vid in sorted(cfg.vlans):
        vlan = cfg.vlans[vid]
        if vid == 1:
            continue
        lines.append(f"vlan {vid}")
        lines.append(f" name {vlan.name}")
        if not vlan.active:
            lines.append(" shutdown")
        lines.append("!")

    for ifn in sorted(cfg.interfaces):
        itf = cfg.interfaces[ifn]
        lines.append(f"interface {ifn}")
        if itf.description:
            lines.append(f" description {itf.description}")
        if itf.switchport_mode:
            lines.append(f" switchport mode {itf.switchport_mode}")
            if itf.switchport_mode == "access" and itf.vlan not in (None, 1):
                lines.append(f" switchport access vlan {itf.vlan}")
        if itf.has_ip():
            lines.append(f" ip address {itf.ip} {itf.mask}")
        else:
            if not itf.switchport_mode:
                lines.append(" no ip address")
        if itf.acl_in:
            lines.append(f" ip access-group {itf.acl_in} in")
        if itf.acl_out:
            lines.append(f" ip access-group {itf.acl_out} out")
        if not itf.admin_up:
            lines.append(" shutdown")
        lines.append("!")

    for proc in cfg.routing.values():
        lines.append(f"router {proc.key()}")
        if proc.router_id:
            lines.append(f" router-id {proc.router_id}")
        if proc.version:
            lines.append(f" version {proc.version}")
        for net in proc.networks:
            lines.append(f" network {net}")
        if proc.protocol in ("rip", "eigrp") and not proc.auto_summary:
            lines.append(" no auto-summary")
        lines.append("!")

    for r in cfg.routes_by_source("static"):
        lines.append(f"ip route {r.network} {r.mask} {r.next_hop or r.interface}")

    for e in cfg.acl_entries:
        lines.append(e.render())

    lines.append("!")
    lines.append("end")
    return "\n".join(lines)
