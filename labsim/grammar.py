"""Grammar tables and the mode state machine for the IOS-style CLI.

Each mode owns a list of rules. A rule is a fixed keyword path (``show ip
route``) followed by free arguments; keywords accept IOS unique-prefix
abbreviations scoped to the current mode only, so ``sh`` means ``show`` in
privileged mode and ``shutdown`` in interface mode.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
import re

from .state import Mode


INVALID_INPUT = "% Invalid input detected at '^' marker."
INCOMPLETE_COMMAND = "% Incomplete command."


class CLIError(Exception):
    """A recognized command was rejected (bad or missing arguments, wrong state)."""


class AmbiguousCommand(CLIError):
    def __init__(self, token: str):
        super().__init__(f'% Ambiguous command:  "{token}"')
        self.token = token


class NoMatch(Exception):
    """No rule of the current mode matches the token sequence."""


# ───────────────────────────── Mode transitions ─────────────────────────────

TRANSITIONS: Dict[Mode, Dict[str, Mode]] = {
    Mode.USER: {
        "enable": Mode.PRIVILEGED,
    },
    Mode.PRIVILEGED: {
        "disable": Mode.USER,
        "configure terminal": Mode.GLOBAL_CONFIG,
    },
    Mode.GLOBAL_CONFIG: {
        "end": Mode.PRIVILEGED,
        "exit": Mode.PRIVILEGED,
        "interface": Mode.INTERFACE_CONFIG,
        "vlan": Mode.VLAN_CONFIG,
        "router": Mode.ROUTER_CONFIG,
    },
    Mode.INTERFACE_CONFIG: {
        "exit": Mode.GLOBAL_CONFIG,
        "end": Mode.PRIVILEGED,
    },
    Mode.VLAN_CONFIG: {
        "exit": Mode.GLOBAL_CONFIG,
        "end": Mode.PRIVILEGED,
    },
    Mode.ROUTER_CONFIG: {
        "exit": Mode.GLOBAL_CONFIG,
        "end": Mode.PRIVILEGED,
    },
}


def next_mode(mode: Mode, trigger: str) -> Mode:
    try:
        return TRANSITIONS[mode][trigger]
    except KeyError:
        raise CLIError(INVALID_INPUT) from None


def is_legal_transition(src: Mode, dst: Mode) -> bool:
    return dst == src or dst in TRANSITIONS.get(src, {}).values()


# ───────────────────────────── Rules ─────────────────────────────


@dataclass(frozen=True)
class Rule:
    keywords: Tuple[str, ...]
    handler: str
    usage: str


_SHOW_USER = [
    Rule(("show", "ip", "interface", "brief"), "show_ip_interface_brief", "show ip interface brief"),
    Rule(("show", "ip", "route"), "show_ip_route", "show ip route"),
    Rule(("show", "version"), "show_version", "show version"),
    Rule(("show", "cdp", "neighbors"), "show_cdp_neighbors", "show cdp neighbors"),
]

_SHOW_PRIVILEGED = _SHOW_USER + [
    Rule(("show", "running-config"), "show_running_config", "show running-config"),
    Rule(("show", "vlan", "brief"), "show_vlan_brief", "show vlan brief"),
    Rule(("show", "access-lists"), "show_access_lists", "show access-lists"),
    Rule(("show", "interfaces"), "show_interfaces", "show interfaces [<name>]"),
]

_NESTED_COMMON = [
    Rule(("do",), "do", "do <show-command>"),
    Rule(("exit",), "exit", "exit"),
    Rule(("end",), "end", "end"),
]

GRAMMAR: Dict[Mode, List[Rule]] = {
    Mode.USER: [
        Rule(("enable",), "enable", "enable"),
    ]
    + _SHOW_USER,
    Mode.PRIVILEGED: [
        Rule(("disable",), "disable", "disable"),
        Rule(("configure", "terminal"), "configure_terminal", "configure terminal"),
    ]
    + _SHOW_PRIVILEGED,
    Mode.GLOBAL_CONFIG: [
        Rule(("hostname",), "hostname", "hostname <name>"),
        Rule(("interface",), "interface", "interface <name>"),
        Rule(("vlan",), "vlan", "vlan <1-4094>"),
        Rule(("no", "vlan"), "no_vlan", "no vlan <1-4094>"),
        Rule(("router",), "router", "router ospf <process-id> | router rip | router eigrp <as>"),
        Rule(("no", "router"), "no_router", "no router ospf <process-id> | no router rip | no router eigrp <as>"),
        Rule(("ip", "route"), "ip_route", "ip route <network> <mask> <next-hop|interface>"),
        Rule(("no", "ip", "route"), "no_ip_route", "no ip route <network> <mask> [<next-hop|interface>]"),
        Rule(("access-list",), "access_list", "access-list <1-199> permit|deny <match>"),
        Rule(("no", "access-list"), "no_access_list", "no access-list <1-199>"),
    ]
    + _NESTED_COMMON,
    Mode.INTERFACE_CONFIG: [
        Rule(("ip", "address"), "ip_address", "ip address <ip> <mask>"),
        Rule(("no", "ip", "address"), "no_ip_address", "no ip address"),
        Rule(("shutdown",), "shutdown", "shutdown"),
        Rule(("no", "shutdown"), "no_shutdown", "no shutdown"),
        Rule(("description",), "description", "description <text>"),
        Rule(("no", "description"), "no_description", "no description"),
        Rule(("switchport", "mode"), "switchport_mode", "switchport mode access|trunk"),
        Rule(("switchport", "access", "vlan"), "switchport_access_vlan", "switchport access vlan <1-4094>"),
        Rule(("ip", "access-group"), "ip_access_group", "ip access-group <acl> in|out"),
        Rule(("no", "ip", "access-group"), "no_ip_access_group", "no ip access-group in|out"),
    ]
    + _NESTED_COMMON,
    Mode.VLAN_CONFIG: [
        Rule(("name",), "vlan_name", "name <vlan-name>"),
        Rule(("shutdown",), "vlan_shutdown", "shutdown"),
        Rule(("no", "shutdown"), "vlan_no_shutdown", "no shutdown"),
    ]
    + _NESTED_COMMON,
    Mode.ROUTER_CONFIG: [
        Rule(("network",), "network", "network <network> [<wildcard> area <area-id>]"),
        Rule(("no", "network"), "no_network", "no network <network> [<wildcard> area <area-id>]"),
        Rule(("router-id",), "router_id", "router-id <a.b.c.d>"),
        Rule(("version",), "version", "version 1|2"),
        Rule(("auto-summary",), "auto_summary", "auto-summary"),
        Rule(("no", "auto-summary"), "no_auto_summary", "no auto-summary"),
    ]
    + _NESTED_COMMON,
}


@dataclass
class _Node:
    children: Dict[str, "_Node"] = field(default_factory=dict)
    rule: Optional[Rule] = None


def _build_trie(rules: Iterable[Rule]) -> _Node:
    root = _Node()
    for rule in rules:
        node = root
        for kw in rule.keywords:
            node = node.children.setdefault(kw, _Node())
        node.rule = rule
    return root


_TRIES: Dict[Mode, _Node] = {mode: _build_trie(rules) for mode, rules in GRAMMAR.items()}


@dataclass(frozen=True)
class Match:
    rule: Rule
    args: List[str]


def expand_unique_prefix(token: str, candidates: Iterable[str]) -> Optional[str]:
    """Resolve an abbreviated keyword; None when nothing matches."""
    t = (token or "").lower()
    cands = list(candidates)
    if t in cands:
        return t
    matches = [c for c in cands if c.startswith(t)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise AmbiguousCommand(token)
    return None


def match(mode: Mode, argv: List[str]) -> Match:
    """Walk the mode's keyword trie.

    Raises NoMatch when the tokens leave the grammar, CLIError when a keyword
    path stops short of any rule, AmbiguousCommand on an ambiguous abbreviation.
    """
    root = _TRIES[mode]
    node = root
    i = 0
    while i < len(argv) and node.children:
        kw = expand_unique_prefix(argv[i], node.children.keys())
        if kw is None:
            break
        node = node.children[kw]
        i += 1

    if node is root:
        raise NoMatch(" ".join(argv))
    if node.rule is None:
        if i == len(argv):
            raise CLIError(INCOMPLETE_COMMAND)
        raise NoMatch(" ".join(argv))
    return Match(rule=node.rule, args=list(argv[i:]))


def recognized_elsewhere(mode: Mode, argv: List[str]) -> bool:
    """True if the tokens form a command of some other mode."""
    for other in GRAMMAR:
        if other == mode:
            continue
        try:
            match(other, argv)
            return True
        except AmbiguousCommand:
            continue
        except CLIError:
            # Incomplete keyword path of another mode's command.
            return True
        except NoMatch:
            continue
    return False


def usages(mode: Mode, prefix: str = "") -> List[str]:
    p = (prefix or "").strip().lower()
    lines = sorted({r.usage for r in GRAMMAR[mode]})
    if not p:
        return lines
    return [u for u in lines if u.startswith(p)]


# ───────────────────────────── Interface names ─────────────────────────────

INTERFACE_TYPES = ["GigabitEthernet", "FastEthernet", "Serial", "Loopback", "Vlan"]
LOGICAL_TYPES = ("Loopback", "Vlan")


def normalize_ifname(ifname: str) -> Optional[str]:
    """IOS-like interface shortname normalization.

    Examples:
    - g0/0, gi0/0, Gig0/0 -> GigabitEthernet0/0
    - fa0/1 -> FastEthernet0/1
    - lo0 -> Loopback0, s0/0/0 -> Serial0/0/0
    - g0/0.10 -> GigabitEthernet0/0.10

    Returns None for names that do not look like any known interface type.
    """

    s = (ifname or "").strip().replace(" ", "")
    m = re.match(r"^([A-Za-z-]+)(\d+(?:/\d+)*)(\.\d+)?$", s)
    if not m:
        return None
    typed, number, sub = m.group(1).lower(), m.group(2), m.group(3) or ""
    found = [t for t in INTERFACE_TYPES if t.lower().startswith(typed)]
    if len(found) != 1:
        return None
    if found[0] in LOGICAL_TYPES and "/" in number:
        return None
    return f"{found[0]}{number}{sub}"


def split_subinterface(ifname: str) -> Tuple[str, Optional[int]]:
    """Return (parent_ifname, subinterface number) for names like Gi0/0.10."""
    m = re.match(r"^([^\.]+)\.(\d+)$", ifname or "")
    if not m:
        return ifname, None
    return m.group(1), int(m.group(2))
