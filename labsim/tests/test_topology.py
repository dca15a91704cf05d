import functools
import unittest
from unittest import mock

from labsim.cli import CLIEngine
from labsim.session import SessionOrchestrator
from labsim.state import Interface, Route
from labsim.topology import Topology, converge


def address(topo, uid, ifname, ip, mask="255.255.255.252"):
    itf = topo.devices[uid].interfaces[ifname]
    itf.ip, itf.mask, itf.admin_up = ip, mask, True


def dynamic(cfg, network):
    return [r for r in cfg.routes if r.source == "dynamic" and r.network == network]


def line_topology():
    """A g0/0 -- g0/0 B g0/1 -- g0/0 C"""
    topo = Topology()
    for uid in ("A", "B", "C"):
        topo.add_device(uid)
    topo.connect("A", "g0/0", "B", "g0/0")
    topo.connect("B", "g0/1", "C", "g0/0")
    address(topo, "A", "GigabitEthernet0/0", "10.0.12.1")
    address(topo, "B", "GigabitEthernet0/0", "10.0.12.2")
    address(topo, "B", "GigabitEthernet0/1", "10.0.23.1")
    address(topo, "C", "GigabitEthernet0/0", "10.0.23.2")
    return topo


def square_topology(reverse_links=False):
    """A-B, A-C, B-D, C-D with a loopback on D."""
    topo = Topology()
    for uid in ("A", "B", "C", "D"):
        topo.add_device(uid)
    links = [
        ("A", "g0/0", "B", "g0/0"),
        ("A", "g0/1", "C", "g0/0"),
        ("B", "g0/1", "D", "g0/0"),
        ("C", "g0/1", "D", "g0/1"),
    ]
    for link in reversed(links) if reverse_links else links:
        topo.connect(*link)
    address(topo, "A", "GigabitEthernet0/0", "10.0.1.1")
    address(topo, "B", "GigabitEthernet0/0", "10.0.1.2")
    address(topo, "A", "GigabitEthernet0/1", "10.0.2.1")
    address(topo, "C", "GigabitEthernet0/0", "10.0.2.2")
    address(topo, "B", "GigabitEthernet0/1", "10.0.3.1")
    address(topo, "D", "GigabitEthernet0/0", "10.0.3.2")
    address(topo, "C", "GigabitEthernet0/1", "10.0.4.1")
    address(topo, "D", "GigabitEthernet0/1", "10.0.4.2")
    topo.devices["D"].interfaces["Loopback0"] = Interface(
        name="Loopback0", admin_up=True, ip="192.168.4.1", mask="255.255.255.0"
    )
    return topo


class TestTopologyModel(unittest.TestCase):
    def test_duplicate_and_unknown_devices(self):
        topo = Topology()
        topo.add_device("R1")
        with self.assertRaises(ValueError):
            topo.add_device("R1")
        with self.assertRaises(KeyError):
            topo.connect("R1", "g0/0", "R9", "g0/0")

    def test_interface_links_once(self):
        topo = Topology()
        topo.add_device("R1")
        topo.add_device("R2")
        topo.add_device("R3")
        self.assertEqual(topo.connect("R1", "g0/0", "R2", "g0/0"), "L1")
        with self.assertRaises(ValueError):
            topo.connect("R1", "Gi0/0", "R3", "g0/0")
        with self.assertRaises(KeyError):
            topo.connect("R1", "g0/7", "R3", "g0/0")

    def test_remove_link_frees_interfaces(self):
        topo = line_topology()
        self.assertIsNotNone(topo.link_for("A", "GigabitEthernet0/0"))
        topo.remove_link("L1")
        self.assertIsNone(topo.link_for("A", "GigabitEthernet0/0"))
        self.assertEqual([t[0] for t in topo.neighbors("B")], ["L2"])
        self.assertEqual(topo.connect("A", "g0/0", "B", "g0/0"), "L1")

    def test_round_trip(self):
        topo = converge(line_topology())
        again = Topology.from_dict(topo.to_dict())
        self.assertEqual(again.to_dict(), topo.to_dict())


class TestConvergence(unittest.TestCase):
    def test_two_routers_on_a_slash_30(self):
        topo = Topology()
        topo.add_device("A")
        topo.add_device("B")
        topo.connect("A", "g0/0", "B", "g0/0")
        address(topo, "A", "GigabitEthernet0/0", "10.0.0.1")
        address(topo, "B", "GigabitEthernet0/0", "10.0.0.2")

        out = converge(topo)
        self.assertTrue(out.converged)
        self.assertTrue(out.links[0].up)
        for uid in ("A", "B"):
            conn = out.devices[uid].routes_by_source("connected")
            self.assertEqual([(r.network, r.mask) for r in conn], [("10.0.0.0", "255.255.255.252")])
            self.assertEqual(out.devices[uid].routes_by_source("dynamic"), [])

    def test_input_is_not_mutated(self):
        topo = line_topology()
        before = topo.to_dict()
        converge(topo)
        self.assertEqual(topo.to_dict(), before)

    def test_routes_propagate_along_a_line(self):
        out = converge(line_topology())
        self.assertTrue(out.converged)

        [r] = dynamic(out.devices["A"], "10.0.23.0")
        self.assertEqual((r.next_hop, r.interface, r.hops, r.via), ("10.0.12.2", "GigabitEthernet0/0", 1, "B"))
        [r] = dynamic(out.devices["C"], "10.0.12.0")
        self.assertEqual((r.next_hop, r.hops), ("10.0.23.1", 1))
        self.assertEqual(out.devices["B"].routes_by_source("dynamic"), [])

    def test_dynamic_route_rendered_with_protocol_code(self):
        out = converge(line_topology())
        text = CLIEngine().interpret(out.devices["A"], "show ip route").output
        self.assertIn("R        10.0.23.0/30 [120/1] via 10.0.12.2, GigabitEthernet0/0", text)
        self.assertTrue(text.startswith("Codes: C - connected, S - static,"))

    def test_mismatched_subnets_keep_link_down(self):
        topo = Topology()
        topo.add_device("A")
        topo.add_device("B")
        topo.connect("A", "g0/0", "B", "g0/0")
        address(topo, "A", "GigabitEthernet0/0", "10.0.0.1")
        address(topo, "B", "GigabitEthernet0/0", "10.0.1.2")
        topo.devices["B"].interfaces["Loopback0"] = Interface(
            name="Loopback0", admin_up=True, ip="2.2.2.2", mask="255.255.255.255"
        )

        out = converge(topo)
        self.assertFalse(out.links[0].up)
        self.assertEqual(dynamic(out.devices["A"], "2.2.2.2"), [])

    def test_equal_cost_tie_break_is_deterministic(self):
        out = converge(square_topology())
        [r] = dynamic(out.devices["A"], "192.168.4.0")
        self.assertEqual((r.via, r.next_hop, r.interface, r.hops), ("B", "10.0.1.2", "GigabitEthernet0/0", 2))

        again = converge(square_topology(reverse_links=True))
        for uid in ("A", "B", "C", "D"):
            self.assertEqual(
                [x.key() + (x.source, x.hops) for x in again.devices[uid].routes],
                [x.key() + (x.source, x.hops) for x in out.devices[uid].routes],
            )

    def test_convergence_is_repeatable(self):
        first = converge(square_topology())
        second = converge(first)
        self.assertEqual(second.to_dict(), first.to_dict())

    def test_static_route_wins_over_learned_prefix(self):
        topo = line_topology()
        cfg = topo.devices["A"]
        cfg.routes.append(Route(network="10.0.23.0", mask="255.255.255.252", source="static", next_hop="10.0.12.2"))
        out = converge(topo)
        self.assertEqual(dynamic(out.devices["A"], "10.0.23.0"), [])
        self.assertEqual(len(out.devices["A"].routes_by_source("static")), 1)

    def test_non_convergence_returns_best_effort_with_warning(self):
        with self.assertLogs("labsim.topology", level="WARNING"):
            out = converge(line_topology(), max_iterations=1)
        self.assertFalse(out.converged)
        self.assertEqual(len(out.warnings), 1)
        self.assertIn("did not converge", out.warnings[0])
        # First round still installed one-hop routes.
        self.assertEqual(len(dynamic(out.devices["A"], "10.0.23.0")), 1)


class TestSessionWithTopology(unittest.TestCase):
    def setUp(self):
        self.orch = SessionOrchestrator(engine=CLIEngine())

    def run_lines(self, topo, uid, lines):
        for line in lines:
            sr = self.orch.handle(topo.devices[uid], line, topology=topo, device_id=uid)
            self.assertTrue(sr.result.valid, (uid, line, sr.result.output))
            topo = sr.topology
        return topo

    def test_configuring_both_ends_brings_link_up(self):
        topo = Topology()
        topo.add_device("A")
        topo.add_device("B")
        topo.connect("A", "g0/0", "B", "g0/0")
        for uid, ip in (("A", "10.0.0.1"), ("B", "10.0.0.2")):
            topo = self.run_lines(
                topo,
                uid,
                ["enable", "conf t", "interface g0/0", f"ip address {ip} 255.255.255.252", "no shutdown", "end"],
            )
        self.assertTrue(topo.links[0].up)
        self.assertEqual(topo.devices["A"].prompt, "A#")
        self.assertEqual(len(topo.devices["B"].routes_by_source("connected")), 1)

        sr = self.orch.handle(topo.devices["A"], "show cdp neighbors", topology=topo, device_id="A")
        self.assertIn("Gig 0/0", sr.result.output)
        self.assertIn("B ", sr.result.output)

    def test_shutdown_withdraws_dynamic_routes(self):
        topo = converge(line_topology())
        self.assertEqual(len(dynamic(topo.devices["A"], "10.0.23.0")), 1)

        topo = self.run_lines(topo, "B", ["enable", "conf t", "interface g0/1", "shutdown"])
        self.assertFalse(topo.links[1].up)
        self.assertEqual(dynamic(topo.devices["A"], "10.0.23.0"), [])
        self.assertEqual(dynamic(topo.devices["C"], "10.0.12.0"), [])

    def test_topology_requires_known_device(self):
        topo = line_topology()
        with self.assertRaises(ValueError):
            self.orch.handle(topo.devices["A"], "enable", topology=topo)
        with self.assertRaises(KeyError):
            self.orch.handle(topo.devices["A"], "enable", topology=topo, device_id="Z")

    def test_convergence_warnings_reach_the_result(self):
        topo = line_topology()
        tight = functools.partial(converge, max_iterations=1)
        with mock.patch("labsim.session.converge", tight):
            with self.assertLogs("labsim.topology", level="WARNING"):
                sr = self.orch.handle(topo.devices["A"], "enable", topology=topo, device_id="A")
        self.assertTrue(sr.result.valid)
        self.assertTrue(any("did not converge" in w for w in sr.result.warnings))


if __name__ == "__main__":
    unittest.main()
