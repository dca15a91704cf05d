import unittest

from pydantic import ValidationError

from labai.config import DEFAULT_MODEL, DEFAULT_TIMEOUT, FallbackSettings
from labai.fallback import (
    FallbackReply,
    FallbackResolver,
    InterfaceDelta,
    ModeTarget,
    OpenAISynthesizer,
    RouteDelta,
    StateDelta,
    VlanDelta,
    default_resolver,
)
from labsim.cli import CLIEngine
from labsim.grammar import INVALID_INPUT
from labsim.session import SessionOrchestrator
from labsim.state import InterfaceContext, Mode, default_config

SYSTEM_ERROR = "% System error - please try again"


class StaticSynth:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def synthesize(self, context):
        self.calls.append(context)
        return self.reply


class FailingSynth:
    def synthesize(self, context):
        raise TimeoutError("request timed out")


def privileged():
    st = default_config("router")
    st.mode = Mode.PRIVILEGED
    return st


def global_config():
    st = default_config("router")
    st.mode = Mode.GLOBAL_CONFIG
    return st


class TestResolverFailures(unittest.TestCase):
    def test_not_configured(self):
        res = FallbackResolver(None).resolve(privileged(), "show clock")
        self.assertFalse(res.valid)
        self.assertEqual(res.output, INVALID_INPUT)
        self.assertIn("OPENAI_API_KEY", res.error)

    def test_transport_failure_is_a_system_error(self):
        orch = SessionOrchestrator(engine=CLIEngine(resolver=FallbackResolver(FailingSynth())))
        state = privileged()
        with self.assertLogs("labai.fallback", level="WARNING"):
            sr = orch.handle(state, "frobnicate")
        self.assertFalse(sr.result.valid)
        self.assertEqual(sr.result.output, SYSTEM_ERROR)
        self.assertIsNone(sr.result.new_state)
        self.assertEqual(sr.state.mode, Mode.PRIVILEGED)
        self.assertEqual(sr.state.routes, state.routes)
        self.assertEqual(sr.prompt, "Router#")

    def test_missing_parsed_output_is_a_system_error(self):
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(None)).resolve(privileged(), "show clock")
        self.assertEqual(res.output, SYSTEM_ERROR)

    def test_rejected_reply_never_changes_state(self):
        reply = FallbackReply(
            valid=False,
            output="% Unknown command",
            hostname_change="Changed",
            delta=StateDelta(vlans=[VlanDelta(vlan_id=30)]),
        )
        res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertFalse(res.valid)
        self.assertEqual(res.output, "% Unknown command")
        self.assertIsNone(res.new_state)
        self.assertIsNone(res.hostname_change)


class TestResolverReplies(unittest.TestCase):
    def test_output_only_reply(self):
        synth = StaticSynth(FallbackReply(valid=True, output="*10:00:00.000 UTC Mon Mar 1 1993"))
        engine = CLIEngine(resolver=FallbackResolver(synth))
        res = engine.interpret(privileged(), "show clock")
        self.assertTrue(res.valid)
        self.assertIn("UTC", res.output)
        self.assertIsNone(res.new_state)

        ctx = synth.calls[0]
        self.assertEqual(ctx.command, "show clock")
        self.assertEqual(ctx.mode, Mode.PRIVILEGED)
        self.assertIn("GigabitEthernet0/0", ctx.summary["interfaces"])

    def test_valid_delta_is_applied(self):
        reply = FallbackReply(
            valid=True,
            delta=StateDelta(
                interfaces=[InterfaceDelta(name="g0/0", ip="10.1.1.1", mask="255.255.255.0", admin_up=True)],
                vlans=[VlanDelta(vlan_id=30, name="VOICE")],
                static_routes=[RouteDelta(network="0.0.0.0", mask="0.0.0.0", next_hop="10.1.1.254")],
            ),
        )
        res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "some long-tail command")
        self.assertTrue(res.valid)
        st = res.new_state
        self.assertIsNotNone(st)
        self.assertEqual(st.interfaces["GigabitEthernet0/0"].ip, "10.1.1.1")
        self.assertEqual(st.vlans[30].name, "VOICE")
        self.assertEqual(len(st.routes_by_source("static")), 1)
        self.assertEqual([r.network for r in st.routes_by_source("connected")], ["10.1.1.0"])
        self.assertEqual(res.warnings, [])

    def test_any_invalid_part_discards_the_whole_delta(self):
        reply = FallbackReply(
            valid=True,
            output="ok",
            delta=StateDelta(
                interfaces=[
                    InterfaceDelta(name="g0/0", ip="10.1.1.1", mask="255.255.255.0"),
                    InterfaceDelta(name="g9/9", admin_up=True),
                ],
            ),
        )
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertTrue(res.valid)
        self.assertEqual(res.output, "ok")
        self.assertIsNone(res.new_state)
        self.assertEqual(len(res.warnings), 1)

    def test_out_of_range_vlan_discarded(self):
        reply = FallbackReply(valid=True, delta=StateDelta(vlans=[VlanDelta(vlan_id=5000)]))
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertIsNone(res.new_state)

    def test_bad_mask_discarded(self):
        reply = FallbackReply(
            valid=True,
            delta=StateDelta(interfaces=[InterfaceDelta(name="g0/0", ip="10.1.1.1", mask="255.0.255.0")]),
        )
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertIsNone(res.new_state)

    def test_zero_length_mask_discarded(self):
        reply = FallbackReply(
            valid=True,
            delta=StateDelta(interfaces=[InterfaceDelta(name="g0/0", ip="10.1.1.1", mask="0.0.0.0")]),
        )
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertIsNone(res.new_state)

    def test_illegal_mode_change_discarded(self):
        reply = FallbackReply(valid=True, mode_change=ModeTarget(mode="global-config"))
        st = default_config("router")
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(st, "bogus")
        self.assertTrue(res.valid)
        self.assertIsNone(res.mode_change)
        self.assertIsNone(res.new_state)

    def test_legal_mode_change_with_context(self):
        reply = FallbackReply(valid=True, mode_change=ModeTarget(mode="interface-config", interface="g0/1"))
        res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "interface range g0/1")
        self.assertEqual(res.mode_change, Mode.INTERFACE_CONFIG)
        self.assertEqual(res.new_state.context, InterfaceContext("GigabitEthernet0/1"))

    def test_nested_mode_change_needs_context(self):
        reply = FallbackReply(valid=True, mode_change=ModeTarget(mode="router-config", protocol="ospf"))
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertIsNone(res.new_state)

    def test_hostname_change(self):
        reply = FallbackReply(valid=True, hostname_change="Core1")
        res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertEqual(res.hostname_change, "Core1")

        reply = FallbackReply(valid=True, hostname_change="9 bad")
        res = FallbackResolver(StaticSynth(reply)).resolve(global_config(), "bogus")
        self.assertIsNone(res.hostname_change)
        self.assertEqual(len(res.warnings), 1)

    def test_reply_schema_forbids_extra_keys(self):
        with self.assertRaises(ValidationError):
            FallbackReply.model_validate({"valid": True, "unexpected": 1})


class TestDeltaMatchesCLIChecks(unittest.TestCase):
    """Generated changes are held to the same address rules as typed commands."""

    def setUp(self):
        self.state = global_config()
        gi0 = self.state.interfaces["GigabitEthernet0/0"]
        gi0.ip, gi0.mask, gi0.admin_up = "10.0.0.1", "255.255.255.0", True

    def resolve(self, delta):
        reply = FallbackReply(valid=True, delta=delta)
        with self.assertLogs("labai.fallback", level="WARNING"):
            res = FallbackResolver(StaticSynth(reply)).resolve(self.state, "bogus")
        self.assertIsNone(res.new_state)
        self.assertEqual(len(res.warnings), 1)
        return res.warnings[0]

    def test_route_with_host_bits(self):
        warning = self.resolve(
            StateDelta(static_routes=[RouteDelta(network="10.9.0.5", mask="255.255.255.0", next_hop="10.0.0.2")])
        )
        self.assertIn("%Inconsistent address and mask", warning)

        typed = CLIEngine().interpret(self.state, "ip route 10.9.0.5 255.255.255.0 10.0.0.2")
        self.assertFalse(typed.valid)

    def test_next_hop_is_own_address(self):
        warning = self.resolve(
            StateDelta(static_routes=[RouteDelta(network="10.9.0.0", mask="255.255.255.0", next_hop="10.0.0.1")])
        )
        self.assertIn("it's this router", warning)

    def test_network_and_broadcast_addresses(self):
        for ip in ("10.2.0.0", "10.2.0.255"):
            warning = self.resolve(
                StateDelta(interfaces=[InterfaceDelta(name="g0/1", ip=ip, mask="255.255.255.0")])
            )
            self.assertIn("Bad mask /24", warning)

    def test_overlapping_interface_subnet(self):
        warning = self.resolve(
            StateDelta(interfaces=[InterfaceDelta(name="g0/1", ip="10.0.0.9", mask="255.255.0.0")])
        )
        self.assertIn("overlaps with GigabitEthernet0/0", warning)

    def test_readdressing_the_same_interface_is_allowed(self):
        reply = FallbackReply(
            valid=True,
            delta=StateDelta(interfaces=[InterfaceDelta(name="g0/0", ip="10.0.0.2", mask="255.255.255.0")]),
        )
        res = FallbackResolver(StaticSynth(reply)).resolve(self.state, "bogus")
        self.assertEqual(res.new_state.interfaces["GigabitEthernet0/0"].ip, "10.0.0.2")


class FakeResponses:
    def __init__(self, parsed):
        self.parsed = parsed
        self.kwargs = None

    def parse(self, **kwargs):
        self.kwargs = kwargs
        return type("Resp", (), {"output_parsed": self.parsed})()


class FakeClient:
    def __init__(self, parsed):
        self.responses = FakeResponses(parsed)


class TestOpenAISynthesizer(unittest.TestCase):
    def test_request_shape(self):
        reply = FallbackReply(valid=True, output="done")
        client = FakeClient(reply)
        settings = FallbackSettings(api_key="sk-test", model="test-model")
        resolver = FallbackResolver(OpenAISynthesizer(settings, client=client))

        res = resolver.resolve(privileged(), "show clock")
        self.assertEqual(res.output, "done")

        kwargs = client.responses.kwargs
        self.assertEqual(kwargs["model"], "test-model")
        self.assertIs(kwargs["text_format"], FallbackReply)
        texts = [part["text"] for msg in kwargs["input"] for part in msg["content"]]
        self.assertIn("COMMAND:\nshow clock", texts)
        self.assertIn("CURRENT_MODE: privileged", texts)


class TestSettings(unittest.TestCase):
    def test_defaults_without_environment(self):
        s = FallbackSettings.from_env({})
        self.assertFalse(s.enabled)
        self.assertEqual(s.model, DEFAULT_MODEL)
        self.assertEqual(s.timeout, DEFAULT_TIMEOUT)

    def test_values_from_environment(self):
        s = FallbackSettings.from_env(
            {"OPENAI_API_KEY": "sk-x", "LABSIM_AI_MODEL": "gpt-x", "LABSIM_AI_TIMEOUT": "2.5"}
        )
        self.assertTrue(s.enabled)
        self.assertEqual(s.model, "gpt-x")
        self.assertEqual(s.timeout, 2.5)

    def test_bad_timeout_falls_back_to_default(self):
        with self.assertLogs("labai.config", level="WARNING"):
            s = FallbackSettings.from_env({"LABSIM_AI_TIMEOUT": "soon"})
        self.assertEqual(s.timeout, DEFAULT_TIMEOUT)

    def test_default_resolver_disabled_without_key(self):
        resolver = default_resolver(FallbackSettings())
        self.assertIsNone(resolver.synthesizer)


if __name__ == "__main__":
    unittest.main()
