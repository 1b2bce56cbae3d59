"""Tests for the conversation loop, driven by a scripted fake model."""

import pytest

from gantry.cancel import CancellationToken
from gantry.confirm import ChannelGateway, ConfirmationGateway, Decision, ScriptedGateway
from gantry.loop import (
    CANCELLED_RESULT,
    DECLINED_RESULT,
    EMPTY_RESPONSE_ERROR,
    NUDGE_AFTER_TOOLS,
    NUDGE_CONTINUE,
    SKIPPED_AFTER_DECLINE,
    SKIPPED_RESULT,
    ConversationLoop,
    approval_unavailable_message,
)
from gantry.messages import OperatingMode, SessionState, ToolCall
from gantry.model import ModelAdapter, StreamChunk
from gantry.registry import PredicateApproval, StaticApproval, ToolDescriptor, ToolRegistry
from gantry.report import ReportCollector, ToolUnsupportedError


def _schema(name, *params):
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": f"{name} tool",
            "parameters": {
                "type": "object",
                "properties": {p: {"type": "string"} for p in params},
                "required": list(params),
            },
        },
    }


def _reply(text="", calls=()):
    chunks = []
    if text:
        chunks.append(StreamChunk(text=text))
    chunks.append(StreamChunk(tool_calls=list(calls), final=True, finish_reason="stop"))
    return chunks


class FakeAdapter(ModelAdapter):
    """Plays back one scripted response per request.

    A script entry is a list of StreamChunks, an exception to raise, or a
    callable ``(messages, tools, cancel) -> iterable``.
    """

    def __init__(self, *script, repeat_last=False):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.requests = []

    def send(self, messages, tools, cancel=None):
        self.requests.append({"messages": [dict(m) for m in messages], "tools": tools})
        if len(self.script) > 1 or not self.repeat_last:
            entry = self.script.pop(0)
        else:
            entry = self.script[0]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            yield from entry(messages, tools, cancel)
            return
        yield from entry


class Tools:
    """A registry of recording tools."""

    def __init__(self):
        self.ran = []
        self.registry = ToolRegistry(
            [
                ToolDescriptor(
                    "read_file",
                    self._run("read_file"),
                    approval=StaticApproval(False),
                    schema=_schema("read_file", "path"),
                ),
                ToolDescriptor(
                    "write_file",
                    self._run("write_file"),
                    mutates_files=True,
                    schema=_schema("write_file", "path", "content"),
                ),
                ToolDescriptor(
                    "execute_bash",
                    self._run("execute_bash"),
                    approval=PredicateApproval(lambda a: a.get("command") != "ls"),
                    runs_commands=True,
                    schema=_schema("execute_bash", "command"),
                ),
            ]
        )

    def _run(self, name):
        def run(args, cancel=None):
            self.ran.append((name, args))
            return f"{name} done"

        return run


def _loop(adapter, tools, gateway=None, **kwargs):
    kwargs.setdefault("session", SessionState())
    return ConversationLoop(adapter, tools.registry, gateway=gateway, **kwargs)


def _tool_messages(messages):
    return [m for m in messages if m["role"] == "tool"]


def _assert_paired(messages):
    """Every assistant tool call has exactly one result, and no result is orphaned."""
    call_ids = [
        tc["id"] for m in messages if m["role"] == "assistant" for tc in m.get("tool_calls", [])
    ]
    result_ids = [m["tool_call_id"] for m in _tool_messages(messages)]
    assert sorted(call_ids) == sorted(result_ids)
    assert len(set(call_ids)) == len(call_ids)


def _read(call_id, path="a.py"):
    return ToolCall(call_id, "read_file", {"path": path})


def _write(call_id, path="a.py"):
    return ToolCall(call_id, "write_file", {"path": path, "content": "x"})


class TestPlainTurns:
    def test_text_answer_completes(self):
        adapter = FakeAdapter(_reply("Hello there"))
        messages = []
        outcome = _loop(adapter, Tools()).run_turn(messages, "hi")
        assert outcome.status == "completed"
        assert outcome.answer == "Hello there"
        assert outcome.rounds == 1
        assert outcome.ok
        assert messages == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello there"},
        ]

    def test_system_prompt_prepended_to_request_only(self):
        adapter = FakeAdapter(_reply("ok"))
        messages = []
        _loop(adapter, Tools(), system_prompt="be brief").run_turn(messages, "hi")
        sent = adapter.requests[0]["messages"]
        assert sent[0] == {"role": "system", "content": "be brief"}
        assert messages[0]["role"] == "user"

    def test_history_system_message_wins(self):
        adapter = FakeAdapter(_reply("ok"))
        messages = [{"role": "system", "content": "from history"}]
        _loop(adapter, Tools(), system_prompt="configured").run_turn(messages, "hi")
        sent = adapter.requests[0]["messages"]
        assert [m for m in sent if m["role"] == "system"] == [
            {"role": "system", "content": "from history"}
        ]

    def test_native_tools_sent(self):
        adapter = FakeAdapter(_reply("ok"))
        _loop(adapter, Tools()).run_turn([], "hi")
        names = [t["function"]["name"] for t in adapter.requests[0]["tools"]]
        assert names == ["read_file", "write_file", "execute_bash"]

    def test_streamed_text_forwarded(self):
        adapter = FakeAdapter([StreamChunk(text="Hel"), StreamChunk(text="lo"), StreamChunk(final=True)])
        seen = []
        outcome = _loop(adapter, Tools(), on_text=seen.append).run_turn([], "hi")
        assert seen == ["Hel", "lo"]
        assert outcome.answer == "Hello"


class TestToolRounds:
    def test_tool_then_answer(self):
        tools = Tools()
        adapter = FakeAdapter(_reply("Looking.", [_read("c1")]), _reply("It prints hi."))
        messages = []
        outcome = _loop(adapter, tools).run_turn(messages, "what does a.py do?")
        assert outcome.status == "completed"
        assert outcome.answer == "It prints hi."
        assert outcome.rounds == 2
        assert tools.ran == [("read_file", {"path": "a.py"})]
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[1]["content"] == "Looking."
        assert messages[2] == {
            "role": "tool",
            "tool_call_id": "c1",
            "name": "read_file",
            "content": "read_file done",
        }
        _assert_paired(messages)

    def test_second_request_carries_tool_result(self):
        adapter = FakeAdapter(_reply(calls=[_read("c1")]), _reply("done"))
        _loop(adapter, Tools()).run_turn([], "go")
        second = adapter.requests[1]["messages"]
        assert second[-1]["role"] == "tool"
        assert second[-2]["tool_calls"][0]["id"] == "c1"

    def test_duplicate_calls_run_once(self):
        tools = Tools()
        adapter = FakeAdapter(
            _reply(calls=[_read("c1"), _read("c2"), _read("c1", "b.py")]), _reply("done")
        )
        messages = []
        _loop(adapter, tools).run_turn(messages, "go")
        assert tools.ran == [("read_file", {"path": "a.py"})]
        _assert_paired(messages)

    def test_reused_id_across_rounds_is_renamed(self):
        adapter = FakeAdapter(
            _reply(calls=[_read("c1")]),
            _reply(calls=[_read("c1", "b.py")]),
            _reply("done"),
        )
        messages = []
        _loop(adapter, Tools()).run_turn(messages, "go")
        ids = [m["tool_call_id"] for m in _tool_messages(messages)]
        assert ids[0] == "c1"
        assert ids[1] != "c1"
        _assert_paired(messages)

    def test_unknown_tool_reported_to_model(self):
        tools = Tools()
        adapter = FakeAdapter(_reply(calls=[ToolCall("c1", "delete_file", {})]), _reply("ok"))
        messages = []
        _loop(adapter, tools).run_turn(messages, "go")
        [result] = _tool_messages(messages)
        assert result["content"].startswith('Tool "delete_file" does not exist.')
        assert tools.ran == []

    def test_xml_call_in_text(self):
        tools = Tools()
        adapter = FakeAdapter(
            _reply("Reading.\n<read_file><path>a.py</path></read_file>"), _reply("done")
        )
        messages = []
        outcome = _loop(adapter, tools).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert tools.ran == [("read_file", {"path": "a.py"})]
        assert messages[1]["content"] == "Reading."
        _assert_paired(messages)

    def test_max_rounds_exhausted(self):
        counter = iter(range(100))

        def endless(messages, tools, cancel):
            n = next(counter)
            return _reply(f"step {n}", [_read(f"c{n}", f"f{n}.py")])

        adapter = FakeAdapter(endless, repeat_last=True)
        messages = []
        outcome = _loop(adapter, Tools(), max_rounds=3).run_turn(messages, "go")
        assert outcome.status == "exhausted"
        assert outcome.rounds == 3
        assert outcome.answer == "step 2"
        assert len(adapter.requests) == 3
        _assert_paired(messages)


class TestMalformed:
    def test_malformed_then_correct(self):
        tools = Tools()
        adapter = FakeAdapter(
            _reply("<function=write_file>\n<parameter=path>a.py</parameter>"),
            _reply(calls=[_read("c2")]),
            _reply("All good."),
        )
        messages = []
        report = ReportCollector()
        outcome = _loop(adapter, tools, report=report).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert outcome.answer == "All good."
        first_assistant = messages[1]
        assert first_assistant["content"] == ""
        assert first_assistant["tool_calls"][0]["function"]["name"] == "__xml_validation_error__"
        error_result = messages[2]
        assert error_result["content"].startswith("Invalid syntax: <function=name>")
        assert not any("<function=" in (m.get("content") or "") for m in messages if m["role"] == "assistant")
        assert tools.ran == [("read_file", {"path": "a.py"})]
        assert report.malformed_calls == 1
        _assert_paired(messages)


class TestNudges:
    def test_empty_response_nudged_then_answered(self):
        adapter = FakeAdapter(_reply(""), _reply("Here you go."))
        messages = []
        outcome = _loop(adapter, Tools()).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert messages[1] == {"role": "user", "content": NUDGE_CONTINUE}

    def test_nudge_after_tool_result(self):
        adapter = FakeAdapter(_reply(calls=[_read("c1")]), _reply("   "), _reply("Summary."))
        messages = []
        report = ReportCollector()
        _loop(adapter, Tools(), report=report).run_turn(messages, "go")
        assert {"role": "user", "content": NUDGE_AFTER_TOOLS} in messages
        assert report.nudges == 1

    def test_nudge_cap_fails_turn(self):
        adapter = FakeAdapter(_reply(""), repeat_last=True)
        messages = []
        outcome = _loop(adapter, Tools(), max_nudges=2).run_turn(messages, "go")
        assert outcome.status == "failed"
        assert outcome.error == EMPTY_RESPONSE_ERROR
        assert len(adapter.requests) == 3
        assert [m["content"] for m in messages[1:]] == [NUDGE_CONTINUE, NUDGE_CONTINUE]

    def test_tool_round_resets_nudge_count(self):
        adapter = FakeAdapter(
            _reply(""),
            _reply(calls=[_read("c1")]),
            _reply(""),
            _reply("done"),
        )
        outcome = _loop(adapter, Tools(), max_nudges=1).run_turn([], "go")
        assert outcome.status == "completed"


class TestApproval:
    def test_approve_runs_tool(self):
        tools = Tools()
        gateway = ScriptedGateway([Decision.APPROVE])
        adapter = FakeAdapter(_reply(calls=[_write("c1")]), _reply("written"))
        messages = []
        outcome = _loop(adapter, tools, gateway).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert [n for n, _ in tools.ran] == ["write_file"]
        assert [c.id for c in gateway.requested] == ["c1"]

    def test_decline_stops_turn_and_skips_rest(self):
        tools = Tools()
        gateway = ScriptedGateway([Decision.DECLINE])
        adapter = FakeAdapter(
            _reply(calls=[_write("c1", "a"), _write("c2", "b"), _write("c3", "c")])
        )
        messages = []
        outcome = _loop(adapter, tools, gateway).run_turn(messages, "go")
        assert outcome.status == "declined"
        assert tools.ran == []
        assert len(gateway.requested) == 1
        assert len(adapter.requests) == 1
        results = _tool_messages(messages)
        assert [r["content"] for r in results] == [
            DECLINED_RESULT,
            SKIPPED_AFTER_DECLINE,
            SKIPPED_AFTER_DECLINE,
        ]
        _assert_paired(messages)

    def test_decline_keeps_results_of_auto_approved_calls(self):
        tools = Tools()
        gateway = ScriptedGateway([Decision.DECLINE])
        adapter = FakeAdapter(_reply(calls=[_read("c1"), _write("c2")]))
        messages = []
        _loop(adapter, tools, gateway).run_turn(messages, "go")
        assert tools.ran == [("read_file", {"path": "a.py"})]
        assert [r["content"] for r in _tool_messages(messages)] == ["read_file done", DECLINED_RESULT]

    def test_skip_continues_turn(self):
        tools = Tools()
        gateway = ScriptedGateway([Decision.SKIP, Decision.APPROVE])
        adapter = FakeAdapter(_reply(calls=[_write("c1", "a"), _write("c2", "b")]), _reply("ok"))
        messages = []
        outcome = _loop(adapter, tools, gateway).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert tools.ran == [("write_file", {"path": "b", "content": "x"})]
        assert _tool_messages(messages)[0]["content"] == SKIPPED_RESULT

    def test_always_allow_remembered(self):
        tools = Tools()
        session = SessionState()
        gateway = ScriptedGateway([Decision.ALWAYS_ALLOW])
        adapter = FakeAdapter(
            _reply(calls=[_write("c1", "a")]),
            _reply(calls=[_write("c2", "b")]),
            _reply("done"),
        )
        outcome = _loop(adapter, tools, gateway, session=session).run_turn([], "go")
        assert outcome.status == "completed"
        assert len(gateway.requested) == 1
        assert [a["path"] for _, a in tools.ran] == ["a", "b"]
        assert "write_file" in session.always_allowed

    def test_read_only_command_runs_without_asking(self):
        tools = Tools()
        gateway = ScriptedGateway([])
        call = ToolCall("c1", "execute_bash", {"command": "ls"})
        adapter = FakeAdapter(_reply(calls=[call]), _reply("listed"))
        _loop(adapter, tools, gateway).run_turn([], "go")
        assert gateway.requested == []
        assert tools.ran == [("execute_bash", {"command": "ls"})]

    def test_non_interactive_reports_needed_approval(self):
        tools = Tools()
        adapter = FakeAdapter(_reply("Writing it.", [_read("c1"), _write("c2")]))
        messages = []
        outcome = _loop(adapter, tools, None).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert outcome.needs_approval == ["write_file"]
        assert not outcome.ok
        assert outcome.answer == "Writing it."
        assert [n for n, _ in tools.ran] == ["read_file"]
        assert _tool_messages(messages)[-1]["content"] == approval_unavailable_message("write_file")
        _assert_paired(messages)

    def test_non_interactive_flag_overrides_gateway(self):
        gateway = ScriptedGateway([Decision.APPROVE])
        adapter = FakeAdapter(_reply(calls=[_write("c1")]))
        outcome = _loop(adapter, Tools(), gateway, non_interactive=True).run_turn([], "go")
        assert outcome.needs_approval == ["write_file"]
        assert gateway.requested == []


class TestModes:
    def test_plan_mode_blocks_writes(self):
        tools = Tools()
        session = SessionState(mode=OperatingMode.PLAN)
        report = ReportCollector()
        adapter = FakeAdapter(_reply(calls=[_write("c1"), _read("c2")]), _reply("planned"))
        messages = []
        outcome = _loop(adapter, tools, ScriptedGateway([]), session=session, report=report).run_turn(
            messages, "go"
        )
        assert outcome.status == "completed"
        assert tools.ran == [("read_file", {"path": "a.py"})]
        assert "not allowed in Plan Mode" in _tool_messages(messages)[0]["content"]
        assert report.policy_blocks == 1

    def test_auto_accept_runs_writes_but_asks_for_commands(self):
        tools = Tools()
        session = SessionState(mode=OperatingMode.AUTO_ACCEPT)
        gateway = ScriptedGateway([Decision.APPROVE])
        make = ToolCall("c2", "execute_bash", {"command": "make"})
        adapter = FakeAdapter(_reply(calls=[_write("c1"), make]), _reply("built"))
        _loop(adapter, tools, gateway, session=session).run_turn([], "go")
        assert [c.id for c in gateway.requested] == ["c2"]
        assert [n for n, _ in tools.ran] == ["write_file", "execute_bash"]

    def test_mode_change_between_turns(self):
        tools = Tools()
        session = SessionState()
        adapter = FakeAdapter(_reply(calls=[_write("c1")]), _reply("ok"))
        loop = _loop(adapter, tools, ScriptedGateway([]), session=session)
        session.mode = OperatingMode.AUTO_ACCEPT
        loop.run_turn([], "go")
        assert [n for n, _ in tools.ran] == ["write_file"]


class TestToolUnsupported:
    def test_retry_without_tools(self):
        tools = Tools()
        report = ReportCollector()
        adapter = FakeAdapter(
            ToolUnsupportedError("Bad request: tools are not supported"),
            _reply("<read_file><path>a.py</path></read_file>"),
            _reply("done"),
        )
        messages = []
        outcome = _loop(adapter, tools, system_prompt="base", report=report).run_turn(messages, "go")
        assert outcome.status == "completed"
        assert adapter.requests[0]["tools"] is not None
        retry = adapter.requests[1]
        assert retry["tools"] is None
        system = retry["messages"][0]
        assert system["role"] == "system"
        assert system["content"].startswith("base")
        assert "## AVAILABLE TOOLS" in system["content"]
        assert "### write_file" in system["content"]
        assert adapter.requests[2]["tools"] is None
        assert tools.ran == [("read_file", {"path": "a.py"})]
        assert report.tool_retries == 1
        assert messages[0] == {"role": "user", "content": "go"}

    def test_raw_provider_error_classified(self):
        adapter = FakeAdapter(
            Exception("400 Bad Request: this model does not support tools"),
            _reply("fine"),
        )
        outcome = _loop(adapter, Tools()).run_turn([], "go")
        assert outcome.status == "completed"
        assert adapter.requests[1]["tools"] is None

    def test_second_rejection_fails(self):
        adapter = FakeAdapter(ToolUnsupportedError("tools not supported"), repeat_last=True)
        outcome = _loop(adapter, Tools()).run_turn([], "go")
        assert outcome.status == "failed"
        assert "tools not supported" in outcome.error
        assert len(adapter.requests) == 2

    def test_prompt_tools_from_the_start(self):
        adapter = FakeAdapter(ToolUnsupportedError("tools not supported"), repeat_last=True)
        outcome = _loop(adapter, Tools(), native_tools=False).run_turn([], "go")
        assert outcome.status == "failed"
        assert len(adapter.requests) == 1
        assert adapter.requests[0]["tools"] is None

    def test_other_errors_fail_turn(self):
        adapter = FakeAdapter(Exception("401 Unauthorized: bad key"))
        outcome = _loop(adapter, Tools()).run_turn([], "go")
        assert outcome.status == "failed"
        assert outcome.error == "Authentication failed: Invalid API key or credentials"


class TestCancellation:
    def test_cancel_mid_stream_appends_nothing(self):
        def stream(messages, tools, cancel):
            yield StreamChunk(text="Let me ")
            cancel.cancel()
            yield StreamChunk(text="write that.", tool_calls=[_write("c1")], final=True)

        tools = Tools()
        adapter = FakeAdapter(stream)
        messages = []
        outcome = _loop(adapter, tools, ScriptedGateway([Decision.APPROVE])).run_turn(messages, "go")
        assert outcome.status == "cancelled"
        assert messages == [{"role": "user", "content": "go"}]
        assert tools.ran == []

    def test_cancel_before_turn(self):
        token = CancellationToken()
        token.cancel()
        adapter = FakeAdapter(_reply("never"))
        outcome = _loop(adapter, Tools()).run_turn([], "go", token)
        assert outcome.status == "cancelled"
        assert adapter.requests == []

    def test_cancel_during_confirmation_answers_every_call(self):
        class CancellingGateway(ConfirmationGateway):
            def request(self, call, token):
                token.cancel()
                token.raise_if_cancelled()

        tools = Tools()
        adapter = FakeAdapter(_reply(calls=[_read("c1"), _write("c2"), _write("c3", "b")]))
        messages = []
        outcome = _loop(adapter, tools, CancellingGateway()).run_turn(messages, "go")
        assert outcome.status == "cancelled"
        results = _tool_messages(messages)
        assert [r["content"] for r in results] == [
            "read_file done",
            CANCELLED_RESULT,
            CANCELLED_RESULT,
        ]
        _assert_paired(messages)

    def test_cancel_inside_tool_discards_its_result(self):
        tools = Tools()

        def cancelling(args, cancel=None):
            cancel.cancel()
            return "partial"

        tools.registry.register(
            ToolDescriptor("slow", cancelling, approval=StaticApproval(False))
        )
        adapter = FakeAdapter(_reply(calls=[ToolCall("c1", "slow", {}), _read("c2")]))
        messages = []
        outcome = _loop(adapter, tools).run_turn(messages, "go")
        assert outcome.status == "cancelled"
        assert [r["content"] for r in _tool_messages(messages)] == [CANCELLED_RESULT, CANCELLED_RESULT]
        assert tools.ran == []


class TestEvents:
    def test_on_event_sees_each_result(self):
        events = []
        adapter = FakeAdapter(
            _reply(calls=[_read("c1"), ToolCall("c2", "nope", {})]), _reply("ok")
        )
        _loop(adapter, Tools(), on_event=events.append).run_turn([], "go")
        assert sorted(e.kind for e in events) == ["executed", "unknown"]

    def test_report_records_llm_calls(self):
        report = ReportCollector()
        adapter = FakeAdapter(_reply(calls=[_read("c1")]), _reply("ok"))
        _loop(adapter, Tools(), report=report).run_turn([], "go")
        assert report.llm_calls == 2
        assert report.tool_stats == {"read_file": {"succeeded": 1, "failed": 0}}


class TestGatewayFailures:
    def test_error_fails_turn_and_answers_every_call(self):
        class Broken(ConfirmationGateway):
            def request(self, call, token):
                raise RuntimeError("terminal went away")

        tools = Tools()
        adapter = FakeAdapter(_reply(calls=[_read("c1"), _write("c2"), _write("c3", "b.py")]))
        messages = []
        outcome = _loop(adapter, tools, Broken()).run_turn(messages, "go")
        assert outcome.status == "failed"
        assert "terminal went away" in outcome.error
        assert [name for name, _ in tools.ran] == ["read_file"]
        _assert_paired(messages)
        results = {m["tool_call_id"]: m["content"] for m in _tool_messages(messages)}
        assert results["c2"].startswith("error: ")
        assert results["c3"].startswith("error: ")

    @pytest.mark.parametrize("exc", [EOFError, KeyboardInterrupt])
    def test_end_of_input_at_prompt_cancels(self, exc):
        def responder(call):
            raise exc

        tools = Tools()
        adapter = FakeAdapter(_reply(calls=[_write("c1")]))
        messages = []
        token = CancellationToken()
        outcome = _loop(adapter, tools, ChannelGateway(responder)).run_turn(messages, "go", token)
        assert outcome.status == "cancelled"
        assert token.cancelled
        assert tools.ran == []
        _assert_paired(messages)
        assert _tool_messages(messages)[0]["content"] == CANCELLED_RESULT

    def test_history_usable_after_failure(self):
        class FailsOnce(ConfirmationGateway):
            def __init__(self):
                self.calls = 0

            def request(self, call, token):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("boom")
                return Decision.APPROVE

        adapter = FakeAdapter(_reply(calls=[_write("c1")]), _reply("ok"))
        loop = _loop(adapter, Tools(), FailsOnce())
        messages = []
        assert loop.run_turn(messages, "first").status == "failed"
        assert loop.run_turn(messages, "again").status == "completed"
        second = adapter.requests[1]["messages"]
        _assert_paired(second)
