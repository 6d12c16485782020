"""Tests for transcript providers."""

import json
from pathlib import Path

import pytest

from conv_memory.errors import ParseError, SourceError
from conv_memory.providers import get_all_providers, get_provider, provider_names
from conv_memory.providers.base import TranscriptProvider, parse_count, parse_timestamp
from conv_memory.providers.claude_code import ClaudeCodeProvider, extract_text_content
from conv_memory.providers.codex import CodexProvider

from conftest import rollout_records, write_records, write_rollout


def _jsonl(records: list[dict]) -> bytes:
    return "".join(json.dumps(r) + "\n" for r in records).encode()


class TestRegistry:
    """Tests for the provider registry."""

    def test_builtin_providers_registered(self):
        """Test both shipped formats are registered."""
        assert provider_names() == ["claude-code", "codex"]
        assert {p.name for p in get_all_providers()} == {"codex", "claude-code"}

    def test_get_provider(self):
        """Test lookup by name returns a fresh instance."""
        assert isinstance(get_provider("codex"), CodexProvider)
        assert get_provider("nope") is None

    def test_providers_share_base(self):
        """Test every provider implements the base interface."""
        for provider in get_all_providers():
            assert isinstance(provider, TranscriptProvider)


class TestTimestamps:
    """Tests for timestamp parsing."""

    def test_iso_with_z(self):
        ts = parse_timestamp("2025-01-01T00:00:01.500Z")
        assert ts.year == 2025 and ts.microsecond == 500000
        assert ts.utcoffset().total_seconds() == 0

    def test_epoch_millis(self):
        assert parse_timestamp(1735689600000) == parse_timestamp("2025-01-01T00:00:00Z")

    def test_invalid(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(True) is None


class TestCounts:
    """Tests for token count coercion."""

    def test_numbers(self):
        assert parse_count(42) == 42
        assert parse_count(7.9) == 7
        assert parse_count(" 12 ") == 12

    def test_unusable_values_are_zero(self):
        for value in (None, True, -3, float("nan"), float("inf"), "lots", [1], {"n": 1}):
            assert parse_count(value) == 0


class TestCodexProvider:
    """Tests for Codex rollout parsing."""

    @pytest.fixture
    def provider(self):
        return CodexProvider()

    def test_discover_files(self, provider, sessions_dir):
        """Test only rollout files are discovered, recursively and sorted."""
        write_rollout(sessions_dir / "2025" / "01" / "rollout-b.jsonl", 1)
        write_rollout(sessions_dir / "2025" / "01" / "rollout-a.jsonl", 1)
        (sessions_dir / "notes.jsonl").write_text("{}\n")

        files = provider.discover_files(sessions_dir)
        assert [f.name for f in files] == ["rollout-a.jsonl", "rollout-b.jsonl"]

    def test_discover_single_file(self, provider, sessions_dir):
        """Test a file root is its own only candidate."""
        path = write_rollout(sessions_dir / "rollout-x.jsonl", 1)
        assert provider.discover_files(path) == [path]
        assert provider.discover_files(sessions_dir / "missing") == []

    def test_parse_turns(self, provider, sessions_dir):
        """Test each turn_context opens one turn with its messages."""
        path = write_rollout(sessions_dir / "rollout-1.jsonl", 3, cwd="/work/alpha")
        session = provider.parse_file(path)

        assert session.format == "codex"
        assert len(session.turns) == 3
        assert session.session_meta["id"] == "sess-1"
        assert session.cwd == "/work/alpha"
        assert session.model == "gpt-5-codex"
        first = session.turns[0]
        assert first.user_inputs == ["How do I fix bug number 0?"]
        assert first.assistant_messages == ["Patch the bug handler, step 0."]
        assert first.token_usage == {"input_tokens": 100, "output_tokens": 20}
        assert first.context["sandbox_mode"] == "workspace-write"
        assert session.total_token_usage == {"input_tokens": 300, "output_tokens": 60}

    def test_tool_calls(self, provider):
        """Test shell calls, outputs and reasoning are captured."""
        records = [
            {"timestamp": "2025-01-01T00:00:00Z", "type": "session_meta", "payload": {"id": "s", "cwd": "/tmp"}},
            {"timestamp": "2025-01-01T00:00:01Z", "type": "response_item", "payload": {
                "type": "message", "role": "user",
                "content": [{"type": "input_text", "text": "list files"},
                            {"type": "input_image", "image_url": "data:image/png;base64,AA"}]}},
            {"timestamp": "2025-01-01T00:00:02Z", "type": "response_item", "payload": {
                "type": "reasoning", "summary": [{"type": "summary_text", "text": "thinking"}],
                "encrypted_content": "xyz"}},
            {"timestamp": "2025-01-01T00:00:03Z", "type": "response_item", "payload": {
                "type": "function_call", "name": "shell", "call_id": "call-1",
                "arguments": json.dumps({"command": ["ls", "-la"], "workdir": "/tmp"})}},
            {"timestamp": "2025-01-01T00:00:04Z", "type": "response_item", "payload": {
                "type": "function_call_output", "call_id": "call-1",
                "output": json.dumps({"content": "a.txt\nb.txt", "success": True})}},
            {"timestamp": "2025-01-01T00:00:05Z", "type": "event_msg", "payload": {"type": "plan_update"}},
        ]
        session = provider.parse_bytes(_jsonl(records), Path("rollout-t.jsonl"))

        assert len(session.turns) == 1
        turn = session.turns[0]
        assert turn.user_inputs == ["list files"]
        assert turn.image_count == 1
        assert turn.reasoning == ["thinking"]
        assert turn.reasoning_encrypted
        assert turn.plan_updates == 1
        assert len(turn.tools) == 1
        tool = turn.tools[0]
        assert tool.kind == "shell"
        assert tool.arguments["command"] == ["ls", "-la"]
        assert tool.arguments["workdir"] == "/tmp"
        assert tool.output == "a.txt\nb.txt"
        assert tool.success is True
        assert turn.tool_output_text == "a.txt\nb.txt"

    def test_custom_tool_and_exec_events(self, provider):
        """Test custom tool calls and exec events attach to their call ids."""
        records = [
            {"timestamp": "2025-01-01T00:00:00Z", "type": "turn_context", "payload": {"cwd": "/w"}},
            {"timestamp": "2025-01-01T00:00:01Z", "type": "response_item", "payload": {
                "type": "custom_tool_call", "name": "apply_patch", "call_id": "c1", "status": "completed",
                "input": "*** Begin Patch\n*** Update File: src/app.py\n*** End Patch"}},
            {"timestamp": "2025-01-01T00:00:02Z", "type": "response_item", "payload": {
                "type": "custom_tool_call_output", "call_id": "c1", "output": "Success"}},
            {"timestamp": "2025-01-01T00:00:03Z", "type": "event_msg", "payload": {
                "type": "exec_command_begin", "call_id": "c2", "command": ["git", "status"], "cwd": "/w"}},
            {"timestamp": "2025-01-01T00:00:04Z", "type": "event_msg", "payload": {
                "type": "exec_command_end", "call_id": "c2", "exit_code": 1, "aggregated_output": "fatal"}},
        ]
        session = provider.parse_bytes(_jsonl(records), Path("rollout-t.jsonl"))

        tools = session.turns[0].tools
        assert [t.call_id for t in tools] == ["c1", "c2"]
        assert tools[0].name == "apply_patch"
        assert tools[0].output == "Success"
        assert tools[1].kind == "shell"
        assert tools[1].arguments["command"] == ["git", "status"]
        assert tools[1].success is False
        assert tools[1].events == ["exec_command_begin", "exec_command_end"]

    def test_compacted_and_agent_message(self, provider):
        """Test compacted summaries become assistant text and events become fallbacks."""
        records = [
            {"timestamp": "2025-01-01T00:00:00Z", "type": "compacted", "payload": {"message": "Summary so far"}},
            {"timestamp": "2025-01-01T00:00:01Z", "type": "turn_context", "payload": {}},
            {"timestamp": "2025-01-01T00:00:02Z", "type": "event_msg", "payload": {
                "type": "agent_message", "message": "Working on it"}},
        ]
        session = provider.parse_bytes(_jsonl(records), Path("rollout-t.jsonl"))

        assert len(session.turns) == 2
        assert session.turns[0].compacted
        assert session.turns[0].assistant_messages == ["Summary so far"]
        assert session.turns[1].event_text == "Working on it"

    def test_empty_turns_dropped(self, provider):
        """Test turns with nothing recorded are not emitted."""
        records = [
            {"timestamp": "2025-01-01T00:00:00Z", "type": "session_meta", "payload": {"id": "s"}},
            {"timestamp": "2025-01-01T00:00:01Z", "type": "turn_context", "payload": {"cwd": "/w"}},
            {"timestamp": "2025-01-01T00:00:02Z", "type": "event_msg", "payload": {
                "type": "token_count", "info": None, "rate_limits": {}}},
        ]
        session = provider.parse_bytes(_jsonl(records), Path("rollout-t.jsonl"))
        assert session.turns == []

    def test_legacy_meta_and_state_records(self, provider):
        """Test untyped legacy meta lines are read and state records skipped."""
        records = [
            {"id": "legacy-1", "timestamp": "2025-01-01T00:00:00Z", "instructions": "be nice"},
            {"record_type": "state"},
            {"timestamp": "2025-01-01T00:00:01Z", "type": "response_item", "payload": {
                "type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]}},
        ]
        session = provider.parse_bytes(_jsonl(records), Path("rollout-t.jsonl"))
        assert session.session_meta["id"] == "legacy-1"
        assert session.turns[0].user_inputs == ["hi"]

    def test_missing_timestamp_falls_back(self, provider):
        """Test a line without timestamp reuses the previous one."""
        records = rollout_records(1)
        del records[2]["timestamp"]
        session = provider.parse_bytes(_jsonl(records), Path("rollout-t.jsonl"))
        assert session.turns[0].user_inputs

    def test_missing_first_timestamp_is_error(self, provider):
        """Test a first line without timestamp raises ParseError."""
        data = _jsonl([{"type": "session_meta", "payload": {"id": "s"}}])
        with pytest.raises(ParseError, match="missing timestamp"):
            provider.parse_bytes(data, Path("rollout-t.jsonl"))

    def test_invalid_json_reports_line(self, provider):
        """Test malformed JSON names the offending line."""
        data = _jsonl(rollout_records(1)) + b"{not json\n"
        with pytest.raises(ParseError) as excinfo:
            provider.parse_bytes(data, Path("rollout-t.jsonl"))
        assert excinfo.value.line_number == 6
        assert isinstance(excinfo.value, SourceError)

    def test_invalid_utf8(self, provider):
        """Test undecodable bytes raise SourceError."""
        with pytest.raises(SourceError):
            provider.parse_bytes(b"\xff\xfe\x00", Path("rollout-t.jsonl"))

    def test_unreadable_file(self, provider, tmp_path):
        """Test a missing file raises SourceError."""
        with pytest.raises(SourceError):
            provider.parse_file(tmp_path / "rollout-missing.jsonl")


    def test_non_string_cwd_ignored(self, provider, tmp_path):
        """Test a numeric turn_context cwd is dropped instead of used as a path."""
        records = rollout_records(1)
        del records[0]["payload"]["cwd"]
        records[1]["payload"]["cwd"] = 42
        records[1]["payload"]["model"] = ["gpt"]
        session = provider.parse_file(write_records(tmp_path / "rollout-t.jsonl", records))

        assert session.cwd is None
        assert session.model is None
        assert "cwd" not in session.turns[0].context

    def test_non_list_reasoning_summary(self, provider, tmp_path):
        """Test a scalar reasoning summary is ignored."""
        records = rollout_records(1)
        records.append({
            "timestamp": "2025-01-01T12:00:05.000Z",
            "type": "response_item",
            "payload": {"type": "reasoning", "summary": 5},
        })
        session = provider.parse_file(write_records(tmp_path / "rollout-t.jsonl", records))
        assert session.turns[0].reasoning == []


class TestClaudeCodeProvider:
    """Tests for Claude Code transcript parsing."""

    @pytest.fixture
    def provider(self):
        return ClaudeCodeProvider()

    def test_extract_text_content_string(self):
        """Test extracting text from string content."""
        assert extract_text_content("Hello world") == "Hello world"

    def test_extract_text_content_list(self):
        """Test extracting text from list content."""
        content = [
            {"type": "text", "text": "Hello"},
            {"type": "text", "text": "world"},
        ]
        assert extract_text_content(content) == "Hello\nworld"

    def test_extract_text_skips_system_reminder(self):
        """Test system reminders are not treated as user text."""
        assert extract_text_content("<system-reminder>ignore</system-reminder>") == ""

    def test_parse_session(self, provider, tmp_path):
        """Test user prompts open turns and tool results attach to their calls."""
        lines = [
            {"type": "user", "sessionId": "abc", "cwd": "/home/me/proj", "gitBranch": "main",
             "version": "1.0.0", "timestamp": "2025-01-01T00:00:00Z",
             "message": {"role": "user", "content": "Fix the login bug"}},
            {"type": "assistant", "timestamp": "2025-01-01T00:00:02Z",
             "message": {"id": "m1", "role": "assistant", "model": "claude-sonnet-4",
                         "usage": {"input_tokens": 50, "output_tokens": 10},
                         "content": [{"type": "text", "text": "Looking at it."},
                                     {"type": "tool_use", "id": "tu1", "name": "Bash",
                                      "input": {"command": "pytest"}}]}},
            {"type": "assistant", "timestamp": "2025-01-01T00:00:02Z",
             "message": {"id": "m1", "role": "assistant", "model": "claude-sonnet-4",
                         "usage": {"input_tokens": 50, "output_tokens": 12},
                         "content": [{"type": "thinking", "thinking": "hmm"}]}},
            {"type": "user", "timestamp": "2025-01-01T00:00:03Z",
             "message": {"role": "user", "content": [
                 {"type": "tool_result", "tool_use_id": "tu1", "content": "1 failed", "is_error": True}]}},
            {"type": "summary", "summary": "Login fix"},
            {"type": "user", "timestamp": "2025-01-01T00:01:00Z",
             "message": {"role": "user", "content": [{"type": "text", "text": "Thanks"}]}},
        ]
        path = write_records(tmp_path / "-home-me-proj" / "abc.jsonl", lines)
        session = provider.parse_file(path)

        assert session.format == "claude-code"
        assert session.session_meta == {"id": "abc", "cwd": "/home/me/proj", "git_branch": "main", "version": "1.0.0"}
        assert session.model == "claude-sonnet-4"
        assert len(session.turns) == 2

        first = session.turns[0]
        assert first.user_inputs == ["Fix the login bug"]
        assert first.assistant_messages == ["Looking at it."]
        assert first.reasoning == ["hmm"]
        # Usage of one message id is counted once, last value wins
        assert first.token_usage["output_tokens"] == 12
        assert first.tools[0].name == "Bash"
        assert first.tools[0].output == "1 failed"
        assert first.tools[0].success is False
        assert session.turns[1].user_inputs == ["Thanks"]

    def test_partial_trailing_line_skipped(self, provider, tmp_path):
        """Test a half-written final line does not fail the parse."""
        path = tmp_path / "s.jsonl"
        path.write_text(
            json.dumps({"type": "user", "timestamp": "2025-01-01T00:00:00Z",
                        "message": {"role": "user", "content": "hello"}}) + "\n" + '{"type": "assis'
        )
        session = provider.parse_file(path)
        assert len(session.turns) == 1

    def test_cwd_from_project_dir(self, provider, tmp_path):
        """Test cwd falls back to the encoded project directory name."""
        path = write_records(tmp_path / "-srv-app" / "s.jsonl", [
            {"type": "user", "timestamp": "2025-01-01T00:00:00Z",
             "message": {"role": "user", "content": "hello"}},
        ])
        assert provider.parse_file(path).cwd == "/srv/app"

    def test_null_usage_values(self, provider, tmp_path):
        """Test null or non-numeric usage fields count as zero tokens."""
        path = write_records(tmp_path / "s.jsonl", [
            {"type": "user", "timestamp": "2025-01-01T00:00:00Z", "cwd": 7,
             "message": {"role": "user", "content": "hello"}},
            {"type": "assistant", "timestamp": "2025-01-01T00:00:02Z",
             "message": {"id": "m1", "role": "assistant", "model": 3,
                         "content": [{"type": "text", "text": "hi"}, {"type": "text", "text": 5}],
                         "usage": {"input_tokens": None, "output_tokens": 5,
                                   "cache_read_input_tokens": "lots"}}},
        ])
        session = provider.parse_file(path)
        assert session.turns[0].token_usage == {
            "input_tokens": 0, "output_tokens": 5, "cached_input_tokens": 0,
        }
        assert session.cwd is None
        assert session.model is None
