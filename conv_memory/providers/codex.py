"""Codex CLI rollout transcript provider.

Rollouts are JSONL files (``rollout-<timestamp>-<id>.jsonl``) where every line
is a timestamped record: ``session_meta``, ``turn_context`` (opens a turn),
``response_item`` (model I/O), ``event_msg`` (runtime events) and
``compacted`` (history summaries).
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..errors import ParseError
from ..models import ParsedSession, RawTurn, ToolInvocation
from . import register_provider
from .base import TranscriptProvider, parse_timestamp

logger = logging.getLogger(__name__)

SHELL_FUNCTION_NAMES = ("shell", "container.exec")

# event_msg types that belong to a tool call, keyed to the kind they imply
ACTION_EVENT_KINDS = {
    "exec_command_begin": "shell",
    "exec_command_end": "shell",
    "mcp_tool_call_begin": "mcp_tool",
    "mcp_tool_call_end": "mcp_tool",
    "web_search_begin": "web_search",
    "web_search_end": "web_search",
}


def _load_json_string(value: Any) -> Any:
    """Decode a JSON document carried inside a string field."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _is_legacy_session_meta(value: dict) -> bool:
    return (
        "type" not in value
        and "record_type" not in value
        and "id" in value
        and "timestamp" in value
    )


class _RolloutBuilder:
    """Accumulates rollout records into turns."""

    def __init__(self):
        self.session = ParsedSession(format=CodexProvider.name)
        self.turns: list[RawTurn] = []
        self.current: Optional[RawTurn] = None
        self._actions: dict[str, ToolInvocation] = {}

    def observe(self, timestamp: datetime) -> None:
        session = self.session
        if session.started_at is None or timestamp < session.started_at:
            session.started_at = timestamp
        if session.ended_at is None or timestamp > session.ended_at:
            session.ended_at = timestamp

    def ensure_turn(self, timestamp: datetime) -> RawTurn:
        if self.current is None:
            self.current = RawTurn(model=self.session.model)
            self._actions = {}
        self.current.observe(timestamp)
        return self.current

    def start_turn(self, timestamp: datetime, context: dict) -> RawTurn:
        self._close_turn()
        self.current = RawTurn(context=context, model=context.get("model") or self.session.model)
        self._actions = {}
        self.current.observe(timestamp)
        return self.current

    def action(self, call_id: Optional[str], kind: str) -> ToolInvocation:
        if call_id and call_id in self._actions:
            return self._actions[call_id]
        tool = ToolInvocation(kind=kind, call_id=call_id)
        self.current.tools.append(tool)
        if call_id:
            self._actions[call_id] = tool
        return tool

    def _close_turn(self) -> None:
        if self.current is not None and not self.current.is_empty():
            self.turns.append(self.current)
        self.current = None

    def finish(self) -> ParsedSession:
        self._close_turn()
        self.session.turns = self.turns
        return self.session


@register_provider
class CodexProvider(TranscriptProvider):
    """Provider for Codex CLI rollout files."""

    name = "codex"
    display_name = "Codex CLI"
    file_pattern = "rollout-*.jsonl"

    def parse_bytes(self, data: bytes, path: Path) -> ParsedSession:
        text = self.decode(data, path)
        builder = _RolloutBuilder()
        last_timestamp: Optional[datetime] = None

        for line_number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError as e:
                raise ParseError(f"invalid JSON: {e.msg}", path=str(path), line_number=line_number) from e
            if not isinstance(value, dict):
                raise ParseError("record is not an object", path=str(path), line_number=line_number)

            if value.get("record_type") == "state":
                continue

            timestamp = parse_timestamp(value.get("timestamp"))
            if timestamp is None:
                timestamp = last_timestamp or builder.session.started_at
            if timestamp is None:
                raise ParseError("missing timestamp", path=str(path), line_number=line_number)
            last_timestamp = timestamp
            builder.observe(timestamp)

            item_type = value.get("type")
            if item_type is None:
                if _is_legacy_session_meta(value):
                    self._handle_session_meta(builder, value)
                    continue
                raise ParseError("missing record type", path=str(path), line_number=line_number)

            payload = value.get("payload")
            if item_type == "session_meta":
                if isinstance(payload, dict):
                    self._handle_session_meta(builder, payload)
            elif item_type == "turn_context":
                self._handle_turn_context(builder, timestamp, payload if isinstance(payload, dict) else {})
            elif item_type == "response_item":
                if isinstance(payload, dict):
                    self._handle_response_item(builder, timestamp, payload)
            elif item_type == "event_msg":
                if isinstance(payload, dict):
                    self._handle_event(builder, timestamp, payload)
            elif item_type == "compacted":
                if isinstance(payload, dict):
                    self._handle_compacted(builder, timestamp, payload)
            else:
                logger.debug(f"Ignoring unknown rollout record type {item_type!r} in {path}")

        return builder.finish()

    def _handle_session_meta(self, builder: _RolloutBuilder, meta: dict) -> None:
        builder.session.session_meta = dict(meta)
        if isinstance(meta.get("cwd"), str) and meta["cwd"]:
            builder.session.cwd = meta["cwd"]

    def _handle_turn_context(self, builder: _RolloutBuilder, timestamp: datetime, payload: dict) -> None:
        sandbox = payload.get("sandbox_policy")
        if not isinstance(sandbox, dict):
            sandbox = {}
        context = {
            "cwd": payload.get("cwd") or payload.get("cwd_path"),
            "approval_policy": payload.get("approval_policy"),
            "sandbox_mode": sandbox.get("mode"),
            "network_access": sandbox.get("network_access"),
            "model": payload.get("model"),
            "effort": payload.get("effort"),
            "summary": payload.get("summary"),
        }
        context = {k: v for k, v in context.items() if v is not None}
        if not isinstance(context.get("cwd"), str):
            context.pop("cwd", None)
        if not isinstance(context.get("model"), str):
            context.pop("model", None)
        if context.get("cwd") and not builder.session.cwd:
            builder.session.cwd = context["cwd"]
        if context.get("model"):
            builder.session.model = context["model"]
        builder.start_turn(timestamp, context)

    def _handle_response_item(self, builder: _RolloutBuilder, timestamp: datetime, payload: dict) -> None:
        turn = builder.ensure_turn(timestamp)
        item_type = payload.get("type")

        if item_type == "message":
            self._handle_message(turn, payload)
        elif item_type == "reasoning":
            summary = payload.get("summary")
            for item in summary if isinstance(summary, list) else []:
                if isinstance(item, dict) and isinstance(item.get("text"), str):
                    turn.reasoning.append(item["text"])
            if payload.get("content") is not None or payload.get("encrypted_content"):
                turn.reasoning_encrypted = True
        elif item_type == "function_call":
            self._handle_function_call(builder, payload)
        elif item_type == "function_call_output":
            self._handle_function_output(builder, turn, payload)
        elif item_type == "custom_tool_call":
            tool = builder.action(payload.get("call_id"), "custom_tool")
            tool.kind = "custom_tool"
            tool.name = payload.get("name") or tool.name
            tool.status = payload.get("status") or tool.status
            tool.arguments = payload.get("input", "")
        elif item_type == "custom_tool_call_output":
            tool = builder.action(payload.get("call_id"), "custom_tool")
            output = payload.get("output")
            tool.output = output if isinstance(output, str) else json.dumps(output)
            turn.tool_output_text = tool.output
        elif item_type == "local_shell_call":
            action = payload.get("action")
            if not isinstance(action, dict):
                action = {}
            tool = builder.action(payload.get("call_id"), "shell")
            tool.kind = "shell"
            tool.name = "local_shell"
            tool.status = payload.get("status") or tool.status
            tool.arguments = {
                "command": action.get("command") or [],
                "workdir": action.get("working_directory") or action.get("workdir"),
                "timeout_ms": action.get("timeout_ms"),
                "with_escalated_permissions": action.get("with_escalated_permissions"),
            }
        elif item_type == "web_search_call":
            action = payload.get("action")
            tool = builder.action(payload.get("call_id"), "web_search")
            tool.kind = "web_search"
            tool.name = "web_search"
            tool.status = payload.get("status") or tool.status
            tool.arguments = action
            if isinstance(action, dict) and action.get("query"):
                tool.output = tool.output or f"query: {action['query']}"
        else:
            logger.debug(f"Ignoring response item of type {item_type!r}")

    def _handle_message(self, turn: RawTurn, payload: dict) -> None:
        role = payload.get("role")
        content = payload.get("content")
        if not isinstance(content, list):
            content = []

        if role == "user":
            texts = []
            images = 0
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "input_text" and isinstance(item.get("text"), str):
                    texts.append(item["text"])
                elif item.get("type") == "input_image" and item.get("image_url"):
                    images += 1
            text = "".join(texts)
            if text:
                turn.user_inputs.append(text)
            turn.image_count += images
        elif role == "assistant":
            texts = []
            for item in content:
                if not isinstance(item, dict):
                    continue
                if isinstance(item.get("text"), str):
                    texts.append(item["text"])
                elif isinstance(item.get("content"), str):
                    texts.append(item["content"])
            if texts:
                turn.assistant_messages.append("".join(texts))

    def _handle_function_call(self, builder: _RolloutBuilder, payload: dict) -> None:
        name = payload.get("name") or ""
        arguments = _load_json_string(payload.get("arguments"))

        if name in SHELL_FUNCTION_NAMES:
            args = arguments if isinstance(arguments, dict) else {}
            command = args.get("command") or []
            if isinstance(command, str):
                command = [command]
            tool = builder.action(payload.get("call_id"), "shell")
            tool.kind = "shell"
            tool.arguments = {
                "command": command,
                "workdir": args.get("workdir") or args.get("working_directory"),
                "timeout_ms": args.get("timeout_ms") or args.get("timeout"),
                "with_escalated_permissions": args.get("with_escalated_permissions"),
            }
        else:
            tool = builder.action(payload.get("call_id"), "function_call")
            tool.kind = "function_call"
            tool.arguments = arguments
        tool.name = name
        tool.events.append("function_call")

    def _handle_function_output(self, builder: _RolloutBuilder, turn: RawTurn, payload: dict) -> None:
        tool = builder.action(payload.get("call_id"), "function_call")
        raw = payload.get("output")
        decoded = _load_json_string(raw)
        if isinstance(decoded, dict):
            content = decoded.get("content", decoded.get("output"))
            success = decoded.get("success")
            metadata = decoded.get("metadata")
            if success is None and isinstance(metadata, dict) and "exit_code" in metadata:
                success = metadata["exit_code"] == 0
            tool.success = success if isinstance(success, bool) else tool.success
        else:
            content = raw
        if content is not None and not isinstance(content, str):
            content = json.dumps(content)
        tool.output = content
        if content:
            turn.tool_output_text = content

    def _handle_event(self, builder: _RolloutBuilder, timestamp: datetime, payload: dict) -> None:
        event_type = payload.get("type") or ""
        turn = builder.ensure_turn(timestamp)

        if event_type == "agent_message":
            if isinstance(payload.get("message"), str):
                turn.event_text = payload["message"]
        elif event_type in ("agent_reasoning", "agent_reasoning_raw_content"):
            if isinstance(payload.get("text"), str):
                turn.event_text = payload["text"]
        elif event_type == "token_count":
            info = payload.get("info")
            if isinstance(info, dict):
                if isinstance(info.get("last_token_usage"), dict):
                    turn.token_usage = info["last_token_usage"]
                if isinstance(info.get("total_token_usage"), dict):
                    builder.session.total_token_usage = info["total_token_usage"]
                if isinstance(info.get("model_context_window"), int):
                    builder.session.model_context_window = info["model_context_window"]
        elif event_type == "plan_update":
            turn.plan_updates += 1
        elif event_type in ("exec_approval_request", "apply_patch_approval_request"):
            turn.approvals += 1
        elif event_type in ACTION_EVENT_KINDS:
            self._handle_action_event(builder, event_type, payload)

    def _handle_action_event(self, builder: _RolloutBuilder, event_type: str, payload: dict) -> None:
        call_id = payload.get("call_id") or payload.get("callId")
        tool = builder.action(call_id, ACTION_EVENT_KINDS[event_type])
        tool.events.append(event_type)

        if event_type == "exec_command_begin":
            if tool.arguments is None:
                command = payload.get("command") or []
                tool.arguments = {"command": command, "workdir": payload.get("cwd")}
        elif event_type == "exec_command_end":
            exit_code = payload.get("exit_code")
            if isinstance(exit_code, int):
                tool.success = exit_code == 0
                tool.status = "completed" if exit_code == 0 else f"exit {exit_code}"
            if tool.output is None:
                output = payload.get("aggregated_output") or payload.get("stdout")
                if isinstance(output, str) and output:
                    tool.output = output
        elif event_type == "mcp_tool_call_begin":
            invocation = payload.get("invocation")
            if isinstance(invocation, dict):
                server = invocation.get("server") or ""
                tool_name = invocation.get("tool") or ""
                tool.name = f"{server}.{tool_name}" if server else tool_name
                tool.arguments = invocation.get("arguments")
        elif event_type == "mcp_tool_call_end":
            result = payload.get("result")
            if tool.output is None and result is not None:
                tool.output = result if isinstance(result, str) else json.dumps(result)
        elif event_type == "web_search_end":
            if isinstance(payload.get("query"), str):
                tool.arguments = tool.arguments or {"query": payload["query"]}

    def _handle_compacted(self, builder: _RolloutBuilder, timestamp: datetime, payload: dict) -> None:
        turn = builder.ensure_turn(timestamp)
        message = payload.get("message")
        if isinstance(message, str) and message:
            turn.assistant_messages.append(message)
            turn.tool_output_text = message
            turn.compacted = True
