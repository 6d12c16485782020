"""Claude Code session provider."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models import ParsedSession, RawTurn, ToolInvocation
from . import register_provider
from .base import TranscriptProvider, parse_count, parse_timestamp

logger = logging.getLogger(__name__)

SKIPPED_LINE_TYPES = ("file-history-snapshot", "progress", "summary", "system")


def decode_path(encoded: str) -> str:
    """Decode a project directory name back to the original path."""
    return encoded.replace("-", "/")


def extract_text_content(content) -> str:
    """Extract text from message content (handles both string and list formats)."""
    if isinstance(content, str):
        # String content - return as-is (skip system reminders)
        if content.strip().startswith("<system-reminder>"):
            return ""
        return content
    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    text = item.get("text", "")
                    if isinstance(text, str) and text and not text.strip().startswith("<system-reminder>"):
                        texts.append(text)
            elif isinstance(item, str):
                texts.append(item)
        return "\n".join(texts)
    return ""


def _tool_result_text(block: dict) -> str:
    content = block.get("content", "")
    if isinstance(content, list):
        return "\n".join(
            item["text"] for item in content
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
        )
    return content if isinstance(content, str) else json.dumps(content)


@register_provider
class ClaudeCodeProvider(TranscriptProvider):
    """Provider for Claude Code project transcripts."""

    name = "claude-code"
    display_name = "Claude Code"
    file_pattern = "*.jsonl"

    def parse_bytes(self, data: bytes, path: Path) -> ParsedSession:
        text = self.decode(data, path)
        session = ParsedSession(format=self.name)
        meta: dict = {}
        turns: list[RawTurn] = []
        current: Optional[RawTurn] = None
        tools_by_id: dict[str, ToolInvocation] = {}
        usage_by_message: dict[str, dict] = {}
        last_timestamp: Optional[datetime] = None

        def close_turn():
            if current is None:
                return
            if usage_by_message:
                usages = usage_by_message.values()
                current.token_usage = {
                    "input_tokens": sum(parse_count(u.get("input_tokens")) for u in usages),
                    "output_tokens": sum(parse_count(u.get("output_tokens")) for u in usages),
                    "cached_input_tokens": sum(parse_count(u.get("cache_read_input_tokens")) for u in usages),
                }
            if not current.is_empty():
                turns.append(current)

        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                data_line = json.loads(line)
            except json.JSONDecodeError:
                # Trailing partial line of a session still being written
                logger.debug(f"Skipping undecodable line in {path}")
                continue
            if not isinstance(data_line, dict):
                continue

            msg_type = data_line.get("type")
            if msg_type in SKIPPED_LINE_TYPES or msg_type not in ("user", "assistant"):
                continue

            timestamp = parse_timestamp(data_line.get("timestamp")) or last_timestamp
            last_timestamp = timestamp
            if timestamp is not None:
                if session.started_at is None or timestamp < session.started_at:
                    session.started_at = timestamp
                if session.ended_at is None or timestamp > session.ended_at:
                    session.ended_at = timestamp

            if not meta.get("id") and data_line.get("sessionId"):
                meta["id"] = data_line["sessionId"]
            for source_key, meta_key in (("cwd", "cwd"), ("gitBranch", "git_branch"), ("version", "version")):
                if isinstance(data_line.get(source_key), str) and data_line[source_key] and not meta.get(meta_key):
                    meta[meta_key] = data_line[source_key]

            msg = data_line.get("message")
            if not isinstance(msg, dict):
                continue
            content = msg.get("content", "")

            if msg_type == "user":
                if data_line.get("isCompactSummary"):
                    close_turn()
                    current = RawTurn(compacted=True)
                    tools_by_id, usage_by_message = {}, {}
                    summary = extract_text_content(content)
                    current.assistant_messages.append(summary)
                    current.tool_output_text = summary
                    current.observe(timestamp)
                    continue

                user_text = "" if data_line.get("isMeta") else extract_text_content(content)
                if user_text:
                    close_turn()
                    current = RawTurn(context={"cwd": data_line.get("cwd"), "git_branch": data_line.get("gitBranch")})
                    tools_by_id, usage_by_message = {}, {}
                    current.user_inputs.append(user_text)

                if current is None:
                    current = RawTurn()
                current.observe(timestamp)
                if isinstance(content, list):
                    for block in content:
                        if not isinstance(block, dict):
                            continue
                        if block.get("type") == "image":
                            current.image_count += 1
                        elif block.get("type") == "tool_result":
                            tool_id = block.get("tool_use_id")
                            tool = tools_by_id.get(tool_id)
                            if tool is None:
                                tool = ToolInvocation(kind="tool_use", call_id=tool_id)
                                current.tools.append(tool)
                            tool.output = _tool_result_text(block)
                            tool.success = not block.get("is_error", False)
                            tool.status = "error" if block.get("is_error") else "completed"
                            if tool.output:
                                current.tool_output_text = tool.output
                continue

            # assistant
            if current is None:
                current = RawTurn()
            current.observe(timestamp)
            if isinstance(msg.get("model"), str) and msg["model"] not in ("", "<synthetic>"):
                current.model = msg["model"]
                session.model = msg["model"]
            if isinstance(msg.get("usage"), dict):
                usage_by_message[msg.get("id") or str(len(usage_by_message))] = msg["usage"]

            if isinstance(content, str):
                if content:
                    current.assistant_messages.append(content)
                continue
            for block in content if isinstance(content, list) else []:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "text" and isinstance(block.get("text"), str) and block["text"]:
                    current.assistant_messages.append(block["text"])
                elif block_type == "thinking":
                    if isinstance(block.get("thinking"), str) and block["thinking"]:
                        current.reasoning.append(block["thinking"])
                    elif block.get("signature"):
                        current.reasoning_encrypted = True
                elif block_type == "redacted_thinking":
                    current.reasoning_encrypted = True
                elif block_type == "tool_use":
                    tool = ToolInvocation(
                        kind="tool_use",
                        name=block.get("name", ""),
                        call_id=block.get("id"),
                        arguments=block.get("input"),
                    )
                    current.tools.append(tool)
                    if tool.call_id:
                        tools_by_id[tool.call_id] = tool

        close_turn()

        session.session_meta = meta
        session.turns = turns
        session.cwd = meta.get("cwd")
        if not session.cwd and path.parent.name.startswith("-"):
            session.cwd = decode_path(path.parent.name)
        return session
