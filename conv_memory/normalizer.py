"""Turn adapter output into conversation and turn records.

The normalizer is format-agnostic: it only sees ParsedSession/RawTurn and
produces the Conversation/Turn records the store persists.
"""

import hashlib
import json
import logging
from pathlib import PurePath
from typing import Optional

from .errors import SourceError
from .models import Conversation, ParsedSession, RawTurn, ToolInvocation, Turn, TurnTelemetry
from .providers.base import parse_count

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
TOOL_OUTPUT_PREVIEW_CHARS = 200
RECENT_QUESTIONS = 5
EMPTY_TURN_TEXT = "No transcript recorded for this turn."

# Large session_meta fields that are not useful as filters
SKIPPED_META_KEYS = ("instructions", "base_instructions")
PATCH_FILE_PREFIXES = ("*** Update File: ", "*** Add File: ", "*** Delete File: ")


def estimate_token_count(text: str) -> int:
    """Whitespace word count, used when a transcript carries no token usage."""
    return len(text.split())


def normalize_session(
    parsed: ParsedSession,
    conversation_id: str,
    source_path: str,
) -> tuple[Conversation, list[Turn]]:
    """Normalize one parsed transcript.

    Raises:
        SourceError: if the transcript produced no turns.
    """
    if not parsed.turns:
        raise SourceError("transcript contains no turns", path=source_path)

    turns = [normalize_turn(raw, i, conversation_id) for i, raw in enumerate(parsed.turns)]

    model = parsed.model
    if not model:
        model = next((t.telemetry.model for t in reversed(turns) if t.telemetry.model), None)

    questions = [t.user_text for t in turns if t.user_text]
    preview = questions[-1] if questions else next(
        (t.assistant_text or t.fallback_text for t in turns if t.assistant_text or t.fallback_text), ""
    )

    conversation = Conversation(
        id=conversation_id,
        source_path=source_path,
        format=parsed.format,
        started_at=parsed.started_at,
        ended_at=parsed.ended_at,
        turn_count=len(turns),
        prompt_tokens=sum(t.telemetry.prompt_tokens for t in turns),
        completion_tokens=sum(t.telemetry.completion_tokens for t in turns),
        metadata=build_metadata(parsed, model),
        preview=_truncate(preview, PREVIEW_CHARS),
        model=model,
        cwd=parsed.cwd,
        commands=collect_commands(turns),
        files_touched=collect_touched_files(turns),
        questions=[_truncate(q, PREVIEW_CHARS) for q in questions[-RECENT_QUESTIONS:]],
    )
    if parsed.started_at and parsed.ended_at:
        conversation.duration_seconds = (parsed.ended_at - parsed.started_at).total_seconds()
    return conversation, turns


def normalize_turn(raw: RawTurn, index: int, conversation_id: str = "") -> Turn:
    user_text = _render_user_inputs(raw)
    assistant_text = "\n\n".join(m for m in raw.assistant_messages if m)

    fallback_text = ""
    if not assistant_text:
        # reasoning > tool output > runtime event
        if raw.reasoning:
            fallback_text = "\n\n".join(raw.reasoning)
        elif raw.tool_output_text:
            fallback_text = raw.tool_output_text
        elif raw.event_text:
            fallback_text = raw.event_text

    if raw.compacted:
        role = "compacted"
    elif user_text:
        role = "exchange"
    elif assistant_text:
        role = "assistant"
    elif raw.tools:
        role = "tool"
    else:
        role = "event"

    turn = Turn(
        index=index,
        role=role,
        user_text=user_text,
        assistant_text=assistant_text,
        fallback_text=fallback_text,
        tools=list(raw.tools),
        telemetry=_build_telemetry(raw, user_text, assistant_text or fallback_text),
        started_at=raw.started_at,
        ended_at=raw.ended_at,
        conversation_id=conversation_id,
    )
    turn.turn_hash = compute_turn_hash(turn)
    return turn


def _build_telemetry(raw: RawTurn, prompt_text: str, completion_text: str) -> TurnTelemetry:
    telemetry = TurnTelemetry(
        model=raw.model,
        plan_updates=raw.plan_updates,
        approvals=raw.approvals,
        reasoning_encrypted=raw.reasoning_encrypted,
    )
    if raw.started_at and raw.ended_at:
        telemetry.latency_ms = int((raw.ended_at - raw.started_at).total_seconds() * 1000)

    usage = raw.token_usage
    if usage:
        telemetry.prompt_tokens = parse_count(usage.get("input_tokens"))
        telemetry.completion_tokens = parse_count(usage.get("output_tokens"))
        telemetry.cached_tokens = parse_count(usage.get("cached_input_tokens"))
        telemetry.reasoning_tokens = parse_count(usage.get("reasoning_output_tokens"))
    else:
        telemetry.prompt_tokens = estimate_token_count(prompt_text)
        telemetry.completion_tokens = estimate_token_count(completion_text)
        telemetry.tokens_estimated = True
    return telemetry


def _render_user_inputs(raw: RawTurn) -> str:
    parts = [text.strip() for text in raw.user_inputs if text and text.strip()]
    text = "\n\n".join(parts)
    if raw.image_count:
        marker = f"[{raw.image_count} image(s)]"
        text = f"{text}\n{marker}" if text else marker
    return text


def compute_turn_hash(turn: Turn) -> str:
    """Content hash of a turn, independent of its embedding and position."""
    payload = {
        "role": turn.role,
        "user_text": turn.user_text,
        "assistant_text": turn.assistant_text,
        "fallback_text": turn.fallback_text,
        "tools": [tool.to_dict() for tool in turn.tools],
        "telemetry": turn.telemetry.to_dict(),
        "started_at": turn.started_at.isoformat() if turn.started_at else None,
        "ended_at": turn.ended_at.isoformat() if turn.ended_at else None,
    }
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def describe_tool(tool: ToolInvocation) -> str:
    args = tool.arguments if isinstance(tool.arguments, dict) else {}
    if tool.kind == "shell":
        command = args.get("command") or []
        joined = " ".join(str(c) for c in command) if isinstance(command, list) else str(command)
        summary = f"shell `{joined}`"
        if args.get("workdir"):
            summary += f" (cwd: {args['workdir']})"
    elif tool.kind == "web_search":
        summary = f"web_search {args.get('query', '')}".rstrip()
    else:
        summary = f"{tool.kind} {tool.name or '(unknown)'}"

    if tool.call_id:
        summary += f" (call_id={tool.call_id})"
    if tool.status:
        summary += f" [status: {tool.status}]"
    if tool.output and tool.output.strip():
        summary += f" -> {_truncate(tool.output.strip(), TOOL_OUTPUT_PREVIEW_CHARS)}"
    return summary


def render_turn_text(turn: Turn) -> str:
    """Render the text a turn is embedded from."""
    sections = []
    if turn.user_text:
        sections.append(f"User:\n{turn.user_text}")
    if turn.assistant_text:
        sections.append(f"Assistant:\n{turn.assistant_text}")
    elif turn.fallback_text:
        sections.append(f"Assistant:\n[fallback] {turn.fallback_text}")
    if turn.tools:
        lines = "\n".join(f"- {describe_tool(tool)}" for tool in turn.tools)
        sections.append(f"Actions:\n{lines}")
    if not sections:
        return EMPTY_TURN_TEXT
    return "\n\n".join(sections)


def build_metadata(parsed: ParsedSession, model: Optional[str] = None) -> dict:
    metadata = {
        key: value for key, value in parsed.session_meta.items()
        if key not in SKIPPED_META_KEYS
    }
    if "id" in metadata:
        metadata["session_id"] = metadata.pop("id")
    metadata["format"] = parsed.format
    if isinstance(parsed.cwd, str) and parsed.cwd:
        metadata["cwd"] = parsed.cwd
        metadata["project"] = PurePath(parsed.cwd).name
    if model:
        metadata["model"] = model
    if parsed.model_context_window:
        metadata["model_context_window"] = parsed.model_context_window
    return metadata


def collect_commands(turns: list[Turn]) -> list[str]:
    commands = set()
    for turn in turns:
        for tool in turn.tools:
            if tool.kind != "shell" or not isinstance(tool.arguments, dict):
                continue
            command = tool.arguments.get("command")
            if isinstance(command, list) and command:
                first = str(command[0])
            elif isinstance(command, str) and command.strip():
                first = command.split()[0]
            else:
                continue
            commands.add(PurePath(first).name)
    return sorted(commands)


def collect_touched_files(turns: list[Turn]) -> list[str]:
    files = set()
    for turn in turns:
        for tool in turn.tools:
            for text in _argument_strings(tool.arguments):
                for line in text.splitlines():
                    line = line.strip()
                    for prefix in PATCH_FILE_PREFIXES:
                        if line.startswith(prefix):
                            path = line[len(prefix):].strip()
                            if path:
                                files.add(path)
    return sorted(files)


def _argument_strings(value) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [s for v in value.values() for s in _argument_strings(v)]
    if isinstance(value, list):
        return [s for v in value for s in _argument_strings(v)]
    return []


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
