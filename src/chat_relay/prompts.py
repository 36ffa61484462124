"""Prompt assembly for relayed chat turns.

Pure functions: no I/O apart from the optional prompt trace log.
"""

from __future__ import annotations

import logging
from typing import Any

_logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
## Assistant Guidelines

You are a helpful, expert assistant. Answer in clear, well-structured Markdown.

### Structure
- Open with a one-sentence answer or conclusion.
- Follow with the explanation, broken into short sections with headers.
- Use code blocks and tables for technical material.
- Keep paragraphs short (one to three sentences).

### Tone
- Precise yet approachable, as if explaining to a capable colleague.
- Prefer clarity over brevity, but do not pad the answer.
- Invite follow-up questions when it helps.
"""

CHAT_INSTRUCTIONS = """\
### Task
- Follow the system guidelines above.
- Use the conversation history for additional context when crafting your response."""

SECTION_SEPARATOR = "\n\n---\n\n"


def format_history(messages: list[dict[str, Any]]) -> str:
    """Render earlier turns as ``role: content`` lines."""
    return "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in messages)


def build_user_prompt(
    question: str,
    chat_history: str | None = None,
    instructions: str | None = None,
) -> str:
    """Assemble the user prompt; blank sections are left out."""
    sections: list[str] = []
    if instructions and instructions.strip():
        sections.append(instructions.strip())
    for label, value in (
        ("Conversation History", chat_history),
        ("User Question", question),
    ):
        if value and value.strip():
            sections.append(f"## {label}\n{value.strip()}")
    return SECTION_SEPARATOR.join(sections)


def build_provider_messages(
    question: str,
    chat_history: str | None = None,
    instructions: str | None = None,
    system_prompt: str | None = None,
) -> list[dict[str, str]]:
    """Return the ordered ``[system, user]`` message list for the provider."""
    return [
        {"role": "system", "content": (system_prompt or SYSTEM_PROMPT).strip()},
        {"role": "user", "content": build_user_prompt(question, chat_history, instructions)},
    ]


def _truncate(value: str, limit: int) -> str:
    if limit <= 0 or len(value) <= limit:
        return value
    return value[:limit] + "…"


def trace_prompt(
    label: str,
    messages: list[dict[str, str]],
    request_id: str | None = None,
    preview: int = 2000,
) -> None:
    """Log the provider messages, each truncated to *preview* characters."""
    for index, message in enumerate(messages):
        _logger.info(
            "[%s] request=%s #%d %s:\n%s",
            label, request_id or "-", index, message["role"],
            _truncate(message["content"], preview),
        )
