"""Rule-based history compression that keeps tool-call pairing intact.

Messages are rewritten in place, never dropped or reordered, so every
assistant tool call still has its tool result directly after it.
"""

import re
from dataclasses import dataclass, field, replace

from toolpilot.config import CompressionMode
from toolpilot.context.tokenization import Tokenizer
from toolpilot.llm import Message

USER_SUMMARY_TRIGGER = 500
ASSISTANT_TOOL_CALL_SUMMARY_TRIGGER = 300
ASSISTANT_SUMMARY_TRIGGER = 500

_ERROR_PATTERNS = (
    re.compile(r"Error:\s*(\w+)", re.IGNORECASE),
    re.compile(r"(\w+Error):", re.IGNORECASE),
    re.compile(r"(\w+Exception):", re.IGNORECASE),
)
_SUCCESS_PATTERNS = (
    re.compile(r"^success$", re.IGNORECASE),
    re.compile(r"^ok$", re.IGNORECASE),
    re.compile(r"^done$", re.IGNORECASE),
    re.compile(r"completed successfully", re.IGNORECASE),
    re.compile(r"no errors", re.IGNORECASE),
)
_HAS_ERROR = re.compile(r"error|exception|failed|failure", re.IGNORECASE)
_RESOLVED = re.compile(r"fixed|resolved|success|working", re.IGNORECASE)
_STILL_FAILING = re.compile(r"failed|error|broken", re.IGNORECASE)
_DECISION = re.compile(r"decided|decision|chose|chosen|will use|using|selected|choose", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"[.!?]\s+")
_FILE_TOOL_MARKERS = ("write", "edit", "create", "modify")


@dataclass
class PreservedInfo:
    key_decisions: int = 0
    file_modifications: int = 0
    tool_results: int = 0
    recent_messages: int = 0


@dataclass
class CompressionResult:
    compressed_messages: list[Message]
    original_token_count: int
    compressed_token_count: int
    reduction_percentage: float
    preserved_info: PreservedInfo = field(default_factory=PreservedInfo)


def count_total_tokens(messages: list[Message], tokenizer: Tokenizer) -> int:
    return sum(tokenizer.count_tokens(message) for message in messages)


def compress_messages(
    messages: list[Message],
    tokenizer: Tokenizer,
    mode: CompressionMode = "default",
    keep_recent: int = 2,
) -> CompressionResult:
    """Compress everything except system messages and the last ``keep_recent``.

    Args:
        messages: Conversation history (system message excluded or included)
        tokenizer: Counter used for the before/after totals
        mode: ``aggressive`` keeps outcomes only, ``conservative`` keeps most detail
        keep_recent: Trailing messages left untouched

    Returns:
        Compressed list with token statistics
    """
    if not messages:
        return CompressionResult([], 0, 0, 0.0)

    original_tokens = count_total_tokens(messages, tokenizer)
    recent_start = len(messages) - keep_recent if keep_recent > 0 else len(messages)

    system: list[Message] = []
    compressible: list[Message] = []
    recent: list[Message] = []
    for index, message in enumerate(messages):
        if message.role == "system":
            system.append(message)
        elif index >= recent_start:
            recent.append(message)
        else:
            compressible.append(message)

    compressed = [_shorter(message, _compress_message(message, mode), tokenizer) for message in compressible]
    result_messages = [*system, *compressed, *recent]
    compressed_tokens = count_total_tokens(result_messages, tokenizer)
    reduction = (
        (original_tokens - compressed_tokens) / original_tokens * 100 if original_tokens > 0 else 0.0
    )

    return CompressionResult(
        compressed_messages=result_messages,
        original_token_count=original_tokens,
        compressed_token_count=compressed_tokens,
        reduction_percentage=reduction,
        preserved_info=PreservedInfo(
            key_decisions=sum(
                1 for m in compressed if m.role in ("user", "assistant") and _DECISION.search(m.content or "")
            ),
            file_modifications=sum(
                1
                for m in compressed
                if m.role == "tool" and m.name and any(k in m.name.lower() for k in _FILE_TOOL_MARKERS)
            ),
            tool_results=sum(1 for m in compressed if m.role == "tool"),
            recent_messages=len(recent),
        ),
    )


def _shorter(original: Message, candidate: Message, tokenizer: Tokenizer) -> Message:
    # A rewrite never costs more tokens than the message it replaces.
    if candidate is original:
        return original
    if tokenizer.count_tokens(candidate) > tokenizer.count_tokens(original):
        return original
    return candidate


def _compress_message(message: Message, mode: CompressionMode) -> Message:
    if message.role == "tool":
        return _compress_tool_result(message, mode)
    if message.role == "user":
        return _compress_user_message(message, mode)
    if message.role == "assistant":
        return _compress_assistant_message(message, mode)
    return message


def _compress_tool_result(message: Message, mode: CompressionMode) -> Message:
    if not message.name:
        return message
    content = message.content or ""
    if mode == "aggressive":
        if _HAS_ERROR.search(content):
            text = _tool_error_summary(message.name, content)
        else:
            text = f"Tool: {message.name}\nResult: success"
    elif mode == "conservative":
        text = _tool_result_conservative(message.name, content)
    else:
        text = _tool_result_default(message.name, content)
    return replace(message, content=text)


def _tool_result_default(tool_name: str, content: str) -> str:
    error = _extract_error_info(content)
    if error:
        return _format_error(tool_name, error)
    if any(pattern.search(content) for pattern in _SUCCESS_PATTERNS):
        return f"Tool: {tool_name}\nResult: success"
    key_info = _extract_key_info(content)
    if key_info:
        return f"Tool: {tool_name}\nResult: {key_info}"
    first_line = content.split("\n", 1)[0]
    return f"Tool: {tool_name}\nResult: {first_line[:100]}"


def _tool_result_conservative(tool_name: str, content: str) -> str:
    error = _extract_error_info(content)
    if error:
        return _format_error(tool_name, error)
    lines = [line for line in content.split("\n") if line.strip()]
    summary = "\n".join(lines[:3])
    suffix = "..." if len(lines) > 3 else ""
    return f"Tool: {tool_name}\nResult: {summary}{suffix}"


def _tool_error_summary(tool_name: str, content: str) -> str:
    error = _extract_error_info(content)
    if error:
        return _format_error(tool_name, error)
    return f"Tool: {tool_name}\nError: (error occurred)"


def _format_error(tool_name: str, error: tuple[str, str, bool]) -> str:
    error_type, details, resolved = error
    return f"Tool: {tool_name}\nError: {error_type}\n{details}\nResolved: {'yes' if resolved else 'no'}"


def _extract_error_info(content: str) -> tuple[str, str, bool] | None:
    """Return (type, details, resolved) for the first recognizable error."""
    for pattern in _ERROR_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        error_type = match.group(1)
        details = error_type
        file_match = re.search(r"File:\s*([^\n]+)", content, re.IGNORECASE)
        if file_match:
            details += f" in {file_match.group(1)}"
            line_match = re.search(r"Line:\s*(\d+)", content, re.IGNORECASE)
            if line_match:
                details += f":{line_match.group(1)}"
        after = content[match.end():]
        resolved = bool(_RESOLVED.search(content)) and not _STILL_FAILING.search(after)
        return error_type, details, resolved
    return None


def _extract_key_info(content: str) -> str | None:
    lines = [line for line in content.split("\n") if line.strip()]
    for line in lines[:5]:
        if len(line) < 100 and "..." not in line and "node:" not in line:
            return line
    return None


def _compress_user_message(message: Message, mode: CompressionMode) -> Message:
    content = message.content or ""
    if mode == "conservative" or len(content) <= USER_SUMMARY_TRIGGER:
        return message
    return replace(message, content=summarize_text(content, 100 if mode == "aggressive" else 200))


def _compress_assistant_message(message: Message, mode: CompressionMode) -> Message:
    content = message.content or ""
    if message.tool_calls:
        if len(content) > ASSISTANT_TOOL_CALL_SUMMARY_TRIGGER and mode != "conservative":
            return replace(message, content=summarize_text(content, 100 if mode == "aggressive" else 200))
        return message
    if mode == "conservative" or len(content) <= ASSISTANT_SUMMARY_TRIGGER:
        return message
    return replace(message, content=summarize_text(content, 150 if mode == "aggressive" else 300))


def summarize_text(text: str, target_length: int) -> str:
    """Keep whole leading sentences that fit, then append ``...``."""
    if len(text) <= target_length:
        return text
    summary = ""
    for sentence in _SENTENCE_SPLIT.split(text):
        if len(summary + sentence) <= target_length - 3:
            summary += sentence + ". "
        else:
            break
    if summary:
        return summary.strip() + "..."
    return text[: target_length - 3] + "..."
