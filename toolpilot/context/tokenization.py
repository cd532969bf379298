"""Per-provider token counting for conversation messages."""

import json
import math
from abc import ABC, abstractmethod

import tiktoken

from toolpilot.exceptions import TokenizerError
from toolpilot.llm import Message
from toolpilot.logging import get_logger

log = get_logger(__name__)

CHARS_PER_TOKEN = 4
# Role and separator tokens the chat format adds around each message.
MESSAGE_OVERHEAD_TOKENS = 4

_LOCAL_PROVIDERS = {"ollama", "llama.cpp", "local", "lmstudio"}
_LLAMA_FAMILY = (
    "llama", "mistral", "mixtral", "qwen", "gemma", "phi", "codellama", "deepseek", "command-r",
)


def normalize_model_name(model: str) -> str:
    """Strip Ollama cloud suffixes (``:cloud`` / ``-cloud``)."""
    if model.endswith((":cloud", "-cloud")):
        return model[: -len(":cloud")]
    return model


def _serialized_tool_calls(message: Message) -> str:
    if not message.tool_calls:
        return ""
    return json.dumps([{"name": call.name, "arguments": call.arguments} for call in message.tool_calls])


class Tokenizer(ABC):
    """Counts tokens for text and for whole messages."""

    name: str = ""

    @abstractmethod
    def encode(self, text: str) -> int:
        """Token count for a piece of text."""
        pass

    def count_tokens(self, message: Message) -> int:
        count = self.encode(message.content or "") + self.encode(message.role)
        tool_calls = _serialized_tool_calls(message)
        if tool_calls:
            count += self.encode(tool_calls)
        return count

    def free(self) -> None:
        """Release native resources, if any."""
        return None


class FallbackTokenizer(Tokenizer):
    """Character-length estimate, ``ceil(len / 4)``."""

    name = "fallback"

    def encode(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)


class TiktokenTokenizer(Tokenizer):
    """BPE counts from tiktoken; unknown models use ``cl100k_base``."""

    def __init__(self, model: str, *, encoding_name: str | None = None, family: str = "openai"):
        self.model = model
        self.name = f"{family}-{model}"
        if encoding_name:
            self._encoding = tiktoken.get_encoding(encoding_name)
            return
        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            log.debug("No tiktoken mapping for model, using cl100k_base", model=model)
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def encode(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def count_tokens(self, message: Message) -> int:
        return super().count_tokens(message) + MESSAGE_OVERHEAD_TOKENS


def detect_tokenizer_family(provider: str, model: str) -> str:
    """Classify a provider/model pair as openai, anthropic, llama or fallback."""
    provider_lower = (provider or "").lower()
    model_lower = normalize_model_name(model or "").lower()

    if "openai" in provider_lower:
        return "openai"
    if "anthropic" in provider_lower or "claude" in provider_lower:
        return "anthropic"
    if model_lower.startswith(("gpt-", "gpt4", "o1", "o3", "o4")) or "openai" in model_lower:
        if ":" not in model_lower:
            return "openai"
    if "claude" in model_lower:
        return "anthropic"
    if any(keyword in model_lower for keyword in _LLAMA_FAMILY):
        return "llama"
    if provider_lower in _LOCAL_PROVIDERS:
        return "llama"
    return "fallback"


def create_tokenizer(provider: str, model: str) -> Tokenizer:
    """Build the tokenizer for a provider/model pair.

    OpenAI models get their tiktoken encoding and Anthropic models use
    ``cl100k_base`` as a close approximation. Local model families and
    unknown providers use the character estimate.

    Raises:
        TokenizerError: the tokenizer backend could not be loaded
    """
    family = detect_tokenizer_family(provider, model)
    normalized = normalize_model_name(model or "")
    if family in ("llama", "fallback"):
        return FallbackTokenizer()
    try:
        if family == "anthropic":
            return TiktokenTokenizer(normalized, encoding_name="cl100k_base", family="anthropic")
        return TiktokenTokenizer(normalized)
    except Exception as e:
        raise TokenizerError(provider, model, str(e)) from e
