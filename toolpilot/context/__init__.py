"""Context window accounting and history compaction."""

from toolpilot.context.auto_compact import AutoCompactSession, ContextBudgetManager, TokenBudget
from toolpilot.context.backup import CompressionBackup
from toolpilot.context.compression import CompressionResult, compress_messages, summarize_text
from toolpilot.context.models import ModelContextLookup
from toolpilot.context.tokenization import FallbackTokenizer, TiktokenTokenizer, Tokenizer, create_tokenizer

__all__ = [
    "AutoCompactSession",
    "CompressionBackup",
    "CompressionResult",
    "ContextBudgetManager",
    "FallbackTokenizer",
    "ModelContextLookup",
    "TiktokenTokenizer",
    "TokenBudget",
    "Tokenizer",
    "compress_messages",
    "create_tokenizer",
    "summarize_text",
]
