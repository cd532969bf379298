"""Decide once per turn whether to compact history before the next model call."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from toolpilot.config import AutoCompactConfig, CompressionMode
from toolpilot.context.backup import CompressionBackup
from toolpilot.context.compression import compress_messages, count_total_tokens
from toolpilot.context.models import ModelContextLookup
from toolpilot.context.tokenization import Tokenizer, create_tokenizer
from toolpilot.events import CompactionOccurred, EventCallback, resolve_callback
from toolpilot.llm import Message
from toolpilot.logging import get_logger

log = get_logger(__name__)

MIN_THRESHOLD_OVERRIDE = 50
MAX_THRESHOLD_OVERRIDE = 95

TokenizerFactory = Callable[[str, str], Tokenizer]


@dataclass
class TokenBudget:
    limit: int | None
    used: int
    threshold_percent: int

    @property
    def usage_percent(self) -> float:
        if not self.limit:
            return 0.0
        return self.used / self.limit * 100

    @property
    def threshold_reached(self) -> bool:
        return bool(self.limit) and self.usage_percent >= self.threshold_percent


class AutoCompactSession:
    """Per-session overrides for auto-compaction; ``None`` means use config."""

    def __init__(self) -> None:
        self._enabled: bool | None = None
        self._threshold: int | None = None
        self._mode: CompressionMode | None = None

    @property
    def enabled(self) -> bool | None:
        return self._enabled

    @property
    def threshold(self) -> int | None:
        return self._threshold

    @property
    def mode(self) -> CompressionMode | None:
        return self._mode

    def set_enabled(self, enabled: bool | None) -> None:
        self._enabled = enabled

    def set_threshold(self, threshold: int | None) -> None:
        """Set the threshold override, clamped to [50, 95]."""
        if threshold is None:
            self._threshold = None
            return
        self._threshold = max(MIN_THRESHOLD_OVERRIDE, min(MAX_THRESHOLD_OVERRIDE, int(threshold)))

    def set_mode(self, mode: CompressionMode | None) -> None:
        self._mode = mode

    def reset(self) -> None:
        self._enabled = None
        self._threshold = None
        self._mode = None

    def effective(self, config: AutoCompactConfig) -> tuple[bool, int, CompressionMode]:
        """(enabled, threshold, mode) with overrides applied over config."""
        return (
            self._enabled if self._enabled is not None else config.enabled,
            self._threshold if self._threshold is not None else config.threshold,
            self._mode if self._mode is not None else config.mode,
        )


class ContextBudgetManager:
    """Measures context usage and compacts history past the threshold.

    Never raises: any failure is logged and reported as "no compaction".
    """

    def __init__(
        self,
        config: AutoCompactConfig | None = None,
        *,
        lookup: ModelContextLookup | None = None,
        tokenizer_factory: TokenizerFactory = create_tokenizer,
        backup: CompressionBackup | None = None,
        on_event: EventCallback | None = None,
    ):
        self.config = config or AutoCompactConfig()
        self.lookup = lookup or ModelContextLookup(self.config)
        self.backup = backup or CompressionBackup()
        self._tokenizer_factory = tokenizer_factory
        self._emit_event = resolve_callback(on_event)
        self._last_budget: TokenBudget | None = None

    @property
    def last_budget(self) -> TokenBudget | None:
        """Budget computed by the most recent check that got that far."""
        return self._last_budget

    async def check_and_compact_if_needed(
        self,
        messages: Sequence[Message],
        system_message: Message,
        provider: str,
        model: str,
        config: AutoCompactConfig | None = None,
        session: AutoCompactSession | None = None,
    ) -> list[Message] | None:
        """Return a compacted history, or None when nothing was done."""
        cfg = config or self.config
        enabled, threshold, mode = (session or AutoCompactSession()).effective(cfg)
        if not enabled:
            return None

        try:
            limit = await self.lookup.context_limit_for(model)
        except Exception as e:
            log.warning("Context limit lookup failed, skipping compaction", model=model, error=str(e))
            return None
        if not limit:
            log.debug("Unknown context limit, skipping compaction", model=model)
            return None

        try:
            tokenizer = self._tokenizer_factory(provider, model)
        except Exception as e:
            log.warning("Tokenizer unavailable, skipping compaction", provider=provider, model=model, error=str(e))
            return None

        history = list(messages)
        try:
            used = count_total_tokens([system_message, *history], tokenizer)
            budget = TokenBudget(limit=limit, used=used, threshold_percent=threshold)
            self._last_budget = budget
            if budget.usage_percent < threshold:
                return None

            result = compress_messages(history, tokenizer, mode, keep_recent=cfg.keep_recent_messages)
            self.backup.store_backup(history)
        except Exception as e:
            log.warning("Context compaction failed", model=model, error=str(e))
            return None
        finally:
            tokenizer.free()

        reduction = round(result.reduction_percentage)
        log.info(
            "Context compacted",
            model=model,
            usage_percent=round(budget.usage_percent, 1),
            threshold=threshold,
            mode=mode,
            original_tokens=result.original_token_count,
            compressed_tokens=result.compressed_token_count,
            reduction_percent=reduction,
        )
        if cfg.notify_user:
            self._emit(
                CompactionOccurred(
                    usage_percent=budget.usage_percent,
                    original_tokens=result.original_token_count,
                    compressed_tokens=result.compressed_token_count,
                    reduction_percent=reduction,
                )
            )
        return result.compressed_messages

    def restore_backup(self) -> list[Message] | None:
        """Pre-compaction history from the latest compaction, if any."""
        return self.backup.get_backup()

    def _emit(self, event: CompactionOccurred) -> None:
        try:
            self._emit_event(event)
        except Exception as e:
            log.warning("Event callback failed", event=type(event).__name__, error=str(e))
