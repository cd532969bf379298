"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from toolpilot.logging import get_logger
from toolpilot.tools.registry import Tool, ValidationResult

log = get_logger(__name__)

MAX_READ_BYTES = 100_000


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    def __init__(self, base_path: Path | str | None = None):
        self.base_path = Path(base_path or Path.cwd()).expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        requested = Path(path).expanduser()
        if not requested.is_absolute():
            requested = self.base_path / requested
        return requested.resolve()

    async def validate(self, arguments: dict[str, Any]) -> ValidationResult:
        missing = self.missing_required_arguments(arguments)
        if missing:
            return ValidationResult.invalid(f"Missing required argument: {missing[0]}")

        path = str(arguments.get("path", "")).strip()
        file_path = self._resolve(path)
        if not file_path.exists():
            return ValidationResult.invalid(f"File not found: {path}")
        if not file_path.is_file():
            return ValidationResult.invalid(f"Not a file: {path}")

        file_size = file_path.stat().st_size
        if file_size > MAX_READ_BYTES:
            return ValidationResult.invalid(
                f"File too large: {file_size} bytes (max {MAX_READ_BYTES})"
            )
        return ValidationResult()

    async def execute(self, arguments: dict[str, Any]) -> str:
        """Read a file.

        Args:
            arguments: ``path`` plus optional ``limit`` and ``offset`` line window

        Returns:
            File contents prefixed with a short info header
        """
        path = str(arguments["path"])
        limit = arguments.get("limit")
        offset = arguments.get("offset")
        file_path = self._resolve(path)

        content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")

        lines = content.splitlines()
        if offset:
            lines = lines[int(offset) - 1:]
        if limit:
            lines = lines[:int(limit)]
        content = "\n".join(lines)

        info = f"[{file_path} {len(content)} chars]"
        if offset or limit:
            start = int(offset or 1)
            end = start + int(limit) - 1 if limit else start + len(lines) - 1
            info += f" [lines {start}-{end}]"

        log.debug("Read file", path=str(file_path), chars=len(content))
        return f"{info}\n{content}"
