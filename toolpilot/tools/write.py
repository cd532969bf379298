"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from toolpilot.config import ApprovalMode
from toolpilot.logging import get_logger
from toolpilot.tools.registry import Tool, ValidationResult

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    description = "Create or overwrite a file with content."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    def __init__(self, base_path: Path | str | None = None):
        self.base_path = Path(base_path or Path.cwd()).expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        requested = Path(path).expanduser()
        if not requested.is_absolute():
            requested = self.base_path / requested
        return requested.resolve()

    def needs_approval(self, arguments: dict[str, Any], mode: ApprovalMode) -> bool:
        return mode != "auto-accept"

    async def validate(self, arguments: dict[str, Any]) -> ValidationResult:
        missing = self.missing_required_arguments(arguments)
        if missing:
            return ValidationResult.invalid(f"Missing required argument: {missing[0]}")

        path = str(arguments.get("path", "")).strip()
        if not path:
            return ValidationResult.invalid("Path must not be empty")
        if self._resolve(path).is_dir():
            return ValidationResult.invalid(f"Path is a directory: {path}")
        return ValidationResult()

    async def execute(self, arguments: dict[str, Any]) -> str:
        path = str(arguments["path"])
        content = str(arguments.get("content", ""))
        append = bool(arguments.get("append", False))
        file_path = self._resolve(path)

        def _write() -> None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "a" if append else "w", encoding="utf-8") as f:
                f.write(content)

        await asyncio.to_thread(_write)
        action = "Appended" if append else "Wrote"
        log.info("File written", path=str(file_path), chars=len(content), append=append)
        return f"{action} {len(content)} chars to {file_path}"
