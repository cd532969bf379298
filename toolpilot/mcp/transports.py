"""Stdio, HTTP and WebSocket transports speaking JSON-RPC to MCP servers."""

import asyncio
import contextlib
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import aiohttp
import httpx

from toolpilot.config import MCPServerConfig
from toolpilot.exceptions import (
    ExternalServerConnectionError,
    ExternalServerRPCError,
    TransportConfigError,
)
from toolpilot.logging import get_logger
from toolpilot.mcp.protocol import (
    decode_message,
    encode_message,
    error_message,
    initialize_params,
    is_response,
    make_notification,
    make_request,
    next_request_id,
)

log = get_logger(__name__)

# Tool listings and results can be large single lines.
_STREAM_LIMIT = 16 * 1024 * 1024
_SHUTDOWN_GRACE_SECONDS = 2.0

ConnectionLostHandler = Callable[[ExternalServerConnectionError], None]


class Transport(ABC):
    """One live connection to an external tool server."""

    requires_handshake = True

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.server_name = config.name
        self._on_connection_lost: ConnectionLostHandler | None = None

    def set_connection_lost_handler(self, handler: ConnectionLostHandler | None) -> None:
        self._on_connection_lost = handler

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @abstractmethod
    async def start(self) -> None:
        """Open the process, socket or client."""
        pass

    @abstractmethod
    async def request(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        pass

    @abstractmethod
    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    async def handshake(self) -> None:
        """Run the MCP ``initialize`` exchange where the transport needs one."""
        if not self.requires_handshake:
            return
        result = await self.request("initialize", initialize_params())
        server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        log.debug(
            "MCP handshake complete",
            server=self.server_name,
            remote=server_info.get("name"),
            protocol=result.get("protocolVersion") if isinstance(result, dict) else None,
        )
        await self.notify("notifications/initialized")

    def _effective_timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self.config.timeout

    def _not_connected(self) -> ExternalServerConnectionError:
        return ExternalServerConnectionError(
            self.server_name, f"MCP server '{self.server_name}' is not connected"
        )


class CorrelatedTransport(Transport):
    """Transport over a persistent stream with out-of-order responses.

    Each request registers a future under its id; the reader task resolves
    whichever future a response names.
    """

    def __init__(self, config: MCPServerConfig):
        super().__init__(config)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._lost = False

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    @abstractmethod
    async def _send(self, message: dict[str, Any]) -> None:
        pass

    async def request(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        if not self.is_open:
            raise self._not_connected()

        request_id = next_request_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        effective = self._effective_timeout(timeout)
        try:
            await self._send(make_request(request_id, method, params))
            return await asyncio.wait_for(future, effective)
        except asyncio.TimeoutError as e:
            raise ExternalServerConnectionError(
                self.server_name,
                f"Request '{method}' to MCP server '{self.server_name}' timed out after {effective}s",
            ) from e
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self.is_open:
            raise self._not_connected()
        await self._send(make_notification(method, params))

    def _dispatch(self, message: dict[str, Any]) -> None:
        if not is_response(message):
            log.debug("Ignoring server-initiated message", server=self.server_name, method=message.get("method"))
            return
        future = self._pending.get(message["id"])
        if future is None or future.done():
            log.debug("Dropping response without a pending request", server=self.server_name, id=message["id"])
            return
        if "error" in message:
            error = message["error"]
            code = error.get("code") if isinstance(error, dict) else None
            future.set_exception(ExternalServerRPCError(self.server_name, error_message(error), code))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, error: ExternalServerConnectionError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _connection_lost(self, reason: str) -> None:
        if self._lost or self._closed:
            return
        self._lost = True
        error = ExternalServerConnectionError(
            self.server_name, f"Connection to MCP server '{self.server_name}' lost: {reason}"
        )
        log.warning("MCP connection lost", server=self.server_name, reason=reason, in_flight=len(self._pending))
        self._fail_pending(error)
        if self._on_connection_lost is not None:
            self._on_connection_lost(error)

    async def _stop_reader(self) -> None:
        task = self._reader_task
        self._reader_task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class StdioTransport(CorrelatedTransport):
    """Child process speaking newline-delimited JSON-RPC on stdin/stdout."""

    def __init__(self, config: MCPServerConfig):
        super().__init__(config)
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._process is not None and not self._closed and not self._lost

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def start(self) -> None:
        env = {**os.environ, **self.config.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise ExternalServerConnectionError(
                self.server_name, f"Failed to start MCP server '{self.server_name}': {e}"
            ) from e

        log.debug("MCP server process started", server=self.server_name, pid=self._process.pid)
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _read_stdout(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        reason = "process closed its output"
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    code = await process.wait()
                    reason = f"process exited with code {code}"
                    break
                message = decode_message(line)
                if message is not None:
                    self._dispatch(message)
        except (OSError, ValueError) as e:
            reason = str(e)
        self._connection_lost(reason)

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            log.debug("MCP server stderr", server=self.server_name, line=line.decode("utf-8", errors="replace").rstrip())

    async def _send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise self._not_connected()
        try:
            process.stdin.write((encode_message(message) + "\n").encode("utf-8"))
            await process.stdin.drain()
        except OSError as e:
            raise ExternalServerConnectionError(
                self.server_name, f"Failed to write to MCP server '{self.server_name}': {e}"
            ) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stop_reader()

        process = self._process
        if process is not None and process.returncode is None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), _SHUTDOWN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), _SHUTDOWN_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

        self._fail_pending(
            ExternalServerConnectionError(self.server_name, f"MCP server '{self.server_name}' was disconnected")
        )
        log.debug("MCP server process stopped", server=self.server_name)


class WebSocketTransport(CorrelatedTransport):
    """Persistent WebSocket carrying one JSON-RPC message per frame."""

    def __init__(self, config: MCPServerConfig, session: aiohttp.ClientSession | None = None):
        super().__init__(config)
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closed and not self._lost

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(
                    self.config.url,
                    headers=self.config.headers or None,
                    protocols=("mcp",),
                ),
                self.config.timeout,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            await self._close_session()
            raise ExternalServerConnectionError(
                self.server_name, f"Failed to connect to MCP server '{self.server_name}': {e}"
            ) from e

        log.debug("MCP websocket connected", server=self.server_name, url=self.config.url)
        self._reader_task = asyncio.create_task(self._read_socket())

    async def _read_socket(self) -> None:
        ws = self._ws
        assert ws is not None
        reason = "socket closed"
        try:
            async for frame in ws:
                if frame.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    message = decode_message(frame.data)
                    if message is not None:
                        self._dispatch(message)
                elif frame.type == aiohttp.WSMsgType.ERROR:
                    reason = str(ws.exception() or "socket error")
                    break
        except aiohttp.ClientError as e:
            reason = str(e)
        self._connection_lost(reason)

    async def _send(self, message: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise self._not_connected()
        try:
            await ws.send_str(encode_message(message))
        except (aiohttp.ClientError, OSError) as e:
            raise ExternalServerConnectionError(
                self.server_name, f"Failed to send to MCP server '{self.server_name}': {e}"
            ) from e

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stop_reader()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        await self._close_session()
        self._fail_pending(
            ExternalServerConnectionError(self.server_name, f"MCP server '{self.server_name}' was disconnected")
        )
        log.debug("MCP websocket closed", server=self.server_name)


class HTTPTransport(Transport):
    """One JSON-RPC POST per request; ready without a handshake."""

    requires_handshake = False

    def __init__(self, config: MCPServerConfig, client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self._client = client
        self._owns_client = client is None
        self._session_id: str | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        self._open = True

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.config.headers,
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def _post(self, payload: dict[str, Any], timeout: float | None) -> httpx.Response:
        if not self._open or self._client is None:
            raise self._not_connected()
        try:
            response = await self._client.post(
                self.config.url,
                json=payload,
                headers=self._headers(),
                timeout=self._effective_timeout(timeout),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServerConnectionError(
                self.server_name, f"HTTP request to MCP server '{self.server_name}' failed: {e}"
            ) from e
        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        return response

    def _parse_response(self, response: httpx.Response, request_id: int) -> dict[str, Any] | None:
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            for line in response.text.splitlines():
                if not line.startswith("data:"):
                    continue
                message = decode_message(line[len("data:"):])
                if message is not None and message.get("id") == request_id:
                    return message
            return None
        return decode_message(response.content)

    async def request(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        request_id = next_request_id()
        response = await self._post(make_request(request_id, method, params), timeout)
        message = self._parse_response(response, request_id)
        if message is None:
            raise ExternalServerConnectionError(
                self.server_name, f"MCP server '{self.server_name}' returned an invalid response to '{method}'"
            )
        if "error" in message:
            error = message["error"]
            code = error.get("code") if isinstance(error, dict) else None
            raise ExternalServerRPCError(self.server_name, error_message(error), code)
        return message.get("result")

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._post(make_notification(method, params), None)

    async def close(self) -> None:
        self._open = False
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def validate_server_config(config: MCPServerConfig) -> list[str]:
    """Return configuration problems for a server descriptor (empty when valid)."""
    errors: list[str] = []
    if config.transport == "stdio":
        if not config.command.strip():
            errors.append("stdio transport requires a command")
    elif config.transport == "websocket":
        if not config.url:
            errors.append("websocket transport requires a URL")
        elif not config.url.startswith(("ws://", "wss://")):
            errors.append("websocket URL must use ws:// or wss:// protocol")
    elif config.transport == "http":
        if not config.url:
            errors.append("http transport requires a URL")
        elif not config.url.startswith(("http://", "https://")):
            errors.append("http URL must use http:// or https:// protocol")
    else:
        errors.append(f"Unsupported transport type: {config.transport}")
    return errors


def create_transport(
    config: MCPServerConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    ws_session: aiohttp.ClientSession | None = None,
) -> Transport:
    """Build the transport for a validated descriptor.

    Raises:
        TransportConfigError: descriptor is missing what its transport needs
    """
    errors = validate_server_config(config)
    if errors:
        raise TransportConfigError(config.name, errors)
    if config.transport == "stdio":
        return StdioTransport(config)
    if config.transport == "http":
        return HTTPTransport(config, client=http_client)
    return WebSocketTransport(config, session=ws_session)
