"""Command line entry points for inspecting tools, servers and context limits."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from toolpilot import __version__
from toolpilot.config import Config, set_config
from toolpilot.context.models import ModelContextLookup
from toolpilot.exceptions import ConfigurationError
from toolpilot.logging import configure_logging
from toolpilot.mcp import MCPClient, load_mcp_servers
from toolpilot.tools import ToolRegistry, builtin_tools

app = typer.Typer(help="toolpilot - tool orchestration core for local coding agents")
console = Console()


def _load(config_path: str, verbose: bool) -> Config:
    try:
        cfg = Config.load(config_path or None)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=2)
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _tools_table(registry: ToolRegistry, title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Tool")
    table.add_column("Origin")
    table.add_column("Description", overflow="fold")
    for tool in sorted(registry.all(), key=lambda t: t.name):
        origin = f"mcp:{tool.origin.server_name}" if tool.origin.is_external else "builtin"
        table.add_row(tool.name, origin, tool.description)
    return table


async def _inspect_servers(cfg: Config, include_builtins: bool) -> ToolRegistry:
    registry = ToolRegistry(builtin_tools(cfg) if include_builtins else None)
    client = MCPClient(registry)
    servers = load_mcp_servers(cfg, Path.cwd())
    try:
        results = await client.register_external_servers(servers)
        if results:
            table = Table(title="MCP Servers", show_header=True, header_style="bold cyan")
            table.add_column("Server")
            table.add_column("Transport")
            table.add_column("Status")
            table.add_column("Tools", justify="right")
            for result in results:
                info = client.get_server_info(result.server_name) or {}
                status = "[green]ready[/green]" if result.success else f"[red]failed[/red] {escape(result.error or '')}"
                table.add_row(result.server_name, str(info.get("transport", "")), status, str(result.tool_count))
            console.print(table)
        elif not include_builtins:
            console.print("[yellow]No MCP servers configured.[/yellow]")
        return registry
    finally:
        await client.disconnect_external_servers()


@app.command()
def mcp(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Connect configured MCP servers and list what they expose."""
    cfg = _load(config, verbose)
    registry = asyncio.run(_inspect_servers(cfg, include_builtins=False))
    if len(registry):
        console.print(_tools_table(registry, "MCP Tools"))


@app.command()
def tools(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """List built-in and discovered tools with their origin."""
    cfg = _load(config, verbose)
    registry = asyncio.run(_inspect_servers(cfg, include_builtins=True))
    console.print(_tools_table(registry, "Tools"))


@app.command("context-limit")
def context_limit(
    model: str = typer.Argument(..., help="Model name, e.g. llama3.1:8b"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Print the context window resolved for a model."""
    cfg = _load(config, False)
    limit = asyncio.run(ModelContextLookup(cfg.context).context_limit_for(model))
    if limit is None:
        console.print(f"[yellow]Unknown context limit for {model}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"{model}: {limit:,} tokens")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"toolpilot v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
