import json

from toolpilot.config import Config
from toolpilot.mcp.config_loader import (
    extract_server_entries,
    load_mcp_servers,
    load_project_mcp_config,
    substitute_env_vars,
)


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_substitutes_braced_default_and_bare_forms(monkeypatch):
    monkeypatch.setenv("MCP_TOKEN", "secret")
    monkeypatch.setenv("EMPTY_VAR", "")
    monkeypatch.delenv("MISSING_VAR", raising=False)

    assert substitute_env_vars("Bearer ${MCP_TOKEN}") == "Bearer secret"
    assert substitute_env_vars("$MCP_TOKEN/x") == "secret/x"
    assert substitute_env_vars("${MISSING_VAR:-fallback}") == "fallback"
    assert substitute_env_vars("${MISSING_VAR}") == ""
    assert substitute_env_vars("${EMPTY_VAR:-fallback}") == ""
    assert substitute_env_vars("no variables") == "no variables"


def test_substitution_walks_nested_values(monkeypatch):
    monkeypatch.setenv("MCP_HOME", "/opt/mcp")

    data = {"args": ["--root", "${MCP_HOME}"], "env": {"HOME": "$MCP_HOME"}, "timeout": 30, "enabled": True}

    assert substitute_env_vars(data) == {
        "args": ["--root", "/opt/mcp"],
        "env": {"HOME": "/opt/mcp"},
        "timeout": 30,
        "enabled": True,
    }


def test_extract_accepts_list_and_mapping_shapes():
    assert extract_server_entries([{"name": "a"}]) == [{"name": "a"}]
    assert extract_server_entries({"mcpServers": [{"name": "b"}, "junk"]}) == [{"name": "b"}]
    assert extract_server_entries({"mcpServers": {"c": {"command": "run"}}}) == [{"name": "c", "command": "run"}]
    assert extract_server_entries({"other": 1}) == []
    assert extract_server_entries("nonsense") == []


def test_project_files_are_searched_in_priority_order(tmp_path):
    write_json(tmp_path / ".toolpilot" / "mcp.json", {"mcpServers": {"shared": {"command": "shared-server"}}})
    write_json(tmp_path / "mcp.json", {"mcpServers": {"root": {"command": "root-server"}}})

    servers, path = load_project_mcp_config(tmp_path)

    assert path == tmp_path / "mcp.json"
    assert [s.name for s in servers] == ["root"]

    write_json(tmp_path / ".toolpilot" / "mcp.local.json", {"mcpServers": {"local": {"command": "local-server"}}})

    servers, path = load_project_mcp_config(tmp_path)

    assert path == tmp_path / ".toolpilot" / "mcp.local.json"
    assert [s.name for s in servers] == ["local"]


def test_invalid_entries_and_broken_files_are_skipped(tmp_path):
    (tmp_path / ".mcp.json").write_text("{not json", encoding="utf-8")
    write_json(
        tmp_path / "mcp.json",
        {
            "mcpServers": [
                {"name": "ok", "command": "server", "alwaysAllow": ["read_docs"]},
                {"command": "nameless"},
                {"name": "bad-transport", "transport": "carrier-pigeon"},
            ]
        },
    )

    servers, path = load_project_mcp_config(tmp_path)

    assert path == tmp_path / "mcp.json"
    assert [s.name for s in servers] == ["ok"]
    assert servers[0].always_allow == ["read_docs"]


def test_no_project_files(tmp_path):
    assert load_project_mcp_config(tmp_path) == ([], None)


def test_main_config_is_the_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("DOCS_URL", "https://docs.example/mcp")
    config = Config(mcp_servers=[{"name": "docs", "transport": "http", "url": "${DOCS_URL}"}])

    servers = load_mcp_servers(config, tmp_path)

    assert [(s.name, s.url) for s in servers] == [("docs", "https://docs.example/mcp")]

    write_json(tmp_path / ".mcp.json", {"mcpServers": {"project": {"command": "project-server"}}})

    assert [s.name for s in load_mcp_servers(config, tmp_path)] == ["project"]
