"""
Tool server registry: how each external system is reached by an agent.

Each entry names the secrets it needs and builds the launch descriptor for
its MCP server. Composition reads secrets only from ResolvedSettings.
"""

from typing import Callable, Iterable

from issue_relay.integrations.connection_config import ResolvedSettings
from issue_relay.models.schemas import ToolServerConfig

DATA_STORE = "data-store"
ISSUE_TRACKER = "issue-tracker"

MODEL_SECRETS = ("ANTHROPIC_API_KEY",)

# Read-only inspection tools of the Supabase MCP server
DATA_STORE_TOOLS = ("list_tables", "list_extensions", "list_migrations", "execute_sql")

# The filing stage only needs to create an issue and check for an existing one
ISSUE_TRACKER_TOOLS = ("create_issue", "search_issues", "get_issue")

# Tool names above match this release; later releases renamed the issue tools
ISSUE_TRACKER_IMAGE = "ghcr.io/github/github-mcp-server:v0.5.0"


def _data_store_server(settings: ResolvedSettings) -> ToolServerConfig:
    args = ["-y", "@supabase/mcp-server-supabase@latest", "--read-only"]
    if settings.supabase_project_ref:
        args += ["--project-ref", settings.supabase_project_ref]
    return ToolServerConfig(
        name=DATA_STORE,
        command="npx",
        args=tuple(args),
        env={"SUPABASE_ACCESS_TOKEN": settings.supabase_access_token},
        allowed_tools=DATA_STORE_TOOLS,
        required_tools=("execute_sql",),
    )


def _issue_tracker_server(settings: ResolvedSettings) -> ToolServerConfig:
    return ToolServerConfig(
        name=ISSUE_TRACKER,
        command="docker",
        args=(
            "run", "-i", "--rm",
            "-e", "GITHUB_PERSONAL_ACCESS_TOKEN",
            "-e", "GITHUB_TOOLSETS",
            ISSUE_TRACKER_IMAGE,
        ),
        env={
            "GITHUB_PERSONAL_ACCESS_TOKEN": settings.github_personal_access_token,
            "GITHUB_TOOLSETS": settings.github_toolsets,
        },
        allowed_tools=ISSUE_TRACKER_TOOLS,
        required_tools=("create_issue",),
    )


TOOL_SERVER_REGISTRY: dict[str, dict] = {
    DATA_STORE: {
        "description": "Supabase project holding users, products and user_cart_items",
        "required_secrets": ("SUPABASE_ACCESS_TOKEN",),
        "build": _data_store_server,
    },
    ISSUE_TRACKER: {
        "description": "GitHub issues for the support repository",
        "required_secrets": ("GITHUB_PERSONAL_ACCESS_TOKEN",),
        "build": _issue_tracker_server,
    },
}


def required_secrets(names: Iterable[str], include_model: bool = True) -> list[str]:
    """Every secret the given servers (and optionally the model) need, in order."""
    secrets: list[str] = list(MODEL_SECRETS) if include_model else []
    for name in names:
        for secret in TOOL_SERVER_REGISTRY[name]["required_secrets"]:
            if secret not in secrets:
                secrets.append(secret)
    return secrets


def compose_tool_server(name: str, settings: ResolvedSettings) -> ToolServerConfig:
    """Build the launch descriptor for one registered server.

    Raises KeyError for an unknown identifier and ConfigurationMissingError
    naming every missing secret of that server.
    """
    entry = TOOL_SERVER_REGISTRY[name]
    settings.require(entry["required_secrets"])
    build: Callable[[ResolvedSettings], ToolServerConfig] = entry["build"]
    return build(settings)


def compose_tool_servers(
    names: Iterable[str],
    settings: ResolvedSettings,
    include_model: bool = True,
) -> dict[str, ToolServerConfig]:
    """Build descriptors for several servers, checking all secrets up front.

    Missing secrets across every requested server (and the model key when
    include_model is set) are reported together in one error.
    """
    names = list(names)
    unknown = [n for n in names if n not in TOOL_SERVER_REGISTRY]
    if unknown:
        raise KeyError(f"Unknown tool server(s): {', '.join(unknown)}")

    settings.require(required_secrets(names, include_model=include_model))
    return {name: TOOL_SERVER_REGISTRY[name]["build"](settings) for name in names}
