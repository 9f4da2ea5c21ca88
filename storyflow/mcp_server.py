"""FastMCP server exposing the flow registry as MCP tools.

Tools:
  - list_flows()                               — registered flow names
  - run_flow(flow_name, input, session_id)     — run a flow, return its envelope

Usage:
    uv run python -m storyflow.mcp_server
"""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from storyflow.flows import FlowRegistry


def create_mcp_server(registry: FlowRegistry) -> FastMCP:
    mcp = FastMCP("storyflow")

    @mcp.tool()
    def list_flows() -> dict:
        """List the names of all registered flows."""
        return {"flows": registry.list()}

    @mcp.tool()
    async def run_flow(
        flow_name: str,
        input: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> dict:
        """Run a story flow. Returns {result, sessionId, error}."""
        data = input or {}
        response = await registry.run(flow_name, data, session_id or data.get("sessionId"))
        return response.model_dump(by_alias=True)

    return mcp


if __name__ == "__main__":
    from storyflow.app import build_registry
    from storyflow.config import Settings

    create_mcp_server(build_registry(Settings.from_env())).run()
