"""Minimal MCP stdio server used by the provider tests."""

from fastmcp import FastMCP

mcp = FastMCP("calc")


@mcp.tool()
def add(a: int, b: int) -> int:
    """Add two numbers"""
    return a + b


@mcp.tool()
def fail() -> str:
    """Always fails"""
    raise ValueError("boom")


if __name__ == "__main__":
    mcp.run()
