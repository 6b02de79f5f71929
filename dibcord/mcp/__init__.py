"""MCP surface for dibcord tables (requires the ``mcp`` extra)."""
