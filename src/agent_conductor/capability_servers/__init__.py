"""Internal MCP servers launched as agent capabilities."""
