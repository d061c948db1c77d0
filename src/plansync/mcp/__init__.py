"""MCP server exposing the sync engine's operational surface over stdio."""
