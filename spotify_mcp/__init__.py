"""Spotify MCP Server - Spotify Web API tools with a shared, persisted OAuth login."""

__version__ = "1.0.0"
