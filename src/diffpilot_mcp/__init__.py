"""DiffPilot: local git branch and PR-diff tools exposed over MCP."""

__version__ = "0.1.0"
