"""
MCP Orchestrator

Registers, connects to and supervises external MCP tool servers and exposes
their tools to the chat engine.
"""

__version__ = "0.1.0"
