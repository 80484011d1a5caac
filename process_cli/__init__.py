"""
process-mcp CLI - run the process execution MCP server over stdio.
"""

__version__ = "1.0.0"
