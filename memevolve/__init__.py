"""
MemEvolve - Memory lifecycle and evolution engine.

Decides how stored memories age, strengthen, merge and get promoted between
scopes, and keeps the derived knowledge graph consistent over time.
"""

__version__ = "0.1.0"


def serve() -> None:
    """Run the MemEvolve MCP server.

    This is called when you run: python -m memevolve.server
    """
    from memevolve.server import serve as _serve
    _serve()


__all__ = ["serve", "__version__"]
