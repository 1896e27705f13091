"""
Model Context Protocol

The Canvas tools and their registration with the ``mcp`` SDK's low-level server, which
owns the protocol: ``initialize``, ``ping``, ``tools/list`` and ``tools/call``.
"""
