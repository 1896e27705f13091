"""
Canvas MCP Application Layer

This package implements the web application layer of the bridge on aiohttp: the MCP
endpoint, the OAuth authorization server, browser sign-in and the dashboard API.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, middleware and route setup
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for different endpoints
- tasks.py: Background tasks for cache sweeps, expired record cleanup and health
- cors.py: CORS handling for cross-origin requests
- metrics.py: Metrics client abstraction
- util/: Operator utilities (key generation)

The application uses several middleware layers:
- CORS middleware for handling cross-origin requests
- Statsd middleware for metrics collection
- Sentry middleware for error reporting

It provides the following main endpoints:
- MCP JSON-RPC endpoint (/mcp)
- OAuth discovery and authorization endpoints (/.well-known/*, /auth/*)
- Account and dashboard API (/api/*)
- Internal health endpoints (/internal/*)
"""
