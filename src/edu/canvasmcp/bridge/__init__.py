"""
Canvas MCP Bridge

This package implements a bridge server that exposes the Canvas LMS REST API as a set of
Model Context Protocol (MCP) tools. Each user links their Canvas account once and receives
a credential that an MCP client presents on every tool call.

Key Components:
- app: Web application layer with request handlers, configuration and background tasks
- auth: Request-time authentication gate, verification cache and the OAuth 2.1 code flow
- canvas: Canvas REST client with response caching and request deduplication
- crypto: Token encryption at rest and one-way hashing of issued API keys
- mcp: Thin JSON-RPC dispatch for the MCP tool methods
- model: Database models for users, sessions, magic links and OAuth records
- store: Credential store operations on top of the models

Architecture Overview:
1. Account Linking:
   - User verifies a Canvas access token (token login) or signs in with a magic link
   - Canvas tokens are encrypted with AES-256-GCM before they are stored
   - An API key is issued once and only its Argon2id hash is kept

2. Tool Calls:
   - The bearer credential is resolved to a user (API key or OAuth access token)
   - Successful API key verifications are memoized for a bounded window
   - The Canvas token is decrypted on demand and the call is proxied upstream

3. OAuth:
   - MCP clients discover the authorization server through well-known metadata
   - Authorization codes are bound to an S256 PKCE challenge and burned on first use
"""
