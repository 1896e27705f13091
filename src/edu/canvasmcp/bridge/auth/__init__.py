"""
Authentication

This package decides who is calling the MCP endpoint.

Key Components:
- cache.py: Short-lived map from verified API key digests to user ids
- gate.py: Bearer token resolution for API keys and OAuth access tokens
- oauth.py: Authorization code grant with PKCE, discovery metadata
- pkce.py: S256 challenge derivation and constant-time verification

API keys are long-lived and shown once; OAuth access tokens are issued to MCP clients
through the consent flow and expire after 24 hours. Both resolve to the same Identity.
"""
