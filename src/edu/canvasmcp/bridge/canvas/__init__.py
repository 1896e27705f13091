"""
Canvas LMS Proxy

Thin read-only client for the Canvas REST API, called with the decrypted token of the
requesting user. GET responses are cached briefly per user and path, and concurrent
identical requests share a single upstream call.
"""
