"""
AT Protocol integration

- chain.py: Middleware chain for outbound requests (DPoP, client assertions, metrics)
- jwt.py: PKCE, DPoP proof and client assertion helpers
- pds.py: Authorization server discovery from a handle, DID or service URL
- oauth.py: OAuth flow controller (authorize, callback, refresh, revoke)
- agent.py: Authenticated XRPC clients built from stored sessions
"""
