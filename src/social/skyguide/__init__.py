"""
Sky Guide - AT Protocol sign-in service

This package implements "Sign in with Bluesky" for the Sky Guide web
application: OAuth 2.0 with PKCE and DPoP against AT Protocol authorization
servers, short-lived authorization state, per-DID sessions, and an
authenticated XRPC client built from a stored session.

Key Components:
- app: Web application layer with request handlers and server configuration
- atproto: AT Protocol OAuth client, request chain and PDS access
- model: Pydantic records for authorization state, sessions and profiles
- resolve: Identity resolution utilities for AT Protocol DIDs and handles
- store: Storage interfaces and their in-memory implementations
- service: The facade the web layer talks to

Authentication Flow:
1. The user asks to log in, optionally with a handle
2. The handle is resolved to its authorization server and the user is
   redirected there
3. The callback is validated, the code exchanged for DPoP-bound tokens and a
   session stored under the user's DID
4. A cookie naming the DID identifies the user on later requests
"""
