"""
Sky Guide Application Layer

This package implements the web application layer for the sign-in service,
handling HTTP requests and responses using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration and middleware setup
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics client abstraction over aio-statsd
- handlers/: Request handlers for OAuth and internal endpoints

The application uses two middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting

It provides the following main endpoints:
- OAuth endpoints (/auth/login, /auth/callback, /auth/logout, and the root
  path as the registered redirect URI)
- Client metadata documents (/client-metadata.json, /jwks.json)
- Current user (/api/me) and internal endpoints (/internal/*)
"""
