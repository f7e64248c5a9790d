"""
Configuration Module for the Sky Guide OAuth Service

This module defines the configuration system for the service, using Pydantic
for settings validation and dependency injection through AppKeys.

The configuration follows these principles:
1. Environment-based configuration with sensible development defaults
2. Strong validation and typing through Pydantic
3. Dependency injection using aiohttp's app context
4. Loaded once at startup and immutable afterwards

Key configuration areas include:
- Service identification and networking
- OAuth client identity (client id, redirect URI, scope)
- Timeouts and token lifetimes
- Cryptographic materials for signed client assertions
- Monitoring and observability
"""

from typing import Annotated, Final, List, Optional
import logging
from urllib.parse import quote

from aiohttp import ClientSession, web
from jwcrypto import jwk
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from social.skyguide.app.metrics import MetricsClient


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the Sky Guide service.

    Values are read from environment variables once, when the service starts.
    Nothing mutates a Settings instance after the facade is constructed; a
    configuration change means a restart.

    Settings are organized into the following categories:
    - Environment and debugging
    - Network and client identification
    - Timeouts and lifetimes
    - Security and cryptography
    - Monitoring and observability
    """

    model_config = SettingsConfigDict(
        frozen=True, populate_by_name=True, arbitrary_types_allowed=True
    )

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging of outbound requests.
    Set with DEBUG=true environment variable.
    """

    development_mode: bool = True
    """
    Relaxed local development mode. Enables the loopback client id pattern,
    public client authentication and non-Secure session cookies.
    Set with DEVELOPMENT_MODE environment variable.
    """

    # Network and client identification settings
    http_port: int = Field(alias="port", default=5174)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    public_url: str = "http://127.0.0.1:5174"
    """
    Public base URL of this application, without a trailing slash.
    Set with PUBLIC_URL environment variable.
    """

    client_id: Optional[str] = None
    """
    Explicit OAuth client id. When unset it is derived from public_url.
    Set with CLIENT_ID environment variable.
    """

    client_name: str = "SvelteKit Bsky Guide"
    """Human-readable client name published in the client metadata."""

    scope: str = "atproto transition:generic"
    """
    OAuth scope requested by default.
    Set with SCOPE environment variable.
    """

    default_service: str = "https://bsky.social"
    """
    Service used as the authorization entry point when login starts without
    a handle. Set with DEFAULT_SERVICE environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    # Timeouts and lifetimes
    http_timeout: float = 30.0
    """
    Total timeout in seconds for every outbound call to resolvers,
    authorization servers and PDS instances.
    Set with HTTP_TIMEOUT environment variable.
    """

    state_ttl: int = 600
    """
    Lifetime in seconds of an unconsumed authorization request.
    Set with STATE_TTL environment variable.
    Default: 600 (10 minutes)
    """

    token_refresh_leeway: int = 60
    """
    A session is refreshed when its access token expires within this many
    seconds. Set with TOKEN_REFRESH_LEEWAY environment variable.
    """

    session_cookie_name: str = "bsky_session"
    """Name of the cookie carrying the current user's DID."""

    session_cookie_max_age: int = 604800  # 1 week
    """
    Lifetime in seconds of the session cookie.
    Set with SESSION_COOKIE_MAX_AGE environment variable.
    """

    # Security and cryptography settings
    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing signing keys for client assertions.
    Can be set to a JWKSet object or path to a JSON file containing keys.
    Set with JSON_WEB_KEYS environment variable.
    """

    active_signing_keys: Annotated[List[str], NoDecode] = list()
    """
    List of key IDs (kid) from json_web_keys used to sign client assertions.
    Set with ACTIVE_SIGNING_KEYS environment variable as comma-separated values.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: str = "none"
    """
    Metrics backend, one of 'none' or 'telegraf'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "skyguide"
    """Prefix for all StatsD metrics from this service."""

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """
        Validate and process the json_web_keys setting.

        Accepts an existing JWKSet object or a file path to a JSON file
        containing a JWK Set.

        Raises:
            ValueError: If the input is neither a JWKSet nor a valid file path
        """
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                return jwk.JWKSet.from_json(fd.read())
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("active_signing_keys", mode="before")
    @classmethod
    def decode_active_signing_keys(cls, v) -> List[str]:
        if isinstance(v, str):
            return [kid.strip() for kid in v.split(",") if kid.strip()]
        return v

    @field_validator("public_url")
    @classmethod
    def strip_public_url(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def redirect_uri(self) -> str:
        return f"{self.public_url}/"

    @property
    def client_metadata_url(self) -> str:
        return f"{self.public_url}/client-metadata.json"

    @property
    def jwks_url(self) -> str:
        return f"{self.public_url}/jwks.json"

    @property
    def effective_client_id(self) -> str:
        """
        The client id sent to authorization servers.

        In development mode the loopback pattern embeds the redirect URI and
        scope so no hosted client metadata document is required. Otherwise
        the client id is the URL of the hosted metadata document.
        """
        if self.client_id:
            return self.client_id
        if self.development_mode:
            return (
                f"http://localhost?redirect_uri={quote(self.redirect_uri, safe='')}"
                f"&scope={quote(self.scope, safe='')}"
            )
        return self.client_metadata_url

    @property
    def signing_key_id(self) -> Optional[str]:
        return next(iter(self.active_signing_keys), None)

    @property
    def token_endpoint_auth_method(self) -> str:
        if not self.development_mode and self.signing_key_id is not None:
            return "private_key_jwt"
        return "none"


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for accessing the metrics client"""
