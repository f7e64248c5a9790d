"""
Error taxonomy for the OAuth core.

Every failure the flow can produce is a subclass of ``SkyGuideException`` so
HTTP handlers can catch one type at the edge. Messages carry a stable code
prefix (``error-oauth-NNNN``) that is safe to log; upstream detail is kept on
the exception for diagnostics and never rendered to the end user.
"""

from typing import Optional


class SkyGuideException(Exception):
    """Base class for all OAuth core failures."""


class AuthorizationSetupError(SkyGuideException):
    """An authorization request could not be constructed."""

    @staticmethod
    def unresolvable_subject(subject: str) -> "AuthorizationSetupError":
        return AuthorizationSetupError(
            f"error-oauth-1000 Unable to resolve subject: {subject}"
        )

    @staticmethod
    def no_protected_resource(pds: str) -> "AuthorizationSetupError":
        return AuthorizationSetupError(
            f"error-oauth-1001 No protected resource metadata found for {pds}"
        )

    @staticmethod
    def no_authorization_server() -> "AuthorizationSetupError":
        return AuthorizationSetupError("error-oauth-1002 No authorization server found")

    @staticmethod
    def incomplete_metadata(field: str) -> "AuthorizationSetupError":
        return AuthorizationSetupError(
            f"error-oauth-1003 Authorization server metadata missing {field}"
        )

    @staticmethod
    def par_failed(status: int) -> "AuthorizationSetupError":
        return AuthorizationSetupError(
            f"error-oauth-1004 Pushed authorization request failed with status {status}"
        )

    @staticmethod
    def transport(msg: str = "") -> "AuthorizationSetupError":
        return AuthorizationSetupError(
            f"error-oauth-1099 Transport failure during authorization setup: {msg}"
        )


class AuthorizationDeniedError(SkyGuideException):
    """The end user or the authorization server declined the request."""

    def __init__(self, error: str, error_description: Optional[str] = None) -> None:
        super().__init__(f"error-oauth-1100 Authorization denied: {error}")
        self.error = error
        self.error_description = error_description


class MissingCodeError(SkyGuideException):
    """The callback carried neither an authorization code nor an error."""

    def __init__(self) -> None:
        super().__init__("error-oauth-1200 Callback missing authorization code")


class InvalidStateError(SkyGuideException):
    """The callback state is absent, consumed, expired or mismatched."""

    @staticmethod
    def missing() -> "InvalidStateError":
        return InvalidStateError("error-oauth-1300 Callback missing state")

    @staticmethod
    def unknown() -> "InvalidStateError":
        return InvalidStateError("error-oauth-1301 Unknown or already used state")

    @staticmethod
    def issuer_mismatch() -> "InvalidStateError":
        return InvalidStateError("error-oauth-1302 Callback issuer does not match request")


class TokenExchangeError(SkyGuideException):
    """The authorization code could not be exchanged for tokens."""

    @staticmethod
    def bad_status(status: int) -> "TokenExchangeError":
        return TokenExchangeError(
            f"error-oauth-1400 Token endpoint returned status {status}"
        )

    @staticmethod
    def malformed(field: str) -> "TokenExchangeError":
        return TokenExchangeError(
            f"error-oauth-1401 Token response missing or invalid {field}"
        )

    @staticmethod
    def subject_mismatch() -> "TokenExchangeError":
        return TokenExchangeError(
            "error-oauth-1402 Token subject does not match the requested account"
        )

    @staticmethod
    def transport(msg: str = "") -> "TokenExchangeError":
        return TokenExchangeError(
            f"error-oauth-1499 Transport failure during token exchange: {msg}"
        )


class NoSessionError(SkyGuideException):
    """No session is on file for the subject."""

    def __init__(self, did: str) -> None:
        super().__init__(f"error-oauth-1500 No session found for {did}")
        self.did = did


class SessionRefreshError(SkyGuideException):
    """Refreshing a stored session failed."""

    @staticmethod
    def bad_status(status: int) -> "SessionRefreshError":
        return SessionRefreshError(
            f"error-oauth-1600 Token endpoint returned status {status} on refresh"
        )

    @staticmethod
    def malformed(field: str) -> "SessionRefreshError":
        return SessionRefreshError(
            f"error-oauth-1601 Refresh response missing or invalid {field}"
        )

    @staticmethod
    def transport(msg: str = "") -> "SessionRefreshError":
        return SessionRefreshError(
            f"error-oauth-1699 Transport failure during refresh: {msg}"
        )


class UpstreamProtocolError(SkyGuideException):
    """An authenticated call to the subject's PDS failed."""

    def __init__(self, msg: str, status: Optional[int] = None) -> None:
        super().__init__(f"error-oauth-1700 {msg}")
        self.status = status
