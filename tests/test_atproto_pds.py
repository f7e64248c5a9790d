"""
Unit tests for authorization server discovery in social.skyguide.atproto.pds
"""

from unittest.mock import Mock

import pytest
from aiohttp import ClientConnectionError

from conftest import (
    AUTHORIZATION_ENDPOINT,
    DID,
    HANDLE,
    ISSUER,
    PAR_ENDPOINT,
    PDS,
    REVOCATION_ENDPOINT,
    TOKEN_ENDPOINT,
    FakeSession,
    RawBody,
    add_discovery,
    authorization_server_metadata,
)
from social.skyguide.atproto.pds import IssuerResolver, issuer_from_metadata
from social.skyguide.errors import AuthorizationSetupError

ENTRYWAY = "https://bsky.social"


def resolver_for(session) -> IssuerResolver:
    return IssuerResolver(session, "plc.directory", ENTRYWAY)


class TestIssuerFromMetadata:
    """Test suite for metadata validation."""

    def test_complete(self):
        issuer = issuer_from_metadata(
            authorization_server_metadata(), did=DID, handle=HANDLE, pds=PDS
        )

        assert issuer.issuer == ISSUER
        assert issuer.authorization_endpoint == AUTHORIZATION_ENDPOINT
        assert issuer.token_endpoint == TOKEN_ENDPOINT
        assert issuer.par_endpoint == PAR_ENDPOINT
        assert issuer.requires_par is False
        assert issuer.revocation_endpoint == REVOCATION_ENDPOINT
        assert issuer.pds == PDS

    @pytest.mark.parametrize(
        "field", ["issuer", "authorization_endpoint", "token_endpoint"]
    )
    def test_missing_required_field(self, field):
        metadata = authorization_server_metadata()
        del metadata[field]

        with pytest.raises(AuthorizationSetupError) as exc_info:
            issuer_from_metadata(metadata)
        assert field in str(exc_info.value)

    def test_par_required_without_endpoint(self):
        metadata = authorization_server_metadata(require_pushed_authorization_requests=True)
        del metadata["pushed_authorization_request_endpoint"]

        with pytest.raises(AuthorizationSetupError):
            issuer_from_metadata(metadata)

    def test_not_a_document(self):
        with pytest.raises(AuthorizationSetupError):
            issuer_from_metadata(["not", "a", "dict"])


class TestIssuerResolver:
    """Test suite for IssuerResolver.resolve."""

    async def test_resolve_did(self, fake_session):
        add_discovery(fake_session)

        issuer = await resolver_for(fake_session).resolve(DID)

        assert issuer.issuer == ISSUER
        assert issuer.did == DID
        assert issuer.handle == HANDLE
        assert issuer.pds == PDS

    async def test_default_service_entryway(self):
        """Test a service without protected resource metadata is its own issuer."""
        session = FakeSession().add(
            "GET",
            f"{ENTRYWAY}/.well-known/oauth-authorization-server",
            body=authorization_server_metadata(issuer=ENTRYWAY),
        )

        issuer = await resolver_for(session).resolve(None)

        assert issuer.issuer == ENTRYWAY
        assert issuer.did is None
        assert issuer.pds == ENTRYWAY

    async def test_service_url(self, fake_session):
        add_discovery(fake_session)

        issuer = await resolver_for(fake_session).resolve(f"{PDS}/")

        assert issuer.issuer == ISSUER
        assert issuer.did is None

    async def test_unresolvable(self):
        with pytest.raises(AuthorizationSetupError) as exc_info:
            await resolver_for(FakeSession()).resolve(DID)
        assert "error-oauth-1000" in str(exc_info.value)

    async def test_pds_without_protected_resource(self, fake_session):
        add_discovery(fake_session)
        fake_session.routes.pop(("GET", f"{PDS}/.well-known/oauth-protected-resource"))

        with pytest.raises(AuthorizationSetupError) as exc_info:
            await resolver_for(fake_session).resolve(DID)
        assert "error-oauth-1001" in str(exc_info.value)

    async def test_no_authorization_servers_listed(self, fake_session):
        add_discovery(fake_session)
        fake_session.routes[("GET", f"{PDS}/.well-known/oauth-protected-resource")] = []
        fake_session.add(
            "GET",
            f"{PDS}/.well-known/oauth-protected-resource",
            body={"resource": PDS, "authorization_servers": []},
        )

        with pytest.raises(AuthorizationSetupError) as exc_info:
            await resolver_for(fake_session).resolve(DID)
        assert "error-oauth-1002" in str(exc_info.value)

    async def test_transport_failure(self):
        session = Mock()
        session.get = Mock(side_effect=ClientConnectionError("refused"))

        with pytest.raises(AuthorizationSetupError) as exc_info:
            await resolver_for(session).resolve(DID)
        assert isinstance(exc_info.value.__cause__, ClientConnectionError)


class TestFromIssuer:
    async def test_current_metadata(self, fake_session):
        add_discovery(fake_session, token_endpoint=f"{ISSUER}/oauth/token2")

        issuer = await resolver_for(fake_session).from_issuer(ISSUER)

        assert issuer.token_endpoint == f"{ISSUER}/oauth/token2"

    async def test_unknown_issuer(self):
        with pytest.raises(AuthorizationSetupError):
            await resolver_for(FakeSession()).from_issuer(ISSUER)

    async def test_undecodable_metadata(self):
        session = FakeSession().add(
            "GET",
            f"{ISSUER}/.well-known/oauth-authorization-server",
            body=RawBody("<html>upstream error</html>"),
        )
        with pytest.raises(AuthorizationSetupError):
            await resolver_for(session).from_issuer(ISSUER)

    async def test_transport_failure(self):
        session = Mock()
        session.get = Mock(side_effect=ClientConnectionError("refused"))
        with pytest.raises(AuthorizationSetupError) as exc_info:
            await resolver_for(session).from_issuer(ISSUER)
        assert isinstance(exc_info.value.__cause__, ClientConnectionError)
