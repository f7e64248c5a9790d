"""
Unit tests for the outbound request middleware chain.

Tests cover request copying, response decoding, metrics and client assertion
middleware, DPoP proof generation with nonce replay, and the retry bound.
"""

import base64
import json
from typing import Any, Dict
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientSession
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from conftest import RawBody, create_mock_response
from social.skyguide.app.metrics import MetricsClient
from social.skyguide.atproto.chain import (
    CLIENT_ASSERTION_TYPE,
    ChainMiddlewareClient,
    ChainRequest,
    ChainResponse,
    ChainRetryExhausted,
    DebugMiddleware,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.skyguide.atproto.jwt import access_token_hash

TOKEN_URL = "https://auth.example.com/oauth/token"


def create_test_jwk() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", alg="ES256")


def create_headers_proxy(headers: Dict[str, str]) -> CIMultiDictProxy:
    return CIMultiDictProxy(CIMultiDict(headers))


def decode_claims(token: str) -> Dict[str, Any]:
    payload = token.split(".")[1]
    payload += "=" * (-len(payload) % 4)
    return json.loads(base64.urlsafe_b64decode(payload))


def chain_result(status: int = 200, body: Any = None, headers=None):
    client_response = create_mock_response(status=status, headers=headers, body=body)
    chain_response = ChainResponse(
        status=status, headers=client_response.headers, body=body
    )
    return client_response, chain_response


class TestChainRequest:
    """Test ChainRequest copying."""

    def test_from_chain_request_copy(self):
        original = ChainRequest(
            method="POST",
            url=TOKEN_URL,
            headers={"DPoP": "proof"},
            kwargs={"data": {"grant_type": "authorization_code"}},
        )

        copy = ChainRequest.from_chain_request(original)

        assert copy == original
        assert copy is not original
        copy.headers["DPoP"] = "other"
        assert original.headers["DPoP"] == "proof"

    def test_from_chain_request_with_none_values(self):
        copy = ChainRequest.from_chain_request(ChainRequest(method="GET", url=TOKEN_URL))
        assert copy.headers is None
        assert copy.kwargs is None


class TestChainResponse:
    """Test ChainResponse decoding and body helpers."""

    async def test_from_aiohttp_response_json(self):
        response = create_mock_response(body={"error": "use_dpop_nonce"})
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == {"error": "use_dpop_nonce"}
        assert chain_response.json_body() == {"error": "use_dpop_nonce"}

    async def test_from_aiohttp_response_text(self):
        response = create_mock_response(content_type="text/plain", body="did:plc:abc")
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == "did:plc:abc"
        assert chain_response.json_body() is None

    async def test_from_aiohttp_response_binary(self):
        response = create_mock_response(content_type="application/octet-stream", body="x")
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == b"x"

    async def test_from_aiohttp_response_undecodable_json(self):
        """Test a JSON content type with a broken body is kept as text."""
        response = create_mock_response(
            status=502, body=RawBody("<html>Bad Gateway</html>")
        )
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.status == 502
        assert chain_response.body == "<html>Bad Gateway</html>"
        assert chain_response.json_body() is None

    def test_body_matches_kv(self):
        response = ChainResponse(
            status=400, headers=create_headers_proxy({}), body={"error": "invalid_grant"}
        )
        assert response.body_matches_kv("error", "invalid_grant") is True
        assert response.body_matches_kv("error", "use_dpop_nonce") is False

    def test_body_matches_kv_non_dict(self):
        response = ChainResponse(status=200, headers=create_headers_proxy({}), body="text")
        assert response.body_matches_kv("error", "invalid_grant") is False
        empty = ChainResponse(status=200, headers=create_headers_proxy({}))
        assert empty.body_matches_kv("error", "invalid_grant") is False


class TestRequestMiddlewareBase:
    def test_abstract_class_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            RequestMiddlewareBase()  # type: ignore

    async def test_handle_gen_invokes_handle(self):
        class PassThrough(RequestMiddlewareBase):
            async def handle(self, next, request):
                return await next(request)

        next_callback = AsyncMock(return_value=chain_result())
        request = ChainRequest(method="GET", url=TOKEN_URL)

        await PassThrough().handle_gen(next_callback)(request)

        next_callback.assert_awaited_once_with(request)


class TestStatsdMiddleware:
    """Test request metrics."""

    async def test_success_metrics(self):
        metrics_client = Mock(spec=MetricsClient)
        middleware = StatsdMiddleware(metrics_client)
        next_callback = AsyncMock(return_value=chain_result(status=201))

        await middleware.handle(next_callback, ChainRequest(method="POST", url=TOKEN_URL))

        metrics_client.increment.assert_called_once_with(
            "skyguide.client.request.count",
            1,
            tag_dict={"host": "auth.example.com", "status": 201},
        )
        (name, _), kwargs = metrics_client.timer.call_args
        assert name == "skyguide.client.request.time"
        assert kwargs["tag_dict"] == {"host": "auth.example.com", "method": "post"}

    async def test_exception_metrics(self):
        metrics_client = Mock(spec=MetricsClient)
        middleware = StatsdMiddleware(metrics_client)
        next_callback = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(ConnectionError):
            await middleware.handle(next_callback, ChainRequest(method="GET", url=TOKEN_URL))

        names = [c.args[0] for c in metrics_client.increment.call_args_list]
        assert names == [
            "skyguide.client.request.exception",
            "skyguide.client.request.count",
        ]


class TestDebugMiddleware:
    async def test_logs_without_credentials(self, caplog):
        """Test the debug log carries the request line and status only."""
        middleware = DebugMiddleware()
        next_callback = AsyncMock(return_value=chain_result(body={"access_token": "secret"}))
        request = ChainRequest(
            method="POST", url=TOKEN_URL, headers={"Authorization": "DPoP secret"}
        )

        with caplog.at_level("DEBUG", logger="social.skyguide.atproto.chain"):
            await middleware.handle(next_callback, request)

        assert TOKEN_URL in caplog.text
        assert "200" in caplog.text
        assert "secret" not in caplog.text


class TestGenerateClaimAssertionMiddleware:
    """Test private_key_jwt client assertions."""

    async def test_adds_assertion(self):
        signing_key = create_test_jwk()
        middleware = GenerateClaimAssertionMiddleware(
            signing_key, "key-1", "https://app.example.com/client-metadata.json", TOKEN_URL
        )
        next_callback = AsyncMock(return_value=chain_result())
        request = ChainRequest(
            method="POST", url=TOKEN_URL, kwargs={"data": {"grant_type": "refresh_token"}}
        )

        await middleware.handle(next_callback, request)

        sent: ChainRequest = next_callback.await_args.args[0]
        data = sent.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["client_assertion_type"] == CLIENT_ASSERTION_TYPE

        token = jwt.JWT(jwt=data["client_assertion"], key=signing_key)
        claims = json.loads(token.claims)
        assert claims["iss"] == "https://app.example.com/client-metadata.json"
        assert claims["sub"] == claims["iss"]
        assert claims["aud"] == TOKEN_URL
        assert json.loads(token.header)["kid"] == "key-1"

    async def test_no_kwargs(self):
        middleware = GenerateClaimAssertionMiddleware(
            create_test_jwk(), "key-1", "client", TOKEN_URL
        )
        next_callback = AsyncMock(return_value=chain_result())
        request = ChainRequest(method="GET", url=TOKEN_URL)

        await middleware.handle(next_callback, request)

        assert next_callback.await_args.args[0].kwargs is None


class TestGenerateDpopMiddleware:
    """Test DPoP proof generation and nonce handling."""

    async def test_adds_proof(self):
        dpop_key = create_test_jwk()
        middleware = GenerateDpopMiddleware(dpop_key)
        next_callback = AsyncMock(return_value=chain_result())

        response = await middleware.handle(
            next_callback, ChainRequest(method="post", url=f"{TOKEN_URL}?x=1")
        )

        assert len(response) == 2
        proof = next_callback.await_args.args[0].headers["DPoP"]
        claims = decode_claims(proof)
        assert claims["htm"] == "POST"
        assert claims["htu"] == TOKEN_URL
        assert "nonce" not in claims
        assert "ath" not in claims

    async def test_access_token_binding(self):
        middleware = GenerateDpopMiddleware(create_test_jwk(), access_token="access-1")
        next_callback = AsyncMock(return_value=chain_result())

        await middleware.handle(next_callback, ChainRequest(method="GET", url=TOKEN_URL))

        claims = decode_claims(next_callback.await_args.args[0].headers["DPoP"])
        assert claims["ath"] == access_token_hash("access-1")

    async def test_replay_on_authorization_server_nonce(self):
        """Test a 400 use_dpop_nonce asks for a replay with the new nonce."""
        middleware = GenerateDpopMiddleware(create_test_jwk())
        next_callback = AsyncMock(
            return_value=chain_result(
                status=400,
                body={"error": "use_dpop_nonce"},
                headers={"DPoP-Nonce": "nonce-1"},
            )
        )

        response = await middleware.handle(
            next_callback, ChainRequest(method="POST", url=TOKEN_URL)
        )

        assert len(response) == 3
        assert middleware.nonce == "nonce-1"

    async def test_replay_on_resource_server_nonce(self):
        """Test a 401 with a WWW-Authenticate challenge asks for a replay."""
        middleware = GenerateDpopMiddleware(create_test_jwk(), access_token="a")
        next_callback = AsyncMock(
            return_value=chain_result(
                status=401,
                body={},
                headers={
                    "WWW-Authenticate": 'DPoP error="use_dpop_nonce"',
                    "DPoP-Nonce": "nonce-2",
                },
            )
        )

        response = await middleware.handle(
            next_callback, ChainRequest(method="GET", url=TOKEN_URL)
        )

        assert len(response) == 3

    async def test_no_replay_for_same_nonce(self):
        middleware = GenerateDpopMiddleware(create_test_jwk(), nonce="nonce-1")
        next_callback = AsyncMock(
            return_value=chain_result(
                status=400,
                body={"error": "use_dpop_nonce"},
                headers={"DPoP-Nonce": "nonce-1"},
            )
        )

        response = await middleware.handle(
            next_callback, ChainRequest(method="POST", url=TOKEN_URL)
        )

        assert len(response) == 2

    async def test_no_replay_on_other_errors(self):
        middleware = GenerateDpopMiddleware(create_test_jwk())
        next_callback = AsyncMock(
            return_value=chain_result(
                status=400,
                body={"error": "invalid_grant"},
                headers={"DPoP-Nonce": "nonce-1"},
            )
        )

        response = await middleware.handle(
            next_callback, ChainRequest(method="POST", url=TOKEN_URL)
        )

        assert len(response) == 2
        assert middleware.nonce == "nonce-1"


class TestChainMiddlewareClient:
    """Test the full chain against a mocked session."""

    async def test_nonce_replay_end_to_end(self):
        session = Mock(spec=ClientSession)
        session.request = AsyncMock(
            side_effect=[
                create_mock_response(
                    status=400,
                    body={"error": "use_dpop_nonce"},
                    headers={"DPoP-Nonce": "nonce-1"},
                ),
                create_mock_response(body={"access_token": "a"}),
            ]
        )
        dpop = GenerateDpopMiddleware(create_test_jwk())
        client = ChainMiddlewareClient(client_session=session, middleware=[dpop])

        async with client.post(TOKEN_URL, data={"code": "c"}) as (_, chain_response):
            assert chain_response.status == 200
            assert chain_response.body == {"access_token": "a"}

        assert session.request.await_count == 2
        (first, second) = session.request.await_args_list
        assert first.args == ("post", TOKEN_URL)
        assert first.kwargs["data"] == {"code": "c"}
        assert "nonce" not in decode_claims(first.kwargs["headers"]["DPoP"])
        assert decode_claims(second.kwargs["headers"]["DPoP"])["nonce"] == "nonce-1"

    async def test_retry_exhausted(self):
        """Test a server that keeps rotating nonces cannot loop forever."""
        session = Mock(spec=ClientSession)
        session.request = AsyncMock(
            side_effect=[
                create_mock_response(
                    status=400,
                    body={"error": "use_dpop_nonce"},
                    headers={"DPoP-Nonce": f"nonce-{i}"},
                )
                for i in range(5)
            ]
        )
        client = ChainMiddlewareClient(
            client_session=session, middleware=[GenerateDpopMiddleware(create_test_jwk())]
        )

        with pytest.raises(ChainRetryExhausted):
            await client.post(TOKEN_URL)

        assert session.request.await_count == 3

    async def test_closes_response_on_exit(self):
        session = Mock(spec=ClientSession)
        response = create_mock_response(body={})
        session.request = AsyncMock(return_value=response)
        client = ChainMiddlewareClient(client_session=session)

        async with client.get(TOKEN_URL):
            pass

        response.close.assert_called_once()
