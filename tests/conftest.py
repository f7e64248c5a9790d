"""
Shared test configuration and fixtures for Sky Guide tests.

Provides settings, stores, a metrics mock and a fake aiohttp client session
that serves canned responses by method and URL, so the OAuth flow can be
exercised end to end without a network.
"""

import json
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientResponse, hdrs
from multidict import CIMultiDict, CIMultiDictProxy

from social.skyguide.app.config import Settings
from social.skyguide.app.metrics import MetricsClient
from social.skyguide.store.memory import MemorySessionStore, MemoryStateStore

PDS = "https://pds.example.com"
ISSUER = "https://auth.example.com"
TOKEN_ENDPOINT = f"{ISSUER}/oauth/token"
PAR_ENDPOINT = f"{ISSUER}/oauth/par"
AUTHORIZATION_ENDPOINT = f"{ISSUER}/oauth/authorize"
REVOCATION_ENDPOINT = f"{ISSUER}/oauth/revoke"
DID = "did:plc:abc"
HANDLE = "alice.example.com"


class RawBody(str):
    """A response body served verbatim even under a JSON content type."""


def create_mock_response(
    status: int = 200,
    headers: Optional[Dict[str, str]] = None,
    content_type: str = "application/json",
    body: Any = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    if hdrs.CONTENT_TYPE not in headers_dict:
        headers_dict[hdrs.CONTENT_TYPE] = content_type
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    if isinstance(body, RawBody):
        mock_response.json = AsyncMock(
            side_effect=json.JSONDecodeError("Expecting value", body, 0)
        )
        mock_response.text = AsyncMock(return_value=str(body))
        mock_response.read = AsyncMock(return_value=body.encode())
    elif content_type.startswith("application/json"):
        mock_response.json = AsyncMock(return_value=body)
        mock_response.text = AsyncMock(return_value=json.dumps(body))
        mock_response.read = AsyncMock(return_value=json.dumps(body).encode())
    else:
        text_body = str(body) if body is not None else ""
        mock_response.json = AsyncMock(side_effect=ValueError("Not JSON"))
        mock_response.text = AsyncMock(return_value=text_body)
        mock_response.read = AsyncMock(return_value=text_body.encode())

    mock_response.raise_for_status = Mock()
    mock_response.closed = False
    mock_response.close = Mock()

    return mock_response


class _ResponseContext:
    def __init__(self, response: ClientResponse) -> None:
        self._response = response

    async def __aenter__(self) -> ClientResponse:
        return self._response

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSession:
    """Stands in for aiohttp.ClientSession.

    Responses are registered per (method, url) and served in order; the last
    one registered for a route repeats. Unregistered routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Tuple[int, Any, Dict[str, str], str]]] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        content_type: str = "application/json",
    ) -> "FakeSession":
        self.routes.setdefault((method.upper(), url), []).append(
            (status, body, dict(headers or {}), content_type)
        )
        return self

    def _next(self, method: str, url: str) -> ClientResponse:
        responses = self.routes.get((method.upper(), url), None)
        if not responses:
            return create_mock_response(status=404, body={"error": "not_found"})
        if len(responses) > 1:
            status, body, headers, content_type = responses.pop(0)
        else:
            status, body, headers, content_type = responses[0]
        return create_mock_response(
            status=status, headers=headers, content_type=content_type, body=body
        )

    def calls_to(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [
            kwargs
            for (call_method, call_url, kwargs) in self.calls
            if call_method == method.upper() and call_url == url
        ]

    def get(self, url: Any, **kwargs: Any) -> _ResponseContext:
        self.calls.append(("GET", str(url), kwargs))
        return _ResponseContext(self._next("GET", str(url)))

    async def request(self, method: str, url: Any, **kwargs: Any) -> ClientResponse:
        self.calls.append((method.upper(), str(url), kwargs))
        return self._next(method, str(url))


def authorization_server_metadata(**overrides: Any) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "issuer": ISSUER,
        "authorization_endpoint": AUTHORIZATION_ENDPOINT,
        "token_endpoint": TOKEN_ENDPOINT,
        "pushed_authorization_request_endpoint": PAR_ENDPOINT,
        "require_pushed_authorization_requests": False,
        "revocation_endpoint": REVOCATION_ENDPOINT,
        "dpop_signing_alg_values_supported": ["ES256"],
    }
    metadata.update(overrides)
    return metadata


def did_document(did: str = DID, handle: str = HANDLE, pds: str = PDS) -> Dict[str, Any]:
    return {
        "id": did,
        "alsoKnownAs": [f"at://{handle}"],
        "service": [
            {
                "id": "#atproto_pds",
                "type": "AtprotoPersonalDataServer",
                "serviceEndpoint": pds,
            }
        ],
    }


def add_discovery(
    session: FakeSession,
    did: str = DID,
    handle: str = HANDLE,
    **metadata_overrides: Any,
) -> FakeSession:
    """Register the DID document, protected resource and issuer metadata."""
    session.add("GET", f"https://plc.directory/{did}", body=did_document(did, handle))
    session.add(
        "GET",
        f"{PDS}/.well-known/oauth-protected-resource",
        body={"resource": PDS, "authorization_servers": [ISSUER]},
    )
    session.add(
        "GET",
        f"{ISSUER}/.well-known/oauth-authorization-server",
        body=authorization_server_metadata(**metadata_overrides),
    )
    return session


def token_response(**overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "access_token": "access-token-1",
        "refresh_token": "refresh-token-1",
        "token_type": "DPoP",
        "expires_in": 3600,
        "scope": "atproto transition:generic",
        "sub": DID,
    }
    body.update(overrides)
    return body


@pytest.fixture
def settings() -> Settings:
    return Settings(
        public_url="http://127.0.0.1:5174",
        development_mode=True,
        debug=False,
        plc_hostname="plc.directory",
        default_service="https://bsky.social",
    )


@pytest.fixture
def metrics_client() -> Mock:
    return Mock(spec=MetricsClient)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()
