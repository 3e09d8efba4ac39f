"""
Exchange Orchestrator Tests
===========================

Tests the full authorization flow through AuthService against a fake
identity provider: initialize, callback, exchange (with the userinfo
fallback), refresh, bearer authentication and logout.
"""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, call, patch
from urllib.parse import parse_qs, urlparse

import pytest

from authbroker.app.auth.service import identity_from_credential
from authbroker.app.auth.tokens import ACCESS, REFRESH
from authbroker.app.auth.utils import is_valid_code_verifier, verify_code_challenge
from authbroker.app.errors import (
    ExternalServiceError,
    InvalidCredential,
    InvalidSession,
    NonceMismatch,
    NoTokenProvided,
    StateMismatch,
    ValidationError,
    WrongCredentialType,
)

from conftest import REVOKE_PATH, TOKEN_PATH, USERINFO_PATH, make_id_token


REDIRECT_URI = "myapp://callback"


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _id_claims(nonce: str, **extra) -> dict:
    claims = {
        "iss": "https://idp.example.test",
        "aud": "broker-client",
        "sub": "12345",
        "given_name": "Ana",
        "family_name": "Horvat",
        "oib": "12345678901",
        "nonce": nonce,
        "iat": 1_700_000_000,
        "exp": 1_700_003_600,
    }
    claims.update(extra)
    return claims


def _token_response(id_token=None, **extra) -> dict:
    body = {
        "access_token": "idp-access",
        "refresh_token": "idp-refresh",
        "token_type": "Bearer",
        "expires_in": 3600,
    }
    if id_token:
        body["id_token"] = id_token
    body.update(extra)
    return body


async def _initialize(service, state=None):
    response = await service.initialize(REDIRECT_URI, client_state=state)
    return response, _query(response.authorization_url)["nonce"]


# ============================================================================
# Initialize
# ============================================================================

@pytest.mark.asyncio
async def test_initialize_stores_pkce_session(auth_service):
    response, nonce = await _initialize(auth_service)

    params = _query(response.authorization_url)
    session = await auth_service.sessions.get(response.session_id)

    assert len(response.state) >= 32
    assert params["state"] == response.state == session.state
    assert session.nonce == nonce
    assert is_valid_code_verifier(session.code_verifier)
    assert verify_code_challenge(session.code_verifier, params["code_challenge"])
    assert params["code_challenge_method"] == "S256"
    assert params["redirect_uri"] == REDIRECT_URI
    assert "code_verifier" not in response.authorization_url


@pytest.mark.asyncio
async def test_initialize_with_client_state(auth_service):
    response, _ = await _initialize(auth_service, state="client-chosen-state")

    assert response.state == "client-chosen-state"


@pytest.mark.asyncio
async def test_initialize_twice_gives_distinct_sessions(auth_service):
    first, first_nonce = await _initialize(auth_service)
    second, second_nonce = await _initialize(auth_service)

    assert first.session_id != second.session_id
    assert first.state != second.state
    assert first_nonce != second_nonce


# ============================================================================
# Exchange
# ============================================================================

@pytest.mark.asyncio
async def test_exchange_issues_credentials(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345", "email": "ana@example.com", "given_name": "Userinfo"}))

    result = await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)

    assert result.token_type == "Bearer"
    assert result.expires_in == 3600
    assert result.user.sub == "12345"
    assert result.user.first_name == "Ana"
    assert result.user.last_name == "Horvat"
    assert result.user.oib == "12345678901"
    assert result.user.email == "ana@example.com"

    access = auth_service.codec.verify(result.access_token, ACCESS)
    assert access["sub"] == "12345"
    assert access["given_name"] == "Ana"
    assert access["provider_tokens"] == {
        "access_token": "idp-access",
        "refresh_token": "idp-refresh",
        "id_token": make_id_token(_id_claims(nonce)),
        "expires_in": 3600,
    }
    assert auth_service.codec.verify(result.refresh_token, REFRESH)["sub"] == "12345"

    token_form = parse_qs(idp.calls("POST", TOKEN_PATH)[0].content.decode())
    assert token_form["code"] == ["C1"]
    assert token_form["redirect_uri"] == [REDIRECT_URI]

    assert await auth_service.sessions.get(init.session_id) is None


@pytest.mark.asyncio
async def test_exchange_is_single_use(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345"}))
    await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)

    with pytest.raises(InvalidSession):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


@pytest.mark.asyncio
async def test_concurrent_exchanges_only_one_succeeds(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345"}))

    results = await asyncio.gather(
        auth_service.exchange(code="C1", state=init.state, session_id=init.session_id),
        auth_service.exchange(code="C1", state=init.state, session_id=init.session_id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidSession)


@pytest.mark.asyncio
async def test_state_mismatch_rejected_before_provider_call(auth_service, idp):
    init, _ = await _initialize(auth_service)

    with pytest.raises(StateMismatch):
        await auth_service.exchange(code="C1", state="forged", session_id=init.session_id)

    assert idp.requests == []


@pytest.mark.asyncio
async def test_unknown_session_rejected(auth_service, idp):
    with pytest.raises(InvalidSession):
        await auth_service.exchange(code="C1", state="S1", session_id="nope")

    assert idp.requests == []


@pytest.mark.asyncio
async def test_expired_session_rejected(auth_service, idp, clock):
    init, _ = await _initialize(auth_service)
    clock.advance(601)

    with pytest.raises(InvalidSession):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


@pytest.mark.asyncio
async def test_nonce_mismatch_rejected(auth_service, idp):
    init, _ = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims("other-nonce")))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345"}))

    with pytest.raises(NonceMismatch):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


@pytest.mark.asyncio
async def test_failed_exchange_keeps_session_for_retry(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (400, {"error": "invalid_grant", "error_description": "Code expired"}))

    with pytest.raises(ExternalServiceError) as exc_info:
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)
    assert exc_info.value.message == "Code expired"

    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345"}))

    result = await auth_service.exchange(code="C2", state=init.state, session_id=init.session_id)
    assert result.user.sub == "12345"


@pytest.mark.asyncio
async def test_userinfo_token_binding_failure_falls_back_to_id_token(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    id_claims = _id_claims(nonce)
    binding_error = {"error": "invalid_request", "error_description": "Token binding validation failed"}
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(id_claims))))
    idp.on("GET", USERINFO_PATH, (400, binding_error))
    idp.on("POST", USERINFO_PATH, (400, binding_error))

    result = await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)

    access = auth_service.codec.verify(result.access_token, ACCESS)
    expected = {k: v for k, v in id_claims.items() if k not in ("iat", "exp")}
    assert identity_from_credential(access) == expected
    assert result.user.sub == "12345"


@pytest.mark.asyncio
async def test_userinfo_failure_without_id_token_subject_fails(auth_service, idp):
    init, _ = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response()))
    idp.on("GET", USERINFO_PATH, (400, {"error": "invalid_request"}))
    idp.on("POST", USERINFO_PATH, (400, {"error": "invalid_request"}))

    with pytest.raises(ExternalServiceError):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


@pytest.mark.asyncio
async def test_userinfo_server_error_is_not_masked(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (500, {"error": "server_error"}))

    with pytest.raises(ExternalServiceError):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


@pytest.mark.asyncio
async def test_exchange_without_id_token_uses_userinfo(auth_service, idp):
    init, _ = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response()))
    idp.on("GET", USERINFO_PATH, (200, {"sub": 12345, "pin": "98765432109"}))

    result = await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)

    assert result.user.sub == "12345"
    assert result.user.oib == "98765432109"


@pytest.mark.asyncio
async def test_missing_provider_access_token_fails(auth_service, idp):
    init, _ = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, {"token_type": "Bearer"}))

    with pytest.raises(ExternalServiceError):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


@pytest.mark.asyncio
async def test_undecodable_id_token_fails(auth_service, idp):
    init, _ = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response("not-a-jwt")))

    with pytest.raises(ExternalServiceError):
        await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)


# ============================================================================
# Refresh
# ============================================================================

@pytest.mark.asyncio
async def test_refresh_issues_subject_only_access_token(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345", "email": "ana@example.com"}))
    issued = await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)

    refreshed = auth_service.refresh(issued.refresh_token)

    access = auth_service.codec.verify(refreshed.access_token, ACCESS)
    assert identity_from_credential(access) == {"sub": "12345"}
    assert auth_service.codec.verify(refreshed.refresh_token, REFRESH)["sub"] == "12345"


def test_refresh_with_access_token_rejected(auth_service):
    pair = auth_service.codec.issue_pair({"sub": "12345"})

    with pytest.raises(InvalidCredential):
        auth_service.refresh(pair.access_token)


def test_refresh_with_expired_token_rejected(auth_service, clock):
    pair = auth_service.codec.issue_pair({"sub": "12345"})
    clock.advance(7 * 24 * 3600)

    with pytest.raises(InvalidCredential):
        auth_service.refresh(pair.refresh_token)


def test_refresh_with_garbage_rejected(auth_service):
    with pytest.raises(InvalidCredential):
        auth_service.refresh("garbage")


# ============================================================================
# Callback and Polling
# ============================================================================

@pytest.mark.asyncio
async def test_callback_success_completes_polling(auth_service):
    polling = await auth_service.start_polling(state="S1", session_id=None)

    artifact = await auth_service.handle_callback(code="C1", state="S1")

    assert artifact.success
    assert artifact.code == "C1"
    status = await auth_service.polling_status(polling.polling_id)
    assert status.status == "completed"
    assert status.result.code == "C1"


@pytest.mark.asyncio
async def test_callback_error_fails_polling(auth_service):
    polling = await auth_service.start_polling(state="S1", session_id="sess")

    artifact = await auth_service.handle_callback(
        code=None, state="S1", error="access_denied", error_description="User cancelled"
    )

    assert not artifact.success
    assert artifact.error == "access_denied"
    status = await auth_service.polling_status(polling.polling_id)
    assert status.status == "error"
    assert status.error == "access_denied"
    assert status.error_description == "User cancelled"


@pytest.mark.asyncio
async def test_callback_error_without_state(auth_service):
    artifact = await auth_service.handle_callback(code=None, state=None, error="server_error")

    assert not artifact.success
    assert artifact.message == "An error occurred during authentication."


@pytest.mark.asyncio
@pytest.mark.parametrize("code,state", [(None, "S1"), ("C1", None), (None, None)])
async def test_callback_missing_parameters(auth_service, code, state):
    with pytest.raises(ValidationError):
        await auth_service.handle_callback(code=code, state=state)


@pytest.mark.asyncio
async def test_start_polling_reports_expiry(auth_service, clock):
    response = await auth_service.start_polling(state="S1", session_id=None)

    assert isinstance(response.expires_at, datetime)
    assert response.expires_at.timestamp() == clock() + 600


# ============================================================================
# Bearer Authentication and Logout
# ============================================================================

@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer"])
def test_authenticate_without_bearer_token(auth_service, header):
    with pytest.raises(NoTokenProvided):
        auth_service.authenticate(header)


def test_authenticate_rejects_refresh_token(auth_service):
    pair = auth_service.codec.issue_pair({"sub": "12345"})

    with pytest.raises(WrongCredentialType):
        auth_service.authenticate(f"Bearer {pair.refresh_token}")


def test_authenticate_accepts_access_token(auth_service):
    pair = auth_service.codec.issue_pair({"sub": "12345"})

    assert auth_service.authenticate(f"Bearer {pair.access_token}")["sub"] == "12345"


@pytest.mark.asyncio
async def test_logout_revokes_provider_tokens(auth_service, idp):
    idp.on("POST", REVOKE_PATH, (200, {}))
    payload = {"sub": "12345", "provider_tokens": {"access_token": "AT", "refresh_token": "RT"}}

    await auth_service.logout(payload)

    hints = [parse_qs(r.content.decode())["token_type_hint"][0] for r in idp.calls("POST", REVOKE_PATH)]
    assert hints == ["refresh_token", "access_token"]


@pytest.mark.asyncio
async def test_logout_without_provider_tokens(auth_service, idp):
    await auth_service.logout({"sub": "12345"})

    assert idp.requests == []


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token_first(auth_service):
    payload = {"sub": "12345", "provider_tokens": {"access_token": "AT", "refresh_token": "RT"}}

    with patch.object(auth_service.provider, "revoke_token", new_callable=AsyncMock) as revoke:
        await auth_service.logout(payload)

    assert revoke.await_args_list == [call("RT", "refresh_token"), call("AT", "access_token")]


@pytest.mark.asyncio
async def test_issuance_failure_releases_session(auth_service, idp):
    init, nonce = await _initialize(auth_service)
    idp.on("POST", TOKEN_PATH, (200, _token_response(make_id_token(_id_claims(nonce)))))
    idp.on("GET", USERINFO_PATH, (200, {"sub": "12345"}))

    with patch.object(auth_service.codec, "issue_pair", side_effect=RuntimeError("signing failed")):
        with pytest.raises(RuntimeError):
            await auth_service.exchange(code="C1", state=init.state, session_id=init.session_id)

    session = await auth_service.sessions.get(init.session_id)
    assert session is not None
    assert not session.claimed
