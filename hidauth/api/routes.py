from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from hidauth.api.error_handling import oauth_error_response
from hidauth.api.schemas import (
    AccountResponse,
    BlacklistRequest,
    ClientSummary,
    Envelope,
    SignedRequestBody,
    SignedRequestResponse,
    TokenIssuedResponse,
    TokenRecordResponse,
    TokenRequest,
    TotpCodeRequest,
    TotpEnrollmentResponse,
)
from hidauth.logging import get_logger
from hidauth.service.errors import NotFoundError, OAuthError
from hidauth.service.oauth import (
    AuthorizationRequest,
    ConfigurationProblem,
    ConsentPrompt,
    RedirectTo,
)
from hidauth.service.runtime import Runtime, check_rate_limit, get_runtime
from hidauth.service.session import Authenticated, AwaitingTOTP, SessionState
from hidauth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
# Browser-facing login and OAuth endpoints live at the site root
browser_router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Raise 429 when ``key`` has exhausted its bucket."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("route_rate_limited", key=key.split(":", 1)[0])
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@dataclass
class AuthContext:
    account: Account
    session_id: Optional[str] = None
    token: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _session_state(runtime: Runtime, request: Request) -> SessionState:
    return runtime.sessions.resolve(request.cookies.get(runtime.settings.session_cookie))


async def get_principal(request: Request) -> AuthContext:
    """Caller identity from a bearer JWT or a fully logged-in session cookie."""
    runtime = get_runtime()
    token = _bearer_token(request.headers.get("Authorization"))
    if token:
        claims = runtime.tokens.authenticate(token)
        account = runtime.store.get_account(str(claims.get("id")))
        if account is None:
            raise _http_error("unauthorized", "invalid token", status_code=401)
        return AuthContext(account=account, token=token)
    state = _session_state(runtime, request)
    if isinstance(state, Authenticated):
        account = runtime.store.get_account(state.account_id)
        if account is not None:
            return AuthContext(account=account, session_id=state.session_id)
    raise _http_error("unauthorized", "authentication required", status_code=401)


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(**account.public_dict())


async def _issue_token(
    request: Request, body: TokenRequest, response: Response, *, require_admin: bool
) -> Envelope:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"jwt:{body.email or _client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    account, token = runtime.login.issue_api_token(
        body.email,
        body.password,
        totp_code=request.headers.get("X-HID-TOTP"),
        user_agent=request.headers.get("User-Agent"),
        trust_cookie=request.cookies.get(runtime.settings.totp_trust_cookie),
        exp=body.exp,
        require_admin=require_admin,
    )
    return Envelope(
        status="ok",
        data=TokenIssuedResponse(user=_account_response(account), token=token),
    )


@router.post("/jsonwebtoken", response_model=Envelope, tags=["auth"])
async def create_token(request: Request, body: TokenRequest, response: Response):
    """Exchange email, password and (when enabled) a TOTP code for a JWT.

    Without ``exp`` the token never expires and is recorded as an API key
    that its owner can later blacklist.
    """
    return await _issue_token(request, body, response, require_admin=False)


@router.post("/admintoken", response_model=Envelope, tags=["auth"])
async def create_admin_token(request: Request, body: TokenRequest, response: Response):
    return await _issue_token(request, body, response, require_admin=True)


@router.get("/jsonwebtoken", response_model=Envelope, tags=["auth"])
async def list_tokens(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    records = runtime.tokens.list_tokens(principal.account.id)
    return Envelope(
        status="ok",
        data=[TokenRecordResponse(**record.to_dict()) for record in records],
    )


@router.delete("/jsonwebtoken", response_model=Envelope, tags=["auth"])
async def blacklist_token(
    body: BlacklistRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    record = runtime.tokens.blacklist(body.token, principal.account.id)
    return Envelope(status="ok", data=TokenRecordResponse(**record.to_dict()))


@router.post("/signedRequest", response_model=Envelope, tags=["auth"])
async def sign_request(
    body: SignedRequestBody, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    bewit = runtime.signer.sign(body.url, principal.account.id)
    return Envelope(status="ok", data=SignedRequestResponse(bewit=bewit))


@router.get("/account", response_model=Envelope, tags=["account"])
async def get_account(principal: AuthContext = Depends(get_principal)):
    return Envelope(status="ok", data=_account_response(principal.account))


@router.get("/account/clients", response_model=Envelope, tags=["account"])
async def list_authorized_clients(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    clients = runtime.oauth.authorized_clients(principal.account)
    return Envelope(status="ok", data=[ClientSummary(**c) for c in clients])


@router.delete("/account/clients/{client_id}", response_model=Envelope, tags=["account"])
async def revoke_authorized_client(
    client_id: str = Path(..., max_length=256),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    if not runtime.oauth.revoke_client(principal.account.id, client_id):
        raise NotFoundError("client is not authorized", detail={"client_id": client_id})
    return Envelope(status="ok", data={"client_id": client_id, "revoked": True})


@router.post("/totp/enroll", response_model=Envelope, tags=["totp"])
async def enroll_totp(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    enrollment = runtime.totp.enroll(principal.account)
    return Envelope(status="ok", data=TotpEnrollmentResponse(**enrollment))


@router.post("/totp/enable", response_model=Envelope, tags=["totp"])
async def enable_totp(body: TotpCodeRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.totp.confirm_enrollment(principal.account, body.code)
    return Envelope(status="ok", data=_account_response(principal.account))


@router.post("/totp/disable", response_model=Envelope, tags=["totp"])
async def disable_totp(body: TotpCodeRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.totp.disable(principal.account, body.code)
    return Envelope(status="ok", data=_account_response(principal.account))


# Browser login


def _set_session_cookie(response: Response, runtime: Runtime, session_id: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie,
        session_id,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.session_ttl_minutes * 60,
        domain=settings.cookie_domain,
        path="/",
    )


def _set_trust_cookie(response: Response, runtime: Runtime, secret: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.totp_trust_cookie,
        secret,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.totp_trust_ttl_days * 24 * 60 * 60,
        domain=settings.cookie_domain,
        path="/",
    )


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=302)


@browser_router.post("/login", tags=["browser"])
async def browser_login(request: Request):
    """Form login; redirects once fully logged in, else asks for a TOTP code."""
    runtime = get_runtime()
    form = dict(await request.form())
    state = _session_state(runtime, request)
    if isinstance(state, Authenticated):
        return _redirect(runtime.login.build_login_redirect(form))

    email = (form.get("email") or "").strip().lower()
    await _enforce_rate_limit(
        runtime,
        f"login:{email or _client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    state = runtime.login.login(
        form.get("email"),
        form.get("password"),
        user_agent=request.headers.get("User-Agent"),
        trust_cookie=request.cookies.get(runtime.settings.totp_trust_cookie),
    )
    if isinstance(state, AwaitingTOTP):
        response = JSONResponse(
            content=Envelope(
                status="ok",
                data={
                    "totp_required": True,
                    "destination": "/login/totp",
                    "query": AuthorizationRequest.from_params(form).oauth_params(),
                },
            ).model_dump()
        )
    else:
        response = _redirect(runtime.login.build_login_redirect(form))
    _set_session_cookie(response, runtime, state.session_id)
    return response


@browser_router.post("/login/totp", tags=["browser"])
async def browser_login_totp(request: Request):
    runtime = get_runtime()
    form = dict(await request.form())
    state = _session_state(runtime, request)
    authenticated, trust_secret = runtime.login.submit_totp(
        state,
        form.get("x-hid-totp") or form.get("code"),
        remember_device=bool(form.get("x-hid-totp-trust")),
        user_agent=request.headers.get("User-Agent"),
    )
    response = _redirect(runtime.login.build_login_redirect(form))
    if trust_secret:
        _set_trust_cookie(response, runtime, trust_secret)
    return response


@browser_router.post("/logout", response_model=Envelope, tags=["browser"])
async def browser_logout(request: Request, response: Response):
    runtime = get_runtime()
    runtime.sessions.end(request.cookies.get(runtime.settings.session_cookie))
    response.delete_cookie(
        runtime.settings.session_cookie,
        path="/",
        domain=runtime.settings.cookie_domain,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
    )
    return Envelope(status="ok", data={"message": "session ended"})


# OAuth2 / OpenID Connect


@browser_router.get("/oauth/authorize", tags=["oauth"])
async def oauth_authorize(request: Request):
    """Authorization dialog: login redirect, consent prompt or code redirect."""
    runtime = get_runtime()
    outcome = await runtime.oauth.authorize(
        AuthorizationRequest.from_params(request.query_params),
        _session_state(runtime, request),
    )
    if isinstance(outcome, RedirectTo):
        return _redirect(outcome.url)
    if isinstance(outcome, ConsentPrompt):
        return Envelope(
            status="ok",
            data={
                "transaction_id": outcome.transaction_id,
                "client": ClientSummary(**outcome.client.public_dict()),
                "scope": outcome.scope,
            },
        )
    if isinstance(outcome, ConfigurationProblem):
        raise _http_error(
            "invalid_request",
            "There is a configuration problem with this application",
            status_code=400,
            details={"go_back": outcome.go_back},
        )
    raise _http_error("server_error", "unexpected authorization outcome", status_code=500)


@browser_router.post("/oauth/authorize", tags=["oauth"])
async def oauth_decide(request: Request):
    runtime = get_runtime()
    form = dict(await request.form())
    outcome = await runtime.oauth.decide(
        form.get("transaction_id"),
        _session_state(runtime, request),
        allow=form.get("bsubmit") == "Allow",
    )
    return _redirect(outcome.url)


@browser_router.post("/oauth/access_token", tags=["oauth"])
async def oauth_access_token(request: Request):
    """Token endpoint; errors use the RFC 6749 body instead of the envelope."""
    runtime = get_runtime()
    form = dict(await request.form())
    await _enforce_rate_limit(
        runtime,
        f"token:{form.get('client_id') or _client_ip(request)}",
        runtime.settings.token_rate_limit_per_minute,
        60,
    )
    try:
        result = runtime.oauth.exchange(form, request.headers.get("Authorization"))
    except OAuthError as exc:
        return oauth_error_response(exc)
    return JSONResponse(content=result.to_dict(), headers=_NO_STORE)


@browser_router.get("/oauth/jwks", tags=["oauth"])
async def oauth_jwks():
    return get_runtime().tokens.jwks()


@browser_router.get("/.well-known/openid-configuration", tags=["oauth"])
async def openid_configuration():
    return get_runtime().oauth.openid_configuration()
