"""FastAPI routes for the OAuth 1.0a handshake."""

from urllib.parse import parse_qsl, urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.core.actor import Actor
from consumerauth.core.auth import get_current_actor
from consumerauth.core.exceptions import InvalidRequestError
from consumerauth.core.tokens import TokenCredentials
from consumerauth.database import get_db
from consumerauth.oauth1.request import SignedRequest
from consumerauth.oauth1.server import OAuthServer

router = APIRouter(prefix="/oauth", tags=["oauth"])

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def get_oauth_server(request: Request, db: AsyncSession = Depends(get_db)) -> OAuthServer:
    hooks = getattr(request.app.state, "oauth_user_hooks", ())
    return OAuthServer(db, user_hooks=hooks)


async def signed_request_from(request: Request) -> SignedRequest:
    form: dict[str, str] = {}
    if request.headers.get("content-type", "").startswith(FORM_CONTENT_TYPE):
        try:
            body = (await request.body()).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidRequestError("Form body is not valid UTF-8") from exc
        form = dict(parse_qsl(body, keep_blank_values=True))
    return SignedRequest.from_parts(
        request.method,
        str(request.url),
        authorization=request.headers.get("authorization"),
        query=dict(request.query_params),
        form=form,
        source_ip=request.client.host if request.client else "",
    )


def _token_response(credentials: TokenCredentials, **extra: str) -> PlainTextResponse:
    body = urlencode({"oauth_token": credentials.key, "oauth_token_secret": credentials.secret, **extra})
    return PlainTextResponse(body, media_type=FORM_CONTENT_TYPE)


@router.post("/initiate")
async def initiate(request: Request, server: OAuthServer = Depends(get_oauth_server)):
    """Request-token endpoint."""
    signed = await signed_request_from(request)
    credentials = await server.fetch_request_token(signed)
    return _token_response(credentials, oauth_callback_confirmed="true")


@router.post("/authorize")
async def authorize(
    oauth_consumer_key: str = Query(...),
    oauth_token: str = Query(...),
    actor: Actor = Depends(get_current_actor),
    server: OAuthServer = Depends(get_oauth_server),
):
    """The authenticated user approves the request token; returns where to send them next."""
    redirect_uri = await server.authorize(oauth_consumer_key, oauth_token, actor)
    return {"redirect_uri": redirect_uri}


@router.post("/token")
async def token(request: Request, server: OAuthServer = Depends(get_oauth_server)):
    """Access-token endpoint."""
    signed = await signed_request_from(request)
    credentials = await server.fetch_access_token(signed)
    return _token_response(credentials)


@router.get("/identify")
async def identify(request: Request, server: OAuthServer = Depends(get_oauth_server)):
    """Describe the grant behind a request signed with an access token."""
    signed = await signed_request_from(request)
    acceptance = await server.verify_request(signed)
    return {
        "user_id": acceptance.user_id,
        "wiki": acceptance.wiki,
        "grants": acceptance.get_grants(),
        "accepted": acceptance.accepted.isoformat() if acceptance.accepted else None,
    }
