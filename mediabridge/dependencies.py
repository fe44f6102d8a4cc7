from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader, APIKeyQuery

from mediabridge.configs import Settings
from mediabridge.middleware import RequestStats
from mediabridge.playback import PlaybackNegotiator, PlaybackReporter, SessionRegistry
from mediabridge.upstream import UpstreamClient

api_password_query = APIKeyQuery(name="api_password", auto_error=False)
api_password_header = APIKeyHeader(name="api_password", auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_upstream_client(request: Request) -> UpstreamClient:
    return request.app.state.upstream_client


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


def get_request_stats(request: Request) -> RequestStats:
    return request.app.state.request_stats


def get_negotiator(request: Request) -> PlaybackNegotiator:
    return request.app.state.negotiator


def get_reporter(request: Request) -> PlaybackReporter:
    return request.app.state.reporter


async def verify_api_key(
    request: Request,
    api_key: str = Security(api_password_query),
    api_key_alt: str = Security(api_password_header),
):
    """
    Verifies the API key for the request.

    Args:
        request (Request): The incoming request, used to reach the application settings.
        api_key (str): The API key to validate.
        api_key_alt (str): The alternative API key to validate.

    Raises:
        HTTPException: If the API key is invalid.
    """
    api_password = get_settings(request).api_password
    if not api_password:
        return

    if api_key == api_password or api_key_alt == api_password:
        return

    raise HTTPException(status_code=403, detail="Could not validate credentials")
