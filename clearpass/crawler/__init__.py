"""
clearpass crawler module.

Provides the rendering-context dispatcher, challenge handling, cookie
store, session warmup and the fetch facade.
"""

from clearpass.crawler.challenge_detector import (
    PageVerdict,
    classify,
    detect_challenge_type,
    estimate_auth_effort,
    is_challenge_page,
    is_challenge_response,
)
from clearpass.crawler.cookie_store import CookieRecord, CookieStore
from clearpass.crawler.dispatcher import Dispatcher
from clearpass.crawler.fetch_request import FetchRequest, RenderingContextState, RequestKind
from clearpass.crawler.fetcher import FetchFacade
from clearpass.crawler.http_fetcher import HTTPFetcher, HttpResponse
from clearpass.crawler.rendering_context import RenderingContext
from clearpass.crawler.retry import ChallengeRetryController
from clearpass.crawler.warmup import SessionWarmupCoordinator

__all__ = [
    # Challenge detection
    "PageVerdict",
    "classify",
    "detect_challenge_type",
    "estimate_auth_effort",
    "is_challenge_page",
    "is_challenge_response",
    # Cookies
    "CookieRecord",
    "CookieStore",
    # Dispatch
    "Dispatcher",
    "FetchRequest",
    "RenderingContextState",
    "RequestKind",
    "RenderingContext",
    "ChallengeRetryController",
    "SessionWarmupCoordinator",
    # Facade
    "FetchFacade",
    "HTTPFetcher",
    "HttpResponse",
]
