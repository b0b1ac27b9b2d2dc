import logging
from typing import Any, Dict, Optional

import httpx

from .handlers import HandlerRegistry
from .models import Task

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 1.0
# outcome reported when nothing usable came back; it takes the retry path
NO_OUTCOME = ""


def normalize_url(url: str) -> str:
    if not url.lower().startswith(("http://", "https://")):
        return "http://" + url
    return url


def http_request(client: httpx.Client, url: str, params: Optional[Dict[str, Any]] = None, method: str = "GET") -> str:
    """
    GET sends params in the query string, POST as a form body.
    Returns the response body, or NO_OUTCOME on a transport error or a
    url httpx can not parse.
    """
    url = normalize_url(url)
    try:
        if method.upper() == "POST":
            resp = client.post(url, data=params or {})
        else:
            resp = client.get(url, params=params or {})
    except httpx.InvalidURL as e:
        logger.warning("invalid url %s: %s", url, e)
        return NO_OUTCOME
    except httpx.HTTPError as e:
        logger.warning("request failed url=%s: %s", url, e)
        return NO_OUTCOME
    return resp.text


def call_handler(registry: HandlerRegistry, ref, task: Task, what: str = "call") -> Optional[str]:
    handler = registry.resolve(ref)
    if handler is None:
        logger.warning("%s handler %s not registered, task=%s", what, ":".join(map(str, ref)), task.key)
        return None
    try:
        result = handler(task)
    except Exception:
        logger.exception("%s handler %s raised, task=%s", what, ":".join(map(str, ref)), task.key)
        return None
    return "" if result is None else str(result)


def invoke(task: Task, registry: HandlerRegistry, http_client: Optional[httpx.Client] = None) -> str:
    """Run the task once and return its textual outcome."""
    if task.url:
        if http_client is None:
            with httpx.Client(timeout=DEFAULT_HTTP_TIMEOUT) as client:
                return http_request(client, task.url, task.params, task.method)
        return http_request(http_client, task.url, task.params, task.method)

    outcome = call_handler(registry, task.call, task)
    return NO_OUTCOME if outcome is None else outcome


def run_callback(task: Task, registry: HandlerRegistry) -> None:
    """Callbacks run once after a success; their result and errors are not acted on."""
    if task.callback:
        call_handler(registry, task.callback, task, what="callback")
