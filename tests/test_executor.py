from __future__ import annotations

import httpx

from delaytask.executor import NO_OUTCOME, http_request, invoke, run_callback
from delaytask.models import Task


def _task(**fields) -> Task:
    base = {"topic": "order", "id": "1", "due_time": 0, "create_time": "2024-01-01 00:00:00"}
    base.update(fields)
    return Task(**base)


def test_get_sends_params_in_query(make_http_client, http_calls, registry) -> None:
    task = _task(url="example.com/hook", params={"order": "1"})

    outcome = invoke(task, registry, make_http_client("success"))

    assert outcome == "success"
    (request,) = http_calls
    assert request.method == "GET"
    assert str(request.url) == "http://example.com/hook?order=1"


def test_post_sends_form_body(make_http_client, http_calls) -> None:
    body = http_request(make_http_client("fail"), "https://example.com/hook", {"order": "1"}, "post")

    assert body == "fail"
    (request,) = http_calls
    assert request.method == "POST"
    assert request.url.scheme == "https"
    assert request.content == b"order=1"


def test_transport_error_gives_no_outcome(registry) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    assert invoke(_task(url="example.com"), registry, client) == NO_OUTCOME


def test_registered_handler_gets_full_task(registry) -> None:
    seen = []

    @registry.register("billing", "charge")
    def charge(task):
        seen.append(task)
        return "SUCCESS"

    task = _task(call=["billing", "charge"])

    assert invoke(task, registry) == "SUCCESS"
    assert seen == [task]


def test_missing_handler_gives_no_outcome(registry) -> None:
    assert invoke(_task(call=["billing", "gone"]), registry) == NO_OUTCOME


def test_raising_handler_gives_no_outcome(registry) -> None:
    def boom(task):
        raise RuntimeError("boom")

    registry.register("billing", "charge", boom)

    assert invoke(_task(call=["billing", "charge"]), registry) == NO_OUTCOME


def test_non_text_result_is_stringified(registry) -> None:
    registry.register("billing", "count", lambda task: 3)

    assert invoke(_task(call=["billing", "count"]), registry) == "3"


def test_callback_errors_are_swallowed(registry) -> None:
    calls = []

    def notify(task):
        calls.append(task.key)
        raise RuntimeError("mail server down")

    registry.register("mail", "notify", notify)

    run_callback(_task(url="example.com", callback=["mail", "notify"]), registry)
    run_callback(_task(url="example.com", callback=["mail", "missing"]), registry)

    assert calls == ["order:1"]


def test_unparseable_url_gives_no_outcome(make_http_client, http_calls) -> None:
    client = make_http_client("success")

    assert http_request(client, "http://[::1") == NO_OUTCOME
    assert http_request(client, "example.com:notaport/hook", {"a": "1"}, "POST") == NO_OUTCOME
    assert http_calls == []
