from __future__ import annotations

import json

import pytest

from ticketdesk.exceptions import AuthorizationError, HTTPError, NotFoundError, ValidationError
from ticketdesk.http import Status, ensure_status, reason_phrase
from ticketdesk.responses import (
    DEFAULT_SECURITY_HEADERS,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    apply_default_security_headers,
    exception_to_response,
)


def test_json_response_sets_content_type_and_security_headers() -> None:
    response = JSONResponse({"ok": True}, status=201, headers=[("x-extra", "1")])
    assert response.status == 201
    assert json.loads(response.body) == {"ok": True}
    assert response.header("Content-Type") == "application/json"
    assert response.header("x-extra") == "1"
    for name, value in DEFAULT_SECURITY_HEADERS:
        assert response.header(name) == value


def test_existing_security_headers_are_kept() -> None:
    response = Response(headers=(("x-frame-options", "SAMEORIGIN"),))
    hardened = apply_default_security_headers(response)
    assert hardened.header("x-frame-options") == "SAMEORIGIN"
    assert len([name for name, _ in hardened.headers if name == "x-frame-options"]) == 1


def test_plain_text_response() -> None:
    response = PlainTextResponse("héllo")
    assert response.body == "héllo".encode()
    assert response.header("content-type") == "text/plain; charset=utf-8"


def test_redirect_appends_query_parameters() -> None:
    assert RedirectResponse("/auth/signin", params={"redirect": "/tickets?x=1"}).header("location") == (
        "/auth/signin?redirect=%2Ftickets%3Fx%3D1"
    )
    assert RedirectResponse("/a?b=1", params={"c": "2"}).header("location") == "/a?b=1&c=2"
    assert RedirectResponse("/dashboard").status == 303


@pytest.mark.parametrize(
    ("error", "status", "detail"),
    [
        (ValidationError("name", "required"), 400, {"field": "name", "message": "required"}),
        (AuthorizationError("not_a_member", capability="respond"), 403, {"detail": "not_a_member", "capability": "respond"}),
        (NotFoundError("ticket", "t1"), 404, {"detail": "ticket_not_found", "id": "t1"}),
    ],
)
def test_errors_render_as_json(error: HTTPError, status: int, detail: object) -> None:
    response = exception_to_response(error)
    assert response.status == status
    body = json.loads(response.body)
    assert body["error"]["status"] == status
    assert body["error"]["detail"] == detail
    assert body["error"]["reason"] == reason_phrase(status)


def test_status_helpers() -> None:
    assert ensure_status(Status.CREATED) == 201
    with pytest.raises(ValueError):
        ensure_status(700)
    assert reason_phrase(404) == "Not Found"
    assert reason_phrase(999) == "Unknown Status"
