import http.client as http_client
import json
import urllib.error
from datetime import UTC, datetime

import pytest

from acp.errors import ForwardError
from acp.models import AppointmentStatus, ChangeEvent
from acp.sink.http import HttpSinkForwarder

from fake_http import FakeHttp, json_response


def _event(appointment_id: int, event_id: str) -> ChangeEvent:
    return ChangeEvent(
        appointment_id=appointment_id,
        status=AppointmentStatus.CANCELLED,
        status_code="x",
        start_time=datetime(2026, 2, 11, 10, 30, tzinfo=UTC),
        event_id=event_id,
    )


def test_forward_puts_whole_batch_as_json_array() -> None:
    http = FakeHttp(responses=[json_response(200, {"ok": True})])
    forwarder = HttpSinkForwarder(url="https://sink.example.test/update", http=http, headers={"X-Api-Key": "k"})

    result = forwarder.forward([_event(1, "100"), _event(2, "101")])
    assert result.events == 2
    assert result.status == 200

    req = http.requests[0]
    assert req.method == "PUT"
    assert req.url == "https://sink.example.test/update"
    assert req.headers["X-Api-Key"] == "k"
    assert req.headers["Content-Type"].startswith("application/json")
    body = json.loads(req.data.decode("utf-8"))
    assert [e["appointmentId"] for e in body] == [1, 2]
    assert body[0]["startTimeISO"] == "2026-02-11T10:30:00Z"


def test_non_2xx_is_rejected_failure() -> None:
    http = FakeHttp(responses=[json_response(422, {"error": "bad payload"})])
    forwarder = HttpSinkForwarder(url="https://sink.example.test/update", http=http)
    with pytest.raises(ForwardError) as exc:
        forwarder.forward([_event(1, "100")])
    assert exc.value.kind == "rejected"
    assert exc.value.status == 422
    assert "bad payload" in exc.value.body


def test_network_error_is_network_failure() -> None:
    http = FakeHttp(responses=[urllib.error.URLError("no route to host")])
    forwarder = HttpSinkForwarder(url="https://sink.example.test/update", http=http)
    with pytest.raises(ForwardError) as exc:
        forwarder.forward([_event(1, "100")])
    assert exc.value.kind == "network"
    assert exc.value.status is None
    assert len(http.requests) == 1


def test_malformed_response_is_network_failure() -> None:
    fake = FakeHttp(responses=[http_client.BadStatusLine("garbage not http\r\n")])
    forwarder = HttpSinkForwarder(url="https://sink.example.test/update", http=fake)
    with pytest.raises(ForwardError) as exc:
        forwarder.forward([_event(1, "100")])
    assert exc.value.kind == "network"
    assert exc.value.status is None
    assert "garbage not http" in exc.value.body
