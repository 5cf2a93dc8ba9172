from datetime import UTC, datetime, timedelta, timezone

import pytest

from acp.models import AppointmentStatus
from acp.normalize.normalizer import EventNormalizer, parse_start_time


def _rec(appointment_id, status, eventid, date="02/11/2026", starttime="10:30", **extra) -> dict:  # noqa: ANN001
    return {
        "appointmentid": appointment_id,
        "appointmentstatus": status,
        "date": date,
        "starttime": starttime,
        "eventid": eventid,
        **extra,
    }


def test_unrecognized_status_is_dropped_and_order_preserved() -> None:
    records = [
        _rec("1", "o", "10"),
        _rec("2", "x", "11"),
        _rec("3", "?", "12"),
        _rec("4", "f", "13"),
        _rec("5", "o", "14"),
    ]
    report = EventNormalizer(tz=UTC).normalize_with_report(records)
    assert [e.appointment_id for e in report.events] == [1, 2, 4, 5]
    assert report.dropped == 1
    assert [e.status for e in report.events] == [
        AppointmentStatus.BOOKED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.FILLED,
        AppointmentStatus.BOOKED,
    ]


def test_missing_or_invalid_appointment_id_is_dropped() -> None:
    records = [
        _rec("", "o", "1"),
        _rec(None, "o", "2"),
        _rec("abc", "x", "3"),
        _rec(42, "X", "4"),
    ]
    events = EventNormalizer(tz=UTC).normalize(records)
    assert len(events) == 1
    assert events[0].appointment_id == 42
    assert events[0].status is AppointmentStatus.CANCELLED


def test_malformed_date_or_time_drops_only_that_record(caplog) -> None:  # noqa: ANN001
    records = [
        _rec("1", "o", "1", date="2026-02-11"),
        _rec("2", "o", "2", starttime="25:00"),
        _rec("3", "o", "3", date="02/30/2026"),
        _rec("4", "o", "4", starttime=None),
        _rec("5", "o", "5"),
        "not a record",
    ]
    caplog.set_level("INFO")
    report = EventNormalizer(tz=UTC).normalize_with_report(records)
    assert [e.appointment_id for e in report.events] == [5]
    assert report.dropped == 5
    assert "malformed_date_or_time" in caplog.text
    assert "missing_date_or_time" in caplog.text


def test_start_time_uses_configured_zone() -> None:
    est = timezone(timedelta(hours=-5))
    event = EventNormalizer(tz=est).normalize([_rec("9", "f", "1", date="02/11/2026", starttime="10:30")])[0]
    assert event.start_time == datetime(2026, 2, 11, 15, 30, tzinfo=UTC)
    assert event.to_json_dict()["startTimeISO"] == "2026-02-11T15:30:00Z"


def test_start_time_defaults_to_local_zone() -> None:
    dt = parse_start_time("12/31/2025", "23:59")
    assert dt.tzinfo is not None
    assert dt.replace(tzinfo=None) == datetime(2025, 12, 31, 23, 59)


def test_parse_start_time_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_start_time("1/2", "10:00")
    with pytest.raises(ValueError):
        parse_start_time("01/02/2026", "10")


def test_passthrough_fields_in_payload() -> None:
    record = _rec(
        "77",
        "x",
        "501",
        patientid=1234,
        appointmenttype="Follow Up",
        appointmenttypeid="82",
        providerid="71",
        departmentid="",
    )
    payload = EventNormalizer(tz=UTC).normalize([record])[0].to_json_dict()
    assert payload == {
        "appointmentId": 77,
        "status": "cancelled",
        "statusCode": "x",
        "startTimeISO": "2026-02-11T10:30:00Z",
        "eventId": "501",
        "patientId": "1234",
        "appointmentType": "Follow Up",
        "appointmentTypeId": "82",
        "providerId": "71",
        "departmentId": None,
    }
