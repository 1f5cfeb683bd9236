"""Tests for the Horizon fee provider."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests
from feeinsights.errors import (
    AuthError,
    FormatError,
    NetworkError,
    RateLimitExceeded,
    ServiceUnavailable,
)
from feeinsights.horizon import HorizonFeeDataProvider


def make_record(fee: str, token: str, ledger: int = 50_000_000, created_at: str = "2024-01-01T00:00:05Z"):
    return {
        "id": f"id{token}",
        "paging_token": token,
        "hash": f"hash{token}",
        "ledger": ledger,
        "created_at": created_at,
        "fee_charged": fee,
        "max_fee": "10000",
    }


def make_response(status: int = 200, body=None, json_error: bool = False):
    response = MagicMock()
    response.status_code = status
    response.reason = "reason"
    if json_error:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = body
    return response


def page(*records):
    return {"_embedded": {"records": list(records)}}


def make_provider(*responses):
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    return HorizonFeeDataProvider("https://horizon.example.org/", session=session), session


def test_first_fetch_reads_newest_page_oldest_first():
    provider, session = make_provider(
        make_response(body=page(make_record("300", "3"), make_record("200", "2"), make_record("100", "1")))
    )
    points = provider.fetch_latest_fees()

    assert [p.fee_amount for p in points] == [100, 200, 300]
    assert points[0].transaction_hash == "hash1"
    assert points[0].ledger_sequence == 50_000_000
    assert points[0].timestamp == datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
    assert provider.cursor == "3"

    url = session.get.call_args[0][0]
    params = session.get.call_args[1]["params"]
    assert url == "https://horizon.example.org/transactions"
    assert params == {"order": "desc", "limit": 200}


def test_following_fetch_pages_forward_from_cursor():
    provider, session = make_provider(
        make_response(body=page(make_record("100", "10"))),
        make_response(body=page(make_record("150", "11"), make_record("175", "12"))),
        make_response(body=page()),
    )
    provider.fetch_latest_fees()
    points = provider.fetch_latest_fees()
    assert [p.fee_amount for p in points] == [150, 175]
    assert session.get.call_args[1]["params"] == {"order": "asc", "limit": 200, "cursor": "10"}
    assert provider.cursor == "12"

    assert provider.fetch_latest_fees() == []
    assert provider.cursor == "12"


def make_small_batch_provider(*responses, max_pages: int = 5):
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    provider = HorizonFeeDataProvider("https://h", batch_size=2, session=session, max_pages=max_pages)
    return provider, session


def test_full_pages_are_drained_in_one_fetch():
    provider, session = make_small_batch_provider(
        make_response(body=page(make_record("100", "2"), make_record("100", "1"))),
        make_response(body=page(make_record("300", "3"), make_record("400", "4"))),
        make_response(body=page(make_record("900", "5"))),
    )
    provider.fetch_latest_fees()
    points = provider.fetch_latest_fees()

    assert [p.fee_amount for p in points] == [300, 400, 900]
    assert session.get.call_count == 3
    cursors = [c[1]["params"].get("cursor") for c in session.get.call_args_list]
    assert cursors == [None, "2", "4"]
    assert provider.cursor == "5"


def test_page_cap_defers_backlog_to_next_fetch():
    provider, session = make_small_batch_provider(
        make_response(body=page(make_record("100", "1"))),
        make_response(body=page(make_record("110", "2"), make_record("120", "3"))),
        make_response(body=page(make_record("130", "4"), make_record("140", "5"))),
        make_response(body=page(make_record("150", "6"))),
        max_pages=2,
    )
    provider.fetch_latest_fees()
    assert [p.fee_amount for p in provider.fetch_latest_fees()] == [110, 120, 130, 140]
    assert provider.cursor == "5"
    assert [p.fee_amount for p in provider.fetch_latest_fees()] == [150]
    assert session.get.call_count == 4


def test_malformed_later_page_keeps_cursor():
    provider, _ = make_small_batch_provider(
        make_response(body=page(make_record("100", "1"))),
        make_response(body=page(make_record("110", "2"), make_record("120", "3"))),
        make_response(body=page(make_record("bad", "4"))),
    )
    provider.fetch_latest_fees()
    with pytest.raises(FormatError):
        provider.fetch_latest_fees()
    assert provider.cursor == "1"


def test_batch_size_capped():
    provider = HorizonFeeDataProvider("https://h", batch_size=1000, session=MagicMock())
    assert provider.batch_size == 200


@pytest.mark.parametrize("status,error_cls", [
    (429, RateLimitExceeded),
    (401, AuthError),
    (403, AuthError),
    (502, ServiceUnavailable),
    (503, ServiceUnavailable),
    (504, ServiceUnavailable),
    (500, NetworkError),
    (404, NetworkError),
])
def test_http_status_mapping(status, error_cls):
    provider, _ = make_provider(make_response(status=status))
    with pytest.raises(error_cls):
        provider.fetch_latest_fees()


@pytest.mark.parametrize("exc", [
    requests.Timeout("read timed out"),
    requests.ConnectionError("refused"),
])
def test_transport_errors_map_to_network_error(exc):
    provider, _ = make_provider(exc)
    with pytest.raises(NetworkError):
        provider.fetch_latest_fees()


@pytest.mark.parametrize("response", [
    make_response(json_error=True),
    make_response(body={"records": []}),
    make_response(body=["not", "an", "object"]),
    make_response(body={"_embedded": {"records": "nope"}}),
    make_response(body=page({"paging_token": "1", "hash": "h", "ledger": 1, "created_at": "2024-01-01T00:00:00Z"})),
    make_response(body=page(make_record("abc", "1"))),
    make_response(body=page(make_record("-5", "1"))),
    make_response(body=page(make_record("100", "1", created_at="yesterday"))),
    make_response(body=page(make_record("100", "1", created_at=None))),
    make_response(body=page("garbage")),
])
def test_malformed_payloads_map_to_format_error(response):
    provider, _ = make_provider(response)
    with pytest.raises(FormatError):
        provider.fetch_latest_fees()


def test_malformed_page_does_not_advance_cursor():
    provider, _ = make_provider(
        make_response(body=page(make_record("100", "1"))),
        make_response(body=page(make_record("100", "2"), make_record("bad", "3"))),
    )
    provider.fetch_latest_fees()
    with pytest.raises(FormatError):
        provider.fetch_latest_fees()
    assert provider.cursor == "1"


def test_health_check():
    provider, session = make_provider(make_response(body={"horizon_version": "2.0"}))
    provider.health_check()
    assert session.get.call_args[0][0] == "https://horizon.example.org/"


def test_health_check_failure():
    provider, _ = make_provider(make_response(status=503))
    with pytest.raises(ServiceUnavailable):
        provider.health_check()


def test_health_check_independent_of_fetch():
    provider, _ = make_provider(
        make_response(body={"horizon_version": "2.0"}),
        make_response(status=500),
    )
    provider.health_check()
    with pytest.raises(NetworkError):
        provider.fetch_latest_fees()


def test_name_and_metadata():
    provider = HorizonFeeDataProvider("https://h", session=MagicMock())
    assert provider.provider_name() == "Horizon"
    metadata = provider.get_metadata()
    assert metadata.supports_historical is True
    assert metadata.max_batch_size == 200
    assert metadata.rate_limit_per_minute == 60
