"""Tests for the Readwise Reader client (readwise.py)"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from reader_sync.providers.readwise import (
    DEFAULT_RETRY_AFTER,
    TRANSPORT_RETRY_DELAY,
    ReadwiseAuthError,
    ReadwiseClient,
    ReadwiseHTTPError,
    ReadwisePageError,
    build_params,
    build_url,
    parse_retry_after,
)

WATERMARK = datetime(2024, 2, 19, 8, 30, 0, tzinfo=timezone.utc)


def page_body(cursor=None, ids=("doc-1",)):
    return {
        "count": len(ids),
        "nextPageCursor": cursor,
        "results": [
            {
                "id": doc_id,
                "category": "article",
                "title": f"Title {doc_id}",
                "created_at": "2024-02-01T10:00:00Z",
                "reading_progress": 0.0,
            }
            for doc_id in ids
        ],
    }


def make_client(responses):
    """Client whose transport replays `responses` in order and records requests.

    Each response is either an httpx.Response or an exception to raise.
    """
    requests = []
    sleeps = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    client = ReadwiseClient("secret-token", sleep=sleeps.append, transport=httpx.MockTransport(handler))
    return client, requests, sleeps


class TestBuildUrl:
    """Tests for request URL construction."""

    def test_full_sync_first_page_has_no_filters(self):
        assert build_url() == "https://readwise.io/api/v3/list/"
        assert build_params() == {}

    def test_cursor_only(self):
        assert build_url("abc123") == "https://readwise.io/api/v3/list/?pageCursor=abc123"

    def test_updated_after_only(self):
        assert build_url(None, WATERMARK) == "https://readwise.io/api/v3/list/?updatedAfter=2024-02-19T08:30:00Z"

    def test_both_filters(self):
        assert build_params("abc123", WATERMARK) == {
            "pageCursor": "abc123",
            "updatedAfter": "2024-02-19T08:30:00Z",
        }

    def test_updated_after_is_converted_to_utc(self):
        from datetime import timedelta

        local = WATERMARK.astimezone(timezone(timedelta(hours=2)))
        assert build_params(None, local)["updatedAfter"] == "2024-02-19T08:30:00Z"


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("2") == 2

    @pytest.mark.parametrize("value", [None, "", "soon", "1.5", "-3"])
    def test_unusable(self, value):
        assert parse_retry_after(value) is None


class TestFetchPage:
    """Tests for ReadwiseClient.fetch_page()."""

    def test_success(self):
        client, requests, sleeps = make_client([httpx.Response(200, json=page_body("next"))])
        page = client.fetch_page()
        assert page.next_page_cursor == "next"
        assert [d.id for d in page.results] == ["doc-1"]
        assert requests[0].headers["Authorization"] == "Token secret-token"
        assert str(requests[0].url) == "https://readwise.io/api/v3/list/"
        assert sleeps == []

    def test_sends_cursor_and_updated_after(self):
        client, requests, _ = make_client([httpx.Response(200, json=page_body())])
        client.fetch_page("cur-9", WATERMARK)
        params = requests[0].url.params
        assert params["pageCursor"] == "cur-9"
        assert params["updatedAfter"] == "2024-02-19T08:30:00Z"

    def test_rate_limit_waits_for_retry_after(self):
        client, requests, sleeps = make_client([
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json=page_body()),
        ])
        page = client.fetch_page()
        assert len(page.results) == 1
        assert sleeps == [2, 2]
        assert len(requests) == 3

    def test_server_error_without_retry_after_defaults(self, caplog):
        client, _, sleeps = make_client([
            httpx.Response(503),
            httpx.Response(200, json=page_body()),
        ])
        client.fetch_page()
        assert sleeps == [DEFAULT_RETRY_AFTER]
        assert "Defaulting to 60s" in caplog.text

    def test_unparseable_retry_after_defaults(self):
        client, _, sleeps = make_client([
            httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            httpx.Response(200, json=page_body()),
        ])
        client.fetch_page()
        assert sleeps == [DEFAULT_RETRY_AFTER]

    def test_retries_are_unbounded(self):
        failures = [httpx.Response(500, headers={"Retry-After": "1"}) for _ in range(25)]
        client, requests, sleeps = make_client(failures + [httpx.Response(200, json=page_body())])
        client.fetch_page()
        assert len(sleeps) == 25
        assert len(requests) == 26

    def test_transport_error_waits_and_retries(self):
        client, requests, sleeps = make_client([
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            httpx.Response(200, json=page_body()),
        ])
        page = client.fetch_page()
        assert len(page.results) == 1
        assert sleeps == [TRANSPORT_RETRY_DELAY, TRANSPORT_RETRY_DELAY]
        assert len(requests) == 3

    def test_client_error_is_fatal(self):
        client, requests, sleeps = make_client([httpx.Response(404)])
        with pytest.raises(ReadwiseHTTPError) as exc:
            client.fetch_page()
        assert exc.value.status_code == 404
        assert "404" in str(exc.value)
        assert len(requests) == 1
        assert sleeps == []

    def test_unauthorized(self):
        client, _, _ = make_client([httpx.Response(401)])
        with pytest.raises(ReadwiseAuthError) as exc:
            client.fetch_page()
        assert exc.value.status_code == 401

    def test_malformed_page_reports_path_and_body(self, caplog):
        body = page_body()
        body["results"][0]["category"] = "podcast"
        client, _, sleeps = make_client([httpx.Response(200, json=body)])
        with pytest.raises(ReadwisePageError) as exc:
            client.fetch_page()
        assert exc.value.path == "results[0].category"
        assert json.loads(exc.value.body) == body
        assert "results[0].category" in caplog.text
        assert sleeps == []

    def test_invalid_json_is_fatal(self):
        client, _, _ = make_client([httpx.Response(200, text="<html>oops</html>")])
        with pytest.raises(ReadwisePageError) as exc:
            client.fetch_page()
        assert exc.value.body == "<html>oops</html>"


class TestClient:
    def test_requires_token(self):
        with pytest.raises(ValueError):
            ReadwiseClient("")

    def test_validate_token(self):
        client, requests, _ = make_client([httpx.Response(204)])
        assert client.validate_token() is True
        assert requests[0].url.path == "/api/v2/auth/"

    def test_validate_token_rejected(self):
        client, _, _ = make_client([httpx.Response(401)])
        with pytest.raises(ReadwiseAuthError):
            client.validate_token()

    def test_context_manager_closes(self):
        client, _, _ = make_client([])
        with client as c:
            assert c is client
        assert client._client.is_closed
