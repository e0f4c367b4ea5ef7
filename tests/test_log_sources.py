"""
Tests for access log and request log parsing.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from log_sources import (
    REQUEST_ENDED,
    REQUEST_STARTED,
    LoggedRequest,
    iter_access_log,
    pair_request_log,
    parse_access_line,
    query_parameter_counts,
)


ACCESS_LINE = (
    '10.0.0.1 "-" admin [01/Mar/2021:10:15:32 +0100] '
    '"GET /content/site/en.html?wcmmode=disabled HTTP/1.1" 200 5120 '
    '"http://localhost:4502/" "Mozilla/5.0 (X11)"'
)

START = "01/Mar/2021:10:15:32 +0100 [17] -> GET /content/site/en.html HTTP/1.1"
END = "01/Mar/2021:10:15:33 +0100 [17] <- 200 text/html;charset=utf-8 123ms"


class TestAccessLog:
    def test_parse_line(self):
        entry = parse_access_line(ACCESS_LINE)
        assert entry.client == "10.0.0.1"
        assert entry.ident == "-"
        assert entry.user == "admin"
        assert entry.timestamp == "01/Mar/2021:10:15:32 +0100"
        assert entry.method == "GET"
        assert entry.path == "/content/site/en.html?wcmmode=disabled"
        assert entry.status == 200
        assert entry.size == "5120"
        assert entry.referrer == "http://localhost:4502/"
        assert entry.user_agent == "Mozilla/5.0 (X11)"

    def test_trailing_newline_is_ignored(self):
        assert parse_access_line(ACCESS_LINE + "\n") is not None

    def test_malformed_line(self):
        assert parse_access_line("not a log line") is None
        assert parse_access_line(ACCESS_LINE.replace("HTTP/1.1", "HTTP/2")) is None

    def test_iter_warns_and_skips(self, caplog):
        caplog.set_level(logging.WARNING, logger="log_sources")
        entries = list(iter_access_log([ACCESS_LINE, "garbage", "", ACCESS_LINE]))
        assert len(entries) == 2
        assert "invalid common log entry: garbage" in caplog.text


class TestQueryParameters:
    def test_counts_well_formed_pairs(self):
        counts = query_parameter_counts([
            "/a?x=1&y=2",
            "/b?x=3&flag&z=",
            "/c?x=1=2",
            "/d",
            "?q=1",
        ])
        assert counts == {"x": 2, "y": 1}


class TestRequestLog:
    def test_patterns(self):
        assert REQUEST_STARTED.fullmatch(START).group(4) == "/content/site/en.html"
        assert REQUEST_ENDED.fullmatch(END).group(5) == "123"

    def test_pairing(self):
        (request,) = pair_request_log([START, END])
        assert request.request_id == "17"
        assert request.method == "GET"
        assert request.path == "/content/site/en.html"
        assert request.status == 200
        assert request.content_type == "text/html;charset=utf-8"
        assert request.elapsed_ms == 123
        assert request.started_at() == datetime(2021, 3, 1, 10, 15, 32, tzinfo=timezone(timedelta(hours=1)))

    def test_interleaved_requests(self):
        start_2 = START.replace("[17]", "[18]").replace("en.html", "de.html")
        end_2 = END.replace("[17]", "[18]").replace("123ms", "7ms")
        requests = list(pair_request_log([START, start_2, end_2, END]))
        assert [r.request_id for r in requests] == ["18", "17"]
        assert requests[0].path == "/content/site/de.html"
        assert requests[0].elapsed_ms == 7

    def test_unmatched_and_invalid_lines(self, caplog):
        caplog.set_level(logging.WARNING, logger="log_sources")
        orphan_end = END.replace("[17]", "[99]")
        requests = list(pair_request_log(["junk", orphan_end, START]))
        assert requests == []
        assert "invalid request line: junk" in caplog.text
        assert "unmatched request: 99" in caplog.text
        assert "1 requests never completed" in caplog.text

    def test_mismatched_ids(self):
        with pytest.raises(ValueError):
            LoggedRequest.from_matches(
                REQUEST_STARTED.fullmatch(START),
                REQUEST_ENDED.fullmatch(END.replace("[17]", "[18]")),
            )
