import threading

import pytest

from conftest import ERROR_XML, FakeS3, FakeTransport, response

from s3upload import (
    RequestAttempt,
    RequestExecutor,
    RequestTimeout,
    S3ResponseError,
    TransportError,
    XMLParseError,
)


def scripted(*replies):
    """Responder returning *replies* in order, repeating the last one."""
    queue = list(replies)

    def responder(request, handle):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    return responder


def test_success_returns_response_and_parsed_body():
    transport = FakeTransport(scripted(response(body="<Result><UploadId>abc</UploadId></Result>")))
    executor = RequestExecutor(transport, timeout=5, retries=0, min_backoff=0)

    res, parsed = executor.execute("POST", "key?uploads", {"x-amz-acl": "private"})

    assert res.status_code == 200
    assert parsed == {"Result": {"UploadId": "abc"}}
    assert transport.calls() == [("POST", "key?uploads")]
    assert transport.requests[0].headers == {"x-amz-acl": "private"}


def test_empty_body_parses_to_none(executor, transport):
    res, parsed = executor.execute("PUT", "key", {}, b"data")
    assert parsed is None
    assert res.etag == '"single-etag"'
    assert transport.requests[0].body == b"data"


def test_body_is_written_only_when_given(executor, transport):
    executor.execute("PUT", "key", {}, b"")
    executor.execute("POST", "key?uploads", {})
    assert [h.writes for h in transport.handles] == [1, 0]


def test_string_body_is_utf8_encoded(executor, transport):
    executor.execute("POST", "key?uploadId=abc", {}, "<Doc>é</Doc>")
    assert transport.requests[0].body == "<Doc>é</Doc>".encode("utf-8")


def test_retry_is_transparent():
    ok = response(body="<Result><Value>1</Value></Result>")
    transport = FakeTransport(scripted(TransportError("boom"), response(500, "oops"), ok))
    executor = RequestExecutor(transport, timeout=5, retries=2, min_backoff=0)

    res, parsed = executor.execute("GET", "key")

    assert res is ok
    assert parsed == {"Result": {"Value": "1"}}
    assert len(transport.requests) == 3


def test_exhausted_retries_raise_last_error():
    errors = [TransportError("first"), TransportError("second"), TransportError("third")]
    transport = FakeTransport(scripted(*errors))
    executor = RequestExecutor(transport, timeout=5, retries=2, min_backoff=0)

    with pytest.raises(TransportError, match="third"):
        executor.execute("PUT", "key", {}, b"x")
    assert len(transport.requests) == 3


def test_non_200_is_a_failure_with_error_details():
    body = ERROR_XML.format(code="NoSuchBucket", message="The specified bucket does not exist")
    transport = FakeTransport(scripted(response(404, body)))
    executor = RequestExecutor(transport, timeout=5, retries=1, min_backoff=0)

    with pytest.raises(S3ResponseError) as info:
        executor.execute("PUT", "key", {}, b"x")

    assert info.value.status_code == 404
    assert info.value.code == "NoSuchBucket"
    assert info.value.body == body
    assert len(transport.requests) == 2


def test_non_xml_error_body_is_kept_verbatim():
    transport = FakeTransport(scripted(response(503, "Service Unavailable")))
    executor = RequestExecutor(transport, timeout=5, retries=0, min_backoff=0)

    with pytest.raises(S3ResponseError) as info:
        executor.execute("GET", "key")
    assert info.value.code is None
    assert info.value.body == "Service Unavailable"


def test_other_2xx_statuses_fail_by_default():
    transport = FakeTransport(scripted(response(204)))
    executor = RequestExecutor(transport, timeout=5, retries=0, min_backoff=0)

    with pytest.raises(S3ResponseError):
        executor.execute("DELETE", "key?uploadId=abc")
    res, _ = executor.execute("DELETE", "key?uploadId=abc", success_statuses=(200, 204))
    assert res.status_code == 204


def test_parse_errors_are_retried():
    transport = FakeTransport(scripted(response(body="<not-xml"), response(body="<Ok/>")))
    executor = RequestExecutor(transport, timeout=5, retries=1, min_backoff=0)

    _, parsed = executor.execute("POST", "key?uploads")
    assert parsed == {"Ok": ""}
    assert len(transport.requests) == 2

    transport = FakeTransport(scripted(response(body="<not-xml")))
    executor = RequestExecutor(transport, timeout=5, retries=0, min_backoff=0)
    with pytest.raises(XMLParseError):
        executor.execute("POST", "key?uploads")


def test_transport_error_terminates_request():
    transport = FakeTransport(scripted(TransportError("reset")))
    executor = RequestExecutor(transport, timeout=5, retries=0, min_backoff=0)

    with pytest.raises(TransportError):
        executor.execute("PUT", "key", {}, b"x")
    assert transport.handles[0].aborted.is_set()


def test_timeouts_are_armed_and_cleared(executor, transport):
    executor.execute("PUT", "key", {}, b"x")
    handle = transport.handles[0]
    assert handle.timeout == 5
    assert handle.timeout_callback is None


def test_manual_timer_aborts_and_raises_timeout():
    def hang_until_aborted(request, handle):
        handle.aborted.wait(5)
        return TransportError("socket closed")

    transport = FakeTransport(hang_until_aborted)
    executor = RequestExecutor(transport, timeout=0.05, retries=0, min_backoff=0)

    with pytest.raises(RequestTimeout) as info:
        executor.execute("PUT", "key", {}, b"x")
    assert info.value.code == "ETIMEDOUT"
    assert transport.handles[0].aborted.is_set()


def test_timer_and_transport_timeout_race_yields_one_decision():
    calls = []

    def racing(request, handle):
        calls.append(request)
        if len(calls) == 1:
            # the transport's own timeout hook fires, then the request errors too
            handle.timeout_callback()
            return TransportError("connection reset after timeout")
        return response(body="<Ok/>")

    transport = FakeTransport(racing)
    executor = RequestExecutor(transport, timeout=5, retries=1, min_backoff=0)

    _, parsed = executor.execute("PUT", "key", {}, b"x")

    assert parsed == {"Ok": ""}
    assert len(calls) == 2


def test_timeout_wins_over_late_response():
    def slow(request, handle):
        handle.aborted.wait(5)
        return response(body="<Ok/>")

    transport = FakeTransport(slow)
    executor = RequestExecutor(transport, timeout=0.05, retries=0, min_backoff=0)

    with pytest.raises(RequestTimeout):
        executor.execute("GET", "key")


def test_programming_errors_are_not_retried():
    transport = FakeTransport(scripted(ValueError("bug")))
    executor = RequestExecutor(transport, timeout=5, retries=3, min_backoff=0)

    with pytest.raises(ValueError):
        executor.execute("GET", "key")
    assert len(transport.requests) == 1


def test_debug_sink_receives_messages():
    messages = []
    transport = FakeTransport(FakeS3())
    executor = RequestExecutor(transport, debug=messages.append, timeout=5, retries=0, min_backoff=0)

    executor.execute("PUT", "key", {}, b"x")

    assert messages[0] == "Trying PUT key"
    assert any(m.startswith("Received response 200") for m in messages)


class TestRequestAttempt:
    def test_first_settle_wins(self):
        attempt = RequestAttempt()
        assert attempt.fail(RequestTimeout())
        assert not attempt.fail(TransportError("late"))
        assert not attempt.succeed((response(), None))
        with pytest.raises(RequestTimeout):
            attempt.outcome()

    def test_unsettled_outcome_is_an_error(self):
        with pytest.raises(RuntimeError):
            RequestAttempt().outcome()

    def test_concurrent_settles_only_one_succeeds(self):
        attempt = RequestAttempt()
        start = threading.Barrier(8)
        wins = []

        def settle(i):
            start.wait()
            if attempt.fail(TransportError(str(i))):
                wins.append(i)

        threads = [threading.Thread(target=settle, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1


def test_backoff_doubles_from_the_minimum():
    delays = []
    transport = FakeTransport(scripted(TransportError("down")))
    executor = RequestExecutor(transport, timeout=5, retries=3, min_backoff=0.2, sleep=delays.append)

    with pytest.raises(TransportError):
        executor.execute("GET", "key")

    assert delays == pytest.approx([0.2, 0.4, 0.8])
    assert len(transport.requests) == 4


def test_backoff_is_capped_by_max_backoff():
    delays = []
    transport = FakeTransport(scripted(TransportError("down")))
    executor = RequestExecutor(
        transport, timeout=5, retries=4, min_backoff=0.2, max_backoff=0.5, sleep=delays.append
    )

    with pytest.raises(TransportError):
        executor.execute("GET", "key")

    assert delays == pytest.approx([0.2, 0.4, 0.5, 0.5])
