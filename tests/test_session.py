import threading
from datetime import timedelta

import pytest

from headersync.dummy import DummyHeader, DummySuite, DummyVerifyError
from headersync.header import HeaderError, NotFoundError
from headersync.mock_store import MockStore
from headersync.p2p.messages import HeaderResponse, StatusCode
from headersync.p2p.peer_stats import PeerStat
from headersync.p2p.peer_tracker import PeerTracker
from headersync.p2p.session import (
    EmptyResponseError,
    Session,
    prepare_requests,
    process_responses,
)

TIMEOUT = timedelta(seconds=1)


def _serve(store, request):
    end = request.origin + request.amount
    if not store.has_at(end - 1):
        if store.head_height < request.origin:
            return [HeaderResponse(status_code=StatusCode.NOT_FOUND)]
        end = store.head_height + 1
    headers = store.get_range_by_height(request.origin, end)
    return [HeaderResponse(body=h.marshal_binary(), status_code=StatusCode.OK) for h in headers]


def _network(stores, failing=(), broken=()):
    def send(peer_id, request, timeout):
        if peer_id in failing:
            raise ConnectionError("unreachable")
        if peer_id in broken:
            return [HeaderResponse(body=b"{broken", status_code=StatusCode.OK)], 7, 1
        responses = _serve(stores[peer_id], request)
        return responses, sum(len(r.body) for r in responses), 1

    return send


def _tracker(scores):
    tracker = PeerTracker("local")
    for peer_id, score in scores.items():
        tracker.tracked_peers[peer_id] = PeerStat(peer_id=peer_id, peer_score=score)
    return tracker


def test_prepare_requests():
    requests = prepare_requests(1, 10, 5)
    assert len(requests) == 2
    assert requests[0].origin == 1
    assert requests[1].origin == 6
    assert [r.amount for r in requests] == [5, 5]


def test_prepare_requests_remainder():
    requests = prepare_requests(1, 7, 5)
    assert [(r.origin, r.amount) for r in requests] == [(1, 5), (6, 2)]
    assert prepare_requests(1, 0, 5) == []


def test_prepare_requests_rejects_zero_per_peer():
    with pytest.raises(ValueError):
        prepare_requests(1, 3, 0)


def test_process_responses_errors():
    with pytest.raises(EmptyResponseError):
        process_responses(DummyHeader, [])
    with pytest.raises(NotFoundError):
        process_responses(DummyHeader, [HeaderResponse(status_code=StatusCode.NOT_FOUND)])
    with pytest.raises(HeaderError, match="unknown status code 0"):
        process_responses(DummyHeader, [HeaderResponse(status_code=StatusCode.INVALID)])
    with pytest.raises(ValueError):
        process_responses(DummyHeader, [HeaderResponse(body=b"{broken", status_code=StatusCode.OK)])


def test_process_responses_decodes_headers():
    headers = DummySuite().gen_dummy_headers(3)
    responses = [HeaderResponse(body=h.marshal_binary(), status_code=StatusCode.OK) for h in headers]
    decoded = process_responses(DummyHeader, responses)
    assert [h.height() for h in decoded] == [1, 2, 3]
    assert [h.hash() for h in decoded] == [h.hash() for h in headers]


def test_validate():
    suite = DummySuite()
    head = suite.head()
    session = Session(DummyHeader, PeerTracker("local"), _network({}), TIMEOUT, head)
    headers = suite.gen_dummy_headers(5)
    assert session.verify(headers) is None
    session.close()


def test_validate_fails_on_non_adjacent():
    suite = DummySuite()
    head = suite.head()
    session = Session(DummyHeader, PeerTracker("local"), _network({}), TIMEOUT, head)
    headers = suite.gen_dummy_headers(5)
    headers[2] = headers[4]
    with pytest.raises(HeaderError, match="non-adjacent"):
        session.verify(headers)
    session.close()


def test_validate_propagates_verify_error():
    suite = DummySuite()
    head = suite.head()
    session = Session(DummyHeader, PeerTracker("local"), _network({}), TIMEOUT, head)
    headers = suite.gen_dummy_headers(3)
    headers[1].verify_failure = True
    with pytest.raises(DummyVerifyError):
        session.verify(headers)
    session.close()


def test_verify_without_start_accepts_anything():
    suite = DummySuite()
    session = Session(DummyHeader, PeerTracker("local"), _network({}), TIMEOUT)
    headers = suite.gen_dummy_headers(5)
    headers[2] = headers[4]
    assert session.verify(headers) is None
    session.close()


def test_get_range_single_peer():
    store = MockStore(DummySuite(), 10)
    with Session(DummyHeader, _tracker({"a": 100.0}), _network({"a": store}), TIMEOUT) as session:
        headers = session.get_range_by_height(1, 5, 2)
    assert [h.height() for h in headers] == [1, 2, 3, 4, 5]
    assert [h.hash() for h in headers] == [store.headers[i].hash() for i in range(1, 6)]


def test_get_range_zero_amount():
    with Session(DummyHeader, _tracker({}), _network({}), TIMEOUT) as session:
        assert session.get_range_by_height(1, 0, 5) == []


def test_get_range_partial_response_is_completed_elsewhere():
    stores = {"a": MockStore(DummySuite(), 3), "b": MockStore(DummySuite(), 10)}
    tracker = _tracker({"a": 100.0, "b": 50.0})
    with Session(DummyHeader, tracker, _network(stores), TIMEOUT) as session:
        headers = session.get_range_by_height(1, 8, 8)
    assert [h.height() for h in headers] == list(range(1, 9))
    assert tracker.tracked_peers["a"].score() != 100.0
    assert tracker.tracked_peers["b"].score() != 50.0


def test_get_range_not_found_lowers_score():
    stores = {"a": MockStore(DummySuite(), 0), "b": MockStore(DummySuite(), 10)}
    tracker = _tracker({"a": 100.0, "b": 50.0})
    with Session(DummyHeader, tracker, _network(stores), TIMEOUT) as session:
        headers = session.get_range_by_height(1, 3, 64)
    assert [h.height() for h in headers] == [1, 2, 3]
    assert tracker.tracked_peers["a"].score() == pytest.approx(80.0)


def test_get_range_failed_send_lowers_score():
    stores = {"good": MockStore(DummySuite(), 10)}
    tracker = _tracker({"down": 100.0, "good": 50.0})
    with Session(DummyHeader, tracker, _network(stores, failing={"down"}), TIMEOUT) as session:
        headers = session.get_range_by_height(2, 3, 64)
    assert [h.height() for h in headers] == [2, 3, 4]
    assert tracker.tracked_peers["down"].score() == pytest.approx(80.0)


def test_get_range_blocks_peer_sending_garbage():
    stores = {"good": MockStore(DummySuite(), 10)}
    tracker = _tracker({"bad": 100.0, "good": 50.0})
    with Session(DummyHeader, tracker, _network(stores, broken={"bad"}), TIMEOUT) as session:
        headers = session.get_range_by_height(1, 4, 64)
    assert [h.height() for h in headers] == [1, 2, 3, 4]
    assert tracker.blocked_peers() == ["bad"]
    assert "bad" not in tracker.tracked_peers


def test_get_verified_range_blocks_non_adjacent_peer():
    store = MockStore(DummySuite(), 5)
    bad_store = MockStore(DummySuite(), 0)
    bad_store.headers = dict(store.headers)
    bad_store.headers[2] = store.headers[3]
    bad_store.head_height = 5
    tracker = _tracker({"bad": 100.0, "good": 50.0})
    network = _network({"bad": bad_store, "good": store})
    with Session(DummyHeader, tracker, network, TIMEOUT, store.headers[1]) as session:
        headers = session.get_range_by_height(2, 3, 64)
    assert [h.height() for h in headers] == [2, 3, 4]
    assert tracker.blocked_peers() == ["bad"]


def test_close_aborts_range_request():
    session = Session(DummyHeader, _tracker({}), _network({}), TIMEOUT)
    timer = threading.Timer(0.1, session.close)
    timer.start()
    with pytest.raises(HeaderError, match="closed"):
        session.get_range_by_height(1, 3, 64)
    timer.join()


def test_closed_session_refuses_requests():
    store = MockStore(DummySuite(), 10)
    with Session(DummyHeader, _tracker({"a": 10.0}), _network({"a": store}), TIMEOUT) as session:
        assert len(session.get_range_by_height(1, 2, 2)) == 2
    with pytest.raises(HeaderError, match="closed"):
        session.get_range_by_height(1, 2, 2)