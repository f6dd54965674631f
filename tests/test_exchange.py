import threading

import pytest

from headersync.dummy import DummyHeader, DummySuite
from headersync.header import (
    HeaderError,
    HeadersLimitExceededError,
    NoHeadError,
    NotFoundError,
    with_trusted_head,
)
from headersync.mock_store import MockStore
from headersync.p2p.exchange import Exchange, best_head, shuffle_peers
from headersync.p2p.messages import HeaderRequest
from headersync.p2p.options import (
    with_chain_id,
    with_max_headers_per_range_request,
    with_network_id,
)
from headersync.p2p.peer_stats import PeerStat
from headersync.p2p.peer_tracker import PeerTracker
from headersync.p2p.server import ExchangeServer

NETWORK_ID = "test"


class FakeNetwork:
    def __init__(self):
        self.servers = {}
        self.slow = set()

    def add_server(self, peer_id, store):
        server = ExchangeServer(store, with_network_id(NETWORK_ID))
        server.start()
        self.servers[peer_id] = server
        return server

    def send(self, peer_id, protocol, request, timeout):
        if peer_id in self.slow:
            raise TimeoutError(f"peer {peer_id} did not respond")
        server = self.servers.get(peer_id)
        if server is None or server.protocol_id != protocol:
            raise ConnectionError(f"no route to {peer_id}")
        responses = server.handle(request)
        return responses, sum(len(r.body) for r in responses), 1

    def connect(self, peer_id):
        if peer_id not in self.servers:
            raise ConnectionError(f"no route to {peer_id}")


class NoHeadStore(MockStore):
    def head(self, *args):
        raise NoHeadError()


def make_exchange(network, trusted=("server1",), tracker=None):
    tracker = tracker or PeerTracker("client")
    exchange = Exchange(
        DummyHeader,
        network,
        list(trusted),
        tracker,
        with_network_id(NETWORK_ID),
        with_chain_id(NETWORK_ID),
    )
    return exchange


def create_exchange_and_server(network):
    store = MockStore(DummySuite(), 5)
    network.add_server("server1", store)
    exchange = make_exchange(network)
    exchange.start()
    exchange.tracker.tracked_peers["server1"] = PeerStat(peer_id="server1", peer_score=100.0)
    return exchange, store


@pytest.fixture
def network():
    return FakeNetwork()


def test_request_head_from_trusted(network):
    exchange, store = create_exchange_and_server(network)
    head = exchange.head()
    assert head.height() == store.head_height
    assert head.hash() == store.headers[store.head_height].hash()


def test_request_head_from_tracked_peers(network):
    exchange, store = create_exchange_and_server(network)
    tracked_store = MockStore(DummySuite(), 50)
    network.add_server("server2", tracked_store)
    exchange.tracker.tracked_peers["server2"] = PeerStat(peer_id="server2", peer_score=10.0)
    last = tracked_store.headers[tracked_store.head_height - 1]
    head = exchange.head(with_trusted_head(last))
    assert head.height() == tracked_store.head_height
    assert head.hash() == tracked_store.headers[tracked_store.head_height].hash()


def test_request_head_with_unresponsive_peer(network):
    network.add_server("good", MockStore(DummySuite(), 5))
    network.add_server("bad", NoHeadStore(DummySuite(), 5))
    exchange = make_exchange(network, trusted=("good", "bad"))
    exchange.start()
    head = exchange.head()
    assert head.height() == 5


def test_request_header(network):
    exchange, store = create_exchange_and_server(network)
    header = exchange.get_by_height(5)
    assert header.height() == store.headers[5].height()
    assert header.hash() == store.headers[5].hash()


def test_request_header_zero_height(network):
    exchange, _ = create_exchange_and_server(network)
    with pytest.raises(ValueError):
        exchange.get_by_height(0)


def test_request_headers(network):
    exchange, store = create_exchange_and_server(network)
    headers = exchange.get_range_by_height(1, 5)
    assert [h.height() for h in headers] == [1, 2, 3, 4, 5]
    for got in headers:
        assert got.hash() == store.headers[got.height()].hash()


def test_request_verified_headers(network):
    exchange, store = create_exchange_and_server(network)
    headers = exchange.get_verified_range(store.headers[1], 3)
    assert [h.height() for h in headers] == [2, 3, 4]


def test_request_verified_headers_fails(network):
    exchange, store = create_exchange_and_server(network)
    store.headers[2] = store.headers[3]
    timer = threading.Timer(0.5, exchange.stop)
    timer.start()
    try:
        with pytest.raises(HeaderError, match="closed"):
            exchange.get_verified_range(store.headers[1], 3)
    finally:
        timer.cancel()
    assert exchange.tracker.blocked_peers() == ["server1"]


def test_request_full_range_headers(network):
    store = MockStore(DummySuite(), 512)
    peers = [f"server{i}" for i in range(4)]
    for peer_id in peers:
        network.add_server(peer_id, store)
    exchange = make_exchange(network, trusted=("server0",))
    for peer_id in peers:
        exchange.tracker.tracked_peers[peer_id] = PeerStat(peer_id=peer_id)
    headers = exchange.get_range_by_height(1, 512)
    assert len(headers) == 512
    assert [h.height() for h in headers] == list(range(1, 513))


def test_request_headers_limit_exceeded(network):
    exchange, _ = create_exchange_and_server(network)
    with pytest.raises(HeadersLimitExceededError):
        exchange.get_range_by_height(1, 600)


def test_request_headers_from_another_peer(network):
    exchange, _ = create_exchange_and_server(network)
    network.add_server("server2", MockStore(DummySuite(), 10))
    exchange.tracker.tracked_peers["server2"] = PeerStat(peer_id="server2", peer_score=20.0)
    headers = exchange.get_range_by_height(5, 3)
    assert [h.height() for h in headers] == [5, 6, 7]
    assert exchange.tracker.tracked_peers["server2"].score() > 20.0


def test_request_headers_from_another_peer_when_timeout(network):
    exchange, _ = create_exchange_and_server(network)
    network.add_server("server2", MockStore(DummySuite(), 10))
    network.slow.add("server2")
    slow_stat = PeerStat(peer_id="server2", peer_score=200.0)
    exchange.tracker.tracked_peers["server2"] = slow_stat
    prev_score = exchange.tracker.tracked_peers["server1"].score()
    headers = exchange.get_range_by_height(1, 3)
    assert [h.height() for h in headers] == [1, 2, 3]
    assert slow_stat.score() == pytest.approx(160.0)
    assert exchange.tracker.tracked_peers["server1"].score() > prev_score


def test_request_partial_range(network):
    exchange, _ = create_exchange_and_server(network)
    network.add_server("server2", MockStore(DummySuite(), 10))
    exchange.tracker.tracked_peers["server2"] = PeerStat(peer_id="server2", peer_score=50.0)
    headers = exchange.get_range_by_height(1, 8)
    assert [h.height() for h in headers] == list(range(1, 9))
    assert exchange.tracker.tracked_peers["server1"].score() != 100.0
    assert exchange.tracker.tracked_peers["server2"].score() != 50.0


def test_request_by_hash(network):
    exchange, store = create_exchange_and_server(network)
    wanted = store.headers[3]
    header = exchange.get(wanted.hash())
    assert header.height() == 3
    assert header.hash() == wanted.hash()


def test_handle_header_with_different_chain_id(network):
    exchange, store = create_exchange_and_server(network)
    exchange.params.chain_id = "test1"
    with pytest.raises(NotFoundError):
        exchange.head()
    with pytest.raises(ValueError):
        exchange.get_by_height(1)
    with pytest.raises(ValueError):
        exchange.get(store.get_by_height(1).hash())


def test_request_returns_headers(network):
    exchange, store = create_exchange_and_server(network)
    headers = exchange.request("server1", HeaderRequest(origin=2, amount=2))
    assert [h.height() for h in headers] == [2, 3]
    assert headers[0].hash() == store.headers[2].hash()


def test_no_trusted_peers(network):
    exchange = make_exchange(network, trusted=())
    with pytest.raises(HeaderError, match="no trusted peers"):
        exchange.get_by_height(1)


def test_invalid_client_parameters(network):
    with pytest.raises(ValueError):
        Exchange(DummyHeader, network, [], PeerTracker("client"), with_max_headers_per_range_request(0))


def test_zero_amount_ranges_are_empty(network):
    exchange, store = create_exchange_and_server(network)
    assert exchange.get_range_by_height(1, 0) == []
    assert exchange.get_verified_range(store.headers[1], 0) == []


def test_shuffle_peers_keeps_members():
    peers = ["a", "b", "c", "d"]
    shuffled = shuffle_peers(peers)
    assert sorted(shuffled) == peers
    assert peers == ["a", "b", "c", "d"]


def _three_headers():
    suite = DummySuite()
    return [suite.next_header() for _ in range(3)]


def test_best_head_all_distinct():
    assert best_head(_three_headers()).height() == 3


def test_best_head_lowest_repeated():
    res = _three_headers()
    res.append(res[0])
    assert best_head(res).height() == 1


def test_best_head_prefers_highest_repeated():
    res = _three_headers()
    res.extend([res[0], res[0], res[1]])
    assert best_head(res).height() == 2


def test_best_head_empty():
    with pytest.raises(NotFoundError):
        best_head([])