# headersync

Building blocks for requesting, verifying, serving and storing chains of
block headers. The package has no dependencies outside the standard library.

## Modules

- `headersync.hash`
  - `Hash` is a `bytes` subclass. `str()` gives upper-case hex.
  - `to_json()` returns that hex in double quotes.
  - `Hash.from_json()` parses it back. It raises `ValueError` on malformed input.
- `headersync.header`
  - The abstract interfaces `Header`, `Getter`, `Store`, `Subscriber` and `Subscription`.
  - The errors `HeaderError`, `NotFoundError`, `NoHeadError`, `HeadersLimitExceededError` and `NonAdjacentError`.
  - `MAX_RANGE_REQUEST_SIZE`, which is 512.
  - The head options `HeadParams`, `with_trusted_head` and `apply_head_options`.
- `headersync.dummy`
  - `DummyHeader` is a simple `Header`. It is hashed with SHA3-512 over its JSON encoding. Setting `verify_failure` makes verification against it raise `DummyVerifyError`.
  - `DummySuite` builds a chain of adjacent headers: `head()`, `next_header()` and `gen_dummy_headers(n)`.
  - `rand_dummy_header()` and `rand_bytes()`.
- `headersync.mock_store`
  - `MockStore` is an in-memory `Store`, filled from a generator such as `DummySuite`. Ranges are half-open: `[start, end)`.
  - `new_dummy_store()` returns a store of ten dummy headers.
  - `MockSubscriber` hands out queued headers in order. It raises `concurrent.futures.CancelledError` when it has none left or has been cancelled.
- `headersync.local_exchange`
  - `LocalExchange` answers `head`, `get`, `get_by_height`, `get_range_by_height(origin, amount)` and `get_verified_range(start, amount)` straight from a store.
- `headersync.p2p.options`
  - `ClientParameters` and `ServerParameters`, with `validate()`.
  - Their defaults: `default_client_parameters()` and `default_server_parameters()`.
  - Options that return updated parameters:
    - `with_network_id`
    - `with_chain_id`
    - `with_range_request_timeout`
    - `with_max_headers_per_range_request`
    - `with_read_deadline`
    - `with_write_deadline`
    - `with_peer_id_store`
    - `with_params`
  - `apply_options` applies these options.
  - The abstract `PeerIDStore`.
- `headersync.p2p.messages`
  - The messages `HeaderRequest` (by `origin` or by `hash`, with an `amount`), `HeaderResponse` and `StatusCode`.
  - `protocol_id()` and `pubsub_topic_id()`.
  - `validate_chain_id()`, which compares without regard to case.
  - `status_code_to_error()`.
- `headersync.p2p.peer_stats`
  - `PeerStat` keeps a peer's average speed score.
  - `PeerQueue` is a thread-safe queue that hands out the best-scoring peer first.
- `headersync.p2p.peer_tracker`
  - `PeerTracker` keeps connected and disconnected peers, and blocks peers.
  - `collect_garbage()` prunes expired disconnected peers and tracked peers whose score is at or below 1.0.
  - `dump_peers()` writes the tracked peers to a `PeerIDStore`.
- `headersync.p2p.session`
  - `Session` splits a range into requests with `prepare_requests()` and spreads them over tracked peers on threads.
  - Failed parts are retried with other peers. Peers that send bad data are blocked.
  - When given a start header, it checks that received ranges verify against that header and are adjacent.
- `headersync.p2p.server`
  - `ExchangeServer` answers a `HeaderRequest` from a store with a list of `HeaderResponse`.
  - Origin 0 asks for the head.
  - A range the store holds only in part is served in part.
  - A missing header gets a single `NOT_FOUND` response.
  - Ranges over 512 raise `HeadersLimitExceededError`.
- `headersync.p2p.exchange`
  - `Exchange` is the client.
  - `head()` asks peers in parallel and picks the answer with `best_head()`. Without a trusted head it asks the trusted peers. With `with_trusted_head(...)` it asks tracked peers and verifies their answers.
  - `get` and `get_by_height` retry over the trusted peers.
  - `get_range_by_height` and `get_verified_range` run a `Session`.

## Example

```python
from headersync.dummy import DummyHeader, DummySuite
from headersync.mock_store import MockStore
from headersync.local_exchange import LocalExchange
from headersync.p2p.exchange import Exchange
from headersync.p2p.options import with_chain_id, with_network_id
from headersync.p2p.server import ExchangeServer

store = MockStore(DummySuite(), 10)

local = LocalExchange(store)
print(local.head().height(), local.head().hash())
print([h.height() for h in local.get_range_by_height(1, 5)])


class InProcessTransport:
    """Delivers requests to servers in the same process."""

    def __init__(self, servers):
        self.servers = servers

    def send(self, peer_id, protocol, request, timeout):
        responses = self.servers[peer_id].handle(request)
        return responses, sum(len(r.body) for r in responses), 1

    def connect(self, peer_id):
        if peer_id not in self.servers:
            raise ConnectionError(peer_id)


server = ExchangeServer(store, with_network_id("test"))
server.start()

client = Exchange(
    DummyHeader,
    InProcessTransport({"peer-1": server}),
    ["peer-1"],
    None,
    with_network_id("test"),
    with_chain_id("test"),
)
client.start()
print(client.get_by_height(5).height())
print([h.height() for h in client.get_range_by_height(1, 5)])
client.stop()
```

## What the package does not do

- It has no network transport. `Exchange` sends every request through a transport object that you supply. That object needs `send(peer_id, protocol, request, timeout)` and `connect(peer_id)`. `ExchangeServer.handle` only turns a request into responses.
- It has no gossip subscriber for new headers.
- It has no persistent header store. `MockStore` lives in memory.
- It has no concrete `PeerIDStore`.
- `PeerTracker` runs no background garbage collection. Call `collect_garbage()` yourself.
- It has no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```