# snowbroker

`snowbroker` is the matching core of a rendezvous broker for volunteer
WebRTC proxies. Proxies poll the broker and wait to be handed a client
offer; clients send an SDP offer and wait for a proxy's answer. The broker
pairs them up, keeps privacy-preserving usage metrics, and can take client
offers from an SQS-style message queue.

The package uses only the standard library.

## Modules

- `snowbroker.bridgelist`: the list of known bridges, read from
  newline-delimited JSON and looked up by 20-byte fingerprint
  (`BridgeListHolder`, `BridgeInfo`, `fingerprint_from_hex`,
  `fingerprint_from_bytes`, `BridgeNotFoundError`).
- `snowbroker.snowflakes`: the heap of waiting proxies. Proxies serving
  fewer clients come out first, and a proxy can be removed from the middle
  of the heap (`Snowflake`, `SnowflakeHeap`).
- `snowbroker.metrics`: per-country and per-rendezvous-method statistics,
  the periodic text report, and labelled counters and gauges kept in
  memory (`Metrics`, `CountryStats`, `PromMetrics`, `LabeledMetric`,
  `RendezvousMethod`, `bin_count`).
- `snowbroker.broker`: the shared broker state and the thread that
  registers polling proxies (`BrokerContext`, `ClientOffer`).
- `snowbroker.ipc`: the operations behind proxy polls, client offers,
  proxy answers and the debug summary (`IPC`, `ProxyPollResult`,
  `ClientPollResult`, `BadRequestError`).
- `snowbroker.sqs`: reads client polls from a broker queue, answers each on
  a per-client queue, and deletes stale client queues
  (`SQSHandler`, `new_sqs_handler`).

## Bridge lists

Each line of a bridge list is one JSON object whose keys may only be
`displayName`, `webSocketAddress` and `fingerprint`. An unknown key, a bad
fingerprint or a line that is not JSON raises `ValueError`, and the list
loaded before stays in place.

```python
from snowbroker.bridgelist import BridgeListHolder, fingerprint_from_hex

lines = [
    '{"displayName":"default", "webSocketAddress":"wss://bridge.example.com/",'
    ' "fingerprint":"00112233445566778899AABBCCDDEEFF00112233"}',
]

holder = BridgeListHolder()
holder.load_bridge_info(lines)

info = holder.get_bridge_info(fingerprint_from_hex("00112233445566778899AABBCCDDEEFF00112233"))
print(info.display_name, info.web_socket_address)
```

`load_bridge_info` also takes a whole string or bytes. Looking up an
unknown fingerprint raises `BridgeNotFoundError`.

## Matching proxies and clients

A `BrokerContext` starts with one default bridge loaded; replace it with
`install_bridge_list_profile`. It is used as a context manager (or with
`start()` and `stop()`) so that its matching thread runs.

```python
from snowbroker.broker import BrokerContext
from snowbroker.ipc import IPC

with BrokerContext() as ctx:
    ipc = IPC(ctx)
    print(ipc.debug())
```

- `IPC.proxy_polls(...)` blocks until a client offer arrives for the proxy
  or the proxy timeout passes, and returns a `ProxyPollResult` (an offer
  with its relay URL, nothing, or the error `"incorrect relay pattern"`
  when the proxy's accepted relay pattern does not cover the broker's).
- `IPC.client_offers(...)` hands the offer to a waiting proxy and waits for
  its answer, returning a `ClientPollResult` with the answer or an error
  message (no proxies available, timed out, bad or unknown fingerprint).
  Clients are matched with proxies waiting in the restricted heap.
- `IPC.proxy_answers(answer, sid)` passes an answer to the waiting client
  and returns `False` if the client is no longer there; an empty answer
  raises `BadRequestError`.

## Metrics

Counts that leave the broker are rounded up to a multiple of eight so that
small numbers of users cannot be singled out:

```python
from snowbroker.metrics import bin_count

assert bin_count(0) == 0
assert bin_count(5) == 8
assert bin_count(9) == 16
```

`Metrics` takes an output stream, the known proxy types and an optional
`geoip` callable mapping an address to a country code.
`Metrics.print_metrics()` writes the report (`snowflake-ips`,
`client-denied-count`, `client-<method>-ips`, ...),
`Metrics.zero_metrics()` starts a new period, and
`Metrics.log_metrics(stop_event)` does both once per period until the
event is set.

## SQS

`new_sqs_handler(client, queue_name, region, offer_handler)` creates the
broker queue and returns an `SQSHandler`. The client is any object with the
SQS methods (`create_queue`, `receive_message`, `send_message`,
`delete_message`, `list_queues`, `get_queue_attributes`, `delete_queue`)
taking SQS request field names as keyword arguments. `offer_handler` is
called with the encoded poll body, the client's address and
`RendezvousMethod.SQS`, and returns the reply to send.
`poll_and_handle_messages(stop_event)` runs until the event is set.

## What this package does not do

- It has no HTTP server, no endpoints and no command-line program; the
  `IPC` operations take already decoded values and return result objects.
- It does not encode or decode the wire messages of polls and answers, nor
  parse SDP.
- It does not read geoip database files; country lookup is whatever
  callable is passed to `Metrics`.
- Labelled metrics are kept in memory only; nothing exports them.
- It does not include an SQS client library; one must be supplied.

## Tests

The tests use pytest, which the `test` extra installs.