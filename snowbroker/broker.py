"""Matching of client offers to polling snowflake proxies."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Optional

from .bridgelist import BridgeInfo, BridgeListHolder
from .metrics import NAT_UNRESTRICTED, Metrics
from .snowflakes import Snowflake, SnowflakeHeap

log = logging.getLogger(__name__)

PROXY_TIMEOUT = 10.0

DEFAULT_BRIDGES = (
    '{"displayName":"default", "webSocketAddress":"wss://snowflake.example.net/", '
    '"fingerprint":"2B280B23E1107BB62ABFC40DDCC8824814F80A72"}\n'
)


@dataclass(frozen=True)
class _NameMatcher:
    """A relay host pattern: a name suffix, or an exact name when anchored."""

    suffix: str
    exact: bool

    @classmethod
    def parse(cls, rule: str) -> "_NameMatcher":
        rule = rule[:-1] if rule.endswith("$") else rule
        exact = rule.startswith("^")
        return cls(rule[1:] if exact else rule, exact)

    def is_superset_of(self, other: "_NameMatcher") -> bool:
        if self.exact:
            return other.exact and self.suffix == other.suffix
        return other.suffix.endswith(self.suffix)


@dataclass
class ClientOffer:
    """A client's SDP offer, its NAT type and the bridge it wants."""

    nat_type: str
    sdp: bytes
    fingerprint: bytes = b""


@dataclass
class _ProxyPoll:
    sid: str
    proxy_type: str
    nat_type: str
    clients: int
    offer_channel: queue.Queue = field(default_factory=queue.Queue)


class BrokerContext:
    """Shared broker state: waiting proxies, bridges and metrics.

    ``start`` runs the matching thread that serves ``request_offer``.
    """

    def __init__(
        self,
        metrics: Optional[Metrics] = None,
        allowed_relay_pattern: str = "",
        presumed_pattern_for_legacy_client: str = "",
        *,
        proxy_timeout: float = PROXY_TIMEOUT,
    ) -> None:
        self.snowflakes = SnowflakeHeap()
        # Restricted snowflakes can only be matched with clients behind an
        # unrestricted NAT.
        self.restricted_snowflakes = SnowflakeHeap()
        self.id_to_snowflake: dict[str, Snowflake] = {}
        self.lock = threading.Lock()
        self.proxy_polls: queue.Queue = queue.Queue()
        self.metrics = metrics if metrics is not None else Metrics()
        self.bridge_list = BridgeListHolder()
        self.bridge_list.load_bridge_info(DEFAULT_BRIDGES)
        self.allowed_relay_pattern = allowed_relay_pattern
        self.presumed_pattern_for_legacy_client = presumed_pattern_for_legacy_client
        self.proxy_timeout = proxy_timeout
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "BrokerContext":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_bridge_info(self, fingerprint: bytes) -> BridgeInfo:
        """Look up a bridge by raw fingerprint."""
        return self.bridge_list.get_bridge_info(fingerprint)

    def install_bridge_list_profile(self, lines) -> None:
        """Replace the bridge list with newline-delimited JSON records."""
        self.bridge_list.load_bridge_info(lines)

    def check_proxy_relay_pattern(self, pattern: str, non_supported: bool) -> bool:
        """Whether a proxy's accepted relay pattern covers the broker's."""
        if non_supported:
            pattern = self.presumed_pattern_for_legacy_client
        proxy_pattern = _NameMatcher.parse(pattern)
        broker_pattern = _NameMatcher.parse(self.allowed_relay_pattern)
        return proxy_pattern.is_superset_of(broker_pattern)

    def add_snowflake(self, sid: str, proxy_type: str, nat_type: str, clients: int) -> Snowflake:
        """Register a waiting proxy in the heap for its NAT type."""
        snowflake = Snowflake(id=sid, proxy_type=proxy_type, nat_type=nat_type, clients=clients)
        with self.lock:
            self._heap_for(nat_type).push(snowflake)
            self.metrics.prom_metrics.available_proxies.inc(nat=nat_type, type=proxy_type)
            self.id_to_snowflake[sid] = snowflake
        return snowflake

    def request_offer(
        self, sid: str, proxy_type: str, nat_type: str, clients: int
    ) -> Optional[ClientOffer]:
        """Wait for a client offer for this proxy; None when none arrives in time."""
        if not self.running:
            raise RuntimeError("broker is not running")
        poll = _ProxyPoll(sid, proxy_type, nat_type, clients)
        self.proxy_polls.put(poll)
        return poll.offer_channel.get()

    def start(self) -> None:
        """Start the thread that registers polling proxies."""
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name="broker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the matching thread."""
        thread, self._thread = self._thread, None
        if thread is not None:
            self.proxy_polls.put(None)
            thread.join()

    def _heap_for(self, nat_type: str) -> SnowflakeHeap:
        return self.snowflakes if nat_type == NAT_UNRESTRICTED else self.restricted_snowflakes

    def _run(self) -> None:
        while True:
            poll = self.proxy_polls.get()
            if poll is None:
                return
            snowflake = self.add_snowflake(poll.sid, poll.proxy_type, poll.nat_type, poll.clients)
            threading.Thread(
                target=self._await_offer, args=(poll, snowflake), daemon=True
            ).start()

    def _await_offer(self, poll: _ProxyPoll, snowflake: Snowflake) -> None:
        try:
            offer = snowflake.offer_channel.get(timeout=self.proxy_timeout)
        except queue.Empty:
            with self.lock:
                if snowflake.index != -1:
                    # This snowflake is no longer available to serve clients.
                    self._heap_for(poll.nat_type).remove(snowflake)
                    self.metrics.prom_metrics.available_proxies.dec(
                        nat=poll.nat_type, type=poll.proxy_type
                    )
                    self.id_to_snowflake.pop(snowflake.id, None)
                    poll.offer_channel.put(None)
                    return
            # A client took this snowflake just as it timed out; its offer follows.
            offer = snowflake.offer_channel.get()
        poll.offer_channel.put(offer)