"""Broker usage metrics: daily text statistics and labelled counters."""

from __future__ import annotations

import sys
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional, TextIO

PROMETHEUS_NAMESPACE = "snowflake"
METRICS_RESOLUTION = 86400.0

NAT_UNKNOWN = "unknown"
NAT_RESTRICTED = "restricted"
NAT_UNRESTRICTED = "unrestricted"


class RendezvousMethod(str, Enum):
    """How a client reached the broker."""

    HTTP = "http"
    AMPCACHE = "ampcache"
    SQS = "sqs"

    def __str__(self) -> str:
        return self.value


def bin_count(count: int) -> int:
    """Round a count up to the nearest multiple of 8."""
    return -(-int(count) // 8) * 8


class LabeledMetric:
    """A counter or gauge split by a fixed set of label names."""

    def __init__(
        self,
        name: str,
        help: str,
        labels: Iterable[str],
        *,
        gauge: bool = False,
        rounded: bool = False,
    ) -> None:
        self.name = f"{PROMETHEUS_NAMESPACE}_{name}"
        self.help = help
        self.labels = tuple(labels)
        self.gauge = gauge
        self.rounded = rounded
        self._values: dict[tuple[str, ...], int] = {}
        self._lock = threading.Lock()

    def _key(self, labels: dict) -> tuple[str, ...]:
        if set(labels) != set(self.labels):
            raise ValueError(
                f"{self.name} takes labels {sorted(self.labels)}, got {sorted(labels)}"
            )
        return tuple(str(labels[name]) for name in self.labels)

    def _add(self, labels: dict, amount: int) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def inc(self, **kwargs) -> None:
        """Add one to the series with these labels."""
        self._add(kwargs, 1)

    def dec(self, **kwargs) -> None:
        """Subtract one from the series with these labels; gauges only."""
        if not self.gauge:
            raise TypeError(f"{self.name} is a counter and cannot decrease")
        self._add(kwargs, -1)

    def value(self, **kwargs) -> int:
        """Exported value of a series; rounded metrics report a multiple of 8."""
        key = self._key(kwargs)
        with self._lock:
            raw = self._values.get(key, 0)
        return bin_count(raw) if self.rounded else raw


def _counter(name: str, help: str, labels: Iterable[str], rounded: bool = True):
    return field(default_factory=lambda: LabeledMetric(name, help, labels, rounded=rounded))


@dataclass
class PromMetrics:
    """The labelled metrics exported by the broker."""

    proxy_total: LabeledMetric = _counter(
        "proxy_total", "The number of unique snowflake IPs", ("type", "nat", "cc"), rounded=False
    )
    available_proxies: LabeledMetric = field(
        default_factory=lambda: LabeledMetric(
            "available_proxies",
            "The number of currently available snowflake proxies",
            ("type", "nat"),
            gauge=True,
        )
    )
    proxy_poll_total: LabeledMetric = _counter(
        "rounded_proxy_poll_total",
        "The number of snowflake proxy polls, rounded up to a multiple of 8",
        ("nat", "status"),
    )
    proxy_poll_with_relay_url_extension_total: LabeledMetric = _counter(
        "rounded_proxy_poll_with_relay_url_extension_total",
        "The number of snowflake proxy polls with Relay URL Extension, rounded up to a multiple of 8",
        ("nat", "type"),
    )
    proxy_poll_without_relay_url_extension_total: LabeledMetric = _counter(
        "rounded_proxy_poll_without_relay_url_extension_total",
        "The number of snowflake proxy polls without Relay URL Extension, rounded up to a multiple of 8",
        ("nat", "type"),
    )
    proxy_poll_rejected_for_relay_url_extension_total: LabeledMetric = _counter(
        "rounded_proxy_poll_rejected_relay_url_extension_total",
        "The number of snowflake proxy polls rejected by Relay URL Extension, rounded up to a multiple of 8",
        ("nat", "type"),
    )
    client_poll_total: LabeledMetric = _counter(
        "rounded_client_poll_total",
        "The number of snowflake client polls, rounded up to a multiple of 8",
        ("nat", "status", "cc", "rendezvous_method"),
    )


def _sorted_counts(counts: dict[str, int]) -> list[tuple[str, int]]:
    # Highest count first; equal counts in ascending country-code order.
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


@dataclass
class CountryStats:
    """Unique proxy addresses seen, by proxy type, NAT type and country."""

    proxies: dict[str, set[str]] = field(default_factory=dict)
    unknown: set[str] = field(default_factory=set)
    nat_restricted: set[str] = field(default_factory=set)
    nat_unrestricted: set[str] = field(default_factory=set)
    nat_unknown: set[str] = field(default_factory=set)
    counts: Counter = field(default_factory=Counter)

    def display(self) -> str:
        """Render the per-country counts as ``cc=count`` pairs."""
        return ",".join(f"{cc}={count}" for cc, count in _sorted_counts(self.counts))


GeoipLookup = Callable[[str], Optional[str]]


class Metrics:
    """Broker statistics, written out as text once per resolution period.

    ``geoip`` maps an address to a country code, or None when unknown.
    Callers hold ``lock`` around updates made from several threads.
    """

    def __init__(
        self,
        output: Optional[TextIO] = None,
        known_proxy_types: Iterable[str] = (),
        geoip: Optional[GeoipLookup] = None,
        resolution: float = METRICS_RESOLUTION,
    ) -> None:
        self.output = output if output is not None else sys.stdout
        self.known_proxy_types = frozenset(known_proxy_types)
        self.geoip = geoip
        self.resolution = resolution
        self.lock = threading.Lock()
        self.prom_metrics = PromMetrics()
        self.client_roundtrip_estimate = 0.0
        self.country_stats = CountryStats(proxies={p: set() for p in self.known_proxy_types})
        self.zero_metrics()

    def _country(self, addr: str) -> Optional[str]:
        if self.geoip is None:
            return None
        return self.geoip(addr)

    def update_country_stats(self, addr: str, proxy_type: str, nat_type: str) -> None:
        """Record a proxy address the first time it is seen."""
        stats = self.country_stats
        addresses = stats.proxies.get(proxy_type)
        if addresses is None:
            addresses = stats.unknown
        if addr in addresses:
            return
        addresses.add(addr)

        if self.geoip is None:
            return
        country = self._country(addr) or "??"
        stats.counts[country] += 1
        self.prom_metrics.proxy_total.inc(nat=nat_type, type=proxy_type, cc=country)

        if nat_type == NAT_RESTRICTED:
            stats.nat_restricted.add(addr)
        elif nat_type == NAT_UNRESTRICTED:
            stats.nat_unrestricted.add(addr)
        else:
            stats.nat_unknown.add(addr)

    def update_rendezvous_stats(
        self, addr: str, method: RendezvousMethod, nat_type: str, matched: bool
    ) -> None:
        """Record a client poll that was either matched or denied."""
        method = RendezvousMethod(method)
        country = self._country(addr) or "??"
        if matched:
            status = "matched"
            self.client_proxy_match_count[method] += 1
        else:
            status = "denied"
            self.client_denied_count[method] += 1
            if nat_type == NAT_UNRESTRICTED:
                self.client_unrestricted_denied_count[method] += 1
            else:
                self.client_restricted_denied_count[method] += 1
        self.rendezvous_country_stats[method][country] += 1
        self.prom_metrics.client_poll_total.inc(
            nat=nat_type, status=status, rendezvous_method=method.value, cc=country
        )

    def display_rendezvous_stats_by_country(self, method: RendezvousMethod) -> str:
        """Render binned per-country client counts for one rendezvous method."""
        counts = self.rendezvous_country_stats[RendezvousMethod(method)]
        return ",".join(f"{cc}={bin_count(count)}" for cc, count in _sorted_counts(counts))

    def print_metrics(self) -> None:
        """Write the current statistics to the output."""
        with self.lock:
            stats = self.country_stats
            now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
            lines = [
                f"snowflake-stats-end {now} ({int(self.resolution)} s)",
                f"snowflake-ips {stats.display()}",
            ]
            total = len(stats.unknown)
            for proxy_type, addresses in stats.proxies.items():
                lines.append(f"snowflake-ips-{proxy_type} {len(addresses)}")
                total += len(addresses)
            lines += [
                f"snowflake-ips-total {total}",
                f"snowflake-idle-count {bin_count(self.proxy_idle_count)}",
                "snowflake-proxy-poll-with-relay-url-count "
                f"{bin_count(self.proxy_poll_with_relay_url_extension)}",
                "snowflake-proxy-poll-without-relay-url-count "
                f"{bin_count(self.proxy_poll_without_relay_url_extension)}",
                "snowflake-proxy-rejected-for-relay-url-count "
                f"{bin_count(self.proxy_poll_rejected_with_relay_url_extension)}",
                f"client-denied-count {bin_count(sum(self.client_denied_count.values()))}",
                "client-restricted-denied-count "
                f"{bin_count(sum(self.client_restricted_denied_count.values()))}",
                "client-unrestricted-denied-count "
                f"{bin_count(sum(self.client_unrestricted_denied_count.values()))}",
                "client-snowflake-match-count "
                f"{bin_count(sum(self.client_proxy_match_count.values()))}",
            ]
            for method in RendezvousMethod:
                count = self.client_denied_count[method] + self.client_proxy_match_count[method]
                lines.append(f"client-{method.value}-count {bin_count(count)}")
                lines.append(
                    f"client-{method.value}-ips {self.display_rendezvous_stats_by_country(method)}"
                )
            lines += [
                f"snowflake-ips-nat-restricted {len(stats.nat_restricted)}",
                f"snowflake-ips-nat-unrestricted {len(stats.nat_unrestricted)}",
                f"snowflake-ips-nat-unknown {len(stats.nat_unknown)}",
            ]
            self.output.write("".join(line + "\n" for line in lines))
            self.output.flush()

    def zero_metrics(self) -> None:
        """Reset every periodic statistic to its initial value."""
        self.proxy_idle_count = 0
        self.proxy_poll_with_relay_url_extension = 0
        self.proxy_poll_without_relay_url_extension = 0
        self.proxy_poll_rejected_with_relay_url_extension = 0
        self.client_denied_count: Counter = Counter()
        self.client_restricted_denied_count: Counter = Counter()
        self.client_unrestricted_denied_count: Counter = Counter()
        self.client_proxy_match_count: Counter = Counter()
        self.rendezvous_country_stats: dict[RendezvousMethod, Counter] = {
            method: Counter() for method in RendezvousMethod
        }
        stats = self.country_stats
        stats.counts = Counter()
        stats.proxies = {proxy_type: set() for proxy_type in stats.proxies}
        stats.unknown = set()
        stats.nat_restricted = set()
        stats.nat_unrestricted = set()
        stats.nat_unknown = set()

    def log_metrics(self, stop_event: threading.Event) -> None:
        """Print and reset the statistics every period until ``stop_event`` is set."""
        while not stop_event.wait(self.resolution):
            self.print_metrics()
            with self.lock:
                self.zero_metrics()