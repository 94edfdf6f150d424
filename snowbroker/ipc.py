"""Broker operations behind the proxy, client and answer endpoints."""

from __future__ import annotations

import binascii
import logging
import queue
import time
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from .bridgelist import BridgeNotFoundError, fingerprint_from_bytes
from .broker import BrokerContext, ClientOffer
from .metrics import NAT_RESTRICTED, NAT_UNRESTRICTED, RendezvousMethod
from .snowflakes import Snowflake

log = logging.getLogger(__name__)

CLIENT_TIMEOUT = 10.0

NO_PROXIES = "no snowflake proxies currently available"
TIMED_OUT = "timed out waiting for answer!"
INCORRECT_RELAY_PATTERN = "incorrect relay pattern"


class BadRequestError(ValueError):
    """The request could not be served as sent."""


@dataclass(frozen=True)
class ProxyPollResult:
    """Reply to a proxy poll: a client offer, nothing, or an error."""

    offer: Optional[str] = None
    nat_type: str = ""
    relay_url: str = ""
    error: str = ""

    @property
    def matched(self) -> bool:
        return self.offer is not None


@dataclass(frozen=True)
class ClientPollResult:
    """Reply to a client poll: the proxy's answer or an error message."""

    answer: str = ""
    error: str = ""


class IPC:
    """Operations on a broker context shared by all transports."""

    def __init__(self, ctx: BrokerContext, *, client_timeout: float = CLIENT_TIMEOUT) -> None:
        self.ctx = ctx
        self.client_timeout = client_timeout

    def debug(self) -> str:
        """Summarise the currently available proxies."""
        known = self.ctx.metrics.known_proxy_types
        proxy_types: Counter = Counter()
        unknowns = 0
        nat_counts: Counter = Counter()
        with self.ctx.lock:
            available = len(self.ctx.id_to_snowflake)
            for snowflake in self.ctx.id_to_snowflake.values():
                if snowflake.proxy_type in known:
                    proxy_types[snowflake.proxy_type] += 1
                else:
                    unknowns += 1
                if snowflake.nat_type in (NAT_RESTRICTED, NAT_UNRESTRICTED):
                    nat_counts[snowflake.nat_type] += 1
                else:
                    nat_counts["unknown"] += 1

        parts = [f"current snowflakes available: {available}\n"]
        parts += [f"\t{ptype} proxies: {num}\n" for ptype, num in sorted(proxy_types.items())]
        parts.append(f"\tunknown proxies: {unknowns}")
        parts.append("\nNAT Types available:")
        parts.append(f"\n\trestricted: {nat_counts[NAT_RESTRICTED]}")
        parts.append(f"\n\tunrestricted: {nat_counts[NAT_UNRESTRICTED]}")
        parts.append(f"\n\tunknown: {nat_counts['unknown']}")
        return "".join(parts)

    def proxy_polls(
        self,
        sid: str,
        proxy_type: str,
        nat_type: str,
        clients: int,
        relay_pattern: str,
        relay_pattern_supported: bool,
        remote_addr: str,
    ) -> ProxyPollResult:
        """Register a polling proxy and wait for a client offer for it."""
        metrics = self.ctx.metrics
        prom = metrics.prom_metrics
        with metrics.lock:
            if relay_pattern_supported:
                metrics.proxy_poll_with_relay_url_extension += 1
                prom.proxy_poll_with_relay_url_extension_total.inc(nat=nat_type, type=proxy_type)
            else:
                metrics.proxy_poll_without_relay_url_extension += 1
                prom.proxy_poll_without_relay_url_extension_total.inc(nat=nat_type, type=proxy_type)

        if not self.ctx.check_proxy_relay_pattern(relay_pattern, not relay_pattern_supported):
            with metrics.lock:
                metrics.proxy_poll_rejected_with_relay_url_extension += 1
                prom.proxy_poll_rejected_for_relay_url_extension_total.inc(
                    nat=nat_type, type=proxy_type
                )
            log.info("bad request: rejected relay pattern from proxy")
            return ProxyPollResult(error=INCORRECT_RELAY_PATTERN)

        with metrics.lock:
            metrics.update_country_stats(remote_addr, proxy_type, nat_type)

        offer = self.ctx.request_offer(sid, proxy_type, nat_type, clients)
        if offer is None:
            with metrics.lock:
                metrics.proxy_idle_count += 1
                prom.proxy_poll_total.inc(nat=nat_type, status="idle")
            return ProxyPollResult()

        prom.proxy_poll_total.inc(nat=nat_type, status="matched")
        try:
            fingerprint = fingerprint_from_bytes(offer.fingerprint)
        except ValueError as exc:
            raise BadRequestError(str(exc)) from exc
        info = self.ctx.bridge_list.get_bridge_info(fingerprint)
        return ProxyPollResult(
            offer=offer.sdp.decode("utf-8"),
            nat_type=offer.nat_type,
            relay_url=info.web_socket_address,
        )

    def client_offers(
        self,
        offer: str,
        nat_type: str,
        fingerprint: str,
        remote_addr: str,
        method: RendezvousMethod,
    ) -> ClientPollResult:
        """Hand a client offer to a proxy and wait for the proxy's answer."""
        start = time.monotonic()
        client_offer = ClientOffer(nat_type=nat_type, sdp=offer.encode("utf-8"))

        try:
            raw = binascii.unhexlify(fingerprint.encode("ascii"))
            bridge_fingerprint = fingerprint_from_bytes(raw)
        except (ValueError, UnicodeEncodeError) as exc:
            return ClientPollResult(error=str(exc))
        try:
            self.ctx.get_bridge_info(bridge_fingerprint)
        except BridgeNotFoundError as exc:
            return ClientPollResult(error=str(exc))
        client_offer.fingerprint = bridge_fingerprint

        metrics = self.ctx.metrics
        snowflake = self.match_snowflake(client_offer.nat_type)
        if snowflake is None:
            with metrics.lock:
                metrics.update_rendezvous_stats(remote_addr, method, nat_type, False)
            return ClientPollResult(error=NO_PROXIES)
        snowflake.offer_channel.put(client_offer)

        try:
            answer = snowflake.answer_channel.get(timeout=self.client_timeout)
        except queue.Empty:
            log.info("Client: Timed out.")
            result = ClientPollResult(error=TIMED_OUT)
        else:
            with metrics.lock:
                metrics.update_rendezvous_stats(remote_addr, method, nat_type, True)
            result = ClientPollResult(answer=answer)
            metrics.client_roundtrip_estimate = (time.monotonic() - start) * 1000.0

        with self.ctx.lock:
            metrics.prom_metrics.available_proxies.dec(
                nat=snowflake.nat_type, type=snowflake.proxy_type
            )
            self.ctx.id_to_snowflake.pop(snowflake.id, None)
        return result

    def match_snowflake(self, nat_type: str) -> Optional[Snowflake]:
        """Take a waiting restricted snowflake for a client, if one is available."""
        with self.ctx.lock:
            restricted = self.ctx.restricted_snowflakes
            if nat_type == NAT_UNRESTRICTED and len(restricted) > 0:
                return restricted.pop()
            if len(restricted) > 0:
                log.info("matched restricted snowflake")
                return restricted.pop()
        log.info("unable to match snowflake")
        return None

    def proxy_answers(self, answer: str, sid: str) -> bool:
        """Pass a proxy's answer to its waiting client; False if the client is gone."""
        if not answer:
            raise BadRequestError("empty answer")
        with self.ctx.lock:
            snowflake = self.ctx.id_to_snowflake.get(sid)
        if snowflake is None:
            log.warning("Warning: matching with snowflake client failed")
            return False
        snowflake.answer_channel.put(answer)
        return True