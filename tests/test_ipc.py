import io
import threading
import time

import pytest

from snowbroker.bridgelist import BridgeNotFoundError, fingerprint_from_hex
from snowbroker.broker import BrokerContext
from snowbroker.ipc import (
    INCORRECT_RELAY_PATTERN,
    NO_PROXIES,
    TIMED_OUT,
    IPC,
    BadRequestError,
)
from snowbroker.metrics import Metrics, RendezvousMethod

DEFAULT_FP = "2B280B23E1107BB62ABFC40DDCC8824814F80A72"


def make_ipc(client_timeout=5.0, **kwargs):
    metrics = Metrics(output=io.StringIO(), known_proxy_types=("standalone", "webext"))
    ctx = BrokerContext(metrics, **kwargs)
    return IPC(ctx, client_timeout=client_timeout)


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


def test_debug_empty():
    ipc = make_ipc()
    assert ipc.debug() == (
        "current snowflakes available: 0\n"
        "\tunknown proxies: 0\n"
        "NAT Types available:\n"
        "\trestricted: 0\n"
        "\tunrestricted: 0\n"
        "\tunknown: 0"
    )


def test_debug_counts_types_and_nats():
    ipc = make_ipc()
    ipc.ctx.add_snowflake("a", "standalone", "restricted", 0)
    ipc.ctx.add_snowflake("b", "standalone", "unrestricted", 0)
    ipc.ctx.add_snowflake("c", "mystery", "unknown", 0)
    text = ipc.debug()
    assert text.startswith("current snowflakes available: 3\n")
    assert "\tstandalone proxies: 2\n" in text
    assert "\tunknown proxies: 1" in text
    assert "\n\trestricted: 1" in text
    assert "\n\tunrestricted: 1" in text
    assert text.endswith("\n\tunknown: 1")


def test_proxy_answers_rejects_empty_answer():
    ipc = make_ipc()
    with pytest.raises(BadRequestError):
        ipc.proxy_answers("", "sid")


def test_proxy_answers_unknown_proxy():
    ipc = make_ipc()
    assert ipc.proxy_answers("answer", "nobody") is False


def test_proxy_answers_delivers_answer():
    ipc = make_ipc()
    snowflake = ipc.ctx.add_snowflake("p", "standalone", "restricted", 0)
    assert ipc.proxy_answers("the answer", "p") is True
    assert snowflake.answer_channel.get_nowait() == "the answer"


def test_match_snowflake_uses_restricted_heap_only():
    ipc = make_ipc()
    assert ipc.match_snowflake("unrestricted") is None
    ipc.ctx.add_snowflake("u", "standalone", "unrestricted", 0)
    assert ipc.match_snowflake("unrestricted") is None
    busy = ipc.ctx.add_snowflake("busy", "standalone", "restricted", 3)
    idle = ipc.ctx.add_snowflake("idle", "standalone", "restricted", 1)
    assert ipc.match_snowflake("restricted") is idle
    assert ipc.match_snowflake("unrestricted") is busy
    assert ipc.match_snowflake("restricted") is None


def test_client_offers_bad_fingerprint_hex():
    ipc = make_ipc()
    result = ipc.client_offers("sdp", "unknown", "zz", "192.0.2.1", RendezvousMethod.HTTP)
    assert result.answer == ""
    assert result.error


def test_client_offers_wrong_fingerprint_length():
    ipc = make_ipc()
    result = ipc.client_offers("sdp", "unknown", "abcd", "192.0.2.1", RendezvousMethod.HTTP)
    assert result.answer == ""
    assert result.error


def test_client_offers_unknown_bridge():
    ipc = make_ipc()
    result = ipc.client_offers("sdp", "unknown", "00" * 20, "192.0.2.1", RendezvousMethod.HTTP)
    assert result.error == str(BridgeNotFoundError())


def test_client_offers_without_proxies_is_denied():
    ipc = make_ipc()
    result = ipc.client_offers("sdp", "unrestricted", DEFAULT_FP, "192.0.2.1", RendezvousMethod.HTTP)
    assert result.error == NO_PROXIES
    metrics = ipc.ctx.metrics
    assert metrics.client_denied_count[RendezvousMethod.HTTP] == 1
    assert metrics.client_unrestricted_denied_count[RendezvousMethod.HTTP] == 1
    assert metrics.rendezvous_country_stats[RendezvousMethod.HTTP]["??"] == 1


def test_client_offers_receives_answer():
    ipc = make_ipc()
    snowflake = ipc.ctx.add_snowflake("p", "standalone", "restricted", 0)

    def proxy_side():
        offer = snowflake.offer_channel.get(timeout=5)
        assert offer.fingerprint == fingerprint_from_hex(DEFAULT_FP)
        snowflake.answer_channel.put("answer for " + offer.sdp.decode())

    worker = threading.Thread(target=proxy_side)
    worker.start()
    result = ipc.client_offers("fake", "unknown", DEFAULT_FP, "192.0.2.1", RendezvousMethod.SQS)
    worker.join(5)
    assert result.answer == "answer for fake"
    assert result.error == ""
    assert ipc.ctx.id_to_snowflake == {}
    assert ipc.ctx.metrics.client_proxy_match_count[RendezvousMethod.SQS] == 1


def test_client_offers_times_out():
    ipc = make_ipc(client_timeout=0.05)
    ipc.ctx.add_snowflake("p", "standalone", "restricted", 0)
    result = ipc.client_offers("fake", "unknown", DEFAULT_FP, "192.0.2.1", RendezvousMethod.HTTP)
    assert result.error == TIMED_OUT
    assert ipc.ctx.id_to_snowflake == {}


def test_proxy_polls_rejects_relay_pattern():
    ipc = make_ipc(allowed_relay_pattern="snowflake.example")
    result = ipc.proxy_polls(
        "p", "standalone", "restricted", 0, "other.example", True, "192.0.2.7"
    )
    assert result.error == INCORRECT_RELAY_PATTERN
    assert result.matched is False
    metrics = ipc.ctx.metrics
    assert metrics.proxy_poll_rejected_with_relay_url_extension == 1
    assert metrics.proxy_poll_with_relay_url_extension == 1
    assert ipc.ctx.id_to_snowflake == {}


def test_proxy_polls_idle():
    ipc = make_ipc(allowed_relay_pattern="snowflake.example", proxy_timeout=0.05)
    with ipc.ctx:
        result = ipc.proxy_polls(
            "p", "standalone", "restricted", 0, "example", True, "192.0.2.7"
        )
    assert result.matched is False
    assert result.error == ""
    metrics = ipc.ctx.metrics
    assert metrics.proxy_idle_count == 1
    assert "192.0.2.7" in metrics.country_stats.proxies["standalone"]


def test_proxy_and_client_rendezvous():
    ipc = make_ipc(proxy_timeout=5.0)
    proxy_results, client_results = [], []
    with ipc.ctx:
        proxy = threading.Thread(
            target=lambda: proxy_results.append(
                ipc.proxy_polls("p", "standalone", "restricted", 0, "", False, "192.0.2.7")
            )
        )
        proxy.start()
        assert wait_for(lambda: "p" in ipc.ctx.id_to_snowflake)
        client = threading.Thread(
            target=lambda: client_results.append(
                ipc.client_offers(
                    "offer-sdp", "unrestricted", DEFAULT_FP, "192.0.2.9", RendezvousMethod.HTTP
                )
            )
        )
        client.start()
        proxy.join(5)
        assert len(proxy_results) == 1
        poll = proxy_results[0]
        assert poll.offer == "offer-sdp"
        assert poll.nat_type == "unrestricted"
        expected_url = ipc.ctx.get_bridge_info(fingerprint_from_hex(DEFAULT_FP)).web_socket_address
        assert poll.relay_url == expected_url
        assert ipc.proxy_answers("answer-sdp", "p") is True
        client.join(5)
    assert client_results[0].answer == "answer-sdp"
    assert ipc.ctx.metrics.proxy_poll_without_relay_url_extension == 1