"""Matching core of a rendezvous broker for clients and volunteer WebRTC proxies."""

__version__ = "0.1.0"

__all__ = ["bridgelist", "snowflakes", "metrics", "broker", "ipc", "sqs"]