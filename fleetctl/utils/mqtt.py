"""MQTT utility functions."""

from typing import NamedTuple
from urllib.parse import urlsplit

_DEFAULT_PORTS = {"mqtt": 1883, "mqtts": 8883, "ws": 80, "wss": 443}
_TLS_SCHEMES = {"mqtts", "wss"}


class BrokerAddress(NamedTuple):
    """Host, port and transport security of a broker URL."""

    host: str
    port: int
    use_tls: bool


def parse_mqtt_url(url: str) -> BrokerAddress:
    """Parse MQTT URL to extract host, port, and TLS settings.

    Args:
        url: Broker URL (e.g., mqtt://localhost:1883, mqtts://broker:8883)

    Returns:
        BrokerAddress for the URL

    Raises:
        ValueError: If URL format is invalid
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(
            f"Invalid MQTT URL scheme. Expected mqtt://, mqtts://, ws:// or wss://, got: {url}"
        )
    if not parts.hostname:
        raise ValueError(f"MQTT URL has no host: {url}")

    port = parts.port or _DEFAULT_PORTS[scheme]
    return BrokerAddress(parts.hostname, port, scheme in _TLS_SCHEMES)


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Check whether a topic matches an MQTT subscription filter.

    Supports the single-level (+) and multi-level (#) wildcards.
    """
    filter_levels = topic_filter.split("/")
    topic_levels = topic.split("/")

    for index, level in enumerate(filter_levels):
        if level == "#":
            return index == len(filter_levels) - 1
        if index >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[index]:
            return False

    return len(filter_levels) == len(topic_levels)
