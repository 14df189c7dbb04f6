"""Tests for MQTT utility functions."""

import pytest

from fleetctl.utils.mqtt import parse_mqtt_url, topic_matches


class TestParseMqttUrl:
    """Tests for parse_mqtt_url function."""

    def test_basic_mqtt_url(self):
        """Test parsing basic mqtt:// URL with explicit port."""
        host, port, use_tls = parse_mqtt_url("mqtt://broker.local:1883")
        assert host == "broker.local"
        assert port == 1883
        assert use_tls is False

    def test_mqtts_default_port(self):
        """Test mqtts:// URL uses default port 8883."""
        host, port, use_tls = parse_mqtt_url("mqtts://broker.secure")
        assert host == "broker.secure"
        assert port == 8883
        assert use_tls is True

    def test_wss_url_is_tls(self):
        address = parse_mqtt_url("wss://broker.example.com/mqtt")
        assert address.port == 443
        assert address.use_tls is True

    def test_url_with_path(self):
        """Test URL parsing strips trailing path components."""
        host, port, _ = parse_mqtt_url("mqtt://broker.local:1884/some/path")
        assert host == "broker.local"
        assert port == 1884

    def test_invalid_scheme_raises(self):
        with pytest.raises(ValueError, match="scheme"):
            parse_mqtt_url("http://broker.local:1883")

    def test_missing_host_raises(self):
        with pytest.raises(ValueError, match="no host"):
            parse_mqtt_url("mqtt://:1883")


class TestTopicMatches:
    """Tests for MQTT wildcard matching."""

    def test_exact_match(self):
        assert topic_matches("iot/t/type/d/cmd", "iot/t/type/d/cmd")

    def test_exact_mismatch(self):
        assert not topic_matches("iot/t/type/d/cmd", "iot/t/type/d/cfg")

    def test_single_level_wildcard(self):
        assert topic_matches("iot/+/type/+/cmd", "iot/t/type/d/cmd")
        assert not topic_matches("iot/+/cmd", "iot/t/type/cmd")

    def test_multi_level_wildcard(self):
        assert topic_matches("iot/t/#", "iot/t/type/d/shadow/desired")
        assert topic_matches("iot/t/#", "iot/t")

    def test_multi_level_wildcard_must_be_last(self):
        assert not topic_matches("iot/#/cmd", "iot/t/cmd")

    def test_shorter_topic_does_not_match(self):
        assert not topic_matches("iot/t/type/d/cmd", "iot/t/type/d")
