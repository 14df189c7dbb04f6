"""Tests for ShadowService."""

import pytest
from flask import Flask

from fleetctl.exceptions import RecordNotFoundException, ValidationException
from fleetctl.services.container import ServiceContainer
from fleetctl.services.device_profile_service import DeviceProfile
from fleetctl.services.notification_service import ShadowDesiredChanged
from fleetctl.services.shadow_service import compute_delta, shadow_cache_key


class TestComputeDelta:
    """Tests for the derived delta."""

    def test_differing_and_missing_keys(self) -> None:
        delta = compute_delta({"a": 1, "b": 2, "c": 3}, {"a": 1, "b": 5})
        assert delta == {"b": 2, "c": 3}

    def test_reported_only_keys_ignored(self) -> None:
        assert compute_delta({"a": 1}, {"a": 1, "extra": True}) == {}

    def test_nested_key_order_does_not_matter(self) -> None:
        desired = {"thresholds": {"min": 1, "max": 2}}
        reported = {"thresholds": {"max": 2, "min": 1}}

        assert compute_delta(desired, reported) == {}


class TestShadowWrites:
    """Tests for desired and reported merges."""

    def test_desired_write_creates_shadow_and_bumps_version(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()

            state = service.update_desired("default", "meter-0001", {"a": 1}, client_token="t1")

            assert state.version == 1
            assert state.desired == {"a": 1}
            assert state.delta == {"a": 1}

    def test_desired_merge_is_shallow(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()

            service.update_desired("default", "meter-0001", {"a": {"x": 1, "y": 2}, "b": 1})
            state = service.update_desired("default", "meter-0001", {"a": {"x": 3}})

            assert state.desired == {"a": {"x": 3}, "b": 1}
            assert state.version == 2

    def test_reported_write_keeps_version(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()

            first = service.update_reported("default", "meter-0001", {"a": 1})
            assert first.version == 0

            service.update_desired("default", "meter-0001", {"a": 1, "b": 2})
            state = service.update_reported("default", "meter-0001", {"b": 2})

            assert state.version == 1
            assert state.delta == {}

    def test_desired_write_validated_against_profile(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("thermo-1", device_type="thermostat")
            container.device_profile_service().register(
                DeviceProfile(
                    key="thermostat",
                    desired_schema={
                        "type": "object",
                        "properties": {"setpoint": {"type": "number", "maximum": 30}},
                    },
                )
            )

            with pytest.raises(ValidationException):
                container.shadow_service().update_desired(
                    "default", "thermo-1", {"setpoint": 40}
                )

    def test_desired_write_publishes_notification(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            received = []
            container.notification_service().subscribe(ShadowDesiredChanged, received.append)

            container.shadow_service().update_desired(
                "default", "meter-0001", {"a": 1}, client_token="t1"
            )

            assert len(received) == 1
            assert received[0].version == 1
            assert received[0].client_token == "t1"

    def test_unknown_device_raises(self, app: Flask, container: ServiceContainer, make_tenant) -> None:
        with app.app_context():
            make_tenant("default")

            with pytest.raises(RecordNotFoundException):
                container.shadow_service().update_desired("default", "ghost", {"a": 1})


class TestShadowReads:
    """Tests for reads, caching and history."""

    def test_get_shadow_without_shadow_raises(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()

            assert service.find_shadow_state("default", "meter-0001") is None
            with pytest.raises(RecordNotFoundException):
                service.get_shadow("default", "meter-0001")

    def test_reads_are_cached_and_writes_invalidate(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()
            cache = container.cache_service()
            key = shadow_cache_key("default", "meter-0001")

            service.update_desired("default", "meter-0001", {"a": 1})
            service.get_shadow("default", "meter-0001")
            assert cache.get_json(key)["version"] == 1

            service.update_desired("default", "meter-0001", {"a": 2})
            assert cache.get_json(key) is None
            assert service.get_shadow("default", "meter-0001").desired == {"a": 2}

    def test_commit_drops_entry_repopulated_before_commit(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()
            cache = container.cache_service()
            key = shadow_cache_key("default", "meter-0001")

            service.update_desired("default", "meter-0001", {"a": 1})
            container.db_session().commit()
            service.get_shadow("default", "meter-0001")
            stale = cache.get_json(key)

            service.update_desired("default", "meter-0001", {"a": 2})
            # A reader on another connection still sees version 1 and caches it
            cache.set_json(key, stale, 60)

            container.db_session().commit()

            assert cache.get_json(key) is None
            state = service.get_shadow("default", "meter-0001")
            assert state.version == 2
            assert state.desired == {"a": 2}

    def test_malformed_cache_entry_falls_back_to_database(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()
            service.update_desired("default", "meter-0001", {"a": 1})
            container.cache_service().set_json(
                shadow_cache_key("default", "meter-0001"), {"unexpected": True}, 60
            )

            assert service.get_shadow("default", "meter-0001").desired == {"a": 1}

    def test_history_newest_first_and_capped(
        self, app: Flask, container: ServiceContainer, make_device
    ) -> None:
        with app.app_context():
            make_device("meter-0001")
            service = container.shadow_service()
            service.update_desired("default", "meter-0001", {"a": 1}, client_token="t1")
            service.update_reported("default", "meter-0001", {"a": 1})
            service.update_desired("default", "meter-0001", {"a": 2})

            history = service.get_history("default", "meter-0001")
            assert [h.source for h in history] == ["desired", "reported", "desired"]
            assert history[-1].client_token == "t1"

            assert len(service.get_history("default", "meter-0001", limit=2)) == 2
            assert len(service.get_history("default", "meter-0001", limit=0)) == 1
