"""Tests for RolloutService."""

from datetime import timedelta
from typing import Any

import pytest
from flask import Flask

from fleetctl.exceptions import (
    InvalidOperationException,
    RecordNotFoundException,
    StateConflictException,
    ValidationException,
)
from fleetctl.models.rollout import FirmwareRollout
from fleetctl.services.container import ServiceContainer
from fleetctl.services.notification_service import OtaUpdateAvailable, RolloutStateChanged
from fleetctl.services.rollout_service import compute_stats
from fleetctl.utils import utcnow


def _make_fleet(make_device: Any, count: int, **kwargs: Any) -> list[str]:
    keys = [f"dev-{i:03d}" for i in range(count)]
    for key in keys:
        make_device(key, **kwargs)
    return keys


def _started(
    container: ServiceContainer, make_firmware: Any, strategy: dict[str, Any]
) -> FirmwareRollout:
    firmware = make_firmware("2.0.0")
    service = container.rollout_service()
    rollout = service.create_rollout("default", firmware.id, "Spring update", strategy)
    return service.start_rollout("default", rollout.id)


def _report(container: ServiceContainer, rollout: FirmwareRollout, keys: list[str], status: str) -> None:
    service = container.rollout_service()
    for key in keys:
        service.update_device_progress("default", rollout.id, key, status, 100)


def _task_keys(container: ServiceContainer, rollout: FirmwareRollout) -> list[str]:
    return [t.device.key for t in container.rollout_service().list_tasks("default", rollout.id)]


class TestComputeStats:
    """Tests for stats bucketing."""

    def test_buckets_partition_total(self) -> None:
        stats = compute_stats(
            ["PENDING", "SCHEDULED", "DOWNLOADING", "DOWNLOADED", "INSTALLING", "SUCCESS", "FAILED", "CANCELLED"]
        )

        assert stats == {
            "total": 8,
            "pending": 2,
            "downloading": 2,
            "installing": 1,
            "success": 1,
            "failed": 1,
            "cancelled": 1,
            "successRate": 0.5,
        }

    def test_success_rate_zero_without_finished_tasks(self) -> None:
        assert compute_stats(["PENDING"])["successRate"] == 0.0


class TestRolloutCreateAndStart:
    """Tests for creating and starting rollouts."""

    def test_percentage_targets_first_devices(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 100)

            rollout = _started(container, make_firmware, {"type": "percentage", "percentage": 10})

            assert rollout.status == "ACTIVE"
            assert rollout.current_percentage == 10
            assert rollout.started_at is not None
            assert rollout.stats["total"] == 10
            assert rollout.stats["pending"] == 10
            assert _task_keys(container, rollout) == keys[:10]

    def test_percentage_rounds_up(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 15)

            rollout = _started(container, make_firmware, {"type": "percentage", "percentage": 10})

            assert rollout.stats["total"] == 2

    def test_filters_restrict_candidates(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            make_device("eu-1", region="eu")
            make_device("us-1", region="us")
            make_device("eu-2", region="eu", status="error")

            rollout = _started(
                container,
                make_firmware,
                {"type": "region", "percentage": 100, "filters": {"regions": ["eu"]}},
            )

            assert _task_keys(container, rollout) == ["eu-1"]

    def test_start_offers_update_to_targets(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 4)
            offers = []
            container.notification_service().subscribe(OtaUpdateAvailable, offers.append)

            rollout = _started(container, make_firmware, {"type": "percentage", "percentage": 50})

            assert [o.device_key for o in offers] == ["dev-000", "dev-001"]
            assert offers[0].rollout_id == rollout.id
            assert offers[0].firmware["version"] == "2.0.0"

    def test_no_candidates_keeps_draft(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            make_device("dev-000", status="maintenance")
            firmware = make_firmware("2.0.0")
            service = container.rollout_service()
            rollout = service.create_rollout("default", firmware.id, "Nothing", {"percentage": 100})

            with pytest.raises(InvalidOperationException):
                service.start_rollout("default", rollout.id)

            assert rollout.status == "DRAFT"
            assert service.list_tasks("default", rollout.id) == []

    def test_unpublished_firmware_rejected(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            firmware = make_firmware("2.0.0", publish=False)

            with pytest.raises(InvalidOperationException):
                container.rollout_service().create_rollout("default", firmware.id, "Draft fw", {})

    def test_start_active_rollout_conflicts(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})

            with pytest.raises(StateConflictException):
                container.rollout_service().start_rollout("default", rollout.id)

    def test_other_tenants_rollout_not_found(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 1)
            rollout = _started(container, make_firmware, {"percentage": 100})

            with pytest.raises(RecordNotFoundException):
                container.rollout_service().get_rollout("acme", rollout.id)


class TestPauseResume:
    """Tests for pausing and resuming."""

    def test_pause_and_resume(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()

            service.pause_rollout("default", rollout.id)
            assert rollout.status == "PAUSED"
            assert rollout.paused_at is not None

            service.resume_rollout("default", rollout.id)
            assert rollout.status == "ACTIVE"
            assert rollout.paused_at is None

    def test_resume_completes_when_tasks_finished_while_paused(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()

            service.pause_rollout("default", rollout.id)
            _report(container, rollout, keys, "SUCCESS")
            assert rollout.status == "PAUSED"

            service.resume_rollout("default", rollout.id)

            assert rollout.status == "COMPLETED"
            assert rollout.completed_at is not None
            assert service.get_stats("default", rollout.id)["success"] == 2

    def test_restart_from_paused_completes_finished_rollout(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()

            service.pause_rollout("default", rollout.id)
            _report(container, rollout, keys, "SUCCESS")

            service.start_rollout("default", rollout.id)

            assert rollout.status == "COMPLETED"

    def test_resume_active_conflicts(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 1)
            rollout = _started(container, make_firmware, {"percentage": 100})

            with pytest.raises(StateConflictException):
                container.rollout_service().resume_rollout("default", rollout.id)


class TestDeviceProgress:
    """Tests for per-device task transitions."""

    def test_forward_progress_recorded(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()

            task = service.update_device_progress("default", rollout.id, "dev-000", "DOWNLOADING", 40)

            assert task.status == "DOWNLOADING"
            assert task.progress == 40
            assert task.started_at is not None
            assert rollout.stats["downloading"] == 1

    def test_backwards_transition_rejected(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()
            service.update_device_progress("default", rollout.id, "dev-000", "INSTALLING", 90)

            with pytest.raises(StateConflictException):
                service.update_device_progress("default", rollout.id, "dev-000", "DOWNLOADING", 10)

    def test_terminal_task_is_frozen(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()
            service.update_device_progress("default", rollout.id, "dev-000", "FAILED", 0, error="crc")

            with pytest.raises(StateConflictException):
                service.update_device_progress("default", rollout.id, "dev-000", "SUCCESS", 100)

    @pytest.mark.parametrize(
        ("status", "progress"), [("CANCELLED", 0), ("EXPLODED", 0), ("DOWNLOADING", 101)]
    )
    def test_invalid_reports_rejected(
        self,
        app: Flask,
        container: ServiceContainer,
        make_device,
        make_firmware,
        status: str,
        progress: int,
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 1)
            rollout = _started(container, make_firmware, {"percentage": 100})

            with pytest.raises(ValidationException):
                container.rollout_service().update_device_progress(
                    "default", rollout.id, "dev-000", status, progress
                )

    def test_untargeted_device_has_no_task(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 10)
            rollout = _started(container, make_firmware, {"percentage": 10})

            with pytest.raises(RecordNotFoundException):
                container.rollout_service().update_device_progress(
                    "default", rollout.id, "dev-009", "DOWNLOADING", 5
                )


class TestCompletion:
    """Tests for automatic completion."""

    def test_completes_when_all_tasks_finish(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 3)
            transitions = []
            container.notification_service().subscribe(RolloutStateChanged, transitions.append)
            rollout = _started(container, make_firmware, {"percentage": 100})

            _report(container, rollout, keys[:2], "SUCCESS")
            assert rollout.status == "ACTIVE"

            _report(container, rollout, keys[2:], "FAILED")

            assert rollout.status == "COMPLETED"
            assert rollout.completed_at is not None
            assert rollout.stats["successRate"] == pytest.approx(2 / 3)

            container.rollout_service().get_stats("default", rollout.id)
            completed = [t for t in transitions if t.to_status == "COMPLETED"]
            assert len(completed) == 1

    def test_completed_rollout_cannot_be_rolled_back(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 1)
            rollout = _started(container, make_firmware, {"percentage": 100})
            _report(container, rollout, keys, "SUCCESS")

            with pytest.raises(StateConflictException):
                container.rollout_service().rollback_rollout("default", rollout.id)


class TestAutoRollback:
    """Tests for threshold and timeout driven rollback."""

    STRATEGY = {"percentage": 100, "rollback": {"auto_rollback": True, "failure_threshold": 0.2}}

    def test_rolls_back_after_enough_failures(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 12)
            rollout = _started(container, make_firmware, self.STRATEGY)

            _report(container, rollout, keys[:9], "FAILED")
            assert rollout.status == "ACTIVE"

            _report(container, rollout, keys[9:10], "FAILED")

            assert rollout.status == "ROLLBACK"
            assert rollout.stats["cancelled"] == 2

    def test_small_sample_does_not_roll_back(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 20)
            rollout = _started(container, make_firmware, self.STRATEGY)

            _report(container, rollout, keys[:5], "FAILED")

            assert rollout.status == "ACTIVE"
            assert rollout.stats["failed"] == 5

    def test_success_rate_above_threshold_keeps_going(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 20)
            rollout = _started(container, make_firmware, self.STRATEGY)

            _report(container, rollout, keys[:9], "SUCCESS")
            _report(container, rollout, keys[9:11], "FAILED")

            assert rollout.status == "ACTIVE"

    def test_disabled_auto_rollback_ignores_failures(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 10)
            rollout = _started(
                container,
                make_firmware,
                {"percentage": 100, "rollback": {"auto_rollback": False, "failure_threshold": 0.2}},
            )

            _report(container, rollout, keys, "FAILED")

            assert rollout.status == "COMPLETED"

    def test_threshold_without_flag_is_ignored(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 10)
            rollout = _started(
                container,
                make_firmware,
                {"percentage": 100, "rollback": {"failure_threshold": 0.2}},
            )

            _report(container, rollout, keys, "FAILED")

            assert rollout.status == "COMPLETED"

    def test_timeout_rolls_back_on_next_update(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 3)
            rollout = _started(
                container, make_firmware, {"percentage": 100, "rollback": {"timeout_minutes": 60}}
            )
            rollout.started_at = utcnow() - timedelta(hours=2)

            container.rollout_service().update_device_progress(
                "default", rollout.id, "dev-000", "DOWNLOADING", 10
            )

            assert rollout.status == "ROLLBACK"


class TestRollback:
    """Tests for operator rollback."""

    def test_rollback_cancels_only_unstarted_work(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 6)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()
            service.update_device_progress("default", rollout.id, "dev-001", "SCHEDULED", 0)
            service.update_device_progress("default", rollout.id, "dev-002", "DOWNLOADING", 20)
            service.update_device_progress("default", rollout.id, "dev-003", "DOWNLOADED", 100)
            service.update_device_progress("default", rollout.id, "dev-004", "INSTALLING", 50)
            service.update_device_progress("default", rollout.id, "dev-005", "SUCCESS", 100)

            service.rollback_rollout("default", rollout.id, reason="bad build")

            statuses = {t.device.key: t.status for t in service.list_tasks("default", rollout.id)}
            assert statuses == {
                "dev-000": "CANCELLED",
                "dev-001": "CANCELLED",
                "dev-002": "CANCELLED",
                "dev-003": "DOWNLOADED",
                "dev-004": "INSTALLING",
                "dev-005": "SUCCESS",
            }
            assert rollout.status == "ROLLBACK"
            assert rollout.stats["cancelled"] == 3

    def test_rollback_from_draft(
        self, app: Flask, container: ServiceContainer, make_firmware
    ) -> None:
        with app.app_context():
            firmware = make_firmware("2.0.0")
            service = container.rollout_service()
            rollout = service.create_rollout("default", firmware.id, "Never started", {})

            service.rollback_rollout("default", rollout.id)

            assert rollout.status == "ROLLBACK"

    def test_rollback_twice_conflicts(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 1)
            rollout = _started(container, make_firmware, {"percentage": 100})
            service = container.rollout_service()
            service.rollback_rollout("default", rollout.id)

            with pytest.raises(StateConflictException):
                service.rollback_rollout("default", rollout.id)


class TestStagedRollout:
    """Tests for increment-based expansion."""

    STRATEGY = {"type": "percentage", "increments": [10, 50, 100]}

    def test_advance_through_increments(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            keys = _make_fleet(make_device, 20)
            rollout = _started(container, make_firmware, self.STRATEGY)
            service = container.rollout_service()
            assert rollout.stats["total"] == 2

            _, percentage, added = service.advance_to_next_increment("default", rollout.id)
            assert (percentage, added) == (50, 8)
            assert _task_keys(container, rollout) == keys[:10]

            _report(container, rollout, keys[:10], "SUCCESS")
            assert rollout.status == "ACTIVE"

            _, percentage, added = service.advance_to_next_increment("default", rollout.id)
            assert (percentage, added) == (100, 10)

            with pytest.raises(InvalidOperationException):
                service.advance_to_next_increment("default", rollout.id)

            _report(container, rollout, keys[10:], "SUCCESS")
            assert rollout.status == "COMPLETED"

    def test_advance_requires_active(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 10)
            rollout = _started(container, make_firmware, self.STRATEGY)
            service = container.rollout_service()
            service.pause_rollout("default", rollout.id)

            with pytest.raises(StateConflictException):
                service.advance_to_next_increment("default", rollout.id)

    def test_advance_without_increments_rejected(
        self, app: Flask, container: ServiceContainer, make_device, make_firmware
    ) -> None:
        with app.app_context():
            _make_fleet(make_device, 2)
            rollout = _started(container, make_firmware, {"percentage": 50})

            with pytest.raises(InvalidOperationException):
                container.rollout_service().advance_to_next_increment("default", rollout.id)
