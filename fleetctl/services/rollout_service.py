"""OTA rollout manager.

A rollout distributes one published firmware to a selected part of a
tenant's fleet. Its state machine is:

    DRAFT --start--> ACTIVE <--pause/resume--> PAUSED
    DRAFT/ACTIVE/PAUSED --rollback--> ROLLBACK (terminal)
    ACTIVE --all tasks terminal--> COMPLETED (terminal)

Every targeted device gets one FirmwareUpdateStatus task. Tasks are the
source of truth: notifications to devices are best-effort and the rollout
stats are always recomputed from the tasks.

Auto-rollback is evaluated only when a progress update arrives. A rollout
that stops receiving updates after its timeout has passed stays ACTIVE
until the next update.
"""

import logging
import math
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetctl.exceptions import (
    InvalidOperationException,
    RecordNotFoundException,
    StateConflictException,
    ValidationException,
)
from fleetctl.models.device import Device
from fleetctl.models.rollout import (
    CANCELLABLE_UPDATE_STATUSES,
    TERMINAL_ROLLOUT_STATUSES,
    UPDATE_STATUS_ORDER,
    FirmwareRollout,
    FirmwareUpdateStatus,
    RolloutStatus,
    UpdateStatus,
)
from fleetctl.services.notification_service import (
    OtaProgressChanged,
    OtaUpdateAvailable,
    RolloutStateChanged,
)
from fleetctl.utils import utcnow

if TYPE_CHECKING:
    from fleetctl.services.device_service import DeviceService
    from fleetctl.services.firmware_service import FirmwareService
    from fleetctl.services.metrics_service import MetricsService
    from fleetctl.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# Terminal tasks required before the failure threshold is trusted
AUTO_ROLLBACK_MIN_SAMPLE = 10

STATS_BUCKETS: dict[str, str] = {
    UpdateStatus.PENDING.value: "pending",
    UpdateStatus.SCHEDULED.value: "pending",
    UpdateStatus.DOWNLOADING.value: "downloading",
    UpdateStatus.DOWNLOADED.value: "downloading",
    UpdateStatus.INSTALLING.value: "installing",
    UpdateStatus.SUCCESS.value: "success",
    UpdateStatus.FAILED.value: "failed",
    UpdateStatus.CANCELLED.value: "cancelled",
}


def empty_stats() -> dict[str, Any]:
    return {
        "total": 0,
        "pending": 0,
        "downloading": 0,
        "installing": 0,
        "success": 0,
        "failed": 0,
        "cancelled": 0,
        "successRate": 0.0,
    }


def compute_stats(statuses: Iterable[str]) -> dict[str, Any]:
    """Partition task statuses into the rollout stats buckets.

    successRate is success / (success + failed), and 0 while no task has
    succeeded or failed.
    """
    stats = empty_stats()
    for status in statuses:
        stats["total"] += 1
        stats[STATS_BUCKETS[status]] += 1

    finished = stats["success"] + stats["failed"]
    stats["successRate"] = stats["success"] / finished if finished else 0.0
    return stats


def _target_count(candidates: int, percentage: int) -> int:
    return min(candidates, math.ceil(candidates * percentage / 100))


class RolloutService:
    """Service driving firmware rollouts and their update tasks."""

    def __init__(
        self,
        db: Session,
        metrics_service: "MetricsService",
        notification_service: "NotificationService",
        device_service: "DeviceService",
        firmware_service: "FirmwareService",
    ) -> None:
        """Initialize service with dependencies.

        Args:
            db: SQLAlchemy database session
            metrics_service: Transition and auto-rollback metrics
            notification_service: Event bus for device and rollout events
            device_service: Candidate device selection
            firmware_service: Firmware lookup
        """
        self.db = db
        self.metrics_service = metrics_service
        self.notification_service = notification_service
        self.device_service = device_service
        self.firmware_service = firmware_service

    # Queries

    def get_rollout(self, tenant_id: str, rollout_id: int) -> FirmwareRollout:
        """Get a rollout owned by the tenant.

        Raises:
            RecordNotFoundException: If it doesn't exist or belongs to another tenant
        """
        rollout = self.db.get(FirmwareRollout, rollout_id)
        if rollout is None or rollout.tenant_id != tenant_id:
            raise RecordNotFoundException("Rollout", rollout_id)
        return rollout

    def list_rollouts(self, tenant_id: str, status: str | None = None) -> list[FirmwareRollout]:
        stmt = select(FirmwareRollout).where(FirmwareRollout.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(FirmwareRollout.status == status)
        stmt = stmt.order_by(FirmwareRollout.id.desc())
        return list(self.db.scalars(stmt).all())

    def list_tasks(
        self, tenant_id: str, rollout_id: int, status: str | None = None
    ) -> list[FirmwareUpdateStatus]:
        rollout = self.get_rollout(tenant_id, rollout_id)
        stmt = select(FirmwareUpdateStatus).where(FirmwareUpdateStatus.rollout_id == rollout.id)
        if status is not None:
            stmt = stmt.where(FirmwareUpdateStatus.status == status)
        stmt = stmt.order_by(FirmwareUpdateStatus.device_id)
        return list(self.db.scalars(stmt).all())

    def get_stats(self, tenant_id: str, rollout_id: int) -> dict[str, Any]:
        """Stats recomputed from the rollout's tasks."""
        rollout = self.get_rollout(tenant_id, rollout_id)
        return self._refresh_stats(rollout)

    # Lifecycle

    def create_rollout(
        self,
        tenant_id: str,
        firmware_id: int,
        name: str,
        strategy: dict[str, Any],
        description: str | None = None,
    ) -> FirmwareRollout:
        """Create a DRAFT rollout for a published firmware.

        Raises:
            RecordNotFoundException: If the firmware doesn't exist for the tenant
            InvalidOperationException: If the firmware is not published
        """
        firmware = self.firmware_service.get_firmware(tenant_id, firmware_id)
        if not firmware.is_published:
            raise InvalidOperationException(
                "create rollout", f"firmware {firmware.version} is not published"
            )

        rollout = FirmwareRollout(
            tenant_id=tenant_id,
            firmware_id=firmware.id,
            name=name,
            description=description,
            strategy=dict(strategy),
            status=RolloutStatus.DRAFT.value,
            stats=empty_stats(),
            current_percentage=0,
        )
        self.db.add(rollout)
        self.db.flush()

        logger.info("Created rollout %d '%s' for firmware %s", rollout.id, name, firmware.version)
        return rollout

    def start_rollout(self, tenant_id: str, rollout_id: int) -> FirmwareRollout:
        """Target devices and activate the rollout.

        Raises:
            StateConflictException: If the rollout is not DRAFT or PAUSED
            InvalidOperationException: If no device matches the strategy
        """
        rollout = self.get_rollout(tenant_id, rollout_id)
        if rollout.status not in (RolloutStatus.DRAFT.value, RolloutStatus.PAUSED.value):
            raise StateConflictException("start rollout", rollout.status)

        strategy = rollout.strategy or {}
        candidates = self.device_service.select_rollout_candidates(
            tenant_id, strategy.get("filters")
        )
        if not candidates:
            raise InvalidOperationException(
                "start rollout", "no devices match the rollout criteria"
            )

        percentage = self._initial_percentage(strategy)
        targets = candidates[: _target_count(len(candidates), percentage)]
        added = self._create_tasks(rollout, targets)

        previous = rollout.status
        rollout.status = RolloutStatus.ACTIVE.value
        rollout.current_percentage = max(rollout.current_percentage, percentage)
        if rollout.started_at is None:
            rollout.started_at = utcnow()
        rollout.paused_at = None
        self.db.flush()

        self._refresh_stats(rollout)
        self._record_transition(rollout, previous)
        self._notify_devices(rollout, added)
        # Tasks may all have finished while the rollout was paused
        self._check_completion(rollout)

        logger.info(
            "Started rollout %d targeting %d of %d candidate devices",
            rollout.id,
            len(targets),
            len(candidates),
        )
        return rollout

    def pause_rollout(self, tenant_id: str, rollout_id: int) -> FirmwareRollout:
        rollout = self.get_rollout(tenant_id, rollout_id)
        if rollout.status != RolloutStatus.ACTIVE.value:
            raise StateConflictException("pause rollout", rollout.status)

        rollout.status = RolloutStatus.PAUSED.value
        rollout.paused_at = utcnow()
        self.db.flush()

        self._record_transition(rollout, RolloutStatus.ACTIVE.value)
        logger.info("Paused rollout %d", rollout.id)
        return rollout

    def resume_rollout(self, tenant_id: str, rollout_id: int) -> FirmwareRollout:
        rollout = self.get_rollout(tenant_id, rollout_id)
        if rollout.status != RolloutStatus.PAUSED.value:
            raise StateConflictException("resume rollout", rollout.status)

        rollout.status = RolloutStatus.ACTIVE.value
        rollout.paused_at = None
        self.db.flush()

        self._record_transition(rollout, RolloutStatus.PAUSED.value)
        self._refresh_stats(rollout)
        self._check_completion(rollout)
        logger.info("Resumed rollout %d", rollout.id)
        return rollout

    def rollback_rollout(
        self, tenant_id: str, rollout_id: int, reason: str | None = None
    ) -> FirmwareRollout:
        """Abort a rollout and cancel its outstanding tasks. Irreversible.

        Tasks already DOWNLOADED or INSTALLING are left to finish.

        Raises:
            StateConflictException: If the rollout is already terminal
        """
        rollout = self.get_rollout(tenant_id, rollout_id)
        return self._rollback(rollout, reason)

    def update_device_progress(
        self,
        tenant_id: str,
        rollout_id: int,
        device_key: str,
        status: str,
        progress: int,
        error: str | None = None,
    ) -> FirmwareUpdateStatus:
        """Record a device's update progress and re-evaluate the rollout.

        Raises:
            RecordNotFoundException: If the rollout, device or task doesn't exist
            ValidationException: If the status is unknown or CANCELLED
            StateConflictException: If the task is terminal or the status moves backwards
        """
        rollout = self.get_rollout(tenant_id, rollout_id)
        device = self.device_service.get_device(tenant_id, device_key)
        task = self._get_task(rollout, device)

        try:
            new_status = UpdateStatus(status)
        except ValueError as e:
            raise ValidationException(f"Unknown update status '{status}'") from e
        if new_status == UpdateStatus.CANCELLED:
            raise ValidationException("Devices cannot report CANCELLED; use rollback")
        if not 0 <= progress <= 100:
            raise ValidationException("Progress must be between 0 and 100")

        if task.is_terminal:
            raise StateConflictException("update task", task.status)
        if UPDATE_STATUS_ORDER[new_status.value] < UPDATE_STATUS_ORDER[task.status]:
            raise StateConflictException(f"move task back to {new_status.value}", task.status)

        now = utcnow()
        task.status = new_status.value
        task.progress = progress
        if error is not None:
            task.error = error
        if new_status == UpdateStatus.DOWNLOADING and task.started_at is None:
            task.started_at = now
        if new_status in (UpdateStatus.SUCCESS, UpdateStatus.FAILED):
            task.completed_at = now
        self.db.flush()

        stats = self._refresh_stats(rollout)

        self.notification_service.publish(
            OtaProgressChanged(
                tenant_id=tenant_id,
                device_key=device.key,
                device_type=device.device_type,
                rollout_id=rollout.id,
                status=task.status,
                progress=task.progress,
                stats=dict(stats),
            )
        )

        self._check_auto_rollback(rollout)
        self._check_completion(rollout)

        logger.debug(
            "Rollout %d device %s now %s (%d%%)", rollout.id, device.key, task.status, progress
        )
        return task

    def advance_to_next_increment(
        self, tenant_id: str, rollout_id: int
    ) -> tuple[FirmwareRollout, int, int]:
        """Expand a staged rollout to its next declared percentage.

        Candidates are re-selected in primary-key order and the first N are
        targeted, so earlier targets keep their positions as the set grows.

        Returns:
            Tuple of (rollout, new percentage, number of devices added)

        Raises:
            StateConflictException: If the rollout is not ACTIVE
            InvalidOperationException: If no increments are declared or the last one is reached
        """
        rollout = self.get_rollout(tenant_id, rollout_id)
        if rollout.status != RolloutStatus.ACTIVE.value:
            raise StateConflictException("advance rollout", rollout.status)

        strategy = rollout.strategy or {}
        increments = sorted(strategy.get("increments") or [])
        if not increments:
            raise InvalidOperationException(
                "advance rollout", "no increments are defined for this rollout"
            )

        next_increment = next(
            (inc for inc in increments if inc > rollout.current_percentage), None
        )
        if next_increment is None:
            raise InvalidOperationException("advance rollout", "it is already at the final increment")

        candidates = self.device_service.select_rollout_candidates(
            tenant_id, strategy.get("filters")
        )
        targets = candidates[: _target_count(len(candidates), next_increment)]
        added = self._create_tasks(rollout, targets)

        rollout.current_percentage = next_increment
        self.db.flush()

        self._refresh_stats(rollout)
        self._notify_devices(rollout, added)
        self._check_completion(rollout)

        logger.info(
            "Advanced rollout %d to %d%% (%d devices added)",
            rollout.id,
            next_increment,
            len(added),
        )
        return rollout, next_increment, len(added)

    # Internals

    @staticmethod
    def _initial_percentage(strategy: dict[str, Any]) -> int:
        if strategy.get("type") == "percentage" and strategy.get("percentage"):
            return int(strategy["percentage"])
        increments = sorted(strategy.get("increments") or [])
        if increments:
            return int(increments[0])
        return 100

    @staticmethod
    def _final_percentage(strategy: dict[str, Any]) -> int:
        increments = strategy.get("increments") or []
        return max(increments) if increments else 0

    def _get_task(self, rollout: FirmwareRollout, device: Device) -> FirmwareUpdateStatus:
        stmt = select(FirmwareUpdateStatus).where(
            FirmwareUpdateStatus.rollout_id == rollout.id,
            FirmwareUpdateStatus.device_id == device.id,
        )
        task = self.db.scalars(stmt).one_or_none()
        if task is None:
            raise RecordNotFoundException("Update task", f"{rollout.id}/{device.key}")
        return task

    def _create_tasks(
        self, rollout: FirmwareRollout, devices: list[Device]
    ) -> list[Device]:
        """Insert PENDING tasks for devices that don't have one yet."""
        existing = set(
            self.db.scalars(
                select(FirmwareUpdateStatus.device_id).where(
                    FirmwareUpdateStatus.rollout_id == rollout.id
                )
            ).all()
        )

        added = []
        for device in devices:
            if device.id in existing:
                continue
            self.db.add(
                FirmwareUpdateStatus(
                    tenant_id=rollout.tenant_id,
                    rollout_id=rollout.id,
                    device_id=device.id,
                    status=UpdateStatus.PENDING.value,
                    progress=0,
                )
            )
            existing.add(device.id)
            added.append(device)

        self.db.flush()
        return added

    def _refresh_stats(self, rollout: FirmwareRollout) -> dict[str, Any]:
        statuses = self.db.scalars(
            select(FirmwareUpdateStatus.status).where(
                FirmwareUpdateStatus.rollout_id == rollout.id
            )
        ).all()
        stats = compute_stats(statuses)
        if stats != rollout.stats:
            rollout.stats = stats
            self.db.flush()
        return stats

    def _rollback(self, rollout: FirmwareRollout, reason: str | None) -> FirmwareRollout:
        if rollout.status in TERMINAL_ROLLOUT_STATUSES:
            raise StateConflictException("roll back rollout", rollout.status)

        now = utcnow()
        tasks = self.db.scalars(
            select(FirmwareUpdateStatus).where(
                FirmwareUpdateStatus.rollout_id == rollout.id,
                FirmwareUpdateStatus.status.in_(CANCELLABLE_UPDATE_STATUSES),
            )
        ).all()
        for task in tasks:
            task.status = UpdateStatus.CANCELLED.value
            task.completed_at = now

        previous = rollout.status
        rollout.status = RolloutStatus.ROLLBACK.value
        rollout.completed_at = now
        self.db.flush()

        self._refresh_stats(rollout)
        self._record_transition(rollout, previous, reason)

        logger.warning(
            "Rolled back rollout %d (%d tasks cancelled): %s",
            rollout.id,
            len(tasks),
            reason or "operator request",
        )
        return rollout

    def _check_auto_rollback(self, rollout: FirmwareRollout) -> None:
        if rollout.status != RolloutStatus.ACTIVE.value:
            return

        policy = (rollout.strategy or {}).get("rollback") or {}
        stats = rollout.stats

        threshold = policy.get("failure_threshold")
        if policy.get("auto_rollback", False) and threshold is not None:
            finished = stats["success"] + stats["failed"]
            if finished >= AUTO_ROLLBACK_MIN_SAMPLE and stats["successRate"] < 1 - threshold:
                logger.warning(
                    "Auto-rollback of rollout %d: success rate %.2f below threshold %.2f",
                    rollout.id,
                    stats["successRate"],
                    1 - threshold,
                )
                self.metrics_service.record_auto_rollback("failure_threshold")
                self._rollback(rollout, "Auto-rollback: failure threshold exceeded")
                return

        timeout_minutes = policy.get("timeout_minutes")
        if timeout_minutes and rollout.started_at is not None:
            elapsed = (utcnow() - rollout.started_at).total_seconds()
            if elapsed > timeout_minutes * 60:
                logger.warning(
                    "Auto-rollback of rollout %d: running for %.0fs, timeout %d minutes",
                    rollout.id,
                    elapsed,
                    timeout_minutes,
                )
                self.metrics_service.record_auto_rollback("timeout")
                self._rollback(rollout, "Auto-rollback: timeout")

    def _check_completion(self, rollout: FirmwareRollout) -> None:
        """Complete an ACTIVE rollout once no task is still in flight."""
        if rollout.status != RolloutStatus.ACTIVE.value:
            return

        stats = rollout.stats
        if stats["total"] == 0 or stats["pending"] or stats["downloading"] or stats["installing"]:
            return

        # Staged rollouts finish only after their last increment
        if rollout.current_percentage < self._final_percentage(rollout.strategy or {}):
            return

        rollout.status = RolloutStatus.COMPLETED.value
        rollout.completed_at = utcnow()
        self.db.flush()

        self._record_transition(rollout, RolloutStatus.ACTIVE.value)
        logger.info("Rollout %d completed: %s", rollout.id, stats)

    def _record_transition(
        self, rollout: FirmwareRollout, from_status: str, reason: str | None = None
    ) -> None:
        self.metrics_service.record_rollout_transition(from_status, rollout.status)
        self.notification_service.publish(
            RolloutStateChanged(
                tenant_id=rollout.tenant_id,
                rollout_id=rollout.id,
                from_status=from_status,
                to_status=rollout.status,
                reason=reason,
            )
        )

    def _notify_devices(self, rollout: FirmwareRollout, devices: list[Device]) -> None:
        firmware = rollout.firmware
        offer = {
            "version": firmware.version,
            "build": firmware.build,
            "url": firmware.url,
            "checksum": firmware.checksum,
            "size": firmware.size,
            "constraints": (rollout.strategy or {}).get("constraints") or {},
        }
        for device in devices:
            self.notification_service.publish(
                OtaUpdateAvailable(
                    tenant_id=rollout.tenant_id,
                    device_key=device.key,
                    device_type=device.device_type,
                    rollout_id=rollout.id,
                    firmware=dict(offer),
                )
            )
