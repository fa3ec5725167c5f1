# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""One-shot verification of the MOK enrollment after the reboot.

The setup run schedules the check by writing three things:

* an executable payload that calls ``main()`` of this module,
* a systemd unit that runs the payload once multi-user boot is reached,
* a JSON task record, the only state shared with the setup run.

The task record moves through ``scheduled -> ran -> removed``. When the
payload runs it reports whether the MOK is enrolled and whether Secure Boot
is enabled, then removes the payload and the unit whatever the outcome, so
the check runs at most once.

Example:
    secure-boot-post-reboot --task /var/lib/secure-boot-setup/post-reboot-task.json
"""
import argparse
import datetime
import enum
import json
import logging
import os
import pathlib
import subprocess
import sys
from dataclasses import asdict, dataclass
from typing import List, Optional, Protocol, runtime_checkable

import jsonschema
from jsonschema import validate
from mok_enroller import MokutilTrustStore, TrustStore
from secure_boot_status import SecureBootState, StatusChecker
from setup_config import SetupConfig
from setup_errors import StorageError, TaskRecordError
from setup_logging import SUCCESS, configure_logging

logger = logging.getLogger(__name__)

PAYLOAD_MODE = 0o755

PAYLOAD_TEMPLATE = """#!{python}
# Secure Boot post-reboot check. Runs once, then removes itself.
import sys

sys.path.insert(0, {module_dir!r})
from post_reboot_verifier import main

sys.exit(main(["--task", {task_path!r}]))
"""

UNIT_TEMPLATE = """[Unit]
Description=Secure Boot Post-Reboot Check
After=multi-user.target

[Service]
Type=oneshot
ExecStart={payload_path}
StandardOutput=journal+console

[Install]
WantedBy=multi-user.target
"""


class TaskState(enum.Enum):
    """Lifecycle of the deferred verification task."""

    SCHEDULED = "scheduled"
    RAN = "ran"
    REMOVED = "removed"


TASK_RECORD_SCHEMA = {
    "type": "object",
    "required": ["state", "scheduled_at", "mok_common_name", "efivars_dir",
                 "payload_path", "unit_path", "unit_name", "log_file"],
    "properties": {
        "state": {"enum": [state.value for state in TaskState]},
        "scheduled_at": {"type": "string"},
        "ran_at": {"type": ["string", "null"]},
        "removed_at": {"type": ["string", "null"]},
        "mok_common_name": {"type": "string", "minLength": 1},
        "efivars_dir": {"type": "string"},
        "payload_path": {"type": "string"},
        "unit_path": {"type": "string"},
        "unit_name": {"type": "string"},
        "log_file": {"type": "string"},
    },
}


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass
class VerificationTask:
    """The persisted record of the deferred verification task."""

    state: TaskState
    scheduled_at: str
    mok_common_name: str
    efivars_dir: str
    payload_path: str
    unit_path: str
    unit_name: str
    log_file: str
    ran_at: Optional[str] = None
    removed_at: Optional[str] = None

    def to_dict(self) -> dict:
        """Return the JSON representation of the record."""
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationTask":
        """Build a record from its JSON representation.

        Raises:
            TaskRecordError: If the data does not match ``TASK_RECORD_SCHEMA``.
        """
        try:
            validate(instance=data, schema=TASK_RECORD_SCHEMA)
        except jsonschema.exceptions.ValidationError as err:
            raise TaskRecordError(f"Invalid task record: {err.message}") from err

        fields = dict(data)
        fields["state"] = TaskState(fields["state"])
        return cls(**{k: v for k, v in fields.items() if k in cls.__dataclass_fields__})

    @classmethod
    def load(cls, path: pathlib.Path) -> "VerificationTask":
        """Read a record from disk.

        Raises:
            TaskRecordError: If the file cannot be read or is not a valid record.
        """
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TaskRecordError(f"Cannot read task record {path}: {e}") from e
        return cls.from_dict(data)

    def save(self, path: pathlib.Path) -> None:
        """Write the record to disk, replacing the previous version atomically.

        Raises:
            StorageError: If the record cannot be written.
        """
        path = pathlib.Path(path)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(temp_path, path)
        except OSError as e:
            raise StorageError(f"Cannot write task record {path}: {e}") from e


@runtime_checkable
class ServiceManager(Protocol):
    """Protocol for the init system to enable dependency injection for testing."""

    def enable(self, unit_name: str) -> None:
        """Register a unit to start at boot."""
        ...

    def disable(self, unit_name: str) -> None:
        """Unregister a unit."""
        ...

    def daemon_reload(self) -> None:
        """Make the init system re-read its unit files."""
        ...

    def reboot(self) -> None:
        """Request a reboot of the machine."""
        ...


class SystemctlServiceManager:
    """Service manager backed by ``systemctl``."""

    def _run(self, *args: str) -> None:
        command = ["systemctl", *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            subprocess.run(command, check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            raise StorageError(f"{' '.join(command)} failed: {e}") from e

    def enable(self, unit_name: str) -> None:
        """Run ``systemctl enable``."""
        self._run("enable", unit_name)

    def disable(self, unit_name: str) -> None:
        """Run ``systemctl disable``."""
        self._run("disable", unit_name)

    def daemon_reload(self) -> None:
        """Run ``systemctl daemon-reload``."""
        self._run("daemon-reload")

    def reboot(self) -> None:
        """Run ``systemctl reboot``."""
        self._run("reboot")


def _write_file(path: pathlib.Path, content: str, mode: int) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, mode)
    except OSError as e:
        raise StorageError(f"Cannot write {path}: {e}") from e


def schedule_verifier(config: SetupConfig, service_manager: ServiceManager) -> VerificationTask:
    """Install the payload, the unit and the task record, then enable the unit.

    Args:
        config (SetupConfig): Paths of the payload, unit, record and log file.
        service_manager (ServiceManager): Used to enable the unit.

    Returns:
        VerificationTask: The record, in state ``SCHEDULED``.

    Raises:
        StorageError: If a file cannot be written or the unit cannot be enabled.
    """
    logger.info("Creating the post-reboot check...")
    payload_path = pathlib.Path(config.payload_path)
    unit_path = config.unit_path
    task_path = config.task_record_path

    payload = PAYLOAD_TEMPLATE.format(
        python=sys.executable,
        module_dir=os.path.dirname(os.path.abspath(__file__)),
        task_path=str(task_path),
    )
    _write_file(payload_path, payload, PAYLOAD_MODE)
    _write_file(unit_path, UNIT_TEMPLATE.format(payload_path=payload_path), 0o644)

    task = VerificationTask(
        state=TaskState.SCHEDULED,
        scheduled_at=_now(),
        mok_common_name=config.subject.common_name,
        efivars_dir=str(config.efivars_dir),
        payload_path=str(payload_path),
        unit_path=str(unit_path),
        unit_name=config.unit_name,
        log_file=str(config.log_file),
    )
    task.save(task_path)

    service_manager.enable(config.unit_name)
    logger.log(SUCCESS, f"Post-reboot check scheduled ({config.unit_name})")
    return task


@dataclass
class VerificationReport:
    """Outcome of the post-reboot check."""

    enrolled: bool
    secure_boot: SecureBootState

    @property
    def complete(self) -> bool:
        """True when the MOK is trusted and Secure Boot is enforcing."""
        return self.enrolled and self.secure_boot == SecureBootState.ENABLED


class PostRebootVerifier:
    """Runs the scheduled check once and removes its own registration."""

    def __init__(
        self,
        task_path: pathlib.Path,
        trust_store: TrustStore,
        service_manager: ServiceManager,
        status_checker: Optional[StatusChecker] = None,
    ) -> None:
        """Initialize the verifier.

        Args:
            task_path (pathlib.Path): The persisted task record.
            trust_store (TrustStore): Lists the enrolled certificates.
            service_manager (ServiceManager): Used to unregister the unit.
            status_checker (StatusChecker): Reads Secure Boot state; built from the
                record's efivars directory when omitted.
        """
        self.task_path = pathlib.Path(task_path)
        self.trust_store = trust_store
        self.service_manager = service_manager
        self.status_checker = status_checker

    def run(self) -> Optional[VerificationReport]:
        """Verify and self-remove if the task is scheduled, finish the removal if it already ran.

        Returns:
            Optional[VerificationReport]: The outcome, or None when no task was pending.

        Raises:
            TaskRecordError: If the record exists but is invalid.
        """
        if not self.task_path.exists():
            logger.info("No post-reboot check is scheduled")
            return None

        task = VerificationTask.load(self.task_path)
        if task.state == TaskState.RAN:
            # interrupted after the check ran, only the removal is pending
            logger.warning(f"Post-reboot check {task.unit_name} ran without being removed, removing it now")
            self.remove(task)
            return None
        if task.state != TaskState.SCHEDULED:
            logger.info(f"Post-reboot check already {task.state.value}, nothing to do")
            return None

        try:
            task.state = TaskState.RAN
            task.ran_at = _now()
            task.save(self.task_path)
            report = self.verify(task)
            self.print_report(report)
        finally:
            self.remove(task)
        return report

    def verify(self, task: VerificationTask) -> VerificationReport:
        """Query the enrolled certificates and the Secure Boot state."""
        logger.info("Checking MOK enrollment...")
        enrolled = any(task.mok_common_name in line for line in self.trust_store.list_enrolled())

        logger.info("Checking Secure Boot state...")
        checker = self.status_checker or StatusChecker(pathlib.Path(task.efivars_dir))
        return VerificationReport(enrolled=enrolled, secure_boot=checker.current_state())

    def print_report(self, report: VerificationReport) -> None:
        """Log a human readable summary of the outcome."""
        logger.info("=" * 42)
        logger.info("  SECURE BOOT POST-REBOOT VERIFICATION")
        logger.info("=" * 42)

        if report.enrolled:
            logger.log(SUCCESS, "MOK certificate enrolled")
        else:
            logger.warning("MOK certificate was not enrolled or cannot be found")

        if report.secure_boot == SecureBootState.ENABLED:
            logger.log(SUCCESS, "Secure Boot is enabled")
        elif report.secure_boot == SecureBootState.DISABLED:
            logger.warning("Secure Boot is disabled")
        else:
            logger.warning("Cannot determine the Secure Boot state")

        if report.complete:
            logger.log(SUCCESS, "Secure Boot is enabled and the system boots with the MOK signed images")
        elif report.enrolled:
            logger.info("The MOK is trusted; enable Secure Boot to enforce it:")
            logger.info("1. Reboot the system")
            logger.info("2. Enter the UEFI firmware setup")
            logger.info("3. Enable Secure Boot")
            logger.info("4. Save and reboot")
        elif report.secure_boot == SecureBootState.ENABLED:
            logger.warning("Secure Boot is enforcing but the MOK is not trusted; images signed with it will not boot")
            logger.info("Import the certificate again with mokutil --import and confirm it in MokManager")
        else:
            logger.info("Import the certificate again with mokutil --import, confirm it in MokManager,")
            logger.info("then enable Secure Boot in the UEFI firmware setup")

    def remove(self, task: VerificationTask) -> None:
        """Unregister the unit, delete the payload and the unit file, and record the removal."""
        try:
            self.service_manager.disable(task.unit_name)
        except StorageError as e:
            logger.warning(str(e))

        for path in (task.payload_path, task.unit_path):
            try:
                pathlib.Path(path).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Cannot remove {path}: {e}")

        try:
            self.service_manager.daemon_reload()
        except StorageError as e:
            logger.warning(str(e))

        task.state = TaskState.REMOVED
        task.removed_at = _now()
        task.save(self.task_path)
        logger.debug(f"Post-reboot check {task.unit_name} removed")


def main(argv: List[str] = None) -> int:
    """Entry point of the payload installed by ``schedule_verifier``."""
    defaults = SetupConfig()
    parser = argparse.ArgumentParser(description="Secure Boot post-reboot verification (runs once)")
    parser.add_argument("--task", type=pathlib.Path, default=defaults.task_record_path,
                        help="Path of the task record written by the setup run")
    parser.add_argument("--debug", action="store_true", default=False, help="Enable debug logging")
    args = parser.parse_args(argv)

    log_file = defaults.log_file
    if args.task.exists():
        try:
            log_file = pathlib.Path(VerificationTask.load(args.task).log_file)
        except TaskRecordError:
            # reported by verifier.run() below
            pass
    configure_logging(log_file, args.debug)

    verifier = PostRebootVerifier(args.task, MokutilTrustStore(), SystemctlServiceManager())
    try:
        verifier.run()
    except (TaskRecordError, StorageError) as e:
        logger.error(f"{e.category}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
