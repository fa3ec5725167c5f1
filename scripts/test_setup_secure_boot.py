# @file test_setup_secure_boot.py
# This file contains unit tests for setup_secure_boot.py
##
# Copyright (c) Microsoft Corporation.
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""End-to-end tests of the setup workflow with fake system tools."""
import io
import logging
import pathlib
from typing import Iterator, Optional

import pytest
from post_reboot_verifier import TaskState, VerificationTask
from secure_boot_status import SecureBootState
from setup_config import DEFAULT_BOOTLOADER_CANDIDATES, EFI_GLOBAL_VARIABLE_GUID, SetupConfig
from setup_errors import (
    ArtifactNotFoundError,
    DependencyMissingError,
    PrivilegeError,
    SigningError,
)
from setup_logging import configure_logging
from setup_secure_boot import EXIT_CANCELLED, PACKAGE_FOR_TOOL, SecureBootSetup, main

SIGNED_MARKER = b"SIGNED:"


class FakeImageSigner:
    """Signs by prefixing a marker; rejects images whose name is listed."""

    def __init__(self, reject: tuple = ()) -> None:
        """Initialize the fake."""
        self.reject = reject
        self.signed = []

    def is_signed(self, image_path: pathlib.Path) -> bool:
        """Report whether the marker is present."""
        return image_path.read_bytes().startswith(SIGNED_MARKER)

    def sign(
        self, key: pathlib.Path, certificate: pathlib.Path, input_path: pathlib.Path, output_path: pathlib.Path
    ) -> None:
        """Write the marked copy."""
        assert key.is_file() and certificate.is_file()
        if input_path.name in self.reject:
            raise SigningError(f"sbsign failed for {input_path}")
        output_path.write_bytes(SIGNED_MARKER + input_path.read_bytes())
        self.signed.append(input_path)


class FakeTrustStore:
    """Records imports."""

    def __init__(self) -> None:
        """Initialize the fake."""
        self.imported = []

    def import_certificate(self, der_path: pathlib.Path, common_name: str) -> None:
        """Record the import."""
        self.imported.append(der_path)

    def list_enrolled(self) -> list:
        """Nothing is enrolled before the reboot."""
        return []

    def list_pending(self) -> list:
        """Nothing is pending before the import."""
        return []


class FakeServiceManager:
    """Records systemctl operations."""

    def __init__(self) -> None:
        """Initialize the fake."""
        self.enabled = []
        self.reboots = 0

    def enable(self, unit_name: str) -> None:
        """Record an enable."""
        self.enabled.append(unit_name)

    def disable(self, unit_name: str) -> None:
        """Not used by the setup run."""

    def daemon_reload(self) -> None:
        """Not used by the setup run."""

    def reboot(self) -> None:
        """Record the reboot request."""
        self.reboots += 1


class FakeInstaller:
    """Makes the installed tools visible to the fake ``which``."""

    def __init__(self, available: set, provides: Optional[dict] = None) -> None:
        """Initialize the fake."""
        self.available = available
        self.provides = provides or {}
        self.installed = []

    def install(self, packages: list) -> None:
        """Record the packages and mark the tools they provide as available."""
        self.installed.append(packages)
        for package in packages:
            self.available.update(self.provides.get(package, ()))


class Harness:
    """A fake machine rooted in a temporary directory."""

    def __init__(self, root: pathlib.Path) -> None:
        """Build the configuration and the fakes."""
        self.root = root
        self.config = SetupConfig(
            keys_dir=root / "etc" / "secure-boot-keys",
            log_file=root / "var" / "log" / "secure-boot-setup.log",
            boot_dir=root / "boot",
            bootloader_candidates=[root / candidate.lstrip("/") for candidate in DEFAULT_BOOTLOADER_CANDIDATES],
            efivars_dir=root / "sys" / "firmware" / "efi" / "efivars",
            state_dir=root / "var" / "lib" / "secure-boot-setup",
            payload_path=root / "usr" / "local" / "bin" / "secure-boot-post-reboot",
            unit_dir=root / "etc" / "systemd" / "system",
            countdown_seconds=3,
        )
        self.signer = FakeImageSigner()
        self.trust_store = FakeTrustStore()
        self.services = FakeServiceManager()
        self.available = {"sbsign", "mokutil"}
        self.installer = FakeInstaller(self.available)
        self.euid = 0
        self.sleeps = []
        self.output = io.StringIO()

    def add_file(self, relative: str, content: bytes) -> pathlib.Path:
        """Create a file below the fake root."""
        path = self.root / relative.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def sleep(self, seconds: float) -> None:
        """Record the countdown instead of waiting."""
        self.sleeps.append(seconds)

    def setup(self) -> SecureBootSetup:
        """Build the workflow wired to the fakes."""
        return SecureBootSetup(
            self.config,
            image_signer=self.signer,
            trust_store=self.trust_store,
            service_manager=self.services,
            package_installer=self.installer,
            which=lambda tool: f"/usr/bin/{tool}" if tool in self.available else None,
            geteuid=lambda: self.euid,
            sleep=self.sleep,
            output=self.output,
        )

    def error_lines(self) -> list:
        """Return the ERROR lines of the persistent log."""
        return [line for line in self.config.log_file.read_text().splitlines() if " - ERROR: " in line]


@pytest.fixture
def harness(tmp_path: pathlib.Path) -> Iterator[Harness]:
    """A fake machine with logging routed to its log file."""
    machine = Harness(tmp_path)
    handlers = configure_logging(machine.config.log_file)
    yield machine
    root = logging.getLogger()
    for handler in handlers:
        root.removeHandler(handler)
        handler.close()


def test_scenario_a_full_run(harness: Harness) -> None:
    """Empty key directory, canonical bootloader and two kernels: everything is signed and scheduled."""
    bootloader = harness.add_file("/boot/EFI/BOOT/BOOTX64.efi", b"grub")
    kernels = [
        harness.add_file("/boot/vmlinuz-linux", b"linux"),
        harness.add_file("/boot/vmlinuz-linux-lts", b"linux-lts"),
    ]
    harness.add_file("/boot/initramfs-linux.img", b"initramfs")
    harness.add_file(f"/sys/firmware/efi/efivars/SecureBoot-{EFI_GLOBAL_VARIABLE_GUID}", b"\x06\x00\x00\x00\x00")

    outcome = harness.setup().run()

    assert outcome.exit_code == 0
    assert outcome.failed_step is None
    keys = harness.config.keys_dir
    for name in ("MOK.key", "MOK.crt", "MOK.der", "MOK.esl"):
        assert (keys / name).is_file()

    for path, original in [(bootloader, b"grub"), (kernels[0], b"linux"), (kernels[1], b"linux-lts")]:
        assert path.read_bytes() == SIGNED_MARKER + original
        assert path.with_name(path.name + ".backup").read_bytes() == original
    assert len(outcome.kernels) == 2

    assert harness.trust_store.imported == [keys / "MOK.der"]
    assert outcome.enrollment.certificate_encoding == (keys / "MOK.der").read_bytes()
    assert outcome.secure_boot == SecureBootState.DISABLED

    assert harness.services.enabled == ["secure-boot-check.service"]
    assert VerificationTask.load(harness.config.task_record_path).state == TaskState.SCHEDULED
    assert harness.config.payload_path.is_file()
    assert harness.config.unit_path.is_file()

    assert harness.sleeps == [1, 1, 1]
    assert "Rebooting in 1 seconds" in harness.output.getvalue()
    assert harness.services.reboots == 1
    assert harness.error_lines() == []


def test_scenario_b_missing_bootloader(harness: Harness) -> None:
    """Without a bootloader the run stops before signing anything."""
    harness.add_file("/boot/vmlinuz-linux", b"linux")

    outcome = harness.setup().run()

    assert outcome.exit_code != 0
    assert outcome.failed_step == "bootloader"
    assert isinstance(outcome.error, ArtifactNotFoundError)
    assert outcome.error.kind == "bootloader"
    assert harness.signer.signed == []
    assert harness.trust_store.imported == []
    assert harness.services.reboots == 0
    assert (harness.root / "boot" / "vmlinuz-linux").read_bytes() == b"linux"

    errors = harness.error_lines()
    assert len(errors) == 1
    assert "bootloader" in errors[0]
    assert "NotFound" in errors[0]


def test_scenario_c_reuses_keys_and_signs_new_kernel(harness: Harness) -> None:
    """A second run keeps the key material and signs a newly installed kernel."""
    harness.add_file("/boot/EFI/GRUB/grubx64.efi", b"grub")
    old_kernel = harness.add_file("/boot/vmlinuz-linux", b"linux")
    assert harness.setup().run().exit_code == 0

    keys = harness.config.keys_dir
    before = {name: (keys / name).read_bytes() for name in ("MOK.key", "MOK.crt", "MOK.der", "MOK.esl")}
    new_kernel = harness.add_file("/boot/vmlinuz-linux-zen", b"linux-zen")

    outcome = harness.setup().run()

    assert outcome.exit_code == 0
    assert {name: (keys / name).read_bytes() for name in before} == before
    assert new_kernel.read_bytes() == SIGNED_MARKER + b"linux-zen"
    assert new_kernel.with_name("vmlinuz-linux-zen.backup").read_bytes() == b"linux-zen"
    assert old_kernel.with_name("vmlinuz-linux.backup").read_bytes() == b"linux"
    assert harness.trust_store.imported == [keys / "MOK.der", keys / "MOK.der"]


def test_requires_root(harness: Harness) -> None:
    """A non-root run stops immediately."""
    harness.euid = 1000

    outcome = harness.setup().run()

    assert outcome.exit_code == 1
    assert outcome.failed_step == "privileges"
    assert isinstance(outcome.error, PrivilegeError)
    assert not harness.config.keys_dir.exists()


def test_installs_missing_dependencies(harness: Harness) -> None:
    """Missing tools are installed through the package manager."""
    harness.available.discard("sbsign")
    harness.installer.provides = {"sbsigntools": {"sbsign"}}
    harness.add_file("/boot/EFI/BOOT/BOOTX64.efi", b"grub")
    harness.add_file("/boot/vmlinuz-linux", b"linux")

    outcome = harness.setup().run()

    assert harness.installer.installed == [["sbsigntools"]]
    assert outcome.exit_code == 0


def test_package_map_covers_required_tools() -> None:
    """Every required tool, and nothing else, has a package to install it from."""
    assert set(PACKAGE_FOR_TOOL) == set(SetupConfig().dependencies)


def test_dependency_installation_fails(harness: Harness) -> None:
    """A tool still missing after installation is fatal."""
    harness.available.clear()

    outcome = harness.setup().run()

    assert outcome.failed_step == "dependencies"
    assert isinstance(outcome.error, DependencyMissingError)
    assert outcome.error.missing == ["sbsign", "mokutil"]
    assert outcome.exit_code == 1


def test_signing_failure_keeps_earlier_kernels_signed(harness: Harness) -> None:
    """A rejected kernel stops the run; kernels signed before it stay signed."""
    harness.add_file("/boot/EFI/BOOT/BOOTX64.efi", b"grub")
    first = harness.add_file("/boot/vmlinuz-a", b"kernel-a")
    second = harness.add_file("/boot/vmlinuz-b", b"kernel-b")
    harness.signer.reject = ("vmlinuz-b",)

    outcome = harness.setup().run()

    assert outcome.failed_step == "kernels"
    assert isinstance(outcome.error, SigningError)
    assert first.read_bytes() == SIGNED_MARKER + b"kernel-a"
    assert second.read_bytes() == b"kernel-b"
    assert harness.trust_store.imported == []
    assert len(harness.error_lines()) == 1


def test_cancelled_countdown_keeps_side_effects(harness: Harness) -> None:
    """Ctrl+C during the countdown aborts only the reboot."""
    harness.add_file("/boot/EFI/BOOT/BOOTX64.efi", b"grub")
    kernel = harness.add_file("/boot/vmlinuz-linux", b"linux")

    def interrupt(seconds: float) -> None:
        raise KeyboardInterrupt

    harness.sleep = interrupt
    outcome = harness.setup().run()

    assert outcome.reboot_cancelled
    assert outcome.exit_code == EXIT_CANCELLED
    assert harness.services.reboots == 0
    assert kernel.read_bytes() == SIGNED_MARKER + b"linux"
    assert harness.trust_store.imported
    assert harness.config.unit_path.is_file()


def test_help_message(capsys: pytest.CaptureFixture) -> None:
    """The command line has no workflow options besides --debug."""
    with pytest.raises(SystemExit) as exit_info:
        main(["--help"])

    assert exit_info.value.code == 0
    assert "--debug" in capsys.readouterr().out
