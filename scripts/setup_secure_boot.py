# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Configure UEFI Secure Boot with a Machine Owner Key (MOK).

The run generates (or reuses) the MOK, signs the bootloader and every kernel
image, stages the certificate for enrollment, schedules a one-shot check for
the next boot and reboots so the operator can confirm the enrollment in
MokManager.

Steps, stopping at the first fatal error:
    privileges -> dependencies -> key material -> bootloader -> kernels ->
    enrollment -> status -> verifier -> reboot

Example:
    sudo secure-boot-setup
"""
import argparse
import logging
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, TextIO, runtime_checkable

from artifact_locator import ArtifactLocator, BootArtifact
from image_signer import ImageSigner, SbsignImageSigner, Signer
from key_store import KeyMaterial, KeyStore
from mok_enroller import Enroller, EnrollmentRequest, MokutilTrustStore, TrustStore
from post_reboot_verifier import ServiceManager, SystemctlServiceManager, VerificationTask, schedule_verifier
from secure_boot_status import SecureBootState, StatusChecker
from setup_config import SetupConfig
from setup_errors import DependencyMissingError, PrivilegeError, SecureBootSetupError, StorageError
from setup_logging import SUCCESS, configure_logging

logger = logging.getLogger(__name__)

# Arch Linux package providing each required tool
PACKAGE_FOR_TOOL = {
    "sbsign": "sbsigntools",
    "mokutil": "mokutil",
}

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@runtime_checkable
class PackageInstaller(Protocol):
    """Protocol for the OS package manager to enable dependency injection for testing."""

    def install(self, packages: List[str]) -> None:
        """Install the given packages."""
        ...


class PacmanInstaller:
    """Installs packages with pacman."""

    def install(self, packages: List[str]) -> None:
        """Run ``pacman -S --noconfirm``.

        Raises:
            DependencyMissingError: If pacman cannot be run or fails.
        """
        command = ["pacman", "-S", "--noconfirm", *packages]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            subprocess.run(command, check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            logger.debug(f"Package installation failed: {e}")
            raise DependencyMissingError(packages) from e


@dataclass
class SetupOutcome:
    """What a run achieved, and which step stopped it if it failed."""

    key_material: Optional[KeyMaterial] = None
    bootloader: Optional[BootArtifact] = None
    kernels: List[BootArtifact] = field(default_factory=list)
    enrollment: Optional[EnrollmentRequest] = None
    secure_boot: Optional[SecureBootState] = None
    task: Optional[VerificationTask] = None
    reboot_requested: bool = False
    reboot_cancelled: bool = False
    failed_step: Optional[str] = None
    error: Optional[SecureBootSetupError] = None

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        if self.reboot_requested:
            return EXIT_SUCCESS
        if self.reboot_cancelled:
            return EXIT_CANCELLED
        return EXIT_FAILURE


class SecureBootSetup:
    """Sequences the setup steps."""

    def __init__(
        self,
        config: SetupConfig,
        image_signer: Optional[ImageSigner] = None,
        trust_store: Optional[TrustStore] = None,
        service_manager: Optional[ServiceManager] = None,
        package_installer: Optional[PackageInstaller] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        geteuid: Callable[[], int] = os.geteuid,
        sleep: Callable[[float], None] = time.sleep,
        output: TextIO = sys.stdout,
    ) -> None:
        """Initialize the workflow; collaborators default to the real system tools.

        Args:
            config (SetupConfig): The configuration shared by all components.
            image_signer (ImageSigner): Signing primitive (sbsign).
            trust_store (TrustStore): Firmware trust-store interface (mokutil).
            service_manager (ServiceManager): Init system (systemctl).
            package_installer (PackageInstaller): Package manager (pacman).
            which (Callable): Looks up an executable on PATH.
            geteuid (Callable): Returns the effective user id.
            sleep (Callable): Used by the reboot countdown.
            output (TextIO): Where the countdown is drawn.
        """
        self.config = config
        self.image_signer = image_signer or SbsignImageSigner()
        self.trust_store = trust_store or MokutilTrustStore()
        self.service_manager = service_manager or SystemctlServiceManager()
        self.package_installer = package_installer or PacmanInstaller()
        self.which = which
        self.geteuid = geteuid
        self.sleep = sleep
        self.output = output

        self.key_store = KeyStore(config)
        self.locator = ArtifactLocator(config)
        self.signer = Signer(self.image_signer)
        self.enroller = Enroller(self.trust_store)
        self.status_checker = StatusChecker(config.efivars_dir)

    def check_privileges(self) -> None:
        """Raise PrivilegeError unless running as root."""
        if self.geteuid() != 0:
            raise PrivilegeError("This program must be run as root")

    def check_dependencies(self) -> None:
        """Install any missing tool.

        Raises:
            DependencyMissingError: If a tool is still missing after installation.
        """
        logger.info("Checking dependencies...")
        missing = [tool for tool in self.config.dependencies if self.which(tool) is None]
        if missing:
            logger.warning(f"Missing dependencies: {', '.join(missing)}")
            logger.info("Installing missing dependencies...")
            self.package_installer.install(sorted({PACKAGE_FOR_TOOL.get(tool, tool) for tool in missing}))

            still_missing = [tool for tool in missing if self.which(tool) is None]
            if still_missing:
                raise DependencyMissingError(still_missing)

        logger.log(SUCCESS, "All dependencies are installed")

    def sign_bootloader(self, key_material: KeyMaterial) -> BootArtifact:
        """Locate and sign the bootloader."""
        logger.info("Signing the bootloader...")
        return self.signer.sign(self.locator.locate_bootloader(), key_material)

    def sign_kernels(self, key_material: KeyMaterial) -> List[BootArtifact]:
        """Locate and sign every kernel image.

        Kernels signed before a failure are left signed.
        """
        logger.info("Signing kernels...")
        signed = []
        for kernel in self.locator.locate_kernels():
            logger.info(f"Signing kernel: {kernel.path.name}")
            signed.append(self.signer.sign(kernel, key_material))
        return signed

    def check_status(self) -> SecureBootState:
        """Report the current Secure Boot state; an unknown state is only a warning."""
        logger.info("Checking Secure Boot state...")
        state = self.status_checker.current_state()
        if state == SecureBootState.ENABLED:
            logger.log(SUCCESS, "Secure Boot is enabled")
        elif state == SecureBootState.DISABLED:
            logger.warning("Secure Boot is disabled")
        else:
            logger.warning("Cannot determine the Secure Boot state")
        return state

    def print_next_steps(self) -> None:
        """Explain what the operator has to do during the reboot."""
        logger.info("=" * 42)
        logger.info("  CONFIGURATION COMPLETE")
        logger.info("=" * 42)
        logger.log(SUCCESS, "Secure Boot configuration complete")
        logger.info("NEXT STEPS:")
        logger.info(f"1. The system reboots automatically in {self.config.countdown_seconds} seconds")
        logger.info("2. During boot the blue MokManager screen appears")
        logger.info("3. Select 'Enroll MOK' -> 'Continue' -> 'Yes'")
        logger.info("4. Enter the temporary password chosen during the import")
        logger.info("5. Select 'Reboot'")
        logger.info("6. After the reboot the verification runs automatically")
        logger.warning(f"IMPORTANT: keep this log: {self.config.log_file}")

    def countdown(self) -> None:
        """Wait before rebooting; Ctrl+C raises KeyboardInterrupt to the caller."""
        for remaining in range(self.config.countdown_seconds, 0, -1):
            self.output.write(f"\rRebooting in {remaining} seconds... (Ctrl+C to cancel)")
            self.output.flush()
            self.sleep(1)
        self.output.write("\n")

    def run(self) -> SetupOutcome:
        """Run every step in order.

        Returns:
            SetupOutcome: The outcome; ``failed_step`` and ``error`` name the fatal error, if any.
        """
        outcome = SetupOutcome()
        step = "privileges"
        try:
            self.check_privileges()

            step = "dependencies"
            self.check_dependencies()

            step = "key material"
            outcome.key_material = self.key_store.ensure_key_material()

            step = "bootloader"
            outcome.bootloader = self.sign_bootloader(outcome.key_material)

            step = "kernels"
            outcome.kernels = self.sign_kernels(outcome.key_material)

            step = "enrollment"
            outcome.enrollment = self.enroller.submit(outcome.key_material)

            step = "status"
            outcome.secure_boot = self.check_status()

            step = "verifier"
            outcome.task = schedule_verifier(self.config, self.service_manager)

            self.print_next_steps()
            step = "reboot"
            try:
                self.countdown()
            except KeyboardInterrupt:
                self.output.write("\n")
                logger.warning("Reboot cancelled; signed images and the staged enrollment are kept")
                outcome.reboot_cancelled = True
                return outcome

            logger.info("Rebooting...")
            self.service_manager.reboot()
            outcome.reboot_requested = True
        except SecureBootSetupError as e:
            outcome.failed_step = step
            outcome.error = e
            logger.error(f"{e.category} during {step}: {e}")
        return outcome


def parse_args(argv: List[str] = None) -> argparse.Namespace:
    """Parses arguments from the command line."""
    parser = argparse.ArgumentParser(
        description="Configure UEFI Secure Boot with a Machine Owner Key: generate the key, sign the "
        "bootloader and kernels, stage the enrollment and reboot."
    )
    parser.add_argument("--debug", action="store_true", default=False, help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: List[str] = None) -> int:
    """Entry point for the setup workflow."""
    args = parse_args(argv)

    try:
        config = SetupConfig.load()
    except StorageError as e:
        configure_logging(SetupConfig().log_file, args.debug)
        logger.error(f"{e.category}: {e}")
        return EXIT_FAILURE
    configure_logging(config.log_file, args.debug)

    logger.info("=" * 42)
    logger.info("  SECURE BOOT CONFIGURATION")
    logger.info("=" * 42)
    return SecureBootSetup(config).run().exit_code


if __name__ == "__main__":
    sys.exit(main())
