# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Submission of the MOK certificate to the shim trust store.

Importing only stages the certificate: shim's MokManager asks the operator to
confirm it, with the one-time password chosen during the import, at the next
boot. Until then the certificate appears in the pending list, not in the
enrolled one.
"""
import datetime
import logging
import pathlib
import subprocess
from dataclasses import dataclass
from typing import List, Protocol, runtime_checkable

from key_store import KeyMaterial
from setup_errors import EnrollError, StorageError
from setup_logging import SUCCESS

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentRequest:
    """A submitted, not yet confirmed, trust addition."""

    certificate_encoding: bytes
    submitted_at: datetime.datetime


@runtime_checkable
class TrustStore(Protocol):
    """Protocol for the firmware trust-store interface to enable dependency injection for testing."""

    def import_certificate(self, der_path: pathlib.Path, common_name: str) -> None:
        """Stage a DER certificate for enrollment."""
        ...

    def list_enrolled(self) -> List[str]:
        """Return the lines describing the confirmed (enrolled) certificates."""
        ...

    def list_pending(self) -> List[str]:
        """Return the lines describing the certificates waiting for confirmation."""
        ...


class MokutilTrustStore:
    """Trust store backed by ``mokutil``."""

    def __init__(self, executable: str = "mokutil") -> None:
        """Initialize with the mokutil executable name or path."""
        self.executable = executable

    def _list(self, option: str) -> List[str]:
        try:
            result = subprocess.run(
                [self.executable, option], stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, check=False
            )
        except OSError as e:
            logger.debug(f"Cannot run {self.executable} {option}: {e}")
            return []
        # mokutil exits non-zero when the list is empty
        if result.returncode != 0:
            return []
        return result.stdout.splitlines()

    def list_enrolled(self) -> List[str]:
        """Return ``mokutil --list-enrolled`` output lines."""
        return self._list("--list-enrolled")

    def list_pending(self) -> List[str]:
        """Return ``mokutil --list-new`` output lines."""
        return self._list("--list-new")

    def import_certificate(self, der_path: pathlib.Path, common_name: str) -> None:
        """Run ``mokutil --import``.

        The command stays attached to the terminal because it prompts for the
        one-time enrollment password. A failing import is tolerated when the
        certificate turns out to be pending or enrolled already.

        Raises:
            EnrollError: If the import fails for any other reason.
        """
        try:
            result = subprocess.run([self.executable, "--import", str(der_path)], check=False)
        except OSError as e:
            raise EnrollError(f"Cannot run {self.executable}: {e}") from e

        if result.returncode == 0:
            return

        if any(common_name in line for line in self.list_pending()):
            logger.warning("The MOK certificate is already pending enrollment")
            return
        if any(common_name in line for line in self.list_enrolled()):
            logger.warning("The MOK certificate is already enrolled")
            return

        raise EnrollError(f"{self.executable} --import {der_path} failed with exit code {result.returncode}")


class Enroller:
    """Submits the MOK certificate to the trust store once per run."""

    def __init__(self, trust_store: TrustStore) -> None:
        """Initialize the enroller with the trust-store interface."""
        self.trust_store = trust_store

    def submit(self, key_material: KeyMaterial) -> EnrollmentRequest:
        """Stage the certificate for enrollment at next boot.

        Args:
            key_material (KeyMaterial): Provides the DER certificate and its common name.

        Returns:
            EnrollmentRequest: The pending request.

        Raises:
            StorageError: If the DER certificate cannot be read.
            EnrollError: If the trust-store import fails.
        """
        logger.info("Registering the MOK certificate...")
        try:
            encoding = key_material.certificate_der()
        except OSError as e:
            raise StorageError(f"Cannot read {key_material.trust_encoding}: {e}") from e

        self.trust_store.import_certificate(key_material.trust_encoding, key_material.common_name)
        request = EnrollmentRequest(
            certificate_encoding=encoding,
            submitted_at=datetime.datetime.now(datetime.timezone.utc),
        )

        logger.log(SUCCESS, "MOK certificate staged for import")
        logger.warning("The import must be confirmed in MokManager after the reboot")
        return request
