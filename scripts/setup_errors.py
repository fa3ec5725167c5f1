# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Exceptions raised by the Secure Boot setup workflow.

Each exception carries a short ``category`` label that is used when the
failure is reported to the operator.
"""


class SecureBootSetupError(Exception):
    """Base class for all fatal errors of the setup workflow."""

    category = "Error"


class PrivilegeError(SecureBootSetupError):
    """The workflow is not running with root privileges."""

    category = "PrivilegeError"


class DependencyMissingError(SecureBootSetupError):
    """A required tool is missing and could not be installed."""

    category = "DependencyMissing"

    def __init__(self, missing: list) -> None:
        """Initialize with the list of tools that are still missing."""
        self.missing = list(missing)
        super().__init__(f"Missing dependencies: {', '.join(self.missing)}")


class StorageError(SecureBootSetupError):
    """A file or directory could not be created or written."""

    category = "IOError"


class ArtifactNotFoundError(SecureBootSetupError):
    """No boot artifact of the requested kind could be located."""

    category = "NotFound"

    def __init__(self, kind: str, searched: list) -> None:
        """Initialize with the artifact kind and the locations that were searched.

        Args:
            kind (str): Human readable artifact kind (bootloader, kernel).
            searched (list): The paths that were searched.
        """
        self.kind = kind
        self.searched = [str(path) for path in searched]
        super().__init__(f"No {kind} found (searched: {', '.join(self.searched)})")


class SigningError(SecureBootSetupError):
    """The signing primitive rejected an artifact or the replacement failed."""

    category = "SigningError"


class EnrollError(SecureBootSetupError):
    """The trust-store import call failed."""

    category = "EnrollError"


class TaskRecordError(SecureBootSetupError):
    """The persisted post-reboot task record is unreadable or invalid."""

    category = "TaskRecordError"
