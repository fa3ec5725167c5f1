# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Reads the Secure Boot state exposed by the firmware through efivarfs."""
import enum
import logging
import pathlib
from typing import Optional

logger = logging.getLogger(__name__)

SECURE_BOOT_VARIABLE = "SecureBoot"
# efivarfs attribute prefix preceding the variable data
ATTRIBUTES_SIZE = 4


class SecureBootState(enum.Enum):
    """Secure Boot enablement as reported by the firmware."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    UNKNOWN = "unknown"


class StatusChecker:
    """Interprets the ``SecureBoot`` EFI variable."""

    def __init__(self, efivars_dir: pathlib.Path) -> None:
        """Initialize with the efivarfs mount point."""
        self.efivars_dir = pathlib.Path(efivars_dir)

    def read_variable(self) -> Optional[bytes]:
        """Return the raw content of the SecureBoot variable, or None when it is absent.

        efivarfs prefixes the value with its 4 byte attributes; the value
        itself is a single byte.
        """
        try:
            matches = sorted(self.efivars_dir.glob(f"{SECURE_BOOT_VARIABLE}-*"))
        except OSError:
            return None
        if not matches:
            return None
        try:
            return matches[0].read_bytes()
        except OSError as e:
            logger.debug(f"Cannot read {matches[0]}: {e}")
            return None

    def current_state(self) -> SecureBootState:
        """Return the Secure Boot state; UNKNOWN when it cannot be determined."""
        data = self.read_variable()
        if data is None or len(data) <= ATTRIBUTES_SIZE:
            return SecureBootState.UNKNOWN

        value = data[-1]
        if value == 1:
            return SecureBootState.ENABLED
        if value == 0:
            return SecureBootState.DISABLED
        logger.debug(f"Unexpected SecureBoot value {value:#x}")
        return SecureBootState.UNKNOWN
