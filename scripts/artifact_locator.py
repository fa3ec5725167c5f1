# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Discovery of the boot artifacts (bootloader and kernel images) to be signed."""
import enum
import logging
import pathlib
from dataclasses import dataclass
from typing import List

from setup_config import SetupConfig
from setup_errors import ArtifactNotFoundError

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"
SIGNED_SUFFIX = ".signed"


class ArtifactKind(enum.Enum):
    """The kinds of boot artifacts handled by the workflow."""

    BOOTLOADER = "bootloader"
    KERNEL = "kernel"


class SignedState(enum.Enum):
    """Signing state of a boot artifact."""

    UNSIGNED = "unsigned"
    SIGNED = "signed"
    SIGNED_WITH_BACKUP = "signed-with-backup"


def _with_suffix(path: pathlib.Path, suffix: str) -> pathlib.Path:
    return path.with_name(path.name + suffix)


@dataclass
class BootArtifact:
    """A bootloader or kernel image found on disk.

    Attributes:
        kind (ArtifactKind): Bootloader or kernel.
        path (pathlib.Path): Current location of the image.
        discovered_from (pathlib.Path): The candidate path or scanned directory that matched.
        signed_state (SignedState): Signing state as far as this run knows.
    """

    kind: ArtifactKind
    path: pathlib.Path
    discovered_from: pathlib.Path
    signed_state: SignedState = SignedState.UNSIGNED

    @property
    def backup_path(self) -> pathlib.Path:
        """Where the pre-signing original is preserved."""
        return _with_suffix(self.path, BACKUP_SUFFIX)

    @property
    def signed_path(self) -> pathlib.Path:
        """Where the signing primitive writes its output."""
        return _with_suffix(self.path, SIGNED_SUFFIX)


def _initial_state(path: pathlib.Path) -> SignedState:
    if _with_suffix(path, BACKUP_SUFFIX).exists():
        return SignedState.SIGNED_WITH_BACKUP
    return SignedState.UNSIGNED


class ArtifactLocator:
    """Finds the bootloader and kernel images described by the configuration."""

    def __init__(self, config: SetupConfig) -> None:
        """Initialize the locator from the bootloader candidates and the boot directory."""
        self.bootloader_candidates = [pathlib.Path(p) for p in config.bootloader_candidates]
        self.boot_dir = pathlib.Path(config.boot_dir)
        self.kernel_pattern = config.kernel_pattern

    def locate_bootloader(self) -> BootArtifact:
        """Return the first candidate bootloader path that is a regular file.

        Candidates are tried in configuration order: the canonical removable
        media path first, then the alternate install layouts.

        Raises:
            ArtifactNotFoundError: If no candidate exists.
        """
        for candidate in self.bootloader_candidates:
            if candidate.is_file():
                logger.info(f"Bootloader found at: {candidate}")
                return BootArtifact(
                    kind=ArtifactKind.BOOTLOADER,
                    path=candidate,
                    discovered_from=candidate,
                    signed_state=_initial_state(candidate),
                )
            logger.debug(f"No bootloader at {candidate}")

        raise ArtifactNotFoundError(ArtifactKind.BOOTLOADER.value, self.bootloader_candidates)

    def locate_kernels(self) -> List[BootArtifact]:
        """Return every kernel image below the boot directory, sorted by path.

        Backups and signing leftovers produced by this tool are not kernels.

        Raises:
            ArtifactNotFoundError: If no kernel image is found.
        """
        kernels = []
        if self.boot_dir.is_dir():
            for path in sorted(self.boot_dir.rglob(self.kernel_pattern)):
                if path.name.endswith((BACKUP_SUFFIX, SIGNED_SUFFIX)) or not path.is_file():
                    continue
                kernels.append(
                    BootArtifact(
                        kind=ArtifactKind.KERNEL,
                        path=path,
                        discovered_from=self.boot_dir,
                        signed_state=_initial_state(path),
                    )
                )

        if not kernels:
            raise ArtifactNotFoundError(ArtifactKind.KERNEL.value, [self.boot_dir / self.kernel_pattern])

        logger.info(f"Found {len(kernels)} kernel image(s) in {self.boot_dir}")
        return kernels
