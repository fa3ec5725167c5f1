# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Signing of boot artifacts with the MOK and in-place replacement of the originals.

For an artifact at ``<path>`` the replacement protocol is:

1. the signing primitive writes ``<path>.signed``;
2. ``<path>`` is renamed to ``<path>.backup``;
3. ``<path>.signed`` is renamed to ``<path>``.

The signed image exists on disk before the original is moved aside, so at any
point the original is present at ``<path>`` or at ``<path>.backup``.
"""
import logging
import os
import pathlib
import subprocess
from dataclasses import replace
from typing import Protocol, runtime_checkable

import pefile
from artifact_locator import BootArtifact, SignedState
from key_store import KeyMaterial
from setup_errors import SigningError
from setup_logging import SUCCESS

logger = logging.getLogger(__name__)

# IMAGE_DIRECTORY_ENTRY_SECURITY, the certificate table of a PE image
SECURITY_DIRECTORY_INDEX = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_SECURITY"]


def has_authenticode_signature(image_path: pathlib.Path) -> bool:
    """Return True if the PE image already carries a certificate table.

    Args:
        image_path (pathlib.Path): The EFI application or kernel image.

    Raises:
        SigningError: If the file is not a valid PE image.
    """
    try:
        pe = pefile.PE(str(image_path), fast_load=True)
    except pefile.PEFormatError as e:
        raise SigningError(f"Invalid PE image {image_path}: {e}") from e
    except OSError as e:
        raise SigningError(f"Cannot read {image_path}: {e}") from e

    try:
        directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
        if len(directories) <= SECURITY_DIRECTORY_INDEX:
            return False
        security_dir = directories[SECURITY_DIRECTORY_INDEX]
        return security_dir.VirtualAddress != 0 and security_dir.Size != 0
    finally:
        pe.close()


@runtime_checkable
class ImageSigner(Protocol):
    """Protocol for the signing primitive to enable dependency injection for testing."""

    def is_signed(self, image_path: pathlib.Path) -> bool:
        """Validate the image and report whether it already carries a signature."""
        ...

    def sign(
        self, key: pathlib.Path, certificate: pathlib.Path, input_path: pathlib.Path, output_path: pathlib.Path
    ) -> None:
        """Write a signed copy of ``input_path`` to ``output_path``."""
        ...


class SbsignImageSigner:
    """Signs images with ``sbsign`` from sbsigntools."""

    def __init__(self, executable: str = "sbsign") -> None:
        """Initialize with the sbsign executable name or path."""
        self.executable = executable

    def is_signed(self, image_path: pathlib.Path) -> bool:
        """Validate the image with pefile and report whether it is already signed."""
        return has_authenticode_signature(image_path)

    def sign(
        self, key: pathlib.Path, certificate: pathlib.Path, input_path: pathlib.Path, output_path: pathlib.Path
    ) -> None:
        """Run sbsign.

        Raises:
            SigningError: If sbsign cannot be started or exits with a failure.
        """
        command = [
            self.executable,
            "--key", str(key),
            "--cert", str(certificate),
            "--output", str(output_path),
            str(input_path),
        ]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, check=False)
        except OSError as e:
            raise SigningError(f"Cannot run {self.executable}: {e}") from e

        if result.returncode != 0:
            raise SigningError(
                f"{self.executable} failed for {input_path} (exit code {result.returncode}): {result.stdout.strip()}"
            )


class Signer:
    """Applies the signing primitive to boot artifacts with backup-then-replace discipline."""

    def __init__(self, image_signer: ImageSigner) -> None:
        """Initialize the signer.

        Args:
            image_signer (ImageSigner): The signing primitive.
        """
        self.image_signer = image_signer

    def sign(self, artifact: BootArtifact, key_material: KeyMaterial) -> BootArtifact:
        """Sign an artifact and replace it in place, keeping the original as a backup.

        Args:
            artifact (BootArtifact): The located artifact.
            key_material (KeyMaterial): The MOK key and certificate.

        Returns:
            BootArtifact: The artifact in state ``SIGNED_WITH_BACKUP``.

        Raises:
            SigningError: If the image is rejected, a leftover ``.signed`` file
                exists, or one of the renames fails.
        """
        path = artifact.path
        signed_path = artifact.signed_path
        backup_path = artifact.backup_path

        if signed_path.exists():
            raise SigningError(
                f"Leftover {signed_path} from an interrupted run; inspect and remove it before signing {path}"
            )

        already_signed = self.image_signer.is_signed(path)
        # A signed image next to a backup was signed by an earlier run: the
        # backup holds the pre-signing original and must not be overwritten.
        keep_backup = already_signed and backup_path.exists()
        if keep_backup:
            logger.warning(f"{path} is already signed, keeping the original backup {backup_path.name}")
        elif already_signed:
            logger.warning(f"{path} already carries a signature, adding the MOK signature")
        elif backup_path.exists():
            logger.warning(f"Replacing the stale backup {backup_path}")

        try:
            self.image_signer.sign(key_material.private_key, key_material.certificate, path, signed_path)
        except SigningError:
            self._discard(signed_path)
            raise
        if not signed_path.is_file():
            raise SigningError(f"Signing {path} produced no output at {signed_path}")

        if not keep_backup:
            try:
                os.replace(path, backup_path)
            except OSError as e:
                raise SigningError(
                    f"Cannot move {path} to {backup_path}: {e}. The original is untouched, "
                    f"the signed image is left at {signed_path}"
                ) from e

        try:
            os.replace(signed_path, path)
        except OSError as e:
            raise SigningError(
                f"Cannot move {signed_path} to {path}: {e}. The original is preserved at {backup_path}; "
                "manual recovery is required before rebooting"
            ) from e

        logger.log(SUCCESS, f"{artifact.kind.value.capitalize()} {path.name} signed (original kept as {backup_path.name})")
        return replace(artifact, signed_state=SignedState.SIGNED_WITH_BACKUP)

    @staticmethod
    def _discard(signed_path: pathlib.Path) -> None:
        try:
            signed_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cannot remove partial output {signed_path}: {e}")
