# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Configuration of the MOK Secure Boot setup workflow.

A single ``SetupConfig`` value is built once and handed to every component.
Defaults match a stock Arch Linux GRUB installation; any of them may be
overridden from a TOML file.
"""
import logging
import pathlib
from dataclasses import dataclass, field
from typing import List

import jsonschema
from jsonschema import validate

try:
    import tomli as tomllib
except Exception:
    import tomllib

from setup_errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = pathlib.Path("/etc/secure-boot-setup.toml")

# EFI global variable namespace, owner of the SecureBoot variable.
EFI_GLOBAL_VARIABLE_GUID = "8be4df61-93ca-11d2-aa0d-00e098032b8c"

DEFAULT_BOOTLOADER_CANDIDATES = [
    "/boot/EFI/BOOT/BOOTX64.efi",
    "/boot/EFI/GRUB/grubx64.efi",
    "/boot/efi/EFI/GRUB/grubx64.efi",
    "/boot/efi/EFI/grub/grubx64.efi",
    "/boot/EFI/grub/grubx64.efi",
]

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "keys_dir": {"type": "string"},
        "mok_name": {"type": "string", "minLength": 1},
        "log_file": {"type": "string"},
        "boot_dir": {"type": "string"},
        "bootloader_candidates": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "kernel_pattern": {"type": "string", "minLength": 1},
        "efivars_dir": {"type": "string"},
        "state_dir": {"type": "string"},
        "payload_path": {"type": "string"},
        "unit_dir": {"type": "string"},
        "unit_name": {"type": "string", "pattern": r"^[A-Za-z0-9_.@-]+\.service$"},
        "key_bits": {"type": "integer", "minimum": 2048},
        "validity_days": {"type": "integer", "minimum": 1},
        "countdown_seconds": {"type": "integer", "minimum": 0},
        "dependencies": {"type": "array", "items": {"type": "string"}},
        "subject": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "common_name": {"type": "string", "minLength": 1},
                "organization": {"type": "string"},
                "country": {"type": "string", "minLength": 2, "maxLength": 2},
            },
        },
    },
}

_PATH_FIELDS = ("keys_dir", "log_file", "boot_dir", "efivars_dir", "state_dir", "payload_path", "unit_dir")


@dataclass
class CertificateSubject:
    """Subject fields of the self-signed MOK certificate."""

    common_name: str = "Secure Boot MOK"
    organization: str = "Local Machine"
    country: str = "ES"


@dataclass
class SetupConfig:
    """All paths and fixed parameters used by the workflow.

    Attributes:
        keys_dir (pathlib.Path): Owner-only directory holding the key material.
        mok_name (str): Base file name of the key material files.
        log_file (pathlib.Path): Persistent, append-only status log.
        boot_dir (pathlib.Path): Directory scanned for kernel images.
        bootloader_candidates (List[pathlib.Path]): Bootloader locations, most common layout first.
        kernel_pattern (str): Glob matching kernel image file names.
        efivars_dir (pathlib.Path): Mount point of efivarfs.
        state_dir (pathlib.Path): Directory holding the post-reboot task record.
        payload_path (pathlib.Path): Executable run once at next boot.
        unit_dir (pathlib.Path): Directory of the systemd unit files.
        unit_name (str): Name of the one-shot systemd unit.
        key_bits (int): RSA key size.
        validity_days (int): Certificate validity period.
        subject (CertificateSubject): Certificate subject fields.
        countdown_seconds (int): Delay before the reboot is requested.
        dependencies (List[str]): External tools required by the workflow.
    """

    keys_dir: pathlib.Path = pathlib.Path("/etc/secure-boot-keys")
    mok_name: str = "MOK"
    log_file: pathlib.Path = pathlib.Path("/var/log/secure-boot-setup.log")
    boot_dir: pathlib.Path = pathlib.Path("/boot")
    bootloader_candidates: List[pathlib.Path] = field(
        default_factory=lambda: [pathlib.Path(p) for p in DEFAULT_BOOTLOADER_CANDIDATES]
    )
    kernel_pattern: str = "vmlinuz-*"
    efivars_dir: pathlib.Path = pathlib.Path("/sys/firmware/efi/efivars")
    state_dir: pathlib.Path = pathlib.Path("/var/lib/secure-boot-setup")
    payload_path: pathlib.Path = pathlib.Path("/usr/local/bin/secure-boot-post-reboot")
    unit_dir: pathlib.Path = pathlib.Path("/etc/systemd/system")
    unit_name: str = "secure-boot-check.service"
    key_bits: int = 2048
    validity_days: int = 3650
    subject: CertificateSubject = field(default_factory=CertificateSubject)
    countdown_seconds: int = 10
    dependencies: List[str] = field(default_factory=lambda: ["sbsign", "mokutil"])

    @property
    def unit_path(self) -> pathlib.Path:
        """Full path of the systemd unit file."""
        return self.unit_dir / self.unit_name

    @property
    def task_record_path(self) -> pathlib.Path:
        """Path of the persisted post-reboot task record."""
        return self.state_dir / "post-reboot-task.json"

    @classmethod
    def from_dict(cls, data: dict) -> "SetupConfig":
        """Build a configuration from a dictionary of overrides.

        Args:
            data (dict): Overrides, validated against ``CONFIG_SCHEMA``.

        Returns:
            SetupConfig: Defaults updated with the overrides.

        Raises:
            jsonschema.exceptions.ValidationError: If the overrides are malformed.
        """
        validate(instance=data, schema=CONFIG_SCHEMA)

        overrides = dict(data)
        for name in _PATH_FIELDS:
            if name in overrides:
                overrides[name] = pathlib.Path(overrides[name])
        if "bootloader_candidates" in overrides:
            overrides["bootloader_candidates"] = [pathlib.Path(p) for p in overrides["bootloader_candidates"]]
        if "subject" in overrides:
            overrides["subject"] = CertificateSubject(**overrides["subject"])
        return cls(**overrides)

    @classmethod
    def load(cls, path: pathlib.Path = DEFAULT_CONFIG_FILE) -> "SetupConfig":
        """Load the configuration file if it exists, otherwise return the defaults.

        Args:
            path (pathlib.Path): TOML file with overrides.

        Returns:
            SetupConfig: The effective configuration.

        Raises:
            StorageError: If the file exists but cannot be read, parsed or validated.
        """
        path = pathlib.Path(path)
        if not path.exists():
            logger.debug(f"No configuration file at {path}, using defaults")
            return cls()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
            config = cls.from_dict(data)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise StorageError(f"Cannot read configuration file {path}: {e}") from e
        except jsonschema.exceptions.ValidationError as e:
            raise StorageError(f"Invalid configuration file {path}: {e.message}") from e

        logger.debug(f"Loaded configuration from {path}")
        return config
