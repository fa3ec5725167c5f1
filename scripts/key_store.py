# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Creation and reuse of the Machine Owner Key (MOK) material.

The key directory holds four files, each created only when it is missing:

1. ``<name>.key`` - RSA private key (PEM), readable by the owner only.
2. ``<name>.crt`` - self-signed X.509 certificate (PEM).
3. ``<name>.der`` - the certificate in DER form, as imported by mokutil.
4. ``<name>.esl`` - an EFI signature list holding the certificate, for
   firmware that enrolls keys directly into db.

An existing private key is never regenerated: every image signed by an
earlier run is only bootable as long as that key is the enrolled one.
"""
import datetime
import logging
import os
import pathlib
import stat
import uuid
from dataclasses import dataclass
from tempfile import TemporaryFile

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from edk2toollib.uefi.authenticated_variables_structure_support import (
    EfiSignatureDataFactory,
    EfiSignatureList,
)
from setup_config import CertificateSubject, SetupConfig
from setup_errors import StorageError
from setup_logging import SUCCESS

logger = logging.getLogger(__name__)

KEY_DIRECTORY_MODE = 0o700
PRIVATE_KEY_MODE = 0o600
PUBLIC_FILE_MODE = 0o644


@dataclass
class KeyMaterial:
    """Paths of the MOK files plus the name that identifies the MOK in trust-store listings."""

    directory: pathlib.Path
    private_key: pathlib.Path
    certificate: pathlib.Path
    trust_encoding: pathlib.Path
    signature_list: pathlib.Path
    common_name: str

    def certificate_der(self) -> bytes:
        """Return the DER encoded certificate submitted to the trust store."""
        return self.trust_encoding.read_bytes()


def generate_private_key(bits: int) -> rsa.RSAPrivateKey:
    """Generate a new RSA private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def self_sign_certificate(
    private_key: rsa.RSAPrivateKey, subject: CertificateSubject, validity_days: int
) -> x509.Certificate:
    """Create a self-signed code signing certificate for the given key.

    Args:
        private_key (rsa.RSAPrivateKey): The key that signs and is certified.
        subject (CertificateSubject): Subject (and issuer) fields.
        validity_days (int): Length of the validity window, starting now.

    Returns:
        x509.Certificate: The certificate.
    """
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, subject.common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject.organization),
        x509.NameAttribute(NameOID.COUNTRY_NAME, subject.country),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    public_key = private_key.public_key()

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False)
    )
    return builder.sign(private_key, hashes.SHA256())


def encode_for_trust_store(certificate: x509.Certificate) -> bytes:
    """Return the DER encoding of the certificate, the format mokutil imports."""
    return certificate.public_bytes(serialization.Encoding.DER)


def build_signature_list(certificate_der: bytes, signature_owner: uuid.UUID) -> bytes:
    """Wrap a DER certificate into an EFI_SIGNATURE_LIST.

    Args:
        certificate_der (bytes): The DER encoded certificate.
        signature_owner (uuid.UUID): Owner GUID recorded with the signature.

    Returns:
        bytes: The encoded signature list.
    """
    siglist = EfiSignatureList(typeguid=EfiSignatureDataFactory.EFI_CERT_X509_GUID)

    with TemporaryFile() as temp_file:
        temp_file.write(certificate_der)
        temp_file.seek(0)

        sigdata = EfiSignatureDataFactory.create(EfiSignatureDataFactory.EFI_CERT_X509_GUID, temp_file, signature_owner)

        # X.509 certificates are variable size, so they must be contained in their own signature list
        siglist.AddSignatureHeader(None, SigSize=sigdata.get_total_size())
        siglist.AddSignatureData(sigdata)

    return siglist.encode()


def _create_file(path: pathlib.Path, data: bytes, mode: int) -> None:
    """Create ``path`` with ``mode``; never replaces an existing file."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with open(fd, "wb") as f:
            f.write(data)
        os.chmod(path, mode)
    except OSError as e:
        raise StorageError(f"Cannot create {path}: {e}") from e


class KeyStore:
    """Owns the key directory and its MOK files."""

    def __init__(self, config: SetupConfig) -> None:
        """Initialize the key store.

        Args:
            config (SetupConfig): Provides the directory, file names and certificate parameters.
        """
        self.config = config
        self.directory = pathlib.Path(config.keys_dir)
        name = config.mok_name
        self.key_path = self.directory / f"{name}.key"
        self.certificate_path = self.directory / f"{name}.crt"
        self.der_path = self.directory / f"{name}.der"
        self.esl_path = self.directory / f"{name}.esl"

    def ensure_directory(self) -> None:
        """Create the key directory with owner-only access.

        Raises:
            StorageError: If the directory cannot be created or restricted.
        """
        if self.directory.is_dir():
            logger.warning(f"Key directory {self.directory} already exists")
            try:
                current = stat.S_IMODE(self.directory.stat().st_mode)
                if current & 0o077:
                    logger.warning(f"Restricting permissions of {self.directory} (was {current:o})")
                    os.chmod(self.directory, KEY_DIRECTORY_MODE)
            except OSError as e:
                raise StorageError(f"Cannot restrict permissions of {self.directory}: {e}") from e
            return

        try:
            self.directory.mkdir(parents=True, mode=KEY_DIRECTORY_MODE)
            # mkdir's mode is filtered through the umask
            os.chmod(self.directory, KEY_DIRECTORY_MODE)
        except OSError as e:
            raise StorageError(f"Cannot create key directory {self.directory}: {e}") from e
        logger.log(SUCCESS, f"Key directory {self.directory} created")

    def _ensure_private_key(self) -> rsa.RSAPrivateKey:
        if self.key_path.exists():
            logger.warning("MOK private key already exists, reusing it")
            try:
                return serialization.load_pem_private_key(self.key_path.read_bytes(), password=None)
            except (OSError, ValueError) as e:
                raise StorageError(f"Cannot load private key {self.key_path}: {e}") from e

        key = generate_private_key(self.config.key_bits)
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        _create_file(self.key_path, pem, PRIVATE_KEY_MODE)
        logger.log(SUCCESS, f"MOK private key generated ({self.config.key_bits} bits)")
        return key

    def _ensure_certificate(self, key: rsa.RSAPrivateKey) -> x509.Certificate:
        if self.certificate_path.exists():
            logger.warning("MOK certificate already exists, reusing it")
            try:
                return x509.load_pem_x509_certificate(self.certificate_path.read_bytes())
            except (OSError, ValueError) as e:
                raise StorageError(f"Cannot load certificate {self.certificate_path}: {e}") from e

        certificate = self_sign_certificate(key, self.config.subject, self.config.validity_days)
        _create_file(self.certificate_path, certificate.public_bytes(serialization.Encoding.PEM), PUBLIC_FILE_MODE)
        logger.log(SUCCESS, f"MOK certificate generated: {certificate.subject.rfc4514_string()}")
        return certificate

    def _ensure_trust_encoding(self, certificate: x509.Certificate) -> bytes:
        if self.der_path.exists():
            logger.debug(f"{self.der_path} already exists")
            try:
                return self.der_path.read_bytes()
            except OSError as e:
                raise StorageError(f"Cannot read {self.der_path}: {e}") from e

        der = encode_for_trust_store(certificate)
        _create_file(self.der_path, der, PUBLIC_FILE_MODE)
        logger.log(SUCCESS, "MOK certificate converted to DER format")
        return der

    def _ensure_signature_list(self, der: bytes) -> None:
        if self.esl_path.exists():
            logger.debug(f"{self.esl_path} already exists")
            return

        owner = uuid.uuid4()
        _create_file(self.esl_path, build_signature_list(der, owner), PUBLIC_FILE_MODE)
        logger.log(SUCCESS, f"EFI signature list written to {self.esl_path} (owner {owner})")

    def ensure_key_material(self) -> KeyMaterial:
        """Create whatever part of the key material is missing and return all of it.

        Returns:
            KeyMaterial: The key material, reused verbatim where it already existed.

        Raises:
            StorageError: If the directory or any file cannot be created or read.
        """
        logger.info("Preparing MOK (Machine Owner Key) material...")
        self.ensure_directory()

        key = self._ensure_private_key()
        certificate = self._ensure_certificate(key)
        der = self._ensure_trust_encoding(certificate)
        self._ensure_signature_list(der)

        return KeyMaterial(
            directory=self.directory,
            private_key=self.key_path,
            certificate=self.certificate_path,
            trust_encoding=self.der_path,
            signature_list=self.esl_path,
            common_name=self.config.subject.common_name,
        )
