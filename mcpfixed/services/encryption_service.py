# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/encryption_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Credential encryption service.

Credentials (OAuth tokens, client secrets, static tool credentials) are
encrypted with AES-256-GCM. Every call draws a fresh random salt and nonce which
are prefixed to the ciphertext, so encrypting the same plaintext twice never
yields the same output. The cipher key is derived from the master key with
PBKDF2-HMAC-SHA256.

The master key is generated once and stored wrapped with a machine-local secret
derived from host, user and platform, in a file readable only by its owner.

Examples:
    >>> token = encrypt("s3cret", "master-key", iterations=1000)
    >>> token != encrypt("s3cret", "master-key", iterations=1000)
    True
    >>> decrypt(token, "master-key", iterations=1000)
    's3cret'
"""

# Standard
import asyncio
import base64
from functools import lru_cache
import getpass
import hashlib
import logging
import os
from pathlib import Path
import platform
import secrets
import socket
from typing import Any, Dict, Optional, Union

# Third-Party
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import orjson
from pydantic import SecretStr

# First-Party
from mcpfixed.config import settings
from mcpfixed.db import utc_now
from mcpfixed.errors import DecryptionError

logger = logging.getLogger(__name__)

FORMAT_VERSION = b"\x01"
SALT_LENGTH = 16
NONCE_LENGTH = 12
KEY_LENGTH = 32
DEFAULT_ITERATIONS = 100_000
_HEADER_LENGTH = len(FORMAT_VERSION) + SALT_LENGTH + NONCE_LENGTH


def derive_key(master_key: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive a 256-bit cipher key from the master key.

    Args:
        master_key: Master key material.
        salt: Random per-message salt.
        iterations: PBKDF2 iteration count.

    Returns:
        bytes: 32 byte key.

    Examples:
        >>> len(derive_key("k", b"0" * 16, iterations=1000))
        32
    """
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt, iterations=iterations)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt(plaintext: Union[str, bytes], master_key: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Encrypt a payload under the master key.

    Layout (before urlsafe base64): version | salt | nonce | AES-GCM ciphertext+tag.

    Args:
        plaintext: Text or bytes to encrypt.
        master_key: Master key material.
        iterations: PBKDF2 iteration count.

    Returns:
        str: urlsafe base64 ciphertext.
    """
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(derive_key(master_key, salt, iterations)).encrypt(nonce, data, FORMAT_VERSION)
    return base64.urlsafe_b64encode(FORMAT_VERSION + salt + nonce + sealed).decode("ascii")


def decrypt_bytes(ciphertext: str, master_key: str, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Decrypt a payload produced by :func:`encrypt`.

    Args:
        ciphertext: urlsafe base64 ciphertext.
        master_key: Master key material.
        iterations: PBKDF2 iteration count.

    Returns:
        bytes: The plaintext bytes.

    Raises:
        DecryptionError: If the ciphertext is malformed, tampered with or was
            produced under a different key. The message never includes the input.
    """
    try:
        raw = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise DecryptionError("Unable to decrypt credential: ciphertext is not valid") from e

    if len(raw) <= _HEADER_LENGTH or raw[:1] != FORMAT_VERSION:
        raise DecryptionError("Unable to decrypt credential: ciphertext is not valid")

    salt = raw[1 : 1 + SALT_LENGTH]
    nonce = raw[1 + SALT_LENGTH : _HEADER_LENGTH]
    try:
        return AESGCM(derive_key(master_key, salt, iterations)).decrypt(nonce, raw[_HEADER_LENGTH:], FORMAT_VERSION)
    except InvalidTag as e:
        raise DecryptionError("Unable to decrypt credential: wrong master key or corrupted data") from e


def decrypt(ciphertext: str, master_key: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Decrypt a text payload produced by :func:`encrypt`.

    Args:
        ciphertext: urlsafe base64 ciphertext.
        master_key: Master key material.
        iterations: PBKDF2 iteration count.

    Returns:
        str: The plaintext.
    """
    return decrypt_bytes(ciphertext, master_key, iterations).decode("utf-8")


class EncryptionService:
    """Encrypts and decrypts credentials under one master key.

    Examples:
        >>> service = EncryptionService("master-key", iterations=1000)
        >>> service.decrypt_secret(service.encrypt_secret("abc"))
        'abc'
        >>> service.decrypt_json(service.encrypt_json({"token": "t"}))
        {'token': 't'}
        >>> repr(service)
        'EncryptionService(iterations=1000)'
    """

    def __init__(self, master_key: Union[str, SecretStr], iterations: Optional[int] = None):
        """Create the service.

        Args:
            master_key: Master key material.
            iterations: PBKDF2 iteration count (defaults to settings).
        """
        self._master_key = master_key.get_secret_value() if isinstance(master_key, SecretStr) else master_key
        self.iterations = iterations or settings.encryption_kdf_iterations

    def __repr__(self) -> str:
        """Representation without key material.

        Returns:
            str: Representation.
        """
        return f"EncryptionService(iterations={self.iterations})"

    def encrypt_secret(self, plaintext: str) -> str:
        """Encrypt a secret.

        Args:
            plaintext: Secret to encrypt.

        Returns:
            str: Ciphertext.
        """
        return encrypt(plaintext, self._master_key, self.iterations)

    def decrypt_secret(self, ciphertext: str) -> str:
        """Decrypt a secret.

        Args:
            ciphertext: Value produced by :meth:`encrypt_secret`.

        Returns:
            str: Plaintext.
        """
        return decrypt(ciphertext, self._master_key, self.iterations)

    async def encrypt_secret_async(self, plaintext: str) -> str:
        """Encrypt a secret without blocking the event loop on key derivation.

        Args:
            plaintext: Secret to encrypt.

        Returns:
            str: Ciphertext.
        """
        return await asyncio.to_thread(self.encrypt_secret, plaintext)

    async def decrypt_secret_async(self, ciphertext: str) -> str:
        """Decrypt a secret without blocking the event loop on key derivation.

        Args:
            ciphertext: Value produced by :meth:`encrypt_secret`.

        Returns:
            str: Plaintext.
        """
        return await asyncio.to_thread(self.decrypt_secret, ciphertext)

    def encrypt_json(self, payload: Dict[str, Any]) -> str:
        """Encrypt a JSON-serializable mapping.

        Args:
            payload: Mapping to encrypt.

        Returns:
            str: Ciphertext.
        """
        return encrypt(orjson.dumps(payload), self._master_key, self.iterations)

    def decrypt_json(self, ciphertext: str) -> Dict[str, Any]:
        """Decrypt a mapping produced by :meth:`encrypt_json`.

        Args:
            ciphertext: Ciphertext.

        Returns:
            Dict[str, Any]: The mapping.
        """
        return orjson.loads(decrypt_bytes(ciphertext, self._master_key, self.iterations))


def machine_secret() -> str:
    """Derive the machine-local secret used to wrap the master key.

    Returns:
        str: Hex SHA-256 of host, user and platform.

    Examples:
        >>> len(machine_secret())
        64
        >>> machine_secret() == machine_secret()
        True
    """
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    material = f"{socket.gethostname()}:{user}:{platform.system()}:mcpfixed"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class MasterKeyStore:
    """Generates, wraps and loads the master key file."""

    def __init__(self, path: Path, iterations: Optional[int] = None):
        """Create the store.

        Args:
            path: Location of the wrapped key file.
            iterations: PBKDF2 iterations for the wrapping key.
        """
        self.path = Path(path)
        self.iterations = iterations or settings.encryption_kdf_iterations

    def load_or_create(self) -> str:
        """Return the master key, generating and storing it on first use.

        Returns:
            str: The master key.

        Raises:
            DecryptionError: If an existing key file cannot be unwrapped on this
                machine. It is never silently replaced, since that would orphan
                every stored credential.
        """
        if self.path.exists():
            record = orjson.loads(self.path.read_bytes())
            try:
                return decrypt(record["wrapped_key"], machine_secret(), record.get("iterations", self.iterations))
            except DecryptionError:
                logger.error(f"Master key file {self.path} cannot be unwrapped on this machine")
                raise

        master_key = secrets.token_urlsafe(32)
        record = {
            "version": 1,
            "created_at": utc_now().isoformat(),
            "iterations": self.iterations,
            "wrapped_key": encrypt(master_key, machine_secret(), self.iterations),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(orjson.dumps(record))
        os.chmod(self.path, 0o600)
        logger.info(f"Generated new master key at {self.path}")
        return master_key


def get_master_key() -> str:
    """Resolve the master key from settings or the key file.

    Returns:
        str: The master key.
    """
    secret = settings.auth_encryption_secret
    if secret is not None:
        return secret.get_secret_value()
    return MasterKeyStore(settings.master_key_path).load_or_create()


@lru_cache(maxsize=8)
def get_encryption_service(master_key: Optional[str] = None) -> EncryptionService:
    """Get a cached encryption service.

    Args:
        master_key: Explicit master key; defaults to :func:`get_master_key`.

    Returns:
        EncryptionService: Service bound to the master key.
    """
    return EncryptionService(master_key or get_master_key())
