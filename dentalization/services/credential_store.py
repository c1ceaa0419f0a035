"""
Encrypted Credential Store.

Durable, atomic persistence of the credential pair, the cached
``UserRecord`` and the biometric flags in the local SQLite
``credential_entries`` table.

Security model
--------------
- The encryption key is derived at runtime from machine-specific
  characteristics (hostname + OS username) via PBKDF2-HMAC-SHA256 with
  a per-installation random salt.  The key is **never** persisted.
- Every value is encrypted with AES-256-GCM, providing both
  confidentiality and integrity.  An entry that fails authentication
  (tampering, different machine) reads as missing.
- Logout deletes every row in one transaction.

Storage layout (one row per key)::

    credential_entries
    ├── key              TEXT PRIMARY KEY
    ├── encrypted_value  BLOB
    ├── nonce            BLOB
    └── tag              BLOB

Failure semantics
-----------------
Storage-medium failures (``sqlite3.Error``, ``OSError`` on the salt file)
are raised as :class:`~dentalization.exceptions.StorageError`.  "Not
found" is never an error: getters return ``None``.
"""

from __future__ import annotations

import asyncio
import getpass
import os
import socket
import sqlite3
import stat
import threading
from pathlib import Path
from typing import Iterable, Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from pydantic import ValidationError

from dentalization.database import DatabaseManager
from dentalization.exceptions import StorageError
from dentalization.logger import StructuredLogger
from dentalization.models.auth_models import BiometricCredentials, CredentialPair
from dentalization.models.user import UserRecord
from dentalization.services.base_service import BaseService

ACCESS_TOKEN_KEY: str = "access_token"
REFRESH_TOKEN_KEY: str = "refresh_token"
USER_DATA_KEY: str = "user_data"
BIOMETRIC_ENABLED_KEY: str = "biometric_enabled"
BIOMETRIC_CREDENTIALS_KEY: str = "biometric_credentials"

SESSION_KEYS: tuple[str, ...] = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_DATA_KEY)

ALL_KEYS: tuple[str, ...] = (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    USER_DATA_KEY,
    BIOMETRIC_ENABLED_KEY,
    BIOMETRIC_CREDENTIALS_KEY,
)

_SALT_LENGTH: int = 32


class CredentialStore(BaseService):
    """Encrypted key/value persistence for session credentials.

    All public methods are coroutines; the blocking SQLite and PBKDF2
    work runs in a worker thread via ``asyncio.to_thread`` while holding
    the database write lock, so no reader ever observes half of a
    ``store_tokens`` call.

    Architecture Note
    -----------------
    This service accesses SQLite directly rather than through a
    repository, because credentials are infrastructure state, not domain
    data.

    Parameters
    ----------
    db:
        An initialised ``DatabaseManager`` whose schema includes
        ``credential_entries``.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    salt_path:
        Location of the per-installation key-derivation salt.
    kdf_iterations:
        PBKDF2 iteration count.
    """

    _KEY_LENGTH: int = 32  # 256 bits

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        salt_path: Path,
        kdf_iterations: int = 600_000,
    ) -> None:
        super().__init__(logger)
        self._db: DatabaseManager = db
        self._salt_path: Path = salt_path
        self._kdf_iterations: int = kdf_iterations
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Token pair
    # ------------------------------------------------------------------

    async def store_tokens(self, access_token: str, refresh_token: str) -> None:
        """Overwrite the access and refresh token together.

        Raises
        ------
        ValueError
            If either token is empty.
        StorageError
            If the storage medium fails; nothing is written in that case.
        """
        if not access_token:
            raise ValueError("Access token is required but was not provided.")
        if not refresh_token:
            raise ValueError("Refresh token is required but was not provided.")

        await asyncio.to_thread(
            self._write_entries,
            {
                ACCESS_TOKEN_KEY: access_token.encode("utf-8"),
                REFRESH_TOKEN_KEY: refresh_token.encode("utf-8"),
            },
        )
        self._logger.debug("Credential pair stored.", extra={"event": "TOKENS_STORED"})

    async def get_access_token(self) -> Optional[str]:
        return await self._read_text(ACCESS_TOKEN_KEY)

    async def get_refresh_token(self) -> Optional[str]:
        return await self._read_text(REFRESH_TOKEN_KEY)

    async def get_credentials(self) -> Optional[CredentialPair]:
        """Read both tokens in a single locked pass.

        Returns ``None`` unless both halves of the pair are present.
        """
        values = await asyncio.to_thread(
            self._read_entries, (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY),
        )
        access = values.get(ACCESS_TOKEN_KEY)
        refresh = values.get(REFRESH_TOKEN_KEY)
        if not access or not refresh:
            return None
        return CredentialPair(
            access_token=access.decode("utf-8"),
            refresh_token=refresh.decode("utf-8"),
        )

    # ------------------------------------------------------------------
    # Cached user
    # ------------------------------------------------------------------

    async def store_user_data(self, user: UserRecord) -> None:
        """Persist *user* as camelCase JSON, replacing any previous record."""
        await asyncio.to_thread(
            self._write_entries,
            {USER_DATA_KEY: user.to_storage_json().encode("utf-8")},
        )

    async def get_user_data(self) -> Optional[UserRecord]:
        """Return the cached user, or ``None`` when absent or malformed.

        A malformed payload means the caller must re-authenticate; it is
        logged, never raised.
        """
        raw = await self._read_text(USER_DATA_KEY)
        if raw is None:
            return None
        try:
            return UserRecord.model_validate_json(raw)
        except ValidationError as exc:
            self._logger.warning(
                "Cached user data is malformed; treating as absent: %s",
                exc.error_count(),
                extra={"event": "USER_DATA_MALFORMED"},
            )
            return None

    # ------------------------------------------------------------------
    # Biometric flags
    # ------------------------------------------------------------------

    async def set_biometric_enabled(self, enabled: bool) -> None:
        await asyncio.to_thread(
            self._write_entries,
            {BIOMETRIC_ENABLED_KEY: b"1" if enabled else b"0"},
        )

    async def is_biometric_enabled(self) -> bool:
        return await self._read_text(BIOMETRIC_ENABLED_KEY) == "1"

    async def store_biometric_credentials(self, credentials: BiometricCredentials) -> None:
        """Persist login credentials for biometric release, and raise the flag."""
        await asyncio.to_thread(
            self._write_entries,
            {
                BIOMETRIC_CREDENTIALS_KEY: credentials.model_dump_json().encode("utf-8"),
                BIOMETRIC_ENABLED_KEY: b"1",
            },
        )

    async def get_biometric_credentials(self) -> Optional[BiometricCredentials]:
        raw = await self._read_text(BIOMETRIC_CREDENTIALS_KEY)
        if raw is None:
            return None
        try:
            return BiometricCredentials.model_validate_json(raw)
        except ValidationError:
            self._logger.warning("Stored biometric credentials are malformed; ignoring.")
            return None

    async def clear_biometric_credentials(self) -> None:
        await asyncio.to_thread(
            self._delete_entries, (BIOMETRIC_CREDENTIALS_KEY, BIOMETRIC_ENABLED_KEY),
        )

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear_session(self) -> None:
        """Remove the token pair and cached user, keeping biometric enrolment."""
        await asyncio.to_thread(self._delete_entries, SESSION_KEYS)

    async def clear_all(self) -> None:
        """Remove every persisted key in one transaction.

        Safe to call when nothing is stored.
        """
        await asyncio.to_thread(self._delete_entries, ALL_KEYS)
        self._logger.info("Credential store cleared.", extra={"event": "CREDENTIALS_CLEARED"})

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    async def _read_text(self, key: str) -> Optional[str]:
        values = await asyncio.to_thread(self._read_entries, (key,))
        value = values.get(key)
        return value.decode("utf-8") if value is not None else None

    def _write_entries(self, entries: dict[str, bytes]) -> None:
        try:
            key = self._derive_key()
            rows: list[tuple[str, bytes, bytes, bytes]] = []
            for name, plaintext in entries.items():
                cipher = AES.new(key, AES.MODE_GCM)
                ciphertext, tag = cipher.encrypt_and_digest(plaintext)
                rows.append((name, ciphertext, cipher.nonce, tag))

            with self._db.transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO credential_entries (key, encrypted_value, nonce, tag)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        encrypted_value = excluded.encrypted_value,
                        nonce           = excluded.nonce,
                        tag             = excluded.tag,
                        updated_at      = CURRENT_TIMESTAMP
                    """,
                    rows,
                )
        except (sqlite3.Error, OSError) as exc:
            self._logger.error(
                "Failed to write credential entries %s: %s", sorted(entries), exc,
            )
            raise StorageError(f"Could not write credentials: {exc}") from exc

    def _read_entries(self, keys: Iterable[str]) -> dict[str, bytes]:
        keys = tuple(keys)
        placeholders = ", ".join("?" for _ in keys)
        try:
            with self._db.write_lock:
                rows = self._db.sqlite.execute(
                    f"SELECT key, encrypted_value, nonce, tag FROM credential_entries "
                    f"WHERE key IN ({placeholders})",
                    keys,
                ).fetchall()
            if not rows:
                return {}
            key = self._derive_key()
        except (sqlite3.Error, OSError) as exc:
            self._logger.error("Failed to read credential entries %s: %s", keys, exc)
            raise StorageError(f"Could not read credentials: {exc}") from exc

        values: dict[str, bytes] = {}
        for row in rows:
            cipher = AES.new(key, AES.MODE_GCM, nonce=row["nonce"])
            try:
                values[row["key"]] = cipher.decrypt_and_verify(
                    row["encrypted_value"], row["tag"],
                )
            except ValueError:
                self._logger.warning(
                    "Decryption of '%s' failed (corrupted data or machine "
                    "identity changed); treating as absent.",
                    row["key"],
                    extra={"event": "CREDENTIAL_DECRYPT_FAILED"},
                )
        return values

    def _delete_entries(self, keys: Iterable[str]) -> None:
        keys = tuple(keys)
        placeholders = ", ".join("?" for _ in keys)
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    f"DELETE FROM credential_entries WHERE key IN ({placeholders})",
                    keys,
                )
        except sqlite3.Error as exc:
            self._logger.error("Failed to delete credential entries %s: %s", keys, exc)
            raise StorageError(f"Could not clear credentials: {exc}") from exc

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once per instance) the 256-bit AES key from machine identity.

        Key material: ``hostname:username`` binds the key to this machine
        and OS account, so a copied database file is useless elsewhere.
        The entropy comes from the per-installation random salt.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        with self._key_lock:
            if self._key is None:
                password: str = f"{socket.gethostname()}:{getpass.getuser()}"
                self._key = PBKDF2(
                    password=password,
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._kdf_iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        """Return the per-installation salt, creating it on first run.

        Raises
        ------
        OSError
            If the salt file cannot be read or written.
        """
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == _SALT_LENGTH:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.", len(data),
            )
        salt: bytes = os.urandom(_SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)
        if os.name == "posix":
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        self._logger.info("Per-installation credential salt created at %s.", self._salt_path)
        return salt
