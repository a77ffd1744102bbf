import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from axiom_session.exceptions import SessionIoError, SessionSerializationError


# 0o700 = Owner has read/write/execute, others have no access
DIR_PERMISSIONS = 0o700
# 0o600 = Owner has read/write, others have no access
FILE_PERMISSIONS = 0o600

DEFAULT_SESSION_PATH = Path.home() / ".axiomtradeapi" / "session.json"


class SessionStorage:
    """
    # Session File Storage

    Reads and writes one JSON record to disk, optionally encrypted with
    Fernet (AES-128-CBC + HMAC) using a key kept in a separate file.

    ## Storage Structure:
    ```
    ~/.axiomtradeapi/          # Storage directory (mode 0o700)
    ├── session.json           # Session record, plain or encrypted (0o600)
    └── session.key            # Fernet key, only with encrypt=True (0o600)
    ```

    ## Design Decisions:
    - Writes go to a temporary file first and are moved into place, so a
      crash never leaves a half-written record
    - Restrictive permissions on every file written
    - Errors are raised as `SessionIoError` / `SessionSerializationError`;
      the stores decide whether a failure matters

    All methods block; async callers run them with `asyncio.to_thread`.

    ## Example:
    ```python
    storage = SessionStorage("~/.axiomtradeapi/session.json", encrypt=True)
    storage.save({"tokens": {...}})
    record = storage.load()
    ```
    """

    def __init__(
        self,
        path: str | Path | None = None,
        encrypt: bool = False,
        key_path: str | Path | None = None,
    ) -> None:
        """
        ## Args:
        - `path` (str | Path, optional): Session file; defaults to
          `~/.axiomtradeapi/session.json`
        - `encrypt` (bool): Encrypt the record at rest with Fernet
        - `key_path` (str | Path, optional): Key file; defaults to the session
          file with a `.key` suffix
        """
        self.path = Path(path).expanduser() if path else DEFAULT_SESSION_PATH
        self.encrypt = encrypt
        self.key_path = (
            Path(key_path).expanduser() if key_path else self.path.with_suffix(".key")
        )
        self.logger = logging.getLogger(__name__)
        self._cipher: Fernet | None = None

    def _ensure_directory(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=DIR_PERMISSIONS)

    def _get_cipher(self) -> Fernet:
        """
        Load the Fernet key, generating and saving one on first use.

        ## Security Note:
        Losing the key file means losing access to the encrypted session,
        which then simply requires a new login.
        """
        if self._cipher is not None:
            return self._cipher

        try:
            if self.key_path.exists():
                key = self.key_path.read_bytes()
            else:
                self._ensure_directory()
                key = Fernet.generate_key()
                self._write_atomic(self.key_path, key)
                self.logger.debug(f"Generated session encryption key at {self.key_path}")
            self._cipher = Fernet(key)
        except OSError as e:
            raise SessionIoError(f"Cannot access key file {self.key_path}: {e}") from e
        except ValueError as e:
            raise SessionSerializationError(f"Invalid key file {self.key_path}: {e}") from e

        return self._cipher

    def _write_atomic(self, target: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_name, FILE_PERMISSIONS)
            os.replace(tmp_name, target)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def save(self, record: dict[str, Any]) -> None:
        """
        Serialize and write `record`.

        ## Raises:
        - `SessionSerializationError`: If the record is not JSON serializable
        - `SessionIoError`: If the file cannot be written
        """
        try:
            data = json.dumps(record, indent=2).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SessionSerializationError(f"Cannot serialize session: {e}") from e

        if self.encrypt:
            data = self._get_cipher().encrypt(data)

        try:
            self._ensure_directory()
            self._write_atomic(self.path, data)
        except OSError as e:
            raise SessionIoError(f"Cannot write session file {self.path}: {e}") from e

        self.logger.debug(f"Session saved to {self.path}")

    def load(self) -> dict[str, Any] | None:
        """
        Read the record.

        ## Returns:
        - `dict`: The stored record
        - `None`: If no session file exists

        ## Raises:
        - `SessionSerializationError`: Corrupt file, wrong key or not a JSON object
        - `SessionIoError`: If the file exists but cannot be read
        """
        if not self.path.exists():
            self.logger.debug(f"No session file at {self.path}")
            return None

        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise SessionIoError(f"Cannot read session file {self.path}: {e}") from e

        if self.encrypt:
            try:
                data = self._get_cipher().decrypt(data)
            except InvalidToken as e:
                raise SessionSerializationError(
                    f"Cannot decrypt session file {self.path}"
                ) from e

        try:
            record = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SessionSerializationError(f"Corrupt session file {self.path}: {e}") from e

        if not isinstance(record, dict):
            raise SessionSerializationError(f"Session file {self.path} is not an object")
        return record

    def delete(self) -> None:
        """Delete the session file; the encryption key is kept."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise SessionIoError(f"Cannot delete session file {self.path}: {e}") from e
        self.logger.debug(f"Session file {self.path} deleted")

    def exists(self) -> bool:
        return self.path.exists()
