"""Secure credential storage backends."""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

from cryptography.fernet import Fernet, InvalidToken

DEVICE_ID_KEY = "device_id"


class SecureStore(ABC):
    """Opaque string secrets keyed by name. Never holds plaintext passwords."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a secret. Missing keys are not an error."""
        pass


class MemorySecureStore(SecureStore):
    """Process-local store, for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._values)


class EncryptedFileSecureStore(SecureStore):
    """
    Fernet-encrypted JSON file.

    The key lives next to the data file with 0600 permissions and is
    generated on first use.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._key_path = self.path.parent / ".credential_key"
        self._fernet: Fernet | None = None

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._key_path.exists():
                with open(self._key_path, "rb") as f:
                    key_data = f.read()
            else:
                key_data = Fernet.generate_key()
                # Save with restrictive permissions
                with open(self._key_path, "wb") as f:
                    f.write(key_data)
                os.chmod(self._key_path, 0o600)
            self._fernet = Fernet(key_data)
        return self._fernet

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "rb") as f:
            token = f.read()
        try:
            return json.loads(self._cipher().decrypt(token))
        except InvalidToken as e:
            raise RuntimeError(f"Secure store {self.path} cannot be decrypted with its key") from e

    def _save(self, values: dict[str, str]) -> None:
        token = self._cipher().encrypt(json.dumps(values).encode())
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "wb") as f:
            f.write(token)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> str | None:
        return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        values = self._load()
        values[key] = value
        self._save(values)

    async def delete(self, key: str) -> None:
        values = self._load()
        if key in values:
            del values[key]
            self._save(values)


async def get_or_create_device_id(store: SecureStore) -> str:
    """Stable device identifier, generated once and persisted."""
    device_id = await store.get(DEVICE_ID_KEY)
    if not device_id:
        device_id = f"device_{uuid4().hex}"
        await store.set(DEVICE_ID_KEY, device_id)
    return device_id
