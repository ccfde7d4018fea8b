"""Authentication session management for chatsync."""

from .models import AuthEvent, AuthSnapshot, Credential, LoginInput, SessionState, mask_secret
from .secure_store import EncryptedFileSecureStore, MemorySecureStore, SecureStore, get_or_create_device_id
from .session import AuthSessionManager, to_auth_error

__all__ = [
    "AuthSessionManager",
    "AuthEvent",
    "AuthSnapshot",
    "Credential",
    "LoginInput",
    "SessionState",
    "SecureStore",
    "MemorySecureStore",
    "EncryptedFileSecureStore",
    "get_or_create_device_id",
    "mask_secret",
    "to_auth_error",
]
