"""
Remote account identity: OAuth2 tokens and the secret store holding them.
"""

from .oauth import OAuthTokenManager, open_browser
from .secrets import FileSecretStore, MemorySecretStore, SecretStore

__all__ = [
    "OAuthTokenManager",
    "open_browser",
    "SecretStore",
    "FileSecretStore",
    "MemorySecretStore",
]
