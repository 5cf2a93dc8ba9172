from .athena import AthenaCredentialProvider
from .base import CredentialProvider
from .cache import CredentialCache

__all__ = [
    "AthenaCredentialProvider",
    "CredentialCache",
    "CredentialProvider",
]
