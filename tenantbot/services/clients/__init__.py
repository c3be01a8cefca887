from tenantbot.services.clients.cache import LRUTTLCache
from tenantbot.services.clients.platform import AUTH_REJECTION_ERRORS, PlatformClient
from tenantbot.services.clients.resolver import ClientResolver
from tenantbot.services.clients.sources import CredentialSource, InstallationCredentialSource, StaticTokenSource

__all__ = [
    "LRUTTLCache",
    "AUTH_REJECTION_ERRORS",
    "PlatformClient",
    "ClientResolver",
    "CredentialSource",
    "InstallationCredentialSource",
    "StaticTokenSource",
]
