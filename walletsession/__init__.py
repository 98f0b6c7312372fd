"""walletsession - wallet and credential session orchestration.

One orchestrator selects a credential provider (social login, injected
wallet, deep-linked mobile wallet or host-supplied wallet), turns the
wallet connection into a backend-verified session, and publishes
immutable session snapshots to its subscribers.
"""

from .backend import BackendSessionClient
from .challenge import ChallengeCredential, build_challenge_message, inspect_token
from .config import WalletSessionSettings, clear_settings, get_settings, reload_settings
from .exceptions import (
    AuthenticationError,
    BackendVerificationError,
    ConfigurationError,
    NetworkError,
    ProviderInitError,
    RedirectReconciliationError,
    SessionStateError,
    SigningError,
    TokenStorageError,
    WalletConnectionError,
    WalletSessionException,
)
from .log import enable_debug, get_logger, set_level
from .orchestrator import AuthOrchestrator
from .providers import (
    CredentialProvider,
    DeepLinkWalletProvider,
    ExternalWalletProvider,
    HostWalletProvider,
    SocialLoginProvider,
    create_provider,
    detect_execution_context,
    select_provider_name,
)
from .redirect import PageLocation, RedirectReconciler, RetrySchedule
from .resource_cache import ResourceCache
from .token_store import FileStorage, KeyringStorage, MemoryStorage, TokenStore
from .types import (
    ConnectResult,
    ErrorKind,
    ExecutionContext,
    HostContext,
    ProviderCapabilities,
    Session,
    SessionError,
    SessionStatus,
    SessionUser,
)
from .wallet import JsonRpcWalletClient, RpcSigner, WalletClient, WalletRpcError


__version__ = "0.1.0"

__all__ = [
    "AuthOrchestrator",
    "AuthenticationError",
    "BackendSessionClient",
    "BackendVerificationError",
    "ChallengeCredential",
    "ConfigurationError",
    "ConnectResult",
    "CredentialProvider",
    "DeepLinkWalletProvider",
    "ErrorKind",
    "ExecutionContext",
    "ExternalWalletProvider",
    "FileStorage",
    "HostContext",
    "HostWalletProvider",
    "JsonRpcWalletClient",
    "KeyringStorage",
    "MemoryStorage",
    "NetworkError",
    "PageLocation",
    "ProviderCapabilities",
    "ProviderInitError",
    "RedirectReconciler",
    "RedirectReconciliationError",
    "ResourceCache",
    "RetrySchedule",
    "RpcSigner",
    "Session",
    "SessionError",
    "SessionStateError",
    "SessionStatus",
    "SessionUser",
    "SigningError",
    "SocialLoginProvider",
    "TokenStorageError",
    "TokenStore",
    "WalletClient",
    "WalletConnectionError",
    "WalletRpcError",
    "WalletSessionException",
    "WalletSessionSettings",
    "__version__",
    "build_challenge_message",
    "clear_settings",
    "create_provider",
    "detect_execution_context",
    "enable_debug",
    "get_logger",
    "get_settings",
    "inspect_token",
    "reload_settings",
    "select_provider_name",
    "set_level",
]
