"""KeyRelay Core - credential and model rotation for a chat-completion proxy."""

from keyrelay.core.credential_pool import Credential, CredentialPool, CredentialStatus
from keyrelay.core.dispatcher import DispatchResult, Dispatcher
from keyrelay.core.model_catalog import ModelCatalogService
from keyrelay.core.model_pool import ModelPool
from keyrelay.core.pool_manager import PoolManager
from keyrelay.core.proxy_keys import ProxyKeyRegistry
from keyrelay.core.shared_config import SharedConfig, SharedConfigStore
from keyrelay.core.store import DurableStore, MemoryStore, RedisStore
from keyrelay.core.write_back import WriteBackCache

__all__ = [
    "Credential",
    "CredentialPool",
    "CredentialStatus",
    "DispatchResult",
    "Dispatcher",
    "DurableStore",
    "MemoryStore",
    "ModelCatalogService",
    "ModelPool",
    "PoolManager",
    "ProxyKeyRegistry",
    "RedisStore",
    "SharedConfig",
    "SharedConfigStore",
    "WriteBackCache",
]
