"""
Agentless proxy services and exports.
"""
from typing import Optional

from agentless.core.config import Settings, settings as default_settings
from agentless.services.proxy.background import BackgroundLauncher, BackgroundTaskError
from agentless.services.proxy.hypervisor import (
    ClientFactory,
    ConnectionCache,
    HypervisorClient,
    HypervisorError,
)
from agentless.services.proxy.introspection import GuestIntrospection, IntrospectionFactory
from agentless.services.proxy.orchestrator import BackupOrchestrator
from agentless.services.proxy.session import (
    AgentlessSession,
    SessionLifecycleManager,
    SessionNotFoundError,
    TransferMethod,
)
from agentless.services.proxy.session_id import SessionIdentity
from agentless.services.proxy.session_lock import SessionBusyError, SessionError


def create_proxy_services(
    client_factory: ClientFactory,
    introspection_factory: Optional[IntrospectionFactory] = None,
    config: Optional[Settings] = None,
    log_callback=None,
):
    """
    Wire the lifecycle manager and backup orchestrator for one process.

    Args:
        client_factory: Connects a HypervisorClient from (host, user, password)
        introspection_factory: Builds a GuestIntrospection
        config: Settings, defaults to the global settings
        log_callback: Optional callback for logging (level, message, details)

    Returns:
        Tuple of (SessionLifecycleManager, BackupOrchestrator)
    """
    config = config or default_settings
    lifecycle = SessionLifecycleManager(
        connections=ConnectionCache(client_factory, ttl=config.CONNECTION_CACHE_TTL),
        introspection_factory=introspection_factory,
        launcher=BackgroundLauncher(timeout=config.BACKGROUND_TASK_START_TIMEOUT),
        config=config,
        log_callback=log_callback,
    )
    return lifecycle, BackupOrchestrator(lifecycle, config=config)


__all__ = [
    "AgentlessSession",
    "BackgroundTaskError",
    "BackupOrchestrator",
    "ConnectionCache",
    "GuestIntrospection",
    "HypervisorClient",
    "HypervisorError",
    "SessionBusyError",
    "SessionError",
    "SessionIdentity",
    "SessionLifecycleManager",
    "SessionNotFoundError",
    "TransferMethod",
    "create_proxy_services",
]
