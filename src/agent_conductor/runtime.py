"""Wire storage, engine and orchestration services together."""

from __future__ import annotations

import logging

from agent_conductor.capabilities import CapabilityConfigurator
from agent_conductor.config.settings import Settings
from agent_conductor.credentials import AesGcmCredentialCipher
from agent_conductor.dispatch.common import Clock, DispatchServices, utc_now
from agent_conductor.engine.base import ExecutionEngine
from agent_conductor.ledger import ExecutionLedger
from agent_conductor.lifecycle import TaskLifecycle
from agent_conductor.sessions import AgentLocks, SessionStore
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.postgres import PostgresStorage
from agent_conductor.streaming import LogBroadcaster

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> ConductorStorage:
    database_url = settings.resolved_database_url()
    if not database_url:
        raise RuntimeError(
            "Missing database URL. Set AGENT_CONDUCTOR_DATABASE_URL or DATABASE_URL."
        )
    return PostgresStorage(database_url)


def build_engine(settings: Settings) -> ExecutionEngine:
    from agent_conductor.engine.claude import ClaudeAgentEngine

    return ClaudeAgentEngine(
        model=settings.engine_model, permission_mode=settings.engine_permission_mode
    )


def build_services(
    storage: ConductorStorage,
    *,
    settings: Settings,
    engine: ExecutionEngine,
    broadcaster: LogBroadcaster | None = None,
    clock: Clock = utc_now,
) -> DispatchServices:
    key = settings.resolved_encryption_key()
    cipher = AesGcmCredentialCipher(key) if key else None
    if cipher is None:
        logger.warning("runtime event=no_encryption_key credentials=disabled")
    return DispatchServices(
        storage=storage,
        settings=settings,
        engine=engine,
        ledger=ExecutionLedger(storage, broadcaster=broadcaster),
        sessions=SessionStore(storage, sessions_root=settings.sessions_root()),
        capabilities=CapabilityConfigurator(storage, settings=settings, cipher=cipher),
        lifecycle=TaskLifecycle(storage),
        locks=AgentLocks(),
        clock=clock,
    )
