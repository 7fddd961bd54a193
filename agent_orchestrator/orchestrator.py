"""
Wiring of the Agent Orchestrator components.

Builds, from one OrchestratorConfig:
- the PluginRegistry (built-ins loaded, projects validated on demand)
- the metadata store, event log and bus, and reaction ledger
- the SessionManager and LifecycleManager sharing one SessionCoordinator
  (file locks and cancellation markers under <data_dir>/locks) and one
  ExternalCaller

No component is global; the CLI and tests build an Orchestrator and pass
its parts around.
"""

from __future__ import annotations

from typing import Optional

from agent_orchestrator.config import OrchestratorConfig
from agent_orchestrator.coordination import SessionCoordinator
from agent_orchestrator.events.bus import EventBus
from agent_orchestrator.events.persistence import EventLog
from agent_orchestrator.external import ExternalCaller
from agent_orchestrator.lifecycle import LifecycleManager
from agent_orchestrator.logger import OrchestratorLogger
from agent_orchestrator.plugins.registry import PluginRegistry
from agent_orchestrator.reactions import ReactionEngine
from agent_orchestrator.session_manager import SessionManager
from agent_orchestrator.state_store import MetadataStore, ReactionLedger
from agent_orchestrator.utils.fs import ensure_dir


class Orchestrator:
    """
    Container for the wired components.

    Usage:
        orchestrator = Orchestrator(load_config())
        session = orchestrator.sessions.spawn("app", "42")
        orchestrator.lifecycle.run(stop_event)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: Optional[PluginRegistry] = None,
        caller: Optional[ExternalCaller] = None,
    ) -> None:
        """
        Build every component.

        Args:
            config: Loaded configuration.
            registry: Pre-populated registry; built-ins are loaded when None.
            caller: Plugin call guard; built from config.external when None.
        """
        self.config = config
        ensure_dir(config.data_path)

        self.logger = OrchestratorLogger(config.logs_path)

        if registry is None:
            registry = PluginRegistry()
            registry.load_builtins(config)
        self.registry = registry

        self.store = MetadataStore(config.sessions_path, logger=self.logger)
        self.event_log = EventLog(config.data_path)
        self.bus = EventBus(self.event_log)
        self.bus.subscribe_all(self.logger.log_session_event)
        self.ledger = ReactionLedger(config.data_path)

        self.coordinator = SessionCoordinator(config.data_path / "locks")
        self.caller = caller or ExternalCaller(config.external)

        self.sessions = SessionManager(
            config,
            registry,
            self.store,
            self.bus,
            self.coordinator,
            self.caller,
            logger=self.logger,
        )
        self.reactions = ReactionEngine(
            config,
            registry,
            self.ledger,
            self.bus,
            self.caller,
            logger=self.logger,
        )
        self.lifecycle = LifecycleManager(
            config,
            registry,
            self.store,
            self.bus,
            self.reactions,
            self.coordinator,
            self.caller,
            logger=self.logger,
            on_terminal=self.sessions.cleanup,
        )

    def validate(self) -> None:
        """
        Startup validation pass over every configured project.

        Raises:
            ConfigurationError: Naming the first unresolved plugin.
        """
        self.registry.validate(self.config)

    def shutdown(self) -> None:
        self.lifecycle.shutdown(wait=False)
        self.caller.shutdown()
