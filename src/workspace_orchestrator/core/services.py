"""Service container wiring every component from a Config."""

import logging
from dataclasses import dataclass

from workspace_orchestrator.config import Config
from workspace_orchestrator.core.branches import MAIN_BRANCH
from workspace_orchestrator.core.execution import WorkItemExecutor, open_work_items
from workspace_orchestrator.core.orchestrator import SessionOrchestrator
from workspace_orchestrator.core.planner import TaskPlanner
from workspace_orchestrator.core.sync import BackgroundReconciler
from workspace_orchestrator.core.workitems import WorkItemStore
from workspace_orchestrator.core.workspaces import WorkspaceStore
from workspace_orchestrator.integrations.ai import DEFAULT_PROVIDER, AIProvider, ClaudeCLIProvider, ProviderManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    ai: AIProvider
    store: WorkspaceStore
    planner: TaskPlanner
    orchestrator: SessionOrchestrator
    reconciler: BackgroundReconciler
    executor: WorkItemExecutor

    def work_items(self, project: str, branch: str = MAIN_BRANCH) -> WorkItemStore:
        return open_work_items(self.store, project, branch)

    def start(self) -> None:
        self.store.initialize()
        self.orchestrator.initialize()
        self.reconciler.start()
        logger.info("Services started (repos root %s)", self.store.repos_root)

    def stop(self) -> None:
        self.reconciler.stop()
        self.orchestrator.shutdown()


def build_services(config: Config, ai: AIProvider | None = None) -> Services:
    """Build the service graph. Pass ai to replace the claude CLI provider."""
    if ai is None:
        ai = ProviderManager(
            {
                DEFAULT_PROVIDER: ClaudeCLIProvider(
                    command=config.ai_command,
                    model=config.ai_model,
                    timeout=config.ai_timeout,
                )
            }
        )
    store = WorkspaceStore(
        config.repos_root,
        main_branch=config.main_branch,
        remote=config.remote,
        git_timeout=config.git_timeout,
        command_timeout=config.command_timeout,
    )
    planner = TaskPlanner(ai, verification_command=config.test_command)
    orchestrator = SessionOrchestrator(
        store,
        planner,
        ai,
        db_path=config.db_path,
        allowed_commands=config.allowed_commands,
        command_timeout=config.command_timeout,
        test_command=config.test_command,
        test_timeout=config.test_timeout,
        preview_command=config.preview_command,
        preview_timeout=config.preview_timeout,
        slack_token=config.slack_bot_token,
        slack_channel=config.slack_channel,
    )
    reconciler = BackgroundReconciler(
        store,
        interval=config.sync_interval,
        enabled=config.background_services,
        slack_token=config.slack_bot_token,
        slack_channel=config.slack_channel,
    )
    return Services(
        config=config,
        ai=ai,
        store=store,
        planner=planner,
        orchestrator=orchestrator,
        reconciler=reconciler,
        executor=WorkItemExecutor(store, orchestrator),
    )
