"""
Build pipeline.

A build crawls a site, runs the optimization stages over the crawled pages
and assets, migrates images to the content store and deploys the result.
BuildOrchestrator drives one build; the jobs package decides when.
"""

from .errors import (
    PipelineError,
    InvalidStateTransitionError,
    BuildNotFoundError,
    CrawlError,
    WorkspaceBusyError,
    BuildCancelledError,
    DeployError,
    WorkspaceError,
    PipelineTimeoutError,
)
from .models import Build, BuildScope, BuildStats, BuildStatus, Stage, STAGE_ORDER, stages_after
from .state import (
    TERMINAL_BUILD_STATES,
    ACTIVE_BUILD_STATES,
    is_build_terminal,
    can_transition_build,
    validate_build_transition,
    transition_build,
    advance_build,
)
from .events import BuildEvent, BuildEventBus, BuildEventType, BuildLogEvent, LogLevel, Subscription
from .checkpoints import Checkpoint, CheckpointStore
from .collaborators import CrawledAsset, CrawledPage, Crawler, Deployer, StaticCrawler, LocalDirectoryDeployer
from .workspace import Workspace, WorkspaceManager, page_output_path
from .context import BuildContext, PageState
from .stages import StageRunner
from .orchestrator import BuildOrchestrator, cancel_flag

__all__ = [
    # Errors
    "PipelineError",
    "InvalidStateTransitionError",
    "BuildNotFoundError",
    "CrawlError",
    "WorkspaceBusyError",
    "BuildCancelledError",
    "DeployError",
    "WorkspaceError",
    "PipelineTimeoutError",
    # Models
    "Build",
    "BuildScope",
    "BuildStats",
    "BuildStatus",
    "Stage",
    "STAGE_ORDER",
    "stages_after",
    # State machine
    "TERMINAL_BUILD_STATES",
    "ACTIVE_BUILD_STATES",
    "is_build_terminal",
    "can_transition_build",
    "validate_build_transition",
    "transition_build",
    "advance_build",
    # Events
    "BuildEvent",
    "BuildEventBus",
    "BuildEventType",
    "BuildLogEvent",
    "LogLevel",
    "Subscription",
    # Checkpoints
    "Checkpoint",
    "CheckpointStore",
    # Collaborators
    "CrawledAsset",
    "CrawledPage",
    "Crawler",
    "Deployer",
    "StaticCrawler",
    "LocalDirectoryDeployer",
    # Workspaces
    "Workspace",
    "WorkspaceManager",
    "page_output_path",
    # Execution
    "BuildContext",
    "PageState",
    "StageRunner",
    "BuildOrchestrator",
    "cancel_flag",
]
