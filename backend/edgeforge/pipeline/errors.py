"""
Pipeline error types.

All errors inherit from PipelineError for easy catching.
Stage-fatal errors (CrawlError, WorkspaceBusyError, and the assets package's
MigrationSubsystemError) abort the build; everything else is handled per file.
"""


class PipelineError(Exception):
    """Base exception for all pipeline failures."""
    pass


class InvalidStateTransitionError(PipelineError):
    """Raised when attempting an illegal build state transition."""

    def __init__(self, entity_type: str, current_state: str, target_state: str):
        self.entity_type = entity_type
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid {entity_type} state transition: "
            f"{current_state} -> {target_state}"
        )


class BuildNotFoundError(PipelineError):
    """Raised when a build cannot be found."""

    def __init__(self, build_id: str):
        self.build_id = build_id
        super().__init__(f"Build not found: {build_id}")


class CrawlError(PipelineError):
    """Raised when the crawl collaborator fails or returns no pages."""

    def __init__(self, site_url: str, reason: str):
        self.site_url = site_url
        self.reason = reason
        super().__init__(f"Crawl failed for {site_url}: {reason}")


class WorkspaceBusyError(PipelineError):
    """Raised when a site's workspace is held by another build."""

    def __init__(self, site_id: str, holder_build_id: str):
        self.site_id = site_id
        self.holder_build_id = holder_build_id
        super().__init__(f"Workspace for site {site_id} is held by build {holder_build_id}")


class BuildCancelledError(PipelineError):
    """Raised inside a running build when cancellation has been requested."""

    def __init__(self, build_id: str, reason: str):
        self.build_id = build_id
        self.reason = reason
        super().__init__(f"Build {build_id} cancelled: {reason}")


class DeployError(PipelineError):
    """Raised when the deployment collaborator cannot publish the output tree."""

    def __init__(self, build_id: str, reason: str):
        self.build_id = build_id
        self.reason = reason
        super().__init__(f"Deploy failed for build {build_id}: {reason}")


class WorkspaceError(PipelineError):
    """Raised when a site workspace cannot be prepared or written."""

    def __init__(self, site_id: str, reason: str):
        self.site_id = site_id
        self.reason = reason
        super().__init__(f"Workspace unavailable for site {site_id}: {reason}")


class PipelineTimeoutError(PipelineError):
    """Raised when a build runs past its pipeline timeout."""

    def __init__(self, build_id: str, timeout_minutes: int):
        self.build_id = build_id
        self.timeout_minutes = timeout_minutes
        super().__init__(f"Build {build_id} exceeded its {timeout_minutes} minute timeout")
