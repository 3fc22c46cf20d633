"""Core exceptions for stack deployment operations.

Two kinds of fatal errors exist. ``UserActionableError`` subclasses describe a
situation the caller can fix (usually by bootstrapping the environment or
fixing configuration) and carry a copy-pasteable remediation command where
one exists. ``InternalConsistencyError`` subclasses describe states that
should never be reached and are better reported as bugs.
"""


class StackDeployError(Exception):
    """Base exception for stack deployment operations."""

    def __init__(
        self,
        message: str,
        *,
        stack_name: str | None = None,
        remediation: str | None = None,
    ):
        super().__init__(message)
        self.stack_name = stack_name
        self.remediation = remediation


class UserActionableError(StackDeployError):
    """The caller can resolve this error by changing input or environment."""


class InternalConsistencyError(StackDeployError):
    """The deployment reached a state that should not be possible."""


class ConfigurationError(UserActionableError):
    """Stack or environment configuration is invalid."""


class StagingEnvironmentRequired(UserActionableError):
    """The stack has assets but the environment has no staging resources."""


class MissingBootstrap(UserActionableError):
    """A minimum bootstrap version is required but no bootstrap stack exists."""


class StaleBootstrap(UserActionableError):
    """The bootstrap stack is older than the version the stack requires."""


class InvalidAssetConfiguration(UserActionableError):
    """An asset declaration is internally inconsistent."""


class TemplateTooLarge(UserActionableError):
    """The template must be uploaded but there is nowhere to upload it."""


class UnrecoverableFailedStack(UserActionableError):
    """A stack that failed to create could not be deleted."""


class DowngradeRejected(UserActionableError):
    """Refusing to replace a bootstrap stack with an older version."""


class MissingParameters(UserActionableError):
    """Template parameters without a value, default or previous value."""


class ChangeSetCreationFailed(UserActionableError):
    """CloudFormation could not create the change set."""


class StackDeployFailed(UserActionableError):
    """The stack did not reach a successful terminal status."""


class StackDestroyFailed(UserActionableError):
    """The stack did not reach DELETE_COMPLETE."""


class AssetPublishingError(UserActionableError):
    """One or more assets could not be published."""


class StackDisappeared(InternalConsistencyError):
    """The stack could not be read back right after it was deployed."""
