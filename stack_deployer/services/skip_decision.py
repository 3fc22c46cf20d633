"""Decides whether a deployment can be skipped without creating a change set."""

from ..core.logging_config import get_deploy_logger
from ..models.deployment import DeployStackOptions, StackSnapshot, Tag

logger = get_deploy_logger()


def compare_tags(a: list[Tag], b: list[Tag]) -> bool:
    """Whether two tag lists hold the same key/value pairs, ignoring order."""
    if len(a) != len(b):
        return False
    return {tag.key: tag.value for tag in a} == {tag.key: tag.value for tag in b}


def can_skip_deploy(
    options: DeployStackOptions, snapshot: StackSnapshot, parameter_changes: bool
) -> bool:
    """Check whether deploying would change nothing.

    The template is compared here instead of relying on the change set,
    because change sets always report nested stacks as modified.
    Only the first reason a deployment is needed gets logged.
    """
    deploy_name = options.deploy_name
    log = logger.bind(stack_name=deploy_name)
    log.debug("Checking if deployment can be skipped")

    if options.force:
        log.debug("Forced deployment")
        return False

    if not snapshot.exists:
        log.debug("No existing stack")
        return False

    # Asset parameters are already resolved at this point
    if options.stack.template != snapshot.template:
        log.debug("Template has changed")
        return False

    if not compare_tags(snapshot.tags, options.tags or []):
        log.debug("Tags have changed")
        return False

    if bool(options.termination_protection) != snapshot.termination_protection:
        log.debug("Termination protection has been updated")
        return False

    if parameter_changes:
        log.debug("Parameters have changed")
        return False

    if snapshot.status.is_failure:
        log.debug("Stack is in a failure state", status=str(snapshot.status))
        return False

    return True
