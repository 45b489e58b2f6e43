"""Applying hotswappable changes to the live resources."""

import asyncio
import logging

from botocore.exceptions import WaiterError

from stackshift.aws.session import AwsSession
from stackshift.errors import HotswapApplyError
from stackshift.models import HotswappableChange

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10


def _waiter_state(err: WaiterError) -> str:
    # botocore reports an exhausted waiter as "Max attempts exceeded"
    if "Max attempts exceeded" in str(err.kwargs.get("reason", "")):
        return "TIMEOUT"
    return "FAILURE"


async def apply_hotswappable_change(session: AwsSession, change: HotswappableChange) -> None:
    """Apply one change, tagging its service calls with a user agent marker."""
    custom_user_agent = f"cdk-hotswap/success-{change.service}"
    session.append_custom_user_agent(custom_user_agent)

    for name in change.resource_names:
        logger.info("   %s", name)

    try:
        await change.apply(session)
    except WaiterError as err:
        raise HotswapApplyError(
            _waiter_state(err), err.kwargs.get("reason"), name=err.kwargs.get("name", "TimeoutError")
        ) from err

    for name in change.resource_names:
        logger.info("%s hotswapped!", name)
    # Left in place on failure so the failed call is attributed
    session.remove_custom_user_agent(custom_user_agent)


async def apply_all_hotswappable_changes(
    session: AwsSession,
    changes: list[HotswappableChange],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> None:
    """Apply every change with bounded concurrency.

    All operations run to completion; the first failure is raised afterwards.
    """
    if changes:
        logger.info("hotswapping resources:")

    semaphore = asyncio.Semaphore(max_concurrent)

    async def limited(change: HotswappableChange) -> None:
        async with semaphore:
            await apply_hotswappable_change(session, change)

    results = await asyncio.gather(*(limited(c) for c in changes), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
