"""
Bounded wait for a freshly created user profile.

The sign-up flow creates the profile row asynchronously, so right after
checkout it may not be visible yet. ``wait_for_profile`` retries with
exponential backoff and gives up with ``ProfileUnavailable``.
"""

import logging
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from tigube_api.config import Settings
from tigube_api.models.user import User
from tigube_api.services.entitlement_store import EntitlementStore, UserId
from tigube_api.services.errors import ProfileUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileWaitPolicy:
    attempts: int = 5
    initial_delay: float = 0.5
    max_delay: float = 4.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProfileWaitPolicy":
        return cls(
            attempts=settings.profile_wait_attempts,
            initial_delay=settings.profile_wait_initial_delay,
            max_delay=settings.profile_wait_max_delay,
        )


async def wait_for_profile(
    store: EntitlementStore,
    user_id: UserId,
    policy: ProfileWaitPolicy,
) -> User:
    """
    Return the user row once it exists.

    Raises:
        ProfileUnavailable: If the row is still missing after the last attempt.
        StoreError: If the store fails; not retried.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.initial_delay, max=policy.max_delay),
        retry=retry_if_result(lambda user: user is None),
        before_sleep=before_sleep_log(logger, logging.INFO),
    )
    try:
        return await retrying(store.get_user, user_id)
    except RetryError as e:
        logger.warning(f"Profile {user_id} not available after {policy.attempts} attempts")
        raise ProfileUnavailable(
            f"Profile {user_id} is not available yet",
            details={"user_id": str(user_id), "attempts": policy.attempts},
        ) from e
