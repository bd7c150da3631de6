"""
User directory implementations.

WHAT: Resolve a user id to a real profile (name, company, contact details)
WHY: Real identities are only shown after both governance fees are paid
HOW: StaticUserDirectory for local/dev data, HttpUserDirectory for a remote service
"""

from typing import Mapping, Optional

from ..core.config import settings
from ..utils.exceptions import CollaboratorUnavailableError
from ..utils.logger import get_logger
from .http_client import RetryingHttpClient
from .types import UserProfile

logger = get_logger(__name__)


class StaticUserDirectory:
    """In-memory directory seeded with known profiles."""

    def __init__(self, profiles: Optional[Mapping[str, UserProfile]] = None):
        self.profiles = dict(profiles or {})

    def add(self, profile: UserProfile):
        self.profiles[profile.user_id] = profile

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get(user_id)


class HttpUserDirectory:
    """
    Remote user directory.

    GET {USER_DIRECTORY_URL}/users/{user_id}
        200 -> {"id", "name", "profile_image", "email", "phone", "company_name"}
        404 -> unknown user
    """

    def __init__(self, http: Optional[RetryingHttpClient] = None):
        self.http = http or RetryingHttpClient(
            name="user_directory",
            base_url=settings.USER_DIRECTORY_URL,
            timeout=settings.COLLABORATOR_TIMEOUT,
            max_retries=settings.COLLABORATOR_MAX_RETRIES,
            retry_delay=settings.COLLABORATOR_RETRY_DELAY,
        )

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        response = self.http.request("GET", f"/users/{user_id}", allow_status=(404,))
        if response.status_code == 404:
            logger.info(f"Directory has no profile for {user_id}")
            return None

        data = self.http.json(response)
        try:
            return UserProfile(
                user_id=str(data.get("id", user_id)),
                name=data["name"],
                profile_image=data.get("profile_image"),
                email=data.get("email"),
                phone=data.get("phone"),
                company_name=data.get("company_name"),
            )
        except KeyError as e:
            raise CollaboratorUnavailableError("user_directory", f"invalid response: missing {e}") from e
