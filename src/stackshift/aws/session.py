"""boto3 session wrapper shared by the orchestrator and the hotswap detectors."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import boto3

from stackshift.aws.client import CloudFormationClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    """The account and partition the session's credentials belong to."""

    account_id: str
    partition: str


class AwsSession:
    """Caches service clients and tags their requests with custom user agent markers.

    The markers are appended to the ``User-Agent`` header of every request made
    through a client of this session, so provider-side logs can attribute calls
    to the operation that made them.
    """

    def __init__(self, region: str | None = None, boto_session: boto3.Session | None = None):
        self._session = boto_session or boto3.Session(
            **({"region_name": region} if region else {})
        )
        self._clients: dict[str, Any] = {}
        self._user_agent_markers: list[str] = []
        self._account: Account | None = None
        self._cloudformation: CloudFormationClient | None = None

    @property
    def region(self) -> str | None:
        return self._session.region_name

    def append_custom_user_agent(self, marker: str | None) -> None:
        """Add a marker to the user agent of all subsequent requests."""
        if not marker or marker in self._user_agent_markers:
            return
        self._user_agent_markers.append(marker)

    def remove_custom_user_agent(self, marker: str) -> None:
        """Remove a marker previously added with append_custom_user_agent."""
        if marker in self._user_agent_markers:
            self._user_agent_markers.remove(marker)

    def client(self, service: str) -> Any:
        """Return a cached boto3 client for the given service."""
        if service not in self._clients:
            client = self._session.client(service)
            client.meta.events.register("request-created", self._add_user_agent_markers)
            self._clients[service] = client
        return self._clients[service]

    def _add_user_agent_markers(self, request: Any, **kwargs: Any) -> None:
        if not self._user_agent_markers:
            return
        user_agent = request.headers.get("User-Agent", "")
        if isinstance(user_agent, bytes):
            user_agent = user_agent.decode()
        request.headers["User-Agent"] = " ".join([user_agent, *self._user_agent_markers]).strip()

    def cloudformation(self) -> CloudFormationClient:
        if self._cloudformation is None:
            self._cloudformation = CloudFormationClient(self.client("cloudformation"))
        return self._cloudformation

    def lambda_(self) -> Any:
        return self.client("lambda")

    def appsync(self) -> Any:
        return self.client("appsync")

    def ecs(self) -> Any:
        return self.client("ecs")

    def codebuild(self) -> Any:
        return self.client("codebuild")

    def stepfunctions(self) -> Any:
        return self.client("stepfunctions")

    def s3(self) -> Any:
        return self.client("s3")

    async def current_account(self) -> Account:
        """Look up (once) the account and partition of the session's credentials."""
        if self._account is None:
            identity = await asyncio.to_thread(self.client("sts").get_caller_identity)
            partition = identity["Arn"].split(":")[1]
            self._account = Account(account_id=identity["Account"], partition=partition)
            logger.debug("Resolved account %s in partition %s", identity["Account"], partition)
        return self._account
