"""Page discovery clients and the bounded readiness poll."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Literal

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from a11yops.compliance_runner.errors import DiscoveryError, DiscoveryTimeoutError
from a11yops.compliance_runner.models.scan import Page

logger = logging.getLogger(__name__)

DiscoveryStatus = Literal["pending", "running", "completed", "failed"]


class DiscoveryListing(BaseModel):
    """Snapshot of a project's page discovery."""

    status: DiscoveryStatus = Field(..., description="Discovery run status")
    pages: list[Page] = Field(default_factory=list)
    message: str | None = Field(default=None, description="Failure detail")


class DiscoveryClient(ABC):
    """Abstract base for page discovery services."""

    @abstractmethod
    async def list_pages(self, project_id: str) -> DiscoveryListing:
        """Return the current discovery state and pages for a project.

        Args:
            project_id: Project whose pages are requested

        Returns:
            Discovery status and the pages found so far

        Raises:
            DiscoveryError: If the service can't be queried

        """


class HttpDiscoveryClient(DiscoveryClient):
    """Discovery service reached over HTTP."""

    def __init__(self, base_url: str, token: str | None = None) -> None:
        """Initialize client with the discovery service location."""
        self.base_url = base_url.rstrip("/")
        self.token = token

    async def list_pages(self, project_id: str) -> DiscoveryListing:
        """GET the project's page listing."""
        url = f"{self.base_url}/projects/{project_id}/pages"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, headers=headers) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise DiscoveryError(
                            f"Failed to list pages: {response.status} {text}"
                        )
                    data: Mapping[str, object] = await response.json()
        except aiohttp.ClientError as e:
            raise DiscoveryError(f"Discovery service error: {e}") from e

        try:
            return DiscoveryListing.model_validate(data)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid discovery response: {e}") from e


class StaticDiscoveryClient(DiscoveryClient):
    """Completed discovery over an explicit page list."""

    def __init__(self, pages: list[Page]) -> None:
        """Initialize client with the pages to report."""
        self.pages = list(pages)

    async def list_pages(self, project_id: str) -> DiscoveryListing:
        """Return the fixed page list as a completed discovery."""
        return DiscoveryListing(status="completed", pages=self.pages)


async def wait_for_pages(
    client: DiscoveryClient,
    project_id: str,
    timeout: float = 60,
    poll_interval: float = 2,
    is_cancelled: Callable[[], bool] | None = None,
) -> list[Page] | None:
    """Poll discovery until it completes.

    A failed request to the discovery service is logged and polled again
    until the deadline.

    Args:
        client: Discovery client
        project_id: Project to wait for
        timeout: Maximum wait time in seconds
        poll_interval: Seconds between polls
        is_cancelled: Checked before every poll; a true result stops waiting

    Returns:
        Discovered pages, or None if waiting was cancelled

    Raises:
        DiscoveryError: If discovery reported failure
        DiscoveryTimeoutError: If discovery doesn't complete within timeout

    """
    loop = asyncio.get_event_loop()
    end_time = loop.time() + timeout
    last_error: str | None = None

    while True:
        if is_cancelled is not None and is_cancelled():
            logger.info(f"Stopped waiting for discovery of project {project_id}")
            return None

        try:
            listing = await client.list_pages(project_id)
        except DiscoveryError as e:
            logger.warning(f"Discovery poll for project {project_id} failed: {e}")
            last_error = str(e)
        else:
            if listing.status == "completed":
                logger.info(
                    f"Discovery for project {project_id} found "
                    f"{len(listing.pages)} pages"
                )
                return listing.pages
            if listing.status == "failed":
                raise DiscoveryError(
                    f"Discovery for project {project_id} failed: "
                    f"{listing.message or 'no reason given'}"
                )

        if loop.time() >= end_time:
            detail = f" (last error: {last_error})" if last_error else ""
            raise DiscoveryTimeoutError(
                f"Discovery for project {project_id} did not complete "
                f"within {timeout} seconds{detail}"
            )

        await asyncio.sleep(poll_interval)
