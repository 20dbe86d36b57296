"""Artifact registry client using httpx."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from shipctl.config import RegistryConfig
from shipctl.core.exceptions import NotFoundError, RegistryError, ValidationError
from shipctl.core.logging import StructuredLogger

logger = StructuredLogger(__name__)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class RegistryTag:
    """A published tag of a repository."""

    name: str
    last_updated: datetime | None = None
    digest: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RegistryTag":
        return cls(
            name=data["name"],
            last_updated=_parse_timestamp(data.get("last_updated")),
            digest=data.get("digest"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "digest": self.digest,
        }


class RegistryClient:
    """Client for a Docker Hub compatible tag listing API."""

    def __init__(
        self,
        config: RegistryConfig,
        transport: httpx.BaseTransport | None = None,
    ):
        self._config = config
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            token = self._config.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"

            self._client = httpx.Client(
                base_url=self._config.base_url.rstrip("/"),
                headers=headers,
                timeout=self._config.timeout,
                follow_redirects=True,
                transport=self._transport,
            )

            logger.debug("Created registry client", base_url=self._config.base_url)

        return self._client

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Make an API request."""
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()

            if response.content:
                return response.json()
            return None

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            try:
                error_data = e.response.json()
                message = error_data.get("message") or error_data.get("detail") or str(e)
            except ValueError:
                message = e.response.text or str(e)
            raise RegistryError(message, status_code=status_code)

        except httpx.RequestError as e:
            raise RegistryError(f"Request failed: {e}")

    def get(self, path: str, **kwargs: Any) -> Any:
        """Make a GET request."""
        return self._request("GET", path, **kwargs)

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @staticmethod
    def _split(repository: str) -> tuple[str, str]:
        parts = repository.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValidationError(
                f"Repository must look like 'namespace/name', got '{repository}'"
            )
        return parts[0], parts[1]

    # Tag operations
    def list_tags(
        self,
        repository: str,
        page_size: int | None = None,
    ) -> list[RegistryTag]:
        """List the most recent tags of ``repository``, newest first.

        Args:
            repository: ``namespace/name``
            page_size: Number of tags to fetch (defaults to config)

        Returns:
            Tags ordered by publish time, descending. Tags without a
            timestamp sort last.
        """
        namespace, name = self._split(repository)
        response = self.get(
            f"/repositories/{namespace}/{name}/tags",
            params={"page_size": page_size or self._config.page_size, "ordering": "last_updated"},
        )
        results = (response or {}).get("results", [])
        tags = [RegistryTag.from_api(item) for item in results if item.get("name")]

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        tags.sort(key=lambda t: t.last_updated or oldest, reverse=True)

        logger.debug("Fetched registry tags", repository=repository, count=len(tags))
        return tags

    def get_tag(self, repository: str, tag: str) -> RegistryTag:
        """Get a single tag.

        Raises:
            NotFoundError: If the tag does not exist
        """
        namespace, name = self._split(repository)
        try:
            data = self.get(f"/repositories/{namespace}/{name}/tags/{tag}")
        except RegistryError as e:
            if e.status_code == 404:
                raise NotFoundError(f"Tag '{tag}' not found in {repository}")
            raise
        return RegistryTag.from_api(data or {"name": tag})

    def tag_exists(self, repository: str, tag: str) -> bool:
        """Check whether ``tag`` is published."""
        try:
            self.get_tag(repository, tag)
        except NotFoundError:
            return False
        return True
