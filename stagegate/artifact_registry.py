"""
Container registry client for artifact digest resolution.

Turns the tag the build pushed into a content-addressed reference, so every
stage of a run deploys exactly the same bytes.
"""

import logging
import re
from typing import Dict, Optional, Tuple

import httpx

from stagegate.errors import ArtifactResolutionError
from stagegate.models import DeployableRevision

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_auth_challenge(header: str) -> Dict[str, str]:
    """Parse a ``WWW-Authenticate: Bearer realm="...",service="..."`` header."""
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return {}
    return dict(_CHALLENGE_PARAM.findall(params))


class ArtifactRegistryClient:
    """Client for OCI distribution registries."""

    def __init__(
        self,
        username: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize registry client.

        Args:
            username: Registry username for token exchange
            token: Registry password or token for token exchange
            timeout: Request timeout in seconds
            client: Preconfigured HTTP client
        """
        self.username = username
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def resolve_image_digest(self, image_ref: str) -> Optional[str]:
        """
        Resolve an image reference to its digest.

        Args:
            image_ref: Image reference (e.g., "ghcr.io/acme/app:1.4.0")

        Returns:
            Image digest (e.g., "sha256:abc123...") or None if resolution fails
        """
        try:
            registry, repository, tag = self._parse_image_reference(image_ref)
            if tag.startswith("sha256:"):
                return tag

            url = f"https://{registry}/v2/{repository}/manifests/{tag}"
            headers = {"Accept": MANIFEST_MEDIA_TYPES}
            response = await self._client.head(url, headers=headers)

            if response.status_code == 401:
                auth_header = await self._get_auth_header(
                    response.headers.get("WWW-Authenticate", ""), repository
                )
                if auth_header:
                    headers["Authorization"] = auth_header
                    response = await self._client.head(url, headers=headers)

            if response.status_code == 200:
                digest = response.headers.get("Docker-Content-Digest")
                if digest:
                    logger.info(f"Resolved {image_ref} to {digest}")
                    return str(digest)
                logger.warning(f"No digest found for {image_ref}")
                return None

            logger.error(f"Failed to resolve {image_ref}: {response.status_code}")

        except httpx.HTTPError as e:
            logger.error(f"Error resolving image digest for {image_ref}: {e}")

        return None

    async def build_revision(
        self, image_ref: str, commit_sha: Optional[str] = None
    ) -> DeployableRevision:
        """
        Build the immutable artifact identifier for ``image_ref``.

        Raises:
            ArtifactResolutionError: If a tag cannot be resolved to a digest
        """
        if "@" in image_ref:
            return DeployableRevision(reference=image_ref, commit_sha=commit_sha)

        digest = await self.resolve_image_digest(image_ref)
        if not digest:
            raise ArtifactResolutionError(
                f"Could not resolve {image_ref} to a digest", {"image": image_ref}
            )
        return DeployableRevision(
            reference=f"{self._strip_tag(image_ref)}@{digest}",
            commit_sha=commit_sha,
            image_tag=image_ref,
        )

    def _strip_tag(self, image_ref: str) -> str:
        name, sep, tag = image_ref.rpartition(":")
        if sep and "/" not in tag:
            return name
        return image_ref

    def _parse_image_reference(self, image_ref: str) -> Tuple[str, str, str]:
        """
        Parse image reference into registry, repository, and tag.

        Args:
            image_ref: Full image reference

        Returns:
            Tuple of (registry, repository, tag)
        """
        if "://" in image_ref:
            image_ref = image_ref.split("://", 1)[1]

        parts = image_ref.split("/", 1)
        if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry = parts[0]
            remainder = parts[1]
        else:
            # Default to Docker Hub
            registry = "registry-1.docker.io"
            remainder = image_ref if "/" in image_ref else f"library/{image_ref}"

        if "@" in remainder:
            repository, tag = remainder.split("@", 1)
        elif ":" in remainder:
            repository, tag = remainder.rsplit(":", 1)
        else:
            repository = remainder
            tag = "latest"

        return registry, repository, tag

    async def _get_auth_header(self, challenge: str, repository: str) -> Optional[str]:
        """
        Exchange credentials for a bearer token as the registry's challenge asks.

        Args:
            challenge: WWW-Authenticate header from the 401 response
            repository: Repository name, for the default pull scope

        Returns:
            Authorization header value or None
        """
        params = parse_auth_challenge(challenge)
        realm = params.pop("realm", None)
        if not realm:
            logger.error(f"Registry returned an unsupported auth challenge: {challenge!r}")
            return None
        params.setdefault("scope", f"repository:{repository}:pull")

        auth = None
        if self.token:
            auth = (self.username or self.token, self.token)

        try:
            response = await self._client.get(realm, params=params, auth=auth)
            if response.status_code == 200:
                token_data = response.json()
                bearer = token_data.get("token") or token_data.get("access_token")
                if bearer:
                    return f"Bearer {bearer}"
                logger.error("No token in registry token response")
            else:
                logger.error(f"Failed to get registry token: {response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Error getting registry token: {e}")

        return None

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
