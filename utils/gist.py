"""
GitHub Gist Client Utilities

Async client for the GitHub Gist API, used as the remote backup for the
offer dataset and cursor documents. Reads work without a token for public
Gists; writes require a token that belongs to the Gist owner and carries the
`gist` scope.
"""

import logging
from typing import Any, Optional

import httpx
import orjson

from utils.config import Settings
from utils.errors import GistAccessError

logger = logging.getLogger(__name__)

GITHUB_ACCEPT = "application/vnd.github.v3+json"


class GistClient:
    """Read and update the files of a single Gist."""

    def __init__(
        self,
        gist_id: str,
        token: Optional[str] = None,
        api_base: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize Gist client.

        Args:
            gist_id: ID of the backup Gist
            token: GitHub token; optional for reading public Gists
            api_base: GitHub API root URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.gist_id = gist_id
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GistClient":
        if not settings.GIST_ID:
            raise ValueError("GIST_ID is not configured")
        return cls(
            gist_id=settings.GIST_ID,
            token=settings.GITHUB_TOKEN,
            api_base=settings.GITHUB_API_BASE,
            timeout=settings.GITHUB_TIMEOUT,
            transport=transport,
        )

    @property
    def can_write(self) -> bool:
        return bool(self.token)

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": GITHUB_ACCEPT, "User-Agent": "compfeed-backend"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def fetch_gist(self) -> dict[str, Any]:
        """Fetch the Gist metadata including file contents.

        Raises:
            httpx.HTTPStatusError: If the Gist cannot be read
        """
        async with self._client() as client:
            response = await client.get(f"/gists/{self.gist_id}")
            response.raise_for_status()
            return response.json()

    async def read_files(self, *names: str) -> dict[str, Optional[str]]:
        """Return the contents of the named files (None for missing files)."""
        gist = await self.fetch_gist()
        files = gist.get("files") or {}
        contents: dict[str, Optional[str]] = {}
        for name in names:
            entry = files.get(name)
            contents[name] = entry.get("content") if entry else None
        return contents

    async def verify_write_access(self) -> None:
        """Check that the token may update this Gist.

        The Gist must be readable, the token's user must own it, and the token
        must carry the `gist` scope. If the token's user cannot be determined
        the ownership check is skipped.

        Raises:
            GistAccessError: If the token is not authorized for this Gist
        """
        if not self.token:
            raise GistAccessError("GITHUB_TOKEN is not configured; cannot write to Gist")

        async with self._client() as client:
            gist_response = await client.get(f"/gists/{self.gist_id}")
            if gist_response.is_error:
                detail = _error_message(gist_response)
                raise GistAccessError(
                    f"Cannot access Gist (read failed): {gist_response.status_code} - {detail}. "
                    f"Verify the Gist ID ({self.gist_id}) is correct, the token has the 'gist' scope "
                    f"and belongs to the Gist owner."
                )

            gist_owner = (gist_response.json().get("owner") or {}).get("login", "unknown")
            logger.info("Gist accessible (id=%s, owner=%s)", self.gist_id, gist_owner)

            user_response = await client.get("/user")
            if user_response.is_error:
                logger.warning(
                    "Could not verify token owner (status: %s)", user_response.status_code
                )
                return

            token_owner = user_response.json().get("login")
            if token_owner != gist_owner:
                raise GistAccessError(
                    f"Token owner ({token_owner}) does not match Gist owner ({gist_owner}). "
                    f"The token must belong to the Gist owner to update it."
                )

            scopes = user_response.headers.get("x-oauth-scopes", "")
            if "gist" not in [scope.strip() for scope in scopes.split(",")]:
                raise GistAccessError(
                    f"Token is missing 'gist' scope. Current scopes: {scopes or 'none'}."
                )

    async def update_files(self, files: dict[str, str]) -> None:
        """Replace the contents of the given files, leaving other files untouched.

        Args:
            files: Mapping of filename to new content

        Raises:
            GistAccessError: If no token is configured
            httpx.HTTPStatusError: If GitHub rejects the update
        """
        if not self.token:
            raise GistAccessError("GITHUB_TOKEN is not configured; cannot write to Gist")

        body = orjson.dumps({"files": {name: {"content": content} for name, content in files.items()}})

        async with self._client() as client:
            response = await client.patch(
                f"/gists/{self.gist_id}",
                content=body,
                headers={"Content-Type": "application/json"},
            )
            if response.is_error:
                logger.error(
                    "GitHub API error updating Gist",
                    extra={"status": response.status_code, "error": _error_message(response)},
                )
            response.raise_for_status()

        logger.info("Updated Gist %s (files=%s)", self.gist_id, ", ".join(files))


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text[:200]
