"""Client for the remote (edge) chat service.

All session-scoped routes live under ``/api/chat/{sessionId}``; session
management lives under ``/api/sessions``. httpx errors never leave this
module: connection failures become NetworkUnavailable and non-2xx answers
become RemoteHttpError.
"""

import logging
from typing import Callable, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .errors import EdgeMuseError, NetworkUnavailable, RemoteHttpError

logger = logging.getLogger(__name__)


class ChatRequestBody(BaseModel):
    """Request body for ``POST /api/chat/{sessionId}/chat``."""
    model_config = ConfigDict(populate_by_name=True)

    message: str
    model: str
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")


class CreateSessionBody(BaseModel):
    """Request body for ``POST /api/sessions``."""
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    first_message: Optional[str] = Field(default=None, alias="firstMessage")


def session_base(session_id: str) -> str:
    """Path prefix of the session-scoped chat routes."""
    return f"/api/chat/{quote(session_id, safe='')}"


class EdgeTransport:
    """
    HTTP client for the remote chat service.

    Non-streaming calls return the parsed JSON body (``{success, data?,
    error?}``). Streaming chat delivers decoded text fragments to
    ``on_chunk`` as they arrive.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Chat service URL is required")
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    async def close(self):
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    # =========================================================================
    # Plumbing
    # =========================================================================

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Server-provided ``error`` field, or ``HTTP {status}``."""
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP {response.status_code}"

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            response = await self.client.request(method, path, json=json)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {type(e).__name__}: {e}")
            raise NetworkUnavailable() from e

        if not response.is_success:
            message = self._error_message(response)
            logger.warning(f"{method} {path} returned {response.status_code}: {message}")
            raise RemoteHttpError(response.status_code, message)

        try:
            return response.json()
        except ValueError as e:
            raise EdgeMuseError(f"Invalid response from chat service ({path})") from e

    # =========================================================================
    # Chat
    # =========================================================================

    async def chat(
        self,
        session_id: str,
        message: str,
        model: str,
        options: Optional[dict] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> dict:
        """Send a message to the session's chat endpoint.

        With ``on_chunk`` the response is streamed and ``{"success": True}``
        is returned once the stream ends.
        """
        options = options or {}
        body = ChatRequestBody(
            message=message,
            model=model,
            stream=on_chunk is not None,
            temperature=options.get("temperature"),
            max_tokens=options.get("max_tokens"),
        ).model_dump(by_alias=True, exclude_none=True)
        path = f"{session_base(session_id)}/chat"

        if on_chunk is None:
            return await self._request("POST", path, json=body)

        chunk_count = 0
        try:
            async with self.client.stream("POST", path, json=body) as response:
                if not response.is_success:
                    await response.aread()
                    message_text = self._error_message(response)
                    logger.warning(f"Streaming chat returned {response.status_code}: {message_text}")
                    raise RemoteHttpError(response.status_code, message_text)

                async for chunk in response.aiter_text():
                    if chunk:
                        chunk_count += 1
                        on_chunk(chunk)
        except httpx.TransportError as e:
            logger.warning(f"Streaming chat failed after {chunk_count} chunks: {type(e).__name__}: {e}")
            raise NetworkUnavailable() from e

        logger.debug(f"Streaming chat complete: {chunk_count} chunks")
        return {"success": True}

    async def get_messages(self, session_id: str) -> dict:
        return await self._request("GET", f"{session_base(session_id)}/messages")

    async def clear_messages(self, session_id: str) -> dict:
        return await self._request("DELETE", f"{session_base(session_id)}/clear")

    async def update_model(self, session_id: str, model: str) -> dict:
        return await self._request("POST", f"{session_base(session_id)}/model", json={"model": model})

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        title: Optional[str] = None,
        session_id: Optional[str] = None,
        first_message: Optional[str] = None,
    ) -> dict:
        body = CreateSessionBody(
            title=title,
            session_id=session_id,
            first_message=first_message,
        ).model_dump(by_alias=True, exclude_none=True)
        return await self._request("POST", "/api/sessions", json=body)

    async def list_sessions(self) -> dict:
        return await self._request("GET", "/api/sessions")

    async def delete_session(self, session_id: str) -> dict:
        return await self._request("DELETE", f"/api/sessions/{quote(session_id, safe='')}")

    async def update_session_title(self, session_id: str, title: str) -> dict:
        return await self._request(
            "PUT",
            f"/api/sessions/{quote(session_id, safe='')}/title",
            json={"title": title},
        )

