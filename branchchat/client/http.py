"""HTTP implementation of ChatTransport on top of httpx."""

import logging
import os
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from branchchat.chats.schemas import (
    AddMessageRequest,
    AddMessageResponse,
    CreateChatRequest,
    CreateSpeakerRequest,
    EditMessageRequest,
    PatchChatRequest,
    SuccessResponse,
    SwitchBranchRequest,
)
from branchchat.client.transport import ChatTransport, TransportError
from branchchat.models import ChatMeta, Speaker
from branchchat.wire.codec import MalformedPayloadError, WireConversation

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_API_URL = "http://localhost:8000/api"


class HttpChatTransport(ChatTransport):
    """Talks to the branchchat REST API.

    Pass an existing AsyncClient (e.g. one using ASGITransport in tests) or let
    the transport create one from base_url. Every failure surfaces as
    TransportError; deletes treat 404 as success.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url or os.environ.get("BRANCHCHAT_API_URL", DEFAULT_API_URL),
                timeout=timeout,
            )
            self._owns_client = True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Conversation tree --

    async def get_conversation(self, conversation_id: str) -> WireConversation:
        data = await self._request("GET", f"/chats/{conversation_id}")
        try:
            return WireConversation.model_validate(data)
        except ValidationError as e:
            raise MalformedPayloadError(f"invalid conversation payload: {e}") from e

    async def add_message(
        self,
        conversation_id: str,
        parent_id: str | None,
        content: str,
        speaker_id: str,
        is_bot: bool,
        created_at: int | None = None,
        node_id: str | None = None,
    ) -> AddMessageResponse:
        body = AddMessageRequest(
            id=node_id,
            parent_id=parent_id,
            content=content,
            speaker_id=speaker_id,
            is_bot=is_bot,
            created_at=created_at,
        )
        data = await self._request(
            "POST", f"/chats/{conversation_id}/messages",
            json=body.model_dump(by_alias=True, exclude_none=True),
        )
        return self._parse(AddMessageResponse, data)

    async def edit_message(
        self, conversation_id: str, node_id: str, content: str,
    ) -> SuccessResponse:
        data = await self._request(
            "PATCH", f"/chats/{conversation_id}/messages/{node_id}",
            json=EditMessageRequest(content=content).model_dump(),
        )
        return self._parse(SuccessResponse, data)

    async def delete_message(self, conversation_id: str, node_id: str) -> SuccessResponse:
        data = await self._request(
            "DELETE", f"/chats/{conversation_id}/messages/{node_id}", missing_ok=True,
        )
        return self._parse(SuccessResponse, data)

    async def switch_branch(
        self, conversation_id: str, target_leaf_id: str,
    ) -> SuccessResponse:
        body = SwitchBranchRequest(target_leaf_id=target_leaf_id)
        data = await self._request(
            "POST", f"/chats/{conversation_id}/switch-branch",
            json=body.model_dump(by_alias=True),
        )
        return self._parse(SuccessResponse, data)

    # -- Chats and speakers --

    async def list_chats(self) -> list[ChatMeta]:
        data = await self._request("GET", "/chats")
        return [self._parse(ChatMeta, item) for item in data]

    async def create_chat(
        self,
        name: str,
        character_ids: list[str] | None = None,
        persona_id: str | None = None,
        tags: list[str] | None = None,
    ) -> ChatMeta:
        body = CreateChatRequest(
            name=name,
            character_ids=character_ids or [],
            persona_id=persona_id,
            tags=tags or [],
        )
        data = await self._request("POST", "/chats", json=body.model_dump())
        return self._parse(ChatMeta, data)

    async def rename_chat(self, conversation_id: str, name: str) -> SuccessResponse:
        data = await self._request(
            "PATCH", f"/chats/{conversation_id}",
            json=PatchChatRequest(name=name).model_dump(),
        )
        return self._parse(SuccessResponse, data)

    async def delete_chat(self, conversation_id: str) -> SuccessResponse:
        data = await self._request("DELETE", f"/chats/{conversation_id}", missing_ok=True)
        return self._parse(SuccessResponse, data)

    async def list_speakers(self) -> list[Speaker]:
        data = await self._request("GET", "/speakers")
        return [self._parse(Speaker, item) for item in data]

    async def create_speaker(
        self,
        name: str,
        is_user: bool = False,
        avatar_url: str | None = None,
        color: str | None = None,
    ) -> Speaker:
        body = CreateSpeakerRequest(
            name=name, is_user=is_user, avatar_url=avatar_url, color=color,
        )
        data = await self._request("POST", "/speakers", json=body.model_dump())
        return self._parse(Speaker, data)

    # -- Internals --

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        missing_ok: bool = False,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransportError(str(e) or type(e).__name__) from e

        if missing_ok and response.status_code == 404:
            # Already gone: deletes are idempotent
            return {"success": True}

        if response.is_error:
            raise TransportError(self._error_detail(response), response.status_code)

        if response.status_code == 204 or not response.content:
            return {"success": True}
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"invalid JSON from {path}", response.status_code) from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.reason_phrase or "API request failed"
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or "API request failed")
        return "API request failed"

    @staticmethod
    def _parse(model: type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TransportError(f"unexpected response shape: {e}") from e
