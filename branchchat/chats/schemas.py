"""Request and response schemas for chat, message and speaker endpoints.

Shared by the reference server and the HTTP client so both sides agree on
field names. Message requests use camelCase keys on the wire.
"""

from pydantic import BaseModel, ConfigDict, Field

# -- Requests --


class CreateChatRequest(BaseModel):
    name: str
    character_ids: list[str] = Field(default_factory=list)
    persona_id: str | None = None
    tags: list[str] = Field(default_factory=list)


class PatchChatRequest(BaseModel):
    name: str | None = None


class AddMessageRequest(BaseModel):
    """Body of POST /api/chats/{chat_id}/messages.

    `id` lets the client pre-generate the node id it already shows optimistically.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    parent_id: str | None = Field(default=None, alias="parentId")
    content: str
    speaker_id: str = Field(alias="speakerId")
    is_bot: bool = Field(default=False, alias="isBot")
    created_at: int | None = Field(default=None, alias="createdAt")


class EditMessageRequest(BaseModel):
    content: str


class SwitchBranchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_leaf_id: str = Field(alias="targetLeafId")


class CreateSpeakerRequest(BaseModel):
    name: str
    avatar_url: str | None = None
    color: str | None = None
    is_user: bool = False


# -- Responses --


class AddMessageResponse(BaseModel):
    id: str
    created_at: int


class SuccessResponse(BaseModel):
    success: bool = True
