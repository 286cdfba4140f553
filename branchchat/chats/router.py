"""FastAPI routes for chats, messages, branch switching and speakers."""

from fastapi import APIRouter, Depends, HTTPException, status

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
from branchchat.chats.service import ChatNotFoundError, ChatService, InvalidMessageIdError
from branchchat.models import ChatMeta, Speaker
from branchchat.tree.engine import DuplicateNodeError, InvalidParentError, NodeNotFoundError
from branchchat.tree.navigator import InvalidBranchTargetError, TreeStructureError
from branchchat.wire.codec import WireConversation

router = APIRouter(prefix="/api/chats", tags=["chats"])
speakers_router = APIRouter(prefix="/api/speakers", tags=["speakers"])


def get_chat_service() -> ChatService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("ChatService not initialized")


# -- Chats --


@router.get("")
async def list_chats(
    service: ChatService = Depends(get_chat_service),
) -> list[ChatMeta]:
    return await service.list_chats()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_chat(
    request: CreateChatRequest,
    service: ChatService = Depends(get_chat_service),
) -> ChatMeta:
    return await service.create_chat(request)


@router.get("/{chat_id}")
async def get_chat(
    chat_id: str,
    service: ChatService = Depends(get_chat_service),
) -> WireConversation:
    try:
        return await service.get_chat(chat_id)
    except ChatNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat not found: {chat_id}")
    except TreeStructureError as e:
        raise HTTPException(status_code=500, detail=f"Chat {chat_id} is corrupted: {e}")


@router.patch("/{chat_id}")
async def rename_chat(
    chat_id: str,
    request: PatchChatRequest,
    service: ChatService = Depends(get_chat_service),
) -> SuccessResponse:
    try:
        return await service.rename_chat(chat_id, request)
    except ChatNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat not found: {chat_id}")


@router.delete("/{chat_id}")
async def delete_chat(
    chat_id: str,
    service: ChatService = Depends(get_chat_service),
) -> SuccessResponse:
    return await service.delete_chat(chat_id)


# -- Messages --


@router.post("/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
async def add_message(
    chat_id: str,
    request: AddMessageRequest,
    service: ChatService = Depends(get_chat_service),
) -> AddMessageResponse:
    try:
        return await service.add_message(chat_id, request)
    except ChatNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat not found: {chat_id}")
    except (InvalidMessageIdError, InvalidParentError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateNodeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TreeStructureError as e:
        raise HTTPException(status_code=500, detail=f"Chat {chat_id} is corrupted: {e}")


@router.patch("/{chat_id}/messages/{node_id}")
async def edit_message(
    chat_id: str,
    node_id: str,
    request: EditMessageRequest,
    service: ChatService = Depends(get_chat_service),
) -> SuccessResponse:
    try:
        return await service.edit_message(chat_id, node_id, request.content)
    except ChatNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat not found: {chat_id}")
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Message not found: {node_id}")
    except TreeStructureError as e:
        raise HTTPException(status_code=500, detail=f"Chat {chat_id} is corrupted: {e}")


@router.delete("/{chat_id}/messages/{node_id}")
async def delete_message(
    chat_id: str,
    node_id: str,
    service: ChatService = Depends(get_chat_service),
) -> SuccessResponse:
    try:
        return await service.delete_message(chat_id, node_id)
    except ChatNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat not found: {chat_id}")
    except TreeStructureError as e:
        raise HTTPException(status_code=500, detail=f"Chat {chat_id} is corrupted: {e}")


@router.post("/{chat_id}/switch-branch")
async def switch_branch(
    chat_id: str,
    request: SwitchBranchRequest,
    service: ChatService = Depends(get_chat_service),
) -> SuccessResponse:
    try:
        return await service.switch_branch(chat_id, request.target_leaf_id)
    except ChatNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat not found: {chat_id}")
    except InvalidBranchTargetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TreeStructureError as e:
        raise HTTPException(status_code=500, detail=f"Chat {chat_id} is corrupted: {e}")


# -- Speakers --


@speakers_router.get("")
async def list_speakers(
    service: ChatService = Depends(get_chat_service),
) -> list[Speaker]:
    return await service.list_speakers()


@speakers_router.post("", status_code=status.HTTP_201_CREATED)
async def create_speaker(
    request: CreateSpeakerRequest,
    service: ChatService = Depends(get_chat_service),
) -> Speaker:
    return await service.create_speaker(request)
