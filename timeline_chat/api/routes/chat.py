from __future__ import annotations

import uuid

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse

from timeline_chat.api import deps
from timeline_chat.llm_errors import ProviderError, StoreError, to_api_error
from timeline_chat.models.schemas import ChatRequest, ErrorDetail, ErrorResponse
from timeline_chat.services import logger as log_service
from timeline_chat.services.logger import logger

router = APIRouter(prefix="/api/chat", tags=["chat"])


def _error_response(
    status: int,
    code: str,
    message: str,
    request_id: str,
    *,
    details: dict | None = None,
    retry_after_sec: int | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(code=code, message=message, details=details, retry_after_sec=retry_after_sec),
        error_code=code,
        request_id=request_id,
    )
    headers = {"x-request-id": request_id}
    if retry_after_sec is not None:
        headers["Retry-After"] = str(retry_after_sec)
    return JSONResponse(
        status_code=status,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


@router.post("")
async def chat(
    request: ChatRequest,
    x_admin_token: str | None = Header(default=None),
    x_timeline_folder: str | None = Header(default=None),
):
    """Answer a timeline question from the folder's summaries and metadata."""
    request_id = str(uuid.uuid4())
    folder = deps.resolve_folder(x_timeline_folder)
    is_admin = deps.is_admin_token(x_admin_token)

    log_service.log_event(
        event_type="chat_started",
        message="Chat request received",
        request_id=request_id,
        folder=folder,
        advisor=request.advisor_mode,
        synthesis=request.synthesis_mode,
        allow_originals=request.allow_originals,
    )

    try:
        chat_settings = await deps.get_settings_store().read(folder)
        orchestrator = deps.build_orchestrator(folder)
        result = await orchestrator.chat(
            request,
            chat_settings,
            folder=folder,
            is_admin=is_admin,
            request_id=request_id,
        )
    except ProviderError as exc:
        api_error = to_api_error(exc, is_admin=is_admin)
        logger.warning(f"Chat {request_id} failed: {exc.provider} {exc.code} -> {api_error.status}")
        return _error_response(
            api_error.status,
            api_error.code,
            api_error.message,
            request_id,
            details=api_error.details,
            retry_after_sec=api_error.retry_after_sec,
        )
    except StoreError as exc:
        logger.error(f"Chat {request_id} store failure during {exc.operation}: {exc}")
        if exc.code == "upstream_timeout":
            return _error_response(504, "upstream_timeout", "Timeline storage timed out.", request_id)
        return _error_response(502, "upstream_error", "Timeline storage request failed.", request_id)

    return JSONResponse(
        content=result.to_response().model_dump(by_alias=True, exclude_none=True),
        headers={"x-request-id": request_id},
    )
