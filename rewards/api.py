from contextlib import asynccontextmanager
from typing import Annotated
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .auth import AuthUser, get_current_user
from .config import get_settings
from .database import init_db
from .log import configure_logging
from .models import (
    CompleteSurveyRequest,
    CompletionHistoryResponse,
    CompletionRecordOut,
    StartSurveyRequest,
    WalletSnapshot,
)
from .postback import PostbackHandler
from .service import (
    CompletionProcessor,
    InvalidAmountError,
    NotAuthorizedError,
    RewardsError,
    StorageUnavailableError,
    SurveyAlreadyCompletedError,
    SurveyAlreadyStartedError,
    SurveyNotFoundError,
    SurveyUnavailableError,
    UserNotFoundError,
)
from .trigger import SurveyCompletionTrigger, authorize

POSTBACK_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

ERROR_STATUS = {
    NotAuthorizedError: status.HTTP_403_FORBIDDEN,
    UserNotFoundError: status.HTTP_404_NOT_FOUND,
    SurveyNotFoundError: status.HTTP_404_NOT_FOUND,
    SurveyAlreadyStartedError: status.HTTP_409_CONFLICT,
    SurveyAlreadyCompletedError: status.HTTP_409_CONFLICT,
    InvalidAmountError: status.HTTP_400_BAD_REQUEST,
    SurveyUnavailableError: status.HTTP_400_BAD_REQUEST,
    StorageUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_error(e: RewardsError) -> HTTPException:
    status_code = ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST)
    if isinstance(e, StorageUnavailableError):
        return HTTPException(status_code=status_code, detail="Temporarily unavailable, try again")
    return HTTPException(status_code=status_code, detail=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if get_settings().AUTO_CREATE_TABLES:
        init_db()
    yield


app = FastAPI(
    title="Survey Rewards Ledger API",
    description="Reward crediting and completion ledger for survey partner postbacks",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

processor = CompletionProcessor()


def get_processor() -> CompletionProcessor:
    return processor


def get_postback_handler(
    processor: Annotated[CompletionProcessor, Depends(get_processor)]
) -> PostbackHandler:
    return PostbackHandler(processor, get_settings().CPX_SECURE_HASH)


def get_trigger(
    processor: Annotated[CompletionProcessor, Depends(get_processor)]
) -> SurveyCompletionTrigger:
    return SurveyCompletionTrigger(processor)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "survey-rewards-ledger"}


@app.get("/cpx-postback", response_class=PlainTextResponse, tags=["Postbacks"])
def cpx_postback(
    request: Request,
    handler: Annotated[PostbackHandler, Depends(get_postback_handler)],
) -> PlainTextResponse:
    body = handler.handle(request.query_params)
    return PlainTextResponse(body, status_code=status.HTTP_200_OK, headers=POSTBACK_CORS_HEADERS)


@app.options("/cpx-postback", tags=["Postbacks"])
def cpx_postback_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=POSTBACK_CORS_HEADERS)


@app.post(
    "/surveys/{survey_id}/start",
    response_model=CompletionRecordOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Surveys"],
)
def start_survey(
    survey_id: UUID,
    request: StartSurveyRequest,
    caller: Annotated[AuthUser, Depends(get_current_user)],
    trigger: Annotated[SurveyCompletionTrigger, Depends(get_trigger)],
) -> CompletionRecordOut:
    try:
        return trigger.start_survey(caller, request.user_id, survey_id)
    except RewardsError as e:
        raise to_http_error(e)


@app.post("/completions", response_model=WalletSnapshot, tags=["Surveys"])
def complete_survey(
    request: CompleteSurveyRequest,
    caller: Annotated[AuthUser, Depends(get_current_user)],
    trigger: Annotated[SurveyCompletionTrigger, Depends(get_trigger)],
) -> WalletSnapshot:
    try:
        return trigger.complete_survey(
            caller, request.user_id, request.survey_id, request.reward_amount
        )
    except RewardsError as e:
        raise to_http_error(e)


@app.get("/users/{user_id}/wallet", response_model=WalletSnapshot, tags=["Users"])
def get_user_wallet(
    user_id: UUID,
    caller: Annotated[AuthUser, Depends(get_current_user)],
    processor: Annotated[CompletionProcessor, Depends(get_processor)],
) -> WalletSnapshot:
    try:
        authorize(caller, user_id)
        return processor.get_wallet(user_id)
    except RewardsError as e:
        raise to_http_error(e)


@app.get(
    "/users/{user_id}/completions",
    response_model=CompletionHistoryResponse,
    tags=["Users"],
)
def get_user_completions(
    user_id: UUID,
    caller: Annotated[AuthUser, Depends(get_current_user)],
    processor: Annotated[CompletionProcessor, Depends(get_processor)],
    limit: int = 50,
    offset: int = 0,
) -> CompletionHistoryResponse:
    try:
        authorize(caller, user_id)
        return processor.list_completions(user_id, limit, offset)
    except RewardsError as e:
        raise to_http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
