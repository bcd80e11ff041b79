import hmac
import math
import logging
from typing import Annotated, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from . import grader
from .config import Settings, configure_logging
from .errors import AuthError, RateLimitError, RelayError, ValidationError
from .llm_client import ChatModel
from .rate_limiter import UNKNOWN_IDENTITY, RateLimiter
from .results_store import ResultsStore, Score

logger = logging.getLogger(__name__)

API_PREFIX = "/api/"
ACCESS_HEADER = "X-Access-Password"
INTERNAL_ERROR = "Internal server error."

MAX_TEXT_CHARS = 20_000
MAX_TOPIC_CHARS = 300
MAX_IMAGE_CHARS = 10_000_000
MAX_IMAGES = 10


# ---- Request bodies ---- #
class GenerateRequest(BaseModel):
    topic: str = Field("", max_length=MAX_TOPIC_CHARS)
    source_len_words: Optional[int] = Field(None, ge=50, le=3000)
    prompt_template: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)


class GradeRequest(BaseModel):
    source_text_de: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)
    task_en: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)
    student_text_en: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)
    rubric_prompt: str = Field("", max_length=MAX_TEXT_CHARS)


class OCRRequest(BaseModel):
    image_base64: str = Field(..., min_length=1, max_length=MAX_IMAGE_CHARS)


ImageData = Annotated[str, Field(min_length=1, max_length=MAX_IMAGE_CHARS)]


class ParseTaskRequest(BaseModel):
    images: List[ImageData] = Field(..., min_length=1, max_length=MAX_IMAGES)


class ModelAnswerRequest(BaseModel):
    source_text_de: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)
    task_en: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)


class SubmitResultRequest(BaseModel):
    student_name: str = Field(..., min_length=1, max_length=200)
    total: Score
    topic: Optional[str] = Field(None, max_length=MAX_TOPIC_CHARS)
    course: Optional[str] = Field(None, max_length=200)
    type: Optional[str] = Field(None, max_length=100)
    content: Optional[Score] = None
    language: Optional[Score] = None
    date: Optional[str] = Field(None, max_length=64)


class ResultsRequest(BaseModel):
    teacher_password: str = ""


class DeleteResultRequest(BaseModel):
    teacher_password: str = ""
    result_id: str = Field(..., min_length=1, max_length=64)


# ---- Middleware ---- #
def cors_headers(origin: Optional[str], allowed_origins: List[str]) -> dict:
    allow = origin if origin in allowed_origins else allowed_origins[0]
    return {
        "Access-Control-Allow-Origin": allow,
        "Access-Control-Allow-Headers": f"Content-Type, {ACCESS_HEADER}",
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Vary": "Origin",
    }


def error_response(exc: RelayError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


class CORSAllowListMiddleware(BaseHTTPMiddleware):
    """Answers preflights and stamps CORS headers on every response."""

    def __init__(self, app, allowed_origins: List[str]):
        super().__init__(app)
        self.allowed_origins = allowed_origins

    async def dispatch(self, request: Request, call_next):
        headers = cors_headers(request.headers.get("origin"), self.allowed_origins)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        response = await call_next(request)
        response.headers.update(headers)
        return response


class ApiGuardMiddleware(BaseHTTPMiddleware):
    """
    Auth and rate limiting for /api/* routes, plus the last-resort error handler.

    Unexpected exceptions are logged and answered with a generic 500 so no
    internal detail reaches the client.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            if request.url.path.startswith(API_PREFIX):
                self.authenticate(request)
                self.rate_limit(request)
            return await call_next(request)
        except RelayError as e:
            return error_response(e)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})

    @staticmethod
    def client_identity(request: Request) -> str:
        settings: Settings = request.app.state.settings
        return request.headers.get(settings.client_ip_header) or UNKNOWN_IDENTITY

    def authenticate(self, request: Request) -> None:
        expected = request.app.state.settings.require_access_password()
        supplied = request.headers.get(ACCESS_HEADER, "")
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            logger.warning("Rejected request to %s from %s: bad access password",
                           request.url.path, self.client_identity(request))
            raise AuthError("Not authorized. Wrong password.")

    def rate_limit(self, request: Request) -> None:
        identity = self.client_identity(request)
        decision = request.app.state.limiter.check(identity)
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s (%d requests)", identity, decision.count)
            raise RateLimitError("Too many requests. Please wait a minute and try again.",
                                 identity=identity, retry_after=math.ceil(decision.retry_after))


# ---- Exception handlers ---- #
async def relay_error_handler(request: Request, exc: RelayError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return error_response(exc)


def to_validation_error(exc: RequestValidationError) -> ValidationError:
    errors = exc.errors()
    if not errors:
        return ValidationError("Invalid request body.")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return ValidationError(message, field=field or None)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response(to_validation_error(exc))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)},
                        headers=getattr(exc, "headers", None))


def check_teacher_password(request: Request, supplied: str) -> None:
    expected = request.app.state.settings.require_teacher_password()
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("Wrong teacher password on %s", request.url.path)
        raise AuthError("Wrong teacher password.")


# ---- App ---- #
def create_app(settings: Settings = None, chat_model: ChatModel = None,
               results: ResultsStore = None, limiter: RateLimiter = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="Exam Relay API", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.chat_model = chat_model if chat_model is not None else ChatModel(settings)
    app.state.results = results if results is not None else ResultsStore.from_settings(settings)
    app.state.limiter = limiter if limiter is not None else RateLimiter.from_settings(settings)

    # added last runs first: CORS wraps the guard
    app.add_middleware(ApiGuardMiddleware)
    app.add_middleware(CORSAllowListMiddleware, allowed_origins=settings.allowed_origins)

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/generate")
    async def generate(body: GenerateRequest, request: Request):
        return await grader.generate_exam(request.app.state.chat_model, body.prompt_template,
                                          topic=body.topic, source_len_words=body.source_len_words)

    @app.post("/api/grade")
    async def grade(body: GradeRequest, request: Request):
        return await grader.grade_mediation(request.app.state.chat_model, body.source_text_de,
                                            body.task_en, body.student_text_en, body.rubric_prompt)

    @app.post("/api/ocr")
    async def ocr(body: OCRRequest, request: Request):
        return await grader.transcribe_image(request.app.state.chat_model, body.image_base64)

    @app.post("/api/parse-task")
    async def parse_task(body: ParseTaskRequest, request: Request):
        return await grader.parse_task(request.app.state.chat_model, body.images)

    @app.post("/api/model-answer")
    async def model_answer(body: ModelAnswerRequest, request: Request):
        return await grader.write_model_answer(request.app.state.chat_model, body.source_text_de, body.task_en)

    @app.post("/api/submit-result")
    async def submit_result(body: SubmitResultRequest, request: Request):
        return await request.app.state.results.submit(**body.model_dump())

    @app.post("/api/results")
    async def get_results(body: ResultsRequest, request: Request):
        check_teacher_password(request, body.teacher_password)
        return {"results": await request.app.state.results.list()}

    @app.post("/api/delete-result")
    async def delete_result(body: DeleteResultRequest, request: Request):
        check_teacher_password(request, body.teacher_password)
        return await request.app.state.results.delete(body.result_id)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
