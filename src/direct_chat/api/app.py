"""
FastAPI Application Module

Local HTTP bridge between a presentation layer (login screen, conversation
list, chat view) and the chat core. One process serves one device, so the
bridge holds a single authenticated session at a time.

Key Features:
- Session login/registration/logout with typed error mapping
- Conversation list backed by the recency index
- Open/send/read/close for direct-message chats
- Structured logging, Prometheus counters and OpenTelemetry tracing
"""

import base64
import binascii
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..container import ChatServices, build_services
from ..domain.errors import AuthFailure, ChatError, SessionFailure, StoreFailure
from ..domain.models import Credentials, Message, ProfileDraft, RecentConversationEntry, UserProfile
from ..log import configure_logging

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
MESSAGES_SENT = Counter("messages_sent_total", "Messages accepted by the backend", registry=CUSTOM_REGISTRY)

logger = get_logger()

_STATUS = {
    AuthFailure.INVALID_CREDENTIALS: 401,
    AuthFailure.EMAIL_TAKEN: 409,
    AuthFailure.NETWORK_FAILURE: 503,
    StoreFailure.UNREACHABLE: 503,
    StoreFailure.NOT_FOUND: 404,
    SessionFailure.NO_ACTIVE_LOGIN: 401,
    SessionFailure.NOT_OPEN: 409,
}


class CredentialsIn(BaseModel):
    """Login request body"""
    email: str
    password: str


class RegisterIn(CredentialsIn):
    """Registration request body; the avatar is base64 encoded"""
    avatar_b64: Optional[str] = None


class SessionOut(BaseModel):
    uid: Optional[str] = None


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: str


class ChatOut(BaseModel):
    peer_id: str
    state: str
    messages: List[Message]


def _http_error(error: ChatError) -> HTTPException:
    ERRORS.inc()
    return HTTPException(
        status_code=_STATUS.get(error.reason, 500),
        detail={"error": type(error).__name__, "reason": error.reason.value},
    )


def get_services(request: Request) -> ChatServices:
    """Returns the service graph bound to the app"""
    return request.app.state.services


def create_app(services: Optional[ChatServices] = None) -> FastAPI:
    services = services or build_services()
    configure_logging(services.settings.log_level, services.settings.json_logs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Restores any provider-held session and closes chats on shutdown"""
        app.state.services.sessions.restore()
        logger.info("application_startup_complete")
        yield
        app.state.services.close_all()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Direct Chat Bridge",
        description="Local bridge from the chat UI to the direct-message core",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Counts and logs every request"""
        REQUESTS.inc()
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            return await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    @app.post("/session/login", response_model=SessionOut)
    async def login(body: CredentialsIn, services: ChatServices = Depends(get_services)) -> SessionOut:
        """Signs in with email and password"""
        try:
            uid = await services.sessions.login(Credentials(email=body.email, password=body.password))
        except ChatError as e:
            raise _http_error(e)
        return SessionOut(uid=uid)

    @app.post("/session/register", response_model=SessionOut)
    async def register(body: RegisterIn, services: ChatServices = Depends(get_services)) -> SessionOut:
        """Creates an account, its profile and optional avatar"""
        avatar = None
        if body.avatar_b64:
            try:
                avatar = base64.b64decode(body.avatar_b64, validate=True)
            except binascii.Error:
                raise HTTPException(status_code=422, detail="avatar_b64 is not valid base64")
        try:
            uid = await services.sessions.register(
                Credentials(email=body.email, password=body.password),
                ProfileDraft(avatar=avatar),
            )
        except ChatError as e:
            raise _http_error(e)
        return SessionOut(uid=uid)

    @app.post("/session/logout", response_model=SessionOut)
    async def logout(services: ChatServices = Depends(get_services)) -> SessionOut:
        """Ends the session and closes every open chat"""
        services.close_all()
        await services.sessions.logout()
        return SessionOut(uid=None)

    @app.get("/session", response_model=SessionOut)
    async def current_session(services: ChatServices = Depends(get_services)) -> SessionOut:
        return SessionOut(uid=services.sessions.current_user())

    @app.get("/users", response_model=List[UserProfile])
    async def list_users(services: ChatServices = Depends(get_services)) -> List[UserProfile]:
        """Lists other users to start a conversation with"""
        try:
            uid = services.require_user()
            return await services.profiles.list_profiles(exclude=uid)
        except ChatError as e:
            raise _http_error(e)

    @app.put("/users/me/avatar", response_model=UserProfile)
    async def upload_avatar(request: Request, services: ChatServices = Depends(get_services)) -> UserProfile:
        """Uploads the raw request body as the current user's avatar"""
        data = await request.body()
        if not data:
            raise HTTPException(status_code=422, detail="Avatar body is empty")
        try:
            uid = services.require_user()
            return await services.profiles.upload_avatar(uid, data)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ChatError as e:
            raise _http_error(e)

    @app.get("/users/{uid}", response_model=UserProfile)
    async def get_user(uid: str, services: ChatServices = Depends(get_services)) -> UserProfile:
        try:
            return await services.profiles.get(uid)
        except ChatError as e:
            raise _http_error(e)

    @app.get("/conversations", response_model=List[RecentConversationEntry])
    async def list_conversations(
        services: ChatServices = Depends(get_services),
    ) -> List[RecentConversationEntry]:
        """Gets the current user's conversations, most recent first"""
        try:
            return await services.index.recent(services.require_user())
        except ChatError as e:
            raise _http_error(e)

    @app.post("/chats/{peer_id}", response_model=ChatOut)
    async def open_chat(peer_id: str, services: ChatServices = Depends(get_services)) -> ChatOut:
        try:
            await services.profiles.get(peer_id)
            chat = await services.open_chat(peer_id)
        except ChatError as e:
            raise _http_error(e)
        return ChatOut(peer_id=peer_id, state=chat.state.value, messages=chat.messages)

    @app.get("/chats/{peer_id}/messages", response_model=List[Message])
    async def get_messages(peer_id: str, services: ChatServices = Depends(get_services)) -> List[Message]:
        """Gets the messages of the chat with a peer, oldest first"""
        try:
            chat = await services.open_chat(peer_id)
        except ChatError as e:
            raise _http_error(e)
        return chat.messages

    @app.post("/chats/{peer_id}/messages", response_model=Message)
    async def send_message(
        peer_id: str,
        body: MessageCreate,
        services: ChatServices = Depends(get_services),
    ) -> Message:
        """Sends a message to a peer"""
        try:
            chat = await services.open_chat(peer_id)
            message = await chat.send(body.content)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ChatError as e:
            logger.warning("send_failed", peer_id=peer_id, reason=e.reason.value)
            raise _http_error(e)
        MESSAGES_SENT.inc()
        return message

    @app.delete("/chats/{peer_id}", status_code=204)
    async def close_chat(peer_id: str, services: ChatServices = Depends(get_services)) -> Response:
        services.close_chat(peer_id)
        return Response(status_code=204)

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
