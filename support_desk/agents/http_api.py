from __future__ import annotations

import asyncio
import time
import uuid
from datetime import UTC, datetime
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from support_desk.agents.gateway import SessionGateway, WebSocketConnection
from support_desk.pipelines.summarize import summarize_conversation
from support_desk.schemas.models import (
    AssignAgentRequest,
    Conversation,
    ConversationStatus,
    CreateConversationRequest,
    IdentitySnapshot,
    ServiceStatusResponse,
    StatusUpdateRequest,
    UserProfile,
    UserRole,
    UserUpdateRequest,
)
from support_desk.utils.conversation_store import ConversationStore
from support_desk.utils.errors import AuthenticationFailure, InvalidPayload, NotFound, SupportDeskError
from support_desk.utils.identity import IdentityVerifier
from support_desk.utils.logging import get_logger
from support_desk.utils.observability import RequestMetrics, get_metrics
from support_desk.utils.presence import PresenceRegistry
from support_desk.utils.security import RateLimiter, bearer_token, require_identity, require_roles
from support_desk.utils.settings import Settings, get_settings
from support_desk.utils.storage import Database
from support_desk.utils.user_store import UserStore

log = get_logger(__name__)

WS_AUTH_FAILED_CLOSE_CODE = 4401

require_customer = require_roles(UserRole.customer)
require_staff = require_roles(UserRole.agent, UserRole.admin)
require_admin = require_roles(UserRole.admin)


def get_gateway(request: Request) -> SessionGateway:
    return request.app.state.gateway


def get_conversation_store(request: Request) -> ConversationStore:
    return request.app.state.conversations


def get_user_store(request: Request) -> UserStore:
    return request.app.state.users


def create_app(
    settings: Settings | None = None,
    *,
    metrics: RequestMetrics | None = None,
    presence: PresenceRegistry | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    metrics = metrics or get_metrics()
    database = Database(settings.database_path)
    users = UserStore(database)
    conversations = ConversationStore(database)
    verifier = IdentityVerifier(
        users,
        secret=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        expire_minutes=settings.access_token_expire_minutes,
    )
    gateway = SessionGateway(conversations, verifier, presence, settings=settings, metrics=metrics)

    cors_origins = settings.cors_origins or ["*"]
    app = FastAPI(title=settings.project_name, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.database = database
    app.state.users = users
    app.state.conversations = conversations
    app.state.verifier = verifier
    app.state.gateway = gateway
    app.state.rate_limiter = RateLimiter(limit=settings.api_rate_limit, window_seconds=settings.api_rate_window)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = uuid.uuid4().hex
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            metrics.record(request.url.path, duration_ms)
            log.error(
                "api_request_failed",
                path=request.url.path,
                duration_ms=duration_ms,
                request_id=request_id,
                error=str(exc),
            )
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(request.url.path, duration_ms)
        log.info(
            "api_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(SupportDeskError)
    async def support_desk_error_handler(request: Request, exc: SupportDeskError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationFailure) else None
        content = {"detail": exc.message, "code": exc.code}
        if exc.conversation_id:
            content["conversation_id"] = exc.conversation_id
        return JSONResponse(status_code=exc.http_status, content=content, headers=headers)

    _register_routes(app, settings)
    return app


def _register_routes(app: FastAPI, settings: Settings) -> None:
    prefix = settings.api_prefix

    @app.get("/")
    def root() -> dict:
        return {"message": f"Welcome to {settings.project_name}"}

    @app.get(f"{prefix}/auth/me", response_model=UserProfile)
    def read_me(
        identity: IdentitySnapshot = Depends(require_identity),
        users: UserStore = Depends(get_user_store),
    ) -> UserProfile:
        user = users.get_user(identity.user_id)
        if user is None:
            raise NotFound("User not found.")
        return user.to_profile()

    @app.post(f"{prefix}/conversations", response_model=Conversation, status_code=201)
    async def create_conversation(
        payload: CreateConversationRequest,
        identity: IdentitySnapshot = Depends(require_customer),
        gateway: SessionGateway = Depends(get_gateway),
    ) -> Conversation:
        return await gateway.create_conversation(
            identity,
            subject=payload.subject,
            initial_message_text=payload.initial_message_text,
        )

    @app.get(f"{prefix}/conversations", response_model=List[Conversation])
    def list_my_conversations(
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=10, ge=1, le=100),
        identity: IdentitySnapshot = Depends(require_identity),
        store: ConversationStore = Depends(get_conversation_store),
    ) -> List[Conversation]:
        if identity.role == UserRole.customer:
            return store.list_by_filter(customer_id=identity.user_id, skip=skip, limit=limit)
        return store.list_by_filter(agent_id=identity.user_id, skip=skip, limit=limit)

    @app.get(f"{prefix}/conversations/{{conversation_id}}", response_model=Conversation)
    async def read_conversation(
        conversation_id: str,
        identity: IdentitySnapshot = Depends(require_identity),
        gateway: SessionGateway = Depends(get_gateway),
    ) -> Conversation:
        return await gateway.get_conversation(conversation_id, identity)

    @app.patch(f"{prefix}/conversations/{{conversation_id}}/status", response_model=Conversation)
    async def update_conversation_status(
        conversation_id: str,
        payload: StatusUpdateRequest,
        identity: IdentitySnapshot = Depends(require_identity),
        gateway: SessionGateway = Depends(get_gateway),
    ) -> Conversation:
        return await gateway.update_status(conversation_id, identity, payload.new_status)

    @app.get(f"{prefix}/agent/conversations", response_model=List[Conversation])
    def agent_conversations(
        status: ConversationStatus | None = Query(default=None),
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=20, ge=1, le=100),
        identity: IdentitySnapshot = Depends(require_staff),
        store: ConversationStore = Depends(get_conversation_store),
    ) -> List[Conversation]:
        return store.list_by_filter(
            status=status,
            agent_id=identity.user_id,
            include_unassigned_open=True,
            skip=skip,
            limit=limit,
        )

    @app.get(f"{prefix}/admin/conversations", response_model=List[Conversation])
    def admin_conversations(
        status: ConversationStatus | None = Query(default=None),
        customer_id: str | None = Query(default=None),
        agent_id: str | None = Query(default=None),
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=20, ge=1, le=100),
        identity: IdentitySnapshot = Depends(require_admin),
        store: ConversationStore = Depends(get_conversation_store),
    ) -> List[Conversation]:
        return store.list_by_filter(
            status=status,
            customer_id=customer_id,
            agent_id=agent_id,
            skip=skip,
            limit=limit,
        )

    @app.post(f"{prefix}/admin/conversations/{{conversation_id}}/assign", response_model=Conversation)
    async def assign_conversation(
        conversation_id: str,
        payload: AssignAgentRequest,
        identity: IdentitySnapshot = Depends(require_admin),
        gateway: SessionGateway = Depends(get_gateway),
        users: UserStore = Depends(get_user_store),
    ) -> Conversation:
        agent = await asyncio.to_thread(users.get_user, payload.agent_id)
        if agent is None or agent.role not in (UserRole.agent, UserRole.admin):
            raise InvalidPayload(
                "Invalid agent ID or user is not an agent/admin.",
                conversation_id=conversation_id,
            )
        return await gateway.assign_agent(conversation_id, agent)

    @app.post(f"{prefix}/admin/conversations/{{conversation_id}}/summarize", response_model=Conversation)
    async def summarize_endpoint(
        conversation_id: str,
        identity: IdentitySnapshot = Depends(require_admin),
        store: ConversationStore = Depends(get_conversation_store),
    ) -> Conversation:
        result = await summarize_conversation(store, conversation_id)
        return result.conversation

    @app.get(f"{prefix}/admin/users", response_model=List[UserProfile])
    def admin_users(
        role: UserRole | None = Query(default=None),
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=50, ge=1, le=200),
        identity: IdentitySnapshot = Depends(require_admin),
        users: UserStore = Depends(get_user_store),
    ) -> List[UserProfile]:
        return [user.to_profile() for user in users.list_users(role=role, skip=skip, limit=limit)]

    @app.patch(f"{prefix}/admin/users/{{user_id}}", response_model=UserProfile)
    def admin_update_user(
        user_id: str,
        payload: UserUpdateRequest,
        identity: IdentitySnapshot = Depends(require_admin),
        users: UserStore = Depends(get_user_store),
    ) -> UserProfile:
        if user_id == identity.user_id and (
            payload.is_blocked
            or payload.is_active is False
            or (payload.role is not None and payload.role != UserRole.admin)
        ):
            raise HTTPException(
                status_code=403,
                detail="Admins cannot block, deactivate, or change their own role from admin.",
            )
        updated = users.update_user(user_id, payload.model_dump(exclude_unset=True))
        if updated is None:
            raise NotFound("User not found.")
        log.info("admin_user_updated", user_id=user_id, actor_id=identity.user_id)
        return updated.to_profile()

    @app.get(f"{prefix}/admin/status", response_model=ServiceStatusResponse)
    def service_status(
        identity: IdentitySnapshot = Depends(require_admin),
        gateway: SessionGateway = Depends(get_gateway),
        store: ConversationStore = Depends(get_conversation_store),
    ) -> ServiceStatusResponse:
        snapshot = app.state.metrics.snapshot()
        snapshot["conversations_by_status"] = store.count_by_status()
        stats = gateway.stats()
        return ServiceStatusResponse(
            generated_at=datetime.now(UTC),
            active_connections=stats["active_connections"],
            active_rooms=stats["active_rooms"],
            metrics=snapshot,
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        gateway: SessionGateway = websocket.app.state.gateway
        token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
        try:
            identity = await gateway.authenticate(token)
        except AuthenticationFailure as exc:
            await websocket.close(code=WS_AUTH_FAILED_CLOSE_CODE, reason=exc.message)
            return

        await websocket.accept()
        connection = WebSocketConnection(websocket)
        await gateway.connect(connection, identity)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await gateway.dispatch(connection.connection_id, raw)
        except WebSocketDisconnect:
            log.info("websocket_closed", connection_id=connection.connection_id)
        finally:
            await asyncio.shield(gateway.disconnect(connection.connection_id))


app = create_app()
