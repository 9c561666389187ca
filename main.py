from fastapi import FastAPI, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from dtos.chat_request import ChatRequest
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID
import logging

# Local imports
from config import ALLOWED_ORIGINS, LOG_LEVEL
from database import get_db, engine
from exceptions import NotFoundError, UpstreamUnavailableError
from models import Base, Thread, Message, User
from schemas import (
    ThreadCreate, ThreadUpdate, ThreadResponse, ThreadSummary, ThreadDetailResponse,
    ChildThreadResponse, Breadcrumb, BranchCreate, BranchResponse,
    MessageCreate, MessageResponse, UserCreate, UserResponse, Token, ModelInfo,
)
from services import (
    ThreadService, MessageService, BranchService, AuthService,
    StreamRelay, RelayState, get_upstream,
)
from services.upstream import ChatUpstream
from sqlalchemy.orm import Session

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")

    yield

    engine.dispose()


app = FastAPI(
    title="Branch Chat API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if ALLOWED_ORIGINS != ["*"] else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600
)


@app.get("/")
async def root():
    return {"message": "Hello World", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "branch-chat-api"}


# OAuth2 configuration
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


# Dependency to get current user from JWT token
async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    """Get current user from JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        raise credentials_exception

    token_payload = AuthService.decode_token(token)
    if token_payload is None or token_payload.type != "access":
        raise credentials_exception

    try:
        user_id = UUID(token_payload.sub)
    except ValueError:
        raise credentials_exception

    user = AuthService.get_user_by_id(db, user_id)
    if user is None or not user.is_active:
        raise credentials_exception

    return user


def get_chat_upstream() -> ChatUpstream:
    """Model backend dependency."""
    return get_upstream()


def get_relay(upstream: ChatUpstream = Depends(get_chat_upstream)) -> StreamRelay:
    """Stream relay dependency, one per request."""
    return StreamRelay(upstream)


def thread_response(thread: Thread) -> ThreadResponse:
    return ThreadResponse(
        id=thread.id,
        user_id=thread.user_id,
        title=thread.title,
        parent_thread_id=thread.parent_thread_id,
        parent_message_id=thread.parent_message_id,
        selected_context=thread.selected_context,
        created_at=thread.created_at,
        updated_at=thread.updated_at
    )


def message_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        thread_id=message.thread_id,
        role=message.role,
        content=message.content,
        selected_text=message.selected_text,
        created_at=message.created_at
    )


# Thread management endpoints
@app.get("/threads", response_model=List[ThreadSummary])
async def list_threads(
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> List[ThreadSummary]:
    """List the root threads of the authenticated user."""
    threads = ThreadService.list_root_threads(
        db=db,
        user_id=str(current_user.id),
        skip=skip,
        limit=limit
    )

    return [
        ThreadSummary(
            id=thread.id,
            title=thread.title,
            updated_at=thread.updated_at,
            child_count=child_count
        )
        for thread, child_count in threads
    ]


@app.post("/threads", response_model=ThreadResponse)
async def create_thread(
    thread: ThreadCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Create a new conversation thread, optionally as a branch of another one."""
    try:
        db_thread = ThreadService.create_thread(
            db=db,
            user_id=str(current_user.id),
            thread_data=thread
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return thread_response(db_thread)


@app.get("/threads/{thread_id}", response_model=ThreadDetailResponse)
async def get_thread(
    thread_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadDetailResponse:
    """Get a thread with its messages, direct branches and breadcrumbs."""
    try:
        detail = ThreadService.get_thread_detail(
            db=db,
            thread_id=thread_id,
            user_id=str(current_user.id)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Thread not found")

    base = thread_response(detail.thread)

    return ThreadDetailResponse(
        **base.model_dump(),
        messages=[message_response(message) for message in detail.messages],
        child_threads=[
            ChildThreadResponse(
                id=child.id,
                title=child.title,
                selected_context=child.selected_context,
                parent_message_id=child.parent_message_id,
                created_at=child.created_at,
                child_count=child_count
            )
            for child, child_count in detail.children
        ],
        breadcrumbs=[
            Breadcrumb(id=crumb.id, title=crumb.title, selected_context=crumb.selected_context)
            for crumb in detail.breadcrumbs
        ]
    )


@app.patch("/threads/{thread_id}", response_model=ThreadResponse)
async def update_thread(
    thread_id: UUID,
    thread_update: ThreadUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Rename a thread."""
    try:
        updated_thread = ThreadService.rename_thread(
            db=db,
            thread_id=thread_id,
            user_id=str(current_user.id),
            title=thread_update.title
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Thread not found")

    return thread_response(updated_thread)


@app.delete("/threads/{thread_id}")
async def delete_thread(
    thread_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> dict:
    """Delete a thread together with all of its branches and messages."""
    try:
        ThreadService.delete_thread(
            db=db,
            thread_id=thread_id,
            user_id=str(current_user.id)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Thread not found")

    return {"success": True}


@app.post("/threads/{thread_id}/branches", response_model=BranchResponse)
async def create_branch(
    thread_id: UUID,
    branch: BranchCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> BranchResponse:
    """Branch a thread from a highlighted span of its conversation."""
    try:
        result = BranchService.create_branch(
            db=db,
            user_id=str(current_user.id),
            thread_id=thread_id,
            selected_text=branch.selected_text,
            parent_message_id=branch.parent_message_id,
            anchor_to_latest=branch.anchor_to_latest
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return BranchResponse(
        **thread_response(result.thread).model_dump(),
        child_count=result.child_count
    )


# Message endpoints
@app.post("/messages", response_model=MessageResponse)
async def create_message(
    message: MessageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> MessageResponse:
    """Store a conversation turn."""
    try:
        db_message = MessageService.create_message(
            db=db,
            user_id=str(current_user.id),
            message_data=message
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Thread not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return message_response(db_message)


# Model endpoints
@app.get("/models", response_model=List[ModelInfo])
async def list_models(
    current_user: User = Depends(get_current_user),
    upstream: ChatUpstream = Depends(get_chat_upstream)
) -> List[ModelInfo]:
    """List the models available for generation."""
    return await upstream.list_models()


@app.post("/chat")
async def chat(
    req: ChatRequest,
    current_user: User = Depends(get_current_user),
    relay: StreamRelay = Depends(get_relay)
):
    """
    Stream a model answer for the given conversation as chunked plain text.

    Each chunk is the next slice of generated text; the end of the response
    is the end of the stream. A failure before any text arrives is reported
    as 502, a failure later on aborts the response without its terminating
    chunk.
    """
    handle = relay.begin([turn.model_dump() for turn in req.messages], req.model)
    increments = handle.__aiter__()

    try:
        first = await increments.__anext__()
    except StopAsyncIteration:
        first = None

    if handle.state is RelayState.FAILED:
        logger.error(f"Chat failed for user {current_user.id}: {handle.error}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to get response from AI"
        )

    async def body():
        async with handle:
            if first is not None:
                yield first
            while True:
                try:
                    yield await increments.__anext__()
                except StopAsyncIteration:
                    break
        if handle.state is RelayState.FAILED:
            logger.error(f"Chat stream for user {current_user.id} ended early: {handle.error}")
            # Ends the chunked body without its terminating chunk
            raise UpstreamUnavailableError(handle.error)

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")


# Authentication endpoints
@app.post("/auth/signup", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    user_data: UserCreate,
    db: Session = Depends(get_db)
) -> UserResponse:
    """Register a new user."""
    if AuthService.get_user_by_email(db, user_data.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    if AuthService.get_user_by_username(db, user_data.username):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already taken"
        )

    user = AuthService.create_user(db, user_data)
    return UserResponse.model_validate(user)


@app.post("/auth/login", response_model=Token)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
) -> Token:
    """Login with username/email and password."""
    user = AuthService.authenticate_user(db, form_data.username, form_data.password)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )

    return Token(
        access_token=AuthService.create_access_token(user.id),
        refresh_token=AuthService.create_refresh_token(user.id)
    )


@app.get("/auth/me", response_model=UserResponse)
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
) -> UserResponse:
    """Get current user information."""
    return UserResponse.model_validate(current_user)
