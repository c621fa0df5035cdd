from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import create_tables, SessionLocal
from .auth.lookup import SqlUserLookup
from .auth.models import User
from .auth.roles import Role, UserStatus
from .auth.router import router as auth_router
from .auth.utils import hash_password
from .chat.engine import ChatEngine
from .chat.persistence import PersistenceOutbox, SqlChatStore
from .chat.router import router as chat_router
from .chat.websocket import websocket_endpoint
from .admin.router import router as admin_router
from .errors import ChatError
from .logger import get_logger

logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    description="Real-time multi-room chat with presence and direct messages"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(admin_router)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# WebSocket endpoint for real-time chat
@app.websocket("/ws")
async def websocket_chat(websocket: WebSocket, token: Optional[str] = None):
    await websocket_endpoint(websocket, token)

@app.get("/health")
async def health_check(request: Request):
    engine: ChatEngine = request.app.state.engine
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "connections": engine.manager.get_connection_count(),
        "online_users": len(engine.presence.online_user_ids()),
        "persistence_failures": engine.outbox.failed if engine.outbox else 0,
    }


def ensure_owner_account():
    """Create the bootstrap owner account if it doesn't exist"""
    db = SessionLocal()
    try:
        username = settings.ADMIN_USERNAME.lower()
        if db.query(User).filter(User.username == username).first() is None:
            db.add(User(
                username=username,
                email=f"{username}@localhost",
                hashed_password=hash_password(settings.ADMIN_PASSWORD),
                display_name=username,
                role=Role.OWNER.value,
                status=UserStatus.APPROVED.value,
            ))
            db.commit()
            logger.info("Created owner account '%s'", username)
    finally:
        db.close()


@app.on_event("startup")
async def startup_event():
    """Initialize database, owner account and the chat engine"""
    create_tables()
    ensure_owner_account()

    engine = ChatEngine(store=SqlChatStore(SessionLocal), outbox=PersistenceOutbox())
    await engine.start(SqlUserLookup(SessionLocal), settings.DEFAULT_CHANNEL)
    app.state.engine = engine

    logger.info("%s is ready", settings.APP_NAME)
    logger.info("WebSocket: ws://localhost:8000/ws?token={jwt_token}")


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.engine.stop()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "roomcast.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
