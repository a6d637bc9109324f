from fastapi import FastAPI, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Optional

import time
import uuid
from datetime import datetime, timezone

from . import crud, game
from .auth import AdminAuthenticator
from .config import Settings
from .deps import get_authenticator, get_service, request_token, require_admin
from .errors import AuthenticationRequired, GameError, InvalidInput, StorageError
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .realtime_publisher import NatsPublisher
from .schemas import CreateGameRequest, LoginRequest, RevealLieRequest, SessionBody, VoteRequest
from .service import GameService

VERSION = "1.0.0"

setup_logging()
logger = get_logger("twotruths")
app = FastAPI(title="Two Truths and a Lie", version=VERSION)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        csp = " ".join([
            "default-src 'self';",
            "script-src 'self';",
            "style-src 'self' 'unsafe-inline';",
            "img-src 'self' data: blob: https:;",
            "media-src 'self' data: blob: https:;",
            "font-src 'self';",
            "connect-src 'self' ws: wss:;",
            "object-src 'none';",
            "base-uri 'self';",
            "frame-ancestors 'none'",
        ])
        response.headers['Content-Security-Policy'] = csp
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Permissions-Policy', 'geolocation=(), microphone=(), camera=()')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

_settings = Settings.from_env()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_origin_regex=r"https?://.+\.ngrok-free\.app",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    if exc.status_code >= 500:
        logger.error("service_error", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("storage_error", extra={"path": request.url.path})
    err = StorageError()
    return JSONResponse(status_code=err.status_code, content=err.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": errors})
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {"message": "Input validation failed", "code": InvalidInput.code},
            "detail": errors,
            "message": "Input validation failed",
        }
    )


@app.on_event("startup")
async def on_startup():
    settings = Settings.from_env()
    crud.init_engine(settings.database_url)
    authenticator = AdminAuthenticator(settings)
    publisher = NatsPublisher(settings.nats_url) if settings.nats_url else None
    service = GameService(settings, engine=crud.engine, publisher=publisher, authenticator=authenticator)
    app.state.settings = settings
    app.state.authenticator = authenticator
    app.state.service = service
    await service.start()
    logger.info("startup_complete", extra={"path": settings.database_url.split("://", 1)[0]})


@app.on_event("shutdown")
async def on_shutdown():
    service = getattr(app.state, "service", None)
    if service is not None:
        await service.stop()


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/health")
def api_health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


# admin authentication

@app.post("/api/auth/login")
def login(body: LoginRequest, authenticator: AdminAuthenticator = Depends(get_authenticator)):
    token = authenticator.login(body.username, body.password)
    if token is None:
        raise AuthenticationRequired("Invalid credentials")
    return {"success": True, "session": token, "message": "Authentication successful"}


@app.post("/api/auth/logout")
def logout(
    request: Request,
    body: Optional[SessionBody] = None,
    authenticator: AdminAuthenticator = Depends(get_authenticator),
):
    authenticator.logout(request_token(request, body.session if body else None))
    return {"success": True, "message": "Logged out successfully"}


@app.api_route("/api/auth/validate", methods=["GET", "POST"])
def validate_session(
    request: Request,
    body: Optional[SessionBody] = None,
    authenticator: AdminAuthenticator = Depends(get_authenticator),
):
    token = request_token(request, body.session if body else None)
    if authenticator.authenticate(token) is None:
        return JSONResponse({"valid": False, "session": None}, status_code=401)
    return {"valid": True, "session": token}


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats(
    authenticator: AdminAuthenticator = Depends(get_authenticator),
    _: dict = Depends(require_admin),
):
    """Admin session cache statistics for monitoring"""
    return JSONResponse({
        "cache_stats": authenticator.cache.get_stats(),
        "status": "ok",
    })


@app.get("/api/auth/info")
def auth_info(authenticator: AdminAuthenticator = Depends(get_authenticator)):
    return {
        **authenticator.info(),
        "hasAdminCredentials": True,
    }


# games

@app.post("/api/games", status_code=201)
async def create_game(
    body: CreateGameRequest,
    request: Request,
    service: GameService = Depends(get_service),
    authenticator: AdminAuthenticator = Depends(get_authenticator),
):
    if authenticator.authenticate(request_token(request, body.session)) is None:
        raise AuthenticationRequired()
    g = await service.create_game(
        creator_session=body.creator_session,
        teammate_name=body.teammate_name,
        statements=body.statements,
        lie_index=body.lie_index,
        teammate_picture=body.teammate_picture,
        timer_duration=body.timer_duration,
        background_music=body.background_music,
    )
    return {
        "success": True,
        "game": {
            "id": g.id,
            "teammate_name": g.teammate_name,
            "teammate_picture": g.teammate_picture,
            "statements": g.statements,
            "timer_duration": g.timer_duration,
            "timer_start_time": game.isoformat(g.timer_start_time),
            "background_music": g.background_music,
            "created_at": game.isoformat(g.created_at),
        },
    }


@app.get("/api/games/{game_id}")
def get_game(game_id: str, service: GameService = Depends(get_service)):
    return {"success": True, "game": service.get_game_state(game_id)}


@app.put("/api/games/{game_id}/reveal-lie")
async def reveal_lie(game_id: str, body: RevealLieRequest, service: GameService = Depends(get_service)):
    if not body.creator_session:
        raise InvalidInput("Creator session required")
    result = await service.reveal_lie(game_id, requester_session=body.creator_session)
    return {
        "success": True,
        "message": "Lie already revealed" if result.already_revealed else "Lie revealed successfully",
        "lieIndex": result.lie_index,
        "alreadyRevealed": result.already_revealed,
        "revealedBy": result.revealed_by,
    }


@app.get("/api/games/{game_id}/stats")
def game_stats(game_id: str, service: GameService = Depends(get_service)):
    return {"success": True, "stats": service.stats(game_id)}


# votes

@app.post("/api/votes", status_code=201)
async def submit_vote(body: VoteRequest, request: Request, service: GameService = Depends(get_service)):
    snap = await service.cast_vote(
        body.game_id,
        body.user_session,
        body.voted_statement,
        user_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "success": True,
        "vote": {
            "id": snap.vote_id,
            "game_id": snap.game_id,
            "voted_statement": snap.voted_statement,
            "voted_at": game.isoformat(snap.voted_at),
        },
        "currentVotes": snap.votes,
        "totalVotes": snap.total,
    }


@app.get("/api/votes/game/{game_id}")
def game_votes(game_id: str, service: GameService = Depends(get_service)):
    return {"success": True, **service.vote_summary(game_id)}


@app.get("/api/votes/check/{game_id}/{user_session}")
def check_vote(game_id: str, user_session: str, service: GameService = Depends(get_service)):
    return {"success": True, **service.check_vote(game_id, user_session)}


@app.get("/api/votes/admin/{game_id}")
def admin_votes(
    game_id: str,
    service: GameService = Depends(get_service),
    _: dict = Depends(require_admin),
):
    votes = service.admin_votes(game_id)
    return {"success": True, "votes": votes, "totalVotes": len(votes)}


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    service: GameService = ws.app.state.service
    cid = service.connect(ws)
    logger.debug("ws_connected", extra={"connection_id": cid})
    try:
        while True:
            msg = await ws.receive_text()
            await service.handle_message(cid, msg)
    except WebSocketDisconnect:
        logger.debug("ws_disconnected", extra={"connection_id": cid})
    finally:
        await service.disconnect(cid)
