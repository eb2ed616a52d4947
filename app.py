import os
from datetime import datetime, timedelta
from typing import Optional
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import select, func
from jose import jwt, JWTError
import logging

# Internal modules
import answer_once as ao
from db import Base, engine, SessionLocal
from memory_sqlalchemy import MemoryStore, to_iso

load_dotenv()

# --- CONFIG ---
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
ALLOW_REGISTRATION = os.getenv("ALLOW_REGISTRATION", "true").lower() in {"1", "true", "yes", "on"}
PORT = int(os.getenv("PORT", "5001"))

Base.metadata.create_all(bind=engine)

app = FastAPI(title="AI-Do API")
memory = MemoryStore()
logger = logging.getLogger("uvicorn.error")

origins = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- MODELS ---
class UserRegister(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: str = ""
    password: str = ""

class UserLogin(BaseModel):
    email: str = ""
    password: str = ""

class ConversationCreate(BaseModel):
    title: Optional[str] = None

class ConversationUpdate(BaseModel):
    title: str = ""

class MessageCreate(BaseModel):
    text: str = ""

# --- ERRORS ---
@app.exception_handler(StarletteHTTPException)
async def http_error(request, exc):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

@app.exception_handler(RequestValidationError)
async def validation_error(request, exc):
    return JSONResponse(status_code=400, content={"error": "invalid request"})

@app.exception_handler(Exception)
async def server_error(request, exc):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "server error"})

# --- TOKENS ---
def sign_token(user: dict) -> str:
    payload = {
        "sub": str(user["userId"]),
        "userId": user["userId"],
        "email": user["email"],
        "exp": datetime.utcnow() + timedelta(days=TOKEN_EXPIRE_DAYS),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

# --- AUTH DEPENDENCY ---
def get_current_user(authorization: str = Header(None)) -> dict:
    """
    Validates the bearer token and returns {"userId", "email"}.
    Missing header -> 401, bad signature or expired -> 403.
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(401, "missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(403, "invalid or expired token")
    if payload.get("userId") is None:
        raise HTTPException(403, "invalid or expired token")
    return {"userId": payload["userId"], "email": payload.get("email")}

# --- AUTH ENDPOINTS ---
@app.post("/api/auth/register", status_code=201)
def register(user: UserRegister):
    if not ALLOW_REGISTRATION:
        raise HTTPException(403, "registration is disabled")
    email = user.email.strip()
    if not email or not user.password:
        raise HTTPException(400, "email and password required")

    created = memory.create_user(user.firstName, user.lastName, email, user.password)
    if not created:
        raise HTTPException(409, "email already in use")

    logger.info("Registered user %s", created["userId"])
    return {"user": created, "token": sign_token(created)}

@app.post("/api/auth/login")
def login(user: UserLogin):
    db_user = memory.verify_user(user.email.strip(), user.password)
    if not db_user:
        raise HTTPException(401, "Invalid Credentials")
    return {"user": db_user, "token": sign_token(db_user)}

@app.get("/api/auth/me")
def me(current: dict = Depends(get_current_user)):
    user = memory.get_user(current["userId"])
    if not user:
        raise HTTPException(404, "user not found")
    return {"user": user}

# --- CONVERSATIONS ---
@app.get("/api/conversations")
def get_conversations(current: dict = Depends(get_current_user)):
    return memory.get_all_conversations(current["userId"])

@app.post("/api/conversations", status_code=201)
def create_conversation(body: Optional[ConversationCreate] = None, current: dict = Depends(get_current_user)):
    title = body.title if body else None
    return memory.create_conversation(current["userId"], title)

@app.patch("/api/conversations/{cid}")
def rename_conversation(cid: int, body: ConversationUpdate, current: dict = Depends(get_current_user)):
    if not body.title.strip():
        raise HTTPException(400, "title required")
    conv = memory.rename_conversation(cid, current["userId"], body.title)
    if not conv:
        raise HTTPException(404, "conversation not found")
    return conv

@app.post("/api/conversations/{cid}/archive")
def archive_conversation(cid: int, current: dict = Depends(get_current_user)):
    if not memory.archive_conversation(cid, current["userId"]):
        raise HTTPException(404, "conversation not found")
    return {"ok": True}

# --- MESSAGES ---
@app.get("/api/conversations/{cid}/messages")
def get_messages(cid: int, current: dict = Depends(get_current_user)):
    msgs = memory.get_messages(cid, current["userId"])
    if msgs is None:
        raise HTTPException(404, "conversation not found")
    return msgs

@app.post("/api/conversations/{cid}/messages")
def post_message(cid: int, body: MessageCreate, current: dict = Depends(get_current_user)):
    uid = current["userId"]
    text = body.text
    if not text.strip():
        raise HTTPException(400, "text required")

    if not memory.get_conversation(cid, uid):
        raise HTTPException(404, "conversation not found")

    # 1. Prompt from the last stored exchanges + the new turn
    history = memory.recent_exchanges(cid, last_n=ao.HISTORY_TURNS)
    result = ao.complete(history, text)
    if isinstance(result, ao.UpstreamError):
        logger.warning("Completion failed for conversation %s: %s", cid, result.reason)
        raise HTTPException(502, "completion failed")

    # 2. Save the exchange (renames a default-titled conversation)
    exchange = memory.add_exchange(cid, uid, text, result.text)
    if exchange is None:
        # archived while the completion was running
        raise HTTPException(404, "conversation not found")
    return exchange

# --- HEALTH ---
@app.get("/api/health")
def health():
    with SessionLocal() as db:
        now = db.execute(select(func.current_timestamp())).scalar()
    if isinstance(now, str):
        now = datetime.fromisoformat(now)
    return {"ok": True, "now": to_iso(now)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
