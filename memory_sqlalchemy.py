# backend/memory_sqlalchemy.py
import os
from datetime import datetime, timezone
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from db import SessionLocal
from models import User, Conversation, Message, DEFAULT_TITLE

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
NO_MESSAGES = "Start chatting..."
TITLE_MAX = 50
MAX_ID = 2**63 - 1

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


def to_iso(ts):
    """ISO-8601 with an explicit offset; naive values are stored as UTC."""
    if not ts:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def title_from(text):
    """Conversation title derived from the first question."""
    text = text.strip()
    return text[:TITLE_MAX] + "..." if len(text) > TITLE_MAX else text


def _public_user(user):
    return {
        "userId": user.id,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "email": user.email,
    }


def _entries(row):
    """Split one stored exchange into the user turn and the assistant turn."""
    out = []
    if row.question:
        out.append({"id": f"{row.id}-user", "text": row.question, "sender": "user", "timestamp": to_iso(row.created_at)})
    if row.answer:
        out.append({"id": f"{row.id}-ai", "text": row.answer, "sender": "ai", "timestamp": to_iso(row.created_at)})
    return out


class MemoryStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _session(self):
        return self.session_factory()

    # --- USER MANAGEMENT ---
    def create_user(self, first_name, last_name, email, password):
        """Insert a user with a bcrypt hash.

        Returns the public user dict, or None when the email is taken.
        """
        password_hash = pwd_context.hash(password)
        with self._session() as db:
            existing = db.scalars(select(User.id).where(User.email == email)).first()
            if existing is not None:
                return None
            user = User(
                first_name=first_name or "",
                last_name=last_name or "",
                email=email,
                password_hash=password_hash,
            )
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                # lost a race with a concurrent registration
                db.rollback()
                return None
            return _public_user(user)

    def verify_user(self, email, password):
        with self._session() as db:
            user = db.scalars(select(User).where(User.email == email)).first()
            if user is None:
                pwd_context.dummy_verify()
                return None
            if pwd_context.verify(password, user.password_hash):
                return _public_user(user)
            return None

    def get_user(self, user_id):
        with self._session() as db:
            user = db.get(User, user_id)
            return _public_user(user) if user else None

    # --- CONVERSATIONS ---
    def _owned(self, db, cid, user_id):
        if not 1 <= cid <= MAX_ID:
            return None
        stmt = select(Conversation).where(
            Conversation.id == cid,
            Conversation.user_id == user_id,
            Conversation.archived.is_(False),
        )
        return db.scalars(stmt).first()

    def _summary(self, db, conv):
        stmt = (
            select(Message)
            .where(Message.conversation_id == conv.id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        last = db.scalars(stmt).first()
        return {
            "id": conv.id,
            "title": conv.title,
            "lastMessage": last.answer if last and last.answer else NO_MESSAGES,
            "timestamp": to_iso(last.created_at if last else conv.created_at),
        }

    def create_conversation(self, user_id, title=None):
        title = (title or "").strip() or DEFAULT_TITLE
        now = datetime.utcnow()
        with self._session() as db:
            conv = Conversation(user_id=user_id, title=title, created_at=now, updated_at=now)
            db.add(conv)
            db.commit()
            return self._summary(db, conv)

    def get_all_conversations(self, user_id):
        with self._session() as db:
            stmt = (
                select(Conversation)
                .where(Conversation.user_id == user_id, Conversation.archived.is_(False))
                .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            )
            return [self._summary(db, c) for c in db.scalars(stmt).all()]

    def get_conversation(self, cid, user_id):
        with self._session() as db:
            conv = self._owned(db, cid, user_id)
            return self._summary(db, conv) if conv else None

    def rename_conversation(self, cid, user_id, title):
        with self._session() as db:
            conv = self._owned(db, cid, user_id)
            if not conv:
                return None
            conv.title = title.strip()
            db.commit()
            return self._summary(db, conv)

    def archive_conversation(self, cid, user_id):
        with self._session() as db:
            conv = self._owned(db, cid, user_id)
            if not conv:
                return False
            conv.archived = True
            db.commit()
            return True

    # --- MESSAGES ---
    def get_messages(self, cid, user_id):
        """Every exchange of an owned conversation as sequential chat entries.

        Returns None if the conversation is absent, archived or not the user's.
        """
        with self._session() as db:
            if not self._owned(db, cid, user_id):
                return None
            stmt = (
                select(Message)
                .where(Message.conversation_id == cid)
                .order_by(Message.created_at.asc(), Message.id.asc())
            )
            out = []
            for row in db.scalars(stmt).all():
                out.extend(_entries(row))
            return out

    def recent_exchanges(self, cid, last_n=5):
        """Last `last_n` (question, answer) pairs, oldest first."""
        with self._session() as db:
            stmt = (
                select(Message)
                .where(Message.conversation_id == cid)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(last_n)
            )
            rows = list(reversed(db.scalars(stmt).all()))
            return [(m.question, m.answer) for m in rows]

    def add_exchange(self, cid, user_id, question, answer):
        """Store one question/answer row and return both chat entries.

        Renames the conversation from the default title to a prefix of the
        question. Returns None if the conversation is not owned by the user.
        """
        now = datetime.utcnow()
        with self._session() as db:
            conv = self._owned(db, cid, user_id)
            if not conv:
                return None
            msg = Message(conversation_id=cid, question=question, answer=answer, created_at=now)
            db.add(msg)
            conv.updated_at = now
            if conv.title == DEFAULT_TITLE:
                conv.title = title_from(question)
            db.commit()
            user_entry, ai_entry = _entries(msg)
            return {"userMessage": user_entry, "aiMessage": ai_entry}
