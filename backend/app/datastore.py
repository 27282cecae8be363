"""Persistence collaborator for the real-time layer.

The socket code only talks to the ``Datastore`` protocol; ``SqlDatastore`` is
the SQLAlchemy implementation bound to one ORM session (one per websocket).
Every database error is rolled back and re-raised as PersistenceFailure so
handlers never see driver exceptions.
"""

import functools
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app.core.errors import PersistenceFailure
from app.models import (
    Call,
    Channel,
    ChannelMember,
    Mention,
    Message,
    Reaction,
    Thread,
    User,
    WorkspaceMember,
)
from app.models.message import DELETED_MESSAGE_CONTENT
from app.schemas.call import ActiveCallOut
from app.schemas.message import MessageOut

if TYPE_CHECKING:
    from app.services.calls import CallSession

logger = logging.getLogger(__name__)

ACTIVE_CALL_STATUSES = ("ringing", "connected")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Datastore(Protocol):
    def get_user(self, user_id: int) -> User | None: ...
    def get_user_by_username(self, username: str) -> User | None: ...
    def set_online(self, user_id: int, online: bool) -> datetime: ...
    def update_status(self, user_id: int, status: str, status_message: str | None) -> None: ...
    def user_statuses(self, user_ids: list[int]) -> dict[int, str]: ...
    def workspace_ids_for_user(self, user_id: int) -> list[int]: ...
    def is_workspace_member(self, workspace_id: int, user_id: int) -> bool: ...
    def workspace_member_ids(self, workspace_id: int) -> list[int]: ...
    def member_channel_ids(self, workspace_id: int, user_id: int) -> list[int]: ...
    def get_channel(self, channel_id: int) -> Channel | None: ...
    def is_channel_member(self, channel_id: int, user_id: int) -> bool: ...
    def mark_channel_read(self, channel_id: int, user_id: int) -> bool: ...
    def create_message(
        self,
        channel_id: int,
        user_id: int,
        content: str,
        message_type: str = "text",
        parent_message_id: int | None = None,
    ) -> Message: ...
    def get_message(self, message_id: int) -> Message | None: ...
    def message_snapshot(self, message_id: int) -> MessageOut: ...
    def edit_message(self, message_id: int, content: str) -> None: ...
    def soft_delete_message(self, message_id: int) -> None: ...
    def add_mention(self, message_id: int, user_id: int) -> None: ...
    def record_thread_reply(self, parent_message_id: int, user_id: int) -> Thread: ...
    def add_reaction(self, message_id: int, user_id: int, emoji: str) -> bool: ...
    def remove_reaction(self, message_id: int, user_id: int, emoji: str) -> bool: ...
    def save_call(self, call: "CallSession", duration: int | None = None) -> None: ...
    def active_calls(self, user_id: int) -> list[ActiveCallOut]: ...


def _persistent(fn):
    """Roll back and wrap SQLAlchemy errors raised by a datastore method."""

    @functools.wraps(fn)
    def wrapper(self: "SqlDatastore", *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("datastore.%s failed: %s", fn.__name__, exc)
            raise PersistenceFailure(f"Storage error in {fn.__name__}") from exc

    return wrapper


class SqlDatastore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Users / presence
    # ------------------------------------------------------------------

    @_persistent
    def get_user(self, user_id: int) -> User | None:
        return self.db.query(User).filter(User.id == user_id, User.is_active == True).first()  # noqa: E712

    @_persistent
    def get_user_by_username(self, username: str) -> User | None:
        return self.db.query(User).filter(User.username == username, User.is_active == True).first()  # noqa: E712

    @_persistent
    def set_online(self, user_id: int, online: bool) -> datetime:
        """Flip the connection-driven presence columns; returns last_seen."""
        now = _now()
        self.db.query(User).filter(User.id == user_id).update(
            {
                User.is_online: online,
                User.status: "online" if online else "offline",
                User.last_seen: now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return now

    @_persistent
    def update_status(self, user_id: int, status: str, status_message: str | None) -> None:
        self.db.query(User).filter(User.id == user_id).update(
            {User.status: status, User.status_message: status_message},
            synchronize_session=False,
        )
        self.db.commit()

    @_persistent
    def user_statuses(self, user_ids: list[int]) -> dict[int, str]:
        if not user_ids:
            return {}
        rows = self.db.query(User.id, User.status).filter(User.id.in_(user_ids)).all()
        return {r.id: r.status for r in rows}

    # ------------------------------------------------------------------
    # Workspaces / channels
    # ------------------------------------------------------------------

    @_persistent
    def workspace_ids_for_user(self, user_id: int) -> list[int]:
        rows = self.db.query(WorkspaceMember.workspace_id).filter(WorkspaceMember.user_id == user_id).all()
        return [r.workspace_id for r in rows]

    @_persistent
    def is_workspace_member(self, workspace_id: int, user_id: int) -> bool:
        return (
            self.db.query(WorkspaceMember.id)
            .filter(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
            .first()
            is not None
        )

    @_persistent
    def workspace_member_ids(self, workspace_id: int) -> list[int]:
        rows = self.db.query(WorkspaceMember.user_id).filter(WorkspaceMember.workspace_id == workspace_id).all()
        return [r.user_id for r in rows]

    @_persistent
    def member_channel_ids(self, workspace_id: int, user_id: int) -> list[int]:
        rows = (
            self.db.query(Channel.id)
            .join(ChannelMember, ChannelMember.channel_id == Channel.id)
            .filter(Channel.workspace_id == workspace_id, ChannelMember.user_id == user_id)
            .all()
        )
        return [r.id for r in rows]

    @_persistent
    def get_channel(self, channel_id: int) -> Channel | None:
        return self.db.query(Channel).filter(Channel.id == channel_id).first()

    @_persistent
    def is_channel_member(self, channel_id: int, user_id: int) -> bool:
        return (
            self.db.query(ChannelMember.id)
            .filter(ChannelMember.channel_id == channel_id, ChannelMember.user_id == user_id)
            .first()
            is not None
        )

    @_persistent
    def mark_channel_read(self, channel_id: int, user_id: int) -> bool:
        updated = (
            self.db.query(ChannelMember)
            .filter(ChannelMember.channel_id == channel_id, ChannelMember.user_id == user_id)
            .update({ChannelMember.last_read_at: _now()}, synchronize_session=False)
        )
        self.db.commit()
        return updated > 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @_persistent
    def create_message(
        self,
        channel_id: int,
        user_id: int,
        content: str,
        message_type: str = "text",
        parent_message_id: int | None = None,
    ) -> Message:
        msg = Message(
            channel_id=channel_id,
            user_id=user_id,
            content=content,
            message_type=message_type,
            parent_message_id=parent_message_id,
            created_at=_now(),
        )
        self.db.add(msg)
        self.db.query(Channel).filter(Channel.id == channel_id).update(
            {Channel.updated_at: _now()}, synchronize_session=False
        )
        self.db.commit()
        self.db.refresh(msg)
        return msg

    @_persistent
    def get_message(self, message_id: int) -> Message | None:
        return self.db.query(Message).filter(Message.id == message_id).first()

    @_persistent
    def message_snapshot(self, message_id: int) -> MessageOut:
        msg = self.db.query(Message).filter(Message.id == message_id).one()
        author = msg.user
        reaction_count = self.db.query(func.count(Reaction.id)).filter(Reaction.message_id == msg.id).scalar()
        reply_count = self.db.query(func.count(Message.id)).filter(Message.parent_message_id == msg.id).scalar()
        return MessageOut(
            id=msg.id,
            channel_id=msg.channel_id,
            user_id=msg.user_id,
            content=msg.content,
            message_type=msg.message_type,
            parent_message_id=msg.parent_message_id,
            created_at=msg.created_at,
            is_edited=msg.is_edited,
            edited_at=msg.edited_at,
            is_deleted=msg.is_deleted,
            username=author.username,
            display_name=author.display_name,
            avatar_url=author.avatar_url,
            status=author.status,
            is_online=author.is_online,
            reaction_count=reaction_count or 0,
            reply_count=reply_count or 0,
        )

    @_persistent
    def edit_message(self, message_id: int, content: str) -> None:
        self.db.query(Message).filter(Message.id == message_id).update(
            {Message.content: content, Message.is_edited: True, Message.edited_at: _now()},
            synchronize_session=False,
        )
        self.db.commit()

    @_persistent
    def soft_delete_message(self, message_id: int) -> None:
        self.db.query(Message).filter(Message.id == message_id).update(
            {Message.content: DELETED_MESSAGE_CONTENT, Message.is_deleted: True, Message.deleted_at: _now()},
            synchronize_session=False,
        )
        self.db.commit()

    @_persistent
    def add_mention(self, message_id: int, user_id: int) -> None:
        self.db.add(Mention(message_id=message_id, mentioned_user_id=user_id, mention_type="user"))
        self.db.commit()

    @_persistent
    def record_thread_reply(self, parent_message_id: int, user_id: int) -> Thread:
        thread = self.db.get(Thread, parent_message_id)
        if thread is None:
            thread = Thread(message_id=parent_message_id, reply_count=0, participants=[])
            self.db.add(thread)
        thread.reply_count = (thread.reply_count or 0) + 1
        thread.last_reply_at = _now()
        participants = list(thread.participants or [])
        if user_id not in participants:
            participants.append(user_id)
        # JSON columns are not mutation-tracked; assign a new list
        thread.participants = participants
        self.db.commit()
        self.db.refresh(thread)
        return thread

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    @_persistent
    def add_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        """Insert the reaction. Returns False if the triple already exists."""
        exists = (
            self.db.query(Reaction.id)
            .filter(Reaction.message_id == message_id, Reaction.user_id == user_id, Reaction.emoji == emoji)
            .first()
        )
        if exists:
            return False
        self.db.add(Reaction(message_id=message_id, user_id=user_id, emoji=emoji))
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race against an identical insert
            self.db.rollback()
            return False
        return True

    @_persistent
    def remove_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        deleted = (
            self.db.query(Reaction)
            .filter(Reaction.message_id == message_id, Reaction.user_id == user_id, Reaction.emoji == emoji)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    @_persistent
    def save_call(self, call: "CallSession", duration: int | None = None) -> None:
        row = self.db.get(Call, call.call_id)
        if row is None:
            row = Call(id=call.call_id)
            self.db.add(row)
        row.caller_id = call.caller_id
        row.recipient_id = call.recipient_id
        row.channel_id = call.channel_id
        row.workspace_id = call.workspace_id
        row.call_type = call.call_type
        row.status = call.status.value
        row.end_reason = call.end_reason
        row.started_at = call.started_at
        row.connected_at = call.connected_at
        row.ended_at = call.ended_at
        if duration is not None:
            row.duration = duration
        self.db.commit()

    @_persistent
    def active_calls(self, user_id: int) -> list[ActiveCallOut]:
        caller = aliased(User)
        recipient = aliased(User)
        rows = (
            self.db.query(Call, caller, recipient)
            .join(caller, Call.caller_id == caller.id)
            .join(recipient, Call.recipient_id == recipient.id)
            .filter(
                (Call.caller_id == user_id) | (Call.recipient_id == user_id),
                Call.status.in_(ACTIVE_CALL_STATUSES),
            )
            .order_by(Call.started_at.desc())
            .all()
        )
        return [
            ActiveCallOut(
                call_id=call.id,
                caller_id=call.caller_id,
                recipient_id=call.recipient_id,
                caller_username=c.username,
                caller_display_name=c.display_name,
                recipient_username=r.username,
                recipient_display_name=r.display_name,
                channel_id=call.channel_id,
                workspace_id=call.workspace_id,
                call_type=call.call_type,
                status=call.status,
                started_at=call.started_at,
                connected_at=call.connected_at,
            )
            for call, c, r in rows
        ]
