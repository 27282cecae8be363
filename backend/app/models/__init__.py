from app.models.call import Call
from app.models.channel import Channel, ChannelMember
from app.models.message import Mention, Message, Thread
from app.models.reaction import Reaction
from app.models.user import User
from app.models.workspace import Workspace
from app.models.workspace_member import WorkspaceMember

__all__ = [
    "Call",
    "Channel",
    "ChannelMember",
    "Mention",
    "Message",
    "Reaction",
    "Thread",
    "User",
    "Workspace",
    "WorkspaceMember",
]
