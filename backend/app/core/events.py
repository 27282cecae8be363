# WebSocket event type definitions.
# Frames are JSON text: {"type": <event>, "data": <payload>}.

AUTH = "auth"

# ── Inbound (client → server) ────────────────────────────────────────────────

JOIN_WORKSPACE = "join_workspace"
JOIN_CHANNEL = "join_channel"
LEAVE_CHANNEL = "leave_channel"

SEND_MESSAGE = "send_message"
EDIT_MESSAGE = "edit_message"
DELETE_MESSAGE = "delete_message"
ADD_REACTION = "add_reaction"
REMOVE_REACTION = "remove_reaction"
MARK_READ = "mark_read"

TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"

UPDATE_STATUS = "update_status"
PRESENCE_HEARTBEAT = "presence.heartbeat"

CALL_INITIATE = "call:initiate"
CALL_ACCEPT = "call:accept"
CALL_REJECT = "call:reject"
CALL_END = "call:end"
CALL_TOGGLE_MUTE = "call:toggle-mute"
CALL_GET_ACTIVE = "call:get-active"

# WebRTC relay, same name in both directions
WEBRTC_OFFER = "webrtc:offer"
WEBRTC_ANSWER = "webrtc:answer"
WEBRTC_ICE_CANDIDATE = "webrtc:ice-candidate"
WEBRTC_EVENTS = (WEBRTC_OFFER, WEBRTC_ANSWER, WEBRTC_ICE_CANDIDATE)

# ── Outbound (server → client) ───────────────────────────────────────────────

JOINED_WORKSPACE = "joined_workspace"
JOINED_CHANNEL = "joined_channel"
USER_JOINED_CHANNEL = "user_joined_channel"
USER_LEFT_CHANNEL = "user_left_channel"

USER_ONLINE = "user_online"
USER_OFFLINE = "user_offline"
USER_STATUS_CHANGED = "user_status_changed"

NEW_MESSAGE = "new_message"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
REACTION_ADDED = "reaction_added"
REACTION_REMOVED = "reaction_removed"
THREAD_UPDATED = "thread_updated"
MENTIONED = "mentioned"
CHANNEL_MARKED_READ = "channel_marked_read"

USER_TYPING = "user_typing"
USER_STOPPED_TYPING = "user_stopped_typing"

CALL_INCOMING = "call:incoming"
CALL_INITIATED = "call:initiated"
CALL_ACCEPTED = "call:accepted"
CALL_REJECTED = "call:rejected"
CALL_ENDED = "call:ended"
CALL_MISSED = "call:missed"
CALL_RECIPIENT_UNAVAILABLE = "call:recipient_unavailable"
CALL_ACTIVE_CALLS = "call:active-calls"
CALL_USER_MUTED = "call:user-muted"

ERROR = "error"
CALL_ERROR = "call:error"
