# Issue chat wire constants (envelope keys, event names, body keys)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_EVENT = 1
K_ID = 2
K_TS = 3
K_BODY = 5

# Client -> hub events
E_REGISTER_USER = "register_user"
E_JOIN_ISSUE = "join_issue"
E_LEAVE_ISSUE = "leave_issue"
E_GET_USER_PRESENCE = "get_user_presence"
E_SEND_MESSAGE = "send_message"
E_TYPING_START = "typing_start"
E_TYPING_STOP = "typing_stop"
E_MARK_MESSAGE_READ = "mark_message_read"
E_GET_HISTORY = "get_history"
E_GET_UNREAD_COUNT = "get_unread_count"
E_PING = "ping"

# Hub -> client events
E_JOINED_ISSUE = "joined_issue"
E_USER_PRESENCE = "user_presence"
E_MESSAGE_SENT = "message_sent"
E_NEW_MESSAGE = "new_message"
E_USER_TYPING = "user_typing"
E_MESSAGE_READ = "message_read"
E_USER_ONLINE = "user_online"
E_USER_OFFLINE = "user_offline"
E_USER_JOINED_CHAT = "user_joined_chat"
E_USER_LEFT_CHAT = "user_left_chat"
E_HISTORY = "history"
E_UNREAD_COUNT = "unread_count"
E_PONG = "pong"
E_ERROR = "error"

# Body keys (client-facing names, kept verbatim for existing clients)
B_USER_ID = "userId"
B_ISSUE_ID = "issueID"
B_ROOM_NAME = "roomName"
B_OTHER_USERS = "otherUsersInChat"
B_IS_ONLINE = "isOnline"
B_LAST_ACTIVE = "lastActive"
B_CURRENT_CHAT = "currentChat"
B_IS_IN_CHAT = "isInChat"
B_SENDER_ID = "senderID"
B_SENDER_ROLE = "senderRole"
B_TEXT = "text"
B_CLIENT_MESSAGE_ID = "clientMessageId"
B_MESSAGE_ID = "messageId"
B_MESSAGE_ID_READ = "messageID"
B_READER_ID = "readerID"
B_READ_AT = "readAt"
B_IS_TYPING = "isTyping"
B_MESSAGES = "messages"
B_SINCE = "since"
B_COUNT = "count"
B_MESSAGE = "message"

# Chat rooms are named after the issue they belong to.
ROOM_PREFIX = "issue_"

# Default sender roles accepted on send_message.
ROLE_STUDENT = "student"
ROLE_WORKER = "worker"
DEFAULT_ALLOWED_ROLES = (ROLE_STUDENT, ROLE_WORKER)

# Online/offline fan-out scopes.
PRESENCE_SCOPE_SHARED = "shared"
PRESENCE_SCOPE_GLOBAL = "global"

# Read receipt states shown to a message's author.
RECEIPT_SENT = "sent"
RECEIPT_DELIVERED = "delivered"
RECEIPT_READ = "read"
