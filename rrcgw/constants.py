# Gateway wire constants (envelope keys and event names)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_EVENT = 1
K_ID = 2
K_TS = 3
K_BODY = 4

# Inbound events
E_CONNECT = "connect"
E_SEND_MESSAGE = "sendMessage"
E_GENERAL_PRIVATE_MESSAGE = "generalPrivateMessage"
E_SEND_PRIVATE_MESSAGE = "sendPrivateMessage"
E_KICK_USER = "kickUser"
E_BAN_USER = "banUser"
E_UPDATE_USER_ROLE = "updateUserRole"
E_UNIGNORE_USER = "unignoreUser"
E_UPDATE_USERNAME = "updateUsername"
E_UPDATE_AVATAR = "updateAvatar"
E_UPDATE_STAR_PAWN = "updateStarPawn"
E_UPDATE_PAWN = "updatePawn"
E_REQUEST_USER_UPDATE = "requestUserUpdate"

# Outbound events
E_ROLE_UPDATED = "roleUpdated"
E_USER_RESTRICTED = "userRestricted"
E_NOT_WHITELISTED = "notWhitelisted"
E_FRIENDS = "friends"
E_IGNORED_USERS = "ignoredUsers"
E_USERS = "users"
E_MESSAGE = "message"
E_PRIVATE_MESSAGE = "privateMessage"
E_KICKED = "kicked"
E_BAN_SUCCESS = "banSuccess"
E_ROLE_UPDATE_SUCCESS = "roleUpdateSuccess"
E_USER_UPDATED = "userUpdated"
E_ERROR = "error"

USERNAME_MAX_CHARS = 32

# Ban durations (hours) accepted for non-permanent bans
BAN_MIN_HOURS = 1
BAN_MAX_HOURS = 6

# Cosmetic fields persisted through the identity store
COSMETIC_AVATAR = "avatar"
COSMETIC_PAWN = "pawn"
COSMETIC_STAR_PAWN = "show_star_pawn"
