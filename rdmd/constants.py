# RDM protocol constants (numeric keys and message types)

RDM_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_BODY = 6

# Message types
T_REGISTER = 10
T_USER_LIST = 11
T_USER_DISCONNECTED = 12

T_SEND_MESSAGE = 20
T_RECEIVE_MESSAGE = 21
T_TYPING = 22
T_MESSAGE_SENT = 23
T_USER_TYPING = 24

T_PING = 30
T_PONG = 31

T_ERROR = 40
T_MESSAGE_ERROR = 41

T_SIGNUP = 50
T_SIGNUP_OK = 51
T_LOGIN = 52
T_LOGIN_OK = 53

T_HISTORY = 60
T_HISTORY_ITEM = 61
T_HISTORY_END = 62

# sendMessage body keys
B_SEND_SENDER = 0
B_SEND_RECIPIENT = 1
B_SEND_CONTENT = 2

# typing body keys (shares layout with sendMessage)
B_TYPING_SENDER = 0
B_TYPING_RECIPIENT = 1

# userTyping body keys
B_USER_TYPING_ID = 0

# Message record body keys (receiveMessage, messageSent, historyItem)
B_MSG_ID = 0
B_MSG_SENDER = 1
B_MSG_CONTENT = 2
B_MSG_TS = 3
B_MSG_RECIPIENT = 4

# userList body keys
B_LIST_USERS = 0
B_LIST_MORE = 1

# signup/login body keys
B_ACCT_USERNAME = 0
B_ACCT_PASSWORD = 1

# signupOk/loginOk body keys
B_ACCT_USER_ID = 0
B_ACCT_NAME = 1

# history body keys
B_HIST_PEER = 0

# historyEnd body keys
B_HIST_COUNT = 0
B_HIST_REQ = 1

IDENTITY_MAX_CHARS = 64

# Hub-generated sizes used for MDU budgeting
USER_ID_CHARS = 24
SRC_HASH_BYTES = 16
MSG_ID_MAX_BYTES = 16

# RNS.Link.MDU with the default 500 byte MTU
LINK_MDU = 431

# Printable names for logs
TYPE_NAMES = {
    T_REGISTER: "register",
    T_USER_LIST: "userList",
    T_USER_DISCONNECTED: "userDisconnected",
    T_SEND_MESSAGE: "sendMessage",
    T_RECEIVE_MESSAGE: "receiveMessage",
    T_TYPING: "typing",
    T_MESSAGE_SENT: "messageSent",
    T_USER_TYPING: "userTyping",
    T_PING: "ping",
    T_PONG: "pong",
    T_ERROR: "error",
    T_MESSAGE_ERROR: "messageError",
    T_SIGNUP: "signup",
    T_SIGNUP_OK: "signupOk",
    T_LOGIN: "login",
    T_LOGIN_OK: "loginOk",
    T_HISTORY: "history",
    T_HISTORY_ITEM: "historyItem",
    T_HISTORY_END: "historyEnd",
}
