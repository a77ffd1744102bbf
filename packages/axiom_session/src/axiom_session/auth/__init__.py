from .auth_manager import AuthManager, AuthState
from .models import (
    AuthCookies,
    AuthSession,
    AuthTokens,
    LoginResult,
    SessionMetadata,
    TurnkeyApiKey,
    TurnkeySession,
    UserInfo,
)
from .otp_resolver import (
    ChainedOtpResolver,
    EmailOtpResolver,
    ManualOtpResolver,
    OtpResolver,
)
from .session_store import SessionStore
from .storage import SessionStorage
from .token_store import TokenStore

__all__ = [
    "AuthManager",
    "AuthState",
    "AuthCookies",
    "AuthSession",
    "AuthTokens",
    "LoginResult",
    "SessionMetadata",
    "TurnkeyApiKey",
    "TurnkeySession",
    "UserInfo",
    "ChainedOtpResolver",
    "EmailOtpResolver",
    "ManualOtpResolver",
    "OtpResolver",
    "SessionStore",
    "SessionStorage",
    "TokenStore",
]
