"""
Authorization server configuration. Values come from the environment; defaults suit local development.
No secrets in this file; credentials come from env or DB.
"""
import os

# Issuer URL (public identifier); every discovery URL is derived from it
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# SQLite for development; any SQLAlchemy URL in deployment
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./oidc_provider.db")

# Lifetimes (seconds)
CODE_TTL_SECONDS = int(os.environ.get("OAUTH_AUTHORIZATION_CODE_TTL", "600"))
ACCESS_TOKEN_EXPIRES = int(os.environ.get("OAUTH_ACCESS_TOKEN_TTL", "3600"))
REFRESH_TOKEN_EXPIRES = int(os.environ.get("OAUTH_REFRESH_TOKEN_TTL", "2592000"))  # 30 days
ID_TOKEN_EXPIRES = ACCESS_TOKEN_EXPIRES

# Scopes this server knows about (advertised in discovery). Per-client allowlists live on the client row.
SUPPORTED_SCOPES = [
    s for s in os.environ.get("OAUTH_SUPPORTED_SCOPES", "openid email profile").split() if s
]
DEFAULT_SCOPE = "openid"

# Path to RSA private key PEM file for signing tokens. If unset or file missing, a key is generated and saved.
SIGNING_KEY_PATH = os.environ.get("OAUTH_SIGNING_KEY_PATH", ".oidc_signing_key.pem")
# Optional previous key for rotation: included in JWKS so existing tokens still verify; not used for new tokens.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("OAUTH_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# First-party session cookie (HS256). The login UI that sets it is hosted elsewhere.
SESSION_SECRET = os.environ.get("OAUTH_SESSION_SECRET", "dev-session-secret-change-me-in-production")
SESSION_COOKIE_NAME = os.environ.get("OAUTH_SESSION_COOKIE", "session")

# Login and consent surfaces (rendered outside this service)
LOGIN_URL = os.environ.get("OAUTH_LOGIN_URL", f"{ISSUER}/login")
CONSENT_URL = os.environ.get("OAUTH_CONSENT_URL", f"{ISSUER}/consent")
# Lifetime of the signed ticket that binds a consent decision to the request the user was shown
CONSENT_TICKET_TTL = int(os.environ.get("OAUTH_CONSENT_TICKET_TTL", "600"))

# Rate limiting: per-IP, per minute. 0 disables.
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "10"))

# Minimum length for passwords set through POST /register
PASSWORD_MIN_LENGTH = int(os.environ.get("OAUTH_PASSWORD_MIN_LENGTH", "8"))

# Upstream identity-provider signing certificates (x509 PEM map keyed by kid)
UPSTREAM_KEYS_URL = os.environ.get(
    "OAUTH_UPSTREAM_KEYS_URL",
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com",
)
UPSTREAM_KEYS_TIMEOUT = float(os.environ.get("OAUTH_UPSTREAM_KEYS_TIMEOUT", "5"))
UPSTREAM_KEYS_DEFAULT_TTL = int(os.environ.get("OAUTH_UPSTREAM_KEYS_DEFAULT_TTL", "3600"))

# Discovery document cache lifetime (seconds)
DISCOVERY_MAX_AGE = int(os.environ.get("OAUTH_DISCOVERY_MAX_AGE", "3600"))

LOG_LEVEL = os.environ.get("OAUTH_LOG_LEVEL", "INFO")
