"""
API access control

Optional API-key / JWT authentication in front of the gateway. Disabled by
default; when disabled every caller is "anonymous".
"""

import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import jwt

logger = logging.getLogger(__name__)


@dataclass
class AuthConfig:
    """Authentication settings"""

    enable_auth: bool = False
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_expiration: int = 3600
    api_keys: Dict[str, str] = field(default_factory=dict)  # client_id: api_key
    allowed_ips: List[str] = field(default_factory=list)
    rate_limit: int = 600  # requests per minute per client IP
    enable_cors: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


class RateLimiter:
    """Sliding one-minute request window per client"""

    def __init__(self, limit: int = 600):
        self.limit = limit
        self.requests: Dict[str, List[float]] = {}

    def is_allowed(self, client_id: str) -> bool:
        now = time.time()
        recent = [t for t in self.requests.get(client_id, []) if now - t < 60]
        if len(recent) >= self.limit:
            self.requests[client_id] = recent
            return False
        recent.append(now)
        self.requests[client_id] = recent
        return True


class AuthManager:
    """Issues and verifies bearer tokens for configured API clients"""

    def __init__(self, config: AuthConfig):
        self.config = config
        self.rate_limiter = RateLimiter(config.rate_limit)
        self.active_tokens: Set[str] = set()

    def check_api_key(self, client_id: str, api_key: str) -> bool:
        expected = self.config.api_keys.get(client_id)
        if expected is None:
            logger.warning(f"Unknown client id: {client_id}")
            return False
        if not hmac.compare_digest(expected, api_key):
            logger.warning(f"Invalid API key for client: {client_id}")
            return False
        return True

    def generate_token(self, client_id: str, api_key: str) -> Optional[str]:
        """Exchange an API key for a JWT"""
        if not self.config.enable_auth:
            return "no-auth"
        if not self.check_api_key(client_id, api_key):
            return None

        now = int(time.time())
        payload = {"client_id": client_id, "iat": now, "exp": now + self.config.jwt_expiration}
        token = jwt.encode(payload, self.config.jwt_secret, algorithm=self.config.jwt_algorithm)
        self.active_tokens.add(token)
        return token

    def verify_token(self, token: str) -> Optional[str]:
        """Return the client id for a valid token"""
        if not self.config.enable_auth:
            return "anonymous"
        if token not in self.active_tokens:
            logger.warning("Unknown token")
            return None

        try:
            payload = jwt.decode(
                token, self.config.jwt_secret, algorithms=[self.config.jwt_algorithm]
            )
            return payload["client_id"]
        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            self.active_tokens.discard(token)
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            self.active_tokens.discard(token)
            return None

    def revoke_token(self, token: str):
        self.active_tokens.discard(token)

    def check_rate_limit(self, client_id: str) -> bool:
        return self.rate_limiter.is_allowed(client_id)

    def is_ip_allowed(self, ip: str) -> bool:
        if not self.config.allowed_ips:
            return True
        return ip in self.config.allowed_ips
