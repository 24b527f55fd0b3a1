import time

import jwt

from web_ssh_gateway.security import AuthConfig, AuthManager, RateLimiter


def _manager(**overrides):
    config = AuthConfig(
        enable_auth=True,
        jwt_secret="secret",
        api_keys={"browser": "key-1"},
        **overrides,
    )
    return AuthManager(config)


class TestAuthManager:
    """Test token issue and verification"""

    def test_disabled_auth(self):
        manager = AuthManager(AuthConfig())
        assert manager.generate_token("anyone", "anything") == "no-auth"
        assert manager.verify_token("whatever") == "anonymous"

    def test_token_round_trip(self):
        manager = _manager()
        token = manager.generate_token("browser", "key-1")

        assert manager.verify_token(token) == "browser"

        manager.revoke_token(token)
        assert manager.verify_token(token) is None

    def test_wrong_key(self):
        manager = _manager()
        assert manager.generate_token("browser", "nope") is None
        assert manager.generate_token("stranger", "key-1") is None

    def test_expired_token(self):
        manager = _manager()
        now = int(time.time())
        token = jwt.encode(
            {"client_id": "browser", "iat": now - 100, "exp": now - 10}, "secret", algorithm="HS256"
        )
        manager.active_tokens.add(token)

        assert manager.verify_token(token) is None
        assert token not in manager.active_tokens

    def test_ip_allow_list(self):
        assert _manager().is_ip_allowed("10.0.0.1")
        manager = _manager(allowed_ips=["127.0.0.1"])
        assert manager.is_ip_allowed("127.0.0.1")
        assert not manager.is_ip_allowed("10.0.0.1")


class TestRateLimiter:
    """Test the per-client request window"""

    def test_limit(self):
        limiter = RateLimiter(limit=3)
        assert [limiter.is_allowed("a") for _ in range(4)] == [True, True, True, False]
        assert limiter.is_allowed("b")
