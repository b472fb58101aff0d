from __future__ import annotations

import jwt


TEST_JWT_SECRET = "peerlink-test-secret-0123456789abcdef"


def mint_token(sub: str, *, secret: str = TEST_JWT_SECRET, **claims) -> str:
    # HS256 tokens the way the upstream app would issue them.
    return jwt.encode({"sub": sub, **claims}, secret, algorithm="HS256")
