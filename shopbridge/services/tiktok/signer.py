"""
Request signing for the TikTok Shop Open API (v2 / 202309 endpoints).

    sign = hex(HMAC-SHA256(secret, secret + path + sorted_params + body + secret))

where sorted_params is every query parameter except ``sign`` and
``access_token``, sorted by key, each written as key immediately followed by
its value.
"""

import hashlib
import hmac
from typing import Mapping, Optional

EXCLUDED_KEYS = frozenset({"sign", "access_token"})


def build_canonical_string(
    path: str,
    query_params: Mapping[str, object],
    body: Optional[str] = None,
    *,
    secret: str,
) -> str:
    sorted_params = "".join(
        f"{key}{query_params[key]}"
        for key in sorted(k for k in query_params if k not in EXCLUDED_KEYS)
    )
    # An absent body still takes part in the canonical string, as ""
    return f"{secret}{path}{sorted_params}{body or ''}{secret}"


def sign(
    path: str,
    query_params: Mapping[str, object],
    body: Optional[str] = None,
    *,
    secret: str,
) -> str:
    """Deterministic lowercase-hex signature for one request"""
    if not secret:
        raise ValueError("A signing secret is required")
    canonical = build_canonical_string(path, query_params, body, secret=secret)
    return hmac.new(
        secret.encode("utf8"),
        canonical.encode("utf8"),
        hashlib.sha256,
    ).hexdigest()
