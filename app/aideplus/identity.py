from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from app.aideplus.errors import ServiceUnavailable, Unauthenticated


@dataclass(frozen=True)
class SupabaseIdentityClient:
    """
    Verifies bearer credentials against the Supabase auth API.
    Every call goes to the provider; nothing is cached here.
    """

    base_url: str
    anon_key: str
    timeout_seconds: float = 10

    def get_user(self, access_token: str) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + "/auth/v1/user"
        req = urllib.request.Request(url, method="GET")
        req.add_header("Authorization", f"Bearer {access_token}")
        req.add_header("apikey", self.anon_key)
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            if e.code in (400, 401, 403, 404, 422):
                raise Unauthenticated("Invalid or expired token.") from e
            raise ServiceUnavailable(f"Identity provider returned HTTP {e.code}.") from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise ServiceUnavailable("Identity provider unreachable.") from e

        try:
            user = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise ServiceUnavailable("Invalid JSON from identity provider.") from e
        if not isinstance(user, dict) or not user.get("id"):
            raise Unauthenticated("Invalid or expired token.")
        return user


def identity_provider_from_config(config: dict) -> SupabaseIdentityClient | None:
    url = (config.get("SUPABASE_URL") or "").strip()
    key = (config.get("SUPABASE_ANON_KEY") or "").strip()
    if not url or not key:
        return None
    return SupabaseIdentityClient(
        base_url=url,
        anon_key=key,
        timeout_seconds=float(config.get("UPSTREAM_TIMEOUT_SECONDS") or 10),
    )
