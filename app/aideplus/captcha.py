from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass

from app.aideplus.errors import ServiceUnavailable

logger = logging.getLogger(__name__)

HCAPTCHA_VERIFY_URL = "https://hcaptcha.com/siteverify"


@dataclass(frozen=True)
class CaptchaResult:
    success: bool
    score: float | None = None
    error_codes: tuple[str, ...] = ()


@dataclass(frozen=True)
class HCaptchaVerifier:
    """Stateless check of an hCaptcha response token. Gates the admin login path only."""

    secret_key: str
    min_score: float = 0.5
    verify_url: str = HCAPTCHA_VERIFY_URL
    timeout_seconds: float = 10

    def verify(self, token: str, remote_ip: str | None = None) -> CaptchaResult:
        form = {"secret": self.secret_key, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        data = urllib.parse.urlencode(form).encode("utf-8")
        req = urllib.request.Request(self.verify_url, data=data, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                body = json.loads(resp.read().decode("utf-8"))
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError, ValueError) as e:
            raise ServiceUnavailable("Captcha verification service unavailable.") from e

        errors = tuple(body.get("error-codes") or ())
        if not body.get("success"):
            logger.warning("hCaptcha verification failed errors=%s", errors)
            return CaptchaResult(success=False, error_codes=errors)

        score = body.get("score")
        if score is not None and float(score) < self.min_score:
            logger.warning("hCaptcha score too low score=%s", score)
            return CaptchaResult(success=False, score=float(score), error_codes=("low-score",))
        return CaptchaResult(success=True, score=float(score) if score is not None else None)


def captcha_from_config(config: dict) -> HCaptchaVerifier | None:
    """Captcha is only enforced when both site and secret keys are configured."""
    site_key = (config.get("HCAPTCHA_SITE_KEY") or "").strip()
    secret_key = (config.get("HCAPTCHA_SECRET_KEY") or "").strip()
    if not site_key or not secret_key:
        return None
    return HCaptchaVerifier(
        secret_key=secret_key,
        min_score=float(config.get("HCAPTCHA_MIN_SCORE") or 0.5),
        timeout_seconds=float(config.get("UPSTREAM_TIMEOUT_SECONDS") or 10),
    )
