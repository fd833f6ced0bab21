"""
Credential provider for the analytics cluster.

Two modes:
- TOKEN: interactive device-code login, then an explicit bearer token request.
- AMBIENT: hand the environment's credential chain (az login, managed identity,
  env vars, ...) to the SDK; tokens are acquired lazily on first use.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from azure.identity import DefaultAzureCredential, DeviceCodeCredential

from kustoprobe.errors import AuthError

log = structlog.get_logger()


class AuthMode(str, Enum):
    TOKEN = "token"
    AMBIENT = "ambient"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def parse(cls, raw: str) -> "AuthMode":
        key = str(raw or "").strip().lower()
        for mode in cls:
            if key in {mode.value, mode.display_name.lower()}:
                return mode
        accepted = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown auth mode {raw!r} (expected one of: {accepted})")

    def __str__(self) -> str:
        return self.display_name


_DISPLAY_NAMES = {
    AuthMode.TOKEN: "TokenAuth",
    AuthMode.AMBIENT: "AmbientAuth",
}


@dataclass(frozen=True)
class Credential:
    """
    Either a bearer token string or an azure-identity token credential.
    """

    mode: AuthMode
    token: str | None = field(default=None, repr=False)
    token_credential: Any = field(default=None, repr=False)
    expires_on: int | None = None

    def __post_init__(self) -> None:
        if (self.token is None) == (self.token_credential is None):
            raise ValueError("Credential needs exactly one of token or token_credential")

    @classmethod
    def bearer(cls, token: str, *, expires_on: int | None = None) -> "Credential":
        return cls(mode=AuthMode.TOKEN, token=str(token), expires_on=expires_on)

    @classmethod
    def ambient(cls, token_credential: Any) -> "Credential":
        return cls(mode=AuthMode.AMBIENT, token_credential=token_credential)

    def expired(self, now: float | None = None, *, margin_s: float = 60.0) -> bool:
        """True once a bearer token is within `margin_s` of `expires_on` (epoch seconds)."""
        if self.expires_on is None:
            return False
        current = time.time() if now is None else float(now)
        return current + float(margin_s) >= float(self.expires_on)


def scope_for(endpoint: str) -> str:
    """Token scope for a cluster: `<endpoint>/.default`."""
    return f"{str(endpoint).strip().rstrip('/')}/.default"


def obtain_credential(mode: AuthMode, scope: str) -> Credential:
    """
    Obtain a credential for `scope`.

    TOKEN mode blocks on the device-code prompt; failures are raised as
    AuthError and never retried here.
    """
    if mode is AuthMode.TOKEN:
        return _bearer_token_credential(scope)
    if mode is AuthMode.AMBIENT:
        try:
            cred = DefaultAzureCredential()
        except Exception as e:
            raise AuthError("login failed", cause=e) from e
        log.info("auth.ambient_ready", mode=mode.display_name)
        return Credential.ambient(cred)
    raise AuthError(f"invalid auth mode: {mode!r}")


def _bearer_token_credential(scope: str) -> Credential:
    try:
        device_cred = DeviceCodeCredential()
    except Exception as e:
        raise AuthError("login failed", cause=e) from e

    log.info("auth.token_request", scope=scope)
    try:
        access = device_cred.get_token(scope)
    except Exception as e:
        raise AuthError("token request failed", cause=e) from e

    token = str(getattr(access, "token", "") or "")
    if not token:
        raise AuthError("token request failed", cause=RuntimeError("empty token returned"))
    expires_on = getattr(access, "expires_on", None)
    log.info("auth.token_acquired", expires_on=expires_on)
    return Credential.bearer(token, expires_on=int(expires_on) if expires_on is not None else None)
