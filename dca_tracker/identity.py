"""Adapter for a GoTrue-compatible OAuth identity provider (Supabase Auth)."""

from __future__ import annotations

import base64
import hashlib
import http.client
import json
import secrets
from dataclasses import dataclass, field
from typing import Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen


class IdentityError(RuntimeError):
    """Raised when the provider rejects a code, token or refresh token."""


class IdentityProviderUnavailable(RuntimeError):
    """Raised when the provider cannot be reached."""


@dataclass(frozen=True)
class IdentityUser:
    id: str
    email: str | None
    full_name: str | None = None
    avatar_url: str | None = None

    @property
    def display_name(self) -> str | None:
        return self.full_name or self.email

    @classmethod
    def from_payload(cls, payload: Mapping) -> "IdentityUser":
        user_id = payload.get("id")
        if not user_id:
            raise IdentityError("Identity payload missing user id")
        metadata = payload.get("user_metadata") or {}
        return cls(
            id=str(user_id),
            email=payload.get("email") or None,
            full_name=metadata.get("full_name") or metadata.get("name") or None,
            avatar_url=metadata.get("avatar_url") or None,
        )


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str | None
    expires_in: int | None
    user: IdentityUser

    @classmethod
    def from_payload(cls, payload: Mapping) -> "AuthSession":
        access_token = payload.get("access_token")
        if not access_token:
            raise IdentityError("Session payload missing access token")
        expires_in = payload.get("expires_in")
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            user=IdentityUser.from_payload(payload.get("user") or {}),
        )


def new_code_verifier() -> str:
    return secrets.token_urlsafe(48)


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass
class SupabaseIdentityProvider:
    base_url: str
    anon_key: str
    oauth_provider: str = "google"
    timeout: float = 8

    def authorize_url(self, redirect_to: str, challenge: str) -> str:
        query = urlencode(
            {
                "provider": self.oauth_provider,
                "redirect_to": redirect_to,
                "code_challenge": challenge,
                "code_challenge_method": "s256",
            }
        )
        return f"{self._auth_url()}/authorize?{query}"

    def exchange_code_for_session(self, code: str, code_verifier: str | None) -> AuthSession:
        payload = self._request(
            "POST",
            "/token?grant_type=pkce",
            body={"auth_code": code, "code_verifier": code_verifier or ""},
        )
        return AuthSession.from_payload(payload)

    def refresh_session(self, refresh_token: str) -> AuthSession:
        payload = self._request(
            "POST",
            "/token?grant_type=refresh_token",
            body={"refresh_token": refresh_token},
        )
        return AuthSession.from_payload(payload)

    def get_user(self, access_token: str) -> IdentityUser | None:
        try:
            payload = self._request("GET", "/user", access_token=access_token)
        except IdentityError:
            return None
        return IdentityUser.from_payload(payload)

    def sign_out(self, access_token: str) -> None:
        self._request("POST", "/logout", access_token=access_token, body={})

    def _auth_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/v1"

    def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        body: dict | None = None,
    ) -> dict:
        headers = {"apikey": self.anon_key, "Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = Request(f"{self._auth_url()}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout) as response:
                raw = response.read()
        except HTTPError as exc:
            if 400 <= exc.code < 500:
                raise IdentityError(f"Identity provider rejected request ({exc.code})") from exc
            raise IdentityProviderUnavailable(f"Identity provider error ({exc.code})") from exc
        except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
            raise IdentityProviderUnavailable("Identity provider unavailable") from exc
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise IdentityProviderUnavailable("Identity provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise IdentityProviderUnavailable("Identity provider returned an unexpected payload")
        return payload


@dataclass
class StaticIdentityProvider:
    """In-memory provider for tests and local development.

    ``users`` maps access tokens to identities; ``codes`` maps authorization
    codes to sessions and ``refresh_tokens`` maps refresh tokens to sessions.
    """

    users: dict[str, IdentityUser] = field(default_factory=dict)
    codes: dict[str, AuthSession] = field(default_factory=dict)
    refresh_tokens: dict[str, AuthSession] = field(default_factory=dict)
    authorize_endpoint: str = "http://identity.local/authorize"
    signed_out: list[str] = field(default_factory=list)

    def authorize_url(self, redirect_to: str, challenge: str) -> str:
        query = urlencode({"redirect_to": redirect_to, "code_challenge": challenge})
        return f"{self.authorize_endpoint}?{query}"

    def exchange_code_for_session(self, code: str, code_verifier: str | None) -> AuthSession:
        session = self.codes.pop(code, None)
        if session is None:
            raise IdentityError("Unknown authorization code")
        self.users[session.access_token] = session.user
        return session

    def refresh_session(self, refresh_token: str) -> AuthSession:
        session = self.refresh_tokens.get(refresh_token)
        if session is None:
            raise IdentityError("Unknown refresh token")
        self.users[session.access_token] = session.user
        return session

    def get_user(self, access_token: str) -> IdentityUser | None:
        return self.users.get(access_token)

    def sign_out(self, access_token: str) -> None:
        self.users.pop(access_token, None)
        self.signed_out.append(access_token)
