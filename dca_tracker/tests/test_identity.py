import io
import json
import re
import unittest
from unittest import mock
from urllib.error import HTTPError, URLError

from dca_tracker.identity import (
    IdentityError,
    IdentityProviderUnavailable,
    IdentityUser,
    SupabaseIdentityProvider,
    code_challenge,
    new_code_verifier,
)

USER_PAYLOAD = {
    "id": "7d6c1c44-0000-4000-8000-000000000001",
    "email": "carol@example.com",
    "user_metadata": {"full_name": "Carol", "avatar_url": "https://img.test/carol.png"},
}


def fake_response(payload) -> mock.MagicMock:
    response = mock.MagicMock()
    response.__enter__.return_value.read.return_value = json.dumps(payload).encode("utf-8")
    return response


def http_error(code: int) -> HTTPError:
    return HTTPError("https://auth.test", code, "error", {}, io.BytesIO(b"{}"))


class IdentityProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = SupabaseIdentityProvider(
            base_url="https://auth.test/",
            anon_key="anon-key",
            oauth_provider="github",
        )

    def test_get_user_parses_metadata(self) -> None:
        with mock.patch("dca_tracker.identity.urlopen", return_value=fake_response(USER_PAYLOAD)) as urlopen:
            user = self.provider.get_user("token-1")

        self.assertEqual(
            user,
            IdentityUser(
                id=USER_PAYLOAD["id"],
                email="carol@example.com",
                full_name="Carol",
                avatar_url="https://img.test/carol.png",
            ),
        )
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://auth.test/auth/v1/user")
        self.assertEqual(request.get_header("Authorization"), "Bearer token-1")
        self.assertEqual(request.get_header("Apikey"), "anon-key")

    def test_get_user_returns_none_for_rejected_token(self) -> None:
        with mock.patch("dca_tracker.identity.urlopen", side_effect=http_error(401)):
            self.assertIsNone(self.provider.get_user("expired"))

    def test_unreachable_provider_raises(self) -> None:
        with mock.patch("dca_tracker.identity.urlopen", side_effect=URLError("offline")):
            with self.assertRaises(IdentityProviderUnavailable):
                self.provider.get_user("token-1")
        with mock.patch("dca_tracker.identity.urlopen", side_effect=http_error(503)):
            with self.assertRaises(IdentityProviderUnavailable):
                self.provider.refresh_session("refresh-1")

    def test_exchange_code_posts_pkce_grant(self) -> None:
        payload = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "user": USER_PAYLOAD,
        }

        with mock.patch("dca_tracker.identity.urlopen", return_value=fake_response(payload)) as urlopen:
            session = self.provider.exchange_code_for_session("code-1", "verifier-1")

        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://auth.test/auth/v1/token?grant_type=pkce")
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(
            json.loads(request.data),
            {"auth_code": "code-1", "code_verifier": "verifier-1"},
        )
        self.assertEqual(session.access_token, "access-1")
        self.assertEqual(session.refresh_token, "refresh-1")
        self.assertEqual(session.expires_in, 3600)
        self.assertEqual(session.user.display_name, "Carol")

    def test_rejected_code_raises_identity_error(self) -> None:
        with mock.patch("dca_tracker.identity.urlopen", side_effect=http_error(400)):
            with self.assertRaises(IdentityError):
                self.provider.exchange_code_for_session("bogus", None)

    def test_authorize_url(self) -> None:
        url = self.provider.authorize_url("http://app.test/auth/callback", "challenge-1")

        self.assertTrue(url.startswith("https://auth.test/auth/v1/authorize?"))
        self.assertIn("provider=github", url)
        self.assertIn("code_challenge=challenge-1", url)
        self.assertIn("code_challenge_method=s256", url)

    def test_display_name_falls_back_to_email(self) -> None:
        user = IdentityUser.from_payload({"id": "u-1", "email": "dave@example.com"})

        self.assertEqual(user.display_name, "dave@example.com")
        self.assertIsNone(user.avatar_url)


class PkceTests(unittest.TestCase):
    def test_code_challenge_is_unpadded_base64url_sha256(self) -> None:
        verifier = new_code_verifier()
        challenge = code_challenge(verifier)

        self.assertEqual(len(challenge), 43)
        self.assertRegex(challenge, re.compile(r"^[A-Za-z0-9_-]+$"))
        self.assertEqual(challenge, code_challenge(verifier))
        self.assertNotEqual(verifier, new_code_verifier())


if __name__ == "__main__":
    unittest.main()
