import hashlib
import logging
import secrets
from typing import Iterable

from jose import JWTError, jwt
from passlib.context import CryptContext

from tokenguard.core.config import PLACEHOLDER_SECRET, Settings
from tokenguard.core.errors import InvalidToken, SigningKeyError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

REFRESH_SECRET_BYTES = 32


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def generate_refresh_secret() -> str:
    return secrets.token_urlsafe(REFRESH_SECRET_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _key_id(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()[:16]


class SigningKeyProvider:
    """Signs claim sets and checks signatures.

    ``signing_key`` signs. Every verification key verifies, so tokens minted
    before a key rollover stay valid until they expire. Claim semantics
    (expiry, audience, token type) are left to the caller.
    """

    def __init__(
        self,
        signing_key: str,
        algorithm: str = "HS256",
        verification_keys: Iterable[str] = (),
    ) -> None:
        self.algorithm = algorithm
        self._signing_key = signing_key
        self._verification_keys: dict[str, str] = {}
        for key in verification_keys:
            if key:
                self._verification_keys.setdefault(_key_id(key), key)
        # kid names the key a verifier needs, i.e. the public half for RS256
        if self._verification_keys:
            self.key_id = next(iter(self._verification_keys))
        else:
            self.key_id = _key_id(signing_key) if signing_key else ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeyProvider":
        primary_verifier = settings.jwt_public_key or settings.secret_key
        return cls(
            settings.secret_key,
            algorithm=settings.jwt_algorithm,
            verification_keys=[primary_verifier, *settings.previous_secret_keys],
        )

    def ensure_ready(self, production: bool = False) -> None:
        if not self._signing_key:
            raise SigningKeyError("No JWT signing key configured")
        if production and self._signing_key == PLACEHOLDER_SECRET:
            raise SigningKeyError("Refusing to start in production with the placeholder signing key")
        if not self._verification_keys:
            raise SigningKeyError("No JWT verification key configured")

    def sign(self, claims: dict) -> str:
        return jwt.encode(
            claims,
            self._signing_key,
            algorithm=self.algorithm,
            headers={"kid": self.key_id},
        )

    def verify(self, token: str) -> dict:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidToken("Malformed token") from exc
        if header.get("alg") != self.algorithm:
            raise InvalidToken("Unexpected signing algorithm")

        kid = header.get("kid")
        if isinstance(kid, str) and kid in self._verification_keys:
            candidates = [self._verification_keys[kid]]
        else:
            candidates = list(self._verification_keys.values())

        for key in candidates:
            try:
                return jwt.decode(
                    token,
                    key,
                    algorithms=[self.algorithm],
                    options={
                        "verify_aud": False,
                        "verify_iat": False,
                        "verify_exp": False,
                        "verify_nbf": False,
                    },
                )
            except JWTError:
                continue
        logger.debug("Token signature did not match any of %s keys", len(candidates))
        raise InvalidToken("Signature verification failed")
