from __future__ import annotations

import secrets

from tokenward.logging import get_logger
from tokenward.service.errors import GenerationError
from tokenward.storage.common import TOKEN_ALPHABET

logger = get_logger(__name__)

DEFAULT_SECRET_LENGTH = 54


class SecretGenerator:
    """Produces token secrets from the operating system's CSPRNG.

    With the default 27-symbol alphabet and 54 characters a secret carries
    about 256 bits of entropy.
    """

    def __init__(
        self,
        length: int = DEFAULT_SECRET_LENGTH,
        *,
        alphabet: str = TOKEN_ALPHABET,
    ) -> None:
        if length <= 0:
            raise ValueError("secret length must be positive")
        if len(set(alphabet)) < 2 or len(set(alphabet)) != len(alphabet):
            raise ValueError("alphabet must hold at least two distinct, unique symbols")
        if ":" in alphabet:
            raise ValueError("alphabet must not contain the bearer separator")
        self.length = length
        self.alphabet = alphabet

    def generate(self) -> str:
        try:
            return "".join(secrets.choice(self.alphabet) for _ in range(self.length))
        except (OSError, NotImplementedError) as exc:
            # No fallback to a weaker source
            logger.error("token_secret_generation_failed", error=str(exc))
            raise GenerationError("failed to generate token key") from exc
