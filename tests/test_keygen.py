import secrets

import pytest

from tokenward.service.errors import GenerationError
from tokenward.service.keygen import DEFAULT_SECRET_LENGTH, SecretGenerator
from tokenward.storage.common import TOKEN_ALPHABET


def test_default_secret_shape():
    secret = SecretGenerator().generate()

    assert len(secret) == DEFAULT_SECRET_LENGTH == 54
    assert set(secret) <= set(TOKEN_ALPHABET)
    assert ":" not in secret


def test_secrets_do_not_repeat():
    generator = SecretGenerator()
    assert len({generator.generate() for _ in range(200)}) == 200


def test_custom_length():
    assert len(SecretGenerator(64).generate()) == 64


@pytest.mark.parametrize(
    "kwargs",
    [
        {"length": 0},
        {"length": -3},
        {"alphabet": "a"},
        {"alphabet": "aab"},
        {"alphabet": "ab:"},
    ],
)
def test_invalid_configuration_rejected(kwargs):
    with pytest.raises(ValueError):
        SecretGenerator(**kwargs)


def test_entropy_failure_surfaces_as_generation_error(monkeypatch):
    def no_entropy(seq):
        raise OSError("getrandom unavailable")

    monkeypatch.setattr(secrets, "choice", no_entropy)

    with pytest.raises(GenerationError) as excinfo:
        SecretGenerator().generate()
    assert excinfo.value.status_code == 500
    assert excinfo.value.error_code == "generation_failed"
