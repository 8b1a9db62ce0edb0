"""
Shared fixtures: a cross-wired keypair, a responder playing the
counterparty, and a factory for clients backed by httpx.MockTransport.
"""

import hashlib
import hmac

import httpx
import pytest

from sealcall import KeyMaterial, Responder, SecureHttpClient

COUNTERPARTY_URL = "https://counterparty.test"


class ReversingCipher:
    """Deterministic Cipher fake: byte reversal and an HMAC as signature."""

    def __init__(self, secret: bytes = b"shared-test-secret"):
        self.secret = secret

    def encrypt(self, plaintext: bytes) -> bytes:
        return plaintext[::-1]

    def decrypt(self, ciphertext: bytes) -> bytes:
        return ciphertext[::-1]

    def sign(self, content: bytes, nonce: bytes) -> bytes:
        return hmac.new(self.secret, content + b"|" + nonce, hashlib.sha256).digest()

    def verify(self, content: bytes, nonce: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(self.sign(content, nonce), signature)


@pytest.fixture
def key_pair():
    return KeyMaterial.generate_pair()


@pytest.fixture
def caller_material(key_pair):
    return key_pair[0]


@pytest.fixture
def counterparty_material(key_pair):
    return key_pair[1]


@pytest.fixture
def responder(counterparty_material):
    return Responder(counterparty_material)


@pytest.fixture
def make_client(caller_material):
    """Build a SecureHttpClient whose requests go to a handler function."""
    clients = []

    def _make(handler, **kwargs):
        kwargs.setdefault("key_material", caller_material)
        http_client = httpx.Client(
            transport=httpx.MockTransport(handler),
            base_url=COUNTERPARTY_URL,
        )
        client = SecureHttpClient(http_client=http_client, **kwargs)
        clients.append(http_client)
        return client

    yield _make

    for http_client in clients:
        http_client.close()


def sealed_response(sealed, status_code=None) -> httpx.Response:
    """Turn a responder SealedResponse into an httpx.Response."""
    return httpx.Response(
        status_code or sealed.status_code,
        content=sealed.body.encode("utf-8"),
        headers=sealed.headers,
    )


@pytest.fixture
def to_response():
    return sealed_response


@pytest.fixture
def fake_cipher():
    return ReversingCipher()
