"""Shared fixtures for the KMS test-suite."""
import os
import base64

import pytest
from pydantic import SecretBytes

from navigator_kms.vault import (
    EnvelopeCipher,
    KeyManager,
    MemoryBackend,
    SecretsManager,
    SecretStore,
)


@pytest.fixture
def master_key():
    """A random 32-byte master key."""
    return SecretBytes(os.urandom(32))


@pytest.fixture
def master_key_b64(master_key):
    return base64.b64encode(master_key.get_secret_value()).decode("ascii")


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def cipher():
    return EnvelopeCipher()


@pytest.fixture
async def key_manager(master_key, backend):
    km = KeyManager(master_key, backend=backend)
    await km.initialize()
    return km


@pytest.fixture
def store(key_manager, backend):
    return SecretStore(key_manager, backend=backend)


@pytest.fixture
async def manager(store):
    mgr = SecretsManager(store, cache_ttl=60, sweep_interval=3600)
    await mgr.initialize(start_sweeper=False)
    yield mgr
    await mgr.shutdown()


def flip_b64_bit(value: str, index: int = 0) -> str:
    """Flip the lowest bit of one byte inside a base64 string."""
    raw = bytearray(base64.b64decode(value))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")
