import os

import pytest

from bucketflow.crypto import (
    NONCE_SIZE,
    TAG_SIZE,
    EncryptionCodec,
    InMemoryKeyStore,
    encryption_alias,
    encryption_metadata,
)
from bucketflow.error import DecryptionException, EncryptionKeyNotFoundException


@pytest.mark.parametrize("payload", [b"", b"x", b"hello world", os.urandom(70_000)])
def test_seal_then_open_returns_payload(payload):
    key = EncryptionCodec.generate_key()

    sealed = EncryptionCodec.seal(payload, key)

    assert len(sealed) == NONCE_SIZE + len(payload) + TAG_SIZE
    assert EncryptionCodec.open(sealed, key) == payload


def test_seal_uses_fresh_nonce():
    key = EncryptionCodec.generate_key()
    assert EncryptionCodec.seal(b"same", key) != EncryptionCodec.seal(b"same", key)


def test_open_rejects_wrong_key_and_tampering():
    key = EncryptionCodec.generate_key()
    sealed = bytearray(EncryptionCodec.seal(b"secret", key))

    with pytest.raises(DecryptionException):
        EncryptionCodec.open(bytes(sealed), EncryptionCodec.generate_key())

    sealed[NONCE_SIZE] ^= 0x01
    with pytest.raises(DecryptionException):
        EncryptionCodec.open(bytes(sealed), key)

    with pytest.raises(DecryptionException, match="too short"):
        EncryptionCodec.open(b"\x00" * (NONCE_SIZE + TAG_SIZE - 1), key)


def test_encrypt_attaches_alias_metadata():
    store = InMemoryKeyStore({"main": EncryptionCodec.generate_key()})
    codec = EncryptionCodec(store)

    sealed, metadata = codec.encrypt(b"payload", "main")

    assert metadata == {"cse-enabled": "true", "cse-key-alias": "main"}
    headers = {f"x-amz-meta-{k}": v for k, v in metadata.items()}
    assert codec.decrypt_if_needed(sealed, headers) == b"payload"


def test_encrypt_without_alias_passes_through():
    codec = EncryptionCodec(InMemoryKeyStore())
    assert codec.encrypt(b"plain", None) == (b"plain", {})
    assert codec.decrypt_if_needed(b"plain", {"content-type": "text/plain"}) == b"plain"


def test_unknown_alias_is_a_hard_failure():
    codec = EncryptionCodec(InMemoryKeyStore())

    with pytest.raises(EncryptionKeyNotFoundException) as exc:
        codec.encrypt(b"payload", "missing")
    assert exc.value.alias == "missing"

    with pytest.raises(EncryptionKeyNotFoundException):
        codec.decrypt_if_needed(b"ciphertext", {"x-amz-meta-cse-enabled": "true", "x-amz-meta-cse-key-alias": "gone"})


def test_alias_read_from_either_metadata_spelling():
    assert encryption_alias({"X-Amz-Meta-Cse-Enabled": "TRUE", "X-Amz-Meta-Cse-Key-Alias": "a"}) == "a"
    assert encryption_alias({"cse-enabled": "true", "cse-key-alias": "b"}) == "b"
    assert encryption_alias({"cse-enabled": "false", "cse-key-alias": "b"}) is None
    assert encryption_alias({}) is None
    assert encryption_alias({"x-amz-meta-cse-enabled": "true"}) == ""


def test_key_store_lifecycle():
    with InMemoryKeyStore() as store:
        key = EncryptionCodec.generate_key()
        store.save("b", key)
        store.save("a", key)
        assert len(key) == 32
        assert list(store.aliases()) == ["a", "b"]
        assert store.read("a") == key

        store.delete("a")
        assert store.read("a") is None
        assert encryption_metadata("b")["cse-key-alias"] == "b"
