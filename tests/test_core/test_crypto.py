import json

import pytest

from ga4_relay.core.crypto import (
    TIME_SLOT_SECONDS,
    Envelope,
    EnvelopeKind,
    create_permanent_token,
    create_site_time_token,
    create_time_boxed_token,
    decrypt,
    decrypt_permanent_token,
    encrypt,
    generate_key,
    open_stored,
    seal_for_storage,
    validate_key,
    verify_site_time_token,
    verify_time_boxed_token,
)
from ga4_relay.core.errors import (
    AuthenticationFailed,
    Expired,
    InvalidCiphertext,
    InvalidKeyFormat,
)

KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
SITE = "https://shop.example.com"


def test_encrypt_decrypt_roundtrip_with_unicode():
    text = '{"name": "purchase", "city": "Zürich, 東京"}'
    assert decrypt(encrypt(text, KEY), KEY).decode("utf-8") == text


def test_encrypt_uses_fresh_nonce():
    assert encrypt("same", KEY) != encrypt("same", KEY)


@pytest.mark.parametrize("key", [None, "", "abc", KEY[:-1], "zz" * 32])
def test_validate_key_rejects_bad_keys(key):
    with pytest.raises(InvalidKeyFormat):
        validate_key(key)


def test_generate_key_is_valid():
    key = generate_key()
    assert len(key) == 64
    assert len(validate_key(key)) == 32


def test_tampered_ciphertext_fails_authentication():
    token = encrypt("payload", KEY)
    # flip a bit in the last byte of the tag
    last = int(token[-2:], 16) ^ 0x01
    tampered = token[:-2] + f"{last:02x}"
    with pytest.raises(AuthenticationFailed):
        decrypt(tampered, KEY)


def test_wrong_key_fails_authentication():
    token = create_permanent_token("payload", KEY)
    with pytest.raises(AuthenticationFailed):
        decrypt_permanent_token(token, generate_key())


@pytest.mark.parametrize("blob", ["not-hex", "00ff", ""])
def test_malformed_ciphertext(blob):
    with pytest.raises(InvalidCiphertext):
        decrypt(blob, KEY)


def test_permanent_token_is_not_a_time_boxed_token():
    token = create_permanent_token("payload", KEY)
    with pytest.raises(InvalidCiphertext):
        verify_time_boxed_token(token, KEY)


def test_time_boxed_token_expiry():
    token = create_time_boxed_token("payload", KEY, ttl=60, now=1_000)
    assert verify_time_boxed_token(token, KEY, now=1_060) == "payload"
    with pytest.raises(Expired):
        verify_time_boxed_token(token, KEY, now=1_061)


def test_site_time_token_accepts_previous_slot():
    issued = 10 * TIME_SLOT_SECONDS + 290
    token = create_site_time_token('{"a": 1}', SITE, ttl=600, now=issued)
    # next slot, still inside the ttl
    assert verify_site_time_token(token, SITE, now=issued + 20) == '{"a": 1}'


def test_site_time_token_rejected_two_slots_later():
    issued = 10 * TIME_SLOT_SECONDS
    token = create_site_time_token("x", SITE, ttl=3600, now=issued)
    with pytest.raises(AuthenticationFailed):
        verify_site_time_token(token, SITE, now=issued + 2 * TIME_SLOT_SECONDS)


def test_site_time_token_bound_to_site():
    token = create_site_time_token("x", SITE, now=5_000)
    with pytest.raises(AuthenticationFailed):
        verify_site_time_token(token, "https://other.example.com", now=5_000)


def test_envelope_storage_format_is_tagged():
    sealed = seal_for_storage({"name": "page_view"}, KEY)
    doc = json.loads(sealed.to_storage())
    assert doc["type"] == "permanent"
    assert Envelope.from_storage(sealed.to_storage()).open(KEY) == '{"name": "page_view"}'


def test_plain_envelope_without_key():
    sealed = seal_for_storage({"name": "page_view"}, None)
    assert sealed.kind is EnvelopeKind.PLAIN
    assert not sealed.encrypted
    assert json.loads(open_stored(sealed.to_storage(), None, SITE)) == {"name": "page_view"}


def test_time_boxed_envelope_expires():
    sealed = Envelope.seal("v", KEY, ttl=10)
    assert sealed.kind is EnvelopeKind.TIME_BOXED
    with pytest.raises(Expired):
        sealed.open(KEY, now=10 ** 12)


def test_encrypted_envelope_without_key_is_rejected():
    sealed = seal_for_storage("secret", KEY)
    with pytest.raises(InvalidKeyFormat):
        sealed.open(None)


def test_envelope_requires_discriminator():
    with pytest.raises(InvalidCiphertext):
        Envelope.from_storage('{"body": "x"}')
    with pytest.raises(InvalidCiphertext):
        Envelope.from_storage('{"type": "rot13", "body": "x"}')


def test_open_stored_reads_legacy_values():
    assert open_stored('{"name": "legacy"}', None, SITE) == '{"name": "legacy"}'
    legacy_token = create_permanent_token('{"name": "old"}', KEY)
    assert open_stored(legacy_token, KEY, SITE) == '{"name": "old"}'
    bare = encrypt('{"name": "bare"}', KEY)
    assert open_stored(bare, KEY, SITE) == '{"name": "bare"}'


def test_open_stored_rejects_undecodable_legacy_value():
    with pytest.raises(InvalidCiphertext):
        open_stored("garbage that is neither json nor a token", KEY, SITE)
