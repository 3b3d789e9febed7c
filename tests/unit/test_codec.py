from __future__ import annotations

import asyncio
import json
import time

import pytest

from common.codec import (
    COMPRESSED_MARKER,
    ENCRYPTED_MARKER,
    IV_LENGTH,
    BlobFormat,
    PayloadCodec,
    classify_blob,
    compress,
    decompress,
    decrypt_payload,
    derive_key,
    encrypt_payload,
)
from common.errors import ConfigurationError, CryptoError, FormatError
from common.settings import Settings
from state.stores import MemoryStringStore

from _fakes import RecordingNotifier


MiB = 1024 * 1024


@pytest.fixture(scope="module")
def key():
    return derive_key("correct horse battery staple")


def test_derive_key_is_deterministic(key):
    other = derive_key("correct horse battery staple")
    blob = encrypt_payload(b'{"a":1}', key)
    assert decrypt_payload(blob, other) == b'{"a":1}'


def test_small_payload_uses_encrypted_marker(key):
    blob = encrypt_payload(b'{"hello":"world"}', key)
    assert blob.startswith(ENCRYPTED_MARKER)
    assert not blob.startswith(COMPRESSED_MARKER)
    assert classify_blob(blob) is BlobFormat.ENCRYPTED
    assert decrypt_payload(blob, key) == b'{"hello":"world"}'


def test_compression_threshold_is_exclusive(key):
    at = b"x" * 16
    over = b"x" * 17
    assert encrypt_payload(at, key, compress_threshold=16).startswith(ENCRYPTED_MARKER)
    assert encrypt_payload(over, key, compress_threshold=16).startswith(COMPRESSED_MARKER)


def test_large_payload_is_compressed_and_restored_exactly(key):
    payload = json.dumps({"blob": "ab" * (5 * MiB) + "c"}).encode("utf-8")
    assert len(payload) > 10 * MiB

    blob = encrypt_payload(payload, key)
    assert blob.startswith(COMPRESSED_MARKER)
    assert classify_blob(blob) is BlobFormat.COMPRESSED_ENCRYPTED
    assert len(blob) < len(payload)
    assert decrypt_payload(blob, key) == payload


def test_fresh_iv_per_call(key):
    a = encrypt_payload(b"{}", key)
    b = encrypt_payload(b"{}", key)
    start = len(ENCRYPTED_MARKER)
    assert a[start : start + IV_LENGTH] != b[start : start + IV_LENGTH]
    assert a != b


def test_wrong_password_fails(key):
    blob = encrypt_payload(b'{"secret":true}', key)
    with pytest.raises(CryptoError):
        decrypt_payload(blob, derive_key("wrong password"))


def test_flipped_ciphertext_byte_fails(key):
    blob = bytearray(encrypt_payload(b'{"secret":true}', key))
    blob[len(ENCRYPTED_MARKER) + IV_LENGTH + 2] ^= 0x01
    with pytest.raises(CryptoError):
        decrypt_payload(bytes(blob), key)


def test_truncated_blob_fails(key):
    with pytest.raises(CryptoError):
        decrypt_payload(ENCRYPTED_MARKER + b"123", key)


def test_classify_plain_and_chunked_json():
    assert classify_blob(b'{"localStorage":{}}') is BlobFormat.PLAIN
    assert classify_blob(b'{"__format":"chunked","__chunks":[]}') is BlobFormat.CHUNKED_ENVELOPE


@pytest.mark.parametrize("blob", [b"\x00\x01garbage", b"[1,2,3]", b"not json", b""])
def test_classify_rejects_unknown_formats(blob):
    with pytest.raises(FormatError):
        classify_blob(blob)


def test_compress_roundtrip_and_garbage():
    data = b'{"a":"' + b"z" * 1000 + b'"}'
    assert decompress(compress(data)) == data
    with pytest.raises(FormatError):
        decompress(b"definitely not a zip")


# --- PayloadCodec ---


def _codec(values, notifier=None, **kwargs):
    store = MemoryStringStore(values)
    settings = Settings(store)
    codec = PayloadCodec(settings, notifier=notifier or RecordingNotifier(), **kwargs)
    halts = []
    codec.add_halt_listener(lambda: halts.append(True))
    return codec, store, halts


@pytest.mark.asyncio
async def test_codec_roundtrip_with_settings():
    codec, store, halts = _codec({"aws-bucket": "b", "encryption-key": "pw"})
    blob = await codec.encrypt(b'{"x":1}')
    assert blob.startswith(ENCRYPTED_MARKER)
    assert await codec.decrypt(blob) == b'{"x":1}'
    assert halts == []
    assert store.get("encryption-key") == "pw"


@pytest.mark.asyncio
async def test_codec_compresses_over_configured_threshold():
    codec, _, _ = _codec({"aws-bucket": "b", "encryption-key": "pw"}, compress_threshold=8)
    blob = await codec.encrypt(b'{"long":"value"}')
    assert blob.startswith(COMPRESSED_MARKER)
    assert await codec.decrypt(blob) == b'{"long":"value"}'


@pytest.mark.asyncio
async def test_codec_missing_bucket_is_configuration_error():
    codec, _, halts = _codec({"encryption-key": "pw"})
    with pytest.raises(ConfigurationError):
        await codec.encrypt(b"{}")
    assert halts == []


@pytest.mark.asyncio
async def test_codec_missing_key_halts_and_alerts():
    notifier = RecordingNotifier()
    codec, _, halts = _codec({"aws-bucket": "b"}, notifier=notifier)
    with pytest.raises(ConfigurationError):
        await codec.encrypt(b"{}")
    assert halts == [True]
    assert notifier.alerts and notifier.alerts[0][0] == "Configuration Required"


@pytest.mark.asyncio
async def test_codec_wrong_key_invalidates_stored_key():
    writer, _, _ = _codec({"aws-bucket": "b", "encryption-key": "right"})
    blob = await writer.encrypt(b'{"x":1}')

    notifier = RecordingNotifier()
    reader, store, halts = _codec({"aws-bucket": "b", "encryption-key": "wrong"}, notifier=notifier)
    with pytest.raises(CryptoError):
        await reader.decrypt(blob)
    assert store.get("encryption-key") is None
    assert halts == [True]
    assert any("re-enter" in message for _, message in notifier.alerts)


@pytest.mark.asyncio
async def test_codec_plaintext_passthrough_needs_no_key():
    codec, _, halts = _codec({})
    legacy = b'{"localStorage":{"a":"1"},"indexedDB":{}}'
    assert await codec.decrypt(legacy) == legacy
    assert halts == []


@pytest.mark.asyncio
async def test_codec_garbage_is_format_error_and_keeps_key():
    codec, store, halts = _codec({"aws-bucket": "b", "encryption-key": "pw"})
    with pytest.raises(FormatError):
        await codec.decrypt(b"\xff\xfe not a backup")
    assert store.get("encryption-key") == "pw"
    assert halts == []


class SlowNotifier(RecordingNotifier):
    def alert(self, message, *, title="Alert"):
        time.sleep(0.3)
        super().alert(message, title=title)


@pytest.mark.asyncio
async def test_slow_notifier_does_not_block_event_loop():
    notifier = SlowNotifier()
    codec, _, halts = _codec({"aws-bucket": "b"}, notifier=notifier)
    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    task = asyncio.create_task(ticker())
    try:
        with pytest.raises(ConfigurationError):
            await codec.encrypt(b"{}")
    finally:
        task.cancel()

    assert notifier.alerts
    assert halts == [True]
    assert ticks >= 10
