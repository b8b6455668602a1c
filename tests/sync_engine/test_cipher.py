"""Unit tests for the path cipher."""

from __future__ import annotations

import base64
import hashlib

import pytest

from quietsync.sync_engine.cipher import (
    PathCipher,
    PathDecryptionError,
    derive_keys,
    generate_path_key,
    hash_path_key,
    to_posix_relative,
    to_windows_relative,
)

KEY_A = "a" * 43
KEY_B = "b" * 43


@pytest.fixture
def cipher() -> PathCipher:
    return PathCipher(KEY_A)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def test_generate_path_key_is_urlsafe_and_unique() -> None:
    keys = {generate_path_key() for _ in range(20)}
    assert len(keys) == 20
    for key in keys:
        assert "=" not in key
        assert set(key) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


def test_hash_path_key_is_sha256_hex() -> None:
    assert hash_path_key(KEY_A) == hashlib.sha256(KEY_A.encode()).hexdigest()


def test_derived_keys_are_distinct() -> None:
    mac_key, enc_key = derive_keys(KEY_A)
    assert mac_key != enc_key
    assert len(mac_key) == len(enc_key) == 32


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("segment", ["a", "main", "helpers", "über", "日本語", "x" * 97])
def test_segment_roundtrip(cipher: PathCipher, segment: str) -> None:
    assert cipher.decrypt_segment(cipher.encrypt_segment(segment)) == segment


def test_segment_is_deterministic(cipher: PathCipher) -> None:
    assert cipher.encrypt_segment("src") == PathCipher(KEY_A).encrypt_segment("src")


def test_segment_token_is_urlsafe(cipher: PathCipher) -> None:
    token = cipher.encrypt_segment("some_segment-name")
    assert "=" not in token
    assert "/" not in token
    assert "+" not in token


def test_different_keys_give_different_ciphertexts() -> None:
    assert PathCipher(KEY_A).encrypt_segment("src") != PathCipher(KEY_B).encrypt_segment("src")


def test_decrypt_with_wrong_key_fails() -> None:
    token = PathCipher(KEY_A).encrypt_segment("secret")
    with pytest.raises(PathDecryptionError):
        PathCipher(KEY_B).decrypt_segment(token)


@pytest.mark.parametrize("token", ["", "abc", "!!!!", "AAAA"])
def test_decrypt_malformed_token_fails(cipher: PathCipher, token: str) -> None:
    with pytest.raises(PathDecryptionError):
        cipher.decrypt_segment(token)


def test_tampered_token_fails(cipher: PathCipher) -> None:
    token = cipher.encrypt_segment("secret")
    raw = bytearray(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
    raw[-1] ^= 0x01
    tampered = base64.urlsafe_b64encode(bytes(raw)).decode().rstrip("=")
    with pytest.raises(PathDecryptionError):
        cipher.decrypt_segment(tampered)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "path",
    [
        "src/main.py",
        ".\\src\\util\\helpers.py",
        "a/b.c.d/e",
        ".gitignore",
        "dir/.env.local",
        "trailing/",
    ],
)
def test_path_roundtrip(cipher: PathCipher, path: str) -> None:
    assert cipher.decrypt_path(cipher.encrypt_path(path)) == path


def test_path_preserves_separators(cipher: PathCipher) -> None:
    encrypted = cipher.encrypt_path(".\\src\\main.py")
    assert encrypted.startswith(".\\")
    assert encrypted.count("\\") == 2
    assert encrypted.count(".") == 2


def test_root_passes_through(cipher: PathCipher) -> None:
    assert cipher.encrypt_path(".") == "."
    assert cipher.encrypt_path("") == "."
    assert cipher.decrypt_path(".") == "."


def test_equal_segments_encrypt_equally(cipher: PathCipher) -> None:
    encrypted = cipher.encrypt_path("src/src")
    left, right = encrypted.split("/")
    assert left == right


def test_relative_path_roundtrip(cipher: PathCipher) -> None:
    encrypted = cipher.encrypt_relative_path("src/util/helpers.py")
    assert encrypted.startswith(".\\")
    assert cipher.decrypt_to_relative_posix(encrypted) == "src/util/helpers.py"


def test_relative_root(cipher: PathCipher) -> None:
    assert cipher.encrypt_relative_path(".") == "."
    assert cipher.decrypt_to_relative_posix(".") == "."


def test_dotfile_keeps_leading_dot(cipher: PathCipher) -> None:
    assert cipher.decrypt_to_relative_posix(cipher.encrypt_relative_path(".gitignore")) == ".gitignore"


@pytest.mark.parametrize(
    ("posix", "windows"),
    [
        (".", "."),
        ("", "."),
        ("src/main.py", ".\\src\\main.py"),
        ("./src/main.py", ".\\src\\main.py"),
        (".env", ".\\.env"),
    ],
)
def test_windows_relative_form(posix: str, windows: str) -> None:
    assert to_windows_relative(posix) == windows


@pytest.mark.parametrize(
    ("windows", "posix"),
    [
        (".", "."),
        (".\\src\\main.py", "src/main.py"),
        ("./src/main.py", "src/main.py"),
        (".\\.env", ".env"),
        (".\\", "."),
    ],
)
def test_posix_relative_form(windows: str, posix: str) -> None:
    assert to_posix_relative(windows) == posix


@pytest.mark.parametrize(
    ("segment", "body_length"),
    [
        ("abc", 4),
        ("é", 5),  # 1 UTF-16 unit: 2 bytes + 3 NULs
        ("😀", 6),  # 2 UTF-16 units: 4 bytes + 2 NULs
        ("a😀b", 6),  # 4 UTF-16 units: 6 bytes, no padding
    ],
)
def test_padding_counts_utf16_units(cipher: PathCipher, segment: str, body_length: int) -> None:
    token = cipher.encrypt_segment(segment)
    raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
    assert len(raw) == 6 + body_length
    assert cipher.decrypt_segment(token) == segment
