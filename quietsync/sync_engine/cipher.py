"""Deterministic, keyed, segment-wise path encryption.

Every path segment is encrypted on its own so that an unchanged subtree
re-encrypts to the same ciphertext on every run and every host that holds the
same path key.  The index service can then compare encrypted subtrees without
ever seeing a plaintext name.

Segment format (base64url, no padding)::

    tag[0:6] || AES-256-CTR(enc_key, nonce=tag[0:6] || 0x00 * 10, pad4(segment))

where ``tag = HMAC-SHA256(mac_key, segment)`` and ``pad4`` appends NULs up to a
multiple of four UTF-16 code units.  Separators (``/``, ``\\``)
and dots are kept in the clear, so ``src/main.py`` encrypts as
``E(src)/E(main).E(py)``.

Decryption recomputes the tag over the recovered plaintext and rejects the
token when it does not match.  That check is what turns "decrypted with the
wrong key" into an error instead of a silently garbled path.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

TAG_LENGTH = 6
_NONCE_TAIL = bytes(10)
_SEGMENT_SPLIT_RE = re.compile(r"([./\\])")
_PASSTHROUGH = frozenset({"/", "\\", "."})


class PathDecryptionError(ValueError):
    """Raised when a token does not decrypt under the current key.

    Callers must treat this as "wrong key" and never substitute a guess.
    """


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def generate_path_key() -> str:
    """Return a fresh 32-byte path key, base64url encoded."""
    return _b64url_encode(secrets.token_bytes(32))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_path_key(path_key: str) -> str:
    """Verifiable fingerprint of a path key (persisted and sent to the service)."""
    return sha256_hex(path_key)


def derive_keys(path_key: str) -> tuple[bytes, bytes]:
    """Derive independent ``(mac_key, enc_key)`` from one path key."""
    try:
        raw = _b64url_decode(path_key)
    except (ValueError, UnicodeEncodeError) as exc:
        msg = "Path key is not valid base64url"
        raise ValueError(msg) from exc
    mac_key = hashlib.sha256(raw + b"\x00").digest()
    enc_key = hashlib.sha256(raw + b"\x01").digest()
    return mac_key, enc_key


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------


class PathCipher:
    """Segment cipher bound to a single path key."""

    def __init__(self, path_key: str) -> None:
        self._mac_key, self._enc_key = derive_keys(path_key)
        self.path_key_hash = hash_path_key(path_key)

    def _tag(self, segment: str) -> bytes:
        return hmac.new(self._mac_key, segment.encode("utf-8"), hashlib.sha256).digest()[:TAG_LENGTH]

    def _keystream_cipher(self, tag: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._enc_key), modes.CTR(tag + _NONCE_TAIL))

    def encrypt_segment(self, segment: str) -> str:
        tag = self._tag(segment)
        padded = segment + "\0" * (-_utf16_units(segment) % 4)
        encryptor = self._keystream_cipher(tag).encryptor()
        body = encryptor.update(padded.encode("utf-8")) + encryptor.finalize()
        return _b64url_encode(tag + body)

    def decrypt_segment(self, token: str) -> str:
        try:
            raw = _b64url_decode(token)
        except (ValueError, UnicodeEncodeError) as exc:
            msg = f"Malformed encrypted segment: {token!r}"
            raise PathDecryptionError(msg) from exc
        if len(raw) <= TAG_LENGTH:
            msg = f"Encrypted segment too short: {token!r}"
            raise PathDecryptionError(msg)

        tag, body = raw[:TAG_LENGTH], raw[TAG_LENGTH:]
        decryptor = self._keystream_cipher(tag).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        try:
            segment = padded.decode("utf-8").rstrip("\0")
        except UnicodeDecodeError as exc:
            msg = "Encrypted segment does not decrypt under this key"
            raise PathDecryptionError(msg) from exc

        if not hmac.compare_digest(self._tag(segment), tag):
            msg = "Encrypted segment does not decrypt under this key"
            raise PathDecryptionError(msg)
        return segment

    # -- Paths -----------------------------------------------------------------

    def encrypt_path(self, plain_path: str) -> str:
        return _map_segments(plain_path, self.encrypt_segment)

    def decrypt_path(self, enc_path: str) -> str:
        return _map_segments(enc_path, self.decrypt_segment)

    def encrypt_relative_path(self, rel_posix: str) -> str:
        """Encrypt a POSIX workspace-relative path in the service's ``.\\a\\b`` form."""
        return self.encrypt_path(to_windows_relative(rel_posix))

    def decrypt_to_relative_posix(self, enc_path: str) -> str:
        """Inverse of :meth:`encrypt_relative_path`."""
        return to_posix_relative(self.decrypt_path(enc_path))


def _utf16_units(segment: str) -> int:
    # Padding counts UTF-16 code units; characters outside the BMP count twice.
    return len(segment.encode("utf-16-le")) // 2


def _map_segments(path: str, transform) -> str:
    if not path or path == ".":
        return "."
    parts = [p for p in _SEGMENT_SPLIT_RE.split(path) if p]
    return "".join(p if p in _PASSTHROUGH else transform(p) for p in parts)


# ---------------------------------------------------------------------------
# Relative path forms
# ---------------------------------------------------------------------------


def to_windows_relative(path: str) -> str:
    """``src/main.py`` -> ``.\\src\\main.py``; root stays ``.``."""
    if not path or path == ".":
        return "."
    stripped = path[2:] if path.startswith("./") else path
    return ".\\" + stripped.replace("/", "\\")


def to_posix_relative(path: str) -> str:
    """``.\\src\\main.py`` (or ``./src/main.py``) -> ``src/main.py``; root stays ``.``."""
    if not path or path == ".":
        return "."
    stripped = path.replace("\\", "/")
    if stripped.startswith("./"):
        stripped = stripped[2:]
    return stripped or "."
