"""ECMA-376 Agile Encryption for password-protected packages.

An encrypted workbook is a compound file holding:
- EncryptionInfo: version 4.4 header followed by the XML key descriptor
- EncryptedPackage: 8-byte plaintext size + AES-CBC segments of 4096 bytes
- \\x06DataSpaces: the data space map naming the encryption transform

Key derivation: H0 = SHA512(salt + password), Hn = SHA512(n + Hn-1) for the
spin count, then SHA512(Hn + block key) truncated to the key size. A random
secret key encrypts the package; the password-derived keys only wrap it.
"""

from __future__ import annotations

import base64
import hashlib
import io
import logging
import os
import struct
from dataclasses import dataclass
from typing import Optional, Union

import olefile
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from lxml import etree

from ..exceptions import EncryptionError
from .cfb import SIGNATURE, write_compound_file
from .namespaces import NS_ENCRYPTION, NS_KEY_PASSWORD

logger = logging.getLogger(__name__)

SEGMENT_SIZE = 4096
HASH_SIZE = 64
BLOCK_SIZE = 16
SALT_SIZE = 16

BLOCK_VERIFIER_INPUT = bytes.fromhex("fea7d2763b4b9e79")
BLOCK_VERIFIER_VALUE = bytes.fromhex("d7aa0f6d3061344e")
BLOCK_KEY_VALUE = bytes.fromhex("146e0be7abacd0d6")
BLOCK_HMAC_KEY = bytes.fromhex("5fb2ad010cb9e1f6")
BLOCK_HMAC_VALUE = bytes.fromhex("a0677f02b22c8433")

KEY_BITS = {"default": 256, "AES256": 256, "AES128": 128}

TRANSFORM_ID = "{FF9A3F03-56EF-4613-BDD5-5A41C1D07246}"


def is_encrypted_container(data: bytes) -> bool:
    return data[:8] == SIGNATURE


# =============================================================================
# PRIMITIVES
# =============================================================================

def _sha512(*parts: bytes) -> bytes:
    digest = hashlib.sha512()
    for part in parts:
        digest.update(part)
    return digest.digest()


def _fit(data: bytes, size: int, pad: bytes = b"\x36") -> bytes:
    """Truncate, or pad with ``pad`` bytes, to ``size``."""
    if len(data) >= size:
        return data[:size]
    return data + pad * (size - len(data))


def _zero_pad(data: bytes, unit: int = BLOCK_SIZE) -> bytes:
    remainder = len(data) % unit
    return data if remainder == 0 else data + b"\x00" * (unit - remainder)


def _aes(key: bytes, iv: bytes, data: bytes, encrypt: bool) -> bytes:
    cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    worker = cipher.encryptor() if encrypt else cipher.decryptor()
    return worker.update(data) + worker.finalize()


def _password_hash(password: str, salt: bytes, spin_count: int) -> bytes:
    digest = _sha512(salt, password.encode("utf-16-le"))
    for i in range(spin_count):
        digest = _sha512(struct.pack("<I", i), digest)
    return digest


def _derive_key(password_hash: bytes, block_key: bytes, key_bytes: int) -> bytes:
    return _fit(_sha512(password_hash, block_key), key_bytes)


def _segment_iv(key_salt: bytes, index: int) -> bytes:
    return _fit(_sha512(key_salt, struct.pack("<I", index)), BLOCK_SIZE)


def _hmac(key: bytes, data: bytes) -> bytes:
    mac = hmac.HMAC(key, hashes.SHA512())
    mac.update(data)
    return mac.finalize()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _salt_bytes(salt: Optional[Union[str, bytes]]) -> bytes:
    if salt is None:
        return os.urandom(SALT_SIZE)
    if isinstance(salt, str):
        salt = base64.b64decode(salt)
    if len(salt) != SALT_SIZE:
        raise EncryptionError(f"Salt must be {SALT_SIZE} bytes, got {len(salt)}")
    return salt


# =============================================================================
# DATA SPACES
# =============================================================================

def _lp_unicode(text: str) -> bytes:
    """Length-prefixed UTF-16 string padded to a 4-byte boundary."""
    raw = text.encode("utf-16-le")
    return struct.pack("<I", len(raw)) + _zero_pad(raw, 4)


def _data_space_streams() -> dict:
    version = _lp_unicode("Microsoft.Container.DataSpaces") + struct.pack("<HHHHHH", 1, 0, 1, 0, 1, 0)

    entry_body = struct.pack("<II", 1, 0) + _lp_unicode("EncryptedPackage") + _lp_unicode("StrongEncryptionDataSpace")
    entry = struct.pack("<I", len(entry_body) + 4) + entry_body
    data_space_map = struct.pack("<II", 8, 1) + entry

    data_space_info = struct.pack("<II", 8, 1) + _lp_unicode("StrongEncryptionTransform")

    transform_id = _lp_unicode(TRANSFORM_ID)
    header = (
        struct.pack("<II", 8 + len(transform_id), 1) + transform_id
        + _lp_unicode("Microsoft.Container.EncryptionTransform")
        + struct.pack("<HHHHHH", 1, 0, 1, 0, 1, 0)
    )
    primary = header + struct.pack("<IIII", 0, 0, 0, 4)

    return {
        "\x06DataSpaces/Version": version,
        "\x06DataSpaces/DataSpaceMap": data_space_map,
        "\x06DataSpaces/DataSpaceInfo/StrongEncryptionDataSpace": data_space_info,
        "\x06DataSpaces/TransformInfo/StrongEncryptionTransform/\x06Primary": primary,
    }


# =============================================================================
# ENCRYPT
# =============================================================================

def encrypt_package(package: bytes, password: str, algorithm: str = "default",
                    salt: Optional[Union[str, bytes]] = None, spin_count: int = 100000) -> bytes:
    """Wrap a plain .xlsx package in an encrypted compound file."""
    if algorithm not in KEY_BITS:
        raise EncryptionError(f"Unsupported encryption algorithm: {algorithm}")
    key_bits = KEY_BITS[algorithm]
    key_bytes = key_bits // 8

    secret_key = os.urandom(key_bytes)
    key_salt = os.urandom(SALT_SIZE)
    password_salt = _salt_bytes(salt)

    # Package segments
    stream = bytearray(struct.pack("<Q", len(package)))
    for index, offset in enumerate(range(0, len(package), SEGMENT_SIZE)):
        segment = _zero_pad(package[offset:offset + SEGMENT_SIZE])
        stream += _aes(secret_key, _segment_iv(key_salt, index), segment, encrypt=True)
    encrypted_package = bytes(stream)

    # Data integrity
    hmac_key = os.urandom(HASH_SIZE)
    hmac_value = _hmac(hmac_key, encrypted_package)
    encrypted_hmac_key = _aes(secret_key, _fit(_sha512(key_salt, BLOCK_HMAC_KEY), BLOCK_SIZE),
                              _zero_pad(hmac_key), encrypt=True)
    encrypted_hmac_value = _aes(secret_key, _fit(_sha512(key_salt, BLOCK_HMAC_VALUE), BLOCK_SIZE),
                                _zero_pad(hmac_value), encrypt=True)

    # Password key encryptor
    pw_hash = _password_hash(password, password_salt, spin_count)
    verifier = os.urandom(SALT_SIZE)
    encrypted_verifier = _aes(_derive_key(pw_hash, BLOCK_VERIFIER_INPUT, key_bytes), password_salt,
                              _zero_pad(verifier), encrypt=True)
    encrypted_verifier_hash = _aes(_derive_key(pw_hash, BLOCK_VERIFIER_VALUE, key_bytes), password_salt,
                                   _zero_pad(_sha512(verifier)), encrypt=True)
    encrypted_key = _aes(_derive_key(pw_hash, BLOCK_KEY_VALUE, key_bytes), password_salt,
                         _zero_pad(secret_key), encrypt=True)

    cipher_attrs = {
        "blockSize": str(BLOCK_SIZE), "keyBits": str(key_bits), "hashSize": str(HASH_SIZE),
        "cipherAlgorithm": "AES", "cipherChaining": "ChainingModeCBC", "hashAlgorithm": "SHA512",
    }
    root = etree.Element(f"{{{NS_ENCRYPTION}}}encryption", nsmap={None: NS_ENCRYPTION, "p": NS_KEY_PASSWORD})
    etree.SubElement(root, f"{{{NS_ENCRYPTION}}}keyData", saltSize=str(SALT_SIZE), **cipher_attrs,
                     saltValue=_b64(key_salt))
    etree.SubElement(root, f"{{{NS_ENCRYPTION}}}dataIntegrity", encryptedHmacKey=_b64(encrypted_hmac_key),
                     encryptedHmacValue=_b64(encrypted_hmac_value))
    encryptors = etree.SubElement(root, f"{{{NS_ENCRYPTION}}}keyEncryptors")
    encryptor = etree.SubElement(encryptors, f"{{{NS_ENCRYPTION}}}keyEncryptor", uri=NS_KEY_PASSWORD)
    etree.SubElement(
        encryptor, f"{{{NS_KEY_PASSWORD}}}encryptedKey",
        spinCount=str(spin_count), saltSize=str(SALT_SIZE), **cipher_attrs,
        saltValue=_b64(password_salt),
        encryptedVerifierHashInput=_b64(encrypted_verifier),
        encryptedVerifierHashValue=_b64(encrypted_verifier_hash),
        encryptedKeyValue=_b64(encrypted_key),
    )
    info = struct.pack("<HHI", 4, 4, 0x40) + etree.tostring(
        root, xml_declaration=True, encoding="UTF-8", standalone=True)

    streams = {"EncryptionInfo": info, "EncryptedPackage": encrypted_package}
    streams.update(_data_space_streams())
    logger.info(f"[CRYPTO] Encrypted package: AES-{key_bits}, spin count {spin_count}, {len(package)} bytes")
    return write_compound_file(streams)


# =============================================================================
# DECRYPT
# =============================================================================

@dataclass
class _KeyParams:
    salt: bytes
    key_bits: int
    block_size: int
    hash_size: int
    hash_algorithm: str
    cipher_algorithm: str


def _key_params(el: etree._Element) -> _KeyParams:
    return _KeyParams(
        salt=base64.b64decode(el.get("saltValue", "")),
        key_bits=int(el.get("keyBits", "256")),
        block_size=int(el.get("blockSize", "16")),
        hash_size=int(el.get("hashSize", "64")),
        hash_algorithm=el.get("hashAlgorithm", "SHA512"),
        cipher_algorithm=el.get("cipherAlgorithm", "AES"),
    )


def decrypt_package(data: bytes, password: Optional[str]) -> bytes:
    """Unwrap an encrypted compound file into the plain .xlsx bytes."""
    if password is None:
        raise EncryptionError("Workbook is encrypted; a password is required")
    try:
        ole = olefile.OleFileIO(io.BytesIO(data))
        info = ole.openstream("EncryptionInfo").read()
        encrypted_package = ole.openstream("EncryptedPackage").read()
    except OSError as e:
        raise EncryptionError(f"Not a readable encrypted container: {e}") from e

    major, minor = struct.unpack("<HH", info[:4])
    if (major, minor) != (4, 4):
        raise EncryptionError(f"Unsupported encryption version {major}.{minor}; only Agile (4.4) is supported")

    root = etree.fromstring(info[8:], parser=etree.XMLParser(resolve_entities=False, no_network=True))
    key_data = _key_params(root.find(f"{{{NS_ENCRYPTION}}}keyData"))
    encrypted_key_el = root.find(
        f"{{{NS_ENCRYPTION}}}keyEncryptors/{{{NS_ENCRYPTION}}}keyEncryptor/{{{NS_KEY_PASSWORD}}}encryptedKey")
    if encrypted_key_el is None:
        raise EncryptionError("No password key encryptor in EncryptionInfo")
    password_key = _key_params(encrypted_key_el)
    for params in (key_data, password_key):
        if params.cipher_algorithm != "AES" or params.hash_algorithm.upper().replace("-", "") != "SHA512":
            raise EncryptionError(
                f"Unsupported cipher {params.cipher_algorithm}/{params.hash_algorithm}; AES with SHA512 is supported")

    key_bytes = password_key.key_bits // 8
    pw_hash = _password_hash(password, password_key.salt, int(encrypted_key_el.get("spinCount", "100000")))

    def unwrap(block_key: bytes, attr: str) -> bytes:
        return _aes(_derive_key(pw_hash, block_key, key_bytes), password_key.salt[:BLOCK_SIZE],
                    base64.b64decode(encrypted_key_el.get(attr, "")), encrypt=False)

    verifier = unwrap(BLOCK_VERIFIER_INPUT, "encryptedVerifierHashInput")[:SALT_SIZE]
    verifier_hash = unwrap(BLOCK_VERIFIER_VALUE, "encryptedVerifierHashValue")[:password_key.hash_size]
    if _sha512(verifier)[:password_key.hash_size] != verifier_hash:
        raise EncryptionError("Wrong password")
    secret_key = unwrap(BLOCK_KEY_VALUE, "encryptedKeyValue")[:key_bytes]

    integrity = root.find(f"{{{NS_ENCRYPTION}}}dataIntegrity")
    if integrity is not None:
        hmac_key = _aes(secret_key, _fit(_sha512(key_data.salt, BLOCK_HMAC_KEY), key_data.block_size),
                        base64.b64decode(integrity.get("encryptedHmacKey", "")), encrypt=False)[:key_data.hash_size]
        expected = _aes(secret_key, _fit(_sha512(key_data.salt, BLOCK_HMAC_VALUE), key_data.block_size),
                        base64.b64decode(integrity.get("encryptedHmacValue", "")),
                        encrypt=False)[:key_data.hash_size]
        if _hmac(hmac_key, encrypted_package) != expected:
            raise EncryptionError("Encrypted package failed its integrity check")

    size = struct.unpack("<Q", encrypted_package[:8])[0]
    body = encrypted_package[8:]
    out = bytearray()
    for index, offset in enumerate(range(0, len(body), SEGMENT_SIZE)):
        out += _aes(secret_key, _segment_iv(key_data.salt, index), body[offset:offset + SEGMENT_SIZE], encrypt=False)
    logger.info(f"[CRYPTO] Decrypted package: AES-{key_data.key_bits}, {size} bytes")
    return bytes(out[:size])
