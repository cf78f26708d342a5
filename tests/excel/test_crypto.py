"""Tests for password-encrypted packages.

Validates:
- Encrypted output is a compound file with the expected streams
- The right password opens it, wrong or missing passwords are rejected
- Both AES key sizes round-trip
"""

import io
import sys
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import olefile
import pytest

from excel_engine import EncryptionError, WriteOptions, new, open_workbook, write_bytes, write_with_password
from excel_engine.ooxml.crypto import decrypt_package, encrypt_package, is_encrypted_container

# Low spin count keeps key derivation fast in tests
SPIN = 1000


def encrypted_sample(password="secret", algorithm=None):
    wb = new()
    ws = wb["Sheet1"]
    ws.set_cell_value("A1", "Confidential")
    ws.set_cell_value("B2", 42)
    buffer = io.BytesIO()
    write_with_password(wb, buffer, password, algorithm=algorithm, spin_count=SPIN)
    return buffer.getvalue()


class TestEncryptedWrite:
    """Test the encrypted container layout."""

    def test_container_streams(self):
        """Output is a compound file carrying the encryption streams."""
        data = encrypted_sample()

        assert is_encrypted_container(data)
        assert not data.startswith(b"PK")
        ole = olefile.OleFileIO(io.BytesIO(data))
        assert ole.exists("EncryptionInfo")
        assert ole.exists("EncryptedPackage")
        info = ole.openstream("EncryptionInfo").read()
        assert info[:4] == b"\x04\x00\x04\x00"
        assert b'spinCount="1000"' in info
        ole.close()

        print("\n✓ Encrypted package has EncryptionInfo (4.4) and EncryptedPackage")

    def test_unknown_algorithm_rejected(self):
        """Only the Agile AES variants are accepted."""
        with pytest.raises(EncryptionError):
            encrypt_package(b"PK\x03\x04", "pw", algorithm="RC4", spin_count=SPIN)

        print("\n✓ Unknown encryption algorithm rejected")

    def test_bad_salt_rejected(self):
        """A caller-supplied salt must be 16 bytes."""
        with pytest.raises(EncryptionError):
            encrypt_package(b"PK\x03\x04", "pw", salt=b"short", spin_count=SPIN)

        print("\n✓ Short salt rejected")


class TestEncryptedRead:
    """Test opening encrypted packages."""

    def test_right_password(self):
        """The right password restores the original values."""
        restored = open_workbook(encrypted_sample("secret"), password="secret")

        ws = restored["Sheet1"]
        assert ws.get_value("A1") == "Confidential"
        assert ws.get_value("B2") == 42

        print("\n✓ Encrypted workbook opened with the right password")

    def test_wrong_password(self):
        data = encrypted_sample("secret")

        with pytest.raises(EncryptionError, match="Wrong password"):
            open_workbook(data, password="not-it")

        print("\n✓ Wrong password rejected")

    def test_missing_password(self):
        data = encrypted_sample("secret")

        with pytest.raises(EncryptionError, match="password is required"):
            open_workbook(data)

        print("\n✓ Missing password rejected")

    @pytest.mark.parametrize("algorithm", ["AES128", "AES256"])
    def test_key_sizes(self, algorithm):
        """Both key sizes round-trip."""
        data = encrypted_sample("pw", algorithm=algorithm)
        bits = "128" if algorithm == "AES128" else "256"

        ole = olefile.OleFileIO(io.BytesIO(data))
        assert f'keyBits="{bits}"'.encode() in ole.openstream("EncryptionInfo").read()
        ole.close()
        assert open_workbook(data, password="pw")["Sheet1"].get_value("A1") == "Confidential"

        print(f"\n✓ {algorithm} package round-tripped")

    def test_decrypt_returns_plain_package(self):
        """Decrypting gives back the exact plain package bytes."""
        wb = new()
        wb["Sheet1"].set_cell_value("A1", "x" * 10000)  # Spans several segments
        plain = write_bytes(wb)

        encrypted = encrypt_package(plain, "pw", spin_count=SPIN)

        assert decrypt_package(encrypted, "pw") == plain

        print(f"\n✓ {len(plain)} plain bytes recovered exactly")

    def test_tampered_package_fails_integrity(self):
        """A modified EncryptedPackage stream fails the HMAC check."""
        plain = write_bytes(new())
        encrypted = bytearray(encrypt_package(plain, "pw", spin_count=SPIN))
        ole = olefile.OleFileIO(io.BytesIO(bytes(encrypted)))
        stream = ole.openstream("EncryptedPackage").read()
        ole.close()
        # Flip one byte inside the first encrypted segment
        offset = bytes(encrypted).find(stream[8:40]) + 4
        encrypted[offset] ^= 0xFF

        with pytest.raises(EncryptionError, match="integrity"):
            decrypt_package(bytes(encrypted), "pw")

        print("\n✓ Tampered package failed its integrity check")

    def test_password_via_write_options(self):
        """WriteOptions carries the same password settings."""
        wb = new()
        wb["Sheet1"].set_cell_value("A1", 1)

        data = write_bytes(wb, WriteOptions(password="pw", algorithm="AES128", spin_count=SPIN))

        assert is_encrypted_container(data)
        assert open_workbook(data, password="pw")["Sheet1"].get_value("A1") == 1

        print("\n✓ WriteOptions password produced a readable encrypted package")
