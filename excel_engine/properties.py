"""Document properties and workbook/sheet protection."""

from __future__ import annotations

import base64
import hashlib
import os
from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class CustomProperty(BaseModel):
    name: str
    value: Union[bool, int, float, datetime, str]


class DocumentProperties(BaseModel):
    """Core (docProps/core.xml), extended (app.xml) and custom properties."""
    # Core
    title: Optional[str] = None
    subject: Optional[str] = None
    creator: Optional[str] = None
    keywords: Optional[str] = None
    description: Optional[str] = None
    last_modified_by: Optional[str] = None
    category: Optional[str] = None
    content_status: Optional[str] = None
    revision: Optional[str] = None
    created: Optional[datetime] = Field(default_factory=lambda: datetime.now(timezone.utc).replace(microsecond=0))
    modified: Optional[datetime] = None

    # Extended
    application: str = "Microsoft Excel"
    company: Optional[str] = None
    manager: Optional[str] = None
    app_version: Optional[str] = None

    # Custom
    custom: List[CustomProperty] = Field(default_factory=list)

    def set_custom(self, name: str, value: Union[bool, int, float, datetime, str]) -> None:
        for prop in self.custom:
            if prop.name == name:
                prop.value = value
                return
        self.custom.append(CustomProperty(name=name, value=value))

    def get_custom(self, name: str) -> Optional[Union[bool, int, float, datetime, str]]:
        for prop in self.custom:
            if prop.name == name:
                return prop.value
        return None

    def remove_custom(self, name: str) -> bool:
        before = len(self.custom)
        self.custom = [p for p in self.custom if p.name != name]
        return len(self.custom) != before


# =============================================================================
# PASSWORD HASHING
# =============================================================================

def legacy_password_hash(password: str) -> str:
    """16-bit XOR hash used by the ``password`` attribute of protection elements."""
    hash_value = 0
    for char in reversed(password):
        hash_value = ((hash_value >> 14) & 0x01) | ((hash_value << 1) & 0x7FFF)
        hash_value ^= ord(char)
    hash_value = ((hash_value >> 14) & 0x01) | ((hash_value << 1) & 0x7FFF)
    hash_value ^= len(password)
    hash_value ^= 0xCE4B
    return f"{hash_value:04X}"


def sha512_password_hash(password: str, salt: bytes, spin_count: int) -> bytes:
    """Iterated SHA-512 hash: H0 = H(salt + pw); Hn = H(Hn-1 + n as uint32le)."""
    digest = hashlib.sha512(salt + password.encode("utf-16-le")).digest()
    for i in range(spin_count):
        digest = hashlib.sha512(digest + i.to_bytes(4, "little")).digest()
    return digest


class ProtectionHash(BaseModel):
    algorithm_name: str = "SHA-512"
    hash_value: str  # base64
    salt_value: str  # base64
    spin_count: int = 100000

    @classmethod
    def create(cls, password: str, spin_count: int = 100000) -> "ProtectionHash":
        salt = os.urandom(16)
        digest = sha512_password_hash(password, salt, spin_count)
        return cls(
            hash_value=base64.b64encode(digest).decode("ascii"),
            salt_value=base64.b64encode(salt).decode("ascii"),
            spin_count=spin_count,
        )

    def verify(self, password: str) -> bool:
        if self.algorithm_name.upper().replace("-", "") != "SHA512":
            return False
        digest = sha512_password_hash(password, base64.b64decode(self.salt_value), self.spin_count)
        return base64.b64encode(digest).decode("ascii") == self.hash_value


class WorkbookProtection(BaseModel):
    lock_structure: bool = False
    lock_windows: bool = False
    lock_revision: bool = False
    workbook_password: Optional[str] = None  # Legacy 16-bit hash
    workbook_hash: Optional[ProtectionHash] = None

    def set_password(self, password: str, spin_count: int = 100000) -> None:
        self.workbook_hash = ProtectionHash.create(password, spin_count)
        self.workbook_password = None

    @property
    def is_protected(self) -> bool:
        return self.lock_structure or self.lock_windows or self.lock_revision


class SheetProtection(BaseModel):
    """Sheet protection flags. True for an action flag means the action is locked."""
    sheet: bool = True
    objects: bool = False
    scenarios: bool = False
    format_cells: bool = True
    format_columns: bool = True
    format_rows: bool = True
    insert_columns: bool = True
    insert_rows: bool = True
    insert_hyperlinks: bool = True
    delete_columns: bool = True
    delete_rows: bool = True
    select_locked_cells: bool = False
    sort: bool = True
    auto_filter: bool = True
    pivot_tables: bool = True
    select_unlocked_cells: bool = False
    password: Optional[str] = None  # Legacy 16-bit hash
    password_hash: Optional[ProtectionHash] = None

    def set_password(self, password: str) -> None:
        self.password = legacy_password_hash(password)
