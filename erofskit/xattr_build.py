"""Collection of extended attributes and encoding of their on-disk form."""

from __future__ import annotations

import errno
import functools
import logging
import os
import stat
import struct
import sys
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

from .format import (
    EROFS_XATTR_FILTER_BITS,
    EROFS_XATTR_FILTER_DEFAULT,
    EROFS_XATTR_FILTER_SEED,
    EROFS_XATTR_INDEX_POSIX_ACL_ACCESS,
    EROFS_XATTR_INDEX_POSIX_ACL_DEFAULT,
    EROFS_XATTR_INDEX_SECURITY,
    EROFS_XATTR_INDEX_TRUSTED,
    EROFS_XATTR_INDEX_USER,
    EROFS_XATTR_LONG_PREFIX,
    XATTR_ENTRY_HEADER_SIZE,
    XATTR_IBODY_HEADER_SIZE,
    ErofsError,
    NoAttributeError,
    XattrEntry,
    round_up,
    xattr_align,
)
from .xxhash import xxh32

log = logging.getLogger(__name__)

XATTR_SYSTEM_PREFIX = b"system."
XATTR_NAME_POSIX_ACL_ACCESS = b"system.posix_acl_access"
XATTR_NAME_POSIX_ACL_DEFAULT = b"system.posix_acl_default"
OVL_XATTR_OPAQUE = b"trusted.overlay.opaque"
OVL_XATTR_ORIGIN = b"trusted.overlay.origin"

INT_MAX = 2**31 - 1
_MAX_SHARED_IN_IBODY = 0xFF
_MAX_LONG_PREFIXES = 0x80
_BKDR_SEED = 131313

# Predefined short name prefixes, in name-index order.
XATTR_TYPES: dict[int, bytes] = {
    EROFS_XATTR_INDEX_USER: b"user.",
    EROFS_XATTR_INDEX_POSIX_ACL_ACCESS: XATTR_NAME_POSIX_ACL_ACCESS,
    EROFS_XATTR_INDEX_POSIX_ACL_DEFAULT: XATTR_NAME_POSIX_ACL_DEFAULT,
    EROFS_XATTR_INDEX_TRUSTED: b"trusted.",
    EROFS_XATTR_INDEX_SECURITY: b"security.",
}

Name = Union[str, bytes]


def _to_bytes(name: Name) -> bytes:
    return os.fsencode(name) if isinstance(name, str) else bytes(name)


def match_prefix(key: Name) -> Optional[tuple[int, int]]:
    """Return ``(name_index, prefix_len)`` of the short prefix of ``key``, or None."""
    raw = _to_bytes(key)
    for index, prefix in sorted(XATTR_TYPES.items()):
        if raw.startswith(prefix):
            return index, len(prefix)
    return None


def bkdr_hash(data: bytes) -> int:
    """BKDR string hash over signed bytes, truncated to 32 bits."""
    h = 0
    for byte in bytes(data):
        signed = byte - 256 if byte > 127 else byte
        h = (h * _BKDR_SEED + signed) & 0xFFFFFFFF
    return h


@dataclass(eq=False)
class XattrItem:
    """A deduplicated key/value pair with its reference count.

    ``prefix`` is the on-disk name index (a long prefix index when one
    matched) and ``prefix_len`` the length of the matched prefix.
    """

    key: bytes
    value: bytes
    base_index: int
    prefix_len: int
    prefix: int
    count: int = 1
    shared_xattr_id: int = -1

    @property
    def hash(self) -> tuple[int, int]:
        return bkdr_hash(self.key), bkdr_hash(self.value)

    def to_entry(self) -> XattrEntry:
        return XattrEntry(self.prefix, self.key[self.prefix_len:], self.value)

    def next_align(self, pos: int) -> int:
        return xattr_align(
            pos + XATTR_ENTRY_HEADER_SIZE + len(self.key) + len(self.value)
            - self.prefix_len
        )


@dataclass
class LongPrefix:
    """An extra xattr name prefix registered by the user."""

    prefix: bytes
    index: int
    base_index: int
    base_len: int

    @property
    def infix(self) -> bytes:
        return self.prefix[self.base_len:]


def _compare_shared(a: XattrItem, b: XattrItem) -> int:
    la = len(a.key) + len(a.value)
    lb = len(b.key) + len(b.value)
    n = min(la, lb)
    ka = (a.key + b"\0" + a.value)[:n].split(b"\0", 1)[0]
    kb = (b.key + b"\0" + b.value)[:n].split(b"\0", 1)[0]
    if ka != kb:
        return -1 if ka < kb else 1
    return (la > lb) - (la < lb)


def _is_skipped_xattr(key: bytes) -> bool:
    if key.startswith(XATTR_SYSTEM_PREFIX):
        if key in (XATTR_NAME_POSIX_ACL_ACCESS, XATTR_NAME_POSIX_ACL_DEFAULT):
            return False
        log.warning("skip unidentified xattr: %s", key.decode(errors="replace"))
        return True
    return False


def _list_names(path: str) -> list:
    lister = getattr(os, "listxattr", None)
    if lister is None:
        return []
    try:
        return list(lister(path, follow_symlinks=False))
    except OSError as exc:
        ignorable = {getattr(errno, "ENODATA", None), errno.EOPNOTSUPP}
        if exc.errno in ignorable:
            return []
        raise


class XattrBuilder:
    """Gathers xattrs of source files and encodes inline and shared areas.

    ``inline_xattr_tolerance`` below zero disables xattrs; an xattr seen on
    more than ``inline_xattr_tolerance`` files becomes shared.
    """

    def __init__(self, inline_xattr_tolerance: int = 2, name_filter: bool = True):
        self.inline_xattr_tolerance = inline_xattr_tolerance
        self.name_filter = name_filter
        self.prefixes: list[LongPrefix] = []
        self.xattr_filter_used = False
        self.xattr_blkaddr = 0
        self._items: dict[tuple[bytes, bytes], XattrItem] = {}
        self._shared: list[XattrItem] = []

    @property
    def shared_count(self) -> int:
        return len(self._shared)

    def get_item(self, key: Name, value: bytes = b"") -> XattrItem:
        """Return the item for ``key``/``value``, taking a new reference."""
        raw_key = _to_bytes(key)
        raw_value = bytes(value)
        item = self._items.get((raw_key, raw_value))
        if item is not None:
            item.count += 1
            return item
        matched = match_prefix(raw_key)
        if matched is None:
            raise NoAttributeError(f"unsupported xattr prefix: {raw_key!r}")
        base_index, prefix_len = matched
        item = XattrItem(raw_key, raw_value, base_index, prefix_len, base_index)
        for tnode in self.prefixes:
            if tnode.base_index == base_index and raw_key.startswith(tnode.prefix):
                item.prefix = tnode.index
                item.prefix_len = len(tnode.prefix)
                break
        self._items[(raw_key, raw_value)] = item
        return item

    def _put(self, item: XattrItem) -> None:
        if item.count > 1:
            item.count -= 1
            return
        item.count = 0
        self._items.pop((item.key, item.value), None)

    def _add(self, ixattrs: Optional[list], item: XattrItem) -> None:
        if ixattrs is not None:
            ixattrs.insert(0, item)
        elif item.count == self.inline_xattr_tolerance + 1:
            self._shared.insert(0, item)

    def insert_name_prefix(self, prefix: Name) -> LongPrefix:
        """Register an extra long name prefix."""
        raw = _to_bytes(prefix)
        if len(self.prefixes) >= _MAX_LONG_PREFIXES or len(raw) > 0xFF:
            raise OverflowError("too many or too long xattr name prefixes")
        matched = match_prefix(raw)
        if matched is None:
            raise NoAttributeError(f"unsupported xattr name prefix: {raw!r}")
        base_index, base_len = matched
        tnode = LongPrefix(
            raw, EROFS_XATTR_LONG_PREFIX | len(self.prefixes), base_index, base_len
        )
        self.prefixes.append(tnode)
        return tnode

    def set_xattr(self, ixattrs: list, key: Name, value: bytes = b"") -> XattrItem:
        item = self.get_item(key, value)
        self._add(ixattrs, item)
        return item

    def remove_xattr(self, ixattrs: list, key: Name) -> None:
        raw = _to_bytes(key)
        kept = []
        for item in ixattrs:
            if item.key == raw:
                self._put(item)
            else:
                kept.append(item)
        ixattrs[:] = kept

    def set_opaque(self, ixattrs: list) -> XattrItem:
        return self.set_xattr(ixattrs, OVL_XATTR_OPAQUE, b"y")

    def clear_opaque(self, ixattrs: list) -> None:
        self.remove_xattr(ixattrs, OVL_XATTR_OPAQUE)

    def set_origin(self, ixattrs: list) -> XattrItem:
        return self.set_xattr(ixattrs, OVL_XATTR_ORIGIN, b"")

    def read_file_xattrs(self, path, ixattrs: Optional[list]) -> None:
        """Read the xattrs of ``path``; with ``ixattrs`` None, only count them."""
        if self.inline_xattr_tolerance < 0:
            return
        spath = os.fspath(path)
        for name in _list_names(spath):
            key = _to_bytes(name)
            if _is_skipped_xattr(key):
                continue
            value = os.getxattr(spath, name, follow_symlinks=False)
            self._add(ixattrs, self.get_item(key, value))

    def count_tree_xattrs(self, path) -> None:
        """Count xattrs of everything below ``path`` to find shared ones."""
        with os.scandir(os.fspath(path)) as entries:
            for entry in entries:
                name = entry.name
                if name.startswith("lost+found"):
                    continue
                if sys.platform == "darwin" and name.startswith(".DS_Store"):
                    continue
                st = os.lstat(entry.path)
                self.read_file_xattrs(entry.path, None)
                if stat.S_ISDIR(st.st_mode):
                    self.count_tree_xattrs(entry.path)

    def _is_shared_slot(self, item: XattrItem, shared_count: int) -> bool:
        return item.shared_xattr_id >= 0 and shared_count < _MAX_SHARED_IN_IBODY

    def prepare_ibody_size(self, ixattrs: list) -> int:
        """Size of the inline xattr area of an inode."""
        if not ixattrs:
            return 0
        shared_count = 0
        size = XATTR_IBODY_HEADER_SIZE
        for item in ixattrs:
            if self._is_shared_slot(item, shared_count):
                shared_count += 1
                size += 4
                continue
            size = item.next_align(size)
        return size

    def export_ibody(self, ixattrs: list, size: int) -> bytes:
        """Encode the inline xattr area and release the inode's references."""
        buf = bytearray(size)
        name_filter = 0
        if self.name_filter:
            bits = 0
            for item in ixattrs:
                base_len = len(XATTR_TYPES[item.base_index])
                hashbit = xxh32(
                    item.key[base_len:], EROFS_XATTR_FILTER_SEED + item.base_index
                ) & (EROFS_XATTR_FILTER_BITS - 1)
                bits |= 1 << hashbit
            name_filter = EROFS_XATTR_FILTER_DEFAULT & ~bits
            if name_filter:
                self.xattr_filter_used = True

        shared_ids: list[int] = []
        inline: list[XattrItem] = []
        for item in ixattrs:
            if self._is_shared_slot(item, len(shared_ids)):
                shared_ids.append(item.shared_xattr_id)
                self._put(item)
            else:
                inline.insert(0, item)

        body = bytearray(struct.pack("<IB7x", name_filter, len(shared_ids)))
        body += struct.pack(f"<{len(shared_ids)}I", *shared_ids)
        for item in inline:
            body += item.to_entry().pack()
            self._put(item)
        ixattrs.clear()
        if len(body) > size:
            raise ValueError(f"xattr ibody needs {len(body)} bytes, only {size} given")
        buf[:len(body)] = body
        return bytes(buf)

    def build_shared_xattrs(self, path, base_offset: int, block_size: int) -> tuple[int, bytes]:
        """Find xattrs shared under ``path`` and encode the shared area.

        ``base_offset`` is the byte position where the area will be placed.
        Returns the shared xattr block address and the encoded bytes.
        """
        if self.inline_xattr_tolerance < 0 or self.inline_xattr_tolerance == INT_MAX:
            return self.xattr_blkaddr, b""
        if self._shared:
            raise ErofsError("shared xattrs have already been built")

        self.count_tree_xattrs(path)
        data = b""
        if self._shared:
            ordered = sorted(self._shared, key=functools.cmp_to_key(_compare_shared))
            self.xattr_blkaddr = base_offset // block_size
            off = base_offset % block_size
            out = bytearray()
            for item in ordered:
                item.shared_xattr_id = (off + len(out)) // 4
                out += item.to_entry().pack()
            self._shared = ordered
            data = bytes(out)

        for key, item in list(self._items.items()):
            if item.shared_xattr_id < 0:
                del self._items[key]
        return self.xattr_blkaddr, data

    def write_name_prefixes(self, stream: BinaryIO) -> Optional[tuple[int, int]]:
        """Write the long prefixes at the stream position, 4-byte aligned.

        Returns ``(xattr_prefix_start, xattr_prefix_count)``, or None when no
        long prefixes are registered.
        """
        if not self.prefixes:
            return None
        offset = stream.tell()
        if offset > 0xFFFFFFFF:
            raise OverflowError("packed file too large for xattr prefixes")
        offset = round_up(offset, 4)
        stream.seek(offset)
        start = offset >> 2
        for tnode in self.prefixes:
            payload = bytes([tnode.base_index]) + tnode.infix
            stream.write(struct.pack("<H", len(payload)) + payload)
            offset = round_up(offset + 2 + len(payload), 4)
            stream.seek(offset)
        return start, len(self.prefixes)