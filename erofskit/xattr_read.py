"""Lookup and listing of extended attributes stored in an EROFS image."""

from __future__ import annotations

import os
import stat
import struct
from dataclasses import dataclass, field
from itertools import chain
from typing import Iterator, NamedTuple, Optional, Sequence, Union

from .format import (
    EROFS_NAME_LEN,
    EROFS_XATTR_INDEX_SECURITY,
    EROFS_XATTR_LONG_PREFIX,
    EROFS_XATTR_LONG_PREFIX_MASK,
    XATTR_ENTRY_HEADER_SIZE,
    XATTR_IBODY_HEADER_SIZE,
    ErofsError,
    FsCorruptedError,
    NoAttributeError,
    xattr_entry_size,
)
from .xattr_build import OVL_XATTR_OPAQUE, OVL_XATTR_ORIGIN, XATTR_TYPES, match_prefix

EROFS_ISLOTBITS = 5
# Name indexes below this bound have a slot in the short prefix table.
_XATTR_TYPE_SLOTS = EROFS_XATTR_INDEX_SECURITY + 1
_ENTRY_HEADER = struct.Struct("<BBH")

Name = Union[str, bytes]


def _as_bytes(name: Name) -> bytes:
    return os.fsencode(name) if isinstance(name, str) else bytes(name)


@dataclass(frozen=True)
class XattrPrefixItem:
    """A long xattr name prefix as recorded in the image."""

    base_index: int
    infix: bytes

    @property
    def infix_len(self) -> int:
        return len(self.infix)


def parse_long_prefix(data) -> XattrPrefixItem:
    """Decode one on-disk long prefix record (base index followed by infix)."""
    raw = bytes(data)
    if len(raw) < 1 or len(raw) > EROFS_NAME_LEN + 1:
        raise FsCorruptedError(f"bad long xattr prefix length {len(raw)}")
    return XattrPrefixItem(raw[0], raw[1:])


@dataclass
class XattrInodeInfo:
    """The parts of an inode needed to reach its xattrs.

    ``shared_xattrs`` is filled in lazily from the inline header.
    """

    nid: int
    inode_isize: int = 32
    xattr_isize: int = 0
    mode: int = 0
    opaque: bool = False
    whiteouts: bool = False
    shared_xattrs: Optional[tuple[int, ...]] = field(default=None, repr=False)


class _RawEntry(NamedTuple):
    name_pos: int
    name_len: int
    name_index: int
    value_size: int


class XattrReader:
    """Reads xattrs of inodes from an image given as bytes or a binary file."""

    def __init__(
        self,
        image,
        blkszbits: int = 12,
        meta_blkaddr: int = 0,
        xattr_blkaddr: int = 0,
        prefixes: Sequence[XattrPrefixItem] = (),
    ):
        self.image = image
        self.blkszbits = blkszbits
        self.meta_blkaddr = meta_blkaddr
        self.xattr_blkaddr = xattr_blkaddr
        self.prefixes = tuple(prefixes)

    @property
    def block_size(self) -> int:
        return 1 << self.blkszbits

    def _read(self, pos: int, size: int) -> bytes:
        if hasattr(self.image, "read"):
            self.image.seek(pos)
            data = self.image.read(size)
        else:
            data = bytes(memoryview(self.image)[pos:pos + size])
        if len(data) != size:
            raise FsCorruptedError(f"read of {size} bytes at {pos} beyond end of image")
        return data

    def _iloc(self, inode: XattrInodeInfo) -> int:
        return (self.meta_blkaddr << self.blkszbits) + (inode.nid << EROFS_ISLOTBITS)

    def _init_inode(self, inode: XattrInodeInfo) -> tuple[int, ...]:
        if inode.shared_xattrs is not None:
            return inode.shared_xattrs
        if inode.xattr_isize == XATTR_IBODY_HEADER_SIZE:
            raise ErofsError(
                f"xattr_isize {inode.xattr_isize} of nid {inode.nid} is not supported yet"
            )
        if inode.xattr_isize < XATTR_IBODY_HEADER_SIZE:
            if inode.xattr_isize:
                raise FsCorruptedError(f"bogus xattr ibody @ nid {inode.nid}")
            raise NoAttributeError(f"nid {inode.nid} has no xattrs")
        pos = self._iloc(inode) + inode.inode_isize
        count = self._read(pos, XATTR_IBODY_HEADER_SIZE)[4]
        ids = struct.unpack(
            f"<{count}I", self._read(pos + XATTR_IBODY_HEADER_SIZE, 4 * count)
        )
        inode.shared_xattrs = ids
        return ids

    def _entry_at(self, pos: int) -> _RawEntry:
        name_len, name_index, value_size = _ENTRY_HEADER.unpack(
            self._read(pos, XATTR_ENTRY_HEADER_SIZE)
        )
        return _RawEntry(pos + XATTR_ENTRY_HEADER_SIZE, name_len, name_index, value_size)

    def _inline_entries(self, inode: XattrInodeInfo) -> Iterator[_RawEntry]:
        header_sz = XATTR_IBODY_HEADER_SIZE + 4 * len(inode.shared_xattrs or ())
        if header_sz >= inode.xattr_isize:
            return
        pos = self._iloc(inode) + inode.inode_isize + header_sz
        remaining = inode.xattr_isize - header_sz
        while remaining:
            entry = self._entry_at(pos)
            size = xattr_entry_size(entry.name_len, entry.value_size)
            if remaining < size:
                raise FsCorruptedError(
                    f"xattr entry beyond xattr_isize @ nid {inode.nid}"
                )
            remaining -= size
            yield entry
            pos += size

    def _shared_entries(self, inode: XattrInodeInfo) -> Iterator[_RawEntry]:
        base = self.xattr_blkaddr << self.blkszbits
        for xattr_id in inode.shared_xattrs or ():
            yield self._entry_at(base + 4 * xattr_id)

    def _entries(self, inode: XattrInodeInfo) -> Iterator[_RawEntry]:
        return chain(self._inline_entries(inode), self._shared_entries(inode))

    def _resolve_prefix(self, name_index: int) -> Optional[tuple[int, bytes]]:
        if name_index & EROFS_XATTR_LONG_PREFIX:
            idx = name_index & EROFS_XATTR_LONG_PREFIX_MASK
            if idx >= len(self.prefixes):
                return None
            pf = self.prefixes[idx]
            return pf.base_index, pf.infix
        return name_index, b""

    def getxattr(self, inode: XattrInodeInfo, name: Name) -> bytes:
        """Return the value of the xattr ``name`` of ``inode``."""
        if name is None:
            raise ValueError("xattr name is required")
        self._init_inode(inode)
        raw = _as_bytes(name)
        matched = match_prefix(raw)
        if matched is None:
            raise NoAttributeError(f"unsupported xattr prefix: {raw!r}")
        index, prefix_len = matched
        suffix = raw[prefix_len:]
        if len(suffix) > EROFS_NAME_LEN:
            raise ValueError(f"xattr name too long: {len(suffix)}")

        for entry in self._entries(inode):
            resolved = self._resolve_prefix(entry.name_index)
            if resolved is None:
                continue
            base_index, infix = resolved
            if (
                base_index != index
                or len(suffix) != entry.name_len + len(infix)
                or not suffix.startswith(infix)
            ):
                continue
            if self._read(entry.name_pos, entry.name_len) != suffix[len(infix):]:
                continue
            return self._read(entry.name_pos + entry.name_len, entry.value_size)
        raise NoAttributeError(f"no xattr {raw!r} on nid {inode.nid}")

    def listxattr(self, inode: XattrInodeInfo) -> list[bytes]:
        """Return the full names of all xattrs of ``inode``, inline ones first."""
        try:
            self._init_inode(inode)
        except NoAttributeError:
            return []
        names = []
        for entry in self._entries(inode):
            resolved = self._resolve_prefix(entry.name_index)
            if resolved is None:
                continue
            base_index, infix = resolved
            if base_index >= _XATTR_TYPE_SLOTS:
                continue
            prefix = XATTR_TYPES.get(base_index, b"")
            names.append(prefix + infix + self._read(entry.name_pos, entry.name_len))
        return names

    def read_all(self, inode: XattrInodeInfo) -> list[tuple[bytes, bytes]]:
        """Return all ``(name, value)`` pairs, noting overlayfs markers.

        An opaque marker sets ``inode.opaque``; an empty origin marker on a
        directory sets ``inode.whiteouts`` and is left out of the result.
        """
        is_dir = stat.S_ISDIR(inode.mode)
        pairs = []
        for key in self.listxattr(inode):
            if key == OVL_XATTR_OPAQUE:
                if not is_dir:
                    raise ErofsError(f"opaque xattr on non-dir nid {inode.nid}")
                inode.opaque = True
            value = self.getxattr(inode, key)
            if not value and is_dir and key == OVL_XATTR_ORIGIN:
                inode.whiteouts = True
                continue
            pairs.append((key, value))
        return pairs