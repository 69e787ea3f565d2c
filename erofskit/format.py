"""On-disk structures and constants of the EROFS image format."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar

EROFS_SUPER_MAGIC_V1 = 0xE0F5E1E2
EROFS_SUPER_OFFSET = 1024

EROFS_FEATURE_COMPAT_SB_CHKSUM = 0x00000001
EROFS_FEATURE_COMPAT_MTIME = 0x00000002
EROFS_FEATURE_COMPAT_XATTR_FILTER = 0x00000004

EROFS_FEATURE_INCOMPAT_ZERO_PADDING = 0x00000001
EROFS_FEATURE_INCOMPAT_COMPR_CFGS = 0x00000002
EROFS_FEATURE_INCOMPAT_BIG_PCLUSTER = 0x00000002
EROFS_FEATURE_INCOMPAT_CHUNKED_FILE = 0x00000004
EROFS_FEATURE_INCOMPAT_DEVICE_TABLE = 0x00000008
EROFS_FEATURE_INCOMPAT_COMPR_HEAD2 = 0x00000008
EROFS_FEATURE_INCOMPAT_ZTAILPACKING = 0x00000010
EROFS_FEATURE_INCOMPAT_FRAGMENTS = 0x00000020
EROFS_FEATURE_INCOMPAT_DEDUPE = 0x00000020
EROFS_FEATURE_INCOMPAT_XATTR_PREFIXES = 0x00000040
EROFS_ALL_FEATURE_INCOMPAT = (
    EROFS_FEATURE_INCOMPAT_ZERO_PADDING
    | EROFS_FEATURE_INCOMPAT_COMPR_CFGS
    | EROFS_FEATURE_INCOMPAT_BIG_PCLUSTER
    | EROFS_FEATURE_INCOMPAT_CHUNKED_FILE
    | EROFS_FEATURE_INCOMPAT_DEVICE_TABLE
    | EROFS_FEATURE_INCOMPAT_COMPR_HEAD2
    | EROFS_FEATURE_INCOMPAT_ZTAILPACKING
    | EROFS_FEATURE_INCOMPAT_FRAGMENTS
    | EROFS_FEATURE_INCOMPAT_DEDUPE
    | EROFS_FEATURE_INCOMPAT_XATTR_PREFIXES
)

EROFS_SB_EXTSLOT_SIZE = 16

EROFS_I_VERSION_BITS = 1
EROFS_I_DATALAYOUT_BITS = 3
EROFS_I_VERSION_BIT = 0
EROFS_I_DATALAYOUT_BIT = 1
EROFS_I_ALL = (1 << (EROFS_I_DATALAYOUT_BIT + EROFS_I_DATALAYOUT_BITS)) - 1

EROFS_CHUNK_FORMAT_BLKBITS_MASK = 0x001F
EROFS_CHUNK_FORMAT_INDEXES = 0x0020
EROFS_CHUNK_FORMAT_ALL = EROFS_CHUNK_FORMAT_BLKBITS_MASK | EROFS_CHUNK_FORMAT_INDEXES

EROFS_INODE_LAYOUT_COMPACT = 0
EROFS_INODE_LAYOUT_EXTENDED = 1

EROFS_XATTR_INDEX_USER = 1
EROFS_XATTR_INDEX_POSIX_ACL_ACCESS = 2
EROFS_XATTR_INDEX_POSIX_ACL_DEFAULT = 3
EROFS_XATTR_INDEX_TRUSTED = 4
EROFS_XATTR_INDEX_LUSTRE = 5
EROFS_XATTR_INDEX_SECURITY = 6

EROFS_XATTR_LONG_PREFIX = 0x80
EROFS_XATTR_LONG_PREFIX_MASK = 0x7F

EROFS_XATTR_FILTER_BITS = 32
EROFS_XATTR_FILTER_DEFAULT = 0xFFFFFFFF
EROFS_XATTR_FILTER_SEED = 0x25BBE08F

EROFS_NULL_ADDR = -1
EROFS_BLOCK_MAP_ENTRY_SIZE = 4
EROFS_NAME_LEN = 255

Z_EROFS_PCLUSTER_MAX_SIZE = 1024 * 1024
Z_EROFS_LZMA_MAX_DICT_SIZE = 8 * Z_EROFS_PCLUSTER_MAX_SIZE
Z_EROFS_ZSTD_MAX_DICT_SIZE = Z_EROFS_PCLUSTER_MAX_SIZE

Z_EROFS_ADVISE_COMPACTED_2B = 0x0001
Z_EROFS_ADVISE_BIG_PCLUSTER_1 = 0x0002
Z_EROFS_ADVISE_BIG_PCLUSTER_2 = 0x0004
Z_EROFS_ADVISE_INLINE_PCLUSTER = 0x0008
Z_EROFS_ADVISE_INTERLACED_PCLUSTER = 0x0010
Z_EROFS_ADVISE_FRAGMENT_PCLUSTER = 0x0020

Z_EROFS_FRAGMENT_INODE_BIT = 7

Z_EROFS_LI_LCLUSTER_TYPE_BITS = 2
Z_EROFS_LI_LCLUSTER_TYPE_BIT = 0
Z_EROFS_LI_PARTIAL_REF = 1 << 15
Z_EROFS_LI_D0_CBLKCNT = 1 << 11

XATTR_ENTRY_HEADER_SIZE = 4
XATTR_IBODY_HEADER_SIZE = 12


class ErofsError(Exception):
    """Base class of errors raised for EROFS images."""


class FsCorruptedError(ErofsError):
    """The on-disk data is inconsistent or truncated."""


class NoAttributeError(ErofsError):
    """The requested extended attribute does not exist."""


class InodeDataLayout(IntEnum):
    FLAT_PLAIN = 0
    COMPRESSED_FULL = 1
    FLAT_INLINE = 2
    COMPRESSED_COMPACT = 3
    CHUNK_BASED = 4


class FileType(IntEnum):
    UNKNOWN = 0
    REG_FILE = 1
    DIR = 2
    CHRDEV = 3
    BLKDEV = 4
    FIFO = 5
    SOCK = 6
    SYMLINK = 7


class CompressionAlgorithm(IntEnum):
    LZ4 = 0
    LZMA = 1
    DEFLATE = 2
    ZSTD = 3


Z_EROFS_COMPRESSION_MAX = len(CompressionAlgorithm)
Z_EROFS_ALL_COMPR_ALGS = (1 << Z_EROFS_COMPRESSION_MAX) - 1


class LclusterType(IntEnum):
    PLAIN = 0
    HEAD1 = 1
    NONHEAD = 2
    HEAD2 = 3


def _unpack(st: struct.Struct, data, what: str) -> tuple:
    if len(data) < st.size:
        raise FsCorruptedError(
            f"truncated {what}: need {st.size} bytes, got {len(data)}"
        )
    return st.unpack_from(data)


@dataclass
class SuperBlock:
    """The 128-byte super block stored at EROFS_SUPER_OFFSET.

    ``compr_info`` holds the available compression algorithm bitmap when
    the COMPR_CFGS feature is set, and the lz4 maximum distance otherwise.
    """

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<IIIBBHQQIIII16s16sIHHHBBIQB23x")
    SIZE: ClassVar[int] = 128

    magic: int = EROFS_SUPER_MAGIC_V1
    checksum: int = 0
    feature_compat: int = 0
    blkszbits: int = 12
    sb_extslots: int = 0
    root_nid: int = 0
    inos: int = 0
    build_time: int = 0
    build_time_nsec: int = 0
    blocks: int = 0
    meta_blkaddr: int = 0
    xattr_blkaddr: int = 0
    uuid: bytes = bytes(16)
    volume_name: bytes = bytes(16)
    feature_incompat: int = 0
    compr_info: int = 0
    extra_devices: int = 0
    devt_slotoff: int = 0
    dirblkbits: int = 0
    xattr_prefix_count: int = 0
    xattr_prefix_start: int = 0
    packed_nid: int = 0
    xattr_filter_reserved: int = 0

    @property
    def block_size(self) -> int:
        return 1 << self.blkszbits

    def pack(self) -> bytes:
        return self.STRUCT.pack(
            self.magic, self.checksum, self.feature_compat, self.blkszbits,
            self.sb_extslots, self.root_nid, self.inos, self.build_time,
            self.build_time_nsec, self.blocks, self.meta_blkaddr,
            self.xattr_blkaddr, bytes(self.uuid), bytes(self.volume_name),
            self.feature_incompat, self.compr_info, self.extra_devices,
            self.devt_slotoff, self.dirblkbits, self.xattr_prefix_count,
            self.xattr_prefix_start, self.packed_nid, self.xattr_filter_reserved,
        )

    @classmethod
    def unpack(cls, data) -> "SuperBlock":
        return cls(*_unpack(cls.STRUCT, data, "super block"))


@dataclass
class DeviceSlot:
    """A 128-byte entry of the device table."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<64sII56x")
    SIZE: ClassVar[int] = 128

    tag: bytes = bytes(64)
    blocks: int = 0
    mapped_blkaddr: int = 0

    def pack(self) -> bytes:
        return self.STRUCT.pack(bytes(self.tag), self.blocks, self.mapped_blkaddr)

    @classmethod
    def unpack(cls, data) -> "DeviceSlot":
        return cls(*_unpack(cls.STRUCT, data, "device slot"))


class _InodeFormatMixin:
    format: int
    i_u: int

    @property
    def layout_version(self) -> int:
        return (self.format >> EROFS_I_VERSION_BIT) & ((1 << EROFS_I_VERSION_BITS) - 1)

    @property
    def datalayout(self) -> int:
        return (self.format >> EROFS_I_DATALAYOUT_BIT) & (
            (1 << EROFS_I_DATALAYOUT_BITS) - 1
        )

    @property
    def chunk_format(self) -> int:
        return self.i_u & 0xFFFF


@dataclass
class InodeCompact(_InodeFormatMixin):
    """The 32-byte compact on-disk inode."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<HHHHI4xIIHH4x")
    SIZE: ClassVar[int] = 32

    format: int = 0
    xattr_icount: int = 0
    mode: int = 0
    nlink: int = 0
    size: int = 0
    i_u: int = 0
    ino: int = 0
    uid: int = 0
    gid: int = 0

    def pack(self) -> bytes:
        return self.STRUCT.pack(
            self.format, self.xattr_icount, self.mode, self.nlink, self.size,
            self.i_u, self.ino, self.uid, self.gid,
        )

    @classmethod
    def unpack(cls, data) -> "InodeCompact":
        return cls(*_unpack(cls.STRUCT, data, "compact inode"))


@dataclass
class InodeExtended(_InodeFormatMixin):
    """The 64-byte extended on-disk inode."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<HHH2xQIIIIQII16x")
    SIZE: ClassVar[int] = 64

    format: int = 0
    xattr_icount: int = 0
    mode: int = 0
    size: int = 0
    i_u: int = 0
    ino: int = 0
    uid: int = 0
    gid: int = 0
    mtime: int = 0
    mtime_nsec: int = 0
    nlink: int = 0

    def pack(self) -> bytes:
        return self.STRUCT.pack(
            self.format, self.xattr_icount, self.mode, self.size, self.i_u,
            self.ino, self.uid, self.gid, self.mtime, self.mtime_nsec, self.nlink,
        )

    @classmethod
    def unpack(cls, data) -> "InodeExtended":
        return cls(*_unpack(cls.STRUCT, data, "extended inode"))


@dataclass
class XattrIbodyHeader:
    """Inline xattr header followed by the shared xattr id array."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<IB7x")
    SIZE: ClassVar[int] = XATTR_IBODY_HEADER_SIZE

    name_filter: int = 0
    shared_xattrs: tuple[int, ...] = ()

    def pack(self) -> bytes:
        count = len(self.shared_xattrs)
        if count > 0xFF:
            raise ValueError(f"too many shared xattrs: {count}")
        return self.STRUCT.pack(self.name_filter, count) + struct.pack(
            f"<{count}I", *self.shared_xattrs
        )

    @classmethod
    def unpack(cls, data) -> "XattrIbodyHeader":
        name_filter, count = _unpack(cls.STRUCT, data, "xattr ibody header")
        end = cls.SIZE + 4 * count
        if len(data) < end:
            raise FsCorruptedError("truncated shared xattr id array")
        ids = struct.unpack_from(f"<{count}I", data, cls.SIZE)
        return cls(name_filter, tuple(ids))


@dataclass
class XattrEntry:
    """An xattr entry with its name suffix and value."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<BBH")

    name_index: int = 0
    name: bytes = b""
    value: bytes = b""

    def size(self) -> int:
        return xattr_entry_size(len(self.name), len(self.value))

    def pack(self) -> bytes:
        if len(self.name) > 0xFF:
            raise ValueError(f"xattr name too long: {len(self.name)}")
        if len(self.value) > 0xFFFF:
            raise ValueError(f"xattr value too large: {len(self.value)}")
        raw = (
            self.STRUCT.pack(len(self.name), self.name_index, len(self.value))
            + bytes(self.name)
            + bytes(self.value)
        )
        return raw.ljust(self.size(), b"\0")

    @classmethod
    def unpack(cls, data) -> "XattrEntry":
        name_len, name_index, value_size = _unpack(cls.STRUCT, data, "xattr entry")
        start = XATTR_ENTRY_HEADER_SIZE
        if len(data) < start + name_len + value_size:
            raise FsCorruptedError("xattr entry beyond the end of data")
        name = bytes(data[start:start + name_len])
        value = bytes(data[start + name_len:start + name_len + value_size])
        return cls(name_index, name, value)


@dataclass
class InodeChunkIndex:
    """An 8-byte chunk index of a chunk-based inode."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<HHI")
    SIZE: ClassVar[int] = 8

    advise: int = 0
    device_id: int = 0
    blkaddr: int = 0

    def pack(self) -> bytes:
        return self.STRUCT.pack(self.advise, self.device_id, self.blkaddr & 0xFFFFFFFF)

    @classmethod
    def unpack(cls, data) -> "InodeChunkIndex":
        return cls(*_unpack(cls.STRUCT, data, "chunk index"))


@dataclass
class Dirent:
    """A 12-byte directory entry."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<QHBx")
    SIZE: ClassVar[int] = 12

    nid: int = 0
    nameoff: int = 0
    file_type: int = FileType.UNKNOWN

    def pack(self) -> bytes:
        return self.STRUCT.pack(self.nid, self.nameoff, self.file_type)

    @classmethod
    def unpack(cls, data) -> "Dirent":
        return cls(*_unpack(cls.STRUCT, data, "dirent"))


@dataclass
class MapHeader:
    """The 8-byte header of compressed inode indexes.

    ``fragmentoff`` is the raw first 32-bit word; its upper half is the
    tail-packing inline data size.
    """

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<IHBB")
    SIZE: ClassVar[int] = 8

    fragmentoff: int = 0
    advise: int = 0
    algorithmtype: int = 0
    clusterbits: int = 0

    @property
    def idata_size(self) -> int:
        return self.fragmentoff >> 16

    @property
    def whole_file_fragment(self) -> bool:
        return bool(self.clusterbits >> Z_EROFS_FRAGMENT_INODE_BIT)

    @property
    def fragment_offset64(self) -> int:
        return int.from_bytes(self.pack(), "little") ^ (1 << 63)

    def pack(self) -> bytes:
        return self.STRUCT.pack(
            self.fragmentoff, self.advise, self.algorithmtype, self.clusterbits
        )

    @classmethod
    def unpack(cls, data) -> "MapHeader":
        return cls(*_unpack(cls.STRUCT, data, "map header"))


@dataclass
class LclusterIndex:
    """An 8-byte full (non-compact) logical cluster index."""

    STRUCT: ClassVar[struct.Struct] = struct.Struct("<HHI")
    SIZE: ClassVar[int] = 8

    advise: int = 0
    clusterofs: int = 0
    blkaddr: int = 0

    @property
    def type(self) -> LclusterType:
        mask = (1 << Z_EROFS_LI_LCLUSTER_TYPE_BITS) - 1
        return LclusterType((self.advise >> Z_EROFS_LI_LCLUSTER_TYPE_BIT) & mask)

    @property
    def partial_ref(self) -> bool:
        return bool(self.advise & Z_EROFS_LI_PARTIAL_REF)

    @property
    def delta(self) -> tuple[int, int]:
        return self.blkaddr & 0xFFFF, self.blkaddr >> 16

    def pack(self) -> bytes:
        return self.STRUCT.pack(self.advise, self.clusterofs, self.blkaddr)

    @classmethod
    def unpack(cls, data) -> "LclusterIndex":
        return cls(*_unpack(cls.STRUCT, data, "lcluster index"))


def is_data_compressed(datalayout: int) -> bool:
    """Whether the data layout stores compressed data."""
    return datalayout in (
        InodeDataLayout.COMPRESSED_COMPACT,
        InodeDataLayout.COMPRESSED_FULL,
    )


def round_up(value: int, align: int) -> int:
    return -(-value // align) * align


def round_down(value: int, align: int) -> int:
    return value - value % align


def ilog2(value: int) -> int:
    """Floor of the base-2 logarithm of a positive integer."""
    if value <= 0:
        raise ValueError(f"ilog2 of non-positive value {value}")
    return value.bit_length() - 1


def xattr_ibody_size(icount: int) -> int:
    """Size in bytes of the inline xattr area for an ``i_xattr_icount``."""
    if not icount:
        return 0
    return XATTR_IBODY_HEADER_SIZE + 4 * (icount - 1)


def xattr_align(size: int) -> int:
    return round_up(size, XATTR_ENTRY_HEADER_SIZE)


def xattr_entry_size(name_len: int, value_size: int) -> int:
    return xattr_align(XATTR_ENTRY_HEADER_SIZE + name_len + value_size)


def full_index_align(end: int) -> int:
    """Start of the full lcluster index array after inode metadata ending at ``end``."""
    return round_up(end, 8) + MapHeader.SIZE + 8