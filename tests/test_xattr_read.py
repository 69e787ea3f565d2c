import io
import stat
import struct

import pytest

from erofskit.format import (
    EROFS_XATTR_INDEX_TRUSTED,
    EROFS_XATTR_INDEX_USER,
    EROFS_XATTR_LONG_PREFIX,
    ErofsError,
    FsCorruptedError,
    NoAttributeError,
    XattrEntry,
    XattrIbodyHeader,
)
from erofskit.xattr_build import XattrBuilder
from erofskit.xattr_read import (
    XattrInodeInfo,
    XattrReader,
    parse_long_prefix,
)

BLKSZBITS = 12
BLOCK = 1 << BLKSZBITS
NID = 2
IBODY_POS = NID * 32 + 32
SHARED_BLK = 3
DIR_MODE = stat.S_IFDIR | 0o755
REG_MODE = stat.S_IFREG | 0o644


def build_ibody(pairs, prefixes=()):
    builder = XattrBuilder(name_filter=False)
    for prefix in prefixes:
        builder.insert_name_prefix(prefix)
    ixattrs = []
    for key, value in pairs:
        builder.set_xattr(ixattrs, key, value)
    size = builder.prepare_ibody_size(ixattrs)
    return builder.export_ibody(ixattrs, size)


def make_image(ibody, ibody_pos=IBODY_POS, shared=b""):
    img = bytearray(4 * BLOCK)
    img[ibody_pos:ibody_pos + len(ibody)] = ibody
    base = SHARED_BLK * BLOCK
    img[base:base + len(shared)] = shared
    return bytes(img)


def reader_for(image, prefixes=()):
    return XattrReader(image, BLKSZBITS, 0, SHARED_BLK, prefixes)


def inode_for(ibody, nid=NID, mode=REG_MODE):
    return XattrInodeInfo(nid=nid, inode_isize=32, xattr_isize=len(ibody), mode=mode)


def test_getxattr_roundtrip_inline():
    ibody = build_ibody([("user.foo", b"bar"), ("security.sel", b"ctx")])
    reader = reader_for(make_image(ibody))
    inode = inode_for(ibody)
    assert reader.getxattr(inode, "user.foo") == b"bar"
    assert reader.getxattr(inode, b"security.sel") == b"ctx"


def test_listxattr_lists_all_inline_names():
    ibody = build_ibody([("user.foo", b"bar"), ("trusted.t", b"")])
    reader = reader_for(make_image(ibody))
    assert sorted(reader.listxattr(inode_for(ibody))) == [b"trusted.t", b"user.foo"]


def test_missing_xattr_raises():
    ibody = build_ibody([("user.foo", b"bar")])
    reader = reader_for(make_image(ibody))
    with pytest.raises(NoAttributeError):
        reader.getxattr(inode_for(ibody), "user.other")


def test_unknown_prefix_raises_no_attribute():
    ibody = build_ibody([("user.foo", b"bar")])
    reader = reader_for(make_image(ibody))
    with pytest.raises(NoAttributeError):
        reader.getxattr(inode_for(ibody), "weird.foo")


def test_name_too_long_rejected():
    ibody = build_ibody([("user.foo", b"bar")])
    reader = reader_for(make_image(ibody))
    with pytest.raises(ValueError):
        reader.getxattr(inode_for(ibody), "user." + "a" * 256)


def test_inode_without_xattrs():
    reader = reader_for(make_image(b""))
    inode = XattrInodeInfo(nid=NID, xattr_isize=0)
    assert reader.listxattr(inode) == []
    with pytest.raises(NoAttributeError):
        reader.getxattr(inode, "user.foo")


def test_header_only_ibody_not_supported():
    reader = reader_for(make_image(bytes(12)))
    inode = XattrInodeInfo(nid=NID, xattr_isize=12)
    with pytest.raises(ErofsError) as excinfo:
        reader.getxattr(inode, "user.foo")
    assert not isinstance(excinfo.value, NoAttributeError)


def test_bogus_small_ibody_is_corrupted():
    reader = reader_for(make_image(bytes(8)))
    inode = XattrInodeInfo(nid=NID, xattr_isize=8)
    with pytest.raises(FsCorruptedError):
        reader.listxattr(inode)


def test_shared_xattr_lookup():
    entry = XattrEntry(EROFS_XATTR_INDEX_TRUSTED, b"x", b"1").pack()
    ibody = XattrIbodyHeader(shared_xattrs=(0,)).pack()
    reader = reader_for(make_image(ibody, shared=entry))
    inode = inode_for(ibody)
    assert reader.getxattr(inode, "trusted.x") == b"1"
    assert reader.listxattr(inode) == [b"trusted.x"]
    assert inode.shared_xattrs == (0,)


def test_inline_before_shared():
    shared = XattrEntry(EROFS_XATTR_INDEX_USER, b"s", b"shared").pack()
    inline = XattrEntry(EROFS_XATTR_INDEX_USER, b"i", b"inline").pack()
    ibody = XattrIbodyHeader(shared_xattrs=(0,)).pack() + inline
    reader = reader_for(make_image(ibody, shared=shared))
    inode = inode_for(ibody)
    assert reader.listxattr(inode) == [b"user.i", b"user.s"]
    assert reader.getxattr(inode, "user.s") == b"shared"


def test_long_prefix_roundtrip():
    ibody = build_ibody(
        [("trusted.overlay.opaque", b"y")], prefixes=["trusted.overlay."]
    )
    prefix = parse_long_prefix(bytes([EROFS_XATTR_INDEX_TRUSTED]) + b"overlay.")
    reader = reader_for(make_image(ibody), prefixes=[prefix])
    inode = inode_for(ibody)
    assert reader.getxattr(inode, "trusted.overlay.opaque") == b"y"
    assert reader.listxattr(inode) == [b"trusted.overlay.opaque"]


def test_long_prefix_without_table_is_skipped():
    entry = XattrEntry(EROFS_XATTR_LONG_PREFIX | 0, b"opaque", b"y").pack()
    ibody = XattrIbodyHeader().pack() + entry
    reader = reader_for(make_image(ibody))
    inode = inode_for(ibody)
    assert reader.listxattr(inode) == []
    with pytest.raises(NoAttributeError):
        reader.getxattr(inode, "trusted.overlay.opaque")


def test_entry_beyond_ibody_is_corrupted():
    ibody = XattrIbodyHeader().pack() + struct.pack(
        "<BBH", 1, EROFS_XATTR_INDEX_USER, 100
    ) + b"a\0\0\0"
    reader = reader_for(make_image(ibody))
    with pytest.raises(FsCorruptedError):
        reader.getxattr(inode_for(ibody), "user.a")


def test_ibody_across_block_boundary():
    nid = 126
    ibody = build_ibody([("user.key", b"v" * 100)])
    image = make_image(ibody, ibody_pos=nid * 32 + 32)
    reader = reader_for(image)
    inode = inode_for(ibody, nid=nid)
    assert reader.getxattr(inode, "user.key") == b"v" * 100


def test_file_object_image():
    ibody = build_ibody([("user.foo", b"bar")])
    reader = reader_for(io.BytesIO(make_image(ibody)))
    assert reader.getxattr(inode_for(ibody), "user.foo") == b"bar"


def test_read_all_overlay_markers_on_directory():
    ibody = build_ibody(
        [
            ("trusted.overlay.opaque", b"y"),
            ("trusted.overlay.origin", b""),
            ("user.foo", b"bar"),
        ]
    )
    reader = reader_for(make_image(ibody))
    inode = inode_for(ibody, mode=DIR_MODE)
    pairs = reader.read_all(inode)
    assert sorted(pairs) == [
        (b"trusted.overlay.opaque", b"y"),
        (b"user.foo", b"bar"),
    ]
    assert inode.opaque is True
    assert inode.whiteouts is True


def test_read_all_opaque_on_regular_file_fails():
    ibody = build_ibody([("trusted.overlay.opaque", b"y")])
    reader = reader_for(make_image(ibody))
    with pytest.raises(ErofsError):
        reader.read_all(inode_for(ibody, mode=REG_MODE))


def test_read_all_origin_kept_on_regular_file():
    ibody = build_ibody([("trusted.overlay.origin", b"")])
    reader = reader_for(make_image(ibody))
    inode = inode_for(ibody, mode=REG_MODE)
    assert reader.read_all(inode) == [(b"trusted.overlay.origin", b"")]
    assert inode.whiteouts is False


def test_parse_long_prefix_fields():
    item = parse_long_prefix(bytes([EROFS_XATTR_INDEX_USER]) + b"infix.")
    assert item.base_index == EROFS_XATTR_INDEX_USER
    assert item.infix == b"infix."
    assert item.infix_len == len(b"infix.")


@pytest.mark.parametrize("data", [b"", bytes(257)])
def test_parse_long_prefix_bad_length(data):
    with pytest.raises(FsCorruptedError):
        parse_long_prefix(data)