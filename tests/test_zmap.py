import io
import struct

import pytest

from erofskit.format import (
    Z_EROFS_ADVISE_BIG_PCLUSTER_1,
    Z_EROFS_ADVISE_INLINE_PCLUSTER,
    Z_EROFS_ADVISE_INTERLACED_PCLUSTER,
    Z_EROFS_LI_D0_CBLKCNT,
    ErofsError,
    FsCorruptedError,
    InodeDataLayout,
    LclusterIndex,
    MapHeader,
    full_index_align,
)
from erofskit.zmap import (
    GET_BLOCKS_FIEMAP,
    Z_EROFS_COMPRESSION_INTERLACED,
    Z_EROFS_COMPRESSION_SHIFTED,
    CompressedInode,
    MapFlags,
    ZMapper,
    decode_compacted_bits,
)

BS = 4096


def head(blkaddr, clusterofs=0):
    return LclusterIndex(advise=1, clusterofs=clusterofs, blkaddr=blkaddr)


def plain(blkaddr, clusterofs=0):
    return LclusterIndex(advise=0, clusterofs=clusterofs, blkaddr=blkaddr)


def nonhead(d0, d1):
    return LclusterIndex(advise=2, clusterofs=0, blkaddr=d0 | (d1 << 16))


def legacy_image(indexes, header=None):
    buf = bytearray(2 * BS)
    buf[32:40] = (header or MapHeader()).pack()
    start = full_index_align(32)
    for n, idx in enumerate(indexes):
        buf[start + 8 * n:start + 8 * n + 8] = idx.pack()
    return bytes(buf)


def legacy_inode(size):
    return CompressedInode(nid=0, size=size, datalayout=InodeDataLayout.COMPRESSED_FULL)


def compact_image(e0, e1, blkaddr, header=None):
    buf = bytearray(2 * BS)
    buf[32:40] = (header or MapHeader()).pack()
    buf[40:48] = struct.pack("<HHI", e0, e1, blkaddr)
    return bytes(buf)


def compact_inode(size):
    return CompressedInode(
        nid=0, size=size, datalayout=InodeDataLayout.COMPRESSED_COMPACT
    )


def test_decode_compacted_bits():
    data = struct.pack("<I", 0x2005)
    assert decode_compacted_bits(12, data, 0) == (5, 2)
    assert decode_compacted_bits(12, data, 4) == (0x200, 0)


def test_fill_inode_legacy_defaults():
    mapper = ZMapper(b"", blkszbits=12)
    inode = legacy_inode(BS)
    mapper.fill_inode(inode)
    assert inode.inited
    assert inode.logical_clusterbits == 12


def test_fill_inode_skipped_with_features():
    mapper = ZMapper(b"", blkszbits=12, big_pcluster=True)
    inode = legacy_inode(BS)
    mapper.fill_inode(inode)
    assert not inode.inited


def legacy_three():
    return legacy_image([head(100), nonhead(1, 1), head(101, clusterofs=100)])


def test_legacy_head_mapping():
    mapper = ZMapper(legacy_three())
    inode = legacy_inode(3 * BS)
    mp = mapper.map_blocks(inode, 0)
    assert mp.la == 0
    assert mp.llen == BS
    assert mp.pa == 100 * BS
    assert mp.plen == BS
    assert mp.flags == MapFlags.MAPPED | MapFlags.ENCODED
    assert mp.algorithmformat == 0


def test_legacy_nonhead_looks_back():
    mapper = ZMapper(legacy_three())
    inode = legacy_inode(3 * BS)
    mp = mapper.map_blocks(inode, 5000)
    assert mp.la == 0
    assert mp.llen == 2 * BS
    assert mp.pa == 100 * BS


def test_legacy_endoff_before_clusterofs():
    mapper = ZMapper(legacy_three())
    inode = legacy_inode(3 * BS)
    mp = mapper.map_blocks(inode, 2 * BS + 50)
    assert mp.la == 0
    assert mp.llen == 2 * BS + 100
    assert mp.flags & MapFlags.FULL_MAPPED


def test_legacy_fiemap_full_extent():
    mapper = ZMapper(legacy_three())
    inode = legacy_inode(3 * BS)
    mp = mapper.map_blocks(inode, 0, GET_BLOCKS_FIEMAP)
    assert mp.llen == 2 * BS + 100
    assert mp.flags & MapFlags.FULL_MAPPED


def test_beyond_eof_unmapped():
    mapper = ZMapper(legacy_three())
    inode = legacy_inode(3 * BS)
    mp = mapper.map_blocks(inode, 20000)
    assert mp.la == inode.size
    assert mp.flags == MapFlags(0)
    assert mp.la + mp.llen == 20000 + 1


def test_file_object_image():
    mapper = ZMapper(io.BytesIO(legacy_three()))
    mp = mapper.map_blocks(legacy_inode(3 * BS), 0)
    assert mp.pa == 100 * BS


def test_plain_shifted_and_interlaced():
    mapper = ZMapper(legacy_image([plain(7), nonhead(1, 1)]))
    mp = mapper.map_blocks(legacy_inode(2 * BS), 0)
    assert mp.algorithmformat == Z_EROFS_COMPRESSION_SHIFTED

    header = MapHeader(advise=Z_EROFS_ADVISE_INTERLACED_PCLUSTER)
    mapper = ZMapper(legacy_image([plain(7), nonhead(1, 1)], header))
    mp = mapper.map_blocks(legacy_inode(2 * BS), 0)
    assert mp.algorithmformat == Z_EROFS_COMPRESSION_INTERLACED


def test_plain_extent_longer_than_pcluster():
    mapper = ZMapper(legacy_image([plain(7), nonhead(1, 1)]))
    with pytest.raises(FsCorruptedError):
        mapper.map_blocks(legacy_inode(2 * BS), 5000)


def test_head2_in_legacy_unsupported():
    mapper = ZMapper(legacy_image([LclusterIndex(advise=3, blkaddr=1)]))
    with pytest.raises(ErofsError):
        mapper.map_blocks(legacy_inode(BS), 0)


def test_lcluster_zero_before_clusterofs_corrupted():
    mapper = ZMapper(legacy_image([head(5, clusterofs=100)]))
    with pytest.raises(FsCorruptedError):
        mapper.map_blocks(legacy_inode(BS), 10)


def test_unknown_algorithm():
    mapper = ZMapper(legacy_image([head(5)], MapHeader(algorithmtype=5)))
    with pytest.raises(ErofsError):
        mapper.map_blocks(legacy_inode(BS), 0)


def test_whole_file_fragment():
    header = MapHeader(fragmentoff=1234, clusterbits=0x80)
    mapper = ZMapper(legacy_image([], header))
    inode = legacy_inode(3000)
    mp = mapper.map_blocks(inode, 100)
    assert mp.la == 0
    assert mp.llen == 3000
    assert mp.flags == MapFlags.MAPPED | MapFlags.FULL_MAPPED | MapFlags.FRAGMENT
    assert inode.fragmentoff == 1234


def test_big_pcluster_cblkcnt():
    header = MapHeader(advise=Z_EROFS_ADVISE_BIG_PCLUSTER_1)
    image = legacy_image([head(100), nonhead(Z_EROFS_LI_D0_CBLKCNT | 2, 1)], header)
    mp = ZMapper(image).map_blocks(legacy_inode(2 * BS), 0)
    assert mp.plen == 2 * BS
    assert mp.pa == 100 * BS


def test_cblkcnt_without_big_pcluster_corrupted():
    image = legacy_image([head(100), nonhead(Z_EROFS_LI_D0_CBLKCNT | 2, 1)])
    with pytest.raises(FsCorruptedError):
        ZMapper(image).map_blocks(legacy_inode(2 * BS), 5000)


def test_ztailpacking_tail_extent():
    header = MapHeader(fragmentoff=100 << 16, advise=Z_EROFS_ADVISE_INLINE_PCLUSTER)
    image = legacy_image([head(100), head(0)], header)
    mapper = ZMapper(image, ztailpacking=True)
    inode = legacy_inode(BS + 50)
    tail = mapper.map_blocks(inode, BS + 4)
    assert tail.flags & MapFlags.META
    assert tail.la == BS
    assert tail.llen == 50
    assert tail.plen == 100
    assert tail.pa == full_index_align(32) + 2 * 8
    first = mapper.map_blocks(inode, 0)
    assert not first.flags & MapFlags.META
    assert first.pa == 100 * BS


def test_ztailpacking_too_large_corrupted():
    header = MapHeader(fragmentoff=5000 << 16, advise=Z_EROFS_ADVISE_INLINE_PCLUSTER)
    image = legacy_image([head(100), head(0)], header)
    with pytest.raises(FsCorruptedError):
        ZMapper(image).map_blocks(legacy_inode(BS + 50), 0)


def test_compact_heads_consecutive_blocks():
    image = compact_image(1 << 12, 1 << 12, 200)
    mapper = ZMapper(image)
    inode = compact_inode(2 * BS)
    first = mapper.map_blocks(inode, 0)
    second = mapper.map_blocks(inode, BS)
    assert first.la == 0
    assert second.la == BS
    assert second.pa - first.pa == BS
    assert first.llen == BS


def test_compact_last_nonhead_looks_back():
    image = compact_image(1 << 12, (2 << 12) | 1, 200)
    mapper = ZMapper(image)
    inode = compact_inode(2 * BS)
    mp = mapper.map_blocks(inode, 5000)
    head_map = mapper.map_blocks(inode, 0)
    assert mp.la == 0
    assert mp.llen == 2 * BS
    assert mp.pa == head_map.pa


def test_compact_inconsistent_big_pcluster():
    header = MapHeader(advise=Z_EROFS_ADVISE_BIG_PCLUSTER_1)
    image = compact_image(1 << 12, 1 << 12, 200, header)
    with pytest.raises(FsCorruptedError):
        ZMapper(image).map_blocks(compact_inode(2 * BS), 0)