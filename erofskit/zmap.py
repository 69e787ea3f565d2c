"""Mapping of logical file ranges to physical extents of compressed inodes."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntFlag

from .format import (
    Z_EROFS_ADVISE_BIG_PCLUSTER_1,
    Z_EROFS_ADVISE_BIG_PCLUSTER_2,
    Z_EROFS_ADVISE_COMPACTED_2B,
    Z_EROFS_ADVISE_FRAGMENT_PCLUSTER,
    Z_EROFS_ADVISE_INLINE_PCLUSTER,
    Z_EROFS_ADVISE_INTERLACED_PCLUSTER,
    Z_EROFS_COMPRESSION_MAX,
    Z_EROFS_LI_D0_CBLKCNT,
    ErofsError,
    FsCorruptedError,
    InodeDataLayout,
    LclusterIndex,
    LclusterType,
    MapHeader,
    full_index_align,
    ilog2,
    round_down,
    round_up,
)

EROFS_ISLOTBITS = 5

GET_BLOCKS_FIEMAP = 0x0002
GET_BLOCKS_FINDTAIL = 0x0008

# Pseudo algorithm formats for uncompressed (plain) pclusters.
Z_EROFS_COMPRESSION_SHIFTED = Z_EROFS_COMPRESSION_MAX
Z_EROFS_COMPRESSION_INTERLACED = Z_EROFS_COMPRESSION_MAX + 1

_HEAD_TYPES = (LclusterType.PLAIN, LclusterType.HEAD1)


class MapFlags(IntFlag):
    MAPPED = 0x0001
    META = 0x0002
    ENCODED = 0x0004
    FULL_MAPPED = 0x0008
    FRAGMENT = 0x0010
    PARTIAL_REF = 0x0020


@dataclass
class MapBlocks:
    """A mapped extent: logical start/length and physical start/length."""

    la: int = 0
    pa: int = 0
    llen: int = 0
    plen: int = 0
    flags: MapFlags = MapFlags(0)
    algorithmformat: int = 0


@dataclass
class CompressedInode:
    """A compressed inode and the index state learnt while mapping it."""

    nid: int
    size: int
    datalayout: int
    inode_isize: int = 32
    xattr_isize: int = 0
    z_advise: int = 0
    algorithmtype: tuple[int, int] = (0, 0)
    logical_clusterbits: int = 0
    idata_size: int = 0
    idataoff: int = 0
    tailextent_headlcn: int = 0
    fragmentoff: int = 0
    inited: bool = False


@dataclass
class _Recorder:
    lcn: int = 0
    type: int = 0
    headtype: int = 0
    clusterofs: int = 0
    delta: list = field(default_factory=lambda: [0, 0])
    pblk: int = 0
    compressedblks: int = 0
    nextpackoff: int = 0
    partialref: bool = False


def decode_compacted_bits(lobits: int, data, pos: int) -> tuple[int, int]:
    """Decode the compacted index entry starting at bit ``pos``.

    Returns ``(lo, lcluster_type)``.
    """
    raw = bytes(data[pos // 8:pos // 8 + 4]).ljust(4, b"\0")
    v = int.from_bytes(raw, "little") >> (pos & 7)
    lo = v & ((1 << lobits) - 1)
    return lo, (v >> lobits) & 3


def _compacted_la_distance(lobits: int, encodebits: int, vcnt: int, data, i: int) -> int:
    d1 = 0
    lo = 0
    while True:
        lo, typ = decode_compacted_bits(lobits, data, encodebits * i)
        if typ != LclusterType.NONHEAD:
            return d1
        d1 += 1
        i += 1
        if i >= vcnt:
            break
    if not lo & Z_EROFS_LI_D0_CBLKCNT:
        d1 += lo - 1
    return d1


class ZMapper:
    """Maps logical ranges of compressed inodes stored in an image."""

    def __init__(
        self,
        image,
        blkszbits: int = 12,
        meta_blkaddr: int = 0,
        big_pcluster: bool = False,
        ztailpacking: bool = False,
        fragments: bool = False,
    ):
        self.image = image
        self.blkszbits = blkszbits
        self.meta_blkaddr = meta_blkaddr
        self.big_pcluster = big_pcluster
        self.ztailpacking = ztailpacking
        self.fragments = fragments

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
            raise ErofsError(f"read of {size} bytes at {pos} beyond end of image")
        return data

    def _iloc(self, inode: CompressedInode) -> int:
        return (self.meta_blkaddr << self.blkszbits) + (inode.nid << EROFS_ISLOTBITS)

    def _meta_end(self, inode: CompressedInode) -> int:
        return self._iloc(inode) + inode.inode_isize + inode.xattr_isize

    def fill_inode(self, inode: CompressedInode) -> None:
        """Set defaults for legacy images that carry no map header features."""
        if (
            not self.big_pcluster
            and not self.ztailpacking
            and not self.fragments
            and inode.datalayout == InodeDataLayout.COMPRESSED_FULL
        ):
            inode.z_advise = 0
            inode.algorithmtype = (0, 0)
            inode.logical_clusterbits = self.blkszbits
            inode.inited = True

    def _fill_inode_lazy(self, inode: CompressedInode) -> None:
        if inode.inited:
            return
        pos = round_up(self._meta_end(inode), 8)
        h = MapHeader.unpack(self._read(pos, MapHeader.SIZE))

        if h.whole_file_fragment:
            inode.z_advise = Z_EROFS_ADVISE_FRAGMENT_PCLUSTER
            inode.fragmentoff = h.fragment_offset64
            inode.tailextent_headlcn = 0
            inode.inited = True
            return

        inode.z_advise = h.advise
        inode.algorithmtype = (h.algorithmtype & 15, h.algorithmtype >> 4)
        if inode.algorithmtype[0] >= Z_EROFS_COMPRESSION_MAX:
            raise ErofsError(
                f"unknown compression format {inode.algorithmtype[0]} for nid {inode.nid}"
            )
        inode.logical_clusterbits = self.blkszbits + (h.clusterbits & 7)
        if inode.datalayout == InodeDataLayout.COMPRESSED_COMPACT and (
            (not inode.z_advise & Z_EROFS_ADVISE_BIG_PCLUSTER_1)
            ^ (not inode.z_advise & Z_EROFS_ADVISE_BIG_PCLUSTER_2)
        ):
            raise FsCorruptedError(
                "big pcluster head1/2 of compact indexes should be consistent "
                f"for nid {inode.nid}"
            )

        if inode.z_advise & Z_EROFS_ADVISE_INLINE_PCLUSTER:
            inode.idata_size = h.idata_size
            tail = MapBlocks()
            self._do_map_blocks(inode, tail, GET_BLOCKS_FINDTAIL)
            blkoff = tail.pa % self.block_size
            if not tail.plen or blkoff + tail.plen > self.block_size:
                raise FsCorruptedError(
                    f"invalid tail-packing pclustersize {tail.plen}"
                )
        if inode.z_advise & Z_EROFS_ADVISE_FRAGMENT_PCLUSTER:
            inode.fragmentoff = h.fragmentoff
            self._do_map_blocks(inode, MapBlocks(), GET_BLOCKS_FINDTAIL)
        inode.inited = True

    def _legacy_load(self, m: _Recorder, inode: CompressedInode, lcn: int) -> None:
        pos = full_index_align(self._meta_end(inode)) + lcn * LclusterIndex.SIZE
        di = LclusterIndex.unpack(self._read(pos, LclusterIndex.SIZE))
        m.nextpackoff = pos + LclusterIndex.SIZE
        m.lcn = lcn
        typ = di.type
        if typ == LclusterType.NONHEAD:
            m.clusterofs = 1 << inode.logical_clusterbits
            d0, d1 = di.delta
            m.delta[0] = d0
            if d0 & Z_EROFS_LI_D0_CBLKCNT:
                if not inode.z_advise & Z_EROFS_ADVISE_BIG_PCLUSTER_1:
                    raise FsCorruptedError(
                        f"CBLKCNT without big pcluster @ lcn {lcn} of nid {inode.nid}"
                    )
                m.compressedblks = d0 & ~Z_EROFS_LI_D0_CBLKCNT
                m.delta[0] = 1
            m.delta[1] = d1
        elif typ in _HEAD_TYPES:
            if di.partial_ref:
                m.partialref = True
            m.clusterofs = di.clusterofs
            m.pblk = di.blkaddr
        else:
            raise ErofsError(f"unsupported lcluster type {int(typ)} @ lcn {lcn}")
        m.type = typ

    def _unpack_compacted(
        self, m: _Recorder, inode: CompressedInode, amortizedshift: int,
        pos: int, lookahead: bool,
    ) -> None:
        lclusterbits = inode.logical_clusterbits
        if (1 << amortizedshift) == 4 and lclusterbits <= 14:
            vcnt = 2
        elif (1 << amortizedshift) == 2 and lclusterbits <= 12:
            vcnt = 16
        else:
            raise ErofsError(f"unsupported compacted index for nid {inode.nid}")

        packsize = vcnt << amortizedshift
        m.nextpackoff = round_down(pos, packsize) + packsize
        big_pcluster = bool(inode.z_advise & Z_EROFS_ADVISE_BIG_PCLUSTER_1)
        lobits = max(lclusterbits, ilog2(Z_EROFS_LI_D0_CBLKCNT) + 1)
        encodebits = (packsize - 4) * 8 // vcnt
        base = round_down(pos, packsize)
        data = self._read(base, packsize)
        i = (pos - base) >> amortizedshift

        lo, typ = decode_compacted_bits(lobits, data, encodebits * i)
        m.type = typ
        if typ == LclusterType.NONHEAD:
            m.clusterofs = 1 << lclusterbits
            if lookahead:
                m.delta[1] = _compacted_la_distance(lobits, encodebits, vcnt, data, i)
            if lo & Z_EROFS_LI_D0_CBLKCNT:
                if not big_pcluster:
                    raise FsCorruptedError(
                        f"CBLKCNT without big pcluster @ nid {inode.nid}"
                    )
                m.compressedblks = lo & ~Z_EROFS_LI_D0_CBLKCNT
                m.delta[0] = 1
                return
            if i + 1 != vcnt:
                m.delta[0] = lo
                return
            # The last lcluster of a pack stores delta[1]; derive delta[0].
            lo, prev = decode_compacted_bits(lobits, data, encodebits * (i - 1))
            if prev != LclusterType.NONHEAD:
                lo = 0
            elif lo & Z_EROFS_LI_D0_CBLKCNT:
                lo = 1
            m.delta[0] = lo + 1
            return

        m.clusterofs = lo
        m.delta[0] = 0
        if not big_pcluster:
            nblk = 1
            while i > 0:
                i -= 1
                lo, t = decode_compacted_bits(lobits, data, encodebits * i)
                if t == LclusterType.NONHEAD:
                    i -= lo
                if i >= 0:
                    nblk += 1
        else:
            nblk = 0
            while i > 0:
                i -= 1
                lo, t = decode_compacted_bits(lobits, data, encodebits * i)
                if t == LclusterType.NONHEAD:
                    if lo & Z_EROFS_LI_D0_CBLKCNT:
                        i -= 1
                        nblk += lo & ~Z_EROFS_LI_D0_CBLKCNT
                        continue
                    if lo <= 1:
                        raise FsCorruptedError(
                            f"bogus compacted delta @ nid {inode.nid}"
                        )
                    i -= lo - 2
                    continue
                nblk += 1
        (blkaddr,) = struct.unpack_from("<I", data, packsize - 4)
        m.pblk = (blkaddr + nblk) & 0xFFFFFFFF

    def _compacted_load(
        self, m: _Recorder, inode: CompressedInode, lcn: int, lookahead: bool
    ) -> None:
        ebase = round_up(self._meta_end(inode), 8) + MapHeader.SIZE
        totalidx = -(-inode.size // self.block_size)
        if lcn >= totalidx:
            raise ErofsError(f"lcn {lcn} out of range for nid {inode.nid}")
        m.lcn = lcn
        initial_4b = (32 - ebase % 32) // 4
        if initial_4b == 32 // 4:
            initial_4b = 0
        if inode.z_advise & Z_EROFS_ADVISE_COMPACTED_2B and initial_4b < totalidx:
            compacted_2b = round_down(totalidx - initial_4b, 16)
        else:
            compacted_2b = 0

        pos = ebase
        if lcn < initial_4b:
            amortizedshift = 2
        else:
            pos += initial_4b * 4
            lcn -= initial_4b
            if lcn < compacted_2b:
                amortizedshift = 1
            else:
                pos += compacted_2b * 2
                lcn -= compacted_2b
                amortizedshift = 2
        pos += lcn << amortizedshift
        self._unpack_compacted(m, inode, amortizedshift, pos, lookahead)

    def _load_cluster(
        self, m: _Recorder, inode: CompressedInode, lcn: int, lookahead: bool
    ) -> None:
        if inode.datalayout == InodeDataLayout.COMPRESSED_FULL:
            self._legacy_load(m, inode, lcn)
        elif inode.datalayout == InodeDataLayout.COMPRESSED_COMPACT:
            self._compacted_load(m, inode, lcn, lookahead)
        else:
            raise ErofsError(f"nid {inode.nid} is not a compressed inode")

    def _extent_lookback(
        self, m: _Recorder, inode: CompressedInode, mp: MapBlocks, distance: int
    ) -> None:
        lclusterbits = inode.logical_clusterbits
        while True:
            lcn = m.lcn
            if lcn < distance:
                raise FsCorruptedError(f"bogus lookback distance @ nid {inode.nid}")
            lcn -= distance
            self._load_cluster(m, inode, lcn, False)
            if m.type == LclusterType.NONHEAD:
                if not m.delta[0]:
                    raise FsCorruptedError(
                        f"invalid lookback distance 0 @ nid {inode.nid}"
                    )
                distance = m.delta[0]
                continue
            if m.type in _HEAD_TYPES:
                m.headtype = m.type
                mp.la = (lcn << lclusterbits) | m.clusterofs
                return
            raise ErofsError(
                f"unknown type {int(m.type)} @ lcn {lcn} of nid {inode.nid}"
            )

    def _extent_compressedlen(
        self, m: _Recorder, inode: CompressedInode, mp: MapBlocks
    ) -> None:
        lclusterbits = inode.logical_clusterbits
        if (
            m.headtype == LclusterType.PLAIN
            or not inode.z_advise & Z_EROFS_ADVISE_BIG_PCLUSTER_1
        ):
            mp.plen = 1 << lclusterbits
            return
        lcn = m.lcn + 1
        if not m.compressedblks:
            self._load_cluster(m, inode, lcn, False)
            if m.type in _HEAD_TYPES:
                m.compressedblks = 1 << (lclusterbits - self.blkszbits)
            elif m.type == LclusterType.NONHEAD:
                if m.delta[0] != 1:
                    raise FsCorruptedError(
                        f"bogus CBLKCNT @ lcn {lcn} of nid {inode.nid}"
                    )
                if not m.compressedblks:
                    raise FsCorruptedError(
                        f"cannot find CBLKCNT @ lcn {lcn} of nid {inode.nid}"
                    )
            else:
                raise FsCorruptedError(
                    f"cannot find CBLKCNT @ lcn {lcn} of nid {inode.nid}"
                )
        mp.plen = m.compressedblks << self.blkszbits

    def _extent_decompressedlen(
        self, m: _Recorder, inode: CompressedInode, mp: MapBlocks
    ) -> None:
        lclusterbits = inode.logical_clusterbits
        lcn = m.lcn
        headlcn = mp.la >> lclusterbits
        while True:
            if (lcn << lclusterbits) >= inode.size:
                mp.llen = inode.size - mp.la
                return
            self._load_cluster(m, inode, lcn, True)
            if m.type == LclusterType.NONHEAD:
                pass
            elif m.type in _HEAD_TYPES:
                if lcn != headlcn:
                    break
                m.delta[1] = 1
            else:
                raise ErofsError(
                    f"unknown type {int(m.type)} @ lcn {lcn} of nid {inode.nid}"
                )
            lcn += m.delta[1]
            if not m.delta[1]:
                break
        mp.llen = (lcn << lclusterbits) + m.clusterofs - mp.la

    def _do_map_blocks(self, inode: CompressedInode, mp: MapBlocks, flags: int) -> None:
        ztailpacking = bool(inode.z_advise & Z_EROFS_ADVISE_INLINE_PCLUSTER)
        fragment = bool(inode.z_advise & Z_EROFS_ADVISE_FRAGMENT_PCLUSTER)
        m = _Recorder()
        lclusterbits = inode.logical_clusterbits
        ofs = inode.size - 1 if flags & GET_BLOCKS_FINDTAIL else mp.la
        initial_lcn = ofs >> lclusterbits
        endoff = ofs & ((1 << lclusterbits) - 1)

        self._load_cluster(m, inode, initial_lcn, False)
        if ztailpacking and flags & GET_BLOCKS_FINDTAIL:
            inode.idataoff = m.nextpackoff

        mp.flags = MapFlags.MAPPED | MapFlags.ENCODED
        end = (m.lcn + 1) << lclusterbits
        if m.type in _HEAD_TYPES:
            if endoff >= m.clusterofs:
                m.headtype = m.type
                mp.la = (m.lcn << lclusterbits) | m.clusterofs
                if ztailpacking and end > inode.size:
                    end = inode.size
            else:
                if not m.lcn:
                    raise FsCorruptedError(
                        f"invalid logical cluster 0 at nid {inode.nid}"
                    )
                end = (m.lcn << lclusterbits) | m.clusterofs
                mp.flags |= MapFlags.FULL_MAPPED
                m.delta[0] = 1
                self._extent_lookback(m, inode, mp, m.delta[0])
        elif m.type == LclusterType.NONHEAD:
            self._extent_lookback(m, inode, mp, m.delta[0])
        else:
            raise ErofsError(
                f"unknown type {int(m.type)} @ offset {ofs} of nid {inode.nid}"
            )

        if m.partialref:
            mp.flags |= MapFlags.PARTIAL_REF
        mp.llen = end - mp.la
        if flags & GET_BLOCKS_FINDTAIL:
            inode.tailextent_headlcn = m.lcn
            if fragment and inode.datalayout == InodeDataLayout.COMPRESSED_FULL:
                inode.fragmentoff |= m.pblk << 32
        if ztailpacking and m.lcn == inode.tailextent_headlcn:
            mp.flags |= MapFlags.META
            mp.pa = inode.idataoff
            mp.plen = inode.idata_size
        elif fragment and m.lcn == inode.tailextent_headlcn:
            mp.flags |= MapFlags.FRAGMENT
        else:
            mp.pa = m.pblk << self.blkszbits
            self._extent_compressedlen(m, inode, mp)

        if m.headtype == LclusterType.PLAIN:
            if mp.llen > mp.plen:
                raise FsCorruptedError(
                    f"plain extent longer than its pcluster @ nid {inode.nid}"
                )
            if inode.z_advise & Z_EROFS_ADVISE_INTERLACED_PCLUSTER:
                mp.algorithmformat = Z_EROFS_COMPRESSION_INTERLACED
            else:
                mp.algorithmformat = Z_EROFS_COMPRESSION_SHIFTED
        else:
            mp.algorithmformat = inode.algorithmtype[0]

        if flags & GET_BLOCKS_FIEMAP:
            self._extent_decompressedlen(m, inode, mp)
            mp.flags |= MapFlags.FULL_MAPPED

    def map_blocks(self, inode: CompressedInode, la: int, flags: int = 0) -> MapBlocks:
        """Return the extent containing logical offset ``la`` of ``inode``."""
        mp = MapBlocks(la=la)
        if la >= inode.size:
            mp.llen = la + 1 - inode.size
            mp.la = inode.size
            mp.flags = MapFlags(0)
            return mp
        self._fill_inode_lazy(inode)
        if (
            inode.z_advise & Z_EROFS_ADVISE_FRAGMENT_PCLUSTER
            and not inode.tailextent_headlcn
        ):
            mp.la = 0
            mp.llen = inode.size
            mp.flags = MapFlags.MAPPED | MapFlags.FULL_MAPPED | MapFlags.FRAGMENT
            return mp
        self._do_map_blocks(inode, mp, flags)
        return mp