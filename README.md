# erofskit

A pure-Python library for the EROFS (Enhanced Read-Only File System)
on-disk format. It has no runtime dependencies.

## Modules

- `erofskit.format` holds the format constants and the on-disk structures.
  Each structure has `pack()` and a `unpack(data)` class method:
  `SuperBlock`, `DeviceSlot`, `InodeCompact`, `InodeExtended`,
  `XattrIbodyHeader`, `XattrEntry`, `InodeChunkIndex`, `Dirent`,
  `MapHeader` and `LclusterIndex`. It also has the enums `InodeDataLayout`,
  `FileType`, `CompressionAlgorithm` and `LclusterType`, and the helpers
  `round_up`, `round_down`, `ilog2`, `is_data_compressed`,
  `xattr_ibody_size`, `xattr_align`, `xattr_entry_size` and
  `full_index_align`.
- `erofskit.xxhash` provides `xxh32(data, seed)` and `xxh64(data, seed)`.
- `erofskit.xattr_build` collects extended attributes and encodes them.
  `XattrBuilder` deduplicates key/value pairs into reference-counted
  `XattrItem`s and registers long name prefixes (`insert_name_prefix`).
  It reads the xattrs of source files (`read_file_xattrs`,
  `count_tree_xattrs`) and computes and encodes an inode's inline xattr
  area (`prepare_ibody_size`, `export_ibody`). It can also build the
  shared xattr area (`build_shared_xattrs`) and write long prefixes to a
  stream (`write_name_prefixes`). The module-level functions are
  `match_prefix` and `bkdr_hash`.
- `erofskit.xattr_read` reads xattrs from an existing image, given as
  bytes or as a seekable binary file. `XattrReader` has `getxattr`,
  `listxattr` and `read_all`. It works on `XattrInodeInfo` records.
  `parse_long_prefix` decodes a long prefix record into an
  `XattrPrefixItem`.
- `erofskit.zmap` maps logical offsets of compressed inodes to physical
  extents. `ZMapper.map_blocks(inode, la, flags)` returns a `MapBlocks`
  with `la`, `pa`, `llen`, `plen`, `flags` (a `MapFlags`) and
  `algorithmformat`. The inode is a `CompressedInode`.
  `decode_compacted_bits` decodes one compacted index entry.

## Examples

Hash some bytes:

```python
from erofskit.xxhash import xxh32, xxh64

xxh32(b"user.comment", 0)
xxh64(b"payload", 0)
```

Round-trip an on-disk structure:

```python
from erofskit.format import Dirent, FileType

raw = Dirent(nid=36, nameoff=24, file_type=FileType.REG_FILE).pack()
assert len(raw) == 12
assert Dirent.unpack(raw).nid == 36
```

Prepare the inline xattrs of one inode:

```python
from erofskit.xattr_build import XattrBuilder

builder = XattrBuilder(inline_xattr_tolerance=2, name_filter=True)
ixattrs = []
builder.set_xattr(ixattrs, "user.origin", b"archive")
size = builder.prepare_ibody_size(ixattrs)
body = builder.export_ibody(ixattrs, size)
```

Look up an xattr in an image:

```python
from erofskit.xattr_read import XattrInodeInfo, XattrReader

reader = XattrReader(image_bytes, blkszbits=12, meta_blkaddr=0, xattr_blkaddr=0)
inode = XattrInodeInfo(nid=36, inode_isize=32, xattr_isize=size)
value = reader.getxattr(inode, "user.origin")
```

## Errors

Failures raise exceptions. A corrupted or truncated image raises
`FsCorruptedError`. A missing attribute or an unknown name prefix raises
`NoAttributeError`. Both derive from `ErofsError`, and all three are in
`erofskit.format`.

## What it does not do

This is a library, not an image builder. It has no command-line program
and parses no mkfs options. It does not assemble a whole image and does not
write or checksum a superblock; a `SuperBlock` can only be packed and
unpacked. It does not compress or decompress file data. `ZMapper` only
reports where extents lie.

## Running the tests

Install the `test` extra, then run `pytest` from the project root.