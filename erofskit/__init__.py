"""EROFS on-disk structures, xxHash, xattr encoding and lookup, and compressed block mapping."""

__version__ = "0.1.0"

__all__ = ["format", "xxhash", "xattr_build", "xattr_read", "zmap"]