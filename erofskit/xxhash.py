"""32- and 64-bit xxHash."""

from __future__ import annotations

import struct

_M32 = 0xFFFFFFFF
_M64 = 0xFFFFFFFFFFFFFFFF

PRIME32_1 = 2654435761
PRIME32_2 = 2246822519
PRIME32_3 = 3266489917
PRIME32_4 = 668265263
PRIME32_5 = 374761393

PRIME64_1 = 11400714785074694791
PRIME64_2 = 14029467366897019727
PRIME64_3 = 1609587929392839161
PRIME64_4 = 9650029242287828579
PRIME64_5 = 2870177450012600261


def _rotl32(x: int, r: int) -> int:
    return ((x << r) | (x >> (32 - r))) & _M32


def _rotl64(x: int, r: int) -> int:
    return ((x << r) | (x >> (64 - r))) & _M64


def _round32(acc: int, lane: int) -> int:
    acc = (acc + lane * PRIME32_2) & _M32
    return (_rotl32(acc, 13) * PRIME32_1) & _M32


def _round64(acc: int, lane: int) -> int:
    acc = (acc + lane * PRIME64_2) & _M64
    return (_rotl64(acc, 31) * PRIME64_1) & _M64


def _merge_round64(acc: int, val: int) -> int:
    acc ^= _round64(0, val)
    return (acc * PRIME64_1 + PRIME64_4) & _M64


def xxh32(data, seed: int = 0) -> int:
    """Return the 32-bit xxHash of a bytes-like object."""
    buf = bytes(data)
    length = len(buf)
    seed &= _M32
    pos = 0

    if length >= 16:
        v1 = (seed + PRIME32_1 + PRIME32_2) & _M32
        v2 = (seed + PRIME32_2) & _M32
        v3 = seed
        v4 = (seed - PRIME32_1) & _M32
        pos = length - length % 16
        for a, b, c, d in struct.iter_unpack("<4I", buf[:pos]):
            v1 = _round32(v1, a)
            v2 = _round32(v2, b)
            v3 = _round32(v3, c)
            v4 = _round32(v4, d)
        h32 = (_rotl32(v1, 1) + _rotl32(v2, 7) + _rotl32(v3, 12) + _rotl32(v4, 18)) & _M32
    else:
        h32 = (seed + PRIME32_5) & _M32

    h32 = (h32 + (length & _M32)) & _M32

    words_end = pos + (length - pos) // 4 * 4
    for (word,) in struct.iter_unpack("<I", buf[pos:words_end]):
        h32 = (h32 + word * PRIME32_3) & _M32
        h32 = (_rotl32(h32, 17) * PRIME32_4) & _M32

    for byte in buf[words_end:]:
        h32 = (h32 + byte * PRIME32_5) & _M32
        h32 = (_rotl32(h32, 11) * PRIME32_1) & _M32

    h32 ^= h32 >> 15
    h32 = (h32 * PRIME32_2) & _M32
    h32 ^= h32 >> 13
    h32 = (h32 * PRIME32_3) & _M32
    h32 ^= h32 >> 16
    return h32


def xxh64(data, seed: int = 0) -> int:
    """Return the 64-bit xxHash of a bytes-like object."""
    buf = bytes(data)
    length = len(buf)
    seed &= _M64
    pos = 0

    if length >= 32:
        v1 = (seed + PRIME64_1 + PRIME64_2) & _M64
        v2 = (seed + PRIME64_2) & _M64
        v3 = seed
        v4 = (seed - PRIME64_1) & _M64
        pos = length - length % 32
        for a, b, c, d in struct.iter_unpack("<4Q", buf[:pos]):
            v1 = _round64(v1, a)
            v2 = _round64(v2, b)
            v3 = _round64(v3, c)
            v4 = _round64(v4, d)
        h64 = (_rotl64(v1, 1) + _rotl64(v2, 7) + _rotl64(v3, 12) + _rotl64(v4, 18)) & _M64
        for v in (v1, v2, v3, v4):
            h64 = _merge_round64(h64, v)
    else:
        h64 = (seed + PRIME64_5) & _M64

    h64 = (h64 + length) & _M64

    words_end = pos + (length - pos) // 8 * 8
    for (word,) in struct.iter_unpack("<Q", buf[pos:words_end]):
        h64 ^= _round64(0, word)
        h64 = (_rotl64(h64, 27) * PRIME64_1 + PRIME64_4) & _M64
    pos = words_end

    if pos + 4 <= length:
        (word,) = struct.unpack_from("<I", buf, pos)
        h64 ^= (word * PRIME64_1) & _M64
        h64 = (_rotl64(h64, 23) * PRIME64_2 + PRIME64_3) & _M64
        pos += 4

    for byte in buf[pos:]:
        h64 ^= (byte * PRIME64_5) & _M64
        h64 = (_rotl64(h64, 11) * PRIME64_1) & _M64

    h64 ^= h64 >> 33
    h64 = (h64 * PRIME64_2) & _M64
    h64 ^= h64 >> 29
    h64 = (h64 * PRIME64_3) & _M64
    h64 ^= h64 >> 32
    return h64