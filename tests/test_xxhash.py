import pytest

from erofskit.xxhash import xxh32, xxh64


def test_xxh32_empty_vector():
    assert xxh32(b"", 0) == 0x02CC5D05


def test_xxh64_empty_vector():
    assert xxh64(b"", 0) == 0xEF46DB3751D8E999


def test_xxh32_abc_vector():
    assert xxh32(b"abc") == 0x32D153FF


@pytest.mark.parametrize("func", [xxh32, xxh64])
def test_distinct_over_all_code_paths(func):
    data = bytes(range(200))
    results = {func(data[:n]) for n in range(0, 80)}
    assert len(results) == 80


@pytest.mark.parametrize("func", [xxh32, xxh64])
def test_seed_changes_result(func):
    data = b"user.mime_type"
    assert func(data, 0) != func(data, 1)
    assert func(data, 0x25BBE08F) == func(data, 0x25BBE08F)


def test_xxh32_range_and_seed_wrap():
    data = b"x" * 37
    assert 0 <= xxh32(data, 5) < 2**32
    assert xxh32(data, 5 + 2**32) == xxh32(data, 5)


def test_xxh64_range_and_seed_wrap():
    data = b"y" * 71
    assert 0 <= xxh64(data, 9) < 2**64
    assert xxh64(data, 9 + 2**64) == xxh64(data, 9)


@pytest.mark.parametrize("func", [xxh32, xxh64])
def test_bytes_like_inputs_agree(func):
    data = b"the quick brown fox jumps over the lazy dog"
    assert func(bytearray(data)) == func(data)
    assert func(memoryview(data)) == func(data)


@pytest.mark.parametrize("func", [xxh32, xxh64])
def test_single_byte_change_alters_hash(func):
    data = bytearray(b"a" * 64)
    base = func(data)
    data[40] ^= 1
    assert func(data) != base


@pytest.mark.parametrize("func", [xxh32, xxh64])
def test_str_rejected(func):
    with pytest.raises(TypeError):
        func("text")