"""
Tests for GGUF metadata extraction.
"""
import io
import os

import pytest

from conftest import (
    ARRAY,
    F32,
    STRING,
    TINY_LAYER_BYTES,
    TINY_NON_LAYER_BYTES,
    U32,
    U64,
    build_gguf,
    llama_metadata,
    llama_tensors,
)
from llama_lifecycle.shared.errors import FormatError, SchemaError
from llama_lifecycle.shared.gguf_reader import GGUFReader, read_model_metadata


class TrackingBytesIO(io.BytesIO):
    """BytesIO that remembers the furthest byte handed out by read()."""

    def __init__(self, data: bytes):
        super().__init__(data)
        self.max_read_end = 0

    def read(self, size=-1):
        data = super().read(size)
        self.max_read_end = max(self.max_read_end, self.tell())
        return data


class NonSeekableStream(io.RawIOBase):
    def seekable(self):
        return False


class TestGGUFReader:
    """Test cases for GGUFReader."""

    def test_reads_tiny_model(self, make_gguf):
        """Test extracting metadata from a well-formed file."""
        path = make_gguf()

        metadata = GGUFReader.from_path(str(path))

        assert metadata.architecture == "llama"
        assert metadata.layer_count == 2
        assert metadata.layer_sizes == (TINY_LAYER_BYTES, TINY_LAYER_BYTES)
        assert metadata.non_layer_bytes == TINY_NON_LAYER_BYTES
        assert metadata.context_length == 4096
        assert metadata.embedding_length == 64
        assert metadata.head_count == 4
        assert metadata.head_count_kv == 2
        assert metadata.key_length == 16
        assert metadata.value_length == 16
        assert metadata.quantization == "Q4_0"
        assert metadata.vocab_size == 100
        assert metadata.tensor_count == 6
        assert metadata.file_size == os.path.getsize(path)
        assert metadata.modified_ns == os.stat(path).st_mtime_ns

    def test_never_reads_tensor_payload(self):
        """Test that parsing stops at the tensor data offset."""
        data, data_offset = build_gguf(llama_metadata(), llama_tensors())
        stream = TrackingBytesIO(data)

        reader = GGUFReader(stream)
        metadata = reader.read_metadata()

        assert metadata.tensor_data_offset == data_offset
        assert stream.max_read_end <= data_offset
        assert reader.bytes_consumed <= data_offset
        assert len(data) > data_offset

    def test_large_token_array_is_skipped_not_retained(self):
        """Test that a long token list only contributes its length."""
        tokens = (STRING, [f"t{i}" for i in range(5000)])
        data, data_offset = build_gguf(
            llama_metadata(**{"tokenizer.ggml.tokens": (ARRAY, tokens)}), llama_tensors()
        )
        stream = TrackingBytesIO(data)

        metadata = GGUFReader(stream).read_metadata()

        assert metadata.vocab_size == 5000
        assert stream.max_read_end <= data_offset

    def test_version_one_uses_32bit_lengths(self):
        """Test parsing the legacy v1 layout."""
        data, _ = build_gguf(llama_metadata(), llama_tensors(), version=1)

        metadata = GGUFReader(io.BytesIO(data)).read_metadata()

        assert metadata.layer_count == 2
        assert metadata.layer_sizes == (TINY_LAYER_BYTES, TINY_LAYER_BYTES)

    def test_custom_alignment(self):
        """Test that general.alignment moves the data offset."""
        metadata = llama_metadata(**{"general.alignment": (U32, 64)})
        data, data_offset = build_gguf(metadata, llama_tensors(), alignment=64)

        result = GGUFReader(io.BytesIO(data)).read_metadata()

        assert result.tensor_data_offset == data_offset
        assert data_offset % 64 == 0

    def test_bad_magic(self):
        """Test that a non-GGUF file is rejected."""
        data, _ = build_gguf(llama_metadata(), llama_tensors())

        with pytest.raises(FormatError, match="bad magic"):
            GGUFReader(io.BytesIO(b"GGML" + data[4:])).read_metadata()

    def test_unsupported_version(self):
        """Test that an unknown version is rejected."""
        data, _ = build_gguf(llama_metadata(), llama_tensors())
        patched = data[:4] + (99).to_bytes(4, "little") + data[8:]

        with pytest.raises(FormatError, match="unsupported GGUF version 99"):
            GGUFReader(io.BytesIO(patched)).read_metadata()

    @pytest.mark.parametrize("cut", [3, 10, 40, 200])
    def test_truncated_header(self, cut):
        """Test that truncation anywhere in the header region is a FormatError."""
        data, _ = build_gguf(llama_metadata(), llama_tensors())

        with pytest.raises(FormatError, match="truncated"):
            GGUFReader(io.BytesIO(data[:cut])).read_metadata()

    def test_truncated_payload(self):
        """Test that descriptors pointing past the end of file are rejected."""
        data, data_offset = build_gguf(llama_metadata(), llama_tensors())

        with pytest.raises(FormatError, match="past end of file"):
            GGUFReader(io.BytesIO(data[:data_offset + 100])).read_metadata()

    def test_unknown_tensor_type(self):
        """Test that an unknown ggml type id is a FormatError."""
        tensors = llama_tensors() + [("mystery.weight", (32,), 4)]
        data, _ = build_gguf(llama_metadata(), tensors, with_payload=False)

        with pytest.raises(FormatError, match="unknown ggml type 4"):
            GGUFReader(io.BytesIO(data)).read_metadata()

    def test_non_seekable_stream(self):
        """Test that streaming input is refused."""
        with pytest.raises(FormatError, match="seekable"):
            GGUFReader(NonSeekableStream()).read_metadata()

    def test_missing_architecture(self):
        """Test that general.architecture is required."""
        metadata = llama_metadata(**{"general.architecture": None})
        data, _ = build_gguf(metadata, llama_tensors())

        with pytest.raises(SchemaError) as exc_info:
            GGUFReader(io.BytesIO(data)).read_metadata()

        assert exc_info.value.key == "general.architecture"

    def test_missing_block_count(self):
        """Test that the architecture-prefixed block count is required."""
        data, _ = build_gguf(llama_metadata(**{"llama.block_count": None}), llama_tensors())

        with pytest.raises(SchemaError) as exc_info:
            GGUFReader(io.BytesIO(data)).read_metadata()

        assert exc_info.value.key == "llama.block_count"
        assert exc_info.value.actual is None

    def test_mistyped_context_length(self):
        """Test that a float context length is rejected."""
        data, _ = build_gguf(llama_metadata(**{"llama.context_length": (F32, 4096.0)}), llama_tensors())

        with pytest.raises(SchemaError) as exc_info:
            GGUFReader(io.BytesIO(data)).read_metadata()

        assert exc_info.value.key == "llama.context_length"
        assert exc_info.value.actual == "float32"

    def test_block_without_tensors(self):
        """Test that a declared block with no tensors is a SchemaError."""
        data, _ = build_gguf(llama_metadata(block_count=3), llama_tensors(block_count=2))

        with pytest.raises(SchemaError, match="blk.2"):
            GGUFReader(io.BytesIO(data)).read_metadata()

    @pytest.mark.parametrize("key, overrides", [
        ("llama.context_length", {"llama.context_length": (U32, 0)}),
        ("llama.embedding_length", {"llama.embedding_length": (U32, 0)}),
        ("llama.attention.head_count", {"llama.attention.head_count": (U32, 0)}),
        ("llama.block_count", {"llama.block_count": (U32, 0)}),
        # fewer embedding dims than heads leaves no per-head fallback
        ("llama.attention.key_length", {"llama.embedding_length": (U32, 2), "llama.attention.key_length": (U32, 0)}),
    ])
    def test_zero_dimension_is_schema_error(self, key, overrides):
        """Test that zero-valued required dimensions are rejected as schema errors."""
        data, _ = build_gguf(llama_metadata(**overrides), llama_tensors())

        with pytest.raises(SchemaError) as exc_info:
            GGUFReader(io.BytesIO(data)).read_metadata()

        assert exc_info.value.key == key
        assert exc_info.value.expected == "positive integer"

    def test_implausible_block_count(self):
        """Test that a block count beyond the tensor count is rejected without allocating."""
        data, _ = build_gguf(llama_metadata(**{"llama.block_count": (U64, 2**40)}), llama_tensors())

        with pytest.raises(SchemaError) as exc_info:
            GGUFReader(io.BytesIO(data)).read_metadata()

        assert exc_info.value.key == "llama.block_count"
        assert exc_info.value.actual == str(2**40)

    def test_unknown_keys_are_tolerated(self):
        """Test that extra keys of any type do not affect parsing."""
        metadata = llama_metadata(**{
            "vendor.custom.flag": (7, True),
            "vendor.custom.list": (ARRAY, (U64, [1, 2, 3])),
            "vendor.custom.note": (STRING, "hello"),
        })
        data, _ = build_gguf(metadata, llama_tensors())

        result = GGUFReader(io.BytesIO(data)).read_metadata()

        assert result.layer_count == 2

    def test_quantization_falls_back_to_dominant_type(self):
        """Test that without general.file_type the quantized tensor type is reported."""
        data, _ = build_gguf(llama_metadata(**{"general.file_type": None}), llama_tensors())

        result = GGUFReader(io.BytesIO(data)).read_metadata()

        assert result.quantization == "Q4_0"

    def test_vocab_size_from_embedding_tensor(self):
        """Test the token embedding fallback for vocab size."""
        data, _ = build_gguf(llama_metadata(**{"tokenizer.ggml.tokens": None}), llama_tensors())

        result = GGUFReader(io.BytesIO(data)).read_metadata()

        assert result.vocab_size == 100


class TestReadModelMetadata:
    """Test cases for the cached module-level reader."""

    def test_result_is_cached(self, make_gguf):
        """Test that a second read returns the cached object."""
        path = make_gguf()

        first = read_model_metadata(str(path))
        second = read_model_metadata(str(path))

        assert first is second

    def test_cache_invalidated_when_file_changes(self, make_gguf):
        """Test that replacing the file triggers a re-parse."""
        path = make_gguf()
        first = read_model_metadata(str(path))

        make_gguf(metadata=llama_metadata(block_count=3), tensors=llama_tensors(block_count=3))
        second = read_model_metadata(str(path))

        assert first.layer_count == 2
        assert second.layer_count == 3

    def test_missing_file(self, temp_dir):
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            read_model_metadata(str(temp_dir / "absent.gguf"))
