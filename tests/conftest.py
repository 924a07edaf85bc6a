"""
Test configuration and fixtures for llama-lifecycle tests.
"""
import json
import shutil
import struct
import tempfile
from pathlib import Path

import pytest

from llama_lifecycle.entities.device_budget import DeviceBudget
from llama_lifecycle.entities.model_metadata import ModelMetadata
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.shared.gguf_reader import clear_metadata_cache
from llama_lifecycle.shared.quantization import GGML_TYPES, tensor_nbytes

# GGUF value types used by the builder
U32, F32, STRING, ARRAY, U64 = 4, 6, 8, 9, 10


def _gguf_string(value: str, length_format: str = "<Q") -> bytes:
    raw = value.encode("utf-8")
    return struct.pack(length_format, len(raw)) + raw


def _gguf_value(value_type: int, value, length_format: str = "<Q") -> bytes:
    scalar_formats = {0: "<B", 1: "<b", 2: "<H", 3: "<h", 4: "<I", 5: "<i", 6: "<f", 7: "<?",
                      10: "<Q", 11: "<q", 12: "<d"}
    if value_type in scalar_formats:
        return struct.pack(scalar_formats[value_type], value)
    if value_type == STRING:
        return _gguf_string(value, length_format)
    if value_type == ARRAY:
        element_type, items = value
        out = struct.pack("<I", element_type) + struct.pack(length_format, len(items))
        return out + b"".join(_gguf_value(element_type, item, length_format) for item in items)
    raise ValueError(f"unsupported test value type {value_type}")


def build_gguf(metadata, tensors, version=3, alignment=32, with_payload=True) -> tuple[bytes, int]:
    """Serialize a GGUF file; returns the bytes and the tensor data offset."""
    length_format = "<I" if version == 1 else "<Q"
    out = bytearray(b"GGUF")
    out += struct.pack("<I", version)
    out += struct.pack(length_format, len(tensors))
    out += struct.pack(length_format, len(metadata))
    for key, value_type, value in metadata:
        out += _gguf_string(key, length_format)
        out += struct.pack("<I", value_type)
        out += _gguf_value(value_type, value, length_format)

    offset = 0
    for name, dims, type_id in tensors:
        out += _gguf_string(name, length_format)
        out += struct.pack("<I", len(dims))
        for dim in dims:
            out += struct.pack(length_format, dim)
        out += struct.pack("<I", type_id)
        out += struct.pack("<Q", offset)
        # Unknown type ids still need a size so the file can be laid out
        size = tensor_nbytes(type_id, _prod(dims)) if type_id in GGML_TYPES else _prod(dims)
        offset += -(-size // alignment) * alignment

    data_offset = -(-len(out) // alignment) * alignment
    out += b"\0" * (data_offset - len(out))
    if with_payload:
        out += b"\xab" * offset
    return bytes(out), data_offset


def _prod(dims) -> int:
    result = 1
    for dim in dims:
        result *= dim
    return result


def llama_metadata(block_count=2, **overrides):
    """Metadata entries of a tiny llama-architecture model."""
    entries = {
        "general.architecture": (STRING, "llama"),
        "general.name": (STRING, "tiny-test-model"),
        "general.file_type": (U32, 2),
        "llama.block_count": (U32, block_count),
        "llama.context_length": (U32, 4096),
        "llama.embedding_length": (U32, 64),
        "llama.attention.head_count": (U32, 4),
        "llama.attention.head_count_kv": (U32, 2),
        "llama.rope.freq_base": (F32, 10000.0),
        "tokenizer.ggml.tokens": (ARRAY, (STRING, [f"tok{i}" for i in range(100)])),
    }
    for key, value in overrides.items():
        if value is None:
            entries.pop(key, None)
        else:
            entries[key] = value
    return [(key, value_type, value) for key, (value_type, value) in entries.items()]


def llama_tensors(block_count=2):
    """Tensor descriptors: each block holds an F32 attention matrix and a Q4_0 FFN matrix."""
    tensors = [("token_embd.weight", (64, 100), 1)]
    for i in range(block_count):
        tensors.append((f"blk.{i}.attn_q.weight", (64, 64), 0))
        tensors.append((f"blk.{i}.ffn_up.weight", (64, 256), 2))
    tensors.append(("output_norm.weight", (64,), 0))
    return tensors


# 64*64*4 bytes of F32 plus 64*256/32*18 bytes of Q4_0
TINY_LAYER_BYTES = 16384 + 9216
# token_embd F16 plus output_norm F32
TINY_NON_LAYER_BYTES = 64 * 100 * 2 + 64 * 4


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture(autouse=True)
def _clear_metadata_cache():
    clear_metadata_cache()
    yield
    clear_metadata_cache()


@pytest.fixture
def make_gguf(temp_dir):
    """Factory writing a GGUF file into the temp dir."""
    def _make(name="model.gguf", metadata=None, tensors=None, **kwargs):
        data, _ = build_gguf(
            metadata if metadata is not None else llama_metadata(),
            tensors if tensors is not None else llama_tensors(),
            **kwargs,
        )
        path = temp_dir / name
        path.write_bytes(data)
        return path
    return _make


@pytest.fixture
def sample_metadata():
    """Metadata of a 4-layer model with 100-byte layers."""
    return ModelMetadata(
        path="/models/test.gguf",
        architecture="llama",
        layer_count=4,
        layer_sizes=(100, 100, 100, 100),
        context_length=8192,
        quantization="Q4_0",
        vocab_size=100,
        embedding_length=64,
        head_count=4,
        head_count_kv=4,
        key_length=16,
        value_length=16,
        file_size=1000,
    )


@pytest.fixture
def cpu_budget():
    return DeviceBudget(kind="cpu", name="cpu", total_bytes=64 * 10**9, free_bytes=32 * 10**9, headroom=0.3)


@pytest.fixture
def sample_config_data(temp_dir):
    """Sample configuration data for testing."""
    return {
        "engine": {
            "binary": "llama-server",
            "transport": "http",
            "host": "127.0.0.1",
            "extra_args": ["--flash-attn"],
        },
        "placement": {
            "gpu_headroom": 0.1,
            "cpu_headroom": 0.3,
            "cache_type": "f16",
        },
        "supervisor": {
            "record_dir": str(temp_dir / "records"),
            "poll_interval": 0.1,
            "health_timeout": 2.0,
            "grace_period": 0.5,
            "force_kill_timeout": 0.5,
        },
        "server": {
            "host": "127.0.0.1",
            "port": 8000,
        },
    }


@pytest.fixture
def config(sample_config_data):
    return Config(**sample_config_data)


@pytest.fixture
def config_file(temp_dir, sample_config_data):
    """Create a temporary config file."""
    config_path = temp_dir / "config.json"
    with open(config_path, "w") as f:
        json.dump(sample_config_data, f, indent=2)
    return config_path
