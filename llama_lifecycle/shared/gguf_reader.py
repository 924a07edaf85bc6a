"""
GGUF metadata extraction.

Parses the header, the key-value metadata table and the tensor descriptor table
of a GGUF file. Tensor payloads are never read: layer sizes are computed from
the declared dimensions and the ggml type of each tensor, and payload offsets
are validated against the file size only.
"""
import functools
import math
import os
import re
import struct
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, BinaryIO, NamedTuple, Optional

from llama_lifecycle.entities.model_metadata import ModelMetadata
from llama_lifecycle.shared.errors import FormatError, SchemaError
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.quantization import GGML_TYPES, file_type_name, tensor_nbytes

logger = Logger.get(__name__)

GGUF_MAGIC = b"GGUF"
SUPPORTED_VERSIONS = (1, 2, 3)
DEFAULT_ALIGNMENT = 32

# GGUF metadata value types
UINT8, INT8, UINT16, INT16, UINT32, INT32, FLOAT32, BOOL, STRING, ARRAY, UINT64, INT64, FLOAT64 = range(13)

_SCALAR_FORMATS = {
    UINT8: "<B",
    INT8: "<b",
    UINT16: "<H",
    INT16: "<h",
    UINT32: "<I",
    INT32: "<i",
    FLOAT32: "<f",
    BOOL: "<?",
    UINT64: "<Q",
    INT64: "<q",
    FLOAT64: "<d",
}
_TYPE_NAMES = {
    UINT8: "uint8", INT8: "int8", UINT16: "uint16", INT16: "int16", UINT32: "uint32", INT32: "int32",
    FLOAT32: "float32", BOOL: "bool", STRING: "string", ARRAY: "array", UINT64: "uint64",
    INT64: "int64", FLOAT64: "float64",
}
INTEGER_TYPES = frozenset({UINT8, INT8, UINT16, INT16, UINT32, INT32, UINT64, INT64})

# String arrays longer than this (token lists) keep only their length
MAX_RETAINED_ARRAY = 1024

_BLOCK_TENSOR = re.compile(r"^blk\.(\d+)\.")


class ArraySummary(NamedTuple):
    """Placeholder for a large array whose elements were skipped."""
    element_type: int
    length: int

    def __len__(self) -> int:
        return self.length


class TensorInfo(NamedTuple):
    name: str
    dims: tuple[int, ...]
    type_id: int
    offset: int

    @property
    def n_elements(self) -> int:
        return math.prod(self.dims)

    @property
    def nbytes(self) -> int:
        return tensor_nbytes(self.type_id, self.n_elements)


@dataclass
class GGUFFile:
    """Raw contents of a GGUF header region."""
    version: int
    metadata: dict[str, tuple[int, Any]] = field(default_factory=dict)  # key -> (value type, value)
    tensors: list[TensorInfo] = field(default_factory=list)
    data_offset: int = 0
    file_size: int = 0

    def value(self, key: str, default: Any = None) -> Any:
        entry = self.metadata.get(key)
        return entry[1] if entry is not None else default


class GGUFReader:
    """Reads the header region of a GGUF file from a seekable binary stream."""

    def __init__(self, stream: BinaryIO, path: str = "<stream>"):
        self.stream = stream
        self.path = path
        self.bytes_consumed = 0
        self._position = 0
        self._file_size = 0
        self._length_format = "<Q"

    @classmethod
    def from_path(cls, path: str) -> ModelMetadata:
        with open(path, "rb") as f:
            reader = cls(f, os.path.abspath(path))
            return build_metadata(reader.parse(), reader.path, os.fstat(f.fileno()).st_mtime_ns)

    def parse(self) -> GGUFFile:
        """Parse header, metadata table and tensor descriptors."""
        if not self.stream.seekable():
            raise FormatError(f"{self.path}: GGUF parsing requires a seekable file")
        self._file_size = self.stream.seek(0, os.SEEK_END)
        self.stream.seek(0)
        self._position = 0

        magic = self._read(4)
        if magic != GGUF_MAGIC:
            raise FormatError(f"{self.path}: bad magic {magic!r}, not a GGUF file", 0)

        version = self._unpack("<I")
        if version not in SUPPORTED_VERSIONS:
            raise FormatError(f"{self.path}: unsupported GGUF version {version}", 4)
        # Version 1 used 32-bit counts and lengths throughout
        self._length_format = "<I" if version == 1 else "<Q"

        gguf = GGUFFile(version=version, file_size=self._file_size)
        tensor_count = self._read_length()
        kv_count = self._read_length()

        for _ in range(kv_count):
            key = self._read_string()
            value_type = self._unpack("<I")
            gguf.metadata[key] = (value_type, self._read_value(value_type, key))

        for _ in range(tensor_count):
            gguf.tensors.append(self._read_tensor_info())

        alignment = gguf.value("general.alignment", DEFAULT_ALIGNMENT)
        if not isinstance(alignment, int) or alignment <= 0:
            raise FormatError(f"{self.path}: invalid general.alignment {alignment!r}")
        gguf.data_offset = -(-self._position // alignment) * alignment

        for tensor in gguf.tensors:
            end = gguf.data_offset + tensor.offset + tensor.nbytes
            if end > self._file_size:
                raise FormatError(
                    f"{self.path}: tensor '{tensor.name}' payload ends at {end}, "
                    f"past end of file ({self._file_size} bytes)"
                )

        logger.debug(
            f"Parsed GGUF v{version} header of {self.path}: "
            f"{kv_count} keys, {tensor_count} tensors, data at {gguf.data_offset}"
        )
        return gguf

    def read_metadata(self) -> ModelMetadata:
        return build_metadata(self.parse(), self.path)

    def _read(self, size: int) -> bytes:
        start = self._position
        data = self.stream.read(size)
        if len(data) != size:
            raise FormatError(f"{self.path}: truncated file, wanted {size} bytes", start)
        self._position += size
        self.bytes_consumed = max(self.bytes_consumed, self._position)
        return data

    def _skip(self, size: int) -> None:
        if self._position + size > self._file_size:
            raise FormatError(f"{self.path}: truncated file, wanted {size} bytes", self._position)
        self._position = self.stream.seek(size, os.SEEK_CUR)
        self.bytes_consumed = max(self.bytes_consumed, self._position)

    def _unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self._read(struct.calcsize(fmt)))[0]

    def _read_length(self) -> int:
        return self._unpack(self._length_format)

    def _read_string(self) -> str:
        length = self._read_length()
        raw = self._read(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"{self.path}: invalid UTF-8 string", self._position - length) from e

    def _read_value(self, value_type: int, key: str) -> Any:
        if value_type in _SCALAR_FORMATS:
            return self._unpack(_SCALAR_FORMATS[value_type])
        if value_type == STRING:
            return self._read_string()
        if value_type == ARRAY:
            element_type = self._unpack("<I")
            length = self._read_length()
            if element_type == STRING and length > MAX_RETAINED_ARRAY:
                for _ in range(length):
                    self._skip(self._read_length())
                return ArraySummary(element_type, length)
            if element_type in _SCALAR_FORMATS and length > MAX_RETAINED_ARRAY:
                self._skip(struct.calcsize(_SCALAR_FORMATS[element_type]) * length)
                return ArraySummary(element_type, length)
            return [self._read_value(element_type, key) for _ in range(length)]
        raise FormatError(f"{self.path}: unknown value type {value_type} for key '{key}'", self._position - 4)

    def _read_tensor_info(self) -> TensorInfo:
        name = self._read_string()
        n_dims = self._unpack("<I")
        dims = tuple(self._read_length() for _ in range(n_dims))
        type_offset = self._position
        type_id = self._unpack("<I")
        if type_id not in GGML_TYPES:
            raise FormatError(f"{self.path}: tensor '{name}' has unknown ggml type {type_id}", type_offset)
        offset = self._unpack("<Q")
        return TensorInfo(name, dims, type_id, offset)


def _require_int(gguf: GGUFFile, key: str) -> int:
    entry = gguf.metadata.get(key)
    if entry is None:
        raise SchemaError(key, "integer")
    value_type, value = entry
    if value_type not in INTEGER_TYPES:
        raise SchemaError(key, "integer", _TYPE_NAMES.get(value_type, str(value_type)))
    return value


def _optional_int(gguf: GGUFFile, key: str) -> Optional[int]:
    if key not in gguf.metadata:
        return None
    return _require_int(gguf, key)


def _dominant_quantization(tensors: list[TensorInfo]) -> str:
    bytes_by_type: dict[int, int] = defaultdict(int)
    for tensor in tensors:
        bytes_by_type[tensor.type_id] += tensor.nbytes
    if not bytes_by_type:
        return "unknown"
    quantized = {t: n for t, n in bytes_by_type.items() if GGML_TYPES[t].block_size > 1}
    candidates = quantized or bytes_by_type
    return GGML_TYPES[max(candidates, key=candidates.get)].name


def _require_positive(key: str, value: int) -> int:
    if value <= 0:
        raise SchemaError(key, "positive integer", str(value))
    return value


def build_metadata(gguf: GGUFFile, path: str, modified_ns: int = 0) -> ModelMetadata:
    """Validate required keys and derive ModelMetadata from a parsed header."""
    entry = gguf.metadata.get("general.architecture")
    if entry is None:
        raise SchemaError("general.architecture", "string")
    if entry[0] != STRING:
        raise SchemaError("general.architecture", "string", _TYPE_NAMES.get(entry[0], str(entry[0])))
    arch = entry[1]

    block_count = _require_positive(f"{arch}.block_count", _require_int(gguf, f"{arch}.block_count"))
    # Every block owns at least one tensor
    if block_count > len(gguf.tensors):
        raise SchemaError(
            f"{arch}.block_count", f"at most {len(gguf.tensors)} (the tensor count)", str(block_count)
        )
    context_length = _require_positive(
        f"{arch}.context_length", _require_int(gguf, f"{arch}.context_length")
    )
    embedding_length = _require_positive(
        f"{arch}.embedding_length", _require_int(gguf, f"{arch}.embedding_length")
    )
    head_count = _require_positive(
        f"{arch}.attention.head_count", _require_int(gguf, f"{arch}.attention.head_count")
    )
    head_count_kv = _optional_int(gguf, f"{arch}.attention.head_count_kv") or head_count
    head_dim = embedding_length // head_count
    key_length = _require_positive(
        f"{arch}.attention.key_length", _optional_int(gguf, f"{arch}.attention.key_length") or head_dim
    )
    value_length = _require_positive(
        f"{arch}.attention.value_length", _optional_int(gguf, f"{arch}.attention.value_length") or head_dim
    )

    layer_sizes = [0] * block_count
    layer_tensors = [0] * block_count
    non_layer_bytes = 0
    for tensor in gguf.tensors:
        match = _BLOCK_TENSOR.match(tensor.name)
        if match and int(match.group(1)) < block_count:
            index = int(match.group(1))
            layer_sizes[index] += tensor.nbytes
            layer_tensors[index] += 1
        else:
            non_layer_bytes += tensor.nbytes

    empty = [i for i, n in enumerate(layer_tensors) if n == 0]
    if empty:
        raise SchemaError(f"blk.{empty[0]}.*", f"tensors for all {block_count} blocks", "no tensors")

    vocab_size = _optional_int(gguf, f"{arch}.vocab_size")
    if vocab_size is None:
        tokens = gguf.value("tokenizer.ggml.tokens")
        if tokens is not None:
            vocab_size = len(tokens)
    if vocab_size is None:
        for tensor in gguf.tensors:
            if tensor.name == "token_embd.weight" and len(tensor.dims) >= 2:
                vocab_size = tensor.dims[1]
                break

    quantization = file_type_name(gguf.value("general.file_type")) or _dominant_quantization(gguf.tensors)

    return ModelMetadata(
        path=path,
        architecture=arch,
        layer_count=block_count,
        layer_sizes=tuple(layer_sizes),
        context_length=context_length,
        quantization=quantization,
        vocab_size=vocab_size,
        embedding_length=embedding_length,
        head_count=head_count,
        head_count_kv=head_count_kv,
        key_length=key_length,
        value_length=value_length,
        non_layer_bytes=non_layer_bytes,
        tensor_count=len(gguf.tensors),
        tensor_data_offset=gguf.data_offset,
        file_size=gguf.file_size,
        modified_ns=modified_ns,
    )


@functools.lru_cache(maxsize=32)
def _read_cached(path: str, mtime_ns: int, size: int) -> ModelMetadata:
    logger.info(f"Reading GGUF metadata from {path}")
    return GGUFReader.from_path(path)


def read_model_metadata(path: str) -> ModelMetadata:
    """Return metadata for a model file, cached until the file changes."""
    resolved = os.path.realpath(path)
    stat = os.stat(resolved)
    return _read_cached(resolved, stat.st_mtime_ns, stat.st_size)


def clear_metadata_cache() -> None:
    _read_cached.cache_clear()
