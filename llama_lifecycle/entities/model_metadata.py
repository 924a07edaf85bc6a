from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ModelMetadata(BaseModel):
    """Structural metadata of a GGUF model, enough to predict its memory footprint.

    Attributes:
        path: Resolved path of the model file.
        architecture: Architecture tag from ``general.architecture`` (e.g. "llama").
        layer_count: Number of repeating transformer blocks.
        layer_sizes: Byte size of each block's tensors, in model order.
        context_length: Trained context length.
        quantization: Quantization name (e.g. "Q4_K_M").
        vocab_size: Vocabulary size, if it could be determined.
        embedding_length: Hidden size.
        head_count: Attention head count.
        head_count_kv: Key/value head count (equal to head_count without GQA).
        key_length: Per-head key dimension.
        value_length: Per-head value dimension.
        non_layer_bytes: Bytes of tensors outside the blocks (embeddings, output head, norms).
        tensor_count: Number of tensor descriptors.
        tensor_data_offset: Byte offset where tensor payload begins.
        file_size: Size of the model file in bytes.
        modified_ns: Modification time of the model file in nanoseconds (0 when read from a stream).
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    path: str
    architecture: str
    layer_count: int = Field(gt=0)
    layer_sizes: tuple[int, ...]
    context_length: int = Field(gt=0)
    quantization: str
    vocab_size: Optional[int] = None
    embedding_length: int = Field(gt=0)
    head_count: int = Field(gt=0)
    head_count_kv: int = Field(gt=0)
    key_length: int = Field(gt=0)
    value_length: int = Field(gt=0)
    non_layer_bytes: int = Field(0, ge=0)
    tensor_count: int = Field(0, ge=0)
    tensor_data_offset: int = Field(0, ge=0)
    file_size: int = Field(0, ge=0)
    modified_ns: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_layer_sizes(self) -> "ModelMetadata":
        if not self.layer_sizes:
            raise ValueError("layer_sizes must not be empty")
        if len(self.layer_sizes) != self.layer_count:
            raise ValueError(
                f"layer_sizes has {len(self.layer_sizes)} entries but layer_count is {self.layer_count}"
            )
        return self

    @property
    def fingerprint(self) -> str:
        """Identity of the model contents, used to detect a changed model."""
        return f"{self.architecture}:{self.file_size}:{self.quantization}:{self.modified_ns}"

    @property
    def total_bytes(self) -> int:
        return sum(self.layer_sizes) + self.non_layer_bytes
