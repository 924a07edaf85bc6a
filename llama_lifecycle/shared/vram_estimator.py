"""
Utility for estimating the fixed per-device memory overhead of a llama.cpp server.
"""
from llama_lifecycle.entities.model_metadata import ModelMetadata
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.quantization import kv_cache_bytes

logger = Logger.get(__name__)

MIB = 1024 * 1024


class VramEstimator:
    """Class for estimating context-dependent memory requirements."""

    @staticmethod
    def estimate_kv_cache(
        metadata: ModelMetadata,
        context_size: int,
        cache_type_k: str = "f16",
        cache_type_v: str = "f16",
    ) -> int:
        """
        Bytes of KV cache for ``context_size`` tokens across all layers.

        Args:
            metadata: Model metadata providing layer and head dimensions.
            context_size: Number of tokens the cache must hold.
            cache_type_k: KV cache type for K (e.g. 'q8_0', default 'f16').
            cache_type_v: KV cache type for V.

        Returns:
            KV cache size in bytes.
        """
        per_token_layer = metadata.head_count_kv * (
            metadata.key_length * kv_cache_bytes(cache_type_k)
            + metadata.value_length * kv_cache_bytes(cache_type_v)
        )
        return int(context_size * metadata.layer_count * per_token_layer)

    @staticmethod
    def estimate_context_overhead(
        metadata: ModelMetadata,
        context_size: int,
        batch_size: int,
        cache_type: str = "f16",
    ) -> int:
        """
        Fixed memory the main device needs regardless of how many layers it holds.

        Sums the input buffers, the compute graph buffer, the KV cache and the
        tensors that live outside the repeating blocks.

        Args:
            metadata: Model metadata from the GGUF reader.
            context_size: Requested context length in tokens.
            batch_size: Requested logical batch size.
            cache_type: KV cache type used for both K and V.

        Returns:
            Overhead in bytes.
        """
        if context_size <= 0:
            raise ValueError(f"context_size must be positive, got {context_size}")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if context_size > metadata.context_length:
            logger.warning(
                f"Requested context {context_size} exceeds trained context {metadata.context_length} "
                f"for {metadata.path}"
            )

        # Token ids, embeddings, positions and mask, as float32
        input_elements = (
            batch_size * 3
            + metadata.embedding_length * batch_size
            + batch_size * context_size
            + context_size
        )
        input_buffer = input_elements * 4
        compute_buffer = int((context_size / 1024 * 2 + 0.75) * metadata.head_count * MIB)
        kv_cache = VramEstimator.estimate_kv_cache(metadata, context_size, cache_type, cache_type)

        total = input_buffer + compute_buffer + kv_cache + metadata.non_layer_bytes
        logger.debug(
            f"Context overhead for ctx={context_size} batch={batch_size}: input={input_buffer} "
            f"compute={compute_buffer} kv={kv_cache} non_layer={metadata.non_layer_bytes} total={total}"
        )
        return total
