"""Key/value cache for incremental decoding.

Both cache types are NamedTuples, so they are immutable values and (for the
JAX backend) pytrees. Arrays are stored before the head split, shaped
(batch, length, d_model).
"""

from typing import Any, NamedTuple

Array = Any  # np.ndarray or jax.Array depending on the backend


class LayerKVCache(NamedTuple):
    """Cache for one decoder layer.

    ``self_key``/``self_value`` grow by the number of tokens fed at each step;
    ``cross_key``/``cross_value`` are projected once from the encoder output.
    """

    self_key: Array
    self_value: Array
    cross_key: Array
    cross_value: Array


class KVCache(NamedTuple):
    layers: tuple[LayerKVCache, ...]

    @property
    def length(self) -> int:
        """Number of token positions already consumed by the decoder."""
        if not self.layers:
            return 0
        return int(self.layers[0].self_key.shape[1])

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    def layer(self, index: int) -> LayerKVCache:
        return self.layers[index]
