"""Backend-independent transformer interface and parameter naming.

Parameters are addressed by dotted names in the PyTorch layout: linear
weights are (out, in), convolution weights are (out, in, kernel) and
embeddings are (rows, d_model). Backends convert to their native layout
inside ``bind`` and back inside ``named_parameters``.
"""

import abc
from collections.abc import Mapping

import numpy as np

from whisper_engine.config import ModelConfig
from whisper_engine.core.cache import KVCache
from whisper_engine.errors import WeightBindingError


def sinusoids(length: int, channels: int, max_timescale: float = 10000.0) -> np.ndarray:
    """Sinusoidal position table of shape (length, channels): sin half then cos half."""
    log_timescale_increment = np.log(max_timescale) / (channels // 2 - 1)
    inv_timescales = np.exp(-log_timescale_increment * np.arange(channels // 2))
    scaled_time = np.arange(length)[:, None] * inv_timescales[None, :]
    return np.concatenate([np.sin(scaled_time), np.cos(scaled_time)], axis=1).astype(np.float32)


def _attention_shapes(prefix: str, d: int) -> dict[str, tuple[int, ...]]:
    return {
        f"{prefix}.query.weight": (d, d),
        f"{prefix}.query.bias": (d,),
        f"{prefix}.key.weight": (d, d),
        f"{prefix}.value.weight": (d, d),
        f"{prefix}.value.bias": (d,),
        f"{prefix}.out.weight": (d, d),
        f"{prefix}.out.bias": (d,),
    }


def _layer_norm_shapes(prefix: str, d: int) -> dict[str, tuple[int, ...]]:
    return {f"{prefix}.weight": (d,), f"{prefix}.bias": (d,)}


def _mlp_shapes(prefix: str, d: int, ffn: int) -> dict[str, tuple[int, ...]]:
    return {
        f"{prefix}.mlp1.weight": (ffn, d),
        f"{prefix}.mlp1.bias": (ffn,),
        f"{prefix}.mlp2.weight": (d, ffn),
        f"{prefix}.mlp2.bias": (d,),
        **_layer_norm_shapes(f"{prefix}.mlp_ln", d),
    }


def parameter_shapes(config: ModelConfig) -> dict[str, tuple[int, ...]]:
    """Every parameter name the model binds, with its expected shape."""
    d = config.d_model
    shapes: dict[str, tuple[int, ...]] = {
        "encoder.conv1.weight": (d, config.num_mel_bins, 3),
        "encoder.conv1.bias": (d,),
        "encoder.conv2.weight": (d, d, 3),
        "encoder.conv2.bias": (d,),
        "encoder.positional_embedding": (config.max_source_positions, d),
    }
    for i in range(config.encoder_layers):
        prefix = f"encoder.layers.{i}"
        shapes.update(_attention_shapes(f"{prefix}.self_attn", d))
        shapes.update(_layer_norm_shapes(f"{prefix}.self_attn_ln", d))
        shapes.update(_mlp_shapes(prefix, d, config.encoder_ffn_dim))
    shapes.update(_layer_norm_shapes("encoder.layer_norm", d))

    shapes["decoder.token_embedding.weight"] = (config.vocab_size, d)
    shapes["decoder.positional_embedding"] = (config.max_target_positions, d)
    for i in range(config.decoder_layers):
        prefix = f"decoder.layers.{i}"
        shapes.update(_attention_shapes(f"{prefix}.self_attn", d))
        shapes.update(_layer_norm_shapes(f"{prefix}.self_attn_ln", d))
        shapes.update(_attention_shapes(f"{prefix}.cross_attn", d))
        shapes.update(_layer_norm_shapes(f"{prefix}.cross_attn_ln", d))
        shapes.update(_mlp_shapes(prefix, d, config.decoder_ffn_dim))
    shapes.update(_layer_norm_shapes("decoder.layer_norm", d))
    return shapes


def check_weights(
    expected: Mapping[str, tuple[int, ...]], weights: Mapping[str, np.ndarray]
) -> None:
    """Raise WeightBindingError unless ``weights`` matches ``expected`` one-to-one."""
    missing = [name for name in expected if name not in weights]
    unused = [name for name in weights if name not in expected]
    mismatched = [
        f"{name} expected {tuple(shape)}, got {tuple(np.shape(weights[name]))}"
        for name, shape in expected.items()
        if name in weights and tuple(np.shape(weights[name])) != tuple(shape)
    ]
    if missing or unused or mismatched:
        raise WeightBindingError(
            "Checkpoint does not match model parameters", missing, unused, mismatched
        )


class ParameterTree(abc.ABC):
    """A named collection of tensors that can be replaced wholesale."""

    @abc.abstractmethod
    def named_parameters(self) -> dict[str, np.ndarray]:
        """Current parameters by canonical name, as host arrays."""

    @abc.abstractmethod
    def bind(self, weights: Mapping[str, np.ndarray]) -> None:
        """Replace every parameter from ``weights``.

        All-or-nothing: raises WeightBindingError on any missing, unused or
        mis-shaped tensor and leaves the current parameters untouched.
        """


class WhisperTransformer(ParameterTree):
    """Encoder/decoder contract shared by the JAX and NumPy backends."""

    config: ModelConfig

    @abc.abstractmethod
    def encode(self, mel: np.ndarray):
        """Encode (1, n_mels, n_frames) features to (1, n_frames // 2, d_model)."""

    @abc.abstractmethod
    def decode(self, tokens: np.ndarray, encoder_output, cache: KVCache | None = None):
        """Run the decoder on ``tokens`` (1, L) not yet in ``cache``.

        Returns:
            (logits, cache): logits shaped (1, L, vocab_size) and the cache
            extended by L positions
        """

    @property
    def num_parameters(self) -> int:
        return sum(int(np.prod(s)) for s in parameter_shapes(self.config).values())
