"""Pure JAX Whisper implementation using Flax NNX."""

import logging
from collections.abc import Mapping

import jax
import jax.numpy as jnp
import numpy as np
from flax import nnx

from whisper_engine.config import ModelConfig
from whisper_engine.core.base import (
    WhisperTransformer,
    check_weights,
    parameter_shapes,
    sinusoids,
)
from whisper_engine.core.cache import KVCache, LayerKVCache
from whisper_engine.errors import WeightBindingError

logger = logging.getLogger(__name__)


class Buffer(nnx.Variable):
    """Fixed tensor that is part of the model state but is not trained."""


def _split_heads(x: jax.Array, num_heads: int) -> jax.Array:
    B, L, D = x.shape
    return x.reshape(B, L, num_heads, D // num_heads).transpose(0, 2, 1, 3)


def causal_mask(length: int, offset: int = 0) -> jax.Array:
    """(length, offset + length) additive mask; query i sees keys up to offset + i."""
    return jnp.triu(jnp.full((length, offset + length), -jnp.inf), k=offset + 1)


class MultiHeadAttention(nnx.Module):
    """Multi-head attention over precomputed keys and values."""

    def __init__(self, embed_dim: int, num_heads: int, rngs: nnx.Rngs = None):
        self.num_heads = num_heads
        self.head_dim = embed_dim // num_heads

        self.query = nnx.Linear(embed_dim, embed_dim, rngs=rngs)
        self.key = nnx.Linear(embed_dim, embed_dim, use_bias=False, rngs=rngs)
        self.value = nnx.Linear(embed_dim, embed_dim, rngs=rngs)
        self.out = nnx.Linear(embed_dim, embed_dim, rngs=rngs)

    def project_kv(self, x: jax.Array) -> tuple[jax.Array, jax.Array]:
        return self.key(x), self.value(x)

    def __call__(
        self, x: jax.Array, k: jax.Array, v: jax.Array, mask: jax.Array | None = None
    ) -> jax.Array:
        """Attend from x (B, L, D) to k, v (B, S, D)."""
        B, L, _D = x.shape

        # Reshape to (B, H, L, head_dim)
        q = _split_heads(self.query(x), self.num_heads)
        k = _split_heads(k, self.num_heads)
        v = _split_heads(v, self.num_heads)

        attn = (q @ k.transpose(0, 1, 3, 2)) / jnp.sqrt(self.head_dim)
        if mask is not None:
            attn = attn + mask[None, None]

        attn = jax.nn.softmax(attn, axis=-1)
        out = (attn @ v).transpose(0, 2, 1, 3).reshape(B, L, -1)
        return self.out(out)


class EncoderLayer(nnx.Module):
    """Encoder layer: LayerNorm → Self-Attention → Add → LayerNorm → MLP → Add."""

    def __init__(self, embed_dim: int, num_heads: int, ffn_dim: int, rngs: nnx.Rngs = None):
        self.self_attn = MultiHeadAttention(embed_dim, num_heads, rngs=rngs)
        self.self_attn_ln = nnx.LayerNorm(embed_dim, epsilon=1e-5, rngs=rngs)
        self.mlp1 = nnx.Linear(embed_dim, ffn_dim, rngs=rngs)
        self.mlp2 = nnx.Linear(ffn_dim, embed_dim, rngs=rngs)
        self.mlp_ln = nnx.LayerNorm(embed_dim, epsilon=1e-5, rngs=rngs)

    def __call__(self, x: jax.Array) -> jax.Array:
        h = self.self_attn_ln(x)
        x = x + self.self_attn(h, *self.self_attn.project_kv(h))
        x = x + self.mlp2(jax.nn.gelu(self.mlp1(self.mlp_ln(x)), approximate=False))
        return x


class DecoderLayer(nnx.Module):
    """Decoder layer: self-attention, cross-attention, then MLP, each pre-norm and residual."""

    def __init__(self, embed_dim: int, num_heads: int, ffn_dim: int, rngs: nnx.Rngs = None):
        self.self_attn = MultiHeadAttention(embed_dim, num_heads, rngs=rngs)
        self.self_attn_ln = nnx.LayerNorm(embed_dim, epsilon=1e-5, rngs=rngs)
        self.cross_attn = MultiHeadAttention(embed_dim, num_heads, rngs=rngs)
        self.cross_attn_ln = nnx.LayerNorm(embed_dim, epsilon=1e-5, rngs=rngs)
        self.mlp1 = nnx.Linear(embed_dim, ffn_dim, rngs=rngs)
        self.mlp2 = nnx.Linear(ffn_dim, embed_dim, rngs=rngs)
        self.mlp_ln = nnx.LayerNorm(embed_dim, epsilon=1e-5, rngs=rngs)

    def __call__(
        self,
        x: jax.Array,
        encoder_output: jax.Array,
        mask: jax.Array,
        cache: LayerKVCache | None = None,
    ) -> tuple[jax.Array, LayerKVCache]:
        h = self.self_attn_ln(x)
        k, v = self.self_attn.project_kv(h)
        if cache is None:
            cross_k, cross_v = self.cross_attn.project_kv(encoder_output)
        else:
            k = jnp.concatenate([cache.self_key, k], axis=1)
            v = jnp.concatenate([cache.self_value, v], axis=1)
            cross_k, cross_v = cache.cross_key, cache.cross_value

        x = x + self.self_attn(h, k, v, mask)
        x = x + self.cross_attn(self.cross_attn_ln(x), cross_k, cross_v)
        x = x + self.mlp2(jax.nn.gelu(self.mlp1(self.mlp_ln(x)), approximate=False))
        return x, LayerKVCache(k, v, cross_k, cross_v)


class WhisperEncoder(nnx.Module):
    """Encoder: Conv layers → Sinusoidal positions → Transformer layers."""

    def __init__(self, config: ModelConfig, rngs: nnx.Rngs = None):
        d = config.d_model
        self.conv1 = nnx.Conv(config.num_mel_bins, d, kernel_size=(3,), padding=1, rngs=rngs)
        self.conv2 = nnx.Conv(d, d, kernel_size=(3,), strides=(2,), padding=1, rngs=rngs)
        self.positional_embedding = Buffer(
            jnp.asarray(sinusoids(config.max_source_positions, d))
        )
        self.layers = nnx.List(
            [
                EncoderLayer(d, config.encoder_attention_heads, config.encoder_ffn_dim, rngs=rngs)
                for _ in range(config.encoder_layers)
            ]
        )
        self.layer_norm = nnx.LayerNorm(d, epsilon=1e-5, rngs=rngs)

    def __call__(self, input_features: jax.Array) -> jax.Array:
        """Encode mel-spectrogram (B, n_mels, T) → (B, T/2, D)."""
        x = input_features.transpose(0, 2, 1)  # → (B, T, n_mels)
        x = jax.nn.gelu(self.conv1(x), approximate=False)
        x = jax.nn.gelu(self.conv2(x), approximate=False)
        x = x + self.positional_embedding.value[: x.shape[1]]
        for layer in self.layers:
            x = layer(x)
        return self.layer_norm(x)


class WhisperDecoder(nnx.Module):
    """Decoder: Token + learned positions → Transformer layers → tied logits."""

    def __init__(self, config: ModelConfig, rngs: nnx.Rngs = None):
        d = config.d_model
        self.token_embedding = nnx.Embed(config.vocab_size, d, rngs=rngs)
        self.positional_embedding = nnx.Param(
            jax.random.normal(rngs.params(), (config.max_target_positions, d)) * 0.02
        )
        self.layers = nnx.List(
            [
                DecoderLayer(d, config.decoder_attention_heads, config.decoder_ffn_dim, rngs=rngs)
                for _ in range(config.decoder_layers)
            ]
        )
        self.layer_norm = nnx.LayerNorm(d, epsilon=1e-5, rngs=rngs)

    def __call__(
        self,
        input_ids: jax.Array,
        encoder_output: jax.Array,
        cache: KVCache | None = None,
    ) -> tuple[jax.Array, KVCache]:
        """Decode token IDs (B, L) following ``cache`` → logits (B, L, vocab)."""
        offset = cache.length if cache is not None else 0
        length = input_ids.shape[1]

        x = self.token_embedding(input_ids)
        x = x + self.positional_embedding.value[offset : offset + length]
        mask = causal_mask(length, offset)

        layer_caches = []
        for i, layer in enumerate(self.layers):
            x, layer_cache = layer(
                x, encoder_output, mask, cache.layer(i) if cache is not None else None
            )
            layer_caches.append(layer_cache)

        logits = self.token_embedding.attend(self.layer_norm(x))
        return logits, KVCache(tuple(layer_caches))


class WhisperModel(nnx.Module):
    """Complete Whisper model: encoder + decoder with tied output embedding."""

    def __init__(self, config: ModelConfig, rngs: nnx.Rngs = None):
        rngs = rngs or nnx.Rngs(0)
        self.encoder = WhisperEncoder(config, rngs)
        self.decoder = WhisperDecoder(config, rngs)


@nnx.jit
def _encode(model: WhisperModel, mel: jax.Array) -> jax.Array:
    return model.encoder(mel)


def flatten_state_dict(d, parent_key="", sep="."):
    """Flatten nested dict, converting integer keys to strings."""
    items = []
    for k, v in d.items():
        k_str = str(k) if isinstance(k, int) else k
        new_key = f"{parent_key}{sep}{k_str}" if parent_key else k_str
        if isinstance(v, dict):
            items.extend(flatten_state_dict(v, new_key, sep=sep).items())
        else:
            items.append((new_key, v))
    return dict(items)


def unflatten_state_dict(d, sep="."):
    """Unflatten dict, converting string keys back to ints where appropriate."""
    result = {}
    for key, value in d.items():
        parts = key.split(sep)
        current = result
        for part in parts[:-1]:
            part_key = int(part) if part.isdigit() else part
            current = current.setdefault(part_key, {})
        current[int(parts[-1]) if parts[-1].isdigit() else parts[-1]] = value
    return result


_LAYER_NORMS = ("_ln.", "layer_norm.")


def canonical_to_nnx(name: str, value: np.ndarray) -> tuple[str, np.ndarray]:
    """Map a canonical parameter to its NNX state path and layout."""
    if name.endswith(".weight"):
        base = name[: -len(".weight")]
        if any(tag in name for tag in _LAYER_NORMS):
            return f"{base}.scale", value
        if base.endswith("token_embedding"):
            return f"{base}.embedding", value
        # Conv: PyTorch (out, in, k) → JAX (k, in, out)
        if ".conv" in name:
            return f"{base}.kernel", value.transpose(2, 1, 0)
        # Linear: PyTorch (out, in) → JAX (in, out)
        return f"{base}.kernel", value.T
    return name, value


def nnx_to_canonical(path: str, value: np.ndarray) -> tuple[str, np.ndarray]:
    """Inverse of :func:`canonical_to_nnx`."""
    base, _, leaf = path.rpartition(".")
    if leaf == "scale" or leaf == "embedding":
        return f"{base}.weight", value
    if leaf == "kernel":
        if ".conv" in path:
            return f"{base}.weight", value.transpose(2, 1, 0)
        return f"{base}.weight", value.T
    return path, value


class NNXTransformer(WhisperTransformer):
    """WhisperTransformer backed by a Flax NNX module."""

    def __init__(self, config: ModelConfig, seed: int = 0):
        self.config = config
        self.model = WhisperModel(config, rngs=nnx.Rngs(seed))

    def named_parameters(self) -> dict[str, np.ndarray]:
        flat = flatten_state_dict(nnx.state(self.model).to_pure_dict())
        params = {}
        for path, value in flat.items():
            name, array = nnx_to_canonical(path, np.asarray(value))
            params[name] = array
        return params

    def bind(self, weights: Mapping[str, np.ndarray]) -> None:
        check_weights(parameter_shapes(self.config), weights)

        state = nnx.state(self.model)
        current = flatten_state_dict(state.to_pure_dict())
        converted = {}
        for name, value in weights.items():
            path, array = canonical_to_nnx(name, np.asarray(value, dtype=np.float32))
            converted[path] = jnp.asarray(array)

        stray = set(converted) ^ set(current)
        if stray:
            raise WeightBindingError(
                "Parameter tree does not match model state", unused=list(stray)
            )

        nnx.replace_by_pure_dict(state, unflatten_state_dict(converted))
        nnx.update(self.model, state)
        logger.debug("Bound %d tensors to NNX model", len(converted))

    def encode(self, mel: np.ndarray) -> jax.Array:
        return _encode(self.model, jnp.asarray(mel, dtype=jnp.float32))

    def decode(
        self, tokens: np.ndarray, encoder_output: jax.Array, cache: KVCache | None = None
    ) -> tuple[jax.Array, KVCache]:
        return self.model.decoder(jnp.asarray(tokens, dtype=jnp.int32), encoder_output, cache)
