"""NumPy Whisper backend for hosts without an accelerator.

Mirrors :mod:`whisper_engine.core.model` operation for operation, working
directly on the canonical (PyTorch layout) parameter dict.
"""

import logging
from collections.abc import Mapping

import numpy as np
from scipy.special import erf

from whisper_engine.config import ModelConfig
from whisper_engine.core.base import WhisperTransformer, check_weights, parameter_shapes, sinusoids
from whisper_engine.core.cache import KVCache, LayerKVCache

logger = logging.getLogger(__name__)


def gelu(x: np.ndarray) -> np.ndarray:
    """Exact (erf) GELU."""
    return 0.5 * x * (1.0 + erf(x / np.sqrt(2.0)))


def softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    x = x - np.max(x, axis=axis, keepdims=True)
    e = np.exp(x)
    return e / np.sum(e, axis=axis, keepdims=True)


def layer_norm(x: np.ndarray, weight: np.ndarray, bias: np.ndarray, eps: float = 1e-5):
    mean = x.mean(axis=-1, keepdims=True)
    var = x.var(axis=-1, keepdims=True)
    return (x - mean) / np.sqrt(var + eps) * weight + bias


def linear(x: np.ndarray, weight: np.ndarray, bias: np.ndarray | None = None) -> np.ndarray:
    out = x @ weight.T
    if bias is not None:
        out = out + bias
    return out


def conv1d(
    x: np.ndarray, weight: np.ndarray, bias: np.ndarray, stride: int = 1, padding: int = 1
) -> np.ndarray:
    """(B, C_in, T) * (C_out, C_in, k) → (B, C_out, T_out)."""
    kernel = weight.shape[-1]
    xp = np.pad(x, ((0, 0), (0, 0), (padding, padding)))
    windows = np.lib.stride_tricks.sliding_window_view(xp, kernel, axis=2)[:, :, ::stride, :]
    return np.einsum("bctk,ock->bot", windows, weight) + bias[None, :, None]


def causal_mask(length: int, offset: int = 0) -> np.ndarray:
    return np.triu(np.full((length, offset + length), -np.inf, dtype=np.float32), k=offset + 1)


class ReferenceTransformer(WhisperTransformer):
    """WhisperTransformer evaluated with NumPy in float32."""

    def __init__(self, config: ModelConfig, seed: int = 0):
        self.config = config
        rng = np.random.default_rng(seed)
        params = {}
        for name, shape in parameter_shapes(config).items():
            if name == "encoder.positional_embedding":
                params[name] = sinusoids(*shape)
            elif name.endswith("_ln.weight") or name.endswith("layer_norm.weight"):
                params[name] = np.ones(shape, dtype=np.float32)
            elif name.endswith(".bias"):
                params[name] = np.zeros(shape, dtype=np.float32)
            else:
                params[name] = (rng.standard_normal(shape) * 0.02).astype(np.float32)
        self.params = params

    def named_parameters(self) -> dict[str, np.ndarray]:
        return {name: value.copy() for name, value in self.params.items()}

    def bind(self, weights: Mapping[str, np.ndarray]) -> None:
        check_weights(parameter_shapes(self.config), weights)
        self.params = {name: np.array(value, dtype=np.float32) for name, value in weights.items()}
        logger.debug("Bound %d tensors to reference model", len(self.params))

    # Blocks

    def _attention(
        self,
        prefix: str,
        x: np.ndarray,
        k: np.ndarray,
        v: np.ndarray,
        num_heads: int,
        mask: np.ndarray | None = None,
    ) -> np.ndarray:
        p = self.params
        B, L, D = x.shape
        head_dim = D // num_heads

        q = linear(x, p[f"{prefix}.query.weight"], p[f"{prefix}.query.bias"])
        q = q.reshape(B, L, num_heads, head_dim).transpose(0, 2, 1, 3)
        k = k.reshape(B, -1, num_heads, head_dim).transpose(0, 2, 1, 3)
        v = v.reshape(B, -1, num_heads, head_dim).transpose(0, 2, 1, 3)

        attn = (q @ k.transpose(0, 1, 3, 2)) / np.sqrt(head_dim)
        if mask is not None:
            attn = attn + mask[None, None]
        out = (softmax(attn) @ v).transpose(0, 2, 1, 3).reshape(B, L, D)
        return linear(out, p[f"{prefix}.out.weight"], p[f"{prefix}.out.bias"])

    def _project_kv(self, prefix: str, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        p = self.params
        k = linear(x, p[f"{prefix}.key.weight"])
        v = linear(x, p[f"{prefix}.value.weight"], p[f"{prefix}.value.bias"])
        return k, v

    def _layer_norm(self, prefix: str, x: np.ndarray) -> np.ndarray:
        return layer_norm(x, self.params[f"{prefix}.weight"], self.params[f"{prefix}.bias"])

    def _mlp(self, prefix: str, x: np.ndarray) -> np.ndarray:
        p = self.params
        h = gelu(linear(x, p[f"{prefix}.mlp1.weight"], p[f"{prefix}.mlp1.bias"]))
        return linear(h, p[f"{prefix}.mlp2.weight"], p[f"{prefix}.mlp2.bias"])

    # Interface

    def encode(self, mel: np.ndarray) -> np.ndarray:
        p = self.params
        heads = self.config.encoder_attention_heads
        x = np.asarray(mel, dtype=np.float32)
        x = gelu(conv1d(x, p["encoder.conv1.weight"], p["encoder.conv1.bias"]))
        x = gelu(conv1d(x, p["encoder.conv2.weight"], p["encoder.conv2.bias"], stride=2))
        x = x.transpose(0, 2, 1)
        x = x + p["encoder.positional_embedding"][: x.shape[1]]

        for i in range(self.config.encoder_layers):
            prefix = f"encoder.layers.{i}"
            h = self._layer_norm(f"{prefix}.self_attn_ln", x)
            x = x + self._attention(
                f"{prefix}.self_attn", h, *self._project_kv(f"{prefix}.self_attn", h), heads
            )
            x = x + self._mlp(prefix, self._layer_norm(f"{prefix}.mlp_ln", x))

        return self._layer_norm("encoder.layer_norm", x).astype(np.float32)

    def decode(
        self, tokens: np.ndarray, encoder_output: np.ndarray, cache: KVCache | None = None
    ) -> tuple[np.ndarray, KVCache]:
        p = self.params
        heads = self.config.decoder_attention_heads
        tokens = np.asarray(tokens, dtype=np.int64)
        encoder_output = np.asarray(encoder_output, dtype=np.float32)
        offset = cache.length if cache is not None else 0
        length = tokens.shape[1]

        embedding = p["decoder.token_embedding.weight"]
        x = embedding[tokens] + p["decoder.positional_embedding"][offset : offset + length]
        mask = causal_mask(length, offset)

        layer_caches = []
        for i in range(self.config.decoder_layers):
            prefix = f"decoder.layers.{i}"
            h = self._layer_norm(f"{prefix}.self_attn_ln", x)
            k, v = self._project_kv(f"{prefix}.self_attn", h)
            if cache is None:
                cross_k, cross_v = self._project_kv(f"{prefix}.cross_attn", encoder_output)
            else:
                layer_cache = cache.layer(i)
                k = np.concatenate([layer_cache.self_key, k], axis=1)
                v = np.concatenate([layer_cache.self_value, v], axis=1)
                cross_k, cross_v = layer_cache.cross_key, layer_cache.cross_value

            x = x + self._attention(f"{prefix}.self_attn", h, k, v, heads, mask)
            h = self._layer_norm(f"{prefix}.cross_attn_ln", x)
            x = x + self._attention(f"{prefix}.cross_attn", h, cross_k, cross_v, heads)
            x = x + self._mlp(prefix, self._layer_norm(f"{prefix}.mlp_ln", x))
            layer_caches.append(LayerKVCache(k, v, cross_k, cross_v))

        logits = self._layer_norm("decoder.layer_norm", x) @ embedding.T
        return logits.astype(np.float32), KVCache(tuple(layer_caches))
