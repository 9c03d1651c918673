"""Checkpoint reading and parameter-name remapping."""

import logging
import zipfile
from pathlib import Path

import numpy as np
from safetensors import SafetensorError, safe_open

from whisper_engine.errors import CheckpointError, WeightBindingError

logger = logging.getLogger(__name__)

# Applied in order to every name after the "model." prefix is stripped.
# Longer patterns come before the shorter ones they contain.
NAME_SUBSTITUTIONS = (
    ("embed_positions.weight", "positional_embedding"),
    ("embed_tokens", "token_embedding"),
    ("encoder_attn_layer_norm", "cross_attn_ln"),
    ("self_attn_layer_norm", "self_attn_ln"),
    ("final_layer_norm", "mlp_ln"),
    ("encoder_attn", "cross_attn"),
    (".q_proj.", ".query."),
    (".k_proj.", ".key."),
    (".v_proj.", ".value."),
    (".out_proj.", ".out."),
    (".fc1.", ".mlp1."),
    (".fc2.", ".mlp2."),
)

TIED_OUTPUT_NAMES = ("proj_out.weight", "lm_head.weight")
TOKEN_EMBEDDING = "decoder.token_embedding.weight"


def _read_safetensors(path: Path) -> dict[str, np.ndarray]:
    tensors = {}
    with safe_open(path, framework="numpy") as f:
        for key in f.keys():
            tensors[key] = f.get_tensor(key)
    return tensors


def _read_npz(path: Path) -> dict[str, np.ndarray]:
    with np.load(path, allow_pickle=False) as data:
        return {key: data[key] for key in data.files}


def read_checkpoint(path: str | Path) -> dict[str, np.ndarray]:
    """Read every tensor from a checkpoint file or model directory.

    Accepts a ``.safetensors`` file, a ``.npz`` archive, or a directory holding
    ``model.safetensors``, sharded ``*.safetensors`` files, or ``weights.npz``.

    Raises:
        CheckpointError: If nothing readable is found
    """
    path = Path(path)
    if path.is_dir():
        files = sorted(path.glob("*.safetensors")) or sorted(path.glob("*.npz"))
        if not files:
            raise CheckpointError(f"No checkpoint files in {path}")
    elif path.is_file():
        files = [path]
    else:
        raise CheckpointError(f"Checkpoint not found: {path}")

    tensors: dict[str, np.ndarray] = {}
    for file in files:
        try:
            if file.suffix == ".safetensors":
                part = _read_safetensors(file)
            elif file.suffix == ".npz":
                part = _read_npz(file)
            else:
                raise CheckpointError(f"Unsupported checkpoint format: {file.name}")
        except (SafetensorError, OSError, ValueError, zipfile.BadZipFile) as e:
            raise CheckpointError(f"Could not read checkpoint {file}", str(e)) from e

        duplicate = tensors.keys() & part.keys()
        if duplicate:
            raise CheckpointError(
                f"Tensor appears in more than one shard: {sorted(duplicate)[0]}"
            )
        tensors.update(part)

    logger.debug("Read %d tensors from %d file(s) under %s", len(tensors), len(files), path)
    return tensors


def remap_name(name: str) -> str:
    """Convert one checkpoint tensor name to the engine's naming scheme."""
    if name.startswith("model."):
        name = name[len("model.") :]
    for old, new in NAME_SUBSTITUTIONS:
        name = name.replace(old, new)
    return name


def remap_checkpoint_names(weights: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
    """Rename checkpoint tensors and drop the tied output projection.

    The output projection shares the token embedding; when present it must
    have the embedding's shape. Names already in engine form pass through.
    """
    remapped: dict[str, np.ndarray] = {}
    tied: list[tuple[str, np.ndarray]] = []
    for name, value in weights.items():
        new_name = remap_name(name)
        if new_name in TIED_OUTPUT_NAMES:
            tied.append((name, value))
            continue
        if new_name in remapped:
            raise CheckpointError(f"Two checkpoint tensors map to {new_name}")
        remapped[new_name] = value

    embedding = remapped.get(TOKEN_EMBEDDING)
    for name, value in tied:
        if embedding is not None and value.shape != embedding.shape:
            raise WeightBindingError(
                "Output projection is not tied to the token embedding",
                mismatched=[f"{name} {value.shape} vs {TOKEN_EMBEDDING} {embedding.shape}"],
            )
        logger.debug("Dropping tied output projection %s", name)

    return remapped


def load_weights(transformer, path: str | Path) -> int:
    """Read, remap and bind a checkpoint. Returns the number of bound tensors."""
    weights = remap_checkpoint_names(read_checkpoint(path))
    transformer.bind(weights)
    logger.info("Loaded %d weight tensors from %s", len(weights), path)
    return len(weights)
