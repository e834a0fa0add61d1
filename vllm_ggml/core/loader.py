"""
vllm-ggml :: Checkpoint Loader

Reads a legacy GGML checkpoint into a fully populated Model + tokenizer.

File layout (little-endian):
  1. magic            u32 == 0x67676d6c ("ggml")
  2. hparams          family-specific i32/f32 list (see models/config.py)
  3. vocab            n_vocab × (u32 len, bytes [, f32 score])
  4. tensor records   until EOF:
                        i32 n_dims, i32 name_len, i32 type,
                        n_dims × i32 ne, name bytes, raw data

The file is untrusted: every length is checked against what is left in the
stream, every record against the builder's declaration. Any violation
aborts the load — the caller never sees a partially filled Model.

INL - 2025
"""

import os
import struct
import torch
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Tuple, Union

from vllm_ggml.core.errors import (
    CheckpointIOError, InvalidFormatError, UnknownTensorError,
    ShapeMismatchError, SizeMismatchError,
)
from vllm_ggml.core.logging import LoadLogger
from vllm_ggml.core.quantization import (
    GGML_FILE_MAGIC, block_size, type_size,
    ftype_to_type, parse_type_code, split_ftype,
)
from vllm_ggml.core.registry import get_family
from vllm_ggml.core.tokenizer import read_unigram_vocab, read_vocab, VocabTokenizer
from vllm_ggml.models.builder import ModelBuilder
from vllm_ggml.models.config import HParams, ModelFamily
from vllm_ggml.models.model import Model


MAX_TENSOR_NAME_LEN = 1024
MAX_TENSOR_DIMS = 2

_U32 = struct.Struct("<I")
_F32 = struct.Struct("<f")
_RECORD_HEADER = struct.Struct("<iii")


@dataclass
class LoadStats:
    n_tensors: int = 0
    total_bytes: int = 0
    kv_bytes: int = 0
    arena_bytes: int = 0
    offloaded_layers: List[int] = field(default_factory=list)


# =========================================================================
# Bounded binary reader
# =========================================================================

class BinaryReader:
    """Little-endian reads that never run past the end of the file."""

    def __init__(self, f: BinaryIO, size: int):
        self.f = f
        self.size = size

    @property
    def remaining(self) -> int:
        return self.size - self.f.tell()

    def read_exact(self, n: int) -> bytes:
        if n < 0 or n > self.remaining:
            raise InvalidFormatError(
                f"unexpected end of file: need {n} bytes at offset {self.f.tell()}, "
                f"{self.remaining} left"
            )
        return self.f.read(n)

    def read_struct(self, s: struct.Struct) -> tuple:
        return s.unpack(self.read_exact(s.size))

    def read_u32(self) -> int:
        return self.read_struct(_U32)[0]

    def read_f32(self) -> float:
        return self.read_struct(_F32)[0]

    def read_record_header(self) -> Optional[Tuple[int, int, int]]:
        """Next record header, or None at a clean end of stream."""
        if self.remaining == 0:
            return None
        if self.remaining < _RECORD_HEADER.size:
            raise InvalidFormatError(
                f"truncated tensor record header at offset {self.f.tell()}"
            )
        return self.read_struct(_RECORD_HEADER)

    def read_into(self, dst: torch.Tensor):
        """Fill a contiguous CPU uint8 tensor straight from the stream."""
        n = dst.numel()
        if n > self.remaining:
            raise InvalidFormatError(
                f"unexpected end of file: tensor data needs {n} bytes, {self.remaining} left"
            )
        got = self.f.readinto(memoryview(dst.numpy()))
        if got != n:
            raise InvalidFormatError(f"short read: got {got} of {n} bytes")


# =========================================================================
# Header sections
# =========================================================================

def _read_magic(reader: BinaryReader):
    if reader.remaining < _U32.size:
        raise InvalidFormatError("file too short for magic")
    magic = reader.read_u32()
    if magic != GGML_FILE_MAGIC:
        raise InvalidFormatError(f"bad magic 0x{magic:08x}")


def _read_hparams(reader: BinaryReader, family: ModelFamily, context_length: int) -> HParams:
    values = reader.read_struct(family.hparams_struct)
    hparams = HParams()
    for (name, _), value in zip(family.hparam_fields, values):
        setattr(hparams, name, value)

    for name in ("d_model", "max_seq_len", "n_heads", "n_layers", "n_vocab"):
        if getattr(hparams, name) <= 0:
            raise InvalidFormatError(f"bad hparam {name}={getattr(hparams, name)}")
    if hparams.d_model % hparams.n_heads != 0:
        raise InvalidFormatError(
            f"d_model={hparams.d_model} not divisible by n_heads={hparams.n_heads}"
        )

    if hparams.ftype < 0:
        raise InvalidFormatError(f"bad ftype value {hparams.ftype}")
    hparams.ftype, hparams.qnt_version = split_ftype(hparams.ftype)
    hparams.apply_context_length(context_length)
    return hparams


def _read_tokenizer(reader: BinaryReader, family: ModelFamily, n_vocab: int):
    if family.vocab_has_scores:
        return read_unigram_vocab(reader, n_vocab)
    return VocabTokenizer(read_vocab(reader, n_vocab))


# =========================================================================
# Tensor records
# =========================================================================

def _pad_dims(ne) -> Tuple[int, ...]:
    return tuple(ne) + (1,) * (MAX_TENSOR_DIMS - len(ne))


def _read_tensors(
    reader: BinaryReader,
    model: Model,
    offload_device: Optional[str],
    log: LoadLogger,
) -> LoadStats:
    arena = model.arena
    stats = LoadStats()

    while True:
        header = reader.read_record_header()
        if header is None:
            break
        n_dims, name_len, ttype = header

        if not 1 <= n_dims <= MAX_TENSOR_DIMS:
            raise InvalidFormatError(f"tensor record has {n_dims} dims (max {MAX_TENSOR_DIMS})")
        if not 0 < name_len <= MAX_TENSOR_NAME_LEN:
            raise InvalidFormatError(f"bad tensor name length {name_len}")
        file_type = parse_type_code(ttype)

        ne = reader.read_struct(struct.Struct(f"<{n_dims}i"))
        if any(n <= 0 for n in ne):
            raise InvalidFormatError(f"bad tensor dims {list(ne)}")
        try:
            name = reader.read_exact(name_len).decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFormatError("tensor name is not valid UTF-8") from e

        handle = model.directory.lookup(name)
        if handle is None:
            raise UnknownTensorError(name)
        rec = arena.record(handle)
        if rec.loaded:
            raise InvalidFormatError(f"tensor '{name}' appears twice in model file")

        nelements = 1
        for n in ne:
            nelements *= n
        if nelements != rec.n_elements:
            raise ShapeMismatchError(name, ne, rec.ne)
        if _pad_dims(ne) != _pad_dims(rec.ne):
            raise ShapeMismatchError(name, ne, rec.ne)

        nbytes = nelements * type_size(file_type) // block_size(rec.ggml_type)
        if nbytes != rec.nbytes:
            raise SizeMismatchError(name, nbytes, rec.nbytes)
        if file_type != rec.ggml_type:
            log.warning(
                f"tensor '{name}' stored as {file_type.name}, declared {rec.ggml_type.name}"
            )

        log.debug(
            f"{name:>42} - {list(ne)}, type = {file_type.name:>5}, "
            f"{rec.nbytes / 1024 / 1024:6.2f} MB"
        )

        reader.read_into(arena.raw(handle))
        rec.loaded = True
        if rec.offloaded and offload_device is not None:
            arena.place(handle, offload_device)

        stats.n_tensors += 1
        stats.total_bytes += rec.nbytes

    missing = [name for name, h in model.directory if not arena.record(h).loaded]
    if missing:
        raise InvalidFormatError(f"model file is missing {len(missing)} tensors: {missing[:4]}")

    return stats


# =========================================================================
# Entry point
# =========================================================================

def load_ggml_checkpoint(
    checkpoint_path: str,
    family: Union[str, ModelFamily],
    context_length: int = 0,
    gpu_layers: int = 0,
    offload_device: Optional[str] = None,
):
    """
    Load a GGML checkpoint.

    Args:
        checkpoint_path: path to the .bin file
        family: registered model type ("mpt", "replit") or a ModelFamily
        context_length: n_ctx override (0 → default 2048, capped by max_seq_len)
        gpu_layers: number of trailing layers to place on the accelerator
        offload_device: device for offloaded layers (default: cuda if available)

    Returns:
        (model, tokenizer, stats)
    """
    if isinstance(family, str):
        family = get_family(family)

    log = LoadLogger(checkpoint_path)
    try:
        f = open(checkpoint_path, "rb")
    except OSError as e:
        raise CheckpointIOError(f"failed to open '{checkpoint_path}': {e}") from e

    try:
        with f:
            reader = BinaryReader(f, os.fstat(f.fileno()).st_size)
            _read_magic(reader)
            hparams = _read_hparams(reader, family, context_length)
            log.info(
                f"{family.name}: d_model={hparams.d_model} n_heads={hparams.n_heads} "
                f"n_layers={hparams.n_layers} n_vocab={hparams.n_vocab} "
                f"max_seq_len={hparams.max_seq_len} n_ctx={hparams.n_ctx} "
                f"ftype={hparams.ftype} qntvr={hparams.qnt_version}"
            )

            tokenizer = _read_tokenizer(reader, family, hparams.n_vocab)
            wtype = ftype_to_type(hparams.ftype)

            builder = ModelBuilder(hparams, family, wtype, gpu_layers)
            if builder.gpu_layers and offload_device is None:
                offload_device = "cuda" if torch.cuda.is_available() else None
                if offload_device is None:
                    log.warning(f"gpu_layers={gpu_layers} requested but no accelerator; keeping weights on cpu")
            model = builder.build()
            log.info(f"memory_size = {model.kv_cache.nbytes / 1024 / 1024:8.2f} MB")

            stats = _read_tensors(reader, model, offload_device, log)
    except OSError as e:
        raise CheckpointIOError(f"failed to read '{checkpoint_path}': {e}") from e

    stats.kv_bytes = model.kv_cache.nbytes
    stats.arena_bytes = model.arena.capacity
    stats.offloaded_layers = [i for i, layer in enumerate(model.layers) if layer.offloaded]
    log.info(
        f"model size = {stats.total_bytes / 1024 / 1024:8.2f} MB / num tensors = {stats.n_tensors}",
        load_ms=round(log.elapsed_ms(), 1),
    )
    return model, tokenizer, stats
