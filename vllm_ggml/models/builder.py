"""
vllm-ggml :: Model Builder

Hyperparameters → tensor declarations. No I/O.

Deterministic: the same (hparams, family, wtype, gpu_layers) always yields
the same names, shapes, declaration order and byte budget, so the budget
computed before allocation is exactly what declaration consumes.

Per model (GGML dims, innermost first):
    transformer.wte.weight                   [d_model, n_vocab]      wtype
    transformer.norm_f.weight                [d_model]               F32
Per layer i:
    transformer.blocks.{i}.norm_1.weight         [d_model]               F32
    transformer.blocks.{i}.attn.Wqkv.weight      [d_model, 3 * d_model]  wtype
    transformer.blocks.{i}.attn.out_proj.weight  [d_model, d_model]      wtype
    transformer.blocks.{i}.norm_2.weight         [d_model]               F32
    transformer.blocks.{i}.ffn.up_proj.weight    [d_model, 4 * d_model]  wtype
    transformer.blocks.{i}.ffn.down_proj.weight  [4 * d_model, d_model]  wtype
KV memory:
    memory_k, memory_v                       [n_ctx * n_layers * d_model]  F16

INL - 2025
"""

from dataclasses import dataclass
from typing import List, Tuple

from vllm_ggml.core.errors import InvalidFormatError
from vllm_ggml.core.kv_cache import KVCache
from vllm_ggml.core.quantization import GGMLType, block_size, tensor_nbytes
from vllm_ggml.core.tensor_directory import TensorArena, TensorDirectory, align_up
from vllm_ggml.models.config import HParams, ModelFamily
from vllm_ggml.models.model import Layer, Model


TENSOR_OVERHEAD = 512  # per-object bookkeeping reserve


@dataclass(frozen=True)
class TensorDecl:
    name: str
    ggml_type: GGMLType
    ne: Tuple[int, ...]
    layer: int = -1          # -1 → model-level tensor
    registered: bool = True  # KV memory is not addressable by file records


def layer_tensor_names(i: int) -> List[str]:
    prefix = f"transformer.blocks.{i}"
    return [
        f"{prefix}.norm_1.weight",
        f"{prefix}.attn.Wqkv.weight",
        f"{prefix}.attn.out_proj.weight",
        f"{prefix}.norm_2.weight",
        f"{prefix}.ffn.up_proj.weight",
        f"{prefix}.ffn.down_proj.weight",
    ]


class ModelBuilder:
    """Declares every tensor a checkpoint of the given shape must provide."""

    def __init__(self, hparams: HParams, family: ModelFamily, wtype: GGMLType, gpu_layers: int = 0):
        self.hparams = hparams
        self.family = family
        self.wtype = wtype
        self.gpu_layers = max(0, gpu_layers) if family.supports_offload else 0

        blck = block_size(wtype)
        if hparams.d_model % blck != 0:
            raise InvalidFormatError(
                f"d_model={hparams.d_model} is not a multiple of the "
                f"{wtype.name} block size {blck}"
            )

    def is_offloaded(self, layer_idx: int) -> bool:
        """Placement only: the last `gpu_layers` layers live on the accelerator."""
        return layer_idx >= self.hparams.n_layers - self.gpu_layers

    def declarations(self) -> List[TensorDecl]:
        hp = self.hparams
        n_embd = hp.d_model
        wtype = self.wtype

        decls = [
            TensorDecl("transformer.wte.weight", wtype, (n_embd, hp.n_vocab)),
            TensorDecl("transformer.norm_f.weight", GGMLType.F32, (n_embd,)),
        ]
        for i in range(hp.n_layers):
            names = layer_tensor_names(i)
            shapes = [
                (GGMLType.F32, (n_embd,)),
                (wtype, (n_embd, 3 * n_embd)),
                (wtype, (n_embd, n_embd)),
                (GGMLType.F32, (n_embd,)),
                (wtype, (n_embd, 4 * n_embd)),
                (wtype, (4 * n_embd, n_embd)),
            ]
            for name, (ggml_type, ne) in zip(names, shapes):
                decls.append(TensorDecl(name, ggml_type, ne, layer=i))

        n_elements = hp.n_ctx * hp.n_layers * n_embd
        decls.append(TensorDecl("memory_k", GGMLType.F16, (n_elements,), registered=False))
        decls.append(TensorDecl("memory_v", GGMLType.F16, (n_elements,), registered=False))
        return decls

    def byte_budget(self) -> int:
        """Exact arena size: aligned tensor bytes + per-object overhead."""
        used = 0
        for decl in self.declarations():
            used = align_up(used) + tensor_nbytes(decl.ne, decl.ggml_type)
        return used + (1 + 6 * self.hparams.n_layers) * TENSOR_OVERHEAD

    def build(self) -> Model:
        """Allocate the arena and declare + register every tensor."""
        arena = TensorArena(self.byte_budget())
        directory = TensorDirectory()
        handles = {}

        for decl in self.declarations():
            offloaded = decl.layer >= 0 and len(decl.ne) == 2 and self.is_offloaded(decl.layer)
            handle = arena.new_tensor(decl.name, decl.ggml_type, decl.ne, offloaded=offloaded)
            handles[decl.name] = handle
            if decl.registered:
                directory.register(decl.name, handle)

        layers = []
        for i in range(self.hparams.n_layers):
            h = [handles[name] for name in layer_tensor_names(i)]
            layers.append(Layer(*h, offloaded=self.is_offloaded(i)))

        kv_cache = KVCache(
            arena,
            handles["memory_k"],
            handles["memory_v"],
            num_layers=self.hparams.n_layers,
            n_ctx=self.hparams.n_ctx,
            d_model=self.hparams.d_model,
        )

        return Model(
            hparams=self.hparams,
            family=self.family,
            wtype=self.wtype,
            arena=arena,
            directory=directory,
            wte=handles["transformer.wte.weight"],
            norm_f=handles["transformer.norm_f.weight"],
            layers=layers,
            kv_cache=kv_cache,
        )
