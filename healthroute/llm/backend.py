"""
healthroute/llm/backend.py — Inference backend boundary and the transformers implementation.

The lifecycle manager only knows :class:`InferenceBackend` (``generate`` and
``close``) and a :data:`BackendFactory` that builds one from a verified
artifact directory. Both calls are blocking and always run on the lifecycle
manager's single worker thread, so implementations need no locking.

:class:`TransformersBackend` loads the artifact with ``transformers`` in
4-bit NF4 (bitsandbytes) to keep the resident footprint small. torch and
transformers are imported lazily so that importing healthroute never
allocates GPU memory or requires the ``local`` extra.
"""

from __future__ import annotations

import gc
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from healthroute.core.config import LocalModelConfig
from healthroute.core.errors import LoadFailureError
from healthroute.core.logger import get_logger

if TYPE_CHECKING:  # imported only by type-checkers, never at runtime
    from healthroute.download.manifest import ModelArtifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationParams:
    """Sampling and budget parameters for one generation call."""

    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    repetition_penalty: float = 1.1
    max_input_tokens: int = 4096

    @classmethod
    def from_config(cls, config: LocalModelConfig, reduced_context: bool = False) -> "GenerationParams":
        """Build params from *config*, using the reduced budgets when asked."""
        if reduced_context:
            return cls(
                max_new_tokens=config.reduced_max_new_tokens,
                temperature=config.temperature,
                top_p=config.top_p,
                repetition_penalty=config.repetition_penalty,
                max_input_tokens=config.reduced_context_length,
            )
        return cls(
            max_new_tokens=config.max_new_tokens,
            temperature=config.temperature,
            top_p=config.top_p,
            repetition_penalty=config.repetition_penalty,
            max_input_tokens=config.context_length,
        )


class InferenceBackend(Protocol):
    """A loaded, ready-to-use local model."""

    def generate(self, prompt: str, params: GenerationParams) -> str:
        """Return the completion for *prompt* (blocking)."""
        ...

    def close(self) -> None:
        """Release every resource held by the backend. Idempotent."""
        ...


ProgressCallback = Callable[[float], None]

BackendFactory = Callable[["ModelArtifact", Path, ProgressCallback], InferenceBackend]
"""``(artifact, directory, on_progress) -> InferenceBackend``; may raise on failure."""


# ── Output cleaning ───────────────────────────────────────────────────────────

_SPECIAL_TOKEN_RE = re.compile(r"<\|?/?(?:im_start|im_end|end|endoftext|assistant|user|system|eos|s)\|?>")
_ROLE_PREFIX_RE = re.compile(r"^\s*(?:assistant|model)\s*:\s*", re.IGNORECASE)


def clean_generated_text(text: str) -> str:
    """
    Strip chat-template debris from raw model output.

    Removes leftover special tokens and a leading ``assistant:`` role tag,
    then trims whitespace. May return an empty string.
    """
    cleaned = _SPECIAL_TOKEN_RE.sub("", text)
    cleaned = _ROLE_PREFIX_RE.sub("", cleaned)
    return cleaned.strip()


# ── transformers implementation ───────────────────────────────────────────────

class TransformersBackend:
    """
    Causal-LM backend over ``transformers`` with optional NF4 / INT8 quantization.

    Loads strictly from *model_dir* (``local_files_only``); nothing is
    fetched at load time. Construction is blocking and reports progress
    through *on_progress* at the tokenizer and weights milestones.

    Args:
        model_dir: Verified artifact directory.
        config: Local model settings (quantization, device map).
        on_progress: Optional callback receiving fractions in ``[0, 1]``.

    Raises:
        LoadFailureError: If torch/transformers are missing or loading fails.
    """

    def __init__(
        self,
        model_dir: Path,
        config: Optional[LocalModelConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._cfg = config or LocalModelConfig()
        self._dir = Path(model_dir)
        self._model: Optional[Any] = None
        self._tokenizer: Optional[Any] = None
        report = on_progress or (lambda _fraction: None)

        log = get_logger()
        try:
            import torch  # type: ignore
            from transformers import AutoModelForCausalLM, AutoTokenizer  # type: ignore
        except ImportError as exc:
            raise LoadFailureError(
                "torch and transformers are required for the local model "
                "(install healthroute[local])",
                cause=exc,
            ) from exc

        log.info("llm", "backend_load_start", {"model_dir": str(self._dir), "quant": self._cfg.quantization})
        t0 = time.monotonic()
        try:
            self._tokenizer = AutoTokenizer.from_pretrained(
                str(self._dir),
                local_files_only=True,
                use_fast=True,
                padding_side="left",
                truncation_side="left",
            )
            report(0.25)

            load_kwargs: dict = {
                "local_files_only": True,
                "device_map": self._cfg.device_map,
                "torch_dtype": torch.float16,
                "low_cpu_mem_usage": True,
            }
            bnb_config = self._build_quant_config()
            if bnb_config is not None:
                load_kwargs["quantization_config"] = bnb_config

            self._model = AutoModelForCausalLM.from_pretrained(str(self._dir), **load_kwargs)
            self._model.eval()
            report(1.0)
        except (OSError, ValueError, RuntimeError) as exc:
            self.close()
            raise LoadFailureError(f"Could not load model from {self._dir}", cause=exc) from exc

        log.perf(
            "llm",
            "backend_loaded",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"model_dir": str(self._dir), "quant": self._cfg.quantization},
        )

    @classmethod
    def factory(cls, config: LocalModelConfig) -> BackendFactory:
        """Return a :data:`BackendFactory` bound to *config*."""

        def _build(artifact: "ModelArtifact", model_dir: Path, on_progress: ProgressCallback) -> "TransformersBackend":
            logger.info("Building transformers backend for %s %s", artifact.name, artifact.version)
            return cls(model_dir, config, on_progress)

        return _build

    # ──────────────────────────────────────────
    # InferenceBackend
    # ──────────────────────────────────────────

    def generate(self, prompt: str, params: GenerationParams) -> str:
        """Tokenize, generate and decode only the new tokens."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("backend is closed")
        import torch  # type: ignore

        try:
            device = next(self._model.parameters()).device
        except StopIteration:
            device = torch.device("cpu")

        inputs = self._tokenizer(
            prompt,
            return_tensors="pt",
            truncation=True,
            max_length=params.max_input_tokens,
        )
        inputs = {k: v.to(device) for k, v in inputs.items()}
        input_length = inputs["input_ids"].shape[1]

        with torch.no_grad():
            outputs = self._model.generate(
                **inputs,
                max_new_tokens=params.max_new_tokens,
                temperature=params.temperature,
                top_p=params.top_p,
                do_sample=params.temperature > 0,
                repetition_penalty=params.repetition_penalty,
                pad_token_id=self._tokenizer.eos_token_id,
                eos_token_id=self._tokenizer.eos_token_id,
            )

        new_tokens = outputs[0][input_length:]
        decoded = self._tokenizer.decode(
            new_tokens,
            skip_special_tokens=True,
            clean_up_tokenization_spaces=True,
        )
        return clean_generated_text(decoded)

    def close(self) -> None:
        """Drop model and tokenizer, empty the CUDA cache and collect."""
        if self._model is None and self._tokenizer is None:
            return
        self._model = None
        self._tokenizer = None
        try:
            import torch  # type: ignore

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
        gc.collect()
        get_logger().info("llm", "backend_closed", {"model_dir": str(self._dir)})

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _build_quant_config(self) -> Optional[Any]:
        """
        BitsAndBytesConfig for ``nf4`` / ``int8``; ``None`` for ``none``.

        Falls back to fp16 (``None``) when bitsandbytes is not installed.
        """
        if self._cfg.quantization == "none":
            return None
        try:
            import bitsandbytes  # type: ignore  # noqa: F401
            import torch  # type: ignore
            from transformers import BitsAndBytesConfig  # type: ignore
        except ImportError:
            get_logger().warn("llm", "quant_unavailable", {"requested": self._cfg.quantization, "fallback": "fp16"})
            return None

        if self._cfg.quantization == "nf4":
            return BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_use_double_quant=True,
                bnb_4bit_compute_dtype=torch.float16,
            )
        return BitsAndBytesConfig(load_in_8bit=True)
