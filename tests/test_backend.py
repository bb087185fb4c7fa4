"""
tests/test_backend.py — Generation parameters, output cleaning and the transformers backend.

The transformers backend is exercised with mocked model and tokenizer objects;
no weights are loaded.
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from healthroute.core.config import LocalModelConfig
from healthroute.core.errors import LoadFailureError
from healthroute.llm.backend import GenerationParams, TransformersBackend, clean_generated_text


class TestGenerationParams:
    def test_full_budget(self) -> None:
        cfg = LocalModelConfig()
        params = GenerationParams.from_config(cfg)
        assert params.max_new_tokens == cfg.max_new_tokens
        assert params.max_input_tokens == cfg.context_length
        assert params.temperature == cfg.temperature

    def test_reduced_budget(self) -> None:
        cfg = LocalModelConfig()
        params = GenerationParams.from_config(cfg, reduced_context=True)
        assert params.max_new_tokens == cfg.reduced_max_new_tokens
        assert params.max_input_tokens == cfg.reduced_context_length
        assert params.max_input_tokens < cfg.context_length


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Drink more water.<|im_end|>", "Drink more water."),
        ("assistant: Rest today.", "Rest today."),
        ("<|im_start|>Model: Hello<|endoftext|>", "Hello"),
        ("  </s>  ", ""),
        ("Your resting heart rate is fine.", "Your resting heart rate is fine."),
    ],
)
def test_clean_generated_text(raw: str, expected: str) -> None:
    assert clean_generated_text(raw) == expected


def test_missing_libraries_is_load_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setitem(sys.modules, "torch", None)
    monkeypatch.setitem(sys.modules, "transformers", None)
    with pytest.raises(LoadFailureError, match="healthroute\\[local\\]"):
        TransformersBackend(tmp_path)


def test_tokenizer_truncates_from_the_left(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    transformers = MagicMock(name="transformers")
    monkeypatch.setitem(sys.modules, "torch", MagicMock(name="torch"))
    monkeypatch.setitem(sys.modules, "transformers", transformers)
    progress = []

    TransformersBackend(tmp_path, LocalModelConfig(quantization="none"), progress.append)

    call = transformers.AutoTokenizer.from_pretrained.call_args
    assert call.args == (str(tmp_path),)
    assert call.kwargs["truncation_side"] == "left"
    assert call.kwargs["local_files_only"] is True
    assert "quantization_config" not in transformers.AutoModelForCausalLM.from_pretrained.call_args.kwargs
    assert progress == [0.25, 1.0]


def test_factory_binds_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    built = []

    def _init(self, model_dir, config=None, on_progress=None):
        built.append((model_dir, config, on_progress))

    monkeypatch.setattr(TransformersBackend, "__init__", _init)
    cfg = LocalModelConfig(quantization="int8")
    progress = lambda fraction: None  # noqa: E731
    backend = TransformersBackend.factory(cfg)(MagicMock(name="artifact"), tmp_path, progress)
    assert isinstance(backend, TransformersBackend)
    assert built == [(tmp_path, cfg, progress)]


class TestTransformersBackend:
    @pytest.fixture
    def backend(self, tmp_path: Path) -> TransformersBackend:
        torch = pytest.importorskip("torch")
        backend = object.__new__(TransformersBackend)
        backend._cfg = LocalModelConfig()
        backend._dir = tmp_path

        model = MagicMock()
        model.parameters.side_effect = lambda: iter([torch.zeros(1)])
        model.generate.return_value = torch.tensor([[11, 12, 13, 21, 22]])
        tokenizer = MagicMock()
        tokenizer.eos_token_id = 2
        tokenizer.return_value = {
            "input_ids": torch.tensor([[11, 12, 13]]),
            "attention_mask": torch.tensor([[1, 1, 1]]),
        }
        tokenizer.decode.return_value = "assistant: Your step count is on track.<|im_end|>"
        backend._model = model
        backend._tokenizer = tokenizer
        return backend

    def test_generate_decodes_only_new_tokens(self, backend: TransformersBackend) -> None:
        params = GenerationParams(max_new_tokens=64, max_input_tokens=1024)
        text = backend.generate("prompt", params)

        assert text == "Your step count is on track."
        call = backend._tokenizer.call_args
        assert call.kwargs["truncation"] is True
        assert call.kwargs["max_length"] == 1024
        assert backend._model.generate.call_args.kwargs["max_new_tokens"] == 64
        new_tokens = backend._tokenizer.decode.call_args.args[0]
        assert new_tokens.tolist() == [21, 22]

    def test_close_is_idempotent(self, backend: TransformersBackend) -> None:
        backend.close()
        backend.close()
        assert backend._model is None
        with pytest.raises(RuntimeError):
            backend.generate("prompt", GenerationParams())
