"""
Tests for model location resolution and safetensors loading.
"""

import json
import shutil

import pytest
import torch
from safetensors.torch import save_file

from localgen.errors import LoadError
from localgen.inference.loader import ModelFormat, open_loader, resolve_location
from localgen.inference.model import Architecture
from localgen.inference.safetensors_loader import SafetensorsLoader, canonical_name

from conftest import TINY_HF_CONFIG, make_state_dict, write_hf_model


@pytest.fixture
def model_copy(tmp_path, tiny_model_dir):
    """Mutable copy of the tiny model directory."""
    target = tmp_path / "copy"
    shutil.copytree(tiny_model_dir, target)
    return target


# =============================================================================
# Location Resolution
# =============================================================================


class TestResolveLocation:
    """Paths and repo ids to ModelLocation."""

    def test_directory(self, tiny_model_dir):
        location = resolve_location(tiny_model_dir)
        assert location.format == ModelFormat.SAFETENSORS
        assert location.architecture == Architecture.LLAMA
        assert location.path == tiny_model_dir
        assert [p.name for p in location.shards] == ["model.safetensors"]

    def test_safetensors_file(self, tiny_model_dir):
        location = resolve_location(tiny_model_dir / "model.safetensors")
        assert location.path == tiny_model_dir
        assert location.shards == (tiny_model_dir / "model.safetensors",)

    def test_other_file_uses_parent_directory(self, tiny_model_dir):
        location = resolve_location(tiny_model_dir / "config.json")
        assert location.path == tiny_model_dir
        assert location.model_dir == tiny_model_dir

    def test_missing_path(self, tmp_path):
        with pytest.raises(LoadError):
            resolve_location(tmp_path / "nowhere")

    def test_empty_location(self):
        with pytest.raises(LoadError):
            resolve_location("")

    def test_missing_config(self, tmp_path):
        with pytest.raises(LoadError):
            resolve_location(tmp_path)

    def test_unsupported_architecture(self, model_copy):
        config = dict(TINY_HF_CONFIG, architectures=["GPT2LMHeadModel"])
        (model_copy / "config.json").write_text(json.dumps(config))
        with pytest.raises(LoadError, match="Unsupported architecture"):
            resolve_location(model_copy)

    def test_hint_must_agree(self, tiny_model_dir):
        assert resolve_location(tiny_model_dir, architecture="llama").architecture == Architecture.LLAMA
        with pytest.raises(LoadError):
            resolve_location(tiny_model_dir, architecture="phi3")

    def test_unknown_hint(self, tiny_model_dir):
        with pytest.raises(LoadError):
            resolve_location(tiny_model_dir, architecture="gpt-j")

    def test_no_weights(self, model_copy):
        (model_copy / "model.safetensors").unlink()
        with pytest.raises(LoadError):
            resolve_location(model_copy)


class TestHubResolution:
    """"org/name" ids go through the Hugging Face cache."""

    def test_cached_repo(self, monkeypatch, tiny_model_dir):
        calls = []

        def fake_snapshot_download(**kwargs):
            calls.append(kwargs)
            return str(tiny_model_dir)

        monkeypatch.setattr("huggingface_hub.snapshot_download", fake_snapshot_download)
        location = resolve_location("example-org/tiny-llama")

        assert location.path == tiny_model_dir
        assert calls[0]["repo_id"] == "example-org/tiny-llama"
        assert calls[0]["local_files_only"] is True

    def test_download_only_when_allowed(self, monkeypatch, tiny_model_dir):
        calls = []

        def fake_snapshot_download(**kwargs):
            calls.append(kwargs)
            return str(tiny_model_dir)

        monkeypatch.setattr("huggingface_hub.snapshot_download", fake_snapshot_download)
        resolve_location("example-org/tiny-llama", allow_download=True)
        assert calls[0]["local_files_only"] is False

    def test_not_cached(self, monkeypatch):
        def fake_snapshot_download(**kwargs):
            raise FileNotFoundError("not in cache")

        monkeypatch.setattr("huggingface_hub.snapshot_download", fake_snapshot_download)
        with pytest.raises(LoadError, match="local Hugging Face cache"):
            resolve_location("example-org/missing")


# =============================================================================
# Safetensors Loading
# =============================================================================


class TestSafetensorsLoader:
    """ParameterBundle construction from safetensors checkpoints."""

    def test_canonical_name(self):
        assert canonical_name("model.layers.0.mlp.up_proj.weight") == "layers.0.mlp.up_proj.weight"
        assert canonical_name("lm_head.weight") == "lm_head.weight"

    def test_load_parameters(self, tiny_model_dir, tiny_tensors, cpu_target):
        loader = open_loader(resolve_location(tiny_model_dir), cpu_target)
        assert isinstance(loader, SafetensorsLoader)
        bundle = loader.load_parameters()

        assert bundle.format == ModelFormat.SAFETENSORS
        assert set(bundle.tensors) == set(tiny_tensors)
        assert len(bundle) == len(tiny_tensors)
        assert bundle.num_parameters == sum(t.numel() for t in tiny_tensors.values())
        assert all(t.dtype == torch.float32 for t in bundle.tensors.values())
        assert torch.equal(bundle.tensors["norm.weight"], tiny_tensors["norm.weight"])

    def test_converts_to_target_dtype(self, tiny_model_dir):
        from localgen.inference.device import select_backend

        loader = open_loader(resolve_location(tiny_model_dir), select_backend("cpu", "bfloat16"))
        bundle = loader.load_parameters()
        assert all(t.dtype == torch.bfloat16 for t in bundle.tensors.values())

    def test_sharded_checkpoint(self, tmp_path, tiny_tensors, cpu_target):
        model_dir = tmp_path / "sharded"
        write_hf_model(model_dir, TINY_HF_CONFIG, tiny_tensors)
        (model_dir / "model.safetensors").unlink()

        names = sorted(tiny_tensors)
        halves = {"model-00001-of-00002.safetensors": names[::2], "model-00002-of-00002.safetensors": names[1::2]}
        weight_map = {}
        for shard, shard_names in halves.items():
            prefixed = {f"model.{n}" if n != "lm_head.weight" else n: tiny_tensors[n].contiguous() for n in shard_names}
            save_file(prefixed, str(model_dir / shard))
            weight_map.update({k: shard for k in prefixed})
        (model_dir / "model.safetensors.index.json").write_text(json.dumps({"weight_map": weight_map}))

        location = resolve_location(model_dir)
        assert len(location.shards) == 2
        bundle = open_loader(location, cpu_target).load_parameters()
        assert set(bundle.tensors) == set(tiny_tensors)

    def test_missing_shard(self, model_copy):
        index = {"weight_map": {"model.norm.weight": "model-00002-of-00002.safetensors"}}
        (model_copy / "model.safetensors.index.json").write_text(json.dumps(index))
        with pytest.raises(LoadError, match="Missing safetensors shards"):
            resolve_location(model_copy)

    def test_missing_tensor_fails_whole_load(self, tmp_path, tiny_tensors, cpu_target):
        tensors = dict(tiny_tensors)
        del tensors["layers.1.post_attention_layernorm.weight"]
        model_dir = write_hf_model(tmp_path / "partial", TINY_HF_CONFIG, tensors)
        with pytest.raises(LoadError, match="Missing tensor"):
            open_loader(resolve_location(model_dir), cpu_target).load_parameters()

    def test_shape_mismatch(self, tmp_path, tiny_tensors, cpu_target):
        config = dict(TINY_HF_CONFIG, intermediate_size=96)
        model_dir = write_hf_model(tmp_path / "mismatch", config, tiny_tensors)
        with pytest.raises(LoadError, match="Shape mismatch"):
            open_loader(resolve_location(model_dir), cpu_target).load_parameters()

    def test_tied_checkpoint_drops_lm_head(self, tmp_path, cpu_target):
        from localgen.inference.model import ModelConfig

        config = dict(TINY_HF_CONFIG, architectures=["Qwen2ForCausalLM"], tie_word_embeddings=True)
        tensors = make_state_dict(ModelConfig.from_hf_config(config, Architecture.QWEN2))
        # Some exports still ship the tied copy
        tensors["lm_head.weight"] = tensors["embed_tokens.weight"].clone()
        model_dir = write_hf_model(tmp_path / "qwen2", config, tensors)

        bundle = open_loader(resolve_location(model_dir), cpu_target).load_parameters()
        assert "lm_head.weight" not in bundle.tensors
        assert "layers.0.self_attn.q_proj.bias" in bundle.tensors

    @pytest.mark.parametrize("hf_name,architecture", [
        ("GemmaForCausalLM", Architecture.GEMMA),
        ("Gemma2ForCausalLM", Architecture.GEMMA2),
    ])
    def test_gemma_checkpoint(self, tmp_path, cpu_target, hf_name, architecture):
        from localgen.inference.architectures import MODEL_VARIANTS, build_model
        from localgen.inference.model import ModelConfig

        config = dict(TINY_HF_CONFIG, architectures=[hf_name], head_dim=16, sliding_window=8)
        del config["tie_word_embeddings"]
        tensors = make_state_dict(ModelConfig.from_hf_config(config, architecture))
        model_dir = write_hf_model(tmp_path / architecture.value, config, tensors)

        location = resolve_location(model_dir)
        assert location.architecture == architecture
        bundle = open_loader(location, cpu_target).load_parameters()
        assert "lm_head.weight" not in bundle.tensors

        model = build_model(bundle)
        assert isinstance(model, MODEL_VARIANTS[architecture])
        with torch.no_grad():
            logits = model([0, 5, 6], 0, model.new_cache())
        assert logits.shape == (TINY_HF_CONFIG["vocab_size"],)

    def test_chat_template_from_tokenizer_config(self, model_copy, cpu_target):
        (model_copy / "tokenizer_config.json").write_text(json.dumps({
            "bos_token": "<s>",
            "chat_template": "{{ bos_token }}{% for m in messages %}[{{ m['role'] }}]{{ m['content'] }}{% endfor %}",
        }))
        loader = open_loader(resolve_location(model_copy), cpu_target)
        template = loader.load_chat_template(loader.load_tokenizer())
        assert template.render([("user", "hi")]) == "<s>[user]hi"

    def test_no_chat_template(self, tiny_model_dir, cpu_target):
        loader = open_loader(resolve_location(tiny_model_dir), cpu_target)
        assert loader.load_chat_template(loader.load_tokenizer()) is None
