"""
Tests for the tokenizer adapter.
"""

import json

import pytest
from tokenizers import Tokenizer, models

from localgen.errors import TokenizerError
from localgen.inference.tokenizer import TokenizerAdapter, spm_merges

from conftest import BOS_ID, EOS_ID, TINY_HF_CONFIG, TOKENS, build_tiny_tokenizer


@pytest.fixture
def adapter(tiny_model_dir):
    return TokenizerAdapter.from_model_dir(tiny_model_dir, TINY_HF_CONFIG)


def _spm_metadata(**overrides):
    # Scores are merge priorities. "▁hello" ranks last but is still reached,
    # although its score is below the sum of "▁he" and "llo".
    pieces = [
        ("<unk>", 0.0, 2),
        ("<s>", 0.0, 3),
        ("</s>", 0.0, 3),
        ("▁h", -1.0, 1),
        ("ll", -2.0, 1),
        ("▁he", -3.0, 1),
        ("llo", -4.0, 1),
        ("▁w", -5.0, 1),
        ("or", -6.0, 1),
        ("▁wor", -7.0, 1),
        ("ld", -8.0, 1),
        ("▁hello", -9.0, 1),
        ("▁world", -10.0, 1),
        ("▁", -100.0, 1),
    ]
    pieces += [(ch, -100.0, 1) for ch in "Hhelowrd"]
    pieces += [(f"<0x{b:02X}>", -20.0, 6) for b in range(256)]
    metadata = {
        "tokenizer.ggml.model": "llama",
        "tokenizer.ggml.tokens": [p[0] for p in pieces],
        "tokenizer.ggml.scores": [p[1] for p in pieces],
        "tokenizer.ggml.token_type": [p[2] for p in pieces],
        "tokenizer.ggml.bos_token_id": 1,
        "tokenizer.ggml.eos_token_id": 2,
        "tokenizer.ggml.unknown_token_id": 0,
    }
    metadata.update(overrides)
    return metadata


def _bpe_metadata(**overrides):
    metadata = {
        "tokenizer.ggml.model": "gpt2",
        "tokenizer.ggml.pre": "default",
        "tokenizer.ggml.tokens": list(TOKENS),
        "tokenizer.ggml.token_type": [3, 3] + [1] * (len(TOKENS) - 2),
        "tokenizer.ggml.merges": [],
        "tokenizer.ggml.bos_token_id": BOS_ID,
        "tokenizer.ggml.eos_token_id": EOS_ID,
    }
    metadata.update(overrides)
    return metadata


# =============================================================================
# Encode / Decode
# =============================================================================


class TestEncodeDecode:
    """Round trips and BOS policy on the tiny byte-level tokenizer."""

    def test_encode_prepends_bos_once(self, adapter):
        ids = adapter.encode("Hi")
        assert ids[0] == BOS_ID
        assert len(ids) == 3
        assert BOS_ID not in ids[1:]

    def test_duplicated_leading_bos_is_collapsed(self, adapter):
        ids = adapter.encode("<s>Hi")
        assert ids[:2] != [BOS_ID, BOS_ID]
        assert ids == adapter.encode("Hi")

    def test_round_trip_ascii(self, adapter):
        text = "The quick brown fox."
        assert adapter.decode(adapter.encode(text)) == text

    def test_round_trip_multibyte(self, adapter):
        text = "naïve café ✓"
        assert adapter.decode(adapter.encode(text)) == text

    def test_decode_skips_special_tokens(self, adapter):
        ids = adapter.encode("ok") + [EOS_ID]
        assert adapter.decode(ids) == "ok"

    def test_empty_text_is_just_bos(self, adapter):
        assert adapter.encode("") == [BOS_ID]

    def test_encode_rejects_non_string(self, adapter):
        with pytest.raises(TokenizerError):
            adapter.encode(b"bytes")

    def test_decode_rejects_out_of_range_ids(self, adapter):
        with pytest.raises(TokenizerError):
            adapter.decode([adapter.vocab_size])
        with pytest.raises(TokenizerError):
            adapter.decode([-1])

    def test_decode_rejects_non_int_ids(self, adapter):
        with pytest.raises(TokenizerError):
            adapter.decode([1.0])


class TestSpecialTokenPolicy:
    """BOS/EOS resolution from model metadata."""

    def test_ids_from_config(self, adapter):
        assert adapter.bos_token_id == BOS_ID
        assert adapter.eos_token_id == EOS_ID
        assert adapter.bos_token == "<s>"
        assert adapter.eos_token == "</s>"
        assert adapter.stop_token_ids == frozenset({EOS_ID})
        assert adapter.is_stop_token(EOS_ID)
        assert not adapter.is_stop_token(BOS_ID)

    def test_add_bos_false_is_honored(self, tmp_path):
        build_tiny_tokenizer().save(str(tmp_path / "tokenizer.json"))
        (tmp_path / "tokenizer_config.json").write_text(json.dumps({"add_bos_token": False}))
        adapter = TokenizerAdapter.from_model_dir(tmp_path, TINY_HF_CONFIG)
        assert BOS_ID not in adapter.encode("Hi")

    def test_ids_fall_back_to_tokenizer_config_strings(self, tmp_path):
        build_tiny_tokenizer().save(str(tmp_path / "tokenizer.json"))
        (tmp_path / "tokenizer_config.json").write_text(json.dumps({
            "bos_token": {"content": "<s>", "special": True},
            "eos_token": "</s>",
        }))
        adapter = TokenizerAdapter.from_model_dir(tmp_path, {})
        assert adapter.bos_token_id == BOS_ID
        assert adapter.eos_token_id == EOS_ID

    def test_generation_config_adds_stop_ids(self, tmp_path):
        build_tiny_tokenizer().save(str(tmp_path / "tokenizer.json"))
        (tmp_path / "generation_config.json").write_text(json.dumps({"eos_token_id": [EOS_ID, 40, 41]}))
        adapter = TokenizerAdapter.from_model_dir(tmp_path, TINY_HF_CONFIG)
        assert adapter.stop_token_ids == frozenset({EOS_ID, 40, 41})

    def test_llama3_end_of_text_also_stops_on_eot(self):
        vocab = {"[UNK]": 0, "<|end_of_text|>": 128001, "<|eot_id|>": 128009}
        tokenizer = Tokenizer(models.WordLevel(vocab, unk_token="[UNK]"))
        adapter = TokenizerAdapter(tokenizer, eos_token_id=128001)
        assert adapter.stop_token_ids == frozenset({128001, 128009})

    def test_missing_tokenizer_json(self, tmp_path):
        with pytest.raises(TokenizerError):
            TokenizerAdapter.from_model_dir(tmp_path, TINY_HF_CONFIG)

    def test_corrupt_tokenizer_json(self, tmp_path):
        (tmp_path / "tokenizer.json").write_text("{not json")
        with pytest.raises(TokenizerError):
            TokenizerAdapter.from_model_dir(tmp_path, TINY_HF_CONFIG)


# =============================================================================
# GGUF Vocabularies
# =============================================================================


class TestGGUFTokenizer:
    """Tokenizers rebuilt from tokenizer.ggml.* metadata."""

    def test_bpe_matches_tokenizer_json(self, adapter):
        gguf = TokenizerAdapter.from_gguf_metadata(_bpe_metadata(**{"tokenizer.ggml.add_bos_token": True}))
        text = "Byte-level BPE, même en français."
        assert gguf.encode(text) == adapter.encode(text)
        assert gguf.decode(gguf.encode(text)) == text

    def test_bpe_defaults_to_no_bos(self):
        gguf = TokenizerAdapter.from_gguf_metadata(_bpe_metadata())
        assert BOS_ID not in gguf.encode("Hi")

    def test_bpe_merges_apply(self):
        tokens = list(TOKENS) + ["Hi"]
        metadata = _bpe_metadata(**{
            "tokenizer.ggml.tokens": tokens,
            "tokenizer.ggml.token_type": [3, 3] + [1] * (len(tokens) - 2),
            "tokenizer.ggml.merges": ["H i"],
        })
        gguf = TokenizerAdapter.from_gguf_metadata(metadata)
        assert gguf.encode("Hi") == [len(tokens) - 1]

    def test_malformed_merge_raises(self):
        with pytest.raises(TokenizerError):
            TokenizerAdapter.from_gguf_metadata(_bpe_metadata(**{"tokenizer.ggml.merges": ["nospace"]}))

    def test_eot_token_is_a_stop_token(self):
        gguf = TokenizerAdapter.from_gguf_metadata(_bpe_metadata(**{"tokenizer.ggml.eot_token_id": 5}))
        assert gguf.stop_token_ids == frozenset({EOS_ID, 5})

    def test_sentencepiece_pieces(self):
        gguf = TokenizerAdapter.from_gguf_metadata(_spm_metadata())
        tokens = _spm_metadata()["tokenizer.ggml.tokens"]
        ids = gguf.encode("hello world")
        assert ids == [1, tokens.index("▁hello"), tokens.index("▁world")]
        assert gguf.decode(ids) == "hello world"

    def test_merged_piece_wins_over_higher_scoring_parts(self):
        gguf = TokenizerAdapter.from_gguf_metadata(_spm_metadata(**{"tokenizer.ggml.add_bos_token": False}))
        pieces = [gguf.id_to_token(i) for i in gguf.encode("hello")]
        assert pieces == ["▁hello"]

    def test_partial_merges(self):
        gguf = TokenizerAdapter.from_gguf_metadata(_spm_metadata(**{"tokenizer.ggml.add_bos_token": False}))
        pieces = [gguf.id_to_token(i) for i in gguf.encode("hell")]
        assert pieces == ["▁he", "ll"]

    def test_merges_from_scores(self):
        metadata = _spm_metadata()
        merges = spm_merges(
            metadata["tokenizer.ggml.tokens"],
            metadata["tokenizer.ggml.scores"],
            metadata["tokenizer.ggml.token_type"],
        )
        assert merges[:5] == [("▁", "h"), ("l", "l"), ("▁h", "e"), ("ll", "o"), ("▁", "w")]
        assert ("▁he", "llo") in merges
        assert merges.index(("▁wor", "ld")) == len(merges) - 1
        # Control and byte pieces never produce merges
        assert not any(left == "<" for left, _ in merges)

    def test_sentencepiece_byte_fallback(self):
        gguf = TokenizerAdapter.from_gguf_metadata(_spm_metadata())
        ids = gguf.encode("Hé")
        assert gguf.decode(ids) == "Hé"

    def test_unsupported_model(self):
        with pytest.raises(TokenizerError):
            TokenizerAdapter.from_gguf_metadata(_bpe_metadata(**{"tokenizer.ggml.model": "bert"}))

    def test_missing_tokens(self):
        with pytest.raises(TokenizerError):
            TokenizerAdapter.from_gguf_metadata({"tokenizer.ggml.model": "gpt2"})
