"""
Tokenizer Adapter

Thin wrapper over a Hugging Face `tokenizers.Tokenizer` that applies the
model's own BOS/EOS declarations:

- BOS/EOS ids and strings come from model metadata (config.json,
  tokenizer_config.json, generation_config.json, or GGUF tokenizer.ggml.*)
- add_bos_token is honored when declared; otherwise the tokenizer's
  post-processor decides
- a duplicated leading BOS (chat template already emitted one) is collapsed
- decoding skips special tokens

GGUF files carry the vocabulary in metadata instead of a tokenizer.json; the
two tokenizer models seen in practice are rebuilt here:

    gpt2   byte-level BPE from tokens + merges (Llama 3, Qwen2)
    llama  SentencePiece BPE, merges recovered from piece scores, byte fallback
           (Llama 2, Mistral, Phi3)
"""

from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple
import json
import logging

from tokenizers import AddedToken, Regex, Tokenizer, decoders, models, normalizers, pre_tokenizers

from ..errors import TokenizerError

logger = logging.getLogger(__name__)

# Llama 3 declares <|end_of_text|> as EOS but chat turns end with <|eot_id|>
LLAMA3_END_OF_TEXT_ID = 128001
LLAMA3_EOT_TOKEN = "<|eot_id|>"

# GGUF tokenizer.ggml.token_type values
TOKEN_TYPE_NORMAL = 1
TOKEN_TYPE_UNKNOWN = 2
TOKEN_TYPE_CONTROL = 3
TOKEN_TYPE_USER_DEFINED = 4
TOKEN_TYPE_BYTE = 6

# Pre-tokenizer split patterns keyed by GGUF tokenizer.ggml.pre
LLAMA3_SPLIT_PATTERN = (
    r"(?i:'s|'t|'re|'ve|'m|'ll|'d)|[^\r\n\p{L}\p{N}]?\p{L}+|\p{N}{1,3}"
    r"| ?[^\s\p{L}\p{N}]+[\r\n]*|\s*[\r\n]+|\s+(?!\S)|\s+"
)
QWEN2_SPLIT_PATTERN = (
    r"(?i:'s|'t|'re|'ve|'m|'ll|'d)|[^\r\n\p{L}\p{N}]?\p{L}+|\p{N}"
    r"| ?[^\s\p{L}\p{N}]+[\r\n]*|\s*[\r\n]+|\s+(?!\S)|\s+"
)
SPLIT_PATTERNS = {
    "llama-bpe": LLAMA3_SPLIT_PATTERN,
    "llama3": LLAMA3_SPLIT_PATTERN,
    "qwen2": QWEN2_SPLIT_PATTERN,
}

SPIECE_UNDERLINE = "▁"


def _token_content(value: Any) -> Optional[str]:
    """tokenizer_config.json stores special tokens as str or as a serialized AddedToken."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("content")
    return None


def _first_id(value: Any) -> Optional[int]:
    if isinstance(value, list):
        return int(value[0]) if value else None
    return None if value is None else int(value)


def _all_ids(value: Any) -> List[int]:
    if value is None:
        return []
    if isinstance(value, list):
        return [int(v) for v in value]
    return [int(value)]


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise TokenizerError(f"Failed to read {path.name}: {e}") from e


class TokenizerAdapter:
    """Encode/decode with model-declared special-token policy."""

    def __init__(
        self,
        tokenizer: Tokenizer,
        bos_token_id: Optional[int] = None,
        eos_token_id: Optional[int] = None,
        add_bos: Optional[bool] = None,
        extra_stop_ids: Iterable[int] = (),
    ):
        self.tokenizer = tokenizer
        self.vocab_size = tokenizer.get_vocab_size(with_added_tokens=True)
        self.bos_token_id = bos_token_id
        self.eos_token_id = eos_token_id
        self.add_bos = add_bos

        stop_ids = set(int(i) for i in extra_stop_ids)
        if eos_token_id is not None:
            stop_ids.add(eos_token_id)
            if eos_token_id == LLAMA3_END_OF_TEXT_ID:
                eot_id = tokenizer.token_to_id(LLAMA3_EOT_TOKEN)
                if eot_id is not None:
                    logger.debug(f"Llama 3 EOS: also stopping on {LLAMA3_EOT_TOKEN} ({eot_id})")
                    stop_ids.add(eot_id)
        self.stop_token_ids: FrozenSet[int] = frozenset(stop_ids)

    @property
    def bos_token(self) -> Optional[str]:
        return None if self.bos_token_id is None else self.tokenizer.id_to_token(self.bos_token_id)

    @property
    def eos_token(self) -> Optional[str]:
        return None if self.eos_token_id is None else self.tokenizer.id_to_token(self.eos_token_id)

    def token_to_id(self, token: str) -> Optional[int]:
        return self.tokenizer.token_to_id(token)

    def id_to_token(self, token_id: int) -> Optional[str]:
        return self.tokenizer.id_to_token(token_id)

    def encode(self, text: str) -> List[int]:
        if not isinstance(text, str):
            raise TokenizerError(f"encode() expects str, got {type(text).__name__}")

        try:
            if self.add_bos is None:
                ids = self.tokenizer.encode(text, add_special_tokens=True).ids
            else:
                ids = self.tokenizer.encode(text, add_special_tokens=False).ids
                if self.add_bos and self.bos_token_id is not None:
                    ids = [self.bos_token_id] + ids
        except Exception as e:
            raise TokenizerError(f"Tokenizer failed to encode input: {e}") from e

        bos = self.bos_token_id
        if bos is not None and len(ids) >= 2 and ids[0] == bos and ids[1] == bos:
            ids = ids[1:]
        return ids

    def decode(self, ids: Sequence[int]) -> str:
        ids = list(ids)
        for token_id in ids:
            if isinstance(token_id, bool) or not isinstance(token_id, int):
                raise TokenizerError(f"Token ids must be int, got {type(token_id).__name__}")
            if not 0 <= token_id < self.vocab_size:
                raise TokenizerError(f"Token id {token_id} outside vocabulary of size {self.vocab_size}")
        return self.tokenizer.decode(ids, skip_special_tokens=True)

    def is_stop_token(self, token_id: int) -> bool:
        return token_id in self.stop_token_ids

    # =========================================================================
    # Construction from model files
    # =========================================================================

    @classmethod
    def from_model_dir(cls, model_dir: Path, model_config: Dict[str, Any]) -> "TokenizerAdapter":
        """
        Build from tokenizer.json plus the model's JSON metadata.

        Args:
            model_dir: Directory holding tokenizer.json (required), and optionally
                tokenizer_config.json and generation_config.json
            model_config: Parsed config.json
        """
        model_dir = Path(model_dir)
        tokenizer_path = model_dir / "tokenizer.json"
        if not tokenizer_path.is_file():
            raise TokenizerError(f"tokenizer.json not found in {model_dir}")
        try:
            tokenizer = Tokenizer.from_file(str(tokenizer_path))
        except Exception as e:
            raise TokenizerError(f"Failed to parse {tokenizer_path}: {e}") from e

        tokenizer_config = _read_json(model_dir / "tokenizer_config.json")
        generation_config = _read_json(model_dir / "generation_config.json")

        def resolve(key: str) -> Optional[int]:
            token_id = _first_id(model_config.get(f"{key}_id"))
            if token_id is None:
                token_id = _first_id(generation_config.get(f"{key}_id"))
            if token_id is None:
                content = _token_content(tokenizer_config.get(key))
                if content is not None:
                    token_id = tokenizer.token_to_id(content)
            return token_id

        bos_id = resolve("bos_token")
        eos_id = resolve("eos_token")

        extra = _all_ids(model_config.get("eos_token_id")) + _all_ids(generation_config.get("eos_token_id"))
        add_bos = tokenizer_config.get("add_bos_token")

        logger.info(
            f"Tokenizer: vocab={tokenizer.get_vocab_size(with_added_tokens=True)}, "
            f"bos={bos_id}, eos={eos_id}, add_bos={add_bos}"
        )
        return cls(tokenizer, bos_token_id=bos_id, eos_token_id=eos_id,
                   add_bos=add_bos, extra_stop_ids=extra)

    @classmethod
    def from_gguf_metadata(cls, metadata: Dict[str, Any]) -> "TokenizerAdapter":
        """Rebuild the tokenizer from GGUF tokenizer.ggml.* metadata."""
        tokenizer_model = metadata.get("tokenizer.ggml.model")
        tokens = metadata.get("tokenizer.ggml.tokens")
        if not tokens:
            raise TokenizerError("GGUF file has no tokenizer.ggml.tokens")

        if tokenizer_model == "gpt2":
            tokenizer = _build_bpe_tokenizer(metadata)
            default_add_bos = False
        elif tokenizer_model == "llama":
            tokenizer = _build_spm_tokenizer(metadata)
            default_add_bos = True
        else:
            raise TokenizerError(f"Unsupported GGUF tokenizer model: {tokenizer_model!r}")

        add_bos = metadata.get("tokenizer.ggml.add_bos_token", default_add_bos)
        bos_id = metadata.get("tokenizer.ggml.bos_token_id")
        eos_id = metadata.get("tokenizer.ggml.eos_token_id")
        extra = []
        eot_id = metadata.get("tokenizer.ggml.eot_token_id")
        if eot_id is not None:
            extra.append(eot_id)

        logger.info(
            f"GGUF tokenizer ({tokenizer_model}): {len(tokens)} tokens, "
            f"bos={bos_id}, eos={eos_id}, add_bos={add_bos}"
        )
        return cls(tokenizer, bos_token_id=bos_id, eos_token_id=eos_id,
                   add_bos=bool(add_bos), extra_stop_ids=extra)


def _special_tokens(tokens: List[str], token_types: Optional[List[int]]) -> List[AddedToken]:
    if not token_types:
        return []
    return [
        AddedToken(tok, special=True, normalized=False)
        for tok, kind in zip(tokens, token_types)
        if kind == TOKEN_TYPE_CONTROL
    ]


def _build_bpe_tokenizer(metadata: Dict[str, Any]) -> Tokenizer:
    tokens = metadata["tokenizer.ggml.tokens"]
    merges = metadata.get("tokenizer.ggml.merges") or []
    pre = metadata.get("tokenizer.ggml.pre", "default")

    vocab = {tok: i for i, tok in enumerate(tokens)}
    pairs = []
    for merge in merges:
        left, sep, right = merge.partition(" ")
        if not sep:
            raise TokenizerError(f"Malformed BPE merge entry: {merge!r}")
        pairs.append((left, right))

    try:
        tokenizer = Tokenizer(models.BPE(vocab=vocab, merges=pairs, ignore_merges=pre in SPLIT_PATTERNS))
    except Exception as e:
        raise TokenizerError(f"Failed to build BPE tokenizer from GGUF metadata: {e}") from e

    pattern = SPLIT_PATTERNS.get(pre)
    if pattern is not None:
        tokenizer.pre_tokenizer = pre_tokenizers.Sequence([
            pre_tokenizers.Split(Regex(pattern), behavior="isolated", invert=False),
            pre_tokenizers.ByteLevel(add_prefix_space=False, use_regex=False),
        ])
    else:
        tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()

    specials = _special_tokens(tokens, metadata.get("tokenizer.ggml.token_type"))
    if specials:
        tokenizer.add_special_tokens(specials)
    return tokenizer


def spm_merges(
    tokens: List[str],
    scores: List[float],
    token_types: Optional[List[int]] = None,
) -> List[Tuple[str, str]]:
    """
    Recover BPE merges from a SentencePiece-BPE vocabulary.

    SentencePiece stores merge priority as the score of the merged piece,
    so every split of a piece into two vocabulary pieces is a merge ranked
    by that score (higher first). Control, byte and unknown pieces are never
    merge results.
    """
    vocab = {tok: i for i, tok in enumerate(tokens)}
    skip = {TOKEN_TYPE_CONTROL, TOKEN_TYPE_BYTE, TOKEN_TYPE_UNKNOWN}

    ranked = []
    for i, (piece, score) in enumerate(zip(tokens, scores)):
        if token_types and token_types[i] in skip:
            continue
        local = [
            (piece[:k], piece[k:], float(score))
            for k in range(1, len(piece))
            if piece[:k] in vocab and piece[k:] in vocab
        ]
        local.sort(key=lambda m: (vocab[m[0]], vocab[m[1]]))
        ranked.extend(local)

    ranked.sort(key=lambda m: (m[2], len(m[0]), len(m[1])), reverse=True)
    return [(left, right) for left, right, _ in ranked]


def _build_spm_tokenizer(metadata: Dict[str, Any]) -> Tokenizer:
    tokens = metadata["tokenizer.ggml.tokens"]
    scores = metadata.get("tokenizer.ggml.scores") or [0.0] * len(tokens)
    if len(scores) != len(tokens):
        raise TokenizerError(f"GGUF tokenizer has {len(tokens)} tokens but {len(scores)} scores")
    token_types = metadata.get("tokenizer.ggml.token_type")
    unk_id = metadata.get("tokenizer.ggml.unknown_token_id", 0)
    if not 0 <= unk_id < len(tokens):
        raise TokenizerError(f"GGUF unknown_token_id {unk_id} is outside the vocabulary")

    vocab = {tok: i for i, tok in enumerate(tokens)}
    merges = spm_merges(tokens, scores, token_types)
    logger.debug(f"Recovered {len(merges)} merges from SentencePiece scores")

    try:
        tokenizer = Tokenizer(models.BPE(
            vocab=vocab,
            merges=merges,
            unk_token=tokens[unk_id],
            fuse_unk=True,
            byte_fallback=True,
        ))
    except Exception as e:
        raise TokenizerError(f"Failed to build SentencePiece tokenizer from GGUF metadata: {e}") from e

    tokenizer.normalizer = normalizers.Sequence([
        normalizers.Prepend(SPIECE_UNDERLINE),
        normalizers.Replace(" ", SPIECE_UNDERLINE),
    ])
    tokenizer.decoder = decoders.Sequence([
        decoders.Replace(SPIECE_UNDERLINE, " "),
        decoders.ByteFallback(),
        decoders.Fuse(),
        decoders.Strip(" ", 1, 0),
    ])

    specials = _special_tokens(tokens, metadata.get("tokenizer.ggml.token_type"))
    if specials:
        tokenizer.add_special_tokens(specials)
    return tokenizer
