"""
vllm-ggml :: Tokenizer

Text ↔ token id conversion for GGML checkpoints. Three variants:

  VocabTokenizer    — closed vocabulary from the checkpoint (MPT family).
                      Detokenize is a plain lookup; tokenize is the shared
                      GPT-style word split + greedy longest match.
  UnigramTokenizer  — piece table with scores (Replit family). Tokenize is a
                      Viterbi segmentation over UTF-8 bytes.
  HFTokenizer       — HuggingFace `tokenizers` file, used for text → ids
                      when a tokenizer.json ships next to the checkpoint.

Vocabulary packing (MPT family): each token is UTF-8 decoded and every
code point is stored as ONE byte (cp & 0xFF). Code points above 255 lose
their high bits. Byte-level BPE vocabularies store one byte per code point,
so their entries survive the packing unchanged.

INL - 2025
"""

import os
import re
from typing import Dict, List, Optional, Tuple

from vllm_ggml.core.errors import InvalidFormatError
from vllm_ggml.core.logging import get_logger

logger = get_logger("vllm_ggml.tokenizer")


WS_SYMBOL = "▁"                      # "▁"
WS_SYMBOL_BYTES = WS_SYMBOL.encode("utf-8")  # b"\xe2\x96\x81"
UNKNOWN_TOKEN_ID = 0

# GPT-2 pre-tokenizer, ASCII character classes
_GPT_WORD_PATTERN = re.compile(
    r"'s|'t|'re|'ve|'m|'ll|'d| ?[A-Za-z]+| ?[0-9]+| ?[^\sA-Za-z0-9]+|\s+(?!\S)|\s+",
    re.ASCII,
)


def pack_codepoints(raw: bytes) -> str:
    """UTF-8 bytes → string with one char (0..255) per decoded code point."""
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidFormatError(f"vocab entry is not valid UTF-8: {raw!r}") from e
    return "".join(chr(ord(c) & 0xFF) for c in text)


# =========================================================================
# Vocabulary (MPT family)
# =========================================================================

class Vocab:
    """Bidirectional id ↔ token mapping, ids assigned in file order."""

    def __init__(self):
        self.token_to_id: Dict[str, int] = {}
        self.id_to_token: Dict[int, str] = {}

    def add(self, token: str):
        token_id = len(self.id_to_token)
        self.token_to_id[token] = token_id
        self.id_to_token[token_id] = token

    def __len__(self) -> int:
        return len(self.id_to_token)


def read_vocab(reader, n_vocab: int) -> Vocab:
    """Vocab block: n_vocab × (u32 len, bytes), code-point packed."""
    vocab = Vocab()
    for _ in range(n_vocab):
        length = reader.read_u32()
        vocab.add(pack_codepoints(reader.read_exact(length)))
    return vocab


class VocabTokenizer:
    """
    Closed-vocabulary tokenizer.

    Input:  text (str)
    Output: token IDs (List[int])

    Matching happens on the UTF-8 bytes of the text, the same alphabet the
    packed vocabulary uses.
    """

    def __init__(self, vocab: Vocab):
        self.vocab = vocab
        self._max_token_len = max((len(t) for t in vocab.token_to_id), default=0)

    def tokenize(self, text: str) -> List[int]:
        """Split into GPT-2 words, then greedy longest match per word."""
        packed = text.encode("utf-8").decode("latin-1")
        tokens = []
        for word in _GPT_WORD_PATTERN.findall(packed):
            i = 0
            while i < len(word):
                j = min(len(word), i + self._max_token_len)
                while j > i:
                    token_id = self.vocab.token_to_id.get(word[i:j])
                    if token_id is not None:
                        tokens.append(token_id)
                        i = j
                        break
                    j -= 1
                else:
                    logger.debug(f"unknown token {word[i]!r}")
                    i += 1
        return tokens

    def detokenize(self, token_id: int) -> str:
        """Stored token, or "" for an id outside the vocabulary."""
        return self.vocab.id_to_token.get(token_id, "")

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)


# =========================================================================
# Unigram segmentation (Replit family)
# =========================================================================

def read_unigram_vocab(reader, n_vocab: int) -> "UnigramTokenizer":
    """Vocab block: n_vocab × (u32 len, bytes, f32 score). Scores are negated."""
    pieces: Dict[bytes, Tuple[int, float]] = {}
    id_to_token: Dict[int, bytes] = {}
    for i in range(n_vocab):
        length = reader.read_u32()
        word = reader.read_exact(length)
        score = reader.read_f32()
        pieces[word] = (i, -score)
        id_to_token[i] = word
    return UnigramTokenizer(pieces, id_to_token)


class UnigramTokenizer:
    """
    Viterbi segmentation into known pieces.

    pieces:       piece bytes → (id, negated score)
    id_to_token:  id → piece bytes

    Spaces are replaced by "▁" before segmentation and restored on
    detokenize.
    """

    def __init__(
        self,
        pieces: Dict[bytes, Tuple[int, float]],
        id_to_token: Dict[int, bytes],
        unknown_id: int = UNKNOWN_TOKEN_ID,
    ):
        self.pieces = pieces
        self.id_to_token = id_to_token
        self.unknown_id = unknown_id
        self._max_piece_len = max((len(p) for p in pieces), default=0)

    def encode_word(self, word: bytes) -> Tuple[List[int], float]:
        """
        Best segmentation of `word` and its total score.

        Stored scores are negated log-probs, so the best path is the one with
        the smallest total; the first path found wins ties. If the end of the
        word cannot be reached, returns ([unknown_id], 0.0).
        """
        n = len(word)
        if n == 0:
            return [], 0.0
        unreached = float("-inf")
        best_starts = [-1] * (n + 1)
        best_scores = [unreached] * (n + 1)
        best_starts[0] = 0
        best_scores[0] = 1.0

        for start in range(n):
            score_at_start = best_scores[start]
            if score_at_start == unreached:
                continue
            for end in range(start + 1, min(n, start + self._max_piece_len) + 1):
                piece = self.pieces.get(word[start:end])
                if piece is None:
                    continue
                score = piece[1] + score_at_start
                if best_scores[end] == unreached or best_scores[end] > score:
                    best_starts[end] = start
                    best_scores[end] = score

        if best_scores[n] == unreached:
            return [self.unknown_id], 0.0

        tokens = []
        end = n
        start = best_starts[n]
        while start != 0:
            tokens.append(self.pieces[word[start:end]][0])
            end, start = start, best_starts[start]
        tokens.append(self.pieces[word[start:end]][0])
        tokens.reverse()
        return tokens, best_scores[n]

    def tokenize(self, text: str) -> List[int]:
        if not text:
            return []
        normalized = text.replace(" ", WS_SYMBOL).encode("utf-8")
        tokens, _ = self.encode_word(normalized)
        return tokens

    def detokenize_bytes(self, token_id: int) -> bytes:
        """Stored piece bytes with "▁" turned back into spaces, b"" for unknown ids."""
        piece = self.id_to_token.get(token_id)
        if piece is None:
            return b""
        return piece.replace(WS_SYMBOL_BYTES, b" ")

    def detokenize(self, token_id: int) -> str:
        """
        Single piece as text.

        A piece may hold part of a multi-byte character; join
        detokenize_bytes over the sequence before decoding to keep it.
        """
        return self.detokenize_bytes(token_id).decode("utf-8", errors="replace")

    def decode(self, token_ids) -> str:
        """Sequence of ids as text, decoded once over the joined bytes."""
        return b"".join(self.detokenize_bytes(t) for t in token_ids).decode("utf-8", errors="replace")

    @property
    def vocab_size(self) -> int:
        return len(self.id_to_token)


# =========================================================================
# HuggingFace tokenizer file
# =========================================================================

class HFTokenizer:
    """
    Tokenizer wrapper for a tokenizer.json.

    Uses tokenizers library (HuggingFace fast tokenizer) for text → ids.
    Detokenize stays on the checkpoint vocabulary so ids always map to the
    strings the model was converted with.
    """

    def __init__(self, tokenizer_path: str, fallback: Optional[VocabTokenizer] = None):
        from tokenizers import Tokenizer

        self.tokenizer = Tokenizer.from_file(tokenizer_path)
        self.fallback = fallback

    def tokenize(self, text: str) -> List[int]:
        return self.tokenizer.encode(text, add_special_tokens=False).ids

    def detokenize(self, token_id: int) -> str:
        if self.fallback is not None:
            return self.fallback.detokenize(token_id)
        token = self.tokenizer.id_to_token(token_id)
        return token if token is not None else ""

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()


def find_tokenizer_file(model_path: str) -> Optional[str]:
    """Look for tokenizer.json next to a checkpoint file."""
    candidate = os.path.join(os.path.dirname(os.path.abspath(model_path)), "tokenizer.json")
    if os.path.exists(candidate):
        return candidate
    return None
