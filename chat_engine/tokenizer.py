"""
Tokenizer collaborators for the engine.

The engine only needs four things from a tokenizer: encode a prompt, decode
an id history, turn a single id into a display fragment, and know the
special ids. Two backends provide them:

  SentencePieceTokenizer  `.model` files (sentencepiece)
  HFTokenizer             `tokenizer.json` files (Hugging Face tokenizers)

load_tokenizer() picks the backend from the file suffix.

SINGLE-TOKEN FRAGMENTS:
  Decoding one id in isolation loses the leading space SentencePiece encodes
  as "▁", and byte-fallback ids decode to nothing on their own. token_text()
  therefore works on the raw piece instead:
    "▁Once"  -> " Once"
    "<0x0A>" -> "\n"      (printable ASCII and whitespace bytes only)
    "<0xE2>" -> ""        (a lone byte of a multi-byte character)
  Concatenated fragments can differ from decode(all_ids) for non-ASCII
  text; the terminal generated_text always comes from decode().

Both backends are treated as pure and stateless by the engine. Any backend
failure is re-raised as TokenizerError.
"""

import logging
import os
from typing import Optional

import sentencepiece as spm
from tokenizers import Tokenizer as HFBackend

from chat_engine.errors import TokenizerError

logger = logging.getLogger(__name__)


def piece_to_text(piece: Optional[str]) -> str:
    """Display text for one vocabulary piece (see module docstring)."""
    if piece is None:
        return ""
    text = piece.replace("▁", " ")
    if text.startswith("<0x") and text.endswith(">") and len(text) == 6:
        try:
            byte = int(text[3:5], 16)
        except ValueError:
            return text
        if byte < 0x80:
            return chr(byte)
        return ""
    return text


class SentencePieceTokenizer:
    """
    Wrapper around a SentencePiece model.

    TOKEN ID LAYOUT (llama convention):
      0 <unk>, 1 <s> (BOS), 2 </s> (EOS), then byte and BPE pieces.
    """

    def __init__(self, model_path: str):
        """
        Raises:
            FileNotFoundError: If the model file doesn't exist.
            TokenizerError: If sentencepiece cannot load it.
        """
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Tokenizer model not found: {model_path}")
        self._sp = spm.SentencePieceProcessor()
        try:
            self._sp.Load(model_path)
        except (OSError, RuntimeError) as e:
            raise TokenizerError(f"cannot load {model_path}: {e}") from e

    def encode(self, text: str, bos: bool = True, eos: bool = False) -> list[int]:
        try:
            tokens = self._sp.Encode(text)
        except (RuntimeError, TypeError) as e:
            raise TokenizerError(str(e)) from e
        if bos and self.bos_id is not None:
            tokens = [self.bos_id] + tokens
        if eos and self.eos_id is not None:
            tokens = tokens + [self.eos_id]
        return tokens

    def decode(self, tokens: list[int]) -> str:
        try:
            return self._sp.Decode(list(tokens))
        except (RuntimeError, IndexError, TypeError) as e:
            raise TokenizerError(str(e)) from e

    def id_to_piece(self, token_id: int) -> Optional[str]:
        if not 0 <= token_id < self.vocab_size:
            return None
        return self._sp.IdToPiece(token_id)

    def token_text(self, token_id: int) -> str:
        return piece_to_text(self.id_to_piece(token_id))

    @property
    def vocab_size(self) -> int:
        return self._sp.GetPieceSize()

    @property
    def bos_id(self) -> Optional[int]:
        bos = self._sp.bos_id()
        return bos if bos >= 0 else None

    @property
    def eos_id(self) -> Optional[int]:
        eos = self._sp.eos_id()
        return eos if eos >= 0 else None

    def __len__(self) -> int:
        return self.vocab_size


class HFTokenizer:
    """
    Wrapper around a Hugging Face `tokenizers.Tokenizer`.

    Special tokens are looked up by their usual surface forms; a model that
    uses other names can pass them explicitly.

    Fragments: vocabularies in the SentencePiece style ("▁" word marker,
    "<0xNN>" byte fallback) go through piece_to_text(). Byte-level BPE
    vocabularies (GPT-2 style "Ġ" pieces, used by phi) decode the single id
    instead.
    """

    def __init__(
        self,
        backend: HFBackend,
        bos_token: Optional[str] = None,
        eos_token: Optional[str] = None,
    ):
        self._tok = backend
        self._bos_id = self._lookup(bos_token, ("<s>", "<|startoftext|>", "<bos>"))
        self._eos_id = self._lookup(eos_token, ("</s>", "<|endoftext|>", "<eos>"))
        self._piece_fragments = (
            backend.token_to_id("▁") is not None
            or backend.token_to_id("<0x0A>") is not None
        )

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "HFTokenizer":
        if not os.path.exists(path):
            raise FileNotFoundError(f"Tokenizer file not found: {path}")
        try:
            backend = HFBackend.from_file(path)
        except Exception as e:  # tokenizers raises a bare Exception on bad JSON
            raise TokenizerError(f"cannot load {path}: {e}") from e
        return cls(backend, **kwargs)

    def _lookup(self, explicit: Optional[str], candidates: tuple) -> Optional[int]:
        for token in ((explicit,) if explicit else candidates):
            token_id = self._tok.token_to_id(token)
            if token_id is not None:
                return token_id
        return None

    def encode(self, text: str, bos: bool = True, eos: bool = False) -> list[int]:
        try:
            tokens = self._tok.encode(text, add_special_tokens=False).ids
        except Exception as e:
            raise TokenizerError(str(e)) from e
        if bos and self._bos_id is not None:
            tokens = [self._bos_id] + tokens
        if eos and self._eos_id is not None:
            tokens = tokens + [self._eos_id]
        return tokens

    def decode(self, tokens: list[int]) -> str:
        try:
            return self._tok.decode(list(tokens), skip_special_tokens=True)
        except Exception as e:
            raise TokenizerError(str(e)) from e

    def id_to_piece(self, token_id: int) -> Optional[str]:
        return self._tok.id_to_token(token_id)

    def token_text(self, token_id: int) -> str:
        if self._piece_fragments:
            return piece_to_text(self.id_to_piece(token_id))
        return self.decode([token_id])

    @property
    def vocab_size(self) -> int:
        return self._tok.get_vocab_size(with_added_tokens=True)

    @property
    def bos_id(self) -> Optional[int]:
        return self._bos_id

    @property
    def eos_id(self) -> Optional[int]:
        return self._eos_id

    def __len__(self) -> int:
        return self.vocab_size


def load_tokenizer(path: str):
    """Open a tokenizer file with the backend its suffix implies."""
    if path.endswith(".json"):
        tokenizer = HFTokenizer.from_file(path)
    elif path.endswith((".model", ".spm")):
        tokenizer = SentencePieceTokenizer(path)
    else:
        raise TokenizerError(f"unrecognized tokenizer file {path}")
    logger.info("Tokenizer loaded: %s (%d tokens)", path, tokenizer.vocab_size)
    return tokenizer
