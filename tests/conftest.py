"""Fakes for the tokenizer, the generation engine and a tiny causal LM."""
from __future__ import annotations

import io
import re
from types import SimpleNamespace

import pytest
import torch

from session import EOS_ID, DecodeError, EncodeError

SPECIALS = {"<start_of_turn>": 106, "<end_of_turn>": 107}
CHAR_OFFSET = 1000


class FakeTokenizer:
    """Control markers map to fixed ids, every other character to 1000 + ord(c).

    `pieces` overrides decoding for chosen ids, `bad_ids` fail to decode and
    any text containing `reject` fails to encode.
    """

    def __init__(self, pieces=None, bad_ids=(), reject="\x00"):
        self.pieces = dict(pieces or {})
        self.bad_ids = set(bad_ids)
        self.reject = reject
        self.encoded: list[str] = []
        self._id_to_special = {v: k for k, v in SPECIALS.items()}

    def encode(self, text: str) -> list[int]:
        if self.reject and self.reject in text:
            raise EncodeError(f"cannot encode {text!r}")
        self.encoded.append(text)
        ids = []
        for part in re.split(r"(<start_of_turn>|<end_of_turn>)", text):
            if part in SPECIALS:
                ids.append(SPECIALS[part])
            else:
                ids.extend(CHAR_OFFSET + ord(c) for c in part)
        return ids

    def decode(self, token_ids: list[int]) -> str:
        out = []
        for tid in token_ids:
            if tid in self.bad_ids:
                raise DecodeError(f"cannot decode {tid}")
            if tid in self.pieces:
                out.append(self.pieces[tid])
            elif tid in self._id_to_special:
                out.append(self._id_to_special[tid])
            elif tid >= CHAR_OFFSET:
                out.append(chr(tid - CHAR_OFFSET))
            else:
                out.append("")
        return "".join(out)


class ScriptedEngine:
    """Replays the prompt through the callback, then emits scripted replies.

    Each generate() call consumes the next reply from `replies`; a reply
    stops early when the callback returns False or at EOS.
    """

    def __init__(self, replies=()):
        self.replies = [list(r) for r in replies]
        self.calls: list[SimpleNamespace] = []

    def generate(self, config, token_ids, start_position, stream_token, accept_token, rng, verbosity=0):
        call = SimpleNamespace(token_ids=list(token_ids), start_position=start_position, streamed=[])
        self.calls.append(call)
        for tid in token_ids:
            stream_token(tid, 0.0)
            call.streamed.append(tid)
        reply = self.replies.pop(0) if self.replies else [EOS_ID]
        for tid in reply:
            keep_going = stream_token(tid, 0.0)
            call.streamed.append(tid)
            if not keep_going or tid == EOS_ID:
                break


class FakeCache:
    def __init__(self, length=0):
        self.length = length
        self.cropped_to = None

    def extend(self, n):
        self.length += n
        return self

    def crop(self, length):
        self.cropped_to = length
        self.length = length


class TinyLM(torch.nn.Module):
    """Stand-in causal LM: the next token is looked up from the last input token.

    Unknown tokens are followed by EOS.
    """

    def __init__(self, transitions=None, vocab_size=32, max_positions=None):
        super().__init__()
        self.transitions = dict(transitions or {})
        self.vocab_size = vocab_size
        self.config = SimpleNamespace(max_position_embeddings=max_positions, vocab_size=vocab_size)
        self.calls: list[list[int]] = []

    def forward(self, input_ids, past_key_values=None, use_cache=True):
        ids = input_ids[0].tolist()
        self.calls.append(ids)
        nxt = self.transitions.get(ids[-1], EOS_ID)
        logits = torch.full((1, len(ids), self.vocab_size), -10.0)
        logits[0, -1, nxt] = 10.0
        cache = (past_key_values or FakeCache()).extend(len(ids))
        return SimpleNamespace(logits=logits, past_key_values=cache)


@pytest.fixture
def tokenizer():
    return FakeTokenizer()


@pytest.fixture
def make_tokenizer():
    return FakeTokenizer


@pytest.fixture
def make_engine():
    return ScriptedEngine


@pytest.fixture
def make_lm():
    return TinyLM


@pytest.fixture
def streams():
    return SimpleNamespace(stdout=io.StringIO(), stderr=io.StringIO())
