"""
Inference Engine — Tokenizers, Sampling and KV-Cached Streaming Generation
==========================================================================
The services the REPL session drives:

  - Tokenizer wrappers: SentencePiece model files (tokenizer.spm / .model)
    or a Hugging Face tokenizer directory / hub id.
  - CausalLMEngine: runs a transformers causal LM one step at a time with a
    persistent key/value cache, so a multi-turn session only feeds the new
    turn's tokens. Every consumed or sampled token is reported to the
    caller's stream_token callback, in order, from the calling thread.

Prefill: all prompt tokens but the last, in batches of PREFILL_BATCH_SIZE.
Decode:  the last prompt token seeds the first step; then one sampled token
         per step until EOS, the accept policy refuses, or a limit is hit.
"""

import os
import logging
from pathlib import Path
from typing import Callable

import torch
import torch.nn.functional as F

from session import EOS_ID, DecodeError, EncodeError, GenerationConfig

logger = logging.getLogger(__name__)

PREFILL_BATCH_SIZE = 64

DTYPES = {
    "float32": torch.float32,
    "bfloat16": torch.bfloat16,
    "float16": torch.float16,
}


# ============================================================================
# Tokenizers
# ============================================================================
class SentencePieceTokenizer:
    """Wraps a sentencepiece.SentencePieceProcessor."""

    def __init__(self, processor):
        self.sp = processor

    @classmethod
    def from_file(cls, model_path: Path) -> "SentencePieceTokenizer":
        import sentencepiece as spm
        sp = spm.SentencePieceProcessor()
        sp.load(str(model_path))
        logger.info("Loaded SentencePiece model from %s (vocab=%d)", model_path, sp.get_piece_size())
        return cls(sp)

    @property
    def vocab_size(self) -> int:
        return self.sp.get_piece_size()

    def encode(self, text: str) -> list[int]:
        try:
            return list(self.sp.encode(text, out_type=int))
        except Exception as exc:
            raise EncodeError(f"Failed to encode {text[:40]!r}: {exc}") from exc

    def decode(self, token_ids: list[int]) -> str:
        for tid in token_ids:
            if not 0 <= tid < self.vocab_size:
                raise DecodeError(f"Token id {tid} outside vocabulary of {self.vocab_size}")
        try:
            return self.sp.decode(token_ids)
        except Exception as exc:
            raise DecodeError(f"Failed to decode {token_ids}: {exc}") from exc


class HFTokenizer:
    """Wraps a transformers tokenizer. Special tokens are never added implicitly."""

    def __init__(self, tokenizer):
        self.tok = tokenizer

    @classmethod
    def from_pretrained(cls, name_or_path: str) -> "HFTokenizer":
        from transformers import AutoTokenizer
        tok = AutoTokenizer.from_pretrained(name_or_path)
        logger.info("Loaded tokenizer from %s (vocab=%d)", name_or_path, len(tok))
        return cls(tok)

    @property
    def vocab_size(self) -> int:
        return len(self.tok)

    def encode(self, text: str) -> list[int]:
        try:
            return list(self.tok.encode(text, add_special_tokens=False))
        except Exception as exc:
            raise EncodeError(f"Failed to encode {text[:40]!r}: {exc}") from exc

    def decode(self, token_ids: list[int]) -> str:
        for tid in token_ids:
            if not 0 <= tid < self.vocab_size:
                raise DecodeError(f"Token id {tid} outside vocabulary of {self.vocab_size}")
        try:
            return self.tok.decode(token_ids, skip_special_tokens=False,
                                   clean_up_tokenization_spaces=False)
        except Exception as exc:
            raise DecodeError(f"Failed to decode {token_ids}: {exc}") from exc


def load_tokenizer(path: str):
    """A file is a SentencePiece model; anything else goes to transformers."""
    if Path(path).is_file():
        return SentencePieceTokenizer.from_file(Path(path))
    return HFTokenizer.from_pretrained(path)


# ============================================================================
# Model Loading & Worker Pool
# ============================================================================
def load_model(weights: str, device: str, dtype: str = "float32"):
    """Load a causal LM from a local HF directory or hub id."""
    from transformers import AutoModelForCausalLM

    model = AutoModelForCausalLM.from_pretrained(weights, torch_dtype=DTYPES[dtype])
    model.eval()
    model.to(device)

    config = model.config
    logger.info("Loaded model from %s", weights)
    logger.info("  Config: %s layers, %s heads, %s dim, vocab=%s",
                getattr(config, "num_hidden_layers", "?"),
                getattr(config, "num_attention_heads", "?"),
                getattr(config, "hidden_size", "?"),
                getattr(config, "vocab_size", "?"))
    return model


def configure_worker_pool(num_threads: int):
    """Size torch's intra-op pool once at startup.

    Many-core hosts also get the process pinned to the first num_threads of
    the cores it is allowed to run on.
    """
    torch.set_num_threads(num_threads)
    if num_threads > 10 and hasattr(os, "sched_setaffinity"):
        cores = set(sorted(os.sched_getaffinity(0))[:num_threads])
        os.sched_setaffinity(0, cores)
        logger.info("Pinned process to %d cores", len(cores))
    logger.info("Worker pool: %d threads", torch.get_num_threads())


# ============================================================================
# Sampling
# ============================================================================
def sample_top_k(
    logits: torch.Tensor,
    top_k: int,
    temperature: float,
    accept_token: Callable[[int], bool],
    rng: torch.Generator,
) -> tuple[int, float]:
    """Sample one token from the top-k candidates the accept policy allows.

    Returns (token_id, probability). If the policy refuses every candidate
    the turn ends with EOS.
    """
    logits = logits.float().flatten().cpu()
    k = max(1, min(top_k, logits.numel()))
    values, indices = torch.topk(logits, k)

    keep = [i for i, tid in enumerate(indices.tolist()) if accept_token(tid)]
    if not keep:
        return EOS_ID, 0.0
    values = values[keep]
    indices = indices[keep]

    if temperature <= 0:
        return int(indices[0]), 1.0

    probs = F.softmax(values / temperature, dim=-1)
    choice = torch.multinomial(probs, num_samples=1, generator=rng).item()
    return int(indices[choice]), float(probs[choice])


# ============================================================================
# KV-Cache Generation
# ============================================================================
class CausalLMEngine:
    def __init__(self, model, device: str = "cpu"):
        self.model = model
        self.device = device
        self._cache = None
        self._cached_tokens = 0

    @property
    def max_sequence_length(self) -> int | None:
        return getattr(getattr(self.model, "config", None), "max_position_embeddings", None)

    @property
    def cached_tokens(self) -> int:
        return self._cached_tokens

    def reset_cache(self):
        self._cache = None
        self._cached_tokens = 0

    def _sync_cache(self, start_position: int):
        if start_position == 0:
            if self._cached_tokens:
                logger.debug("Dropping KV cache (%d tokens)", self._cached_tokens)
            self.reset_cache()
        elif start_position < self._cached_tokens and hasattr(self._cache, "crop"):
            logger.debug("Cropping KV cache %d -> %d", self._cached_tokens, start_position)
            self._cache.crop(start_position)
            self._cached_tokens = start_position

    def _token_limit(self, config: GenerationConfig) -> int:
        """Most tokens the cache may hold: the session budget or the model context."""
        limit = self.max_sequence_length
        if limit is None:
            return config.max_tokens
        return min(config.max_tokens, limit)

    def _forward(self, token_ids: list[int]) -> torch.Tensor:
        """Feed token_ids after the cached context; returns logits for the last one."""
        idx = torch.tensor([token_ids], dtype=torch.long, device=self.device)
        out = self.model(input_ids=idx, past_key_values=self._cache, use_cache=True)
        self._cache = out.past_key_values
        self._cached_tokens += len(token_ids)
        return out.logits[0, -1, :]

    @torch.no_grad()
    def generate(
        self,
        config: GenerationConfig,
        token_ids: list[int],
        start_position: int,
        stream_token: Callable[[int, float], bool],
        accept_token: Callable[[int], bool],
        rng: torch.Generator,
        verbosity: int = 0,
    ):
        """Stream the prompt and then sampled tokens through stream_token.

        Blocks until the turn is complete: EOS is sampled, stream_token
        returns False (during prompt replay as well as decode), or
        max_tokens / max_generated_tokens / the model's context length is
        reached. A prompt that does not fit is cut off where the cache fills.
        """
        if not token_ids:
            logger.warning("Empty prompt, nothing to generate")
            return

        self._sync_cache(start_position)
        limit = self._token_limit(config)
        pos = start_position

        # --- Prefill: everything but the last prompt token ---
        offset = 0
        while offset < len(token_ids) - 1:
            room = limit - self._cached_tokens
            if room <= 0:
                logger.warning("Context full after %d of %d prompt tokens, ending turn",
                               offset, len(token_ids))
                return
            n = min(PREFILL_BATCH_SIZE, len(token_ids) - 1 - offset, room)
            batch = token_ids[offset : offset + n]
            self._forward(batch)
            for tid in batch:
                if not stream_token(tid, 0.0):
                    return
            pos += n
            offset += n

        # --- Decode ---
        token = token_ids[offset]
        if not stream_token(token, 0.0):
            return

        generated = 0
        while (
            pos < config.max_tokens
            and generated < config.max_generated_tokens
            and self._cached_tokens < limit
        ):
            logits = self._forward([token])
            token, score = sample_top_k(
                logits, config.top_k, config.temperature, accept_token, rng
            )
            if not stream_token(token, score):
                token = EOS_ID
            pos += 1
            generated += 1
            if token == EOS_ID:
                break

        if verbosity >= 2:
            logger.info("Turn done: %d sampled, %d cached tokens", generated, self._cached_tokens)
