"""
Session Core — Turn Framing, Token Streaming and the REPL State Machine
=======================================================================
Turns user-typed lines into framed prompts, streams generated tokens back
to the terminal one at a time, and keeps track of where the conversation
is in the model's context.

Two position counters drive everything:
  - absolute: tokens consumed across the whole session (the model's
    context position). Reset only on an explicit reset.
  - turn:     tokens consumed within the current turn, reset every turn.

The generation engine calls back into a StreamingSink for every token it
consumes or produces (prompt replay first, then sampled tokens), so the
counters advance in lockstep with the model.
"""

import sys
import time
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Protocol, TextIO

import torch

logger = logging.getLogger(__name__)

# Fixed vocabulary ids of the Gemma tokenizer
BOS_ID = 2
EOS_ID = 1

DETERMINISTIC_SEED = 42

QUIT_SENTINEL = "%q"
CLEAR_SENTINEL = "%c"

TURN_PREFIX = "<start_of_turn>user\n"
TURN_SUFFIX = "<end_of_turn>\n<start_of_turn>model\n"
CONTINUATION_PREFIX = "<end_of_turn>\n"


# ============================================================================
# Errors
# ============================================================================
class EncodeError(Exception):
    """The tokenizer rejected the prompt text."""


class DecodeError(Exception):
    """The tokenizer could not render a token id."""


class ConfigError(Exception):
    """Invalid combination of session parameters, detected before the loop."""


# ============================================================================
# Data Model
# ============================================================================
class ConversationMode(Enum):
    RAW = "raw"
    INSTRUCTION_TUNED = "instruction_tuned"

    @classmethod
    def from_model_type(cls, model_type: str) -> "ConversationMode":
        """Pick the framing mode from a model type such as '2b-it' or '7b-pt'."""
        if model_type.endswith("-it"):
            return cls.INSTRUCTION_TUNED
        if model_type.endswith("-pt"):
            return cls.RAW
        raise ConfigError(f"Unknown model type: {model_type!r}")


class SessionState(Enum):
    AWAITING_INPUT = "awaiting_input"
    BUILDING_TURN = "building_turn"
    GENERATING = "generating"
    SESSION_ENDED = "session_ended"


@dataclass(frozen=True)
class GenerationConfig:
    max_tokens: int = 3072
    max_generated_tokens: int = 2048
    temperature: float = 1.0
    top_k: int = 1
    multiturn: bool = False
    deterministic: bool = False
    verbosity: int = 1


@dataclass
class Position:
    absolute: int = 0
    turn: int = 0

    def advance(self):
        self.absolute += 1
        self.turn += 1

    def start_turn(self):
        self.turn = 0

    def reset(self):
        self.absolute = 0


@dataclass
class Turn:
    raw_text: str
    prompt_text: str
    token_ids: list[int]

    @property
    def prompt_size(self) -> int:
        return len(self.token_ids)


class Tokenizer(Protocol):
    def encode(self, text: str) -> list[int]: ...

    def decode(self, token_ids: list[int]) -> str: ...


class GenerationEngine(Protocol):
    def generate(
        self,
        config: GenerationConfig,
        token_ids: list[int],
        start_position: int,
        stream_token: Callable[[int, float], bool],
        accept_token: Callable[[int], bool],
        rng: torch.Generator,
        verbosity: int = 0,
    ) -> None: ...


def accept_all(token: int) -> bool:
    """Default accept policy: every sampled token is allowed."""
    return True


def make_rng(deterministic: bool) -> torch.Generator:
    """Create the session's random state."""
    rng = torch.Generator()
    if deterministic:
        rng.manual_seed(DETERMINISTIC_SEED)
    else:
        rng.seed()
    return rng


# ============================================================================
# Turn Builder
# ============================================================================
def build_turn(
    raw_text: str,
    mode: ConversationMode,
    absolute_position: int,
    tokenizer: Tokenizer,
) -> Turn:
    """Build the exact token sequence to submit for one user utterance.

    Instruction-tuned models get the user/model control-token framing, with
    an <end_of_turn> continuation marker when the dialogue is already under
    way. The <bos> token starts every fresh context, whatever the mode.

    Raises:
        EncodeError: the tokenizer rejected the framed text.
    """
    prompt_text = raw_text
    if mode is ConversationMode.INSTRUCTION_TUNED:
        prompt_text = TURN_PREFIX + raw_text + TURN_SUFFIX
        if absolute_position > 0:
            prompt_text = CONTINUATION_PREFIX + prompt_text

    token_ids = list(tokenizer.encode(prompt_text))

    if absolute_position == 0:
        token_ids.insert(0, BOS_ID)

    logger.debug("Built turn: %d prompt tokens at position %d", len(token_ids), absolute_position)
    return Turn(raw_text=raw_text, prompt_text=prompt_text, token_ids=token_ids)


# ============================================================================
# Streaming Sink
# ============================================================================
class StreamingSink:
    """Per-token callback handed to the generation engine for one turn.

    Counters are advanced before branching, so the first generated token of
    a turn arrives with turn == prompt_size + 1.
    """

    def __init__(
        self,
        position: Position,
        prompt_size: int,
        tokenizer: Tokenizer,
        config: GenerationConfig,
        rng: torch.Generator,
        out: TextIO,
        diag: TextIO,
    ):
        self.position = position
        self.prompt_size = prompt_size
        self.tokenizer = tokenizer
        self.config = config
        self.rng = rng
        self.out = out
        self.diag = diag

    def __call__(self, token: int, score: float = 0.0) -> bool:
        self.position.advance()
        turn_pos = self.position.turn

        if turn_pos < self.prompt_size:
            self.diag.write(".")
            self.diag.flush()
        elif token == EOS_ID:
            if not self.config.multiturn:
                self.position.reset()
                if self.config.deterministic:
                    self.rng.manual_seed(DETERMINISTIC_SEED)
            if self.config.verbosity >= 2:
                self.out.write("\n[ End ]\n")
                self.out.flush()
        else:
            text = self.tokenizer.decode([token])
            if turn_pos == self.prompt_size + 1:
                # first token of the response
                text = text.lstrip(" \t\n")
                if self.config.verbosity >= 1:
                    self.out.write("\n\n")
            self.out.write(text)
            self.out.flush()
        return True


# ============================================================================
# Session Loop
# ============================================================================
class ReplSession:
    """Read-eval-print loop over a generation engine.

    AWAITING_INPUT -> BUILDING_TURN -> GENERATING -> AWAITING_INPUT, until
    the input ends, the user quits, or the session token budget runs out.
    """

    def __init__(
        self,
        engine: GenerationEngine,
        tokenizer: Tokenizer,
        config: GenerationConfig,
        mode: ConversationMode,
        accept_token: Callable[[int], bool] = accept_all,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.tokenizer = tokenizer
        self.config = config
        self.mode = mode
        self.accept_token = accept_token
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.clock = clock

        self.position = Position()
        self.rng = make_rng(config.deterministic)
        self.state = SessionState.AWAITING_INPUT
        self.turns_completed = 0
        self.last_tokens_per_sec = 0.0

        self._pending_text: str | None = None
        self._turn: Turn | None = None

    def reset(self):
        """Clear the conversation context (the %c command)."""
        self.position.reset()
        if self.config.deterministic:
            self.rng.manual_seed(DETERMINISTIC_SEED)
        logger.debug("Context cleared")

    def run(self) -> SessionState:
        while self.state is not SessionState.SESSION_ENDED:
            self.step()
        return self.state

    def step(self) -> SessionState:
        """Perform one state transition and return the new state."""
        if self.state is SessionState.AWAITING_INPUT:
            self._await_input()
        elif self.state is SessionState.BUILDING_TURN:
            self._build_turn()
        elif self.state is SessionState.GENERATING:
            self._generate()
        return self.state

    def _await_input(self):
        if self.position.absolute >= self.config.max_tokens:
            self.stdout.write(
                f"max_tokens ({self.config.max_tokens}) exceeded. Use a larger value "
                "if desired using the --max-tokens command line flag.\n"
            )
            self.stdout.flush()
            self.state = SessionState.SESSION_ENDED
            return

        if self.config.verbosity >= 1:
            self.stdout.write("> ")
            self.stdout.flush()

        line = self.stdin.readline()
        if not line:
            logger.debug("End of input")
            self.state = SessionState.SESSION_ENDED
            return

        text = line.rstrip("\r\n")
        command = text.lower()
        if command == QUIT_SENTINEL:
            self.state = SessionState.SESSION_ENDED
        elif command == CLEAR_SENTINEL:
            self.reset()
        elif text:
            self._pending_text = text
            self.state = SessionState.BUILDING_TURN

    def _build_turn(self):
        self._turn = build_turn(self._pending_text, self.mode, self.position.absolute, self.tokenizer)
        self._pending_text = None
        self.state = SessionState.GENERATING

    def _generate(self):
        turn = self._turn
        self.position.start_turn()
        sink = StreamingSink(
            self.position, turn.prompt_size, self.tokenizer,
            self.config, self.rng, self.stdout, self.stderr,
        )

        self.stderr.write("\n[ Reading prompt ] ")
        self.stderr.flush()

        time_start = self.clock()
        self.engine.generate(
            self.config, turn.token_ids, self.position.absolute,
            sink, self.accept_token, self.rng, self.config.verbosity,
        )
        time_end = self.clock()

        elapsed = time_end - time_start
        tok_per_s = self.position.turn / elapsed if elapsed > 0 else 0.0
        self.last_tokens_per_sec = tok_per_s
        if self.config.verbosity >= 2:
            self.stdout.write(
                f"{self.position.turn} tokens ({self.position.absolute} total tokens)\n"
                f"{tok_per_s:.2f} tokens / sec\n"
            )
        self.stdout.write("\n\n")
        self.stdout.flush()

        self.turns_completed += 1
        self._turn = None
        self.state = SessionState.AWAITING_INPUT
