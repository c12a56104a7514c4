#!/usr/bin/env python3
"""
Local LLM — Interactive Chat REPL
==================================
Type a line, watch the model's reply stream back token by token.

Instruction-tuned models (--model 2b-it / 7b-it) get the
<start_of_turn>user / <start_of_turn>model framing; pre-trained models
(2b-pt / 7b-pt) see the raw text. With --multiturn the conversation keeps
its context across turns, otherwise every reply starts a fresh context.

In-session commands:
    %c / %C   clear the conversation context
    %q / %Q   quit (end of input works too)

Usage:
    # Instruction-tuned chat, multi-turn
    python chat.py --tokenizer ./tokenizer.spm --weights ./gemma-2b-it --model 2b-it --multiturn

    # Reproducible runs
    python chat.py --tokenizer ./tokenizer.spm --weights ./gemma-2b-it --model 2b-it \\
        --deterministic --temperature 0.7 --top-k 40

    # Pre-trained model, quiet output, piped input
    echo "The capital of France is" | python chat.py --tokenizer google/gemma-2b \\
        --weights google/gemma-2b --model 2b-pt --verbosity 0
"""

import os
import sys
import time
import argparse
import logging
from pathlib import Path

import torch

from engine import CausalLMEngine, DTYPES, PREFILL_BATCH_SIZE, configure_worker_pool, load_model, load_tokenizer
from session import (
    ConfigError,
    ConversationMode,
    DecodeError,
    EncodeError,
    GenerationConfig,
    ReplSession,
    accept_all,
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
logger = logging.getLogger(__name__)

MODEL_TYPES = ("2b-it", "2b-pt", "7b-it", "7b-pt")

BANNER = "\n".join([
    "=" * 60,
    "  Local LLM — Interactive Chat",
    "  (streaming generation, single- or multi-turn)",
    "=" * 60,
])

INSTRUCTIONS = (
    "*Usage*\n"
    "  Enter an instruction and press enter (%C resets the conversation, %Q quits).\n\n"
    "*Examples*\n"
    "  - Write an email to grandma thanking her for the cookies.\n"
    "  - What are some historical attractions to visit around Massachusetts?\n"
    "  - Compute the nth fibonacci number in javascript.\n"
    "  - Write a standup comedy bit about GPU programming.\n"
)


# ============================================================================
# Arguments
# ============================================================================
def default_num_threads() -> int:
    return max(1, min((os.cpu_count() or 1) - 2, 18))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Local LLM — Interactive Chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    loader = parser.add_argument_group("model loading")
    loader.add_argument("--tokenizer", type=str, default=None,
                        help="SentencePiece model file (.spm/.model) or HF tokenizer dir / hub id")
    loader.add_argument("--weights", type=str, default=None,
                        help="HF model directory or hub id")
    loader.add_argument("--model", type=str, default=None,
                        help=f"Model type, one of: {', '.join(MODEL_TYPES)}")
    loader.add_argument("--device", type=str, default="cuda" if torch.cuda.is_available() else "cpu",
                        help="Torch device (default: cuda if available, else cpu)")
    loader.add_argument("--dtype", choices=sorted(DTYPES), default="float32",
                        help="Weight dtype (default: float32)")

    inference = parser.add_argument_group("inference")
    inference.add_argument("--max-tokens", type=int, default=3072,
                           help="Maximum number of tokens in prompt + generation for the session (default: 3072)")
    inference.add_argument("--max-generated-tokens", type=int, default=2048,
                           help="Maximum number of tokens to generate per turn (default: 2048)")
    inference.add_argument("--temperature", type=float, default=1.0,
                           help="Sampling temperature, <= 0 is greedy (default: 1.0)")
    inference.add_argument("--top-k", type=int, default=1,
                           help="Top-k sampling (default: 1)")
    inference.add_argument("--deterministic", action="store_true",
                           help="Seed the sampler with a fixed value, reseeded on every reset")
    inference.add_argument("--multiturn", action="store_true",
                           help="Keep the conversation context across turns")

    app = parser.add_argument_group("application")
    app.add_argument("--verbosity", type=int, default=1, choices=(0, 1, 2),
                     help="0 = replies only, 1 = banner and prompts, 2 = timing and token counts (default: 1)")
    app.add_argument("--num-threads", type=int, default=default_num_threads(),
                     help="Number of torch worker threads (default: cpu count - 2, at most 18)")
    app.add_argument("--log", type=Path, default=None,
                     help="Also write log messages to this file")
    return parser


def validate_loader_args(args):
    if not args.model:
        raise ConfigError(f"Missing --model flag, need to specify one of {', '.join(MODEL_TYPES)}.")
    if args.model not in MODEL_TYPES:
        raise ConfigError(f"Unknown --model {args.model!r}, need to specify one of {', '.join(MODEL_TYPES)}.")
    if not args.tokenizer:
        raise ConfigError("Missing --tokenizer flag, a file or directory for the tokenizer is required.")
    if Path(args.tokenizer).suffix in (".spm", ".model") and not Path(args.tokenizer).is_file():
        raise ConfigError(f"Can't open file specified with --tokenizer flag: {args.tokenizer}")
    if not args.weights:
        raise ConfigError("Missing --weights flag, a directory or hub id for the model weights is required.")


def validate_inference_args(args, max_sequence_length: int | None = None):
    if args.max_tokens <= 0:
        raise ConfigError("max_tokens must be positive.")
    if args.max_generated_tokens <= 0:
        raise ConfigError("max_generated_tokens must be positive.")
    if args.top_k <= 0:
        raise ConfigError("top_k must be positive.")
    if args.max_generated_tokens > args.max_tokens:
        raise ConfigError("Maximum number of generated tokens is larger than the maximum total tokens.")
    if max_sequence_length is not None and args.max_tokens > max_sequence_length:
        raise ConfigError(
            f"max_tokens ({args.max_tokens}) is larger than the maximum sequence "
            f"length of the model ({max_sequence_length})."
        )


def config_from_args(args) -> GenerationConfig:
    return GenerationConfig(
        max_tokens=args.max_tokens,
        max_generated_tokens=args.max_generated_tokens,
        temperature=args.temperature,
        top_k=args.top_k,
        multiturn=args.multiturn,
        deterministic=args.deterministic,
        verbosity=args.verbosity,
    )


# ============================================================================
# Presentation
# ============================================================================
def show_config(args, engine=None, out=None):
    """Print the session settings; more detail at verbosity 2."""
    out = out or sys.stdout
    rows = [
        ("Tokenizer", args.tokenizer),
        ("Weights", args.weights),
        ("Model type", args.model),
        ("Max tokens", args.max_tokens),
        ("Max generated tokens", args.max_generated_tokens),
        ("Temperature", args.temperature),
        ("Top-k", args.top_k),
        ("Deterministic", args.deterministic),
        ("Multiturn", args.multiturn),
        ("Verbosity", args.verbosity),
        ("Number of threads", args.num_threads),
    ]
    if args.verbosity >= 2:
        rows += [
            ("Date & Time", time.strftime("%a %b %d %H:%M:%S %Y")),
            ("Prefill Token Batch Size", PREFILL_BATCH_SIZE),
            ("Hardware concurrency", os.cpu_count()),
            ("Torch threads", torch.get_num_threads()),
            ("Device", args.device),
            ("Weight Type", args.dtype),
            ("Torch version", torch.__version__),
        ]
        if engine is not None and engine.max_sequence_length is not None:
            rows.append(("Max sequence length", engine.max_sequence_length))
    for label, value in rows:
        out.write(f"{label:<30}: {value}\n")


def show_banner(args, engine=None, out=None):
    out = out or sys.stdout
    out.write("\033[2J\033[1;1H")  # clear screen
    out.write(BANNER + "\n\n")
    show_config(args, engine, out)
    out.write("\n" + INSTRUCTIONS + "\n")
    out.flush()


def setup_logging(args):
    if args.verbosity == 0:
        logging.getLogger().setLevel(logging.WARNING)
    if args.log:
        handler = logging.FileHandler(args.log)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        logging.getLogger().addHandler(handler)


# ============================================================================
# Main
# ============================================================================
def run(args):
    configure_worker_pool(args.num_threads)

    logger.info("Device: %s", args.device)
    logger.info("Loading tokenizer...")
    tokenizer = load_tokenizer(args.tokenizer)

    logger.info("Loading model...")
    model = load_model(args.weights, args.device, args.dtype)
    engine = CausalLMEngine(model, device=args.device)

    validate_inference_args(args, engine.max_sequence_length)

    mode = ConversationMode.from_model_type(args.model)
    logger.info("Mode: %s", mode.name)

    if args.verbosity >= 1:
        show_banner(args, engine)

    session = ReplSession(
        engine=engine,
        tokenizer=tokenizer,
        config=config_from_args(args),
        mode=mode,
        accept_token=accept_all,
    )
    session.run()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args)

    try:
        validate_loader_args(args)
        validate_inference_args(args)
        run(args)
    except ConfigError as e:
        parser.print_help(sys.stderr)
        sys.stderr.write(f"\nInvalid args: {e}\n")
        sys.exit(1)
    except (EncodeError, DecodeError) as e:
        logger.error("Aborting session: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
