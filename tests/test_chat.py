"""Command-line surface: validation, config display, end-to-end run with fakes."""
from __future__ import annotations

import io
import sys

import pytest

import chat
from session import ConfigError, GenerationConfig


def parse(*argv):
    return chat.build_parser().parse_args(list(argv))


def good_args(tmp_path, *extra):
    spm_file = tmp_path / "tokenizer.spm"
    spm_file.write_bytes(b"stub")
    return parse("--tokenizer", str(spm_file), "--weights", str(tmp_path), "--model", "2b-it", *extra)


def test_valid_arguments_pass(tmp_path):
    args = good_args(tmp_path)
    chat.validate_loader_args(args)
    chat.validate_inference_args(args, max_sequence_length=8192)


@pytest.mark.parametrize("argv, message", [
    ((), "Missing --model"),
    (("--model", "13b-it"), "Unknown --model"),
    (("--model", "2b-it"), "Missing --tokenizer"),
    (("--model", "2b-it", "--tokenizer", "missing.spm"), "Can't open file"),
    (("--model", "2b-it", "--tokenizer", "google/gemma-2b-it"), "Missing --weights"),
])
def test_loader_validation(argv, message):
    with pytest.raises(ConfigError, match=message):
        chat.validate_loader_args(parse(*argv))


@pytest.mark.parametrize("extra, seq_len, message", [
    (("--max-tokens", "0"), None, "max_tokens must be positive"),
    (("--max-generated-tokens", "0"), None, "max_generated_tokens must be positive"),
    (("--top-k", "0"), None, "top_k must be positive"),
    (("--max-tokens", "100", "--max-generated-tokens", "200"), None, "larger than the maximum total"),
    (("--max-tokens", "4096"), 2048, "maximum sequence length"),
])
def test_inference_validation(tmp_path, extra, seq_len, message):
    with pytest.raises(ConfigError, match=message):
        chat.validate_inference_args(good_args(tmp_path, *extra), seq_len)


def test_config_from_args(tmp_path):
    args = good_args(tmp_path, "--max-tokens", "512", "--max-generated-tokens", "128",
                     "--multiturn", "--deterministic", "--verbosity", "2",
                     "--temperature", "0.5", "--top-k", "40")
    assert chat.config_from_args(args) == GenerationConfig(
        max_tokens=512, max_generated_tokens=128, temperature=0.5, top_k=40,
        multiturn=True, deterministic=True, verbosity=2,
    )


def test_show_config_detail_depends_on_verbosity(tmp_path):
    quiet, loud = io.StringIO(), io.StringIO()
    chat.show_config(good_args(tmp_path, "--verbosity", "1"), out=quiet)
    chat.show_config(good_args(tmp_path, "--verbosity", "2"), out=loud)

    assert "Max tokens" in quiet.getvalue()
    assert "Date & Time" not in quiet.getvalue()
    assert "Date & Time" in loud.getvalue()
    assert "Prefill Token Batch Size" in loud.getvalue()


def test_invalid_args_exit_with_status_1(capsys):
    with pytest.raises(SystemExit) as exc:
        chat.main(["--model", "2b-it"])
    assert exc.value.code == 1
    assert "Invalid args: Missing --tokenizer" in capsys.readouterr().err


def patch_loading(monkeypatch, tokenizer, lm):
    monkeypatch.setattr(chat, "configure_worker_pool", lambda n: None)
    monkeypatch.setattr(chat, "load_tokenizer", lambda path: tokenizer)
    monkeypatch.setattr(chat, "load_model", lambda weights, device, dtype: lm)


def test_main_runs_a_session(tmp_path, monkeypatch, capsys, make_tokenizer, make_lm):
    tok = make_tokenizer(pieces={20: "Hello", 21: " there"})
    # RAW prompt "hi" -> [<bos>, 'h', 'i']; the tiny LM answers after the last char
    lm = make_lm({1000 + ord("i"): 20, 20: 21}, vocab_size=1200)
    patch_loading(monkeypatch, tok, lm)
    monkeypatch.setattr(sys, "stdin", io.StringIO("hi\n%q\n"))

    spm_file = tmp_path / "tokenizer.spm"
    spm_file.write_bytes(b"stub")
    chat.main(["--tokenizer", str(spm_file), "--weights", "stub", "--model", "2b-pt", "--device", "cpu",
               "--verbosity", "0", "--temperature", "0"])

    assert capsys.readouterr().out == "iHello there\n\n"
    assert lm.calls[-1] == [21]


def test_main_aborts_on_decode_error(tmp_path, monkeypatch, make_tokenizer, make_lm):
    tok = make_tokenizer(bad_ids={20})
    lm = make_lm({1000 + ord("i"): 20}, vocab_size=1200)
    patch_loading(monkeypatch, tok, lm)
    monkeypatch.setattr(sys, "stdin", io.StringIO("hi\n"))

    with pytest.raises(SystemExit) as exc:
        chat.main(["--tokenizer", "google/gemma-2b", "--weights", "stub", "--model", "2b-pt", "--device", "cpu",
                   "--verbosity", "0"])
    assert exc.value.code == 1


def test_model_context_length_is_checked_after_loading(monkeypatch, capsys, make_tokenizer, make_lm):
    patch_loading(monkeypatch, make_tokenizer(), make_lm(max_positions=1024))

    with pytest.raises(SystemExit) as exc:
        chat.main(["--tokenizer", "google/gemma-2b", "--weights", "stub", "--model", "2b-pt", "--device", "cpu",
                   "--max-tokens", "2048", "--max-generated-tokens", "512", "--verbosity", "0"])
    assert exc.value.code == 1
    assert "maximum sequence length" in capsys.readouterr().err
