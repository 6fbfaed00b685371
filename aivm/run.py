"""Helpers for running host commands."""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from typing import TextIO


def _merged_env(env: Mapping[str, str]) -> dict[str, str]:
    merged = dict(os.environ)
    merged.update(env)
    return merged


def _stream(
    args: Sequence[str],
    stream: TextIO | None,
    *,
    env: Mapping[str, str] | None = None,
    stdin=None,
) -> None:
    """Run args with stdout and stderr merged and copied to stream."""
    if stream is None:
        subprocess.run(
            list(args),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            stdin=stdin,
            env=env,
            check=True,
        )
        return
    with subprocess.Popen(
        list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=stdin,
        env=env,
    ) as proc:
        assert proc.stdout is not None
        for line in proc.stdout:
            stream.write(line.decode(errors="replace"))
        returncode = proc.wait()
    if returncode:
        raise subprocess.CalledProcessError(returncode, list(args))


def run(args: Sequence[str], stream: TextIO | None) -> None:
    """Run a command, streaming its stdout and stderr to stream."""
    _stream(args, stream)


def run_env(args: Sequence[str], env: Mapping[str, str], stream: TextIO | None) -> None:
    """Run a command with extra environment variables, streaming output to stream."""
    _stream(args, stream, env=_merged_env(env), stdin=subprocess.DEVNULL)


def output(args: Sequence[str]) -> str:
    """Run a command and return its combined output, stripped."""
    result = subprocess.run(
        list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
    )
    text = result.stdout.decode(errors="replace").strip()
    if result.returncode:
        raise subprocess.CalledProcessError(result.returncode, list(args), output=text)
    return text


def interactive(args: Sequence[str]) -> None:
    """Run a command attached to the current terminal."""
    subprocess.run(list(args), check=True)


def interactive_env(args: Sequence[str], env: Mapping[str, str]) -> None:
    """Run a command attached to the terminal with extra environment variables."""
    subprocess.run(list(args), env=_merged_env(env), check=True)


def check(name: str) -> bool:
    """Report whether the named program can be found on PATH."""
    return shutil.which(name) is not None


def output_lines(args: Sequence[str]) -> list[str]:
    """Run a command and return its non-empty, stripped output lines."""
    text = output(args)
    return [line.strip() for line in text.split("\n") if line.strip()]


def quiet(args: Sequence[str]) -> None:
    """Run a command, discarding its output."""
    output(args)


def capture(args: Sequence[str]) -> str:
    """Run a command and return its combined output unmodified."""
    result = subprocess.run(
        list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
    )
    text = result.stdout.decode(errors="replace")
    if result.returncode:
        raise subprocess.CalledProcessError(result.returncode, list(args), output=text)
    return text