"""
vmfleet/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic and timeouts.
Optionally, allows passing a custom error_parser callback that can parse stderr
for known errors (e.g., a missing libvirt domain) and return a short message.

Two entry points:
  - run_command: returns stdout, raises CommandError on unexpected exit codes.
  - run_command_result: never raises on exit codes, returns a CommandResult
    carrying (return_code, stdout, stderr) for callers that classify failures
    themselves (e.g. ssh exit code 255).

Usage example:
    from vmfleet.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["virsh", "list", "--all", "--name"], retries=0)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from vmfleet.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the command was sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        """
        Initialize a CommandError.

        Args:
            message (str): The error message describing the command failure.
            return_code (Optional[int]): The exit code if known.
            stderr (str): Captured stderr, if it may be shown.
        """
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


class CommandResult(BaseModel):
    """Outcome of a finished subprocess."""

    return_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.return_code == 0


def _build_env(
    env: Optional[Dict[str, str]], suppress_env_vars: Optional[List[str]]
) -> Optional[Dict[str, str]]:
    if env is None and not suppress_env_vars:
        return None
    proc_env = os.environ.copy()
    if suppress_env_vars:
        for var in suppress_env_vars:
            proc_env.pop(var, None)
    if env:
        proc_env.update(env)
    return proc_env


async def run_command_result(
    command: List[str],
    *,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[bytes] = None,
    timeout: Optional[float] = None,
    suppress_env_vars: Optional[List[str]] = None,
) -> CommandResult:
    """
    Execute a local command once and capture its result, without raising on a
    non-zero exit code.

    Args:
        command: The command and arguments to execute.
        env: Additional environment variables to add or override.
        cwd: Working directory for the command.
        input_data: If provided, written to stdin.
        timeout: Seconds before the process is killed. None waits forever.
        suppress_env_vars: Environment variables to remove.

    Returns:
        CommandResult with the exit code and decoded, stripped stdout/stderr.

    Raises:
        CommandError: If the process could not be started or timed out.
    """
    stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_env(env, suppress_env_vars),
            cwd=cwd,
        )
    except OSError as exc:
        raise CommandError(f"Failed to start '{command[0]}': {exc}") from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input=input_data), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise CommandError(
            f"Command '{command[0]}' timed out after {timeout} seconds."
        ) from exc
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    return CommandResult(
        return_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode(errors="replace").strip(),
        stderr=stderr_bytes.decode(errors="replace").strip(),
    )


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    suppress_env_vars: Optional[List[str]] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries
    and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, we pass stderr to it, and if it returns
    a non-None string, we raise that as a short message. Otherwise, we raise the
    usual "Command failed" message.

    When `sensitive=True`, we omit the command, stdout, and stderr from the final error
    message.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            How many attempts in total. Defaults to 3.
        retry_delay (float):
            Delay in seconds between retries. Defaults to 1.0.
        timeout (Optional[float]):
            Per-attempt timeout in seconds.
        suppress_env_vars (Optional[List[str]]):
            A list of environment variables to remove from the environment.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            A callback that receives stderr (as a string). If it returns a non-None
            value, we raise a short CommandError with that message.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all retries or returns a code not in
            `successful_return_codes`. Also if `error_parser` returns a message.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay)
    async def _inner_run_command() -> str:
        result = await run_command_result(
            command,
            env=env,
            cwd=cwd,
            input_data=input_data.encode() if input_data else None,
            timeout=timeout,
            suppress_env_vars=suppress_env_vars,
        )

        if result.return_code not in ok_codes:
            short_message = error_parser(result.stderr) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, result.return_code)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {result.stdout}"
                    f"\nStderr: {result.stderr}"
                )

            raise CommandError(
                f"Command failed with return code {result.return_code}.{detail}",
                result.return_code,
                "" if sensitive else result.stderr,
            )

        return result.stdout

    return await _inner_run_command()
