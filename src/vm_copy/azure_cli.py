"""
Azure CLI transport for VM copy operations.

This module runs ``az`` (and other helper tools) as asyncio subprocesses,
parses their JSON output and maps failures onto the error taxonomy.
"""

import asyncio
import json
import os
import shlex
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .exceptions import (
    AccessDeniedError,
    AzureCommandError,
    ConfigurationError,
    NotFoundError,
    TransientCommandError,
)
from .logging import logger
from .retry import RetryPolicy
from .security import SecurityValidator


NOT_FOUND_MARKERS = (
    "resourcenotfound",
    "resourcegroupnotfound",
    "notfound",
    "was not found",
    "could not be found",
)
ACCESS_DENIED_MARKERS = (
    "authorizationfailed",
    "authenticationfailed",
    "linkedauthorizationfailed",
    "does not have authorization",
    "please run 'az login'",
    "az login",
    "invalidauthenticationtoken",
    "forbidden",
)
TRANSIENT_MARKERS = (
    "toomanyrequests",
    "throttl",
    "serviceunavailable",
    "internalservererror",
    "gatewaytimeout",
    "retryableerror",
    "timed out",
    "connection reset",
    "connection aborted",
    "temporarily unavailable",
)


def classify_failure(
    stderr: str, command: str, exit_code: Optional[int], subscription: str = ""
) -> Exception:
    """Map an ``az`` failure onto the error taxonomy."""
    text = stderr.lower()
    summary = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {exit_code}"

    if any(marker in text for marker in ACCESS_DENIED_MARKERS):
        return AccessDeniedError(summary, subscription)
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return TransientCommandError(summary, command, stderr, exit_code)
    if any(marker in text for marker in NOT_FOUND_MARKERS):
        return NotFoundError(command, subscription)
    return AzureCommandError(summary, command, stderr, exit_code)


class AzureCLI:
    """Runs Azure CLI commands with an explicit subscription per call."""

    def __init__(
        self,
        az_path: str = "az",
        timeout: int = 1800,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.az_path = az_path
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()

    async def execute_command(
        self,
        argv: Sequence[str],
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, str, int]:
        """Run a process and return ``(stdout, stderr, exit_code)``."""
        cmd_timeout = timeout or self.timeout
        process_env = None
        if env:
            process_env = dict(os.environ)
            process_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except FileNotFoundError:
            raise ConfigurationError(f"Executable not found: {argv[0]}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=cmd_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TransientCommandError(
                f"Command timed out after {cmd_timeout}s",
                command=_redact(argv),
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode if process.returncode is not None else -1,
        )

    async def run(
        self,
        args: List[str],
        subscription: str,
        *,
        timeout: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """Run ``az <args> --subscription <id> --output json`` and parse the result.

        ``az rest`` takes no ``--subscription``; its URI already names one.

        Returns the decoded JSON, or ``None`` for commands without output.
        """
        SecurityValidator.validate_subscription(subscription)
        if args and args[0] == "rest":
            argv = [self.az_path, *args, "--output", "json"]
        else:
            argv = [self.az_path, *args, "--subscription", subscription, "--output", "json"]
        policy = retry_policy or self.retry_policy
        return await policy.call(self._run_once, argv, subscription, timeout)

    async def _run_once(
        self, argv: List[str], subscription: str, timeout: Optional[int]
    ) -> Any:
        command = _redact(argv)
        logger.debug(f"Running: {command}", command=command, subscription=subscription)
        stdout, stderr, exit_code = await self.execute_command(argv, timeout=timeout)

        if exit_code != 0:
            error = classify_failure(stderr, command, exit_code, subscription)
            logger.debug(
                f"Command failed ({type(error).__name__}): {command}",
                command=command,
                exit_code=exit_code,
            )
            raise error

        if not stdout.strip():
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise AzureCommandError(
                f"Unparseable output from az: {e}", command, stderr, exit_code
            )

    async def exists(self, args: List[str], subscription: str) -> Optional[Dict[str, Any]]:
        """Run a ``show`` command, returning ``None`` when the resource is absent."""
        try:
            return await self.run(args, subscription)
        except NotFoundError:
            return None


SECRET_FLAGS = {"--account-key", "--sas-token", "--source-uri"}


def _redact(argv: Sequence[str]) -> str:
    """Render a command for logs without keys or signed URLs."""
    parts: List[str] = []
    hide_next = False
    for arg in argv:
        if hide_next:
            parts.append("***")
            hide_next = False
            continue
        if "sig=" in str(arg):
            parts.append("***")
            continue
        parts.append(shlex.quote(str(arg)))
        if arg in SECRET_FLAGS:
            hide_next = True
    return " ".join(parts)
