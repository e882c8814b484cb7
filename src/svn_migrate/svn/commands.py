"""Subprocess helpers shared by the prober and runner."""

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger

from ..exceptions import (
    AuthenticationError,
    MigrationError,
    NotFoundError,
    ProcessError,
    UnreachableError,
)
from ..utils.logging import mask_command

# svn error codes, see subversion/include/svn_error_codes.h
_AUTH_CODES = ('E170001', 'E215004', 'E175013')
_UNREACHABLE_CODES = (
    'E170013',
    'E670002',
    'E670008',
    'E210002',
    'E000111',
    'E000110',
    'E175002',
    'E120108',
)
_NOT_FOUND_CODES = ('E170000', 'E160013', 'E200009', 'E155010')

_AUTH_TEXT = re.compile(
    r'authentication failed|authorization failed|no more credentials|'
    r'401 unauthorized|403 forbidden|invalid credentials',
    re.I,
)
_UNREACHABLE_TEXT = re.compile(
    r'unable to connect|connection refused|could not resolve|'
    r'name or service not known|timed out|network is unreachable|no route to host',
    re.I,
)
_NOT_FOUND_TEXT = re.compile(
    r"non-existent|doesn't exist|does not exist|path not found|not found in revision|"
    r"could not be found|repository '[^']*' not found|404 not found",
    re.I,
)


@dataclass
class CommandResult:
    """Outcome of a short external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


def classify_svn_error(stderr: str, returncode: Optional[int] = None) -> MigrationError:
    """Turn svn, git-svn or git push output into a typed error.

    Authentication problems are checked before network problems because an
    authorization failure can be reported under a generic connection code.
    """
    text = stderr.strip() or 'Unknown error'
    if _AUTH_TEXT.search(text) or any(code in text for code in _AUTH_CODES):
        return AuthenticationError(f'SVN authentication failed: {text}')
    if _NOT_FOUND_TEXT.search(text) or any(code in text for code in _NOT_FOUND_CODES):
        return NotFoundError(f'SVN path not found: {text}')
    if _UNREACHABLE_TEXT.search(text) or any(
        code in text for code in _UNREACHABLE_CODES
    ):
        return UnreachableError(f'SVN repository unreachable: {text}')
    return ProcessError(
        f'Command failed with code {returncode}: {text}',
        returncode=returncode,
        tail=text.splitlines()[-20:],
    )


async def run_command(
    cmd: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a command to completion and capture its output.

    The child is killed if the awaiting task is cancelled or times out.

    Raises:
        ProcessError: If the executable cannot be started
        asyncio.TimeoutError: If ``timeout`` elapses
    """
    logger.debug(f'Running command: {" ".join(mask_command(cmd))}')

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise ProcessError(f'Cannot execute {cmd[0]}: {e}') from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (asyncio.CancelledError, asyncio.TimeoutError):
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors='replace') if stdout else '',
        stderr=stderr.decode(errors='replace') if stderr else '',
    )
    logger.debug(f'Command return code: {result.returncode}')
    return result
