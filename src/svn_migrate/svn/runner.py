"""git-svn process supervision.

Each migration or sync job runs ``git svn`` as an independent OS process in
its own session so the whole process group can be signalled. The runner
streams output line by line, turns revision lines into progress updates and
keeps the last lines for error reports.
"""

import asyncio
import os
import re
import shlex
import signal
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional

from loguru import logger

from ..config.config import RunnerConfig
from ..exceptions import ProcessError, ResumabilityError
from ..models.job import JobParams, SvnCredentials
from ..models.migration import LayoutKind, ProgressInfo
from ..utils.logging import mask_command
from .commands import classify_svn_error, run_command
from .progress import ProgressParser, ProgressThrottle

ProgressCallback = Callable[[ProgressInfo], None]
LogCallback = Callable[[str, str], None]
SpawnCallback = Callable[[int], None]

SVN_REF_PREFIX = 'svn/'
AUTHORS_FILENAME = 'authors.txt'
AUTHORS_PROG_FILENAME = 'authors-prog.sh'
ASKPASS_FILENAME = 'askpass.sh'
PASSWORD_ENV = 'SVN_MIGRATE_PASSWORD'

_STREAM_LIMIT = 1024 * 1024
_GIT_SVN_ID = re.compile(r'git-svn-id:\s*\S+@(\d+)\s')


def remove_lock_files(repo_path) -> List[Path]:
    """Delete ``*.lock`` files left in a working copy's ``.git`` directory.

    Returns:
        Paths that were removed
    """
    git_dir = Path(repo_path) / '.git'
    if not git_dir.is_dir():
        return []

    removed = []
    for lock_file in git_dir.rglob('*.lock'):
        try:
            lock_file.unlink()
        except FileNotFoundError:
            continue
        removed.append(lock_file)
    if removed:
        logger.warning(f'Removed {len(removed)} stale lock files from {git_dir}')
    return removed


def pid_alive(pid: int) -> bool:
    """True if a process with this pid exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def terminate_pid(pid: int, grace_period: float) -> bool:
    """Best-effort SIGTERM then SIGKILL of a process group we no longer own.

    Used for processes recorded by an earlier run of the engine.

    Returns:
        True if a signal was delivered
    """
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        raise ProcessError(f'Not allowed to terminate process {pid}: {e}') from e

    loop = asyncio.get_running_loop()
    deadline = loop.time() + grace_period
    while loop.time() < deadline:
        if not pid_alive(pid):
            return True
        await asyncio.sleep(0.1)

    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return True


@dataclass
class RunResult:
    """Outcome of a successful replay."""

    last_revision: Optional[int]
    revisions_processed: int
    pushed: bool = False


class ProcessHandle:
    """Owns one OS process for the duration of an ``async with`` block.

    Leaving the block always reaps the process: if it is still running it is
    sent SIGTERM, then SIGKILL after ``grace_period``. Lock files are removed
    from ``repo_path`` whenever the process was terminated rather than
    allowed to finish.
    """

    def __init__(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        grace_period: float = 10.0,
        tail_lines: int = 50,
        repo_path: Optional[Path] = None,
    ):
        self.cmd = cmd
        self.cwd = cwd
        self.env = env
        self.grace_period = grace_period
        self.repo_path = repo_path
        self.tail: Deque[str] = deque(maxlen=tail_lines)
        self.process: Optional[asyncio.subprocess.Process] = None
        self.terminated = False

    async def __aenter__(self) -> 'ProcessHandle':
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.cwd,
                env=self.env,
                limit=_STREAM_LIMIT,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ProcessError(f'Cannot execute {self.cmd[0]}: {e}') from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self.process is not None and self.process.returncode is None:
            await self.terminate()
        if self.terminated and self.repo_path is not None:
            remove_lock_files(self.repo_path)
        return False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    async def lines(self):
        """Yield decoded output lines as they arrive."""
        async for raw in self.process.stdout:
            line = raw.decode(errors='replace').rstrip('\r\n')
            self.tail.append(line)
            yield line

    async def wait(self) -> int:
        return await self.process.wait()

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass

    async def terminate(self) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        self.terminated = True
        if self.process is None or self.process.returncode is not None:
            return

        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(
                asyncio.shield(self.process.wait()), timeout=self.grace_period
            )
        except asyncio.TimeoutError:
            logger.warning(
                f'Process {self.process.pid} ignored SIGTERM for '
                f'{self.grace_period}s, sending SIGKILL'
            )
            self._signal(signal.SIGKILL)
            await self.process.wait()


class _RunState:
    def __init__(self):
        self.handle: Optional[ProcessHandle] = None
        self.cancelled = False


class ProcessRunner:
    """Runs git-svn replays and pushes for migration records.

    Usage:
        runner = ProcessRunner(config.runner)
        result = await runner.run(record.id, params, repo_path, push_url,
                                  on_progress=print)
    """

    def __init__(self, config: RunnerConfig):
        self.config = config
        self._runs: Dict[str, _RunState] = {}
        self.logger = logger.bind(component='ProcessRunner')

    def is_running(self, record_id: str) -> bool:
        return record_id in self._runs

    def pid_for(self, record_id: str) -> Optional[int]:
        state = self._runs.get(record_id)
        if state is None or state.handle is None:
            return None
        return state.handle.pid

    async def run(
        self,
        record_id: str,
        params: JobParams,
        repo_path,
        push_url: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> RunResult:
        """Replay SVN history into ``repo_path`` and push it.

        A fresh working copy is initialised with ``git svn init``. An
        incremental run (checkpoint set) requires the existing working copy
        and only fetches what is new.

        Raises:
            ResumabilityError: If an incremental run has no working copy
            ProcessError: If a step exits nonzero or is terminated
            AuthenticationError: If the source or destination rejects credentials
            NotFoundError: If the source path or destination project is gone
        """
        if record_id in self._runs:
            raise ProcessError(f'A process is already running for {record_id}')

        repo_path = Path(repo_path)
        has_working_copy = (repo_path / '.git').is_dir()
        if params.is_incremental and not has_working_copy:
            raise ResumabilityError(f'Working copy missing at {repo_path}')

        state = _RunState()
        self._runs[record_id] = state
        try:
            support_dir = repo_path.parent
            support_dir.mkdir(parents=True, exist_ok=True)
            env = self._build_env(support_dir, params.credentials)
            authors_file = self._write_authors_file(support_dir, params.authors_mapping)
            authors_prog = self._write_authors_prog(support_dir)

            parser = ProgressParser(
                checkpoint=params.checkpoint,
                expected_head=params.expected_head,
                estimated_rate=self.config.estimated_revision_rate,
            )
            throttle = ProgressThrottle(self.config.progress_interval)

            def handle_line(line: str) -> None:
                if on_log:
                    on_log('info', line)
                info = parser.feed(line)
                if info is not None and on_progress and throttle.ready():
                    on_progress(info)

            def log_line(line: str) -> None:
                if on_log:
                    on_log('info', line)

            if not has_working_copy:
                await self._execute(
                    state,
                    'git svn init',
                    self._init_command(params, repo_path),
                    cwd=support_dir,
                    env=env,
                    repo_path=None,
                    on_line=handle_line,
                    on_spawn=on_spawn,
                )

            await self._execute(
                state,
                'git svn fetch',
                self._fetch_command(params, authors_file, authors_prog),
                cwd=repo_path,
                env=env,
                repo_path=repo_path,
                on_line=handle_line,
                on_spawn=on_spawn,
            )

            if on_progress and parser.current:
                on_progress(parser.snapshot())

            last_revision = parser.last_revision
            if last_revision is None:
                last_revision = await self._current_revision(repo_path, params, env)

            if push_url:
                for label, cmd in self._push_commands(params, push_url):
                    await self._execute(
                        state,
                        label,
                        cmd,
                        cwd=repo_path,
                        env=env,
                        repo_path=repo_path,
                        on_line=log_line,
                        on_spawn=on_spawn,
                    )

            self.logger.info(
                f'Replay of {record_id} finished: {parser.current} revisions, '
                f'last revision {last_revision}'
            )
            return RunResult(
                last_revision=last_revision,
                revisions_processed=parser.current,
                pushed=bool(push_url),
            )
        finally:
            self._runs.pop(record_id, None)

    async def kill(self, record_id: str) -> bool:
        """Terminate the process of a record and clean its lock files.

        Returns:
            True if the record had a run in progress
        """
        state = self._runs.get(record_id)
        if state is None:
            return False

        state.cancelled = True
        handle = state.handle
        if handle is not None:
            self.logger.info(f'Terminating process {handle.pid} for {record_id}')
            await handle.terminate()
            if handle.repo_path is not None:
                remove_lock_files(handle.repo_path)
        return True

    async def _execute(
        self,
        state: _RunState,
        label: str,
        cmd: List[str],
        cwd: Path,
        env: Dict[str, str],
        repo_path: Optional[Path],
        on_line: Optional[Callable[[str], None]] = None,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> None:
        if state.cancelled:
            raise ProcessError(f'{label} cancelled before start', cancelled=True)

        self.logger.info(f'Executing: {" ".join(mask_command(cmd))}')
        handle = ProcessHandle(
            cmd,
            cwd=str(cwd),
            env=env,
            grace_period=self.config.grace_period,
            tail_lines=self.config.tail_lines,
            repo_path=repo_path,
        )
        async with handle:
            state.handle = handle
            if state.cancelled:
                await handle.terminate()
            if on_spawn:
                on_spawn(handle.pid)
            try:
                async for line in handle.lines():
                    if line.strip() and on_line:
                        on_line(line)
                returncode = await handle.wait()
            finally:
                state.handle = None

        tail = list(handle.tail)
        if handle.terminated or state.cancelled:
            raise ProcessError(
                f'{label} terminated', returncode=returncode, tail=tail, cancelled=True
            )
        if returncode != 0:
            error = classify_svn_error('\n'.join(tail), returncode)
            if isinstance(error, ProcessError):
                raise ProcessError(
                    f'{label} exited with code {returncode}',
                    returncode=returncode,
                    tail=tail,
                )
            raise error

    def _init_command(self, params: JobParams, repo_path: Path) -> List[str]:
        cmd = [self.config.git_binary, 'svn', 'init']
        cmd.extend(params.layout.to_git_svn_args())
        cmd.append(f'--prefix={SVN_REF_PREFIX}')
        if params.credentials is not None:
            cmd.extend(['--username', params.credentials.username])
        cmd.extend([params.source_url, str(repo_path)])
        return cmd

    def _fetch_command(
        self, params: JobParams, authors_file: Path, authors_prog: Path
    ) -> List[str]:
        cmd = [
            self.config.git_binary,
            'svn',
            'fetch',
            f'--authors-file={authors_file}',
            f'--authors-prog={authors_prog}',
        ]
        if params.credentials is not None:
            cmd.extend(['--username', params.credentials.username])
        return cmd

    def _push_commands(self, params: JobParams, push_url: str) -> List[tuple]:
        trunk = f'refs/remotes/{SVN_REF_PREFIX}{params.layout.trunk_ref}'
        main = f'{trunk}:refs/heads/{self.config.default_branch}'
        git = self.config.git_binary

        if params.layout.kind == LayoutKind.SINGLE_TRUNK:
            return [('git push', [git, 'push', push_url, main])]

        commands = [
            (
                'git push branches',
                [
                    git,
                    'push',
                    push_url,
                    main,
                    f'refs/remotes/{SVN_REF_PREFIX}*:refs/heads/*',
                    f'^{trunk}',
                    f'^refs/remotes/{SVN_REF_PREFIX}tags/*',
                ],
            )
        ]
        if params.layout.tags_path:
            commands.append(
                (
                    'git push tags',
                    [
                        git,
                        'push',
                        push_url,
                        f'refs/remotes/{SVN_REF_PREFIX}tags/*:refs/tags/*',
                    ],
                )
            )
        return commands

    async def _current_revision(
        self, repo_path: Path, params: JobParams, env: Dict[str, str]
    ) -> Optional[int]:
        """Revision recorded on the trunk ref when a fetch printed nothing new."""
        ref = f'refs/remotes/{SVN_REF_PREFIX}{params.layout.trunk_ref}'
        result = await run_command(
            [self.config.git_binary, 'log', '-1', '--format=%B', ref],
            cwd=str(repo_path),
            env=env,
        )
        if not result.success:
            return None
        match = _GIT_SVN_ID.search(result.stdout + '\n')
        return int(match.group(1)) if match else None

    def _build_env(
        self, support_dir: Path, credentials: Optional[SvnCredentials]
    ) -> Dict[str, str]:
        env = dict(os.environ)
        env['GIT_TERMINAL_PROMPT'] = '0'
        env['LC_ALL'] = 'C'
        if credentials is not None:
            # git-svn asks GIT_ASKPASS for the password, the script echoes
            # it from the environment
            askpass = support_dir / ASKPASS_FILENAME
            askpass.write_text(f'#!/bin/sh\nprintf "%s\\n" "${PASSWORD_ENV}"\n')
            askpass.chmod(0o700)
            env['GIT_ASKPASS'] = str(askpass)
            env['SSH_ASKPASS'] = str(askpass)
            env[PASSWORD_ENV] = credentials.password.get_secret_value()
        return env

    def _write_authors_file(self, support_dir: Path, mapping: Dict[str, str]) -> Path:
        path = support_dir / AUTHORS_FILENAME
        lines = [f'{username} = {identity}' for username, identity in sorted(mapping.items())]
        path.write_text('\n'.join(lines) + ('\n' if lines else ''), encoding='utf-8')
        return path

    def _write_authors_prog(self, support_dir: Path) -> Path:
        """Script giving unmapped usernames a synthetic identity."""
        path = support_dir / AUTHORS_PROG_FILENAME
        domain = shlex.quote(self.config.fallback_email_domain)
        path.write_text(f'#!/bin/sh\necho "$1 <$1@"{domain}">"\n', encoding='utf-8')
        path.chmod(0o700)
        return path
