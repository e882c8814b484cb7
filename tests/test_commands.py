"""Tests for subprocess helpers and svn error classification."""

import pytest

from svn_migrate.exceptions import (
    AuthenticationError,
    NotFoundError,
    ProcessError,
    UnreachableError,
)
from svn_migrate.svn.commands import classify_svn_error, run_command


class TestClassifySvnError:
    """Test svn stderr classification."""

    @pytest.mark.parametrize(
        'stderr,expected',
        [
            ("svn: E170001: Authentication failed for 'https://svn.example.com'", AuthenticationError),
            ('svn: E215004: No more credentials or we tried too many times.', AuthenticationError),
            ("svn: E170000: URL 'https://svn.example.com/nope' non-existent in revision 12", NotFoundError),
            ("svn: E160013: '/repos/app/nope' path not found", NotFoundError),
            ("svn: E670008: Unable to connect to a repository at URL 'svn://host'", UnreachableError),
            ('svn: E000111: Connection refused', UnreachableError),
            ('fatal: something odd happened', ProcessError),
        ],
    )
    def test_classification(self, stderr, expected):
        """Test each family maps to its error type."""
        assert type(classify_svn_error(stderr, 1)) is expected

    def test_process_error_carries_tail(self):
        """Test unclassified errors keep the output tail and code."""
        error = classify_svn_error('line one\nline two', 128)

        assert isinstance(error, ProcessError)
        assert error.returncode == 128
        assert error.tail == ['line one', 'line two']
        assert 'line two' in error.detail

    def test_empty_stderr(self):
        """Test empty output still produces a message."""
        assert 'Unknown error' in str(classify_svn_error('', 1))


class TestRunCommand:
    """Test short command execution."""

    @pytest.mark.asyncio
    async def test_captures_output(self):
        """Test stdout, stderr and return code are captured."""
        result = await run_command(['sh', '-c', 'echo out; echo err >&2; exit 3'])

        assert result.returncode == 3
        assert result.stdout.strip() == 'out'
        assert result.stderr.strip() == 'err'
        assert result.success is False

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path):
        """Test the working directory is honoured."""
        result = await run_command(['pwd'], cwd=str(tmp_path))

        assert result.success
        assert result.stdout.strip().endswith(tmp_path.name)

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        """Test a missing binary raises a process error."""
        with pytest.raises(ProcessError):
            await run_command(['/nonexistent/svn-binary', 'info'])
