"""Tests for the SVN connection prober."""

import pytest
from unittest.mock import AsyncMock, patch

from pydantic import SecretStr

from svn_migrate.config.config import RunnerConfig
from svn_migrate.exceptions import AuthenticationError, NotFoundError
from svn_migrate.models.job import SvnCredentials
from svn_migrate.models.migration import LayoutConfig
from svn_migrate.svn.commands import CommandResult
from svn_migrate.svn.prober import ConnectionProber

SVN_INFO = """Path: app
URL: https://svn.example.com/repos/app
Repository Root: https://svn.example.com/repos/app
Repository UUID: 0b3c7e2a-1111-2222-3333-444455556666
Revision: 12
Node Kind: directory
"""

SVN_LOG = """------------------------------------------------------------------------
r12 | alice | 2023-05-01 10:00:00 +0000 (Mon, 01 May 2023)
------------------------------------------------------------------------
r11 | bob | 2023-04-30 10:00:00 +0000 (Sun, 30 Apr 2023)
------------------------------------------------------------------------
r10 | (no author) | 2023-04-29 10:00:00 +0000 (Sat, 29 Apr 2023)
------------------------------------------------------------------------
r9 | alice | 2023-04-28 10:00:00 +0000 (Fri, 28 Apr 2023)
------------------------------------------------------------------------
"""


def _fake_svn(responses):
    """run_command replacement answering by subcommand and URL suffix."""

    async def fake(cmd, cwd=None, env=None, timeout=None):
        subcommand = cmd[1]
        url = next(arg for arg in cmd if '://' in arg)
        for (sub, suffix), result in responses.items():
            if sub == subcommand and url.endswith(suffix):
                return result
        return CommandResult(1, '', f"svn: E170000: URL '{url}' non-existent in revision 12")

    return AsyncMock(side_effect=fake)


class TestConnectionProber:
    """Test connection checks and previews."""

    def setup_method(self):
        """Set up test fixtures."""
        self.prober = ConnectionProber(RunnerConfig())
        self.url = 'https://svn.example.com/repos/app'
        self.credentials = SvnCredentials(username='alice', password=SecretStr('secret'))

    @pytest.mark.asyncio
    async def test_test_connection(self):
        """Test a reachable repository reports its head and entries."""
        fake = _fake_svn(
            {
                ('info', '/app'): CommandResult(0, SVN_INFO, ''),
                ('list', '/app'): CommandResult(0, 'branches/\ntags/\ntrunk/\n', ''),
            }
        )

        with patch('svn_migrate.svn.prober.run_command', fake):
            result = await self.prober.test_connection(self.url, self.credentials)

        assert result.reachable is True
        assert result.head_revision == 12
        assert result.root_entries == ['branches', 'tags', 'trunk']
        cmd = fake.call_args_list[0].args[0]
        assert cmd[:2] == ['svn', 'info']
        assert '--non-interactive' in cmd
        assert cmd[cmd.index('--username') + 1] == 'alice'

    @pytest.mark.asyncio
    async def test_authentication_failure(self):
        """Test rejected credentials raise an authentication error."""
        fake = AsyncMock(
            return_value=CommandResult(1, '', 'svn: E170001: Authentication failed')
        )

        with patch('svn_migrate.svn.prober.run_command', fake):
            with pytest.raises(AuthenticationError):
                await self.prober.test_connection(self.url, self.credentials)

    @pytest.mark.asyncio
    async def test_head_revision(self):
        """Test head revision lookup."""
        fake = _fake_svn({('info', '/app'): CommandResult(0, SVN_INFO, '')})

        with patch('svn_migrate.svn.prober.run_command', fake):
            assert await self.prober.head_revision(self.url) == 12

    @pytest.mark.asyncio
    async def test_list_missing_directory(self):
        """Test a missing directory lists as empty."""
        fake = _fake_svn({})

        with patch('svn_migrate.svn.prober.run_command', fake):
            assert await self.prober.list_directory(f'{self.url}/branches') == []

    @pytest.mark.asyncio
    async def test_missing_repository(self):
        """Test a missing repository raises not found."""
        fake = _fake_svn({})

        with patch('svn_migrate.svn.prober.run_command', fake):
            with pytest.raises(NotFoundError):
                await self.prober.head_revision(self.url)

    @pytest.mark.asyncio
    async def test_extract_users(self):
        """Test distinct authors are extracted."""
        fake = _fake_svn({('log', '/app'): CommandResult(0, SVN_LOG, '')})

        with patch('svn_migrate.svn.prober.run_command', fake):
            users = await self.prober.extract_users(self.url)

        assert users == ['alice', 'bob']
        assert '--quiet' in fake.call_args.args[0]

    @pytest.mark.asyncio
    async def test_preview_standard_layout(self):
        """Test preview lists branches, tags and unmapped authors."""
        fake = _fake_svn(
            {
                ('info', '/app'): CommandResult(0, SVN_INFO, ''),
                ('log', '/app'): CommandResult(0, SVN_LOG, ''),
                ('list', '/branches'): CommandResult(0, 'feature-x/\n', ''),
            }
        )

        with patch('svn_migrate.svn.prober.run_command', fake):
            preview = await self.prober.preview_migration(
                self.url, authors_mapping={'alice': 'Alice <alice@example.com>'}
            )

        assert preview.branches == ['feature-x']
        assert preview.tags == []
        assert preview.authors == ['alice', 'bob']
        assert preview.unmapped_authors == ['bob']
        assert preview.estimated_revision_count == 4
        assert preview.head_revision == 12
        assert preview.to_dict()['head_revision'] == 12

    @pytest.mark.asyncio
    async def test_preview_single_trunk_skips_listing(self):
        """Test a single-trunk layout has no branches or tags."""
        fake = _fake_svn(
            {
                ('info', '/app'): CommandResult(0, SVN_INFO, ''),
                ('log', '/app'): CommandResult(0, SVN_LOG, ''),
            }
        )

        with patch('svn_migrate.svn.prober.run_command', fake):
            preview = await self.prober.preview_migration(
                self.url, layout=LayoutConfig.parse('single_trunk')
            )

        assert preview.branches == [] and preview.tags == []
        assert [call.args[0][1] for call in fake.call_args_list] == ['info', 'log']


class TestParsers:
    """Test static output parsers."""

    def test_parse_svn_info(self):
        info = ConnectionProber.parse_svn_info(SVN_INFO)

        assert info['Revision'] == '12'
        assert info['URL'] == 'https://svn.example.com/repos/app'

    def test_parse_svn_list(self):
        assert ConnectionProber.parse_svn_list('trunk/\n\nREADME.txt\n') == ['trunk', 'README.txt']

    def test_parse_users_from_log(self):
        users, count = ConnectionProber.parse_users_from_log(SVN_LOG)

        assert users == ['alice', 'bob']
        assert count == 4
