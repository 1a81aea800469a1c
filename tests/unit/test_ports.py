"""Unit tests for port reclamation."""

import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

from devstand.supervisor.ports import PortReclaimer, parse_lsof_pids, parse_netstat_pids

NETSTAT_OUTPUT = """
Active Connections

  Proto  Local Address          Foreign Address        State           PID
  TCP    0.0.0.0:3000           0.0.0.0:0              LISTENING       4312
  TCP    0.0.0.0:30001          0.0.0.0:0              LISTENING       777
  TCP    127.0.0.1:3000         127.0.0.1:51234        ESTABLISHED     4312
  TCP    [::]:3000              [::]:0                 LISTENING       4312
  TCP    0.0.0.0:3000           0.0.0.0:0              LISTENING       0
  UDP    0.0.0.0:3000           *:*                                    999
"""


class TestParsers:
    """Test parsing of platform listing tools."""

    def test_lsof(self):
        assert parse_lsof_pids("123\n456\n123\n\n") == [123, 456]

    def test_lsof_ignores_noise(self):
        assert parse_lsof_pids("lsof: WARNING\n42\n") == [42]

    def test_netstat_listening_only(self):
        assert parse_netstat_pids(NETSTAT_OUTPUT, 3000) == [4312]

    def test_netstat_other_port(self):
        assert parse_netstat_pids(NETSTAT_OUTPUT, 8080) == []


class TestPortReclaimer:
    """Test that reclamation is best-effort and never raises."""

    @pytest.mark.asyncio
    async def test_free_port_nothing_listening(self):
        reclaimer = PortReclaimer()

        with patch.object(reclaimer, "find_pids", AsyncMock(return_value=[])):
            assert await reclaimer.free_port(3000) == []

    @pytest.mark.asyncio
    async def test_listing_failure_returns_empty(self):
        reclaimer = PortReclaimer()

        with patch.object(reclaimer, "find_pids", AsyncMock(side_effect=RuntimeError("boom"))):
            assert await reclaimer.free_port(3000) == []

    @pytest.mark.asyncio
    async def test_terminates_listeners(self):
        reclaimer = PortReclaimer(grace_period=0.1)
        terminate = AsyncMock(side_effect=[True, PermissionError("denied")])

        with patch.object(reclaimer, "find_pids", AsyncMock(return_value=[101, 202])), patch(
            "devstand.supervisor.ports.terminate_tree", terminate
        ):
            pids = await reclaimer.free_port(3000)

        assert pids == [101, 202]
        assert [c.args[0] for c in terminate.call_args_list] == [101, 202]

    @pytest.mark.skipif(sys.platform.startswith("win"), reason="lsof listing")
    @pytest.mark.asyncio
    async def test_own_pid_excluded(self):
        reclaimer = PortReclaimer()

        with patch.object(reclaimer, "_run", AsyncMock(return_value=f"{os.getpid()}\n4321\n")):
            assert await reclaimer.find_pids(3000) == [4321]

    @pytest.mark.skipif(sys.platform.startswith("win"), reason="lsof listing")
    @pytest.mark.asyncio
    async def test_psutil_fallback_when_tool_missing(self):
        reclaimer = PortReclaimer()

        with patch.object(reclaimer, "_run", AsyncMock(return_value=None)), patch.object(
            reclaimer, "_pids_from_psutil", return_value=[55]
        ) as fallback:
            assert await reclaimer.find_pids(3000) == [55]

        fallback.assert_called_once_with(3000)

    @pytest.mark.asyncio
    async def test_missing_tool_returns_none(self):
        reclaimer = PortReclaimer()

        assert await reclaimer._run(["definitely-not-a-real-tool-12345"]) is None
