"""
Connection manager and command executor tests.

Tests cover:
- Session reuse while the liveness probe passes
- A fresh session after a failed probe or a dead transport
- The monitor sweep never evicts a leased session
- Executor output capture, timeout and dead-transport handling
"""

import pytest

from apps.hosts.exceptions import CommandTimeoutError, HostNotFoundError, RemoteConnectionError
from apps.hosts.services import command_executor
from apps.hosts.services.command_executor import CommandResult
from apps.hosts.services.connection_manager import RemoteSession
from apps.hosts.utils import test_ssh_connection as check_connection

from .conftest import FakeClient, FakeConnectionManager


@pytest.mark.django_db
class TestAcquire:

    def test_cached_session_is_reused_while_probe_passes(self, host, manager):
        first = manager.acquire(host.pk)
        second = manager.acquire(host.pk)

        assert first is second
        assert manager.connect_count == 1

    def test_failed_probe_returns_new_session(self, host, manager, remote):
        first = manager.acquire(host.pk)
        remote.probe_ok = False

        second = manager.acquire(host.pk)

        assert second is not first
        assert first.client.closed is True
        assert manager.connect_count == 2

    def test_dead_transport_skips_probe_and_reconnects(self, host, manager, remote):
        first = manager.acquire(host.pk)
        first.client.transport.active = False

        second = manager.acquire(host.pk)

        assert second is not first
        assert 'true' not in remote.commands

    def test_probe_timeout_counts_as_dead(self, host, remote):
        def run(session, command, timeout=None):
            if command == 'true':
                raise CommandTimeoutError(command, timeout)
            return remote(session, command, timeout)

        manager = FakeConnectionManager(run=run)
        first = manager.acquire(host.pk)
        assert manager.acquire(host.pk) is not first

    def test_missing_host_raises_not_found(self, db, manager):
        with pytest.raises(HostNotFoundError):
            manager.acquire(999999)

    def test_connect_failure_propagates_with_reason(self, host, unreachable_manager):
        with pytest.raises(RemoteConnectionError) as excinfo:
            unreachable_manager.acquire(host.pk)
        assert excinfo.value.reason == 'timeout'

    def test_release_closes_and_forgets_session(self, host, manager):
        session = manager.acquire(host.pk)

        manager.release(host.pk)

        assert session.client.closed is True
        assert manager.status() == {}
        assert manager.acquire(host.pk) is not session


@pytest.mark.django_db
class TestMonitor:

    def test_sweep_evicts_dead_idle_sessions(self, host, manager, remote):
        session = manager.acquire(host.pk)
        remote.probe_ok = False

        evicted = manager.probe_all()

        assert evicted == [host.pk]
        assert session.client.closed is True

    def test_sweep_keeps_leased_sessions(self, host, manager, remote):
        with manager.lease(host.pk) as session:
            remote.probe_ok = False
            assert manager.probe_all() == []
            assert session.client.closed is False
            assert manager.status()[host.pk]['in_use'] is True

        assert manager.probe_all() == [host.pk]

    def test_sweep_keeps_healthy_sessions(self, host, manager):
        session = manager.acquire(host.pk)

        assert manager.probe_all() == []
        assert manager.acquire(host.pk) is session

    def test_release_all_closes_everything(self, host, manager):
        session = manager.acquire(host.pk)

        manager.release_all()

        assert session.client.closed is True
        assert manager.status() == {}


class FakeChannel:
    def __init__(self, stdout=b'', stderr=b'', exit_code=0, finishes=True):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_code = exit_code
        self.finishes = finishes
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        return self._stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        return self._stderr.pop(0)

    def exit_status_ready(self):
        return self.finishes

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


def session_with(channel):
    client = FakeClient()
    client.transport.open_session = lambda: channel
    return RemoteSession(1, client, '203.0.113.10')


class TestCommandExecutor:

    def test_captures_streams_and_exit_code(self):
        channel = FakeChannel(stdout=b'hello\n', stderr=b'warn\n', exit_code=3)

        result = command_executor.run(session_with(channel), 'echo hello', timeout=5)

        assert channel.command == 'echo hello'
        assert result.exit_code == 3
        assert result.stdout == 'hello'
        assert result.stderr == 'warn'
        assert not result.ok
        assert channel.closed is True

    def test_timeout_stops_waiting_and_closes_channel(self):
        channel = FakeChannel(finishes=False)

        with pytest.raises(CommandTimeoutError) as excinfo:
            command_executor.run(session_with(channel), 'sleep 100', timeout=0.2)

        assert excinfo.value.timeout == 0.2
        assert isinstance(excinfo.value, TimeoutError)
        assert channel.closed is True

    def test_dead_transport_raises_connection_error(self):
        session = session_with(FakeChannel())
        session.client.transport.active = False

        with pytest.raises(RemoteConnectionError):
            command_executor.run(session, 'true')

    def test_result_helpers(self):
        result = CommandResult(0, 'out', 'err')

        assert result.ok
        assert result.output == 'out\nerr'
        assert result.to_dict() == {'code': 0, 'stdout': 'out', 'stderr': 'err'}

    def test_sudo_prefix_only_for_non_root(self):
        assert command_executor.sudo_prefix('root') == ''
        assert command_executor.sudo_prefix('ubuntu') == 'sudo -n '


class TestConnectionCheck:

    def test_success_reports_hostname(self, manager, remote):
        remote.respond = lambda c: CommandResult(0, 'Connection successful\nweb-01', '')

        result = check_connection('203.0.113.10', 22, 'root', password='x', manager=manager)

        assert result == {'success': True, 'hostname': 'web-01'}

    def test_wrong_credentials_return_error_without_raising(self, unreachable_manager):
        unreachable_manager.fail_with = RemoteConnectionError('认证失败', reason='auth')

        result = check_connection('203.0.113.10', 22, 'root', password='wrong', manager=unreachable_manager)

        assert result['success'] is False
        assert result['reason'] == 'auth'
        assert result['error']
