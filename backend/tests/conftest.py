"""Pytest configuration: fake SSH transport, a simulated remote host and model fixtures."""

import pytest

from apps.accounts.models import User
from apps.deployments.models import DeploymentSource
from apps.hosts.exceptions import RemoteConnectionError
from apps.hosts.models import ManagedHost
from apps.hosts.services.command_executor import CommandResult
from apps.hosts.services.connection_manager import ConnectionManager, RemoteSession


class FakeTransport:
    def __init__(self):
        self.active = True

    def is_active(self):
        return self.active


class FakeClient:
    """Stands in for paramiko.SSHClient; commands go through the manager's run callable."""

    def __init__(self):
        self.transport = FakeTransport()
        self.closed = False

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True
        self.transport.active = False


class SimulatedHost:
    """
    Answers remote commands the way a fresh Ubuntu host would.

    Keeps just enough state (toolchain, binary, unit, service) for the
    pipeline and status tests to observe idempotent behaviour across runs.
    """

    def __init__(self):
        self.commands = []
        self.go_version = None
        self.binary = False
        self.unit_installed = False
        self.service_active = False
        self.service_becomes_active = True
        self.probe_ok = True
        self.clone_fails = False
        self.shallow_clone_fails = False
        self.build_creates_binary = True
        self.build_output = ''
        self.commit = 'a1b2c3d'
        self.callback_key = None

    def __call__(self, session, command, timeout=None):
        self.commands.append(command)
        return self.respond(command)

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]

    def respond(self, c):
        ok = lambda out='': CommandResult(0, out, '')  # noqa: E731

        if c == 'true':
            return ok() if self.probe_ok else CommandResult(1, '', '')
        if 'tar -C /usr/local' in c:
            self.go_version = '1.22.5'
            return ok('go version go1.22.5 linux/amd64')
        if 'version 2>/dev/null || echo NOT_FOUND' in c:
            return ok(f'go version go{self.go_version} linux/amd64' if self.go_version else 'NOT_FOUND')
        if '/etc/os-release 2>/dev/null' in c:
            return ok('ubuntu 22.04')
        if 'for pm in' in c:
            return ok('apt-get')
        if 'command -v git' in c:
            return ok('/usr/bin/git')
        if 'git clone' in c:
            if self.clone_fails or (self.shallow_clone_fails and '--depth 1' in c):
                return CommandResult(128, '', 'fatal: repository not found')
            return ok("Cloning into '/opt/app/src'...")
        if '-name go.mod' in c:
            return ok('/opt/app/src')
        if 'rev-parse --short HEAD' in c:
            return ok(self.commit)
        if c.strip() == 'rm -f /opt/app/app':
            self.binary = False
            return ok()
        if 'go build' in c:
            self.binary = self.build_creates_binary
            return ok(self.build_output)
        if 'test -f' in c:
            return ok('PRESENT' if self.binary else 'MISSING')
        if '/etc/systemd/system/' in c:
            self.unit_installed = True
            return ok()
        if 'systemctl start' in c or 'systemctl restart' in c:
            self.service_active = self.service_becomes_active
            return ok()
        if 'systemctl stop' in c and 'systemd-resolved' not in c:
            self.service_active = False
            return ok()
        if 'systemctl is-active' in c and 'systemd-resolved' not in c:
            return ok('active' if self.service_active else 'inactive')
        if 'systemctl cat' in c:
            return ok('installed' if self.unit_installed else 'missing')
        if 'ActiveEnterTimestamp' in c:
            return ok('120')
        if c.startswith('cat ') and 'api_key.txt' in c:
            return ok(self.callback_key or '')
        return ok()


class FakeConnectionManager(ConnectionManager):
    """Connection manager that opens fake sessions instead of real SSH connections."""

    def __init__(self, run, fail_with=None):
        super().__init__(run=run, probe_timeout=3, monitor_interval=30)
        self.fail_with = fail_with
        self.connect_count = 0

    def connect(self, host):
        if self.fail_with is not None:
            raise self.fail_with
        self.connect_count += 1
        return RemoteSession(host.pk, FakeClient(), host.host)

    def open_session(self, host, port, username, password=None, private_key=None):
        if self.fail_with is not None:
            raise self.fail_with
        return RemoteSession(None, FakeClient(), host)


def no_sleep(seconds):
    return None


@pytest.fixture(autouse=True)
def encryption_key(settings):
    settings.FIELD_ENCRYPTION_KEY = 'test-encryption-key'
    settings.DEPLOYMENT_VERIFY_GRACE_SECONDS = 0
    settings.MAX_HOSTS_PER_USER = 2


@pytest.fixture
def user(db):
    return User.objects.create_user(username='alice', password='pass12345')


@pytest.fixture
def other_user(db):
    return User.objects.create_user(username='bob', password='pass12345')


@pytest.fixture
def host(user):
    return ManagedHost.objects.create(
        name='h1',
        host='203.0.113.10',
        port=22,
        username='root',
        auth_type='password',
        password='s3cret',
        created_by=user,
    )


@pytest.fixture
def source(db):
    config = DeploymentSource.get_source()
    config.repo_url = 'https://git.example.com/app.git'
    config.branch = 'main'
    config.control_port = 0
    config.save()
    return config


@pytest.fixture
def remote():
    return SimulatedHost()


@pytest.fixture
def manager(remote):
    return FakeConnectionManager(run=remote)


@pytest.fixture
def unreachable_manager(remote):
    return FakeConnectionManager(
        run=remote,
        fail_with=RemoteConnectionError('无法连接到主机: timed out', reason='timeout'),
    )
