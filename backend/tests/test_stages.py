"""
Individual pipeline stage tests against the simulated host.
"""

import pytest

from apps.deployments.models import Deployment
from apps.deployments.services import stages
from apps.hosts.exceptions import OrchestrationError
from apps.hosts.services.command_executor import CommandResult

from .conftest import no_sleep

pytestmark = pytest.mark.django_db


@pytest.fixture
def ctx(host, user, source, manager):
    deployment = Deployment.objects.create(host=host, created_by=user)
    session = manager.acquire(host.pk)
    return stages.PipelineContext(deployment, source, manager, session, sleep=no_sleep)


class TestParseVersion:

    def test_parses_go_version_output(self):
        assert stages.parse_version('go version go1.22.5 linux/amd64') == (1, 22, 5)

    def test_short_versions_compare_correctly(self):
        assert stages.parse_version('go1.23') > stages.parse_version('go1.22.5')
        assert stages.parse_version('go1.9.7') < stages.parse_version('go1.22.0')

    def test_unrecognised_output(self):
        assert stages.parse_version('NOT_FOUND') is None


class TestPreflight:

    def test_detects_package_manager(self, ctx):
        stages.PreflightStage().run(ctx)

        assert ctx.package_manager == 'apt-get'

    def test_missing_package_manager_fails(self, ctx, remote):
        remote.respond = lambda c: CommandResult(0, '', '')

        with pytest.raises(OrchestrationError):
            stages.PreflightStage().run(ctx)

    def test_unrepairable_sources_fail(self, ctx, remote):
        original = remote.respond
        remote.respond = lambda c: CommandResult(0, 'BROKEN', '') if 'apt-get update' in c else original(c)

        with pytest.raises(OrchestrationError):
            stages.PreflightStage().run(ctx)


class TestToolchain:

    def test_satisfied_version_skips_install(self, ctx, remote):
        remote.go_version = '1.23.1'
        ctx.package_manager = 'apt-get'

        stages.ToolchainStage().run(ctx)

        assert not remote.ran('tar -C /usr/local')

    def test_old_version_is_upgraded(self, ctx, remote, source):
        remote.go_version = '1.19.0'
        ctx.package_manager = 'apt-get'

        stages.ToolchainStage().run(ctx)

        install = remote.ran('tar -C /usr/local')[0]
        assert source.toolchain_url_template.format(version=source.toolchain_version) in install
        assert f'-{ctx.deployment.pk}.tar.gz' in install


class TestCredentials:

    def test_generates_and_persists_callback_key(self, ctx, host, remote):
        stages.CredentialStage().run(ctx)

        host.refresh_from_db()
        assert len(ctx.callback_key) == 64
        assert host.callback_api_key == ctx.callback_key
        assert ctx.callback_key in remote.ran('api_key.txt')[0]


class TestNetwork:

    def test_disabled_resolver_release_runs_nothing(self, ctx, remote, source):
        source.release_resolver_port = False
        before = len(remote.commands)

        stages.NetworkStage().run(ctx)

        assert len(remote.commands) == before

    def test_pins_configured_dns_servers(self, ctx, remote):
        stages.NetworkStage().run(ctx)

        write = remote.ran('/etc/resolv.conf')[0]
        assert 'chattr -i' in write
        assert 'nameserver 8.8.8.8' in write


class TestServiceUnit:

    def test_unit_restarts_on_failure(self, ctx, source):
        source.service_args = '-c {install_path}/data'

        unit = stages.unit_file(ctx)

        assert 'Restart=on-failure' in unit
        assert 'ExecStart=/opt/app/app -c /opt/app/data' in unit
        assert 'WantedBy=multi-user.target' in unit

    def test_failed_start_raises_with_diagnostics(self, ctx, remote):
        original = remote.respond
        remote.respond = (
            lambda c: CommandResult(1, 'Job for app.service failed', '') if 'systemctl start' in c else original(c)
        )

        with pytest.raises(OrchestrationError) as excinfo:
            stages.ServiceStage().run(ctx)

        assert 'Job for app.service failed' in str(excinfo.value)


class TestVerify:

    def test_first_run_configuration_uses_callback_key(self, ctx, remote, source):
        source.control_port = 5555
        remote.service_active = True
        remote.callback_key = 'k' * 64
        original = remote.respond

        def respond(command):
            if 'http_code' in command:
                return CommandResult(0, '200', '')
            if 'api.ipify.org' in command:
                return CommandResult(0, '198.51.100.7', '')
            return original(command)

        remote.respond = respond

        stages.VerifyStage().run(ctx)

        posts = remote.ran('/api/config')
        assert len(posts) == 2
        assert 'Bearer ' + 'k' * 64 in posts[0]
        assert 'autocert' in posts[0]
        assert '198.51.100.7' in posts[1]

    def test_unreachable_control_port_is_only_a_warning(self, ctx, remote, source):
        source.control_port = 5555
        remote.service_active = True
        original = remote.respond
        remote.respond = lambda c: CommandResult(0, '000', '') if 'http_code' in c else original(c)

        stages.VerifyStage().run(ctx)

        assert not remote.ran('/api/config')
        assert ctx.deployment.log_entries.filter(level='warning').exists()
