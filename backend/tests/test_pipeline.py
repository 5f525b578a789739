"""
Deployment pipeline tests.

Tests cover:
- A first deploy ends with the host running and the deployment completed
- Build failures detected from the artifact check and from compiler output
- A failed clone keeps the installed toolchain; the next deploy skips it
- Re-running the full pipeline on a deployed host is a no-op in effect
- Deployment status only moves forward
"""

import pytest

from apps.deployments import events
from apps.deployments.models import Deployment
from apps.deployments.services.pipeline import DeploymentPipeline
from apps.hosts.exceptions import InvalidTransitionError

from .conftest import no_sleep

pytestmark = pytest.mark.django_db


def deploy(host, user, manager):
    deployment = Deployment.objects.create(host=host, created_by=user)
    DeploymentPipeline(deployment, manager=manager, sleep=no_sleep).run()
    deployment.refresh_from_db()
    host.refresh_from_db()
    return deployment


class TestSuccessfulDeploy:

    def test_initial_deploy_completes_and_host_runs(self, host, user, source, manager, remote):
        deployment = deploy(host, user, manager)

        assert deployment.status == 'completed'
        assert deployment.to_version == remote.commit
        assert deployment.started_at is not None
        assert deployment.completed_at is not None
        assert host.status == 'running'
        assert host.is_deployed is True
        assert host.deployed_version == remote.commit
        assert host.last_error is None

    def test_every_stage_logs_progress(self, host, user, source, manager):
        deployment = deploy(host, user, manager)

        messages = [entry.message for entry in deployment.log_entries.all()]
        assert any('[1/11]' in m for m in messages)
        assert any('[11/11]' in m for m in messages)
        assert deployment.log_entries.filter(level='success').exists()

    def test_callback_key_written_then_reconciled_from_remote(self, host, user, source, manager, remote):
        remote.callback_key = 'f' * 64

        deploy(host, user, manager)

        assert remote.ran('api_key.txt')
        assert host.callback_api_key == 'f' * 64

    def test_instance_descriptor_carries_owner_license(self, host, user, source, manager, remote):
        deploy(host, user, manager)

        writes = remote.ran('instance.conf')
        assert writes
        assert user.license_key in writes[0]

    def test_old_binary_removed_before_build(self, host, user, source, manager, remote):
        deploy(host, user, manager)

        remove_index = remote.commands.index('rm -f /opt/app/app')
        build_index = remote.commands.index(remote.ran('go build')[0])
        assert remove_index < build_index

    def test_shallow_clone_failure_falls_back_to_full_clone(self, host, user, source, manager, remote):
        remote.shallow_clone_fails = True

        deployment = deploy(host, user, manager)

        assert deployment.status == 'completed'
        clones = remote.ran('git clone')
        assert '--depth 1' in clones[0]
        assert '--depth 1' not in clones[1]
        assert deployment.log_entries.filter(level='warning', message__contains='完整克隆').exists()


class TestFailedDeploy:

    def test_missing_artifact_fails_even_with_zero_exit(self, host, user, source, manager, remote):
        remote.build_creates_binary = False

        deployment = deploy(host, user, manager)

        assert deployment.status == 'failed'
        assert '二进制' in deployment.error_message
        assert host.status == 'error'
        assert host.last_error == deployment.error_message
        assert not remote.ran('systemctl start')

    def test_compiler_errors_in_output_fail_the_build(self, host, user, source, manager, remote):
        remote.build_output = './main.go:12:2: undefined: handler'

        deployment = deploy(host, user, manager)

        assert deployment.status == 'failed'
        assert deployment.log_entries.filter(level='error').exists()

    def test_clone_failure_keeps_toolchain_and_next_deploy_skips_install(self, host, user, source, manager, remote):
        remote.clone_fails = True

        first = deploy(host, user, manager)

        assert first.status == 'failed'
        assert first.error_message
        assert host.status == 'error'
        assert remote.go_version == '1.22.5'
        assert len(remote.ran('tar -C /usr/local')) == 1

        remote.clone_fails = False
        seen = len(remote.commands)
        second = deploy(host, user, manager)

        later = remote.commands[seen:]
        assert second.status == 'completed'
        assert host.status == 'running'
        assert not [c for c in later if 'tar -C /usr/local' in c]
        assert [c for c in later if 'git clone' in c]

    def test_service_that_never_becomes_active_fails(self, host, user, source, manager, remote):
        remote.service_becomes_active = False

        deployment = deploy(host, user, manager)

        assert deployment.status == 'failed'
        assert host.status == 'error'
        assert host.is_deployed is False

    def test_missing_repository_url_fails(self, host, user, source, manager):
        source.repo_url = ''
        source.save()

        deployment = deploy(host, user, manager)

        assert deployment.status == 'failed'
        assert '仓库' in deployment.error_message

    def test_unreachable_host_fails_deployment(self, host, user, source, unreachable_manager):
        deployment = deploy(host, user, unreachable_manager)

        assert deployment.status == 'failed'
        assert 'timed out' in deployment.error_message
        assert host.status == 'error'


class TestIdempotence:

    def test_redeploy_of_running_host_reaches_same_state(self, host, user, source, manager, remote):
        first = deploy(host, user, manager)
        remote.commit = 'e4f5a6b'
        second = deploy(host, user, manager)

        assert first.status == 'completed'
        assert second.status == 'completed'
        assert host.status == 'running'
        assert host.is_deployed is True
        assert host.deployed_version == 'e4f5a6b'
        assert len(remote.ran('tar -C /usr/local')) == 1

    def test_firewall_rules_are_checked_before_insert(self, host, user, source, manager, remote):
        deploy(host, user, manager)

        rules = remote.ran('iptables -C INPUT')
        assert rules
        assert 'iptables -I INPUT -p tcp --dport 443' in rules[0]


class TestStatusTransitions:

    def test_terminal_deployment_cannot_move_back(self, host, user, source, manager):
        deployment = deploy(host, user, manager)

        with pytest.raises(InvalidTransitionError):
            deployment.transition_to('in_progress')
        with pytest.raises(InvalidTransitionError):
            deployment.transition_to('pending')

    def test_pipeline_refuses_to_rerun_finished_deployment(self, host, user, source, manager):
        deployment = deploy(host, user, manager)

        with pytest.raises(InvalidTransitionError):
            DeploymentPipeline(deployment, manager=manager, sleep=no_sleep).run()

    def test_status_events_are_published_in_order(self, host, user, source, manager):
        deployment = Deployment.objects.create(host=host, created_by=user)
        received = []
        events.subscribe(deployment.pk, lambda deployment_id, event: received.append(event))
        try:
            DeploymentPipeline(deployment, manager=manager, sleep=no_sleep).run()
        finally:
            events.unsubscribe(deployment.pk)

        statuses = [e['status'] for e in received if e['type'] == 'status']
        assert statuses == ['in_progress', 'completed']
        assert any(e['type'] == 'log' for e in received)
