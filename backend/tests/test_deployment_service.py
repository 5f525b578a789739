"""
Deployment runner and stale deployment monitor tests.

Tests cover:
- Only one active deployment per host (in-process and database checks)
- Deployment type and source version recorded at creation
- Bulk redeploy skipping busy hosts
- Stale pending / in_progress deployments marked failed
"""

import threading
from datetime import timedelta

import pytest
from django.utils import timezone

from apps.deployments.models import Deployment
from apps.deployments.monitor import fail_stale_deployments
from apps.deployments.services.deployment_service import DeploymentRunner
from apps.hosts.exceptions import DeploymentInProgressError
from apps.hosts.models import ManagedHost


@pytest.fixture
def gate():
    return threading.Event()


@pytest.fixture
def runner(gate):
    calls = []

    def target(deployment_id):
        calls.append(deployment_id)
        gate.wait(5)

    runner = DeploymentRunner(max_workers=2, target=target)
    runner.calls = calls
    yield runner
    gate.set()
    runner.shutdown(wait=True)


@pytest.mark.django_db(transaction=True)
class TestSingleFlight:

    def test_second_request_rejected_while_first_runs(self, host, user, runner, gate):
        first = runner.start_deployment(host, user)

        with pytest.raises(DeploymentInProgressError) as excinfo:
            runner.start_deployment(host, user)

        assert excinfo.value.deployment_id == first.pk
        assert Deployment.objects.filter(host=host).count() == 1

    def test_pending_record_blocks_even_after_worker_exits(self, host, user, runner, gate):
        first = runner.start_deployment(host, user)
        gate.set()
        runner.shutdown(wait=True)

        assert not runner.is_active(host.pk)
        with pytest.raises(DeploymentInProgressError):
            runner.start_deployment(host, user)

        first.transition_to('failed', error_message='manual')
        retry_runner = DeploymentRunner(max_workers=1, target=lambda deployment_id: None)
        try:
            assert retry_runner.start_deployment(host, user).status == 'pending'
        finally:
            retry_runner.shutdown(wait=True)

    def test_returns_pending_deployment_immediately(self, host, user, runner):
        deployment = runner.start_deployment(host, user, triggered_by='webhook')

        assert deployment.status == 'pending'
        assert deployment.triggered_by == 'webhook'
        assert deployment.deployment_type == 'initial'
        assert deployment.log_entries.exists()

    def test_deployed_host_gets_update_with_source_version(self, host, user, runner):
        host.is_deployed = True
        host.deployed_version = 'a1b2c3d'
        host.save()

        deployment = runner.start_deployment(host, user)

        assert deployment.deployment_type == 'update'
        assert deployment.from_version == 'a1b2c3d'

    def test_different_hosts_run_independently(self, host, user, runner):
        other = ManagedHost.objects.create(
            name='h2', host='203.0.113.11', username='root', password='x', created_by=user
        )

        runner.start_deployment(host, user)
        runner.start_deployment(other, user)

        assert Deployment.objects.filter(status='pending').count() == 2

    def test_redeploy_all_skips_busy_hosts(self, host, user, runner):
        other = ManagedHost.objects.create(
            name='h2', host='203.0.113.11', username='root', password='x', created_by=user, is_deployed=True
        )
        host.is_deployed = True
        host.save()
        runner.start_deployment(host, user)

        started, skipped = runner.redeploy_all()

        assert [d.host_id for d in started] == [other.pk]
        assert started[0].triggered_by == 'schedule'
        assert skipped == [host.pk]


@pytest.mark.django_db
class TestStaleMonitor:

    def test_old_in_progress_deployment_fails(self, host, user):
        deployment = Deployment.objects.create(host=host, created_by=user)
        deployment.transition_to('in_progress')
        Deployment.objects.filter(pk=deployment.pk).update(started_at=timezone.now() - timedelta(hours=2))

        assert fail_stale_deployments(stale_minutes=60) == [deployment.pk]

        deployment.refresh_from_db()
        host.refresh_from_db()
        assert deployment.status == 'failed'
        assert deployment.error_message
        assert host.status == 'error'

    def test_recent_deployment_untouched(self, host, user):
        deployment = Deployment.objects.create(host=host, created_by=user)
        deployment.transition_to('in_progress')

        assert fail_stale_deployments(stale_minutes=60) == []

    def test_deployment_still_running_in_process_is_skipped(self, host, user):
        deployment = Deployment.objects.create(host=host, created_by=user)
        Deployment.objects.filter(pk=deployment.pk).update(created_at=timezone.now() - timedelta(hours=2))

        class BusyRunner:
            def is_active(self, host_id):
                return True

        assert fail_stale_deployments(stale_minutes=60, runner=BusyRunner()) == []
