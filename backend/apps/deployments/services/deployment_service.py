"""
部署服务

部署任务在有界线程池中异步执行，HTTP请求创建任务后立即返回。
同一主机同一时间只允许一个进行中的部署任务（进程内锁 + 数据库检查）。
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.db import close_old_connections, connection

from apps.hosts.exceptions import DeploymentInProgressError
from apps.hosts.models import ManagedHost
from ..models import Deployment
from .pipeline import DeploymentPipeline

logger = logging.getLogger(__name__)


def run_pipeline(deployment_id):
    """在工作线程中执行部署流水线"""
    deployment = Deployment.objects.select_related('host', 'host__created_by').get(pk=deployment_id)
    DeploymentPipeline(deployment).run()


class DeploymentRunner:
    """部署任务调度器"""

    def __init__(self, max_workers=None, target=None):
        self.max_workers = max_workers or settings.DEPLOYMENT_MAX_WORKERS
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='Deployment')
        self._lock = threading.Lock()
        self._active_hosts = set()
        self._target = target or run_pipeline

    def is_active(self, host_id) -> bool:
        with self._lock:
            return host_id in self._active_hosts

    def start_deployment(self, host: ManagedHost, user, triggered_by='manual') -> Deployment:
        """
        创建部署任务并提交到线程池

        Returns:
            Deployment: 状态为 pending 的部署任务（执行结果通过部署日志查看）

        Raises:
            DeploymentInProgressError: 主机已有进行中的部署任务
        """
        with self._lock:
            active = Deployment.objects.filter(host=host, status__in=Deployment.ACTIVE_STATUSES).first()
            if host.pk in self._active_hosts or active is not None:
                raise DeploymentInProgressError(host.pk, active.pk if active else None)

            deployment = Deployment.objects.create(
                host=host,
                created_by=user,
                deployment_type='update' if host.is_deployed else 'initial',
                triggered_by=triggered_by,
                from_version=host.deployed_version,
                status='pending',
            )
            self._active_hosts.add(host.pk)

        deployment.log('info', f'部署任务已创建（触发方式: {deployment.get_triggered_by_display()}）')
        logger.info(f'部署任务已创建: deployment_id={deployment.pk}, host_id={host.pk}, type={deployment.deployment_type}')

        try:
            self._executor.submit(self._execute, deployment.pk, host.pk)
        except RuntimeError as e:
            with self._lock:
                self._active_hosts.discard(host.pk)
            logger.error(f'提交部署任务失败: deployment_id={deployment.pk}, error={e}')
            deployment.transition_to('failed', error_message=f'提交部署任务失败: {e}')
        return deployment

    def _execute(self, deployment_id, host_id):
        close_old_connections()
        try:
            self._target(deployment_id)
        except Exception as e:
            logger.error(f'部署任务执行异常: deployment_id={deployment_id}, error={e}', exc_info=True)
        finally:
            with self._lock:
                self._active_hosts.discard(host_id)
            # 工作线程持有的数据库连接不会被请求周期回收
            connection.close()

    def redeploy_all(self, triggered_by='schedule'):
        """
        为所有已部署的主机创建更新任务，已有进行中任务的主机跳过

        Returns:
            tuple: (已创建的部署任务列表, 跳过的主机ID列表)
        """
        started = []
        skipped = []
        for host in ManagedHost.objects.filter(is_deployed=True).select_related('created_by'):
            try:
                started.append(self.start_deployment(host, host.created_by, triggered_by=triggered_by))
            except DeploymentInProgressError:
                skipped.append(host.pk)
        logger.info(f'批量重新部署: 已创建 {len(started)} 个任务，跳过 {len(skipped)} 台主机')
        return started, skipped

    def shutdown(self, wait=False):
        self._executor.shutdown(wait=wait)


def get_deployment_runner() -> DeploymentRunner:
    """deployments应用持有的部署调度器实例"""
    from django.apps import apps
    return apps.get_app_config('deployments').runner


def start_deployment(host, user, triggered_by='manual'):
    return get_deployment_runner().start_deployment(host, user, triggered_by=triggered_by)
