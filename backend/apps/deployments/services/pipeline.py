"""
部署流水线

按顺序执行 stages.DEFAULT_STAGES 中的各个阶段，然后 finalize。
任何阶段抛出的异常都只在 run() 这一层捕获一次：写入错误日志、
部署任务标记为 failed、主机标记为 error。不做自动回滚，重新部署即可恢复。
"""
import logging
import time

from django.utils import timezone

from apps.hosts.exceptions import RemoteConnectionError
from apps.hosts.services.connection_manager import get_connection_manager
from apps.hosts.services.status_service import read_callback_key
from ..models import Deployment, DeploymentSource
from .stages import DEFAULT_STAGES, PipelineContext

logger = logging.getLogger(__name__)


class DeploymentPipeline:
    """一次部署任务的执行器"""

    def __init__(self, deployment: Deployment, manager=None, stages=None, sleep=time.sleep):
        self.deployment = deployment
        self.host = deployment.host
        self.manager = manager or get_connection_manager()
        self.stages = [stage() for stage in (stages or DEFAULT_STAGES)]
        self.sleep = sleep

    def run(self) -> Deployment:
        deployment = self.deployment
        host = self.host

        deployment.transition_to('in_progress')
        host.status = 'deploying'
        host.save(update_fields=['status', 'updated_at'])
        deployment.log('info', f'开始部署到 {host.host}（{deployment.get_deployment_type_display()}）')

        try:
            source = DeploymentSource.get_source()
            with self.manager.lease(host.pk) as session:
                ctx = PipelineContext(deployment, source, self.manager, session, sleep=self.sleep)
                total = len(self.stages)
                for index, stage in enumerate(self.stages, start=1):
                    ctx.log('info', f'[{index}/{total}] {stage.title}')
                    stage.run(ctx)
                self.finalize(ctx)
        except Exception as e:
            if isinstance(e, RemoteConnectionError):
                self.manager.release(host.pk)
            self._fail(e)
        return deployment

    def finalize(self, ctx: PipelineContext):
        """更新主机与部署任务记录，并同步远程可能重新生成的回调API Key"""
        host = self.host
        update_fields = ['status', 'is_deployed', 'deployed_version', 'last_error', 'last_heartbeat', 'updated_at']

        remote_key = read_callback_key(self.manager, ctx.session, ctx.install_path)
        if remote_key and remote_key != host.callback_api_key:
            host.callback_api_key = remote_key
            update_fields.append('callback_api_key')
            ctx.log('info', '回调API Key已与远程同步')

        host.status = 'running'
        host.is_deployed = True
        host.deployed_version = ctx.version
        host.last_error = None
        host.last_heartbeat = timezone.now()
        host.save(update_fields=update_fields)

        self.deployment.transition_to('completed', to_version=ctx.version)
        ctx.log('success', f'部署完成，版本: {ctx.version}')
        logger.info(f'部署完成: deployment_id={self.deployment.pk}, host_id={host.pk}, version={ctx.version}')

    def _fail(self, error):
        message = str(error) or error.__class__.__name__
        logger.error(f'部署失败: deployment_id={self.deployment.pk}, host_id={self.host.pk}, error={message}',
                     exc_info=True)

        self.deployment.log('error', f'部署失败: {message}')
        if not self.deployment.is_terminal:
            self.deployment.transition_to('failed', error_message=message)

        self.host.status = 'error'
        self.host.last_error = message
        self.host.save(update_fields=['status', 'last_error', 'updated_at'])
