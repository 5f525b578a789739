"""
部署任务监控模块

流水线在进程重启后不会继续执行，长时间停留在 pending / in_progress 的任务
由这里定期标记为失败，并把对应主机置为 error。
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from apps.hosts.exceptions import InvalidTransitionError
from .models import Deployment

logger = logging.getLogger(__name__)


def fail_stale_deployments(stale_minutes=None, runner=None):
    """
    检查超时的部署任务

    Args:
        stale_minutes: 超时阈值（分钟），默认读取 DEPLOYMENT_STALE_MINUTES
        runner: 部署调度器，仍在本进程中执行的任务不做处理

    Returns:
        list: 被标记为失败的部署任务ID
    """
    stale_minutes = stale_minutes or settings.DEPLOYMENT_STALE_MINUTES
    threshold = timezone.now() - timedelta(minutes=stale_minutes)

    stale = Deployment.objects.filter(status__in=Deployment.ACTIVE_STATUSES).filter(
        Q(started_at__lt=threshold) | Q(started_at__isnull=True, created_at__lt=threshold)
    ).select_related('host')

    failed = []
    for deployment in stale:
        if runner is not None and runner.is_active(deployment.host_id):
            continue
        message = f'部署任务超时（超过 {stale_minutes} 分钟未结束），已自动标记为失败'
        try:
            deployment.log('error', message)
            deployment.transition_to('failed', error_message=message)
        except InvalidTransitionError:
            # 检查期间流水线已自行结束
            continue

        host = deployment.host
        host.status = 'error'
        host.last_error = message
        host.save(update_fields=['status', 'last_error', 'updated_at'])
        logger.warning(f'部署任务超时: deployment_id={deployment.pk}, host_id={host.pk}')
        failed.append(deployment.pk)
    return failed
