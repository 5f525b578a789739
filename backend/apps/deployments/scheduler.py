"""
部署任务监控调度器
在Django应用启动时自动启动后台线程，定期检查超时的部署任务
"""
import threading
import logging

from django.conf import settings
from django.db import close_old_connections

from .monitor import fail_stale_deployments

logger = logging.getLogger(__name__)

# 全局调度器线程
_scheduler_thread = None
_stop_event = threading.Event()


def start_scheduler(runner=None):
    """启动部署任务监控调度器"""
    global _scheduler_thread

    if _scheduler_thread and _scheduler_thread.is_alive():
        logger.info('部署任务监控调度器已在运行')
        return

    interval = settings.DEPLOYMENT_MONITOR_INTERVAL
    _stop_event.clear()

    def _scheduler_loop():
        """调度器主循环"""
        logger.info(f'部署任务监控调度器已启动，检查间隔: {interval}秒')
        while not _stop_event.wait(interval):
            try:
                close_old_connections()
                failed = fail_stale_deployments(runner=runner)
                if failed:
                    logger.info(f'已将 {len(failed)} 个超时部署任务标记为失败')
            except Exception as e:
                logger.error(f'部署任务监控调度器错误: {str(e)}', exc_info=True)

    # 创建并启动守护线程
    _scheduler_thread = threading.Thread(target=_scheduler_loop, daemon=True, name='DeploymentMonitor')
    _scheduler_thread.start()


def stop_scheduler():
    """停止部署任务监控调度器（通常不需要手动调用）"""
    global _scheduler_thread
    _stop_event.set()
    _scheduler_thread = None
