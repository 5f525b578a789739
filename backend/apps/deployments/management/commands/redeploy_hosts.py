"""
Django管理命令：为所有已部署的主机重新部署最新版本
使用方法：
    python manage.py redeploy_hosts

可以配合cron定时执行，例如每天凌晨4点：
    0 4 * * * cd /path/to/project && python manage.py redeploy_hosts
"""
from django.core.management.base import BaseCommand
from apps.deployments.services.deployment_service import get_deployment_runner
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = '为所有已部署的主机创建更新部署任务，并等待执行完成'

    def add_arguments(self, parser):
        parser.add_argument('--trigger', default='schedule', choices=['manual', 'webhook', 'schedule'],
                            help='记录到部署任务中的触发方式')

    def handle(self, *args, **options):
        runner = get_deployment_runner()
        started, skipped = runner.redeploy_all(triggered_by=options['trigger'])
        self.stdout.write(f'已创建 {len(started)} 个部署任务，跳过 {len(skipped)} 台部署中的主机')
        if not started:
            return

        self.stdout.write('等待部署任务完成...')
        runner.shutdown(wait=True)

        failed = 0
        for deployment in started:
            deployment.refresh_from_db()
            if deployment.status == 'completed':
                self.stdout.write(self.style.SUCCESS(f'主机 {deployment.host.name}: 部署完成 ({deployment.to_version})'))
            else:
                failed += 1
                self.stdout.write(self.style.ERROR(
                    f'主机 {deployment.host.name}: {deployment.get_status_display()} {deployment.error_message or ""}'
                ))
        if failed:
            logger.warning(f'批量重新部署完成，失败 {failed} 个')
