from django.apps import AppConfig
import logging

logger = logging.getLogger(__name__)


class HostsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.hosts'
    verbose_name = '主机'

    connection_manager = None

    def ready(self):
        """应用启动时创建连接管理器，仅在服务器模式下启动连接监控"""
        import os
        import sys
        from .services.connection_manager import ConnectionManager

        self.connection_manager = ConnectionManager()

        is_server = (
            'runserver' in sys.argv or
            'gunicorn' in sys.argv[0] or
            'uwsgi' in sys.argv[0] or
            os.environ.get('RUN_MAIN') == 'true'
        )

        if not is_server or 'migrate' in sys.argv or 'test' in sys.argv:
            return

        import atexit
        atexit.register(self.connection_manager.release_all)

        try:
            self.connection_manager.start_monitor()
            logger.info('SSH连接监控已自动启动')
        except Exception as e:
            logger.error(f'启动SSH连接监控失败: {str(e)}', exc_info=True)
