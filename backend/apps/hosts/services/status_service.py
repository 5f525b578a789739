"""
主机状态与日志服务

- get_status: 查询systemd服务状态并计算运行时长；主机不可达时返回 offline 而不是抛出异常
- get_logs: 服务状态摘要 + journal 日志尾部
- start / stop / restart: 执行systemctl命令后重新查询状态
- get_system_info / exec_action: 只读诊断命令
"""
import logging
import time

from django.conf import settings
from django.utils import timezone

from apps.deployments.models import Deployment, DeploymentSource
from apps.hosts.actions import PREDEFINED_ACTIONS
from apps.hosts.exceptions import RemoteConnectionError, CommandTimeoutError, UnknownActionError
from apps.hosts.models import ManagedHost
from .command_executor import shell_quote, sudo_prefix
from .connection_manager import get_connection_manager

logger = logging.getLogger(__name__)

# 回调API Key在安装目录下的文件名（部署时写入，远程服务首次启动时可能重新生成）
CALLBACK_KEY_FILE = 'api_key.txt'
# 少于该长度的内容视为无效Key
MIN_CALLBACK_KEY_LENGTH = 32

MAX_LOG_LINES = 1000

SYSTEM_INFO_COMMANDS = {
    'os': 'cat /etc/os-release | grep "PRETTY_NAME" | cut -d= -f2 | tr -d \'"\'',
    'kernel': 'uname -r',
    'cpu_cores': 'nproc',
    'memory_total': "free -m | awk '/^Mem:/{print $2}'",
    'memory_used': "free -m | awk '/^Mem:/{print $3}'",
    'disk_total': "df -h / | awk 'NR==2{print $2}'",
    'disk_used': "df -h / | awk 'NR==2{print $3}'",
    'disk_percent': "df -h / | awk 'NR==2{print $5}'",
    'uptime': 'uptime -s',
    'load': "cat /proc/loadavg | awk '{print $1, $2, $3}'",
}


def uptime_command(service):
    """根据systemd记录的 ActiveEnterTimestamp 在远程计算运行秒数"""
    return (
        f'ts=$(systemctl show {service} --property=ActiveEnterTimestamp --value); '
        f'if [ -n "$ts" ]; then echo $(( $(date +%s) - $(date -d "$ts" +%s) )); else echo 0; fi'
    )


def read_callback_key(manager, session, install_path):
    """读取远程安装目录中的回调API Key，不存在或无效时返回None"""
    path = shell_quote(f"{install_path.rstrip('/')}/{CALLBACK_KEY_FILE}")
    result = manager.run(session, f'cat {path} 2>/dev/null || true', timeout=10)
    key = result.stdout.strip()
    if len(key) < MIN_CALLBACK_KEY_LENGTH:
        return None
    return key


class HostStatusService:
    """主机状态服务"""

    def __init__(self, manager=None, grace_seconds=None):
        self.manager = manager or get_connection_manager()
        if grace_seconds is None:
            grace_seconds = settings.DEPLOYMENT_VERIFY_GRACE_SECONDS
        self.grace_seconds = grace_seconds

    def _service(self):
        return shell_quote(DeploymentSource.get_source().service_name)

    def _is_active(self, session, service):
        result = self.manager.run(session, f'systemctl is-active {service} 2>/dev/null || true', timeout=10)
        return result.stdout.strip()

    def _save_status(self, host: ManagedHost, status, **fields):
        host.status = status
        for name, value in fields.items():
            setattr(host, name, value)
        host.save(update_fields=['status', 'updated_at', *fields.keys()])

    def _mark_offline(self, host: ManagedHost, error):
        # 会话可能已失效，丢弃后下次访问重新连接
        self.manager.release(host.pk)
        self._save_status(host, 'offline', last_error=str(error))
        logger.warning(f'主机不可达: host_id={host.pk}, host={host.host}, error={error}')
        return {
            'running': False,
            'status': 'offline',
            'connected': False,
            'error': str(error),
        }

    def get_status(self, host: ManagedHost):
        """
        查询主机上服务的运行状态

        Returns:
            dict: running / status / connected / service_state / uptime_seconds ...
        """
        service = self._service()
        try:
            with self.manager.lease(host.pk) as session:
                state = self._is_active(session, service)
                running = state == 'active'
                uptime = 0
                if running:
                    result = self.manager.run(session, uptime_command(service), timeout=10)
                    try:
                        uptime = max(int(result.stdout.strip() or 0), 0)
                    except ValueError:
                        uptime = 0
                    status = 'running'
                else:
                    result = self.manager.run(
                        session, f'systemctl cat {service} >/dev/null 2>&1 && echo installed || echo missing',
                        timeout=10,
                    )
                    status = 'stopped' if result.stdout.strip() == 'installed' else 'connected'
                callback_key = read_callback_key(self.manager, session, host.install_path)
        except (RemoteConnectionError, CommandTimeoutError) as e:
            return self._mark_offline(host, e)

        fields = {'last_heartbeat': timezone.now(), 'uptime_seconds': uptime, 'last_error': None}
        if callback_key and callback_key != host.callback_api_key:
            logger.info(f'回调API Key已在远程更新，同步到数据库: host_id={host.pk}')
            fields['callback_api_key'] = callback_key

        # 部署进行中时保持 deploying，由流水线负责最终状态
        if Deployment.objects.filter(host=host, status__in=Deployment.ACTIVE_STATUSES).exists():
            status = 'deploying'
        self._save_status(host, status, **fields)

        return {
            'running': running,
            'status': status,
            'connected': True,
            'service_state': state or 'unknown',
            'uptime_seconds': uptime,
            'is_deployed': host.is_deployed,
            'deployed_version': host.deployed_version,
            'last_heartbeat': host.last_heartbeat,
        }

    def get_logs(self, host: ManagedHost, lines=100):
        """服务状态摘要与最近的journal日志，拼接成一段文本"""
        try:
            lines = int(lines)
        except (TypeError, ValueError):
            lines = 100
        lines = max(1, min(lines, MAX_LOG_LINES))

        service = self._service()
        sudo = sudo_prefix(host.username)
        with self.manager.lease(host.pk) as session:
            header = self.manager.run(
                session, f'systemctl status {service} --no-pager -l 2>&1 | head -n 5', timeout=15
            )
            journal = self.manager.run(
                session, f'{sudo}journalctl -u {service} -n {lines} --no-pager 2>&1 || true', timeout=30
            )

        return (
            f"=== 服务状态 ===\n{header.output or '(无输出)'}\n\n"
            f"=== 最近 {lines} 行日志 ===\n{journal.output or '(无日志)'}"
        )

    def _control(self, host: ManagedHost, verb):
        service = self._service()
        sudo = sudo_prefix(host.username)
        with self.manager.lease(host.pk) as session:
            result = self.manager.run(session, f'{sudo}systemctl {verb} {service}', timeout=60)
            if verb != 'stop' and self.grace_seconds:
                time.sleep(self.grace_seconds)
            state = self._is_active(session, service)

        status = 'running' if state == 'active' else 'stopped'
        success = result.ok and ((state == 'active') if verb != 'stop' else (state != 'active'))
        self._save_status(host, status, last_error=None if success else (result.output or f'服务状态: {state}'))
        logger.info(f'systemctl {verb}: host_id={host.pk}, success={success}, state={state}')

        response = {'success': success, 'status': status}
        if not success:
            response['error'] = host.last_error
        return response

    def start(self, host: ManagedHost):
        return self._control(host, 'start')

    def stop(self, host: ManagedHost):
        return self._control(host, 'stop')

    def restart(self, host: ManagedHost):
        return self._control(host, 'restart')

    def get_system_info(self, host: ManagedHost):
        """系统信息，单项命令失败时记为 unknown"""
        info = {}
        with self.manager.lease(host.pk) as session:
            for key, command in SYSTEM_INFO_COMMANDS.items():
                try:
                    result = self.manager.run(session, command, timeout=10)
                    info[key] = result.stdout if result.ok else 'unknown'
                except CommandTimeoutError:
                    info[key] = 'unknown'
        return info

    def exec_action(self, host: ManagedHost, action_key):
        """
        执行白名单中的诊断命令

        Raises:
            UnknownActionError: action_key 不在白名单中
        """
        definition = PREDEFINED_ACTIONS.get(action_key)
        if definition is None:
            raise UnknownActionError(f'不支持的操作: {action_key}')

        command = definition['command'].format(
            sudo=sudo_prefix(host.username),
            service=self._service(),
            install_path=shell_quote(host.install_path),
        )
        with self.manager.lease(host.pk) as session:
            result = self.manager.run(session, command, timeout=definition['timeout'])
        logger.info(f'执行诊断命令: host_id={host.pk}, action={action_key}, code={result.exit_code}')
        return result.to_dict()

    def read_callback_key(self, host: ManagedHost):
        with self.manager.lease(host.pk) as session:
            return read_callback_key(self.manager, session, host.install_path)
