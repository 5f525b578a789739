import logging

from apps.hosts.exceptions import OrchestrationError, RemoteConnectionError
from apps.hosts.services.connection_manager import get_connection_manager

logger = logging.getLogger(__name__)


def test_ssh_connection(host, port, username, password=None, private_key=None, manager=None):
    """
    测试SSH连接（不缓存会话、不修改任何主机记录）

    Returns:
        dict: {'success': True, 'hostname': ...} 或 {'success': False, 'error': ..., 'reason': ...}
    """
    manager = manager or get_connection_manager()
    try:
        session = manager.open_session(host, port, username, password=password, private_key=private_key)
    except RemoteConnectionError as e:
        logger.info(f'SSH连接测试失败: host={host}, reason={e.reason}, error={e}')
        return {'success': False, 'error': str(e), 'reason': e.reason}

    try:
        result = manager.run(session, 'echo "Connection successful" && hostname', timeout=15)
    except OrchestrationError as e:
        return {'success': False, 'error': str(e), 'reason': getattr(e, 'reason', 'timeout')}
    finally:
        session.close()

    if not result.ok:
        return {'success': False, 'error': f'命令执行失败，退出码: {result.exit_code}', 'reason': 'protocol'}

    lines = result.stdout.splitlines()
    return {'success': True, 'hostname': lines[-1] if len(lines) > 1 else ''}
