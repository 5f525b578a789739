"""
SSH连接管理器

按主机缓存持久SSH会话：
- acquire: 复用缓存会话（先做一次存活探测），失效则丢弃并重新连接
- lease: 在一次操作期间占用会话，占用中的会话不会被监控线程回收
- 监控线程定期对所有空闲会话执行探测命令，失败即回收，下次 acquire 时透明重连

paramiko 的 transport.is_active() 只反映本地socket状态，不可靠，
因此存活判断始终以一次真实的命令往返为准。
"""
import logging
import threading
from contextlib import contextmanager
from io import StringIO

import paramiko
from django.conf import settings
from django.utils import timezone

from apps.hosts.exceptions import OrchestrationError, RemoteConnectionError, HostNotFoundError
from apps.hosts.models import ManagedHost
from . import command_executor

logger = logging.getLogger(__name__)

PROBE_COMMAND = 'true'


class RemoteSession:
    """一个已认证的远程shell会话"""

    def __init__(self, host_id, client: paramiko.SSHClient, address: str):
        self.host_id = host_id
        self.client = client
        self.address = address
        self.connected_at = timezone.now()
        self.leases = 0

    @property
    def in_use(self) -> bool:
        return self.leases > 0

    def close(self):
        try:
            self.client.close()
        except Exception as e:
            logger.debug(f'关闭SSH会话失败: host={self.address}, error={e}')

    def __repr__(self):
        return f"RemoteSession(host_id={self.host_id!r}, address={self.address!r})"


def load_private_key(key_text: str) -> paramiko.PKey:
    """依次尝试 RSA / Ed25519 / ECDSA 解析私钥"""
    for key_class in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(StringIO(key_text))
        except (paramiko.SSHException, ValueError):
            continue
    raise RemoteConnectionError('无法解析SSH私钥，仅支持 RSA / Ed25519 / ECDSA', reason='credentials')


def open_client(host, port, username, password=None, private_key=None, timeout=None) -> paramiko.SSHClient:
    """
    建立SSH连接

    Raises:
        RemoteConnectionError: reason 区分 auth / timeout / unreachable / protocol / credentials
    """
    if not password and not private_key:
        raise RemoteConnectionError('必须提供密码或私钥', reason='credentials', host=host)

    timeout = timeout or settings.SSH_CONNECT_TIMEOUT
    connect_kwargs = {
        'hostname': host,
        'port': port or 22,
        'username': username,
        'timeout': timeout,
        'banner_timeout': timeout,
        'auth_timeout': timeout,
        'look_for_keys': False,
        'allow_agent': False,
    }
    if private_key:
        connect_kwargs['pkey'] = load_private_key(private_key)
    else:
        connect_kwargs['password'] = password

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(**connect_kwargs)
    except paramiko.AuthenticationException as e:
        client.close()
        raise RemoteConnectionError('认证失败，请检查用户名、密码或私钥', reason='auth', host=host) from e
    except TimeoutError as e:
        client.close()
        raise RemoteConnectionError(f'连接超时（{timeout}秒）', reason='timeout', host=host) from e
    except paramiko.SSHException as e:
        client.close()
        raise RemoteConnectionError(f'SSH连接错误: {e}', reason='protocol', host=host) from e
    except OSError as e:
        client.close()
        raise RemoteConnectionError(f'无法连接到主机: {e}', reason='unreachable', host=host) from e

    transport = client.get_transport()
    if transport is not None:
        transport.set_keepalive(settings.SSH_KEEPALIVE_INTERVAL)
    return client


class ConnectionManager:
    """按主机ID缓存SSH会话，缓存的所有修改都在锁内完成"""

    def __init__(self, run=None, probe_timeout=None, monitor_interval=None):
        self._sessions = {}
        self._lock = threading.Lock()
        self._host_locks = {}
        self._run = run or command_executor.run
        self.probe_timeout = probe_timeout or settings.SSH_PROBE_TIMEOUT
        self.monitor_interval = monitor_interval or settings.SSH_MONITOR_INTERVAL
        self._monitor_thread = None
        self._stop_event = threading.Event()

    def _host_lock(self, host_id) -> threading.Lock:
        with self._lock:
            lock = self._host_locks.get(host_id)
            if lock is None:
                lock = self._host_locks[host_id] = threading.Lock()
            return lock

    def _cached(self, host_id):
        with self._lock:
            return self._sessions.get(host_id)

    def _evict(self, host_id, session):
        with self._lock:
            if self._sessions.get(host_id) is session:
                del self._sessions[host_id]
        session.close()

    def run(self, session, command, timeout=command_executor.DEFAULT_TIMEOUT):
        """在会话上执行命令（执行器可在构造时替换）"""
        return self._run(session, command, timeout=timeout)

    def probe(self, session: RemoteSession) -> bool:
        """执行一次探测命令，任何失败都视为会话已失效"""
        transport = session.client.get_transport()
        if transport is None or not transport.is_active():
            return False
        try:
            result = self._run(session, PROBE_COMMAND, timeout=self.probe_timeout)
        except (OrchestrationError, paramiko.SSHException, EOFError, OSError) as e:
            logger.debug(f'存活探测失败: host={session.address}, error={e}')
            return False
        return result.exit_code == 0

    def connect(self, host: ManagedHost) -> RemoteSession:
        """使用主机保存的凭证建立新会话（不写入缓存）"""
        credential = host.credential
        if not credential:
            raise RemoteConnectionError('主机缺少SSH凭证', reason='credentials', host=host.host)
        client = open_client(
            host.host,
            host.port,
            host.username,
            password=host.password if host.auth_type != 'key' else None,
            private_key=host.private_key if host.auth_type == 'key' else None,
        )
        logger.info(f'SSH已连接: host={host.host}, host_id={host.pk}')
        return RemoteSession(host.pk, client, host.host)

    def open_session(self, host, port, username, password=None, private_key=None) -> RemoteSession:
        """按候选凭证建立临时会话（不写入缓存，调用方负责关闭）"""
        client = open_client(host, port, username, password=password, private_key=private_key)
        return RemoteSession(None, client, host)

    def _acquire(self, host_id, lease=False) -> RemoteSession:
        with self._host_lock(host_id):
            session = self._cached(host_id)
            if session is not None:
                if self.probe(session):
                    if lease:
                        with self._lock:
                            session.leases += 1
                    return session
                logger.info(f'缓存的SSH会话已失效，重新连接: host={session.address}')
                self._evict(host_id, session)

            try:
                host = ManagedHost.objects.get(pk=host_id)
            except ManagedHost.DoesNotExist:
                raise HostNotFoundError(f'主机不存在: {host_id}')

            session = self.connect(host)
            with self._lock:
                if lease:
                    session.leases += 1
                self._sessions[host_id] = session
            return session

    def acquire(self, host_id) -> RemoteSession:
        """获取可用会话，必要时重新连接"""
        return self._acquire(host_id)

    @contextmanager
    def lease(self, host_id):
        """在 with 块内占用会话，期间监控线程不会回收它"""
        session = self._acquire(host_id, lease=True)
        try:
            yield session
        finally:
            with self._lock:
                session.leases -= 1

    def release(self, host_id):
        """关闭并移除主机的缓存会话（删除主机时调用）"""
        with self._lock:
            session = self._sessions.pop(host_id, None)
            self._host_locks.pop(host_id, None)
        if session is not None:
            session.close()
            logger.info(f'SSH会话已关闭: host={session.address}')

    def release_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def status(self):
        """所有缓存会话的快照"""
        with self._lock:
            sessions = list(self._sessions.items())
        result = {}
        for host_id, session in sessions:
            transport = session.client.get_transport()
            result[host_id] = {
                'host': session.address,
                'connected': bool(transport and transport.is_active()),
                'connected_at': session.connected_at,
                'in_use': session.in_use,
            }
        return result

    def probe_all(self):
        """
        对所有空闲会话做一次存活探测

        Returns:
            list: 被回收的主机ID
        """
        with self._lock:
            snapshot = list(self._sessions.items())

        evicted = []
        for host_id, session in snapshot:
            with self._host_lock(host_id):
                if self._cached(host_id) is not session or session.in_use:
                    continue
                if not self.probe(session):
                    logger.info(f'SSH连接已断开，下次使用时重新连接: host={session.address}')
                    self._evict(host_id, session)
                    evicted.append(host_id)
        return evicted

    def start_monitor(self):
        """启动连接监控线程"""
        if self._monitor_thread and self._monitor_thread.is_alive():
            logger.info('SSH连接监控已在运行')
            return

        self._stop_event.clear()

        def _monitor_loop():
            logger.info(f'SSH连接监控已启动，检查间隔: {self.monitor_interval}秒')
            while not self._stop_event.wait(self.monitor_interval):
                try:
                    self.probe_all()
                except Exception as e:
                    logger.error(f'SSH连接监控错误: {str(e)}', exc_info=True)

        self._monitor_thread = threading.Thread(target=_monitor_loop, daemon=True, name='SSHConnectionMonitor')
        self._monitor_thread.start()

    def stop_monitor(self):
        self._stop_event.set()
        self._monitor_thread = None


def get_connection_manager() -> ConnectionManager:
    """hosts应用持有的连接管理器实例"""
    from django.apps import apps
    return apps.get_app_config('hosts').connection_manager
