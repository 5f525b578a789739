"""
远程命令执行器

在已建立的SSH会话上执行单条命令，完整收集 stdout/stderr 与退出码。
超时只保证调用方停止等待，不保证远程进程被终止。
"""
import logging
import shlex
import time

import paramiko

from apps.hosts.exceptions import OrchestrationError, RemoteConnectionError, CommandTimeoutError

logger = logging.getLogger(__name__)

# 读取缓冲区大小与轮询间隔
READ_CHUNK_SIZE = 32768
POLL_INTERVAL = 0.05

DEFAULT_TIMEOUT = 60


class CommandResult:
    """单条远程命令的执行结果"""

    def __init__(self, exit_code, stdout='', stderr=''):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """合并后的输出，用于写入部署日志"""
        return '\n'.join(part for part in (self.stdout, self.stderr) if part)

    def to_dict(self):
        return {'code': self.exit_code, 'stdout': self.stdout, 'stderr': self.stderr}

    def __repr__(self):
        return f"CommandResult(exit_code={self.exit_code!r})"


def shell_quote(value) -> str:
    """拼接到命令中的值统一转义"""
    return shlex.quote(str(value))


def _open_channel(session):
    transport = session.client.get_transport()
    if transport is None or not transport.is_active():
        raise RemoteConnectionError('SSH会话已断开', reason='unreachable', host=session.address)
    try:
        return transport.open_session()
    except (paramiko.SSHException, EOFError, OSError) as e:
        raise RemoteConnectionError(f'无法打开SSH通道: {e}', reason='protocol', host=session.address) from e


def run(session, command: str, timeout: int = DEFAULT_TIMEOUT) -> CommandResult:
    """
    执行远程命令

    Args:
        session: RemoteSession对象
        command: shell命令
        timeout: 超时时间（秒），None表示不限时

    Returns:
        CommandResult: 退出码、标准输出、标准错误
    """
    channel = _open_channel(session)
    stdout_chunks = []
    stderr_chunks = []
    deadline = time.monotonic() + timeout if timeout else None

    try:
        channel.exec_command(command)
        while True:
            while channel.recv_ready():
                stdout_chunks.append(channel.recv(READ_CHUNK_SIZE))
            while channel.recv_stderr_ready():
                stderr_chunks.append(channel.recv_stderr(READ_CHUNK_SIZE))

            # 退出状态在所有数据之后到达，此时缓冲区已完整
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break

            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f'远程命令超时: host={session.address}, timeout={timeout}s')
                raise CommandTimeoutError(command, timeout)

            time.sleep(POLL_INTERVAL)

        exit_code = channel.recv_exit_status()
    except OrchestrationError:
        raise
    except (paramiko.SSHException, EOFError, OSError) as e:
        raise RemoteConnectionError(f'命令执行过程中连接中断: {e}', reason='unreachable', host=session.address) from e
    finally:
        channel.close()

    return CommandResult(
        exit_code,
        b''.join(stdout_chunks).decode('utf-8', errors='replace').strip(),
        b''.join(stderr_chunks).decode('utf-8', errors='replace').strip(),
    )


def sudo_prefix(username: str) -> str:
    """非root用户通过 sudo -n 提权（不交互，缺少免密权限时立即失败）"""
    return '' if username == 'root' else 'sudo -n '
