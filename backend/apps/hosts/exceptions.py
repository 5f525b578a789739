"""
远程主机编排异常

所有异常都继承自 OrchestrationError，视图层据此映射HTTP状态码；
部署流水线在最外层统一捕获并记录到部署日志。
"""


class OrchestrationError(Exception):
    """编排核心异常基类"""
    status_code = 500


class RemoteConnectionError(OrchestrationError, ConnectionError):
    """无法连接或认证远程主机

    reason 取值: auth / timeout / unreachable / protocol / credentials
    原始异常通过 __cause__ 保留
    """
    status_code = 502

    def __init__(self, message, reason='unreachable', host=None):
        super().__init__(message)
        self.reason = reason
        self.host = host


class CommandTimeoutError(OrchestrationError, TimeoutError):
    """远程命令超出时限（远程进程可能仍在运行）"""
    status_code = 504

    def __init__(self, command, timeout):
        super().__init__(f'命令执行超时（{timeout}秒）: {command[:80]}')
        self.command = command
        self.timeout = timeout


class BuildError(OrchestrationError):
    """构建未产出预期的二进制文件"""


class ServiceStartError(OrchestrationError):
    """systemd未能将服务带到 active 状态"""


class HostNotFoundError(OrchestrationError):
    status_code = 404


class DeploymentNotFoundError(OrchestrationError):
    status_code = 404


class HostPermissionError(OrchestrationError, PermissionError):
    """调用者不是主机的所有者"""
    status_code = 403


class DeploymentInProgressError(OrchestrationError):
    """同一主机已有进行中的部署任务"""
    status_code = 409

    def __init__(self, host_id, deployment_id=None):
        super().__init__(f'主机 {host_id} 已有进行中的部署任务')
        self.host_id = host_id
        self.deployment_id = deployment_id


class HostQuotaExceededError(OrchestrationError):
    status_code = 400


class UnknownActionError(OrchestrationError):
    """请求的诊断命令不在白名单内"""
    status_code = 400


class InvalidTransitionError(OrchestrationError):
    """部署状态只能单向前进"""
    status_code = 409
