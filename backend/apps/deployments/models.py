from django.conf import settings
from django.db import models
from django.utils import timezone

from apps.hosts.exceptions import InvalidTransitionError
from apps.hosts.models import ManagedHost
from . import events


class Deployment(models.Model):
    """部署任务模型（流水线的一次执行）"""
    TYPE_CHOICES = [
        ('initial', '首次部署'),
        ('update', '更新'),
        ('rollback', '回滚'),
    ]

    TRIGGER_CHOICES = [
        ('manual', '手动'),
        ('webhook', 'Webhook'),
        ('schedule', '定时'),
    ]

    STATUS_CHOICES = [
        ('pending', '等待中'),
        ('in_progress', '进行中'),
        ('completed', '已完成'),
        ('failed', '失败'),
    ]

    ACTIVE_STATUSES = ('pending', 'in_progress')
    TERMINAL_STATUSES = ('completed', 'failed')
    # pending 可以直接失败（提交失败或被判定为中断），终态不可再变
    ALLOWED_TRANSITIONS = {
        'pending': ('in_progress', 'failed'),
        'in_progress': ('completed', 'failed'),
        'completed': (),
        'failed': (),
    }

    host = models.ForeignKey(ManagedHost, on_delete=models.CASCADE, related_name='deployments', verbose_name='主机')
    deployment_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default='initial', verbose_name='部署类型')
    triggered_by = models.CharField(max_length=20, choices=TRIGGER_CHOICES, default='manual', verbose_name='触发方式')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', verbose_name='状态')
    from_version = models.CharField(max_length=64, blank=True, null=True, verbose_name='原版本')
    to_version = models.CharField(max_length=64, blank=True, null=True, verbose_name='目标版本')
    error_message = models.TextField(blank=True, null=True, verbose_name='错误信息')
    started_at = models.DateTimeField(null=True, blank=True, verbose_name='开始时间')
    completed_at = models.DateTimeField(null=True, blank=True, verbose_name='完成时间')
    created_at = models.DateTimeField(auto_now_add=True, verbose_name='创建时间')
    updated_at = models.DateTimeField(auto_now=True, verbose_name='更新时间')
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, verbose_name='创建者')

    class Meta:
        verbose_name = '部署任务'
        verbose_name_plural = '部署任务'
        ordering = ['-created_at']

    def __str__(self):
        return f"Deployment-{self.pk} ({self.host.name}, {self.deployment_type})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def transition_to(self, status, error_message=None, to_version=None):
        """
        推进部署状态并保存

        Raises:
            InvalidTransitionError: 不允许的状态转换（例如从终态回退）
        """
        if status not in self.ALLOWED_TRANSITIONS.get(self.status, ()):
            raise InvalidTransitionError(f'部署任务 {self.pk} 不能从 {self.status} 变为 {status}')

        now = timezone.now()
        self.status = status
        update_fields = ['status', 'updated_at']
        if status == 'in_progress':
            self.started_at = now
            update_fields.append('started_at')
        if status in self.TERMINAL_STATUSES:
            self.completed_at = now
            update_fields.append('completed_at')
        if error_message is not None:
            self.error_message = error_message
            update_fields.append('error_message')
        if to_version is not None:
            self.to_version = to_version
            update_fields.append('to_version')
        self.save(update_fields=update_fields)

        events.publish(self.pk, {'type': 'status', 'status': status, 'error_message': self.error_message})

    def log(self, level, message):
        """追加一条部署日志"""
        entry = DeploymentLogEntry.objects.create(deployment=self, level=level, message=message)
        events.publish(self.pk, {
            'type': 'log',
            'level': level,
            'message': message,
            'timestamp': entry.timestamp.isoformat(),
        })
        return entry

    def transcript(self) -> str:
        """按时间顺序拼接所有日志，便于人工阅读"""
        lines = []
        for entry in self.log_entries.all():
            lines.append(f"[{timezone.localtime(entry.timestamp).strftime('%Y-%m-%d %H:%M:%S')}] "
                         f"[{entry.level.upper()}] {entry.message}")
        return '\n'.join(lines)


class DeploymentLogEntry(models.Model):
    """部署日志（只追加）"""
    LEVEL_CHOICES = [
        ('info', '信息'),
        ('warning', '警告'),
        ('error', '错误'),
        ('success', '成功'),
    ]

    deployment = models.ForeignKey(Deployment, on_delete=models.CASCADE, related_name='log_entries', verbose_name='部署任务')
    level = models.CharField(max_length=20, choices=LEVEL_CHOICES, default='info', verbose_name='级别')
    message = models.TextField(verbose_name='内容')
    timestamp = models.DateTimeField(default=timezone.now, db_index=True, verbose_name='时间')

    class Meta:
        verbose_name = '部署日志'
        verbose_name_plural = '部署日志'
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"[{self.level}] {self.message[:50]}"


class DeploymentSource(models.Model):
    """部署源配置（单例模式，由管理员在后台维护）"""
    repo_url = models.CharField(max_length=500, blank=True, default='', verbose_name='仓库地址')
    branch = models.CharField(max_length=100, default='main', verbose_name='分支')
    toolchain_version = models.CharField(max_length=20, default='1.22.5', verbose_name='Go版本',
                                         help_text='远程主机上要求的最低Go版本')
    toolchain_url_template = models.CharField(
        max_length=255, default='https://go.dev/dl/go{version}.linux-amd64.tar.gz', verbose_name='Go下载地址模板'
    )
    service_name = models.CharField(max_length=64, default='app', verbose_name='systemd服务名')
    binary_name = models.CharField(max_length=64, default='app', verbose_name='二进制文件名')
    service_args = models.CharField(max_length=500, blank=True, default='', verbose_name='启动参数',
                                    help_text='可使用 {install_path} 占位符')
    asset_dirs = models.CharField(max_length=255, blank=True, default='config,plugins,admin', verbose_name='静态资源目录',
                                  help_text='逗号分隔，从源码根目录复制到安装目录')
    open_ports = models.CharField(max_length=255, blank=True, default='80/tcp,443/tcp', verbose_name='开放端口',
                                  help_text='逗号分隔，例如 80/tcp,443/tcp,53/udp')
    release_resolver_port = models.BooleanField(default=True, verbose_name='释放53端口',
                                                help_text='停用占用53端口的本地解析器（systemd-resolved）')
    dns_servers = models.CharField(max_length=255, default='8.8.8.8,8.8.4.4', verbose_name='DNS服务器',
                                   help_text='释放本地解析器占用的53端口后写入 resolv.conf')
    control_port = models.IntegerField(default=0, verbose_name='本地控制端口',
                                       help_text='已部署服务的本地HTTP控制接口端口，0表示不探测')
    configure_on_first_run = models.BooleanField(default=True, verbose_name='首次运行自动配置',
                                                 help_text='通过本地控制接口开启自动TLS并登记公网IP')
    updated_at = models.DateTimeField(auto_now=True, verbose_name='更新时间')

    class Meta:
        verbose_name = '部署源配置'
        verbose_name_plural = '部署源配置'

    def __str__(self):
        return '部署源配置'

    @classmethod
    def get_source(cls):
        """获取配置（单例）"""
        source, created = cls.objects.get_or_create(pk=1)
        return source

    def save(self, *args, **kwargs):
        """确保只有一个配置实例"""
        self.pk = 1
        super().save(*args, **kwargs)

    def port_list(self):
        """解析开放端口 -> [(端口, 协议)]"""
        ports = []
        for item in self.open_ports.split(','):
            item = item.strip()
            if not item:
                continue
            port, _, proto = item.partition('/')
            ports.append((int(port), (proto or 'tcp').lower()))
        return ports

    def asset_dir_list(self):
        return [d.strip().strip('/') for d in self.asset_dirs.split(',') if d.strip()]

    def dns_server_list(self):
        return [s.strip() for s in self.dns_servers.split(',') if s.strip()]
