from django.conf import settings
from django.db import models

from .fields import EncryptedTextField


class ManagedHost(models.Model):
    """受管主机模型（租户自有的远程服务器）"""
    STATUS_CHOICES = [
        ('pending', '待检测'),
        ('connected', '已连接'),
        ('deploying', '部署中'),
        ('running', '运行中'),
        ('stopped', '已停止'),
        ('error', '错误'),
        ('offline', '离线'),
    ]

    AUTH_TYPE_CHOICES = [
        ('password', '密码'),
        ('key', 'SSH私钥'),
    ]

    name = models.CharField(max_length=100, verbose_name='主机名称')
    description = models.TextField(blank=True, default='', verbose_name='描述')
    host = models.CharField(max_length=255, verbose_name='主机地址')
    port = models.IntegerField(default=22, verbose_name='SSH端口')
    username = models.CharField(max_length=100, verbose_name='SSH用户名')
    auth_type = models.CharField(max_length=20, choices=AUTH_TYPE_CHOICES, default='password', verbose_name='认证方式')
    password = EncryptedTextField(blank=True, null=True, verbose_name='SSH密码')
    private_key = EncryptedTextField(blank=True, null=True, verbose_name='SSH私钥')
    install_path = models.CharField(max_length=255, default='/opt/app', verbose_name='安装路径')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', verbose_name='状态')
    last_error = models.TextField(blank=True, null=True, verbose_name='最后错误')
    deployed_version = models.CharField(max_length=64, blank=True, null=True, verbose_name='已部署版本')
    is_deployed = models.BooleanField(default=False, verbose_name='已部署')
    last_heartbeat = models.DateTimeField(null=True, blank=True, verbose_name='最后心跳时间')
    uptime_seconds = models.BigIntegerField(default=0, verbose_name='运行时长（秒）')
    # 部署时生成，远程服务用它回调控制面板、控制面板用它配置远程服务
    callback_api_key = EncryptedTextField(blank=True, null=True, verbose_name='回调API Key')
    created_at = models.DateTimeField(auto_now_add=True, verbose_name='创建时间')
    updated_at = models.DateTimeField(auto_now=True, verbose_name='更新时间')
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='managed_hosts', verbose_name='所有者'
    )

    class Meta:
        verbose_name = '受管主机'
        verbose_name_plural = '受管主机'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.name} ({self.host})"

    @property
    def credential(self):
        """当前认证方式对应的明文凭证"""
        if self.auth_type == 'key':
            return self.private_key
        return self.password
