# Generated manually

import apps.hosts.fields
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ManagedHost",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100, verbose_name="主机名称")),
                ("description", models.TextField(blank=True, default="", verbose_name="描述")),
                ("host", models.CharField(max_length=255, verbose_name="主机地址")),
                ("port", models.IntegerField(default=22, verbose_name="SSH端口")),
                ("username", models.CharField(max_length=100, verbose_name="SSH用户名")),
                (
                    "auth_type",
                    models.CharField(
                        choices=[("password", "密码"), ("key", "SSH私钥")],
                        default="password",
                        max_length=20,
                        verbose_name="认证方式",
                    ),
                ),
                ("password", apps.hosts.fields.EncryptedTextField(blank=True, null=True, verbose_name="SSH密码")),
                ("private_key", apps.hosts.fields.EncryptedTextField(blank=True, null=True, verbose_name="SSH私钥")),
                ("install_path", models.CharField(default="/opt/app", max_length=255, verbose_name="安装路径")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "待检测"),
                            ("connected", "已连接"),
                            ("deploying", "部署中"),
                            ("running", "运行中"),
                            ("stopped", "已停止"),
                            ("error", "错误"),
                            ("offline", "离线"),
                        ],
                        default="pending",
                        max_length=20,
                        verbose_name="状态",
                    ),
                ),
                ("last_error", models.TextField(blank=True, null=True, verbose_name="最后错误")),
                ("deployed_version", models.CharField(blank=True, max_length=64, null=True, verbose_name="已部署版本")),
                ("is_deployed", models.BooleanField(default=False, verbose_name="已部署")),
                ("last_heartbeat", models.DateTimeField(blank=True, null=True, verbose_name="最后心跳时间")),
                ("uptime_seconds", models.BigIntegerField(default=0, verbose_name="运行时长（秒）")),
                (
                    "callback_api_key",
                    apps.hosts.fields.EncryptedTextField(blank=True, null=True, verbose_name="回调API Key"),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="创建时间")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
                (
                    "created_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="managed_hosts",
                        to=settings.AUTH_USER_MODEL,
                        verbose_name="所有者",
                    ),
                ),
            ],
            options={
                "verbose_name": "受管主机",
                "verbose_name_plural": "受管主机",
                "ordering": ["-created_at"],
            },
        ),
    ]
