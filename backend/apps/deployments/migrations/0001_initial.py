# Generated manually

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("hosts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="DeploymentSource",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("repo_url", models.CharField(blank=True, default="", max_length=500, verbose_name="仓库地址")),
                ("branch", models.CharField(default="main", max_length=100, verbose_name="分支")),
                (
                    "toolchain_version",
                    models.CharField(
                        default="1.22.5", help_text="远程主机上要求的最低Go版本", max_length=20, verbose_name="Go版本"
                    ),
                ),
                (
                    "toolchain_url_template",
                    models.CharField(
                        default="https://go.dev/dl/go{version}.linux-amd64.tar.gz",
                        max_length=255,
                        verbose_name="Go下载地址模板",
                    ),
                ),
                ("service_name", models.CharField(default="app", max_length=64, verbose_name="systemd服务名")),
                ("binary_name", models.CharField(default="app", max_length=64, verbose_name="二进制文件名")),
                (
                    "service_args",
                    models.CharField(
                        blank=True, default="", help_text="可使用 {install_path} 占位符", max_length=500, verbose_name="启动参数"
                    ),
                ),
                (
                    "asset_dirs",
                    models.CharField(
                        blank=True,
                        default="config,plugins,admin",
                        help_text="逗号分隔，从源码根目录复制到安装目录",
                        max_length=255,
                        verbose_name="静态资源目录",
                    ),
                ),
                (
                    "open_ports",
                    models.CharField(
                        blank=True,
                        default="80/tcp,443/tcp",
                        help_text="逗号分隔，例如 80/tcp,443/tcp,53/udp",
                        max_length=255,
                        verbose_name="开放端口",
                    ),
                ),
                (
                    "release_resolver_port",
                    models.BooleanField(
                        default=True, help_text="停用占用53端口的本地解析器（systemd-resolved）", verbose_name="释放53端口"
                    ),
                ),
                (
                    "dns_servers",
                    models.CharField(
                        default="8.8.8.8,8.8.4.4",
                        help_text="释放本地解析器占用的53端口后写入 resolv.conf",
                        max_length=255,
                        verbose_name="DNS服务器",
                    ),
                ),
                (
                    "control_port",
                    models.IntegerField(
                        default=0, help_text="已部署服务的本地HTTP控制接口端口，0表示不探测", verbose_name="本地控制端口"
                    ),
                ),
                (
                    "configure_on_first_run",
                    models.BooleanField(
                        default=True, help_text="通过本地控制接口开启自动TLS并登记公网IP", verbose_name="首次运行自动配置"
                    ),
                ),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
            ],
            options={
                "verbose_name": "部署源配置",
                "verbose_name_plural": "部署源配置",
            },
        ),
        migrations.CreateModel(
            name="Deployment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "deployment_type",
                    models.CharField(
                        choices=[("initial", "首次部署"), ("update", "更新"), ("rollback", "回滚")],
                        default="initial",
                        max_length=20,
                        verbose_name="部署类型",
                    ),
                ),
                (
                    "triggered_by",
                    models.CharField(
                        choices=[("manual", "手动"), ("webhook", "Webhook"), ("schedule", "定时")],
                        default="manual",
                        max_length=20,
                        verbose_name="触发方式",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "等待中"),
                            ("in_progress", "进行中"),
                            ("completed", "已完成"),
                            ("failed", "失败"),
                        ],
                        default="pending",
                        max_length=20,
                        verbose_name="状态",
                    ),
                ),
                ("from_version", models.CharField(blank=True, max_length=64, null=True, verbose_name="原版本")),
                ("to_version", models.CharField(blank=True, max_length=64, null=True, verbose_name="目标版本")),
                ("error_message", models.TextField(blank=True, null=True, verbose_name="错误信息")),
                ("started_at", models.DateTimeField(blank=True, null=True, verbose_name="开始时间")),
                ("completed_at", models.DateTimeField(blank=True, null=True, verbose_name="完成时间")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="创建时间")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
                (
                    "created_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        to=settings.AUTH_USER_MODEL,
                        verbose_name="创建者",
                    ),
                ),
                (
                    "host",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deployments",
                        to="hosts.managedhost",
                        verbose_name="主机",
                    ),
                ),
            ],
            options={
                "verbose_name": "部署任务",
                "verbose_name_plural": "部署任务",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="DeploymentLogEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "level",
                    models.CharField(
                        choices=[("info", "信息"), ("warning", "警告"), ("error", "错误"), ("success", "成功")],
                        default="info",
                        max_length=20,
                        verbose_name="级别",
                    ),
                ),
                ("message", models.TextField(verbose_name="内容")),
                (
                    "timestamp",
                    models.DateTimeField(db_index=True, default=django.utils.timezone.now, verbose_name="时间"),
                ),
                (
                    "deployment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="log_entries",
                        to="deployments.deployment",
                        verbose_name="部署任务",
                    ),
                ),
            ],
            options={
                "verbose_name": "部署日志",
                "verbose_name_plural": "部署日志",
                "ordering": ["timestamp", "id"],
            },
        ),
    ]
