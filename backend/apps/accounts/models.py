import secrets

from django.contrib.auth.models import AbstractUser
from django.db import models


def generate_license_key():
    return secrets.token_hex(32)


class User(AbstractUser):
    """租户用户模型"""
    license_key = models.CharField(
        max_length=64, unique=True, default=generate_license_key, verbose_name='许可证密钥',
        help_text='写入远程主机实例描述文件，用于标识主机所属租户'
    )

    class Meta:
        verbose_name = '用户'
        verbose_name_plural = '用户'

    def __str__(self):
        return self.username
