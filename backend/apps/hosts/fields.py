"""
加密模型字段

使用 cryptography 的 Fernet 对称加密，密钥由 settings.FIELD_ENCRYPTION_KEY 派生，
数据库中只保存密文，模型属性上始终是明文。
"""
import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import models

logger = logging.getLogger(__name__)


def get_fernet() -> Fernet:
    """根据配置的密钥构建Fernet实例"""
    secret = getattr(settings, 'FIELD_ENCRYPTION_KEY', '')
    if not secret:
        raise ImproperlyConfigured('未配置 ENCRYPTION_KEY，无法读写加密字段')
    digest = hashlib.sha256(secret.encode('utf-8')).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode('utf-8')).decode('ascii')


def decrypt_value(token: str):
    try:
        return get_fernet().decrypt(token.encode('ascii')).decode('utf-8')
    except (InvalidToken, ValueError):
        # 密钥更换或数据损坏时无法解密，按缺失凭证处理
        logger.error('加密字段解密失败，请检查 ENCRYPTION_KEY 是否与写入时一致')
        return None


class EncryptedTextField(models.TextField):
    """透明加密的文本字段"""

    def from_db_value(self, value, expression, connection):
        if value in (None, ''):
            return value
        return decrypt_value(value)

    def get_prep_value(self, value):
        value = super().get_prep_value(value)
        if value in (None, ''):
            return value
        return encrypt_value(value)
