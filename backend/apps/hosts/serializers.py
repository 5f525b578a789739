from rest_framework import serializers
from .models import ManagedHost


class ManagedHostSerializer(serializers.ModelSerializer):
    """受管主机序列化器"""
    created_by_username = serializers.CharField(source='created_by.username', read_only=True)
    has_password = serializers.SerializerMethodField()
    has_private_key = serializers.SerializerMethodField()

    class Meta:
        model = ManagedHost
        fields = [
            'id', 'name', 'description', 'host', 'port', 'username',
            'auth_type', 'password', 'private_key', 'install_path',
            'status', 'last_error', 'deployed_version', 'is_deployed',
            'last_heartbeat', 'uptime_seconds',
            'has_password', 'has_private_key',
            'created_at', 'updated_at', 'created_by', 'created_by_username'
        ]
        read_only_fields = [
            'id', 'status', 'last_error', 'deployed_version', 'is_deployed',
            'last_heartbeat', 'uptime_seconds', 'created_at', 'updated_at', 'created_by'
        ]
        extra_kwargs = {
            'name': {'required': False, 'allow_blank': True},
            'password': {'write_only': True, 'required': False},
            'private_key': {'write_only': True, 'required': False},
        }

    def get_has_password(self, obj):
        """检查是否有密码（不返回密码内容）"""
        return bool(obj.password)

    def get_has_private_key(self, obj):
        """检查是否有私钥（不返回私钥内容）"""
        return bool(obj.private_key)

    def validate(self, attrs):
        auth_type = attrs.get('auth_type', getattr(self.instance, 'auth_type', 'password'))
        if auth_type == 'key':
            if not (attrs.get('private_key') or getattr(self.instance, 'private_key', None)):
                raise serializers.ValidationError({'private_key': '使用私钥认证时必须提供私钥'})
        elif not (attrs.get('password') or getattr(self.instance, 'password', None)):
            raise serializers.ValidationError({'password': '使用密码认证时必须提供密码'})
        if not attrs.get('name', '').strip() and self.instance is None:
            attrs['name'] = attrs.get('host', '')
        return attrs

    def create(self, validated_data):
        validated_data['created_by'] = self.context['request'].user
        return super().create(validated_data)


class HostTestSerializer(serializers.Serializer):
    """主机连接测试序列化器"""
    host = serializers.CharField()
    port = serializers.IntegerField(default=22)
    username = serializers.CharField()
    password = serializers.CharField(required=False, allow_blank=True)
    private_key = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if not attrs.get('password') and not attrs.get('private_key'):
            raise serializers.ValidationError('必须提供密码或私钥')
        return attrs


class ExecActionSerializer(serializers.Serializer):
    action = serializers.CharField()
