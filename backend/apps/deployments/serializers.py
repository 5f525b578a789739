from rest_framework import serializers
from .models import Deployment, DeploymentLogEntry


class DeploymentSerializer(serializers.ModelSerializer):
    """部署任务序列化器"""
    host_name = serializers.CharField(source='host.name', read_only=True)
    host_address = serializers.CharField(source='host.host', read_only=True)
    created_by_username = serializers.CharField(source='created_by.username', read_only=True)

    class Meta:
        model = Deployment
        fields = [
            'id', 'host', 'host_name', 'host_address',
            'deployment_type', 'triggered_by', 'status',
            'from_version', 'to_version', 'error_message',
            'started_at', 'completed_at', 'created_at', 'updated_at',
            'created_by', 'created_by_username'
        ]
        read_only_fields = fields


class DeploymentLogEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = DeploymentLogEntry
        fields = ['id', 'level', 'message', 'timestamp']
        read_only_fields = fields
