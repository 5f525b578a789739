from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound, PermissionDenied
from rest_framework.response import Response
from django.conf import settings
from django.utils import timezone
from .actions import list_actions
from .exceptions import (
    OrchestrationError, HostNotFoundError, HostPermissionError,
    HostQuotaExceededError, DeploymentInProgressError,
)
from .models import ManagedHost
from .serializers import ManagedHostSerializer, HostTestSerializer, ExecActionSerializer
from .services.connection_manager import get_connection_manager
from .services.status_service import HostStatusService
from .utils import test_ssh_connection
from apps.deployments.serializers import DeploymentSerializer
from apps.deployments.services.deployment_service import start_deployment
import logging

logger = logging.getLogger(__name__)


def get_owned_host(pk, user):
    """
    获取当前用户的主机

    Raises:
        HostNotFoundError: 主机不存在
        HostPermissionError: 主机属于其他用户
    """
    try:
        host = ManagedHost.objects.select_related('created_by').get(pk=pk)
    except (ManagedHost.DoesNotExist, ValueError):
        raise HostNotFoundError(f'主机不存在: {pk}')
    if host.created_by_id != user.pk:
        raise HostPermissionError('无权操作该主机')
    return host


def error_response(error: OrchestrationError, **extra):
    return Response({'error': str(error), **extra}, status=error.status_code)


class HostViewSet(viewsets.ModelViewSet):
    """受管主机视图集"""
    queryset = ManagedHost.objects.all()
    serializer_class = ManagedHostSerializer

    def get_queryset(self):
        return ManagedHost.objects.filter(created_by=self.request.user)

    def get_object(self):
        try:
            host = get_owned_host(self.kwargs[self.lookup_field], self.request.user)
        except HostNotFoundError as e:
            raise NotFound(str(e))
        except HostPermissionError as e:
            raise PermissionDenied(str(e))
        self.check_object_permissions(self.request, host)
        return host

    def _persist_connection_result(self, host, result):
        if result['success']:
            # 已部署的主机保留原有运行状态
            if host.status in ('pending', 'error', 'offline'):
                host.status = 'connected'
            host.last_error = None
        else:
            host.status = 'error'
            host.last_error = result.get('error')
        host.save(update_fields=['status', 'last_error', 'updated_at'])

    def create(self, request, *args, **kwargs):
        """创建主机（检查数量限制并测试连接）"""
        limit = settings.MAX_HOSTS_PER_USER
        if ManagedHost.objects.filter(created_by=request.user).count() >= limit:
            return error_response(HostQuotaExceededError(f'每个用户最多添加 {limit} 台主机'))

        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        host = serializer.save()

        result = test_ssh_connection(
            host=host.host,
            port=host.port,
            username=host.username,
            password=host.password if host.auth_type != 'key' else None,
            private_key=host.private_key if host.auth_type == 'key' else None,
        )
        self._persist_connection_result(host, result)
        logger.info(f'主机已创建: host_id={host.pk}, user={request.user.username}, connected={result["success"]}')

        data = self.get_serializer(host).data
        data['connection_test'] = result
        headers = self.get_success_headers(data)
        return Response(data, status=status.HTTP_201_CREATED, headers=headers)

    def perform_update(self, serializer):
        host = serializer.save()
        # 连接参数可能已变化，丢弃缓存会话
        get_connection_manager().release(host.pk)

    def destroy(self, request, *args, **kwargs):
        """删除主机（级联删除部署记录并关闭SSH会话）"""
        host = self.get_object()
        if host.status == 'deploying':
            return error_response(DeploymentInProgressError(host.pk))
        host_id = host.pk
        get_connection_manager().release(host_id)
        host.delete()
        logger.info(f'主机已删除: host_id={host_id}, user={request.user.username}')
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=['post'])
    def deploy(self, request, pk=None):
        """创建部署任务（异步执行，立即返回部署任务ID）"""
        host = self.get_object()
        try:
            deployment = start_deployment(host, request.user, triggered_by='manual')
        except DeploymentInProgressError as e:
            return error_response(e, deployment_id=e.deployment_id)
        return Response({
            'deployment_id': deployment.pk,
            'status': deployment.status,
            'deployment_type': deployment.deployment_type,
            'message': '部署任务已创建',
        }, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=['get'])
    def deployments(self, request, pk=None):
        """主机的部署历史"""
        host = self.get_object()
        queryset = host.deployments.select_related('host', 'created_by').all()
        page = self.paginate_queryset(queryset)
        if page is not None:
            serializer = DeploymentSerializer(page, many=True)
            return self.get_paginated_response(serializer.data)
        return Response(DeploymentSerializer(queryset, many=True).data)

    @action(detail=True, methods=['get'])
    def status(self, request, pk=None):
        """查询服务运行状态（主机不可达时返回 offline）"""
        host = self.get_object()
        try:
            return Response(HostStatusService().get_status(host))
        except OrchestrationError as e:
            return error_response(e)

    @action(detail=True, methods=['get'])
    def logs(self, request, pk=None):
        """服务日志"""
        host = self.get_object()
        lines = request.query_params.get('lines', 100)
        try:
            text = HostStatusService().get_logs(host, lines)
        except OrchestrationError as e:
            return error_response(e)
        return Response({'logs': text, 'fetched_at': timezone.now()})

    def _control(self, request, verb):
        host = self.get_object()
        try:
            result = getattr(HostStatusService(), verb)(host)
        except OrchestrationError as e:
            return error_response(e)
        if result['success']:
            return Response(result)
        return Response(result, status=status.HTTP_400_BAD_REQUEST)

    @action(detail=True, methods=['post'])
    def start(self, request, pk=None):
        return self._control(request, 'start')

    @action(detail=True, methods=['post'])
    def stop(self, request, pk=None):
        return self._control(request, 'stop')

    @action(detail=True, methods=['post'])
    def restart(self, request, pk=None):
        return self._control(request, 'restart')

    @action(detail=True, methods=['post'])
    def test_connection(self, request, pk=None):
        """测试已保存主机的SSH连接，并记录结果"""
        host = self.get_object()
        result = test_ssh_connection(
            host=host.host,
            port=host.port,
            username=host.username,
            password=host.password if host.auth_type != 'key' else None,
            private_key=host.private_key if host.auth_type == 'key' else None,
        )
        self._persist_connection_result(host, result)
        if result['success']:
            return Response({'message': '连接成功', 'status': host.status, 'hostname': result.get('hostname')})
        return Response(
            {'message': f"连接失败: {result.get('error', '未知错误')}", 'status': host.status,
             'reason': result.get('reason')},
            status=status.HTTP_400_BAD_REQUEST
        )

    @action(detail=False, methods=['post'])
    def test(self, request):
        """测试连接（不保存）"""
        serializer = HostTestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        result = test_ssh_connection(**serializer.validated_data)
        if result['success']:
            return Response({'message': '连接成功', 'hostname': result.get('hostname')})
        return Response(
            {'message': f"连接失败: {result.get('error', '未知错误')}", 'reason': result.get('reason')},
            status=status.HTTP_400_BAD_REQUEST
        )

    @action(detail=True, methods=['post'], url_path='exec')
    def exec_action(self, request, pk=None):
        """执行白名单中的诊断命令"""
        host = self.get_object()
        serializer = ExecActionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        try:
            result = HostStatusService().exec_action(host, serializer.validated_data['action'])
        except OrchestrationError as e:
            return error_response(e)
        return Response(result)

    @action(detail=True, methods=['get'])
    def system_info(self, request, pk=None):
        host = self.get_object()
        try:
            return Response(HostStatusService().get_system_info(host))
        except OrchestrationError as e:
            return error_response(e)

    @action(detail=False, methods=['get'], url_path='actions')
    def available_actions(self, request):
        """可用的诊断命令列表"""
        return Response(list_actions())
