from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from .models import Deployment
from .serializers import DeploymentSerializer, DeploymentLogEntrySerializer


class DeploymentViewSet(viewsets.ReadOnlyModelViewSet):
    """部署任务视图集（部署通过 /api/hosts/{id}/deploy/ 创建）"""
    queryset = Deployment.objects.all()
    serializer_class = DeploymentSerializer

    def get_queryset(self):
        queryset = Deployment.objects.filter(host__created_by=self.request.user).select_related('host', 'created_by')
        host_id = self.request.query_params.get('host')
        if host_id:
            queryset = queryset.filter(host_id=host_id)
        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        return queryset

    @action(detail=True, methods=['get'])
    def logs(self, request, pk=None):
        """
        获取部署日志

        支持 ?after=<日志ID> 只返回更新的日志，便于轮询
        """
        deployment = self.get_object()
        entries = deployment.log_entries.all()
        after = request.query_params.get('after')
        if after and after.isdigit():
            entries = entries.filter(pk__gt=int(after))
        return Response({
            'status': deployment.status,
            'error_message': deployment.error_message,
            'entries': DeploymentLogEntrySerializer(entries, many=True).data,
            'transcript': deployment.transcript(),
        })
