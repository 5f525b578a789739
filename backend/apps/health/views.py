from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from django.db import connection, DatabaseError
from django.utils import timezone
from apps.hosts.services.connection_manager import get_connection_manager
import logging

logger = logging.getLogger(__name__)


@api_view(['GET'])
@permission_classes([AllowAny])
def health_check(request):
    """健康检查端点（数据库连通性 + 当前缓存的SSH会话数）"""
    database_ok = True
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
    except DatabaseError as e:
        logger.error(f'健康检查数据库失败: {e}')
        database_ok = False

    return Response({
        'status': 'healthy' if database_ok else 'degraded',
        'timestamp': timezone.now().isoformat(),
        'service': 'hostpilot-backend',
        'database': database_ok,
        'ssh_sessions': len(get_connection_manager().status()),
    }, status=200 if database_ok else 503)
